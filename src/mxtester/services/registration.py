"""User provisioning against a running homeserver."""

import hashlib
import hmac
import threading
import time
from typing import Iterable, List, Optional

import requests

from mxtester.errors import TesterError
from mxtester.models import User
from mxtester.services.retry import auto_retry

# An account created on every `up`, on top of the users declared in mx-tester.yml.
IMPLICIT_ADMIN = User(localname="admin", admin=True, password="password")


class RegistrationService:
    """Logs users in or registers them through the shared-secret admin API."""

    ATTEMPTS = 10
    REQUEST_TIMEOUT = 30

    def __init__(self, logger, requests_module=requests, sleep=time.sleep):
        self.logger = logger
        self.requests = requests_module
        self.sleep = sleep

    def _send(self, method: str, url: str, cancelled: Optional[threading.Event] = None, **kwargs):
        kwargs.setdefault("timeout", self.REQUEST_TIMEOUT)
        return auto_retry(
            lambda: self.requests.request(method, url, **kwargs),
            self.ATTEMPTS,
            self.logger,
            sleep=self.sleep,
            cancelled=cancelled,
        )

    @staticmethod
    def registration_mac(secret: str, nonce: str, user: User) -> str:
        mac = hmac.new(secret.encode("utf-8"), digestmod=hashlib.sha1)
        mac.update(
            "\0".join(
                (nonce, user.localname, user.password, "admin" if user.admin else "notadmin")
            ).encode("utf-8")
        )
        return mac.hexdigest()

    def login(self, base_url: str, user: User, cancelled: Optional[threading.Event] = None):
        payload = {
            "type": "m.login.password",
            "identifier": {"type": "m.id.user", "user": user.localname},
            "password": user.password,
        }
        response = self._send("POST", f"{base_url}/_matrix/client/r0/login", cancelled=cancelled, json=payload)
        if not response.ok:
            raise TesterError(f"Login error for {user.localname}: {response.text}")

    def register_user(self, base_url: str, secret: str, user: User, cancelled: Optional[threading.Event] = None):
        registration_url = f"{base_url}/_synapse/admin/v1/register"
        self.logger.debug("Registering %s via %s", user.localname, registration_url)

        response = self._send("GET", registration_url, cancelled=cancelled)
        try:
            nonce = response.json()["nonce"]
        except (ValueError, KeyError, TypeError) as exc:
            raise TesterError(
                f"Homeserver did not provide a registration nonce ({response.status_code}): {response.text}"
            ) from exc

        payload = {
            "nonce": nonce,
            "username": user.localname,
            "displayname": user.localname,
            "password": user.password,
            "admin": user.admin,
            "mac": self.registration_mac(secret, nonce, user),
        }
        response = self._send("POST", registration_url, cancelled=cancelled, json=payload)
        if response.status_code == 200:
            return

        try:
            body = response.json()
            detail = f"errcode: {body.get('errcode')}, error: {body.get('error')}"
        except ValueError:
            detail = response.text
        raise TesterError(f"Homeserver responded with {detail}")

    def ensure_user_exists(self, base_url: str, secret: str, user: User, cancelled: Optional[threading.Event] = None):
        """Log in as `user`, registering it first if login fails."""
        self.logger.debug("ensure_user_exists %s %s", base_url, user.localname)
        try:
            self.login(base_url, user, cancelled=cancelled)
            return
        except (TesterError, requests.RequestException) as exc:
            self.logger.debug("Registering user %s: %s", user.localname, exc)

        try:
            self.register_user(base_url, secret, user, cancelled=cancelled)
        except requests.RequestException as exc:
            raise TesterError(f"Could not register user {user.localname}: {exc}") from exc

    @staticmethod
    def users_to_provision(users: Iterable[User]) -> List[User]:
        declared = list(users)
        if any(user.localname == IMPLICIT_ADMIN.localname for user in declared):
            return declared
        return declared + [IMPLICIT_ADMIN]

    def handle_user_registration(
        self,
        base_url: str,
        secret: str,
        users: Iterable[User],
        cancelled: Optional[threading.Event] = None,
    ):
        """Make sure every user exists. Stops before the next request once `cancelled` is set."""
        for user in self.users_to_provision(users):
            self.ensure_user_exists(base_url, secret, user, cancelled=cancelled)
            self.logger.info("User %s is ready", user.localname)
