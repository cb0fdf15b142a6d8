"""
mx-tester - Build, run and tear down Synapse test environments
"""

__version__ = "0.3.0"

from .core import MxTester
from .errors import TeardownError, TesterError

__all__ = ["MxTester", "TesterError", "TeardownError"]
