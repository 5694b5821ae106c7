"""Account signup, two-step signin and password recovery over HTTP."""

__version__ = "0.1.0"
