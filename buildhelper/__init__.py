"""Build Helper: trigger Jenkins jobs and follow their logs."""

__version__ = "0.2.0"
