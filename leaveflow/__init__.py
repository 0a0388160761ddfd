"""LeaveFlow — leave lifecycle and balance accounting service."""

__version__ = "1.0.0"
