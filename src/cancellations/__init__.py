"""Order-cancellation workflow engine."""

__version__ = "1.0.0"
