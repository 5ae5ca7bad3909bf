"""Request observability pipeline for the user and order sample services."""

__version__ = "0.1.0"
