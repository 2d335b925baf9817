"""Payment-authorization engine for pay-per-use device control."""

__version__ = "0.1.0"
