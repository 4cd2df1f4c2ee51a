"""Multi-session WhatsApp gateway with a cached conversation store."""

__version__ = "0.1.0"
