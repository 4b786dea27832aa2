"""ChatGuard: real-time threat detection and incident response for chat communities."""

__version__ = "0.1.0"
