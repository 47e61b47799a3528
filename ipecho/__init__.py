"""ipecho: reports the caller's public IP address."""

__version__ = "0.1.0"
