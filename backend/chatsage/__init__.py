"""ChatSage channel-state core."""

__version__ = "0.1.0"
