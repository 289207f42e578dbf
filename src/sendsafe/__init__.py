"""sendsafe - End-to-end encrypted ephemeral file sharing client."""

__version__ = "0.1.0"
