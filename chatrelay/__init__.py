"""Session registry and publish/subscribe core for a Reticulum chat hub."""

__version__ = "0.1.0"
