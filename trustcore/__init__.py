"""Embeddable authentication core: tokens, OAuth state and sessions."""

__version__ = "0.1.0"
