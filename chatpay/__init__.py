"""Paid conversation time, metered content and escrowed service requests."""

__version__ = "0.1.0"
