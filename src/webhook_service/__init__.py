"""Webhook delivery service: turns domain events into authenticated HTTP callbacks."""

__version__ = "0.1.0"
