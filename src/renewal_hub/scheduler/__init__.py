"""Periodic renewal detection."""
