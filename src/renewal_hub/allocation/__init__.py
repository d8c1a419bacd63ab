"""Capacity-aware point to system allocation."""
