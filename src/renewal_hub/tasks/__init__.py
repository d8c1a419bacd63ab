"""Durable renewal and generation task queue."""
