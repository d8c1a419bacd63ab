"""Renewal scheduler, worker pull queue and point allocator for provisioning systems."""

__version__ = "0.1.0"
