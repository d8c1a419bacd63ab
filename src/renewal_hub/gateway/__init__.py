"""Worker pull gateway: poll/report service and its HTTP surface."""
