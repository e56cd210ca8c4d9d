"""Shared infrastructure: logging, errors, configuration, notifications, metrics and shutdown."""
