"""Shared utilities: logging, errors, configuration, events and scheduling."""
