"""Core infrastructure: configuration, errors, logging, utilities."""
