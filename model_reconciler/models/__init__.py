"""Upstream model list caches and response-shape normalization."""
