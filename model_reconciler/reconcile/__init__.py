"""Per-channel reconciliation analysis and fix application."""
