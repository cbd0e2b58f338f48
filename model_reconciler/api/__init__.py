"""Channel provider HTTP client and channel payload types."""
