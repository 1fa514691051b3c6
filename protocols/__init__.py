"""Industrial protocol implementations."""
