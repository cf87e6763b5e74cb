"""Storage infrastructure: database wiring, retries, repositories."""
