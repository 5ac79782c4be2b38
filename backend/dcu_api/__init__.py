"""DCU API backend: session tokens and rate limiting."""
