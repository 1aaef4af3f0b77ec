"""api/ -- HTTP transport layer for the Anchor auth service (FastAPI)."""
