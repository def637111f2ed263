"""HTTP layer (FastAPI routes and schemas)."""
