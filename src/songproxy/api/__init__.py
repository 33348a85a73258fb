"""HTTP surface (FastAPI routers, settings, middleware)."""
