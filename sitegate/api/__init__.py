"""HTTP/WebSocket surface (FastAPI)."""
