"""API package — FastAPI relay routes and request/response schemas."""
