"""Coverline HTTP API — FastAPI application and response schemas."""
