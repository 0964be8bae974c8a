"""
asgi.py -- ASGI entry point for identity-core.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
