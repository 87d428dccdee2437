"""
asgi.py -- Application assembly for authcore.

The ASGI server imports app from here rather than from api/main.py, so the
deployment entry point stays stable if the API module is reorganized.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
