"""
asgi.py -- Application assembly for GRC Admin.

Run with:  uvicorn asgi:app --reload

The API is the only surface today; this module stays the single import point
for ASGI servers so a future UI router can be mounted here without touching
api/main.py.
"""

from api.main import app

__all__ = ["app"]
