"""
asgi.py -- ASGI entry point for keyfob.

api/main.py builds the application; this module only re-exports it so the
server command stays stable if the assembly moves.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
