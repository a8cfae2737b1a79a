"""
asgi.py -- ASGI entry point for LedgerGate Identity.

api/main.py builds the FastAPI app and all of its routers; this module only
re-exports it under the conventional name so process managers have one
stable import path.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
