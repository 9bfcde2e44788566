"""
asgi.py -- Application assembly for SessionGate.

The process entry point for ASGI servers. api/main.py builds the app and
registers every router; this module only exposes it under a stable name so
deployment configs do not depend on the package layout.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
