"""
asgi.py -- Application assembly for ClinicGate.

The front end is served separately; this module only re-exports the API app
so deployment configs have one stable import path.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
