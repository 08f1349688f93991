"""
asgi.py -- ASGI entry point for TenantGuard.

api/main.py owns the app and its routers; this module is the stable import
path for servers.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
