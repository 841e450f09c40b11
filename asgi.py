"""
asgi.py -- ASGI entry point for the TodoMaster auth service.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --host 0.0.0.0 --port 5001

Other TodoMaster routers (tasks, categories, notifications) belong here, next
to the auth app, and guard their routes with auth.dependencies.get_current_user.
"""

from api.main import app

__all__ = ["app"]
