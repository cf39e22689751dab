# api/__init__.py
from api.server import app, create_app

__all__ = [
    "app",
    "create_app",
]
