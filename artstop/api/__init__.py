# api/__init__.py
from artstop.api.server import create_app

__all__ = ["create_app"]
