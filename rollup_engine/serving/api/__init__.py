"""
HTTP surface of the report service
"""
from .main import create_app

__all__ = ["create_app"]
