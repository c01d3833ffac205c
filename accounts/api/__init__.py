"""
REST API module for cached account data.
"""

from .routes import router, create_api_app

__all__ = ["router", "create_api_app"]
