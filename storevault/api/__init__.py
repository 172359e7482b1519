"""
REST API for storevault.
"""

from storevault.api.main import create_app, status_for_error

__all__ = ["create_app", "status_for_error"]
