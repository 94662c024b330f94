"""
HTTP API Module

Classes:
    Dashboard: HTTP server setup and route handlers
"""

from .server import Dashboard

__all__ = ['Dashboard']
