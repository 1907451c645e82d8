"""
Middleware Package
==================

Starlette middleware for the FlowAssist API.
"""

from .security import SecurityHeadersMiddleware

__all__ = ["SecurityHeadersMiddleware"]
