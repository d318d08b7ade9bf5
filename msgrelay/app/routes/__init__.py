"""msgrelay Routes Package.

This package contains all route handlers organized by domain:
- health: Health check and monitoring endpoints
- messages: Unified Messages endpoint
"""
from msgrelay.app.routes import health, messages

__all__ = ["health", "messages"]
