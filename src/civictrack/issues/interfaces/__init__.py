"""
Issue Interfaces Layer
======================

Interface adapters (controllers) for the issue module.

This is the outermost layer - handles HTTP requests/responses and
delegates to application services.
"""

from civictrack.issues.interfaces.controllers import issues_router, sla_router

__all__ = ["issues_router", "sla_router"]
