"""
API routers
"""

from . import workflows, enrollments, logs, actions, monitoring

__all__ = ["workflows", "enrollments", "logs", "actions", "monitoring"]
