"""
TaskPilot API

FastAPI surface for requirements, agent activity, review automation and tasks.
"""

from taskpilot.api.app import create_app

__all__ = ["create_app"]
