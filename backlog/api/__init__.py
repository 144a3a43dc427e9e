"""
HTTP API for enqueueing and inspecting jobs.
"""

from backlog.api.main import create_app

__all__ = ["create_app"]
