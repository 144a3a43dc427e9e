"""
Worker module.
Contains the execution wrapper and the polling worker loop.
"""

from backlog.worker.main import ShutdownToken, Worker, clear, run

__all__ = ["Worker", "ShutdownToken", "run", "clear"]
