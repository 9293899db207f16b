"""
FastAPI routers for the clip job service.
"""

from viralclips.routers import health, jobs

__all__ = ["health", "jobs"]
