"""
Routes package for the flowmachine API.

This package contains the FastAPI routers for:
- pipelines: Pipeline templates and their steps
- flows: Flow instances, handler bindings, run/trigger and scheduling
- jobs: Job status and failure context
- processed_items: Dedup record maintenance
- chat: Conversational agent over the engine
"""

from .chat import router as chat_router
from .flows import router as flows_router
from .jobs import router as jobs_router
from .pipelines import router as pipelines_router
from .processed_items import router as processed_items_router

__all__ = [
    "pipelines_router",
    "flows_router",
    "jobs_router",
    "processed_items_router",
    "chat_router",
]
