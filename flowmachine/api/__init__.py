"""
flowmachine API - FastAPI REST API over the engine.

Endpoints:
    Pipelines (routes/pipelines.py):
        GET    /api/pipelines                       - List pipelines
        POST   /api/pipelines                       - Create pipeline
        GET    /api/pipelines/{id}                  - Get pipeline
        DELETE /api/pipelines/{id}                  - Delete pipeline
        POST   /api/pipelines/{id}/steps            - Append step
        PATCH  /api/pipelines/{id}/steps/{step_id}  - Update step config
        DELETE /api/pipelines/{id}/steps/{step_id}  - Remove step

    Flows (routes/flows.py):
        GET    /api/flows                           - List flows
        POST   /api/flows                           - Create flow
        GET    /api/flows/{id}                      - Get flow
        DELETE /api/flows/{id}                      - Delete flow
        PUT    /api/flows/{id}/steps/{step_id}/handler - Bind handler
        POST   /api/flows/{id}/run                  - Run now
        POST   /api/flows/{id}/trigger              - External trigger
        PUT    /api/flows/{id}/schedule             - Set schedule

    Jobs (routes/jobs.py):
        GET    /api/jobs                            - List jobs
        GET    /api/jobs/{id}                       - Get job

    Maintenance and chat:
        DELETE /api/processed-items                 - Clear dedup records
        POST   /api/chat                            - Chat agent

    Health:
        GET    /api/health                          - Health check
"""

from .server import create_app

__all__ = ["create_app"]
