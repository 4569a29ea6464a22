"""
Job endpoints.

    GET /api/jobs            - List jobs (?flow_id=&pipeline_id=&status=&limit=)
    GET /api/jobs/{job_id}   - Get job with failure context
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from flowmachine.api.deps import get_container, not_found
from flowmachine.runtime.registry import Container
from flowmachine.runtime.types import JobStatus

router = APIRouter(prefix="/jobs", tags=["jobs"])


class JobModel(BaseModel):
    job_id: str
    flow_id: str
    pipeline_id: str
    status: str
    trigger: str
    current_flow_step: Optional[Dict[str, str]] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


@router.get("", response_model=List[JobModel])
def list_jobs(
    flow_id: Optional[str] = None,
    pipeline_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    container: Container = Depends(get_container),
):
    job_status = None
    if status:
        try:
            job_status = JobStatus(status)
        except ValueError:
            raise HTTPException(
                status_code=422,
                detail={
                    "error": "invalid_status",
                    "message": f"Unknown job status '{status}'",
                    "details": {"allowed": [s.value for s in JobStatus]},
                },
            )
    jobs = container.store.list_jobs(flow_id=flow_id, pipeline_id=pipeline_id, status=job_status, limit=limit)
    return [j.to_dict() for j in jobs]


@router.get("/{job_id}", response_model=JobModel)
def get_job(job_id: str, container: Container = Depends(get_container)):
    job = container.jobs.get(job_id)
    if job is None:
        raise not_found("job", job_id)
    return job.to_dict()
