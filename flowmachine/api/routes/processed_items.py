"""
Processed-item maintenance.

    DELETE /api/processed-items  - Clear dedup records (?job_id=&flow_id=&pipeline_id=&pipeline_step_id=)

Clearing records lets a fetch step pick the same source items up again.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from flowmachine.api.deps import get_container
from flowmachine.runtime.registry import Container

router = APIRouter(prefix="/processed-items", tags=["processed-items"])


class ClearResponse(BaseModel):
    removed: int


@router.delete("", response_model=ClearResponse)
def clear_processed_items(
    job_id: Optional[str] = None,
    flow_id: Optional[str] = None,
    pipeline_id: Optional[str] = None,
    pipeline_step_id: Optional[str] = None,
    container: Container = Depends(get_container),
):
    try:
        removed = container.dedup.clear(
            job_id=job_id,
            flow_id=flow_id,
            pipeline_id=pipeline_id,
            pipeline_step_id=pipeline_step_id,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=422,
            detail={"error": "missing_criteria", "message": str(e), "details": {}},
        )
    return ClearResponse(removed=removed)
