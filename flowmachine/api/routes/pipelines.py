"""
Pipeline endpoints.

    GET    /api/pipelines                          - List pipelines
    POST   /api/pipelines                          - Create pipeline (optional steps)
    GET    /api/pipelines/{id}                     - Get pipeline
    DELETE /api/pipelines/{id}                     - Delete pipeline, its flows and processed items
    POST   /api/pipelines/{id}/steps               - Append a step
    PATCH  /api/pipelines/{id}/steps/{step_id}     - Merge step config
    DELETE /api/pipelines/{id}/steps/{step_id}     - Remove a step
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from flowmachine.api.deps import config_error, get_container, not_found
from flowmachine.runtime.errors import ConfigurationError
from flowmachine.runtime.registry import Container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipelines", tags=["pipelines"])


# =============================================================================
# Pydantic Models
# =============================================================================


class StepCreateRequest(BaseModel):
    step_type: str = Field(..., description="fetch, ai, publish or update")
    config: Dict[str, Any] = Field(default_factory=dict, description="Pipeline-level step settings")


class PipelineCreateRequest(BaseModel):
    name: str
    steps: List[StepCreateRequest] = Field(default_factory=list)


class StepConfigRequest(BaseModel):
    config: Dict[str, Any]


class PipelineStepModel(BaseModel):
    pipeline_step_id: str
    pipeline_id: str
    step_type: str
    execution_order: int
    config: Dict[str, Any] = Field(default_factory=dict)


class PipelineModel(BaseModel):
    pipeline_id: str
    name: str
    steps: List[PipelineStepModel] = Field(default_factory=list)
    created_at: Optional[str] = None


# =============================================================================
# Endpoints
# =============================================================================


@router.get("", response_model=List[PipelineModel])
def list_pipelines(container: Container = Depends(get_container)):
    return [p.to_dict() for p in container.pipelines.list_pipelines()]


@router.post("", response_model=PipelineModel, status_code=201)
def create_pipeline(request: PipelineCreateRequest, container: Container = Depends(get_container)):
    try:
        pipeline = container.pipelines.create_pipeline(
            request.name, [{"step_type": s.step_type, "config": s.config} for s in request.steps]
        )
    except ConfigurationError as e:
        raise config_error(e)
    return pipeline.to_dict()


@router.get("/{pipeline_id}", response_model=PipelineModel)
def get_pipeline(pipeline_id: str, container: Container = Depends(get_container)):
    pipeline = container.pipelines.get_pipeline(pipeline_id)
    if pipeline is None:
        raise not_found("pipeline", pipeline_id)
    return pipeline.to_dict()


@router.delete("/{pipeline_id}", status_code=204)
def delete_pipeline(pipeline_id: str, container: Container = Depends(get_container)):
    if not container.pipelines.delete_pipeline(pipeline_id):
        raise not_found("pipeline", pipeline_id)


@router.post("/{pipeline_id}/steps", response_model=PipelineStepModel, status_code=201)
def add_step(pipeline_id: str, request: StepCreateRequest, container: Container = Depends(get_container)):
    try:
        step = container.pipelines.add_step(pipeline_id, request.step_type, request.config)
    except ConfigurationError as e:
        raise config_error(e)
    return step.to_dict()


@router.patch("/{pipeline_id}/steps/{pipeline_step_id}", response_model=PipelineStepModel)
def update_step(
    pipeline_id: str,
    pipeline_step_id: str,
    request: StepConfigRequest,
    container: Container = Depends(get_container),
):
    existing = container.store.get_pipeline_step(pipeline_step_id)
    if existing is None or existing.pipeline_id != pipeline_id:
        raise not_found("pipeline_step", pipeline_step_id)
    return container.pipelines.update_step_config(pipeline_step_id, request.config).to_dict()


@router.delete("/{pipeline_id}/steps/{pipeline_step_id}", status_code=204)
def remove_step(pipeline_id: str, pipeline_step_id: str, container: Container = Depends(get_container)):
    try:
        removed = container.pipelines.remove_step(pipeline_id, pipeline_step_id)
    except ConfigurationError as e:
        raise config_error(e)
    if not removed:
        raise not_found("pipeline_step", pipeline_step_id)
