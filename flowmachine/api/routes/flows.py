"""
Flow endpoints.

    GET    /api/flows                                        - List flows (?pipeline_id=)
    POST   /api/flows                                        - Create flow
    GET    /api/flows/{id}                                   - Get flow
    DELETE /api/flows/{id}                                   - Delete flow and its processed items
    PUT    /api/flows/{id}/steps/{pipeline_step_id}/handler  - Bind handler
    POST   /api/flows/{id}/run                               - Run now
    POST   /api/flows/{id}/trigger                           - External trigger with a label
    PUT    /api/flows/{id}/schedule                          - Set schedule
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from flowmachine.api.deps import config_error, flow_step, get_container, not_found
from flowmachine.runtime.errors import ConfigurationError
from flowmachine.runtime.registry import Container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/flows", tags=["flows"])


# =============================================================================
# Pydantic Models
# =============================================================================


class FlowCreateRequest(BaseModel):
    pipeline_id: str
    name: str


class HandlerBindingRequest(BaseModel):
    handler_slug: str
    handler_config: Dict[str, Any] = Field(default_factory=dict)


class TriggerRequest(BaseModel):
    label: str = Field("external", description="Trigger context label recorded on the job")


class ScheduleRequest(BaseModel):
    when: Union[str, float] = Field(..., description="manual, an interval key, or an epoch for one run")


class FlowStepBindingModel(BaseModel):
    handler_slug: Optional[str] = None
    handler_config: Dict[str, Any] = Field(default_factory=dict)


class SchedulingModel(BaseModel):
    interval: str = "manual"
    next_run_at: Optional[float] = None
    last_run_at: Optional[float] = None
    enabled: bool = True


class FlowModel(BaseModel):
    flow_id: str
    pipeline_id: str
    name: str
    steps: Dict[str, FlowStepBindingModel] = Field(default_factory=dict)
    scheduling: SchedulingModel
    created_at: Optional[str] = None


class RunResponse(BaseModel):
    flow_id: str
    job_id: str
    trigger: str


# =============================================================================
# Endpoints
# =============================================================================


@router.get("", response_model=List[FlowModel])
def list_flows(pipeline_id: Optional[str] = None, container: Container = Depends(get_container)):
    return [f.to_dict() for f in container.pipelines.list_flows(pipeline_id)]


@router.post("", response_model=FlowModel, status_code=201)
def create_flow(request: FlowCreateRequest, container: Container = Depends(get_container)):
    try:
        flow = container.pipelines.create_flow(request.pipeline_id, request.name)
    except ConfigurationError as e:
        raise config_error(e)
    return flow.to_dict()


@router.get("/{flow_id}", response_model=FlowModel)
def get_flow(flow_id: str, container: Container = Depends(get_container)):
    flow = container.pipelines.get_flow(flow_id)
    if flow is None:
        raise not_found("flow", flow_id)
    return flow.to_dict()


@router.delete("/{flow_id}", status_code=204)
def delete_flow(flow_id: str, container: Container = Depends(get_container)):
    if not container.pipelines.delete_flow(flow_id):
        raise not_found("flow", flow_id)


@router.put("/{flow_id}/steps/{pipeline_step_id}/handler", response_model=FlowModel)
def set_handler(
    flow_id: str,
    pipeline_step_id: str,
    request: HandlerBindingRequest,
    container: Container = Depends(get_container),
):
    try:
        flow = container.pipelines.set_flow_step_handler(
            flow_step(flow_id, pipeline_step_id), request.handler_slug, request.handler_config
        )
    except ConfigurationError as e:
        raise config_error(e)
    return flow.to_dict()


def _start(container: Container, flow_id: str, label: str) -> RunResponse:
    try:
        job_id = container.jobs.create_and_schedule(flow_id, trigger_reason=label)
    except ConfigurationError as e:
        raise config_error(e)
    return RunResponse(flow_id=flow_id, job_id=job_id, trigger=label)


@router.post("/{flow_id}/run", response_model=RunResponse, status_code=202)
def run_flow(flow_id: str, container: Container = Depends(get_container)):
    return _start(container, flow_id, "manual")


@router.post("/{flow_id}/trigger", response_model=RunResponse, status_code=202)
def trigger_flow(flow_id: str, request: TriggerRequest, container: Container = Depends(get_container)):
    return _start(container, flow_id, request.label or "external")


@router.put("/{flow_id}/schedule", response_model=SchedulingModel)
def schedule_flow(flow_id: str, request: ScheduleRequest, container: Container = Depends(get_container)):
    try:
        scheduling = container.scheduler.schedule_flow(flow_id, request.when)
    except ConfigurationError as e:
        raise config_error(e)
    return scheduling.to_dict()
