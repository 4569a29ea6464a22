"""Shared FastAPI dependencies and error mapping for the API routers."""

from __future__ import annotations

from fastapi import HTTPException, Request

from flowmachine.runtime.errors import ConfigurationError, FailureReason
from flowmachine.runtime.registry import Container
from flowmachine.runtime.types import FlowStepId


def get_container(request: Request) -> Container:
    return request.app.state.container


def config_error(e: ConfigurationError) -> HTTPException:
    """Unknown flow or pipeline -> 404, anything else structurally invalid -> 422."""
    status_code = 404 if e.reason == FailureReason.INVALID_FLOW else 422
    return HTTPException(
        status_code=status_code,
        detail={"error": e.reason.value, "message": e.message, "details": e.context},
    )


def not_found(kind: str, identifier: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={
            "error": f"{kind}_not_found",
            "message": f"{kind.capitalize()} '{identifier}' not found",
            "details": {f"{kind}_id": identifier},
        },
    )


def flow_step(flow_id: str, pipeline_step_id: str) -> FlowStepId:
    try:
        return FlowStepId(pipeline_step_id=pipeline_step_id, flow_id=flow_id)
    except ValueError as e:
        raise HTTPException(
            status_code=422,
            detail={"error": "invalid_flow_step", "message": str(e), "details": {}},
        ) from e
