"""
errors.py - Error taxonomy and step outcome types.

Two layers:
1. Typed exceptions raised inside steps, handlers and providers. Each carries
   an ErrorKind so the Step Executor can classify it without string matching.
2. StepError / StepOutcome, the explicit result returned by the Step Executor.
   Exceptions never cross the executor boundary; they are converted into a
   failed outcome and persisted verbatim on the job row.

Usage:
    from flowmachine.runtime.errors import (
        ErrorKind, FailureReason, ConfigurationError, ProviderError,
        StepOutcome,
    )

    try:
        provider.send(request)
    except httpx.HTTPError as exc:
        raise ProviderError("Provider call failed", context={"provider": "openai"}) from exc
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from flowmachine.runtime.types import FlowStepId


class ErrorKind(str, Enum):
    """What went wrong."""

    CONFIGURATION_ERROR = "configuration_error"
    DEREFERENCE_ERROR = "dereference_error"
    HANDLER_EXCEPTION = "handler_exception"
    PROVIDER_ERROR = "provider_error"
    TOOL_ERROR = "tool_error"
    EMPTY_RESULT = "empty_result"


class FailureReason(str, Enum):
    """Reason recorded on a job row when it stops."""

    INVALID_FLOW = "invalid_flow"
    NO_STEPS = "no_steps"
    STEP_EXECUTION_FAILURE = "step_execution_failure"
    EMPTY_RESULT = "empty_result"
    EXCEPTION = "exception"


class FlowMachineError(Exception):
    """Base class for typed errors.

    Attributes:
        kind: Taxonomy entry.
        message: Human-readable description.
        context: Extra diagnostic fields.
    """

    kind: ErrorKind = ErrorKind.HANDLER_EXCEPTION

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "context": self.context}


class ConfigurationError(FlowMachineError):
    """Missing or invalid flow, pipeline or step configuration."""

    kind = ErrorKind.CONFIGURATION_ERROR

    def __init__(
        self,
        message: str,
        reason: FailureReason = FailureReason.STEP_EXECUTION_FAILURE,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.reason = reason


class DereferenceError(FlowMachineError):
    """An inbound packet reference could not be read."""

    kind = ErrorKind.DEREFERENCE_ERROR


class HandlerError(FlowMachineError):
    """A fetch, publish or update handler failed."""

    kind = ErrorKind.HANDLER_EXCEPTION


class ProviderError(FlowMachineError):
    """The AI provider call failed (network, auth, rate limit, bad payload)."""

    kind = ErrorKind.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.status_code = status_code
        if status_code is not None:
            self.context.setdefault("status_code", status_code)


class ToolError(FlowMachineError):
    """A single tool invocation failed. Recoverable inside the conversation."""

    kind = ErrorKind.TOOL_ERROR


# =============================================================================
# Step outcome (explicit result type)
# =============================================================================


class OutcomeStatus(str, Enum):
    ADVANCED = "advanced"
    COMPLETED = "completed"
    COMPLETED_NO_ITEMS = "completed_no_items"
    FAILED = "failed"
    SKIPPED = "skipped"  # Redelivered message for a job that stopped or moved on
    DEFERRED = "deferred"  # Step still leased by another delivery; message put back


@dataclass
class StepError:
    """Structured failure context persisted on the job row."""

    kind: ErrorKind
    reason: FailureReason
    message: str
    flow_step_id: Optional[FlowStepId] = None
    handler_slug: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    stack: Optional[str] = None

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        flow_step_id: Optional[FlowStepId] = None,
        handler_slug: Optional[str] = None,
    ) -> "StepError":
        """Classify an exception raised while executing a step."""
        if isinstance(exc, ConfigurationError):
            kind, reason = exc.kind, exc.reason
        elif isinstance(exc, DereferenceError):
            kind, reason = exc.kind, FailureReason.STEP_EXECUTION_FAILURE
        elif isinstance(exc, FlowMachineError):
            kind, reason = exc.kind, FailureReason.EXCEPTION
        else:
            kind, reason = ErrorKind.HANDLER_EXCEPTION, FailureReason.EXCEPTION
        context = dict(exc.context) if isinstance(exc, FlowMachineError) else {}
        context.setdefault("exception_type", type(exc).__name__)
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return cls(
            kind=kind,
            reason=reason,
            message=str(exc) or type(exc).__name__,
            flow_step_id=flow_step_id,
            handler_slug=handler_slug,
            context=context,
            stack=stack,
        )

    def to_context(self) -> Dict[str, Any]:
        return {
            "error_kind": self.kind.value,
            "message": self.message,
            "flow_step_id": self.flow_step_id.to_dict() if self.flow_step_id else None,
            "handler_slug": self.handler_slug,
            "details": self.context,
            "stack": self.stack,
        }


@dataclass
class StepOutcome:
    """Result of executing one queue message."""

    status: OutcomeStatus
    flow_step_id: FlowStepId
    next_flow_step_id: Optional[FlowStepId] = None
    packet_count: int = 0
    error: Optional[StepError] = None

    @property
    def ok(self) -> bool:
        return self.status != OutcomeStatus.FAILED
