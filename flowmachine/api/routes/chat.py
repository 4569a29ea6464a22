"""
Chat endpoint.

    POST /api/chat - Send a conversation, receive the assistant reply and tool calls
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from flowmachine.api.deps import get_container
from flowmachine.runtime.errors import FlowMachineError
from flowmachine.runtime.registry import Container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


class ChatMessage(BaseModel):
    role: str = Field(..., description="user or assistant")
    content: str


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(..., min_length=1)


class ChatToolCall(BaseModel):
    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    success: bool
    data: Any = None
    error: str = ""


class ChatResponse(BaseModel):
    reply: str
    turns: int
    truncated: bool
    tool_calls: List[ChatToolCall] = Field(default_factory=list)


@router.post("", response_model=ChatResponse)
def chat(request: ChatRequest, container: Container = Depends(get_container)):
    if container.chat is None:
        raise HTTPException(
            status_code=503,
            detail={
                "error": "provider_unavailable",
                "message": "No AI provider is configured",
                "details": {},
            },
        )
    try:
        result = container.chat.run([m.model_dump() for m in request.messages])
    except FlowMachineError as e:
        logger.warning("Chat failed: %s", e.message)
        raise HTTPException(
            status_code=502,
            detail={"error": e.kind.value, "message": e.message, "details": e.context},
        )
    return ChatResponse(
        reply=result.final_text,
        turns=result.turns,
        truncated=result.truncated,
        tool_calls=[
            ChatToolCall(
                tool_name=inv.call.name,
                parameters=inv.call.arguments,
                success=inv.result.success,
                data=inv.result.data,
                error=inv.result.error or "",
            )
            for inv in result.tool_results
        ],
    )
