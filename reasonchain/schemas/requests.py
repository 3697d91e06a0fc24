from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class RequestStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RequestContext(BaseModel):
    """Identity of one user request as it travels through the agent chain."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=lambda: str(uuid4()), min_length=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    agent_chain: tuple[str, ...] = Field(default_factory=tuple)
    status: RequestStatus = Field(default=RequestStatus.IN_PROGRESS)
    user_query: str | None = None


def new_request_context(user_query: str | None = None, *, request_id: str | None = None) -> RequestContext:
    if request_id:
        return RequestContext(request_id=request_id, user_query=user_query)
    return RequestContext(user_query=user_query)


def add_agent_to_chain(context: RequestContext, agent_name: str) -> RequestContext:
    if context.agent_chain and context.agent_chain[-1] == agent_name:
        return context
    return context.model_copy(update={"agent_chain": (*context.agent_chain, agent_name)})
