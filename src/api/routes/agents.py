from fastapi import APIRouter, Depends, HTTPException
from typing import Any, Dict, List, Optional
from pydantic import BaseModel

from src.core.models import AgentType, SequenceType
from src.core.services.orchestrator import AgentOrchestrator, get_orchestrator
from src.core.services.rate_limiter import RateLimiter, get_rate_limiter

router = APIRouter(prefix="/api/agents", tags=["agents"])

ENDPOINT_CLASS = {
    AgentType.REMEDIATION: "remediation",
    AgentType.MONITOR: "monitor",
    AgentType.ADAPTATION: "monitor",
    AgentType.SCHEDULER: "default",
}


class AgentRunRequest(BaseModel):
    agent_type: AgentType
    user_id: int
    params: Dict[str, Any] = {}
    options: Dict[str, Any] = {}


class StepModel(BaseModel):
    agent_type: AgentType
    params: Dict[str, Any] = {}


class SequenceRunRequest(BaseModel):
    user_id: int
    sequence_type: Optional[SequenceType] = None
    agents: Optional[List[StepModel]] = None
    options: Dict[str, Any] = {}


@router.post("/run")
async def run_agent(
    request: AgentRunRequest,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Run one agent for a user"""
    endpoint_class = ENDPOINT_CLASS[request.agent_type]
    limiter.check(request.user_id, endpoint_class)
    result = orchestrator.run_agent(
        request.agent_type, request.user_id, request.params, request.options
    )
    limiter.record(request.user_id, endpoint_class)
    return result.to_dict()


@router.post("/sequence")
async def run_sequence(
    request: SequenceRunRequest,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Run a named sequence or an explicit list of agents"""
    if (request.sequence_type is None) == (request.agents is None):
        raise HTTPException(
            status_code=422, detail="Provide exactly one of sequence_type or agents"
        )
    limiter.check(request.user_id, "monitor")
    if request.sequence_type is not None:
        result = orchestrator.run_sequence(
            request.sequence_type, request.user_id, request.options
        )
    else:
        result = orchestrator.run_sequence(
            [(step.agent_type, step.params) for step in request.agents],
            request.user_id,
            request.options,
        )
    limiter.record(request.user_id, "monitor")
    return result.to_dict()
