"""
Agents the orchestrator can run.

Each AgentType maps to one agent class implementing ``run(ctx, params)``.
Agents are thin adapters from the orchestrator's context to an engine
service; the engines hold the actual logic.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Set

from ..exceptions import ValidationError
from ..models import AgentType, PreferredStudyTime
from .adaptation_service import get_adaptation_service
from .database import get_db_service
from .monitor_service import MonitorResult, get_monitor_service
from .plan_builder import Availability, get_plan_builder_service
from .remediation_service import get_remediation_service

DEFAULT_EXAM_HORIZON_DAYS = 90


@dataclass
class AgentContext:
    """State shared by the steps of one orchestrated run"""

    user_id: int
    now: Optional[datetime] = None
    options: Dict[str, Any] = field(default_factory=dict)
    results: Dict[AgentType, Any] = field(default_factory=dict)
    failed: Set[AgentType] = field(default_factory=set)

    @property
    def monitor_result(self) -> Optional[MonitorResult]:
        return self.results.get(AgentType.MONITOR)


class Agent(Protocol):
    agent_type: AgentType

    def run(self, ctx: AgentContext, params: Dict[str, Any]) -> Any: ...


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise ValidationError(f"Invalid exam date: {value}") from e


def _parse_int(params: Dict[str, Any], key: str) -> int:
    value = params[key]
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{key} must be an integer, got {value!r}") from e


def _parse_availability(params: Dict[str, Any]) -> Availability:
    days = params["available_days"]
    if isinstance(days, str) or not isinstance(days, (list, tuple)):
        raise ValidationError(f"available_days must be a list of day names, got {days!r}")
    hours = params.get("hours_per_day", 2)
    try:
        hours = float(hours)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"hours_per_day must be a number, got {hours!r}") from e
    if hours <= 0:
        raise ValidationError("hours_per_day must be positive")
    try:
        preferred = PreferredStudyTime(params.get("preferred_time", "MORNING"))
    except ValueError as e:
        raise ValidationError(f"Unknown preferred_time: {params.get('preferred_time')}") from e
    return Availability.from_days([str(day) for day in days], hours, preferred)


class SchedulerAgent:
    """Builds the learner's plan, or reports the one that already exists"""

    agent_type = AgentType.SCHEDULER

    def run(self, ctx: AgentContext, params: Dict[str, Any]) -> Dict[str, Any]:
        existing = get_db_service().get_plan_for_user(ctx.user_id)
        if existing is not None:
            return {"plan_id": existing.id, "created": False}

        now = ctx.now or datetime.now()
        exam_date = (
            _parse_datetime(params["exam_date"])
            if params.get("exam_date")
            else now + timedelta(days=DEFAULT_EXAM_HORIZON_DAYS)
        )
        availability = None
        if params.get("available_days"):
            availability = _parse_availability(params)
        built = get_plan_builder_service().build_plan(
            ctx.user_id,
            exam_date,
            availability=availability,
            weak_areas=params.get("weak_areas"),
            recommended_focus=params.get("recommended_focus"),
            now=now,
        )
        return {
            "plan_id": built.plan.id,
            "created": True,
            "task_count": len(built.tasks),
            "validation": built.validation.to_dict(),
            "unplaced_minutes": built.unplaced_minutes,
        }


class MonitorAgent:
    """Computes plan statistics and raises alerts"""

    agent_type = AgentType.MONITOR

    def run(self, ctx: AgentContext, params: Dict[str, Any]) -> MonitorResult:
        return get_monitor_service().run(ctx.user_id, now=ctx.now)


class AdaptationAgent:
    """Adapts the calendar, consuming the monitor step's output when present"""

    agent_type = AgentType.ADAPTATION

    def run(self, ctx: AgentContext, params: Dict[str, Any]):
        return get_adaptation_service().run(
            ctx.user_id,
            monitor_result=ctx.monitor_result,
            now=ctx.now,
            recompute_monitor=AgentType.MONITOR not in ctx.failed,
        )


class RemediationAgent:
    """Schedules reviews for unresolved performance alerts"""

    agent_type = AgentType.REMEDIATION

    def run(self, ctx: AgentContext, params: Dict[str, Any]):
        service = get_remediation_service()
        if params.get("topic_id") is not None:
            topic_id = _parse_int(params, "topic_id")
            alert_id = (
                _parse_int(params, "alert_id") if params.get("alert_id") is not None else None
            )
            return service.schedule_review(
                ctx.user_id,
                topic_id,
                alert_id=alert_id,
                source=params.get("source"),
                now=ctx.now,
            )
        alerts: Optional[List] = None
        if ctx.monitor_result is not None:
            alerts = ctx.monitor_result.active_alerts
        return service.process_alerts(ctx.user_id, alerts=alerts, now=ctx.now)


AGENTS: Dict[AgentType, Agent] = {
    AgentType.SCHEDULER: SchedulerAgent(),
    AgentType.MONITOR: MonitorAgent(),
    AgentType.ADAPTATION: AdaptationAgent(),
    AgentType.REMEDIATION: RemediationAgent(),
}


def get_agent(agent_type: AgentType) -> Agent:
    return AGENTS[agent_type]
