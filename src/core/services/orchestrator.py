"""
Agent Orchestrator for the exam preparation engine.

Runs a single agent, a fixed sequence, or an ad-hoc list of agents for one
learner. Step failures become per-step status in the aggregate result; only a
failure of the first (or only) step propagates to the caller. There are no
retries inside a run.
"""

import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import select

from ..exceptions import ExamPrepException, NotFoundError
from ..models import AgentType, SequenceType, StudyPlan, User
from .agents import AgentContext, get_agent
from .database import DatabaseService, get_db_service
from .logging import get_logging_service

SEQUENCES: Dict[SequenceType, List[AgentType]] = {
    SequenceType.STANDARD: [AgentType.MONITOR, AgentType.ADAPTATION],
    SequenceType.COMPREHENSIVE: [
        AgentType.MONITOR,
        AgentType.ADAPTATION,
        AgentType.REMEDIATION,
    ],
}

# Steps whose failure does not stop the steps after them
CONTINUE_ON_ERROR = {AgentType.MONITOR}


class StepStatus(enum.Enum):
    SUCCEEDED = "SUCCEEDED"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"
    SKIPPED_INPUT = "SKIPPED_INPUT"


class RunOutcome(enum.Enum):
    SUCCEEDED = "SUCCEEDED"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"


StepSpec = Union[AgentType, Tuple[AgentType, Dict[str, Any]]]


def _serialize(result: Any) -> Any:
    if result is None:
        return None
    if hasattr(result, "to_dict"):
        return result.to_dict()
    return result


@dataclass
class StepResult:
    """Result of one orchestrated step"""

    agent: AgentType
    status: StepStatus
    result: Any = None
    error: Optional[str] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent.value,
            "status": self.status.value,
            "result": _serialize(self.result),
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


@dataclass
class OrchestrationResult:
    """Aggregate result of an orchestrated run"""

    user_id: int
    steps: List[StepResult] = field(default_factory=list)
    sequence: Optional[SequenceType] = None

    @property
    def failed_step(self) -> Optional[int]:
        """1-based number of the first failed step"""
        for number, step in enumerate(self.steps, start=1):
            if step.status == StepStatus.FAILED:
                return number
        return None

    @property
    def outcome(self) -> RunOutcome:
        statuses = {s.status for s in self.steps}
        if StepStatus.FAILED in statuses:
            return RunOutcome.FAILED
        if statuses & {StepStatus.DEGRADED, StepStatus.SKIPPED_INPUT}:
            return RunOutcome.DEGRADED
        return RunOutcome.SUCCEEDED

    def step(self, agent: AgentType) -> Optional[StepResult]:
        for step in self.steps:
            if step.agent == agent:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "sequence": self.sequence.value if self.sequence else None,
            "outcome": self.outcome.value,
            "failed_step": self.failed_step,
            "steps": [s.to_dict() for s in self.steps],
        }


class AgentOrchestrator:
    """Coordinates agent runs for one learner at a time"""

    def __init__(self, db_service: DatabaseService):
        self.db = db_service
        self.logger = logging.getLogger(__name__)

    def _check_preconditions(self, user_id: int, agents: Iterable[AgentType]) -> None:
        with self.db.get_session() as session:
            if session.get(User, user_id) is None:
                raise NotFoundError(f"User {user_id} not found")
            if any(a != AgentType.SCHEDULER for a in agents):
                plan = session.execute(
                    select(StudyPlan.id).where(StudyPlan.user_id == user_id)
                ).scalar_one_or_none()
                if plan is None:
                    raise NotFoundError(f"User {user_id} does not have a study plan")

    def _run_step(
        self, agent_type: AgentType, ctx: AgentContext, params: Dict[str, Any]
    ) -> Tuple[StepResult, Optional[Exception]]:
        start = time.perf_counter()
        try:
            result = get_agent(agent_type).run(ctx, params)
        except Exception as e:
            duration_ms = int((time.perf_counter() - start) * 1000)
            if isinstance(e, ExamPrepException):
                self.logger.error(f"Agent {agent_type.value} failed for user {ctx.user_id}: {e}")
            else:
                self.logger.exception(
                    f"Agent {agent_type.value} crashed for user {ctx.user_id}: {e}"
                )
            get_logging_service().log_agent_run(
                agent_type.value,
                user_id=ctx.user_id,
                success=False,
                duration_ms=duration_ms,
                error=str(e),
                error_type=type(e).__name__,
            )
            return (
                StepResult(agent_type, StepStatus.FAILED, error=str(e), duration_ms=duration_ms),
                e,
            )

        duration_ms = int((time.perf_counter() - start) * 1000)
        degraded = bool(getattr(result, "degraded", False))
        get_logging_service().log_agent_run(
            agent_type.value,
            user_id=ctx.user_id,
            success=True,
            duration_ms=duration_ms,
            degraded=degraded,
        )
        status = StepStatus.DEGRADED if degraded else StepStatus.SUCCEEDED
        return StepResult(agent_type, status, result=result, duration_ms=duration_ms), None

    def run_steps(
        self,
        steps: Sequence[StepSpec],
        user_id: int,
        options: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        sequence: Optional[SequenceType] = None,
    ) -> OrchestrationResult:
        """
        Run an ordered list of agents.

        Each step is an AgentType or an (AgentType, params) pair. A failing
        continue-on-error step lets the next step run without its output;
        any other failure marks the remaining steps SKIPPED_INPUT.

        Raises:
            NotFoundError: Unknown user, or missing plan for a non-scheduler agent
            Exception: The first step failed; later failures are reported as
                FAILED steps whatever their type
        """
        normalized = [s if isinstance(s, tuple) else (s, {}) for s in steps]
        self._check_preconditions(user_id, [a for a, _ in normalized])

        ctx = AgentContext(user_id=user_id, now=now, options=dict(options or {}))
        result = OrchestrationResult(user_id=user_id, sequence=sequence)
        blocked = False

        for index, (agent_type, params) in enumerate(normalized):
            if blocked:
                result.steps.append(StepResult(agent_type, StepStatus.SKIPPED_INPUT))
                continue
            step, error = self._run_step(agent_type, ctx, dict(params or {}))
            result.steps.append(step)
            if error is None:
                ctx.results[agent_type] = step.result
                continue

            ctx.failed.add(agent_type)
            if len(normalized) == 1:
                raise error
            if agent_type in CONTINUE_ON_ERROR:
                continue
            if index == 0:
                raise error
            blocked = True

        self.logger.info(
            f"Orchestrated run for user {user_id}: "
            f"{[s.agent.value for s in result.steps]} -> {result.outcome.value}"
        )
        return result

    def run_agent(
        self,
        agent_type: AgentType,
        user_id: int,
        params: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> OrchestrationResult:
        """
        Run a single agent.

        Raises:
            NotFoundError: Unknown user, or missing plan for a non-scheduler agent
            ExamPrepException: The agent failed
        """
        return self.run_steps([(agent_type, params or {})], user_id, options, now)

    def run_sequence(
        self,
        sequence: Union[SequenceType, Sequence[StepSpec]],
        user_id: int,
        options: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> OrchestrationResult:
        """Run a named sequence, or an explicit list of agents"""
        if isinstance(sequence, SequenceType):
            return self.run_steps(SEQUENCES[sequence], user_id, options, now, sequence=sequence)
        return self.run_steps(list(sequence), user_id, options, now)


_orchestrator = None


def get_orchestrator() -> AgentOrchestrator:
    """Get the global agent orchestrator"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = AgentOrchestrator(get_db_service())
    return _orchestrator
