"""
Task status transitions with their side effects made explicit.

Allowed moves:
    PENDING -> IN_PROGRESS -> COMPLETED
    PENDING -> SKIPPED
    PENDING -> COMPLETED
    COMPLETED -> PENDING, SKIPPED -> PENDING, IN_PROGRESS -> PENDING

Entering COMPLETED synthesizes a Performance when the task has none;
reverting COMPLETED -> PENDING deletes the task's Performance records.
Readiness is recomputed after every change. The service also records graded
attempts, moves tasks to new slots and deletes tasks.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..exceptions import InvalidTransitionError
from ..models import (
    Performance,
    ReadinessScore,
    StudyPlan,
    Task,
    TaskStatus,
    TaskType,
)
from .database import DatabaseService, get_db_service
from .plan_lock import PlanLockRegistry, get_plan_locks
from .readiness_service import ReadinessService, get_readiness_service
from .task_store import TaskStore

ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.SKIPPED, TaskStatus.COMPLETED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.PENDING},
    TaskStatus.COMPLETED: {TaskStatus.PENDING},
    TaskStatus.SKIPPED: {TaskStatus.PENDING},
}

DEFAULT_QUIZ_SCORE = 75.0
DEFAULT_SCORE = 70.0
DEFAULT_CONFIDENCE = 3


@dataclass
class StatusTransitionResult:
    """What a status change did"""

    task: Task
    previous_status: TaskStatus
    new_status: TaskStatus
    created_performance: Optional[Performance] = None
    deleted_performances: int = 0
    readiness: Optional[ReadinessScore] = None

    @property
    def changed(self) -> bool:
        return self.previous_status != self.new_status


class TaskStatusService:
    """Applies status transitions to tasks"""

    def __init__(
        self,
        db_service: DatabaseService,
        readiness_service: Optional[ReadinessService] = None,
        plan_locks: Optional[PlanLockRegistry] = None,
    ):
        self.db = db_service
        self.readiness = readiness_service or get_readiness_service()
        self.plan_locks = plan_locks or get_plan_locks()
        self.logger = logging.getLogger(__name__)

    def apply_status_transition(
        self,
        task_id: int,
        new_status: TaskStatus,
        score: Optional[float] = None,
        confidence: Optional[int] = None,
        time_spent: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> StatusTransitionResult:
        """
        Move a task to a new status in one transaction.

        ``score``, ``confidence`` and ``time_spent`` override the synthesized
        Performance when completing a task that has none yet.

        Raises:
            NotFoundError: Unknown task
            InvalidTransitionError: Move not allowed by the state machine
        """
        now = now or datetime.now()

        with self.db.get_session() as session:
            store = TaskStore(session)
            task = store.require_task(task_id)
            plan = session.get(StudyPlan, task.plan_id)

            with self.plan_locks.hold(task.plan_id):
                previous = task.status
                result = StatusTransitionResult(
                    task=task, previous_status=previous, new_status=new_status
                )
                if previous == new_status:
                    return result
                if new_status not in ALLOWED_TRANSITIONS.get(previous, set()):
                    raise InvalidTransitionError(
                        f"Task {task_id} cannot move from {previous.value} to {new_status.value}"
                    )

                task.status = new_status
                if new_status == TaskStatus.COMPLETED:
                    task.completed_at = now
                    if store.count_performances_for_task(task.id) == 0:
                        result.created_performance = store.add_performance(
                            Performance(
                                user_id=plan.user_id,
                                task_id=task.id,
                                topic_id=task.topic_id,
                                content_ref=task.content_ref,
                                score=score
                                if score is not None
                                else (
                                    DEFAULT_QUIZ_SCORE
                                    if task.type == TaskType.QUIZ
                                    else DEFAULT_SCORE
                                ),
                                time_spent=time_spent
                                if time_spent is not None
                                else task.duration,
                                completed=True,
                                confidence=confidence or DEFAULT_CONFIDENCE,
                                answers=[],
                                created_at=now,
                            )
                        )
                elif previous == TaskStatus.COMPLETED:
                    task.completed_at = None
                    result.deleted_performances = store.delete_performances_for_task(task.id)

                session.flush()
                result.readiness = self.readiness.calculate_in_session(
                    session, plan.user_id, now
                )
                session.commit()

        self.logger.info(
            f"Task {task_id}: {previous.value} -> {new_status.value} "
            f"(performance created={result.created_performance is not None}, "
            f"deleted={result.deleted_performances})"
        )
        return result

    def record_performance(
        self,
        task_id: int,
        score: Optional[float] = None,
        confidence: int = DEFAULT_CONFIDENCE,
        time_spent: Optional[int] = None,
        answers: Optional[list] = None,
        now: Optional[datetime] = None,
    ) -> Performance:
        """Append a graded attempt for a task and recompute readiness"""
        now = now or datetime.now()
        with self.db.get_session() as session:
            store = TaskStore(session)
            task = store.require_task(task_id)
            plan = session.get(StudyPlan, task.plan_id)
            performance = store.add_performance(
                Performance(
                    user_id=plan.user_id,
                    task_id=task.id,
                    topic_id=task.topic_id,
                    content_ref=task.content_ref,
                    score=score,
                    time_spent=time_spent if time_spent is not None else task.duration,
                    completed=task.status == TaskStatus.COMPLETED,
                    confidence=confidence,
                    answers=list(answers or []),
                    created_at=now,
                )
            )
            self.readiness.calculate_in_session(session, plan.user_id, now)
            session.commit()
        return performance

    def reschedule_task(self, task_id: int, start: datetime, end: datetime) -> Task:
        """
        Move a task to a new slot.

        Raises:
            NotFoundError: Unknown task
            DataIntegrityError: Invalid range or overlap with another task
        """
        with self.db.get_session() as session:
            store = TaskStore(session)
            task = store.require_task(task_id)
            with self.plan_locks.hold(task.plan_id):
                store.reschedule_task(task, start, end)
                session.commit()
        return task

    def delete_task(self, task_id: int, now: Optional[datetime] = None) -> int:
        """Delete a task and resolve the alerts that pointed at it"""
        now = now or datetime.now()
        with self.db.get_session() as session:
            store = TaskStore(session)
            task = store.require_task(task_id)
            with self.plan_locks.hold(task.plan_id):
                alerts = store.find_alerts_for_tasks([task.id])
                for alert in alerts:
                    store.resolve_alert(alert, now, resolution="TASK_REMOVED")
                store.delete_performances_for_task(task.id)
                store.delete_tasks([task])
                session.commit()
        self.logger.info(f"Deleted task {task_id}, resolved {len(alerts)} alert(s)")
        return len(alerts)


_task_status_service = None


def get_task_status_service() -> TaskStatusService:
    """Get the global task status service"""
    global _task_status_service
    if _task_status_service is None:
        _task_status_service = TaskStatusService(get_db_service())
    return _task_status_service
