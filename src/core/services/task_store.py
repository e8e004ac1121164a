"""
Task store adapter.

Typed create/read/update/delete-by-filter access to the calendar records
(Task, Alert, Adaptation, Performance, ReadinessScore) bound to one
SQLAlchemy session. Callers own the session and its commit.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.orm import Session

from ..exceptions import DataIntegrityError, NotFoundError
from ..models import (
    Adaptation,
    AdaptationType,
    Alert,
    AlertSeverity,
    AlertType,
    Performance,
    ReadinessScore,
    Task,
    TaskStatus,
    TaskType,
)


def minutes_between(start: datetime, end: datetime) -> int:
    return int(round((end - start).total_seconds() / 60))


class TaskStore:
    """Repository over the calendar collections for one session"""

    def __init__(self, session: Session):
        self.session = session

    # --- Tasks ---

    def get_task(self, task_id: int) -> Optional[Task]:
        return self.session.get(Task, task_id)

    def require_task(self, task_id: int) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def find_tasks(
        self,
        plan_id: int,
        statuses: Optional[Iterable[TaskStatus]] = None,
        types: Optional[Iterable[TaskType]] = None,
        topic_id: Optional[int] = None,
        start_from: Optional[datetime] = None,
        start_before: Optional[datetime] = None,
        end_before: Optional[datetime] = None,
        scheduled_only: bool = False,
    ) -> List[Task]:
        """Find tasks of a plan matching every given filter, ordered by start"""
        stmt = select(Task).where(Task.plan_id == plan_id)
        if statuses is not None:
            stmt = stmt.where(Task.status.in_(list(statuses)))
        if types is not None:
            stmt = stmt.where(Task.type.in_(list(types)))
        if topic_id is not None:
            stmt = stmt.where(Task.topic_id == topic_id)
        if start_from is not None:
            stmt = stmt.where(Task.start_time >= start_from)
        if start_before is not None:
            stmt = stmt.where(Task.start_time < start_before)
        if end_before is not None:
            stmt = stmt.where(Task.end_time < end_before)
        if scheduled_only:
            stmt = stmt.where(Task.start_time.is_not(None))
        stmt = stmt.order_by(Task.start_time, Task.id)
        return list(self.session.execute(stmt).scalars().all())

    def find_overlapping(
        self,
        plan_id: int,
        start: datetime,
        end: datetime,
        exclude_task_id: Optional[int] = None,
    ) -> List[Task]:
        """Tasks whose [start, end) interval intersects the given one"""
        stmt = select(Task).where(
            Task.plan_id == plan_id,
            Task.start_time < end,
            Task.end_time > start,
        )
        if exclude_task_id is not None:
            stmt = stmt.where(Task.id != exclude_task_id)
        return list(self.session.execute(stmt).scalars().all())

    def _check_times(self, task: Task, strict_duration: bool) -> None:
        if task.start_time is None and task.end_time is None:
            if task.duration is None or task.duration <= 0:
                raise DataIntegrityError("Unscheduled task needs a positive duration")
            return
        if task.start_time is None or task.end_time is None:
            raise DataIntegrityError("Task needs both start_time and end_time or neither")
        if task.end_time <= task.start_time:
            raise DataIntegrityError(
                f"Task end_time {task.end_time} must be after start_time {task.start_time}"
            )
        derived = minutes_between(task.start_time, task.end_time)
        if strict_duration and task.duration is not None and task.duration != derived:
            raise DataIntegrityError(
                f"Task duration {task.duration} does not match time range ({derived} minutes)"
            )
        task.duration = derived

    def _check_no_overlap(self, task: Task) -> None:
        if task.start_time is None:
            return
        clashes = self.find_overlapping(
            task.plan_id, task.start_time, task.end_time, exclude_task_id=task.id
        )
        if clashes:
            ids = ", ".join(str(t.id) for t in clashes)
            raise DataIntegrityError(
                f"Task '{task.title}' [{task.start_time} - {task.end_time}) "
                f"overlaps existing task(s) {ids} in plan {task.plan_id}"
            )

    def add_task(self, task: Task) -> Task:
        """Insert a task, enforcing time-range and no-overlap rules"""
        self._check_times(task, strict_duration=True)
        if task.task_metadata is None:
            task.task_metadata = {}
        self._check_no_overlap(task)
        self.session.add(task)
        self.session.flush()
        return task

    def reschedule_task(self, task: Task, start: datetime, end: datetime) -> Task:
        """Move a task, remembering its pre-adaptation slot on the first move"""
        if task.original_start_time is None and task.start_time is not None:
            task.original_start_time = task.start_time
            task.original_end_time = task.end_time
        task.start_time = start
        task.end_time = end
        self._check_times(task, strict_duration=False)
        self._check_no_overlap(task)
        self.session.flush()
        return task

    def update_task_metadata(self, task: Task, **values: Any) -> Task:
        # Reassign so the JSON column is marked dirty
        task.task_metadata = {**(task.task_metadata or {}), **values}
        self.session.flush()
        return task

    def delete_tasks(self, tasks: Iterable[Task]) -> int:
        count = 0
        for task in tasks:
            self.session.delete(task)
            count += 1
        self.session.flush()
        return count

    # --- Alerts ---

    def find_alerts(
        self,
        user_id: int,
        types: Optional[Iterable[AlertType]] = None,
        is_resolved: Optional[bool] = None,
        related_task_id: Optional[int] = None,
        related_topic_id: Optional[int] = None,
    ) -> List[Alert]:
        stmt = select(Alert).where(Alert.user_id == user_id)
        if types is not None:
            stmt = stmt.where(Alert.type.in_(list(types)))
        if is_resolved is not None:
            stmt = stmt.where(Alert.is_resolved == is_resolved)
        if related_task_id is not None:
            stmt = stmt.where(Alert.related_task_id == related_task_id)
        if related_topic_id is not None:
            stmt = stmt.where(Alert.related_topic_id == related_topic_id)
        stmt = stmt.order_by(Alert.created_at.desc(), Alert.id.desc())
        return list(self.session.execute(stmt).scalars().all())

    def find_alerts_for_tasks(self, task_ids: Iterable[int]) -> List[Alert]:
        """Unresolved alerts referencing any of the tasks, directly or via metadata"""
        ids = set(task_ids)
        if not ids:
            return []
        stmt = select(Alert).where(Alert.is_resolved.is_(False))
        matches = []
        for alert in self.session.execute(stmt).scalars().all():
            scheduled = (alert.alert_metadata or {}).get("scheduled_task_id")
            if alert.related_task_id in ids or scheduled in ids:
                matches.append(alert)
        return matches

    def get_alert(self, alert_id: int) -> Optional[Alert]:
        return self.session.get(Alert, alert_id)

    def add_alert(
        self,
        user_id: int,
        plan_id: Optional[int],
        type: AlertType,
        severity: AlertSeverity,
        message: str,
        related_task_id: Optional[int] = None,
        related_topic_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> Alert:
        alert = Alert(
            user_id=user_id,
            plan_id=plan_id,
            type=type,
            severity=severity,
            message=message,
            related_task_id=related_task_id,
            related_topic_id=related_topic_id,
            alert_metadata=dict(metadata or {}),
            is_resolved=False,
        )
        if created_at is not None:
            alert.created_at = created_at
        self.session.add(alert)
        self.session.flush()
        return alert

    def resolve_alert(self, alert: Alert, now: Optional[datetime] = None, **metadata: Any) -> Alert:
        alert.is_resolved = True
        alert.resolved_at = now or datetime.now()
        if metadata:
            alert.alert_metadata = {**(alert.alert_metadata or {}), **metadata}
        self.session.flush()
        return alert

    def update_alert_metadata(self, alert: Alert, **values: Any) -> Alert:
        alert.alert_metadata = {**(alert.alert_metadata or {}), **values}
        self.session.flush()
        return alert

    # --- Performance ---

    def find_performances(
        self,
        user_id: Optional[int] = None,
        task_id: Optional[int] = None,
        topic_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> List[Performance]:
        stmt = select(Performance)
        if user_id is not None:
            stmt = stmt.where(Performance.user_id == user_id)
        if task_id is not None:
            stmt = stmt.where(Performance.task_id == task_id)
        if topic_id is not None:
            stmt = stmt.where(Performance.topic_id == topic_id)
        if since is not None:
            stmt = stmt.where(Performance.created_at > since)
        stmt = stmt.order_by(Performance.created_at, Performance.id)
        return list(self.session.execute(stmt).scalars().all())

    def add_performance(self, performance: Performance) -> Performance:
        if performance.score is not None and not 0 <= performance.score <= 100:
            raise DataIntegrityError(f"Score {performance.score} outside 0-100")
        if not 1 <= (performance.confidence or 3) <= 5:
            raise DataIntegrityError(f"Confidence {performance.confidence} outside 1-5")
        self.session.add(performance)
        self.session.flush()
        return performance

    def delete_performances_for_task(self, task_id: int) -> int:
        result = self.session.execute(
            delete(Performance).where(Performance.task_id == task_id)
        )
        self.session.flush()
        return result.rowcount or 0

    def count_performances_for_task(self, task_id: int) -> int:
        return self.session.execute(
            select(func.count(Performance.id)).where(Performance.task_id == task_id)
        ).scalar_one()

    # --- Readiness ---

    def latest_readiness(self, user_id: int) -> Optional[ReadinessScore]:
        stmt = (
            select(ReadinessScore)
            .where(ReadinessScore.user_id == user_id)
            .order_by(ReadinessScore.created_at.desc(), ReadinessScore.id.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def add_readiness(self, score: ReadinessScore) -> ReadinessScore:
        self.session.add(score)
        self.session.flush()
        return score

    # --- Adaptations ---

    def add_adaptation(
        self,
        user_id: int,
        plan_id: int,
        type: AdaptationType,
        description: str,
        reason: str,
        task_id: Optional[int] = None,
        topic_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> Adaptation:
        adaptation = Adaptation(
            user_id=user_id,
            plan_id=plan_id,
            type=type,
            description=description,
            reason=reason,
            task_id=task_id,
            topic_id=topic_id,
            adaptation_metadata=dict(metadata or {}),
        )
        if created_at is not None:
            adaptation.created_at = created_at
        self.session.add(adaptation)
        self.session.flush()
        return adaptation

    def find_adaptations(self, user_id: int, plan_id: Optional[int] = None) -> List[Adaptation]:
        stmt = select(Adaptation).where(Adaptation.user_id == user_id)
        if plan_id is not None:
            stmt = stmt.where(Adaptation.plan_id == plan_id)
        stmt = stmt.order_by(Adaptation.created_at, Adaptation.id)
        return list(self.session.execute(stmt).scalars().all())
