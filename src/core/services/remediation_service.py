"""
Remediation Engine for the exam preparation engine.

Topic-targeted interventions: schedules extra review sessions for weak topics
and records whether those interventions paid off. A topic never has more
than one pending remediation review at a time.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..exceptions import NotFoundError, PlanInfeasibleError
from ..models import (
    Alert,
    AlertSeverity,
    AlertType,
    RemediationActionType,
    RemediationOutcome,
    StudyPlan,
    Task,
    TaskStatus,
    TaskType,
    Topic,
    User,
)
from .database import DatabaseService, get_db_service
from .plan_lock import PlanLockRegistry, get_plan_locks
from .scheduling_utils import (
    busy_intervals,
    find_available_time_slot,
    find_optimal_review_time,
    user_weekdays,
    user_window,
)
from .settings_config_service import get_settings_service
from .task_store import TaskStore

REMEDIATION_SOURCE = "REMEDIATION_AGENT"
TRIGGER_ALERT_TYPES = (AlertType.LOW_PERFORMANCE, AlertType.TOPIC_DIFFICULTY)
MAX_FALLBACK_TOPICS = 3


@dataclass
class RemediationResult:
    """Outcome of scheduling one remediation review"""

    task: Task
    created: bool
    alert: Optional[Alert] = None
    triggering_alert_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task.id,
            "topic_id": self.task.topic_id,
            "start_time": self.task.start_time.isoformat() if self.task.start_time else None,
            "end_time": self.task.end_time.isoformat() if self.task.end_time else None,
            "created": self.created,
            "alert_id": self.alert.id if self.alert else None,
            "triggering_alert_id": self.triggering_alert_id,
        }


@dataclass
class AlertProcessingResult:
    """Reviews scheduled while working through a user's alerts"""

    user_id: int
    scheduled: List[RemediationResult] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "scheduled": [r.to_dict() for r in self.scheduled],
            "errors": self.errors,
        }


def pending_remediation_reviews(
    store: TaskStore, plan_id: int, topic_id: int, now: datetime
) -> List[Task]:
    """Pending, not-yet-started remediation reviews for a topic, earliest first"""
    return [
        t
        for t in store.find_tasks(
            plan_id,
            statuses=[TaskStatus.PENDING],
            types=[TaskType.REVIEW],
            topic_id=topic_id,
            start_from=now,
        )
        if t.is_remediation
    ]


def average_score(scores: Iterable[Optional[float]]) -> Optional[float]:
    graded = [s for s in scores if s is not None]
    if not graded:
        return None
    return sum(graded) / len(graded)


class RemediationService:
    """Schedules remediation reviews and tracks their effectiveness"""

    def __init__(self, db_service: DatabaseService, plan_locks: Optional[PlanLockRegistry] = None):
        self.db = db_service
        self.plan_locks = plan_locks or get_plan_locks()
        self.logger = logging.getLogger(__name__)
        settings = get_settings_service()
        self.review_minutes = settings.getint("scheduling", "review_duration_minutes", 30)
        self.step_minutes = settings.getint("scheduling", "slot_search_step_minutes", 30)

    def _require_plan(self, session: Session, user_id: int) -> StudyPlan:
        plan = session.execute(
            select(StudyPlan).where(StudyPlan.user_id == user_id)
        ).scalar_one_or_none()
        if plan is None:
            raise NotFoundError(f"No study plan for user {user_id}")
        return plan

    def schedule_review(
        self,
        user_id: int,
        topic_id: int,
        alert_id: Optional[int] = None,
        source: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RemediationResult:
        """
        Schedule a remediation review for a topic.

        Returns the existing pending review unchanged when there is one.

        Raises:
            NotFoundError: Unknown plan or topic
            PlanInfeasibleError: No open slot before the exam
        """
        now = now or datetime.now()
        with self.db.get_session() as session:
            plan = self._require_plan(session, user_id)
            with self.plan_locks.hold(plan.id):
                result = self._schedule_in_session(
                    session, plan, topic_id, alert_id, source, now
                )
                session.commit()

        self.logger.info(
            f"Remediation review for user {user_id} topic {topic_id}: "
            f"task {result.task.id} ({'created' if result.created else 'existing'})"
        )
        return result

    def _schedule_in_session(
        self,
        session: Session,
        plan: StudyPlan,
        topic_id: int,
        alert_id: Optional[int],
        source: Optional[str],
        now: datetime,
    ) -> RemediationResult:
        topic = session.get(Topic, topic_id)
        if topic is None:
            raise NotFoundError(f"Topic {topic_id} not found")
        store = TaskStore(session)
        triggering = store.get_alert(alert_id) if alert_id is not None else None

        existing = pending_remediation_reviews(store, plan.id, topic_id, now)
        if existing:
            task = existing[0]
            if triggering is not None:
                store.update_alert_metadata(
                    triggering, scheduled_task_id=task.id, suggested_action="REVIEW_SCHEDULED"
                )
            return RemediationResult(task=task, created=False, triggering_alert_id=alert_id)

        user = session.get(User, plan.user_id)
        start_hour, end_hour = user_window(user)
        busy = busy_intervals(store.find_tasks(plan.id, scheduled_only=True))
        slot = find_optimal_review_time(
            busy, now, start_hour, end_hour, self.review_minutes, weekdays=user_weekdays(user)
        )
        if slot is None or slot[1] > plan.exam_date:
            slot = find_available_time_slot(
                busy,
                self.review_minutes,
                user_weekdays(user),
                start_hour,
                end_hour,
                search_from=now,
                deadline=plan.exam_date,
                step_minutes=self.step_minutes,
            )
        if slot is None:
            raise PlanInfeasibleError(
                f"No open slot for a review of '{topic.name}' before the exam"
            )

        task = store.add_task(
            Task(
                plan_id=plan.id,
                title=f"Review: {topic.name}",
                description=f"Focused review session for {topic.name}",
                type=TaskType.REVIEW,
                status=TaskStatus.PENDING,
                start_time=slot[0],
                end_time=slot[1],
                duration=self.review_minutes,
                topic_id=topic_id,
                difficulty=topic.difficulty,
                task_metadata={
                    "source": source or REMEDIATION_SOURCE,
                    "priority": "HIGH",
                    "is_remediation": True,
                    "related_alert_id": alert_id,
                },
            )
        )
        alert = store.add_alert(
            user_id=plan.user_id,
            plan_id=plan.id,
            type=AlertType.REMEDIATION,
            severity=AlertSeverity.MEDIUM,
            message=f"Review session for {topic.name} scheduled on {slot[0]:%A %d %B at %H:%M}.",
            related_task_id=task.id,
            related_topic_id=topic_id,
            metadata={
                "scheduled_task_id": task.id,
                "triggering_alert_id": alert_id,
                "source": REMEDIATION_SOURCE,
            },
            created_at=now,
        )
        if triggering is not None:
            store.update_alert_metadata(
                triggering, scheduled_task_id=task.id, suggested_action="REVIEW_SCHEDULED"
            )
        self._add_outcome(
            session,
            plan.user_id,
            topic_id,
            RemediationActionType.SCHEDULE_REVIEW,
            details={"scheduled_for": slot[0].isoformat()},
            task_id=task.id,
            alert_id=alert_id,
            now=now,
        )
        return RemediationResult(
            task=task, created=True, alert=alert, triggering_alert_id=alert_id
        )

    # --- Alert processing ---

    def process_alerts(
        self,
        user_id: int,
        alerts: Optional[List[Alert]] = None,
        now: Optional[datetime] = None,
    ) -> AlertProcessingResult:
        """
        Schedule reviews for the user's unresolved performance alerts.

        Alerts without a topic fall back to the weakest topics of the latest
        readiness score.
        """
        now = now or datetime.now()
        outcome = AlertProcessingResult(user_id=user_id)

        with self.db.get_session() as session:
            plan = self._require_plan(session, user_id)
            store = TaskStore(session)
            if alerts is None:
                alerts = store.find_alerts(user_id, types=TRIGGER_ALERT_TYPES, is_resolved=False)
            else:
                alerts = [a for a in alerts if a.type in TRIGGER_ALERT_TYPES and not a.is_resolved]

            with self.plan_locks.hold(plan.id):
                for alert in alerts:
                    if alert.related_topic_id is not None:
                        topic_ids = [alert.related_topic_id]
                    else:
                        topic_ids = self._weakest_topics(store, user_id)
                    for topic_id in topic_ids:
                        try:
                            outcome.scheduled.append(
                                self._schedule_in_session(
                                    session, plan, topic_id, alert.id, REMEDIATION_SOURCE, now
                                )
                            )
                        except (PlanInfeasibleError, NotFoundError) as e:
                            self.logger.warning(
                                f"Could not schedule review for topic {topic_id}: {e}"
                            )
                            outcome.errors.append(
                                {"alert_id": alert.id, "topic_id": topic_id, "error": str(e)}
                            )
                session.commit()

        self.logger.info(
            f"Processed {len(alerts)} alert(s) for user {user_id}: "
            f"{sum(1 for r in outcome.scheduled if r.created)} review(s) created"
        )
        return outcome

    def _weakest_topics(self, store: TaskStore, user_id: int) -> List[int]:
        readiness = store.latest_readiness(user_id)
        if readiness is None or not readiness.weak_areas:
            return []
        averages = {}
        for topic_id in readiness.weak_areas:
            avg = average_score(
                p.score for p in store.find_performances(user_id=user_id, topic_id=topic_id)
            )
            averages[topic_id] = avg if avg is not None else 0.0
        ranked = sorted(averages, key=lambda t: (averages[t], t))
        return ranked[:MAX_FALLBACK_TOPICS]

    # --- Effectiveness ---

    def _add_outcome(
        self,
        session: Session,
        user_id: int,
        topic_id: int,
        action_type: RemediationActionType,
        details: Optional[Dict[str, Any]] = None,
        task_id: Optional[int] = None,
        alert_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RemediationOutcome:
        store = TaskStore(session)
        baseline = average_score(
            p.score
            for p in store.find_performances(user_id=user_id, topic_id=topic_id)
            if now is None or p.created_at <= now
        )
        outcome = RemediationOutcome(
            user_id=user_id,
            topic_id=topic_id,
            action_type=action_type,
            task_id=task_id,
            alert_id=alert_id,
            baseline_score=round(baseline, 2) if baseline is not None else None,
            details=dict(details or {}),
        )
        if now is not None:
            outcome.created_at = now
        session.add(outcome)
        session.flush()
        return outcome

    def track_effectiveness(
        self,
        user_id: int,
        topic_id: int,
        action_type: RemediationActionType,
        details: Optional[Dict[str, Any]] = None,
        task_id: Optional[int] = None,
        alert_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RemediationOutcome:
        """Record a remediation action with the topic's current average as baseline"""
        now = now or datetime.now()
        with self.db.get_session() as session:
            if session.get(User, user_id) is None:
                raise NotFoundError(f"User {user_id} not found")
            if session.get(Topic, topic_id) is None:
                raise NotFoundError(f"Topic {topic_id} not found")
            outcome = self._add_outcome(
                session, user_id, topic_id, action_type, details, task_id, alert_id, now
            )
            session.commit()
        self.logger.info(
            f"Tracked {action_type.value} for user {user_id} topic {topic_id} "
            f"(baseline={outcome.baseline_score})"
        )
        return outcome

    def evaluate_effectiveness(
        self, user_id: int, topic_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Compare each recorded action's baseline with the scores that followed it"""
        with self.db.get_session() as session:
            stmt = select(RemediationOutcome).where(RemediationOutcome.user_id == user_id)
            if topic_id is not None:
                stmt = stmt.where(RemediationOutcome.topic_id == topic_id)
            stmt = stmt.order_by(RemediationOutcome.created_at, RemediationOutcome.id)
            outcomes = list(session.execute(stmt).scalars().all())

            store = TaskStore(session)
            report = []
            for outcome in outcomes:
                after = [
                    p.score
                    for p in store.find_performances(
                        user_id=user_id, topic_id=outcome.topic_id, since=outcome.created_at
                    )
                    if p.score is not None
                ]
                follow_up = average_score(after)
                delta = None
                if follow_up is not None and outcome.baseline_score is not None:
                    delta = round(follow_up - outcome.baseline_score, 2)
                report.append(
                    {
                        "outcome_id": outcome.id,
                        "topic_id": outcome.topic_id,
                        "action_type": outcome.action_type.value,
                        "baseline_score": outcome.baseline_score,
                        "follow_up_score": round(follow_up, 2) if follow_up is not None else None,
                        "samples": len(after),
                        "delta": delta,
                        "improved": delta is not None and delta > 0,
                        "created_at": outcome.created_at.isoformat(),
                    }
                )
        return report


_remediation_service = None


def get_remediation_service() -> RemediationService:
    """Get the global remediation service"""
    global _remediation_service
    if _remediation_service is None:
        _remediation_service = RemediationService(get_db_service())
    return _remediation_service
