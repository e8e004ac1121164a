"""
Monitor Engine for the exam preparation engine.

Compares the planned calendar with actual outcomes, recomputes readiness and
raises alerts. Alert rules are independent and evaluated on every run; an
alert is only created when no unresolved alert of the same type exists for
the user.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import datetime, date
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from ..exceptions import EnrichmentUnavailableError, NotFoundError
from ..models import (
    Alert,
    AlertSeverity,
    AlertType,
    Performance,
    ReadinessScore,
    StudyPlan,
    Task,
    TaskStatus,
)
from .database import DatabaseService, get_db_service
from .plan_lock import PlanLockRegistry, get_plan_locks
from .readiness_service import ReadinessService, get_readiness_service
from .settings_config_service import get_settings_service
from .summarizer import Summarizer, get_summarizer
from .task_store import TaskStore

TOPIC_DIFFICULTY_THRESHOLD = 50
TOPIC_DIFFICULTY_HIGH = 40
DEVIATION_DAYS = 2
DEVIATION_DAYS_HIGH = 3
STUDY_GAP_DAYS = 3


@dataclass
class MonitorStats:
    """Planned-vs-actual statistics for one plan"""

    total_tasks: int = 0
    completed_tasks: int = 0
    missed_tasks: int = 0
    skipped_tasks: int = 0
    completion_rate: float = 0.0
    missed_ratio: float = 0.0
    average_performance: Optional[float] = None
    consecutive_missed_days: int = 0
    missed_task_ids: List[int] = field(default_factory=list)
    topic_averages: Dict[int, float] = field(default_factory=dict)
    topic_sample_counts: Dict[int, int] = field(default_factory=dict)
    average_delay_days: Optional[float] = None
    longest_study_gap_days: Optional[int] = None
    overall_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AlertDraft:
    type: AlertType
    severity: AlertSeverity
    message: str
    related_topic_id: Optional[int] = None
    related_task_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MonitorResult:
    """Output of one monitor run"""

    user_id: int
    plan_id: int
    stats: MonitorStats
    alerts: List[Alert]
    active_alerts: List[Alert]
    readiness: Optional[ReadinessScore] = None
    summary: Optional[str] = None
    insights: Optional[List[str]] = None
    enrichment_error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.enrichment_error is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "stats": self.stats.to_dict(),
            "alerts": [alert_to_dict(a) for a in self.alerts],
            "active_alerts": [alert_to_dict(a) for a in self.active_alerts],
            "readiness": self.readiness.overall_score if self.readiness else None,
            "summary": self.summary,
            "insights": self.insights,
            "enrichment_error": self.enrichment_error,
        }


def alert_to_dict(alert: Alert) -> Dict[str, Any]:
    return {
        "id": alert.id,
        "type": alert.type.value,
        "severity": alert.severity.value,
        "message": alert.message,
        "related_task_id": alert.related_task_id,
        "related_topic_id": alert.related_topic_id,
        "metadata": alert.alert_metadata,
        "is_resolved": alert.is_resolved,
    }


def longest_consecutive_run(days: List[date]) -> int:
    if not days:
        return 0
    ordered = sorted(set(days))
    best = run = 1
    for prev, current in zip(ordered, ordered[1:]):
        run = run + 1 if (current - prev).days == 1 else 1
        best = max(best, run)
    return best


class MonitorService:
    """Monitors plan adherence and raises alerts"""

    def __init__(
        self,
        db_service: DatabaseService,
        readiness_service: Optional[ReadinessService] = None,
        summarizer: Optional[Summarizer] = None,
        plan_locks: Optional[PlanLockRegistry] = None,
    ):
        self.db = db_service
        self.readiness = readiness_service or get_readiness_service()
        self.summarizer = summarizer
        self.plan_locks = plan_locks or get_plan_locks()
        self.thresholds = get_settings_service().get_monitor_thresholds()
        self.logger = logging.getLogger(__name__)

    def compute_stats(
        self, tasks: List[Task], performances: List[Performance], now: datetime
    ) -> MonitorStats:
        stats = MonitorStats(total_tasks=len(tasks))
        missed_days = []
        delays = []
        for task in tasks:
            if task.status == TaskStatus.COMPLETED:
                stats.completed_tasks += 1
                if task.completed_at and task.end_time:
                    delays.append(
                        max(0.0, (task.completed_at - task.end_time).total_seconds() / 86400)
                    )
            elif task.status == TaskStatus.SKIPPED:
                stats.skipped_tasks += 1
            elif task.end_time is not None and task.end_time < now:
                stats.missed_tasks += 1
                stats.missed_task_ids.append(task.id)
                missed_days.append(task.end_time.date())

        if stats.total_tasks:
            stats.completion_rate = round(stats.completed_tasks / stats.total_tasks, 4)
            stats.missed_ratio = round(stats.missed_tasks / stats.total_tasks, 4)
        stats.consecutive_missed_days = longest_consecutive_run(missed_days)
        if delays:
            stats.average_delay_days = round(sum(delays) / len(delays), 2)

        graded = [p for p in performances if p.score is not None]
        if graded:
            stats.average_performance = round(sum(p.score for p in graded) / len(graded), 2)
        per_topic: Dict[int, List[float]] = defaultdict(list)
        for perf in graded:
            per_topic[perf.topic_id].append(perf.score)
        stats.topic_averages = {
            t: round(sum(v) / len(v), 2) for t, v in per_topic.items()
        }
        stats.topic_sample_counts = {t: len(v) for t, v in per_topic.items()}

        study_days = sorted({p.created_at.date() for p in performances if p.created_at})
        if len(study_days) >= 2:
            stats.longest_study_gap_days = max(
                (b - a).days for a, b in zip(study_days, study_days[1:])
            )
        return stats

    def evaluate_rules(
        self, stats: MonitorStats, readiness: Optional[ReadinessScore]
    ) -> List[AlertDraft]:
        """Apply every alert rule to the stats; rules are independent"""
        t = self.thresholds
        drafts: List[AlertDraft] = []

        if stats.total_tasks and stats.missed_ratio >= t["missed_ratio_threshold"]:
            severity = (
                AlertSeverity.HIGH
                if stats.missed_ratio >= t["missed_ratio_high"]
                else AlertSeverity.MEDIUM
            )
            drafts.append(
                AlertDraft(
                    AlertType.MISSED_TASK,
                    severity,
                    f"You have missed {stats.missed_tasks} of {stats.total_tasks} "
                    f"scheduled tasks ({stats.missed_ratio:.0%}).",
                    metadata={
                        "missed_task_ids": stats.missed_task_ids,
                        "consecutive_missed_days": stats.consecutive_missed_days,
                        "suggested_action": "RESCHEDULE",
                    },
                )
            )

        if (
            stats.average_performance is not None
            and stats.average_performance < t["low_performance_threshold"]
        ):
            severity = (
                AlertSeverity.HIGH
                if stats.average_performance < t["low_performance_high"]
                else AlertSeverity.MEDIUM
            )
            drafts.append(
                AlertDraft(
                    AlertType.LOW_PERFORMANCE,
                    severity,
                    f"Your average score is {stats.average_performance:.0f}%.",
                    metadata={
                        "average_performance": stats.average_performance,
                        "suggested_action": "REVIEW",
                    },
                )
            )

        if readiness is not None and readiness.overall_score < t["readiness_threshold"]:
            drafts.append(
                AlertDraft(
                    AlertType.GENERAL,
                    AlertSeverity.MEDIUM,
                    f"Your exam readiness is {readiness.overall_score:.0f}%.",
                    metadata={
                        "overall_score": readiness.overall_score,
                        "weak_areas": readiness.weak_areas,
                    },
                )
            )

        struggling = {
            topic_id: avg
            for topic_id, avg in stats.topic_averages.items()
            if avg < TOPIC_DIFFICULTY_THRESHOLD and stats.topic_sample_counts.get(topic_id, 0) >= 2
        }
        if struggling:
            worst = min(struggling, key=struggling.get)
            drafts.append(
                AlertDraft(
                    AlertType.TOPIC_DIFFICULTY,
                    AlertSeverity.HIGH
                    if struggling[worst] < TOPIC_DIFFICULTY_HIGH
                    else AlertSeverity.MEDIUM,
                    f"You are struggling with {len(struggling)} topic(s).",
                    related_topic_id=worst,
                    metadata={"topics": {str(k): v for k, v in struggling.items()}},
                )
            )

        if stats.average_delay_days is not None and stats.average_delay_days >= DEVIATION_DAYS:
            drafts.append(
                AlertDraft(
                    AlertType.SCHEDULE_DEVIATION,
                    AlertSeverity.HIGH
                    if stats.average_delay_days >= DEVIATION_DAYS_HIGH
                    else AlertSeverity.MEDIUM,
                    f"Tasks are completed {stats.average_delay_days:.1f} days late on average.",
                    metadata={"average_delay_days": stats.average_delay_days},
                )
            )

        if (
            stats.longest_study_gap_days is not None
            and stats.longest_study_gap_days > STUDY_GAP_DAYS
        ):
            drafts.append(
                AlertDraft(
                    AlertType.STUDY_PATTERN,
                    AlertSeverity.LOW,
                    f"You went {stats.longest_study_gap_days} days without studying.",
                    metadata={"longest_gap_days": stats.longest_study_gap_days},
                )
            )
        return drafts

    def run(
        self,
        user_id: int,
        readiness: Optional[ReadinessScore] = None,
        now: Optional[datetime] = None,
    ) -> MonitorResult:
        """
        Monitor a user's plan and raise alerts.

        Args:
            user_id: Learner to monitor
            readiness: Precomputed readiness score; recomputed when omitted
            now: Reference time (default: current time)

        Raises:
            NotFoundError: User has no study plan
        """
        now = now or datetime.now()

        with self.db.get_session() as session:
            plan = session.execute(
                select(StudyPlan).where(StudyPlan.user_id == user_id)
            ).scalar_one_or_none()
            if plan is None:
                raise NotFoundError(f"No study plan for user {user_id}")

            store = TaskStore(session)
            with self.plan_locks.hold(plan.id):
                tasks = store.find_tasks(plan.id)
                performances = store.find_performances(user_id=user_id)
                if readiness is None:
                    readiness = self.readiness.calculate_in_session(session, user_id, now)
                stats = self.compute_stats(tasks, performances, now)
                stats.overall_score = readiness.overall_score if readiness else None

                created: List[Alert] = []
                for draft in self.evaluate_rules(stats, readiness):
                    if store.find_alerts(user_id, types=[draft.type], is_resolved=False):
                        self.logger.debug(
                            f"Skipping {draft.type.value} alert for user {user_id}: unresolved one exists"
                        )
                        continue
                    created.append(
                        store.add_alert(
                            user_id=user_id,
                            plan_id=plan.id,
                            type=draft.type,
                            severity=draft.severity,
                            message=draft.message,
                            related_task_id=draft.related_task_id,
                            related_topic_id=draft.related_topic_id,
                            metadata={**draft.metadata, "source": "MONITOR_AGENT"},
                            created_at=now,
                        )
                    )
                active = store.find_alerts(user_id, is_resolved=False)
                session.commit()

        result = MonitorResult(
            user_id=user_id,
            plan_id=plan.id,
            stats=stats,
            alerts=created,
            active_alerts=active,
            readiness=readiness,
        )
        self._enrich(result)
        self.logger.info(
            f"Monitor run for user {user_id}: {len(created)} new alert(s), "
            f"missed={stats.missed_tasks}/{stats.total_tasks}"
        )
        return result

    def _enrich(self, result: MonitorResult) -> None:
        summarizer = self.summarizer if self.summarizer is not None else get_summarizer()
        if summarizer is None:
            return
        try:
            summary = summarizer.summarize("monitor", result.to_dict())
        except EnrichmentUnavailableError as e:
            result.enrichment_error = str(e)
            return
        result.summary = summary
        result.insights = [line.strip("-* ").strip() for line in summary.splitlines() if line.strip()]


_monitor_service = None


def get_monitor_service() -> MonitorService:
    """Get the global monitor service"""
    global _monitor_service
    if _monitor_service is None:
        _monitor_service = MonitorService(get_db_service())
    return _monitor_service
