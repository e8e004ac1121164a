"""
Adaptation Engine for the exam preparation engine.

Consumes monitor output and mutates the task calendar. Policies run in a
fixed order, each later one seeing the calendar left by the earlier ones:

    reschedule missed -> adjust difficulty -> add reviews -> rebalance workload

Every mutation is recorded as an immutable Adaptation.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, date, timedelta, time
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..exceptions import EnrichmentUnavailableError, NotFoundError
from ..models import (
    Adaptation,
    AdaptationType,
    AlertType,
    DIFFICULTY_ORDER,
    Performance,
    StudyPlan,
    Task,
    TaskStatus,
    TaskType,
    Topic,
    User,
)
from .database import DatabaseService, get_db_service
from .monitor_service import MonitorResult, MonitorService, get_monitor_service
from .plan_lock import PlanLockRegistry, get_plan_locks
from .scheduling_utils import (
    busy_intervals,
    calculate_review_interval,
    find_available_time_slot,
    find_slot_in_day,
    user_weekdays,
    user_window,
)
from .settings_config_service import get_settings_service
from .summarizer import Summarizer, get_summarizer
from .task_store import TaskStore

LOWER_AVERAGE = 60
LOWER_CONFIDENCE = 2
RAISE_AVERAGE = 85
RAISE_CONFIDENCE = 4
MIN_SAMPLES = 2
RECENT_SAMPLES = 5
PRIORITY_RANK = {"LOW": 0, "MEDIUM": 1, "HIGH": 2}
OPEN_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


@dataclass
class AdaptationResult:
    """Output of one adaptation run"""

    user_id: int
    plan_id: int
    adaptations: List[Adaptation] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    llm_adaptations: List[Dict[str, Any]] = field(default_factory=list)
    enrichment_error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.enrichment_error is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "adaptations": [adaptation_to_dict(a) for a in self.adaptations],
            "summary": self.summary,
            "llm_adaptations": self.llm_adaptations,
            "enrichment_error": self.enrichment_error,
        }


def adaptation_to_dict(adaptation: Adaptation) -> Dict[str, Any]:
    return {
        "id": adaptation.id,
        "type": adaptation.type.value,
        "description": adaptation.description,
        "reason": adaptation.reason,
        "task_id": adaptation.task_id,
        "topic_id": adaptation.topic_id,
        "metadata": adaptation.adaptation_metadata,
    }


def task_priority(task: Task) -> int:
    meta = task.task_metadata or {}
    if meta.get("is_remediation"):
        return PRIORITY_RANK["HIGH"]
    return PRIORITY_RANK.get(str(meta.get("priority", "MEDIUM")).upper(), 1)


class AdaptationService:
    """Applies adaptation policies to a learner's calendar"""

    def __init__(
        self,
        db_service: DatabaseService,
        monitor_service: Optional[MonitorService] = None,
        summarizer: Optional[Summarizer] = None,
        plan_locks: Optional[PlanLockRegistry] = None,
    ):
        self.db = db_service
        self.monitor = monitor_service
        self.summarizer = summarizer
        self.plan_locks = plan_locks or get_plan_locks()
        self.logger = logging.getLogger(__name__)
        settings = get_settings_service()
        self.review_minutes = settings.getint("scheduling", "review_duration_minutes", 30)
        self.step_minutes = settings.getint("scheduling", "slot_search_step_minutes", 30)
        self.weak_threshold = settings.getfloat("readiness", "weak_threshold", 65)

    def run(
        self,
        user_id: int,
        monitor_result: Optional[MonitorResult] = None,
        now: Optional[datetime] = None,
        recompute_monitor: bool = True,
    ) -> AdaptationResult:
        """
        Adapt a user's plan to the latest monitor signals.

        Without ``monitor_result`` the monitor is run first, unless
        ``recompute_monitor`` is False; review additions then fall back to the
        latest stored readiness score.

        Raises:
            NotFoundError: User has no study plan
        """
        now = now or datetime.now()
        if monitor_result is None and recompute_monitor:
            monitor = self.monitor or get_monitor_service()
            monitor_result = monitor.run(user_id, now=now)

        with self.db.get_session() as session:
            plan = session.execute(
                select(StudyPlan).where(StudyPlan.user_id == user_id)
            ).scalar_one_or_none()
            if plan is None:
                raise NotFoundError(f"No study plan for user {user_id}")
            user = session.get(User, user_id)
            store = TaskStore(session)
            result = AdaptationResult(user_id=user_id, plan_id=plan.id)

            with self.plan_locks.hold(plan.id):
                self._reschedule_missed(store, plan, user, result, now)
                self._adjust_difficulty(session, store, plan, result, now)
                self._add_reviews(store, plan, user, monitor_result, result, now)
                self._rebalance(store, plan, user, result, now)
                session.commit()

        self._suggest(result, monitor_result)
        self.logger.info(
            f"Adaptation run for user {user_id}: {len(result.adaptations)} change(s) {result.summary}"
        )
        return result

    # --- Policies ---

    def _reschedule_missed(
        self, store: TaskStore, plan: StudyPlan, user: User, result: AdaptationResult, now: datetime
    ) -> None:
        missed = store.find_tasks(plan.id, statuses=OPEN_STATUSES, end_before=now)
        weekdays = user_weekdays(user)
        start_hour, end_hour = user_window(user)
        moved, unplaced = 0, []

        for task in missed:
            busy = busy_intervals(store.find_tasks(plan.id, scheduled_only=True), task.id)
            slot = find_available_time_slot(
                busy,
                task.duration,
                weekdays,
                start_hour,
                end_hour,
                search_from=now,
                deadline=plan.exam_date,
                step_minutes=self.step_minutes,
            )
            if slot is None:
                unplaced.append(task.id)
                continue
            old_start = task.start_time
            task.status = TaskStatus.PENDING
            store.reschedule_task(task, slot[0], slot[1])
            result.adaptations.append(
                store.add_adaptation(
                    user_id=plan.user_id,
                    plan_id=plan.id,
                    type=AdaptationType.RESCHEDULE,
                    description=f"Moved '{task.title}' to {slot[0]:%Y-%m-%d %H:%M}",
                    reason="Task was missed",
                    task_id=task.id,
                    topic_id=task.topic_id,
                    metadata={
                        "from": old_start.isoformat() if old_start else None,
                        "to": slot[0].isoformat(),
                        "original_start_time": task.original_start_time.isoformat()
                        if task.original_start_time
                        else None,
                    },
                    created_at=now,
                )
            )
            moved += 1

        if missed and not unplaced:
            for alert in store.find_alerts(
                plan.user_id, types=[AlertType.MISSED_TASK], is_resolved=False
            ):
                store.resolve_alert(alert, now, resolution="RESCHEDULED")
        result.summary["rescheduled"] = moved
        result.summary["unplaced"] = unplaced

    def _adjust_difficulty(
        self,
        session: Session,
        store: TaskStore,
        plan: StudyPlan,
        result: AdaptationResult,
        now: datetime,
    ) -> None:
        performances = [
            p for p in store.find_performances(user_id=plan.user_id) if p.score is not None
        ]
        by_topic: Dict[int, List[Performance]] = defaultdict(list)
        for perf in performances:
            by_topic[perf.topic_id].append(perf)

        previous = defaultdict(list)
        for adaptation in store.find_adaptations(plan.user_id, plan.id):
            if adaptation.type == AdaptationType.DIFFICULTY_ADJUSTMENT and adaptation.topic_id:
                previous[adaptation.topic_id].append(adaptation.created_at)

        adjusted = 0
        for topic_id, perfs in sorted(by_topic.items()):
            recent = perfs[-RECENT_SAMPLES:]
            if len(recent) < MIN_SAMPLES:
                continue
            latest_evidence = recent[-1].created_at
            if any(ts >= latest_evidence for ts in previous.get(topic_id, [])):
                continue
            avg = sum(p.score for p in recent) / len(recent)
            confidence = sum(p.confidence or 3 for p in recent) / len(recent)
            if avg <= LOWER_AVERAGE or confidence <= LOWER_CONFIDENCE:
                step, reason = -1, f"Recent average {avg:.0f}% / confidence {confidence:.1f}"
            elif avg >= RAISE_AVERAGE and confidence >= RAISE_CONFIDENCE:
                step, reason = 1, f"Recent average {avg:.0f}% / confidence {confidence:.1f}"
            else:
                continue

            changed = []
            for task in store.find_tasks(
                plan.id, statuses=[TaskStatus.PENDING], topic_id=topic_id, start_from=now
            ):
                index = DIFFICULTY_ORDER.index(task.difficulty) + step
                if 0 <= index < len(DIFFICULTY_ORDER):
                    old = task.difficulty
                    task.difficulty = DIFFICULTY_ORDER[index]
                    changed.append({"task_id": task.id, "from": old.value, "to": task.difficulty.value})
            if not changed:
                continue
            session.flush()
            result.adaptations.append(
                store.add_adaptation(
                    user_id=plan.user_id,
                    plan_id=plan.id,
                    type=AdaptationType.DIFFICULTY_ADJUSTMENT,
                    description=f"{'Lowered' if step < 0 else 'Raised'} difficulty of "
                    f"{len(changed)} task(s) for topic {topic_id}",
                    reason=reason,
                    topic_id=topic_id,
                    metadata={"direction": step, "changes": changed},
                    created_at=now,
                )
            )
            adjusted += len(changed)
        result.summary["difficulty_adjusted"] = adjusted

    def _add_reviews(
        self,
        store: TaskStore,
        plan: StudyPlan,
        user: User,
        monitor_result: Optional[MonitorResult],
        result: AdaptationResult,
        now: datetime,
    ) -> None:
        weak: Dict[int, float] = {}
        if monitor_result is not None:
            for topic_id, avg in monitor_result.stats.topic_averages.items():
                if avg < self.weak_threshold:
                    weak[int(topic_id)] = avg
            readiness = monitor_result.readiness
        else:
            readiness = store.latest_readiness(plan.user_id)
        if readiness is not None:
            for topic_id in readiness.weak_areas or []:
                weak.setdefault(int(topic_id), 0.0)

        weekdays = user_weekdays(user)
        start_hour, end_hour = user_window(user)
        added = 0
        for topic_id, mastery in sorted(weak.items()):
            pending_reviews = store.find_tasks(
                plan.id,
                statuses=[TaskStatus.PENDING],
                types=[TaskType.REVIEW],
                topic_id=topic_id,
                start_from=now,
            )
            if pending_reviews:
                continue
            topic = store.session.get(Topic, topic_id)
            if topic is None:
                continue
            interval = calculate_review_interval(mastery)
            busy = busy_intervals(store.find_tasks(plan.id, scheduled_only=True))
            slot = find_available_time_slot(
                busy,
                self.review_minutes,
                weekdays,
                start_hour,
                end_hour,
                search_from=now + timedelta(days=interval - 1),
                deadline=plan.exam_date,
                step_minutes=self.step_minutes,
            )
            if slot is None:
                continue
            task = store.add_task(
                Task(
                    plan_id=plan.id,
                    title=f"Review: {topic.name}",
                    description=f"Spaced review of {topic.name}",
                    type=TaskType.REVIEW,
                    status=TaskStatus.PENDING,
                    start_time=slot[0],
                    end_time=slot[1],
                    duration=self.review_minutes,
                    topic_id=topic_id,
                    task_metadata={
                        "source": "ADAPTATION_AGENT",
                        "priority": "MEDIUM",
                        "is_remediation": False,
                    },
                )
            )
            result.adaptations.append(
                store.add_adaptation(
                    user_id=plan.user_id,
                    plan_id=plan.id,
                    type=AdaptationType.CONTENT_ADDITION,
                    description=f"Added review session on {slot[0]:%Y-%m-%d %H:%M}",
                    reason=f"{topic.name} is a weak area ({mastery:.0f}%)",
                    task_id=task.id,
                    topic_id=topic_id,
                    metadata={"interval_days": interval},
                    created_at=now,
                )
            )
            added += 1
        result.summary["reviews_added"] = added

    def _rebalance(
        self, store: TaskStore, plan: StudyPlan, user: User, result: AdaptationResult, now: datetime
    ) -> None:
        cap = int(float(user.study_hours_per_day or 2) * 60)
        weekdays = user_weekdays(user)
        start_hour, end_hour = user_window(user)
        tasks = store.find_tasks(plan.id, statuses=[TaskStatus.PENDING], start_from=now)

        by_day: Dict[date, List[Task]] = defaultdict(list)
        for task in tasks:
            by_day[task.start_time.date()].append(task)
        totals = {d: sum(t.duration for t in ts) for d, ts in by_day.items()}

        moved = 0
        for day in sorted(by_day):
            if totals[day] <= cap:
                continue
            candidates = sorted(
                by_day[day], key=lambda t: (task_priority(t), -t.start_time.timestamp())
            )
            for task in candidates:
                if totals[day] <= cap:
                    break
                target = self._nearest_day_with_room(
                    store, plan, day, task, totals, cap, weekdays, start_hour, end_hour, now
                )
                if target is None:
                    continue
                target_day, slot = target
                old_start = task.start_time
                store.reschedule_task(task, slot[0], slot[1])
                totals[day] -= task.duration
                totals[target_day] = totals.get(target_day, 0) + task.duration
                result.adaptations.append(
                    store.add_adaptation(
                        user_id=plan.user_id,
                        plan_id=plan.id,
                        type=AdaptationType.PLAN_REBALANCE,
                        description=f"Moved '{task.title}' from {day} to {target_day}",
                        reason=f"{day} exceeded the daily cap of {cap} minutes",
                        task_id=task.id,
                        topic_id=task.topic_id,
                        metadata={"from": old_start.isoformat(), "to": slot[0].isoformat()},
                        created_at=now,
                    )
                )
                moved += 1
        result.summary["rebalanced"] = moved

    def _nearest_day_with_room(
        self, store, plan, day, task, totals, cap, weekdays, start_hour, end_hour, now
    ):
        first_day = (now + timedelta(days=1)).date()
        last_day = plan.exam_date.date() - timedelta(days=1)
        span = (last_day - first_day).days + 1
        for distance in range(1, max(span, 0) + 1):
            for candidate in (day + timedelta(days=distance), day - timedelta(days=distance)):
                if candidate < first_day or candidate > last_day:
                    continue
                if candidate.weekday() not in weekdays:
                    continue
                if totals.get(candidate, 0) + task.duration > cap:
                    continue
                busy = busy_intervals(
                    store.find_tasks(
                        plan.id,
                        start_from=datetime.combine(candidate, time(0)),
                        start_before=datetime.combine(candidate + timedelta(days=1), time(0)),
                    )
                )
                slot = find_slot_in_day(
                    candidate, task.duration, busy, start_hour, end_hour, self.step_minutes
                )
                if slot:
                    return candidate, slot
        return None

    # --- Enrichment ---

    def _suggest(self, result: AdaptationResult, monitor_result: Optional[MonitorResult]) -> None:
        summarizer = self.summarizer if self.summarizer is not None else get_summarizer()
        if summarizer is None:
            return
        payload = {
            "adaptations": result.to_dict()["adaptations"],
            "monitor": monitor_result.to_dict() if monitor_result else None,
        }
        try:
            result.llm_adaptations = summarizer.suggest_adaptations(payload)
        except EnrichmentUnavailableError as e:
            result.enrichment_error = str(e)


_adaptation_service = None


def get_adaptation_service() -> AdaptationService:
    """Get the global adaptation service"""
    global _adaptation_service
    if _adaptation_service is None:
        _adaptation_service = AdaptationService(get_db_service())
    return _adaptation_service
