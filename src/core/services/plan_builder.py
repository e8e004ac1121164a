"""
Plan Builder for the exam preparation engine.

Turns a learner's availability, topic importance and diagnostic weak areas
into a calendar of time-boxed study tasks.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, date, time, timedelta
from typing import Deque, Dict, Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..exceptions import DataIntegrityError, NotFoundError, PlanInfeasibleError
from ..models import (
    PreferredStudyTime,
    StudyPlan,
    Task,
    TaskType,
    Topic,
    User,
)
from .database import DatabaseService, get_db_service
from .logging import get_logging_service
from .plan_lock import PlanLockRegistry, get_plan_locks
from .plan_validation import PlanValidationReport, validate_study_plan
from .scheduling_utils import TIME_BANDS, parse_weekdays
from .settings_config_service import get_settings_service
from .task_store import TaskStore
from .topic_graph import TopicGraph

WEAK_AREA_BOOST = 3
FOCUS_BOOST = 4
SESSION_TYPES = [TaskType.READING, TaskType.VIDEO, TaskType.PRACTICE, TaskType.QUIZ]
MAX_SESSION_MINUTES = 60


@dataclass
class Availability:
    """When a learner can study"""

    weekdays: Set[int]
    hours_per_day: float
    preferred_time: PreferredStudyTime = PreferredStudyTime.MORNING

    @classmethod
    def from_user(cls, user: User) -> "Availability":
        return cls(
            weekdays=parse_weekdays(user.available_days),
            hours_per_day=float(user.study_hours_per_day or 0),
            preferred_time=user.preferred_study_time or PreferredStudyTime.MORNING,
        )

    @classmethod
    def from_days(
        cls,
        days: Iterable[str],
        hours_per_day: float,
        preferred_time: PreferredStudyTime = PreferredStudyTime.MORNING,
    ) -> "Availability":
        return cls(parse_weekdays(days), float(hours_per_day), preferred_time)

    def daily_window(self) -> tuple:
        """(start_hour, end_hour) of one study day"""
        band_start, band_end = TIME_BANDS[self.preferred_time]
        hours = min(self.hours_per_day, 24 - band_start)
        return band_start, max(band_end, band_start + hours)

    @property
    def daily_minutes(self) -> int:
        band_start, _ = TIME_BANDS[self.preferred_time]
        return int(min(self.hours_per_day, 24 - band_start) * 60)


@dataclass
class _DaySlot:
    day: date
    cursor: datetime
    window_end: datetime
    remaining: int


@dataclass
class PlanBuildResult:
    """Outcome of building a plan"""

    plan: StudyPlan
    tasks: List[Task]
    validation: PlanValidationReport
    total_available_minutes: int
    allocated_minutes: Dict[int, int] = field(default_factory=dict)
    unplaced_minutes: Dict[int, int] = field(default_factory=dict)


class PlanBuilderService:
    """Builds the initial task calendar for a learner's plan"""

    def __init__(
        self,
        db_service: DatabaseService,
        plan_locks: Optional[PlanLockRegistry] = None,
    ):
        self.db = db_service
        self.plan_locks = plan_locks or get_plan_locks()
        self.settings = get_settings_service()
        self.logger = logging.getLogger(__name__)
        self.min_chunk = self.settings.getint("scheduling", "min_chunk_minutes", 30)
        self.max_daily_hours = self.settings.getfloat("scheduling", "max_daily_hours", 4)

    def compute_priorities(
        self,
        topics: Iterable[Topic],
        weak_areas: Iterable[int] = (),
        recommended_focus: Iterable[int] = (),
    ) -> Dict[int, float]:
        """Topic importance boosted for diagnostic weak areas and focus topics"""
        weak = set(weak_areas or [])
        focus = set(recommended_focus or [])
        priorities = {}
        for topic in topics:
            score = float(topic.importance or 1)
            if topic.id in weak:
                score += WEAK_AREA_BOOST
            if topic.id in focus:
                score += FOCUS_BOOST
            priorities[topic.id] = score
        return priorities

    def available_days(
        self, availability: Availability, now: datetime, exam_date: datetime
    ) -> List[date]:
        """Study days from tomorrow up to (not including) the exam day"""
        days = []
        day = (now + timedelta(days=1)).date()
        while day < exam_date.date():
            if day.weekday() in availability.weekdays:
                days.append(day)
            day += timedelta(days=1)
        return days

    def allocate_minutes(
        self, priorities: Dict[int, float], total_minutes: int
    ) -> Dict[int, int]:
        """Split the available minutes proportionally to priority in whole chunks"""
        if not priorities:
            return {}
        total_priority = sum(priorities.values())
        allocation = {}
        for topic_id, priority in priorities.items():
            share = total_minutes * priority / total_priority
            chunks = max(1, int(share // self.min_chunk))
            allocation[topic_id] = chunks * self.min_chunk
        return allocation

    def _split_sessions(self, minutes: int) -> List[int]:
        sessions = []
        while minutes > 0:
            length = min(MAX_SESSION_MINUTES, minutes)
            sessions.append(length)
            minutes -= length
        return sessions

    def _priority_label(self, score: float) -> str:
        if score >= 10:
            return "HIGH"
        if score >= 6:
            return "MEDIUM"
        return "LOW"

    def build_plan(
        self,
        user_id: int,
        exam_date: datetime,
        availability: Optional[Availability] = None,
        weak_areas: Optional[List[int]] = None,
        recommended_focus: Optional[List[int]] = None,
        topic_ids: Optional[List[int]] = None,
        now: Optional[datetime] = None,
    ) -> PlanBuildResult:
        """
        Create the user's study plan and its task calendar.

        Args:
            user_id: Owner of the plan
            exam_date: Exam date; no task is placed on or after its day
            availability: Overrides the user's stored availability
            weak_areas: Diagnostic weak topic ids (boosted priority)
            recommended_focus: Extra topic ids to front-load
            topic_ids: Restrict the plan to these topics (default: all)
            now: Reference time (default: current time)

        Returns:
            PlanBuildResult with persisted plan, tasks and advisory validation

        Raises:
            NotFoundError: Unknown user
            PlanInfeasibleError: Empty availability, past exam date or no topics
            DataIntegrityError: User already has a plan, or prerequisite cycle
        """
        now = now or datetime.now()
        weak_areas = list(weak_areas or [])
        recommended_focus = list(recommended_focus or [])

        with self.db.get_session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            existing = session.execute(
                select(StudyPlan).where(StudyPlan.user_id == user_id)
            ).scalar_one_or_none()
            if existing is not None:
                raise DataIntegrityError(f"User {user_id} already has study plan {existing.id}")

            availability = availability or Availability.from_user(user)
            if exam_date <= now:
                raise PlanInfeasibleError(f"Exam date {exam_date} is in the past")
            if not availability.weekdays or availability.hours_per_day <= 0:
                raise PlanInfeasibleError("No study availability provided")

            stmt = select(Topic).order_by(Topic.id)
            if topic_ids:
                stmt = stmt.where(Topic.id.in_(topic_ids))
            topics = list(session.execute(stmt).scalars().all())
            if not topics:
                raise PlanInfeasibleError("No topics available to schedule")
            graph = TopicGraph(topics)
            graph.assert_acyclic()

            days = self.available_days(availability, now, exam_date)
            daily_minutes = availability.daily_minutes
            if not days or daily_minutes < self.min_chunk:
                raise PlanInfeasibleError(
                    f"No available study day between {now.date()} and {exam_date.date()}"
                )
            total_minutes = len(days) * daily_minutes

            priorities = self.compute_priorities(topics, weak_areas, recommended_focus)
            allocation = self.allocate_minutes(priorities, total_minutes)
            order = graph.topological_order(
                [t.id for t in topics], priority=lambda tid: priorities[tid]
            )
            topics_by_id = {t.id: t for t in topics}

            plan = StudyPlan(
                user_id=user_id,
                exam_date=exam_date,
                start_date=now,
                end_date=exam_date,
                is_personalized=bool(weak_areas or recommended_focus),
                weak_areas=weak_areas,
            )
            session.add(plan)
            try:
                session.flush()
            except IntegrityError as e:
                session.rollback()
                raise DataIntegrityError(f"User {user_id} already has a study plan") from e

            with self.plan_locks.hold(plan.id):
                store = TaskStore(session)
                tasks, unplaced = self._place_tasks(
                    store, plan, order, topics_by_id, allocation, priorities, days, availability
                )
                report = validate_study_plan(
                    tasks, topics, max_daily_hours=self.max_daily_hours, graph=graph
                )
                plan.validation_report = report.to_dict()
                session.commit()

        self.logger.info(
            f"Built plan {plan.id} for user {user_id}: {len(tasks)} tasks over "
            f"{len(days)} days ({total_minutes} minutes available)"
        )
        if not report.is_valid:
            self.logger.warning(f"Plan {plan.id} has advisory validation issues")
        get_logging_service().log_plan_mutation(
            "built", plan.id, user_id=user_id, task_count=len(tasks)
        )
        return PlanBuildResult(
            plan=plan,
            tasks=tasks,
            validation=report,
            total_available_minutes=total_minutes,
            allocated_minutes=allocation,
            unplaced_minutes=unplaced,
        )

    def revalidate_plan(self, user_id: int) -> PlanValidationReport:
        """Re-run the advisory checks against the plan's current calendar"""
        with self.db.get_session() as session:
            plan = session.execute(
                select(StudyPlan).where(StudyPlan.user_id == user_id)
            ).scalar_one_or_none()
            if plan is None:
                raise NotFoundError(f"No study plan for user {user_id}")
            tasks = TaskStore(session).find_tasks(plan.id, scheduled_only=True)
            topics = list(session.execute(select(Topic).order_by(Topic.id)).scalars().all())
            topic_ids = {t.topic_id for t in tasks}
            report = validate_study_plan(
                tasks,
                [t for t in topics if t.id in topic_ids or not topic_ids],
                max_daily_hours=self.max_daily_hours,
                graph=TopicGraph(topics),
            )
            plan.validation_report = report.to_dict()
            session.commit()
        return report

    def _place_tasks(
        self,
        store: TaskStore,
        plan: StudyPlan,
        order: List[int],
        topics_by_id: Dict[int, Topic],
        allocation: Dict[int, int],
        priorities: Dict[int, float],
        days: List[date],
        availability: Availability,
    ):
        """
        Place sessions round-robin over topics in prerequisite order.

        Each round gives every topic with minutes left one session, so a
        topic's first session always follows the first session of each of
        its prerequisites. The cursor only moves forward, so sessions never
        overlap.
        """
        start_hour, end_hour = availability.daily_window()
        slots = deque(
            _DaySlot(
                day=d,
                cursor=datetime.combine(d, time(0)) + timedelta(hours=start_hour),
                window_end=datetime.combine(d, time(0)) + timedelta(hours=end_hour),
                remaining=availability.daily_minutes,
            )
            for d in days
        )
        queues: Dict[int, Deque[int]] = {
            tid: deque(self._split_sessions(allocation.get(tid, 0))) for tid in order
        }
        session_counts = {tid: len(queues[tid]) for tid in order}
        placed_counts = {tid: 0 for tid in order}
        tasks: List[Task] = []

        while slots and any(queues.values()):
            for topic_id in order:
                queue = queues[topic_id]
                if not queue or not slots:
                    continue
                length = queue.popleft()
                slot = slots[0]
                usable = min(slot.remaining, int((slot.window_end - slot.cursor).total_seconds() // 60))
                while usable < self.min_chunk:
                    slots.popleft()
                    if not slots:
                        break
                    slot = slots[0]
                    usable = min(
                        slot.remaining, int((slot.window_end - slot.cursor).total_seconds() // 60)
                    )
                if not slots:
                    queue.appendleft(length)
                    break
                if length > usable:
                    fitted = (usable // self.min_chunk) * self.min_chunk
                    queue.appendleft(length - fitted)
                    length = fitted

                topic = topics_by_id[topic_id]
                index = placed_counts[topic_id]
                is_last = not queue
                if is_last and session_counts[topic_id] >= 3:
                    task_type = TaskType.REVIEW
                else:
                    task_type = SESSION_TYPES[index % len(SESSION_TYPES)]
                start = slot.cursor
                end = start + timedelta(minutes=length)
                task = store.add_task(
                    Task(
                        plan_id=plan.id,
                        title=f"{task_type.value.title()}: {topic.name}",
                        description=topic.description,
                        type=task_type,
                        start_time=start,
                        end_time=end,
                        duration=length,
                        topic_id=topic.id,
                        difficulty=topic.difficulty,
                        task_metadata={
                            "source": "SCHEDULER_AGENT",
                            "priority": self._priority_label(priorities[topic_id]),
                            "priority_score": priorities[topic_id],
                            "session_index": index,
                        },
                    )
                )
                tasks.append(task)
                placed_counts[topic_id] += 1
                slot.cursor = end
                slot.remaining -= length

        unplaced = {tid: sum(q) for tid, q in queues.items() if q}
        return tasks, unplaced


_plan_builder_service = None


def get_plan_builder_service() -> PlanBuilderService:
    """Get the global plan builder service"""
    global _plan_builder_service
    if _plan_builder_service is None:
        _plan_builder_service = PlanBuilderService(get_db_service())
    return _plan_builder_service
