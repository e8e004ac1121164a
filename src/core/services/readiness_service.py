"""
Readiness scoring for the exam preparation engine.

Aggregates a learner's performance history into per-category and overall
readiness percentages. Every calculation appends a new ReadinessScore; the
latest record is authoritative.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models import (
    CATEGORY_WEIGHTS,
    Difficulty,
    Performance,
    ReadinessScore,
    StudyPlan,
    Task,
    TaskStatus,
    Topic,
    TopicCategory,
)
from .database import DatabaseService, get_db_service
from .settings_config_service import get_settings_service
from .task_store import TaskStore

DIFFICULTY_MULTIPLIER = {
    Difficulty.EASY: 0.8,
    Difficulty.MEDIUM: 1.0,
    Difficulty.HARD: 1.3,
}
COMPLETED_PROXY_SCORE = 70.0


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def performance_value(performance: Performance) -> float:
    """Score when graded, otherwise a completion-based proxy"""
    if performance.score is not None:
        return float(performance.score)
    return COMPLETED_PROXY_SCORE if performance.completed else 0.0


def weighted_overall(category_scores: Dict[TopicCategory, float]) -> float:
    """Category-weighted mean, renormalised over the categories present"""
    total_weight = sum(CATEGORY_WEIGHTS[c] for c in category_scores)
    if total_weight <= 0:
        return 0.0
    return clamp(
        sum(score * CATEGORY_WEIGHTS[c] for c, score in category_scores.items())
        / total_weight
    )


class ReadinessService:
    """Computes and stores readiness scores"""

    def __init__(self, db_service: DatabaseService):
        self.db = db_service
        self.logger = logging.getLogger(__name__)
        settings = get_settings_service()
        self.weak_threshold = settings.getfloat("readiness", "weak_threshold", 65)
        self.strong_threshold = settings.getfloat("readiness", "strong_threshold", 80)

    def _weighted_scores(
        self, performances: List[Performance], topics: Dict[int, Topic]
    ) -> Tuple[Dict[TopicCategory, float], Dict[int, float]]:
        cat_totals: Dict[TopicCategory, List[float]] = defaultdict(lambda: [0.0, 0.0])
        topic_totals: Dict[int, List[float]] = defaultdict(lambda: [0.0, 0.0])

        for perf in performances:
            topic = topics.get(perf.topic_id)
            if topic is None:
                continue
            weight = (
                max(1, topic.importance or 1)
                * DIFFICULTY_MULTIPLIER.get(topic.difficulty, 1.0)
                * max(1, min(5, perf.confidence or 3))
            )
            value = performance_value(perf)
            cat_totals[topic.category][0] += value * weight
            cat_totals[topic.category][1] += weight
            topic_totals[topic.id][0] += value * weight
            topic_totals[topic.id][1] += weight

        category_scores = {
            c: clamp(total / weight) for c, (total, weight) in cat_totals.items() if weight > 0
        }
        topic_scores = {
            t: clamp(total / weight) for t, (total, weight) in topic_totals.items() if weight > 0
        }
        return category_scores, topic_scores

    def calculate_in_session(
        self, session: Session, user_id: int, now: Optional[datetime] = None
    ) -> Optional[ReadinessScore]:
        """Recompute readiness inside a caller-owned session (no commit)"""
        now = now or datetime.now()
        plan = session.execute(
            select(StudyPlan).where(StudyPlan.user_id == user_id)
        ).scalar_one_or_none()
        if plan is None:
            return None

        store = TaskStore(session)
        performances = store.find_performances(user_id=user_id)
        if not performances:
            return None

        topic_ids = {p.topic_id for p in performances}
        topics = {
            t.id: t
            for t in session.execute(select(Topic).where(Topic.id.in_(topic_ids))).scalars()
        }
        category_scores, topic_scores = self._weighted_scores(performances, topics)
        if not category_scores:
            return None
        overall = weighted_overall(category_scores)

        weak_areas = sorted(t for t, s in topic_scores.items() if s < self.weak_threshold)
        strong_areas = sorted(t for t, s in topic_scores.items() if s > self.strong_threshold)
        weak_categories = sorted(
            c.value for c, s in category_scores.items() if s < self.weak_threshold
        )

        total_tasks = session.execute(
            select(func.count(Task.id)).where(Task.plan_id == plan.id)
        ).scalar_one()
        completed_tasks = session.execute(
            select(func.count(Task.id)).where(
                Task.plan_id == plan.id, Task.status == TaskStatus.COMPLETED
            )
        ).scalar_one()
        completion_rate = completed_tasks / total_tasks if total_tasks else 0.0
        days_to_exam = max(0, (plan.exam_date - now).days)
        projected = clamp(
            overall
            + min(35.0, days_to_exam * (0.3 + 0.4 * completion_rate))
            - min(10.0, 0.5 * len(weak_areas))
        )

        score = ReadinessScore(
            user_id=user_id,
            plan_id=plan.id,
            overall_score=round(overall, 2),
            category_scores={c.value: round(s, 2) for c, s in category_scores.items()},
            weak_areas=weak_areas,
            strong_areas=strong_areas,
            weak_categories=weak_categories,
            projected_score=round(projected, 2),
        )
        return store.add_readiness(score)

    def calculate_readiness(
        self, user_id: int, now: Optional[datetime] = None
    ) -> Optional[ReadinessScore]:
        """
        Recompute and store the user's readiness.

        Returns None when the user has no plan or no performance data.
        """
        with self.db.get_session() as session:
            try:
                score = self.calculate_in_session(session, user_id, now)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                self.logger.error(f"Database error calculating readiness: {e}")
                raise
        if score is not None:
            self.logger.info(
                f"Readiness for user {user_id}: overall={score.overall_score} "
                f"projected={score.projected_score}"
            )
        return score

    def get_latest(self, user_id: int) -> Optional[ReadinessScore]:
        """Latest stored readiness score, if any"""
        with self.db.get_session() as session:
            return TaskStore(session).latest_readiness(user_id)

    def get_history(self, user_id: int, limit: int = 20) -> List[ReadinessScore]:
        with self.db.get_session() as session:
            stmt = (
                select(ReadinessScore)
                .where(ReadinessScore.user_id == user_id)
                .order_by(ReadinessScore.created_at.desc(), ReadinessScore.id.desc())
                .limit(limit)
            )
            return list(session.execute(stmt).scalars().all())


_readiness_service = None


def get_readiness_service() -> ReadinessService:
    """Get the global readiness service"""
    global _readiness_service
    if _readiness_service is None:
        _readiness_service = ReadinessService(get_db_service())
    return _readiness_service
