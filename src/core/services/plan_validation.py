"""
Advisory checks run over a generated or adapted study plan.

None of these block persistence; they produce a report stored on the plan.
"""

from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from ..models import Difficulty, Task, TaskType, Topic
from .topic_graph import TopicGraph

DIFFICULTY_LEVEL = {Difficulty.EASY: 0, Difficulty.MEDIUM: 1, Difficulty.HARD: 2}


@dataclass
class PlanValidationReport:
    """Issues found in a plan, grouped by check"""

    prerequisite_violations: List[Dict[str, Any]] = field(default_factory=list)
    workload_issues: List[Dict[str, Any]] = field(default_factory=list)
    difficulty_issues: List[Dict[str, Any]] = field(default_factory=list)
    spaced_repetition_issues: List[Dict[str, Any]] = field(default_factory=list)
    coverage_gaps: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not (
            self.prerequisite_violations
            or self.workload_issues
            or self.difficulty_issues
            or self.spaced_repetition_issues
            or self.coverage_gaps
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["is_valid"] = self.is_valid
        return data


def _minutes_by_day(tasks: Iterable[Task]) -> Dict[date, int]:
    totals: Dict[date, int] = defaultdict(int)
    for task in tasks:
        if task.start_time is not None:
            totals[task.start_time.date()] += task.duration or 0
    return totals


def check_workload_distribution(tasks: Iterable[Task], max_daily_hours: float = 4) -> List[Dict]:
    """Days whose scheduled minutes exceed the recommended maximum"""
    max_minutes = int(max_daily_hours * 60)
    issues = []
    for day, minutes in sorted(_minutes_by_day(tasks).items()):
        if minutes > max_minutes:
            issues.append(
                {
                    "date": day.isoformat(),
                    "scheduled_minutes": minutes,
                    "max_recommended_minutes": max_minutes,
                    "overloaded_by": minutes - max_minutes,
                }
            )
    return issues


def check_difficulty_progression(tasks: Iterable[Task], max_jump: float = 1) -> List[Dict]:
    """Consecutive study days whose average difficulty jumps by more than max_jump"""
    by_day: Dict[date, List[int]] = defaultdict(list)
    for task in tasks:
        if task.type == TaskType.REVIEW or task.start_time is None:
            continue
        by_day[task.start_time.date()].append(DIFFICULTY_LEVEL.get(task.difficulty, 1))

    days = sorted(by_day)
    issues = []
    for prev_day, day in zip(days, days[1:]):
        prev_avg = sum(by_day[prev_day]) / len(by_day[prev_day])
        avg = sum(by_day[day]) / len(by_day[day])
        if abs(avg - prev_avg) > max_jump:
            issues.append(
                {
                    "previous_day": prev_day.isoformat(),
                    "day": day.isoformat(),
                    "previous_average": round(prev_avg, 2),
                    "average": round(avg, 2),
                    "jump": round(abs(avg - prev_avg), 2),
                }
            )
    return issues


def check_spaced_repetition(
    tasks: Iterable[Task], min_reviews: int = 2, min_gap_days: int = 2
) -> List[Dict]:
    """Topics with too few review sessions or reviews bunched too closely"""
    reviews: Dict[int, List[Task]] = defaultdict(list)
    topics = set()
    for task in tasks:
        topics.add(task.topic_id)
        if task.type == TaskType.REVIEW and task.start_time is not None:
            reviews[task.topic_id].append(task)

    issues = []
    for topic_id in sorted(topics):
        topic_reviews = sorted(reviews.get(topic_id, []), key=lambda t: t.start_time)
        if len(topic_reviews) < min_reviews:
            issues.append(
                {
                    "topic_id": topic_id,
                    "review_count": len(topic_reviews),
                    "min_recommended_reviews": min_reviews,
                }
            )
        for prev, current in zip(topic_reviews, topic_reviews[1:]):
            gap = (current.start_time - prev.start_time).days
            if gap < min_gap_days:
                issues.append(
                    {
                        "topic_id": topic_id,
                        "previous_review": prev.start_time.isoformat(),
                        "review": current.start_time.isoformat(),
                        "days_between": gap,
                        "min_recommended_days": min_gap_days,
                    }
                )
    return issues


def check_topic_coverage(tasks: Iterable[Task], topics: Iterable[Topic]) -> List[Dict]:
    """Topics that have no scheduled task at all"""
    scheduled = {t.topic_id for t in tasks if t.start_time is not None}
    return [
        {"topic_id": topic.id, "topic_name": topic.name, "issue": "No tasks scheduled"}
        for topic in topics
        if topic.id not in scheduled
    ]


def validate_study_plan(
    tasks: List[Task],
    topics: List[Topic],
    max_daily_hours: float = 4,
    graph: Optional[TopicGraph] = None,
) -> PlanValidationReport:
    """Run every advisory check over a plan's tasks"""
    graph = graph or TopicGraph(topics)
    return PlanValidationReport(
        prerequisite_violations=graph.check_task_order(tasks),
        workload_issues=check_workload_distribution(tasks, max_daily_hours),
        difficulty_issues=check_difficulty_progression(tasks),
        spaced_repetition_issues=check_spaced_repetition(tasks),
        coverage_gaps=check_topic_coverage(tasks, topics),
    )
