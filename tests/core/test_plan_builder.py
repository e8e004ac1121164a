"""
Tests for plan building: availability, prerequisite order and calendar invariants
"""

import pytest
from collections import defaultdict
from datetime import timedelta

from src.core.exceptions import DataIntegrityError, NotFoundError, PlanInfeasibleError
from src.core.models import PreferredStudyTime, Topic, TopicCategory
from src.core.services import plan_builder as plan_builder_module
from src.core.services.plan_builder import Availability, get_plan_builder_service
from src.core.services.topic_graph import TopicGraph


def assert_no_overlap(tasks):
    ordered = sorted(tasks, key=lambda t: t.start_time)
    for earlier, later in zip(ordered, ordered[1:]):
        assert earlier.end_time <= later.start_time, f"{earlier} overlaps {later}"


class TestPlanBuilder:
    """Plan builder behaviour"""

    @pytest.fixture(autouse=True)
    def setup(self, db_service, learner, topics, now):
        self.builder = get_plan_builder_service()
        self.db_service = db_service
        self.learner = learner
        self.topics = topics
        self.now = now
        self.exam_date = now + timedelta(days=28)

    def test_builds_tasks_without_overlap(self):
        result = self.builder.build_plan(self.learner.id, self.exam_date, now=self.now)

        assert result.plan.id is not None
        assert len(result.tasks) > 0
        assert_no_overlap(result.tasks)
        for task in result.tasks:
            assert task.end_time > task.start_time
            assert task.duration == int((task.end_time - task.start_time).total_seconds() // 60)

    def test_build_is_recorded_as_plan_mutation(self, monkeypatch):
        mutations = []

        class RecordingEvents:
            def log_plan_mutation(self, action, plan_id, **details):
                mutations.append((action, plan_id, details))

        monkeypatch.setattr(plan_builder_module, "get_logging_service", RecordingEvents)

        result = self.builder.build_plan(self.learner.id, self.exam_date, now=self.now)

        assert mutations == [
            ("built", result.plan.id, {"user_id": self.learner.id, "task_count": len(result.tasks)})
        ]

    def test_tasks_stay_between_tomorrow_and_exam_day(self):
        result = self.builder.build_plan(self.learner.id, self.exam_date, now=self.now)

        for task in result.tasks:
            assert task.start_time.date() > self.now.date()
            assert task.end_time.date() < self.exam_date.date()
            assert task.start_time.weekday() < 5

    def test_prerequisites_start_first(self):
        result = self.builder.build_plan(self.learner.id, self.exam_date, now=self.now)

        first_start = {}
        for task in result.tasks:
            current = first_start.get(task.topic_id)
            if current is None or task.start_time < current:
                first_start[task.topic_id] = task.start_time

        safety, care, pharm = self.topics
        assert first_start[safety.id] <= first_start[pharm.id]
        assert first_start[care.id] <= first_start[pharm.id]
        assert result.validation.prerequisite_violations == []

    def test_every_topic_gets_time(self):
        result = self.builder.build_plan(self.learner.id, self.exam_date, now=self.now)

        scheduled = {t.topic_id for t in result.tasks}
        assert scheduled == {t.id for t in self.topics}
        assert result.validation.coverage_gaps == []

    def test_mon_wed_fri_two_hours(self):
        availability = Availability.from_days(
            ["Monday", "Wednesday", "Friday"], 2, PreferredStudyTime.MORNING
        )
        result = self.builder.build_plan(
            self.learner.id, self.exam_date, availability=availability, now=self.now
        )

        minutes_per_day = defaultdict(int)
        for task in result.tasks:
            assert task.start_time.weekday() in (0, 2, 4)
            minutes_per_day[task.start_time.date()] += task.duration
        assert minutes_per_day
        assert max(minutes_per_day.values()) <= 120

    def test_weak_areas_get_more_time(self):
        safety = self.topics[0]
        baseline = self.builder.compute_priorities(self.topics)
        boosted = self.builder.compute_priorities(self.topics, weak_areas=[safety.id])

        assert boosted[safety.id] > baseline[safety.id]

        result = self.builder.build_plan(
            self.learner.id, self.exam_date, weak_areas=[safety.id], now=self.now
        )
        assert result.plan.is_personalized is True
        assert result.plan.weak_areas == [safety.id]

    def test_second_plan_for_user_rejected(self):
        self.builder.build_plan(self.learner.id, self.exam_date, now=self.now)

        with pytest.raises(DataIntegrityError):
            self.builder.build_plan(self.learner.id, self.exam_date, now=self.now)

    def test_empty_availability_is_infeasible(self):
        availability = Availability.from_days([], 2)

        with pytest.raises(PlanInfeasibleError):
            self.builder.build_plan(
                self.learner.id, self.exam_date, availability=availability, now=self.now
            )

    def test_past_exam_date_is_infeasible(self):
        with pytest.raises(PlanInfeasibleError):
            self.builder.build_plan(
                self.learner.id, self.now - timedelta(days=1), now=self.now
            )

    def test_exam_tomorrow_leaves_no_study_day(self):
        with pytest.raises(PlanInfeasibleError):
            self.builder.build_plan(
                self.learner.id, self.now + timedelta(days=1), now=self.now
            )

    def test_unknown_user(self):
        with pytest.raises(NotFoundError):
            self.builder.build_plan(9999, self.exam_date, now=self.now)

    def test_revalidate_stores_report(self):
        self.builder.build_plan(self.learner.id, self.exam_date, now=self.now)

        report = self.builder.revalidate_plan(self.learner.id)

        plan = self.db_service.get_plan_for_user(self.learner.id)
        assert plan.validation_report["is_valid"] == report.is_valid

    def test_revalidate_without_plan(self):
        with pytest.raises(NotFoundError):
            self.builder.revalidate_plan(self.learner.id)


class TestTopicGraph:
    """Prerequisite graph checks"""

    def _topic(self, topic_id, prereqs=(), importance=5):
        return Topic(
            id=topic_id,
            name=f"Topic {topic_id}",
            category=TopicCategory.HEALTH_PROMOTION,
            importance=importance,
            prerequisite_ids=list(prereqs),
        )

    def test_cycle_detected(self):
        graph = TopicGraph([self._topic(1, [3]), self._topic(2, [1]), self._topic(3, [2])])

        assert graph.find_cycle() is not None
        with pytest.raises(DataIntegrityError):
            graph.assert_acyclic()

    def test_topological_order_prefers_priority(self):
        graph = TopicGraph(
            [self._topic(1, importance=2), self._topic(2, importance=9), self._topic(3, [1, 2])]
        )

        assert graph.topological_order() == [2, 1, 3]

    def test_create_topic_with_missing_prerequisite(self, db_service):
        with pytest.raises(NotFoundError):
            db_service.create_topic(
                Topic(
                    name="Orphan",
                    category=TopicCategory.HEALTH_PROMOTION,
                    prerequisite_ids=[4242],
                )
            )
