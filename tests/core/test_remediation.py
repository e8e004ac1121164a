"""
Tests for remediation review scheduling and effectiveness tracking
"""

import pytest
from datetime import datetime, timedelta

from src.core.exceptions import NotFoundError, PlanInfeasibleError
from src.core.models import (
    AlertSeverity,
    AlertType,
    RemediationActionType,
    StudyPlan,
    TaskType,
)
from src.core.services.remediation_service import get_remediation_service
from src.core.services.task_status_service import get_task_status_service
from src.core.services.task_store import TaskStore

from tests.conftest import make_task


class TestRemediationService:
    """Remediation reviews and their bookkeeping"""

    @pytest.fixture(autouse=True)
    def setup(self, db_service, empty_plan, topics, now):
        self.db_service = db_service
        self.plan = empty_plan
        self.user_id = empty_plan.user_id
        self.topics = topics
        self.now = now
        self.service = get_remediation_service()
        self.status = get_task_status_service()
        start = (now + timedelta(days=3)).replace(hour=9)
        with db_service.get_session() as session:
            store = TaskStore(session)
            self.tasks = [
                store.add_task(make_task(self.plan.id, topic.id, start + timedelta(days=i)))
                for i, topic in enumerate(topics)
            ]
            session.commit()

    def _reviews(self, topic_id):
        with self.db_service.get_session() as session:
            return TaskStore(session).find_tasks(
                self.plan.id, types=[TaskType.REVIEW], topic_id=topic_id
            )

    def _add_alert(self, type, topic_id=None):
        with self.db_service.get_session() as session:
            alert = TaskStore(session).add_alert(
                self.user_id,
                self.plan.id,
                type,
                AlertSeverity.MEDIUM,
                "Scores are slipping",
                related_topic_id=topic_id,
                created_at=self.now,
            )
            session.commit()
            return alert

    def test_schedule_review_creates_task_and_alert(self):
        care = self.topics[1]

        result = self.service.schedule_review(self.user_id, care.id, now=self.now)

        assert result.created
        task = result.task
        assert task.type == TaskType.REVIEW
        assert task.start_time > self.now
        assert task.duration == 30
        assert task.task_metadata["is_remediation"] is True
        assert task.task_metadata["priority"] == "HIGH"
        assert task.task_metadata["source"] == "REMEDIATION_AGENT"
        assert result.alert.type == AlertType.REMEDIATION
        assert result.alert.alert_metadata["scheduled_task_id"] == task.id

    def test_schedule_review_is_idempotent(self):
        care = self.topics[1]

        first = self.service.schedule_review(self.user_id, care.id, now=self.now)
        second = self.service.schedule_review(self.user_id, care.id, now=self.now)

        assert not second.created
        assert second.task.id == first.task.id
        assert len(self._reviews(care.id)) == 1

    def test_review_avoids_existing_tasks(self):
        tomorrow = (self.now + timedelta(days=1)).replace(hour=10)
        with self.db_service.get_session() as session:
            TaskStore(session).add_task(make_task(self.plan.id, self.topics[0].id, tomorrow))
            session.commit()

        result = self.service.schedule_review(self.user_id, self.topics[1].id, now=self.now)

        assert result.task.start_time != tomorrow

    def test_triggering_alert_is_annotated(self):
        care = self.topics[1]
        alert = self._add_alert(AlertType.LOW_PERFORMANCE, care.id)

        result = self.service.schedule_review(
            self.user_id, care.id, alert_id=alert.id, now=self.now
        )

        with self.db_service.get_session() as session:
            updated = TaskStore(session).get_alert(alert.id)
        assert updated.alert_metadata["scheduled_task_id"] == result.task.id
        assert updated.alert_metadata["suggested_action"] == "REVIEW_SCHEDULED"
        assert result.task.task_metadata["related_alert_id"] == alert.id

    def test_process_alerts_twice_keeps_one_review(self):
        care = self.topics[1]
        self._add_alert(AlertType.LOW_PERFORMANCE, care.id)

        first = self.service.process_alerts(self.user_id, now=self.now)
        second = self.service.process_alerts(self.user_id, now=self.now)

        assert [r.created for r in first.scheduled] == [True]
        assert [r.created for r in second.scheduled] == [False]
        assert len(self._reviews(care.id)) == 1

    def test_alert_without_topic_uses_weakest_topics(self):
        safety, care, pharm = self.topics
        self.status.record_performance(self.tasks[0].id, score=30, now=self.now)
        self.status.record_performance(self.tasks[2].id, score=50, now=self.now)
        self.status.record_performance(self.tasks[1].id, score=95, now=self.now)
        self._add_alert(AlertType.LOW_PERFORMANCE)

        result = self.service.process_alerts(self.user_id, now=self.now)

        assert [r.task.topic_id for r in result.scheduled] == [safety.id, pharm.id]
        assert self._reviews(care.id) == []

    def test_other_alert_types_ignored(self):
        self._add_alert(AlertType.MISSED_TASK, self.topics[0].id)

        result = self.service.process_alerts(self.user_id, now=self.now)

        assert result.scheduled == []

    def test_no_slot_before_exam(self, db_service):
        other = db_service.create_user(username="cramming")
        with db_service.get_session() as session:
            session.add(
                StudyPlan(
                    user_id=other.id,
                    exam_date=self.now + timedelta(hours=12),
                    start_date=self.now,
                    end_date=self.now + timedelta(hours=12),
                )
            )
            session.commit()

        with pytest.raises(PlanInfeasibleError):
            self.service.schedule_review(other.id, self.topics[0].id, now=self.now)

    def test_review_lands_on_an_available_day(self, db_service):
        other = db_service.create_user(
            username="alternate_days", available_days=["Monday", "Wednesday", "Friday"]
        )
        friday = datetime(2030, 1, 11, 9, 0)
        with db_service.get_session() as session:
            session.add(
                StudyPlan(
                    user_id=other.id,
                    exam_date=friday + timedelta(days=21),
                    start_date=friday,
                    end_date=friday + timedelta(days=21),
                )
            )
            session.commit()

        result = self.service.schedule_review(other.id, self.topics[0].id, now=friday)

        assert result.task.start_time.weekday() in (0, 2, 4)
        assert 9 <= result.task.start_time.hour
        assert result.task.end_time.hour <= 17

    def test_unknown_topic(self):
        with pytest.raises(NotFoundError):
            self.service.schedule_review(self.user_id, 9999, now=self.now)

    def test_effectiveness_compares_follow_up_scores(self):
        care = self.topics[1]
        self.status.record_performance(self.tasks[1].id, score=50, now=self.now)

        outcome = self.service.track_effectiveness(
            self.user_id,
            care.id,
            RemediationActionType.RECOMMEND_CONTENT,
            details={"resource": "flashcards"},
            now=self.now,
        )
        assert outcome.baseline_score == 50

        self.status.record_performance(
            self.tasks[1].id, score=80, now=self.now + timedelta(days=2)
        )
        report = self.service.evaluate_effectiveness(self.user_id, care.id)

        assert len(report) == 1
        assert report[0]["follow_up_score"] == 80
        assert report[0]["delta"] == 30
        assert report[0]["improved"] is True

    def test_effectiveness_without_follow_up(self):
        self.service.schedule_review(self.user_id, self.topics[0].id, now=self.now)

        report = self.service.evaluate_effectiveness(self.user_id)

        assert report[0]["action_type"] == "SCHEDULE_REVIEW"
        assert report[0]["samples"] == 0
        assert report[0]["improved"] is False
