"""
Tests for the monitor engine's statistics and alert rules
"""

import pytest
from datetime import timedelta

from src.core.exceptions import EnrichmentUnavailableError, NotFoundError
from src.core.models import AlertSeverity, AlertType, TaskStatus
from src.core.services.monitor_service import MonitorService, get_monitor_service
from src.core.services.task_status_service import get_task_status_service
from src.core.services.task_store import TaskStore

from tests.conftest import make_task


class UnreachableSummarizer:
    def summarize(self, kind, payload):
        raise EnrichmentUnavailableError("summarizer timed out")

    def suggest_adaptations(self, payload):
        raise EnrichmentUnavailableError("summarizer timed out")


class CannedSummarizer:
    def summarize(self, kind, payload):
        return "- Catch up on missed tasks\n- Keep the streak going"

    def suggest_adaptations(self, payload):
        return []


class TestMonitorService:
    """Alert rules over a hand-built calendar"""

    @pytest.fixture(autouse=True)
    def setup(self, db_service, empty_plan, topics, now):
        self.db_service = db_service
        self.plan = empty_plan
        self.topics = topics
        self.now = now
        self.monitor = get_monitor_service()
        self.status = get_task_status_service()

        past = (now - timedelta(days=5)).replace(hour=9)
        future = (now + timedelta(days=1)).replace(hour=9)
        with db_service.get_session() as session:
            store = TaskStore(session)
            self.missed = [
                store.add_task(
                    make_task(self.plan.id, topics[0].id, past + timedelta(days=i))
                )
                for i in range(3)
            ]
            self.upcoming = [
                store.add_task(
                    make_task(self.plan.id, topics[i % 3].id, future + timedelta(days=i))
                )
                for i in range(7)
            ]
            session.commit()

    def test_three_of_ten_missed_raises_one_high_alert(self):
        result = self.monitor.run(self.plan.user_id, now=self.now)

        assert result.stats.total_tasks == 10
        assert result.stats.missed_tasks == 3
        assert result.stats.missed_ratio == pytest.approx(0.3)
        assert sorted(result.stats.missed_task_ids) == sorted(t.id for t in self.missed)

        types = [a.type for a in result.alerts]
        assert types.count(AlertType.MISSED_TASK) == 1
        assert AlertType.LOW_PERFORMANCE not in types
        missed_alert = next(a for a in result.alerts if a.type == AlertType.MISSED_TASK)
        assert missed_alert.severity == AlertSeverity.HIGH
        assert missed_alert.alert_metadata["source"] == "MONITOR_AGENT"

    def test_consecutive_missed_days(self):
        result = self.monitor.run(self.plan.user_id, now=self.now)

        assert result.stats.consecutive_missed_days == 3

    def test_rerun_does_not_duplicate_alerts(self):
        self.monitor.run(self.plan.user_id, now=self.now)
        second = self.monitor.run(self.plan.user_id, now=self.now)

        assert second.alerts == []
        missed = [a for a in second.active_alerts if a.type == AlertType.MISSED_TASK]
        assert len(missed) == 1

    def test_completed_past_tasks_are_not_missed(self):
        for task in self.missed:
            self.status.apply_status_transition(task.id, TaskStatus.COMPLETED, now=self.now)

        result = self.monitor.run(self.plan.user_id, now=self.now)

        assert result.stats.missed_tasks == 0
        assert result.stats.completed_tasks == 3
        assert AlertType.MISSED_TASK not in [a.type for a in result.alerts]

    def test_low_scores_raise_performance_alerts(self):
        topic_tasks = [t for t in self.upcoming if t.topic_id == self.topics[1].id]
        for task in topic_tasks[:2]:
            self.status.record_performance(task.id, score=45, now=self.now)

        result = self.monitor.run(self.plan.user_id, now=self.now)

        by_type = {a.type: a for a in result.alerts}
        assert by_type[AlertType.LOW_PERFORMANCE].severity == AlertSeverity.HIGH
        assert by_type[AlertType.TOPIC_DIFFICULTY].related_topic_id == self.topics[1].id
        assert AlertType.GENERAL in by_type

    def test_study_gap_raises_pattern_alert(self):
        self.status.record_performance(
            self.upcoming[0].id, score=80, now=self.now - timedelta(days=10)
        )
        self.status.record_performance(self.upcoming[1].id, score=80, now=self.now)

        result = self.monitor.run(self.plan.user_id, now=self.now)

        assert result.stats.longest_study_gap_days == 10
        pattern = [a for a in result.alerts if a.type == AlertType.STUDY_PATTERN]
        assert len(pattern) == 1
        assert pattern[0].severity == AlertSeverity.LOW

    def test_monitor_without_plan(self, db_service):
        other = db_service.create_user(username="no_plan")

        with pytest.raises(NotFoundError):
            self.monitor.run(other.id, now=self.now)

    def test_late_completions_raise_medium_deviation(self):
        for task in self.missed:
            self.status.apply_status_transition(
                task.id, TaskStatus.COMPLETED, now=task.end_time + timedelta(days=2, hours=12)
            )

        result = self.monitor.run(self.plan.user_id, now=self.now)

        assert result.stats.average_delay_days == pytest.approx(2.5)
        deviation = [a for a in result.alerts if a.type == AlertType.SCHEDULE_DEVIATION]
        assert len(deviation) == 1
        assert deviation[0].severity == AlertSeverity.MEDIUM

    def test_very_late_completions_raise_high_deviation(self):
        for task in self.missed:
            self.status.apply_status_transition(task.id, TaskStatus.COMPLETED, now=self.now)

        result = self.monitor.run(self.plan.user_id, now=self.now)

        assert result.stats.average_delay_days >= 3
        deviation = [a for a in result.alerts if a.type == AlertType.SCHEDULE_DEVIATION]
        assert deviation[0].severity == AlertSeverity.HIGH

    def test_on_time_completions_raise_no_deviation(self):
        for task in self.missed:
            self.status.apply_status_transition(task.id, TaskStatus.COMPLETED, now=task.end_time)

        result = self.monitor.run(self.plan.user_id, now=self.now)

        assert result.stats.average_delay_days == 0
        assert AlertType.SCHEDULE_DEVIATION not in [a.type for a in result.alerts]

    def test_summarizer_failure_degrades_but_keeps_alerts(self):
        monitor = MonitorService(self.db_service, summarizer=UnreachableSummarizer())

        result = monitor.run(self.plan.user_id, now=self.now)

        assert result.degraded
        assert result.enrichment_error == "summarizer timed out"
        assert result.summary is None
        assert AlertType.MISSED_TASK in [a.type for a in result.alerts]

    def test_summary_becomes_insights(self):
        monitor = MonitorService(self.db_service, summarizer=CannedSummarizer())

        result = monitor.run(self.plan.user_id, now=self.now)

        assert not result.degraded
        assert result.insights == ["Catch up on missed tasks", "Keep the streak going"]
