"""
Tests for calendar deduplication and alert pruning
"""

import pytest
from datetime import timedelta

from src.core.models import AlertSeverity, AlertType, Performance, TaskStatus, TaskType
from src.core.services.cleanup_service import get_cleanup_service
from src.core.services.task_store import TaskStore

from tests.conftest import make_task


class TestCleanupService:
    """Idempotent cleanup operations"""

    @pytest.fixture(autouse=True)
    def setup(self, db_service, empty_plan, topics, now):
        self.db_service = db_service
        self.plan = empty_plan
        self.user_id = empty_plan.user_id
        self.topics = topics
        self.now = now
        self.service = get_cleanup_service()
        self.start = (now + timedelta(days=1)).replace(hour=9)

    def _alert(self, store, type, created_at=None, **kwargs):
        return store.add_alert(
            self.user_id,
            self.plan.id,
            type,
            AlertSeverity.LOW,
            f"{type.value} alert",
            created_at=created_at or self.now,
            **kwargs,
        )

    def test_time_duplicates_collapse_to_one_survivor(self):
        topic = self.topics[0]
        with self.db_service.get_session() as session:
            # Legacy rows written around the overlap check
            pending = make_task(self.plan.id, topic.id, self.start)
            completed = make_task(
                self.plan.id, topic.id, self.start, status=TaskStatus.COMPLETED
            )
            skipped = make_task(self.plan.id, topic.id, self.start, status=TaskStatus.SKIPPED)
            session.add_all([pending, completed, skipped])
            session.flush()
            store = TaskStore(session)
            self._alert(store, AlertType.MISSED_TASK, related_task_id=pending.id)
            self._alert(store, AlertType.MISSED_TASK, related_task_id=skipped.id)
            session.add(
                Performance(
                    user_id=self.user_id,
                    task_id=pending.id,
                    topic_id=topic.id,
                    score=60,
                    completed=False,
                )
            )
            session.commit()
            completed_id = completed.id

        result = self.service.collapse_time_duplicates(self.user_id, now=self.now)

        assert result == {"removed_tasks": 2, "resolved_alerts": 2}
        with self.db_service.get_session() as session:
            store = TaskStore(session)
            tasks = store.find_tasks(self.plan.id)
            assert [t.id for t in tasks] == [completed_id]
            alerts = store.find_alerts(self.user_id)
            assert all(a.is_resolved for a in alerts)
            assert {a.alert_metadata["resolution"] for a in alerts} == {"DUPLICATE_REMOVED"}
            assert [p.task_id for p in store.find_performances(user_id=self.user_id)] == [
                completed_id
            ]

        again = self.service.collapse_time_duplicates(self.user_id, now=self.now)
        assert again == {"removed_tasks": 0, "resolved_alerts": 0}

    def test_remediation_duplicates_keep_earliest(self):
        topic = self.topics[1]
        meta = {"is_remediation": True, "source": "REMEDIATION_AGENT", "priority": "HIGH"}
        with self.db_service.get_session() as session:
            store = TaskStore(session)
            early = store.add_task(
                make_task(
                    self.plan.id, topic.id, self.start, 30, type=TaskType.REVIEW, task_metadata=meta
                )
            )
            late = store.add_task(
                make_task(
                    self.plan.id,
                    topic.id,
                    self.start + timedelta(days=1),
                    30,
                    type=TaskType.REVIEW,
                    task_metadata=dict(meta),
                )
            )
            alert = self._alert(
                store,
                AlertType.REMEDIATION,
                related_task_id=late.id,
                related_topic_id=topic.id,
                metadata={"scheduled_task_id": late.id},
            )
            session.commit()

        result = self.service.collapse_remediation_duplicates(self.user_id, now=self.now)

        assert result == {"removed_tasks": 1, "repointed_alerts": 1}
        with self.db_service.get_session() as session:
            store = TaskStore(session)
            assert [t.id for t in store.find_tasks(self.plan.id)] == [early.id]
            repointed = store.get_alert(alert.id)
            assert repointed.related_task_id == early.id
            assert repointed.alert_metadata["scheduled_task_id"] == early.id

        assert self.service.collapse_remediation_duplicates(self.user_id, now=self.now) == {
            "removed_tasks": 0,
            "repointed_alerts": 0,
        }

    def test_orphaned_alerts_resolved(self):
        with self.db_service.get_session() as session:
            store = TaskStore(session)
            task = store.add_task(make_task(self.plan.id, self.topics[0].id, self.start))
            kept = self._alert(store, AlertType.MISSED_TASK, related_task_id=task.id)
            orphan = self._alert(store, AlertType.MISSED_TASK, related_task_id=98765)
            session.commit()

        assert self.service.resolve_orphaned_alerts(self.user_id, now=self.now) == {
            "resolved_alerts": 1
        }
        with self.db_service.get_session() as session:
            store = TaskStore(session)
            assert store.get_alert(orphan.id).is_resolved
            assert not store.get_alert(kept.id).is_resolved

    def test_general_alerts_capped_to_newest(self):
        with self.db_service.get_session() as session:
            store = TaskStore(session)
            alerts = [
                self._alert(store, AlertType.GENERAL, created_at=self.now + timedelta(hours=i))
                for i in range(5)
            ]
            session.commit()

        assert self.service.cap_general_alerts(self.user_id, now=self.now) == {
            "resolved_alerts": 2
        }
        with self.db_service.get_session() as session:
            store = TaskStore(session)
            open_ids = {a.id for a in store.find_alerts(self.user_id, is_resolved=False)}
        assert open_ids == {a.id for a in alerts[2:]}

    def test_remediation_alerts_trimmed_per_topic(self):
        with self.db_service.get_session() as session:
            store = TaskStore(session)
            for i in range(3):
                self._alert(
                    store,
                    AlertType.REMEDIATION,
                    created_at=self.now + timedelta(minutes=i),
                    related_topic_id=self.topics[0].id,
                )
            self._alert(store, AlertType.REMEDIATION, related_topic_id=self.topics[1].id)
            session.commit()

        assert self.service.trim_excessive_remediation_alerts(self.user_id, now=self.now) == {
            "resolved_alerts": 2
        }

    def test_run_all_reports_every_operation(self):
        result = self.service.run_all(self.user_id, now=self.now)

        assert set(result) == {
            "remediation_duplicates",
            "time_duplicates",
            "orphaned_alerts",
            "general_alerts",
            "remediation_alerts",
        }
