"""
Tests for schedule entry management and due-entry sweeps
"""

import pytest
from datetime import timedelta

from src.core.exceptions import DataIntegrityError, NotFoundError
from src.core.models import AgentType, ScheduleType, SequenceType, StudyPlan
from src.core.services.agent_scheduler import AgentScheduler, SqlScheduleStore
from src.core.services.orchestrator import OrchestrationResult


class FakeOrchestrator:
    """Records calls; optionally runs a hook in the middle of a run"""

    def __init__(self):
        self.calls = []
        self.during_run = None
        self.crash_on = set()

    def _run(self, target, user_id):
        self.calls.append((target, user_id))
        if self.during_run is not None:
            self.during_run()
        if target in self.crash_on:
            raise RuntimeError(f"{target.value} lost its database connection")
        return OrchestrationResult(user_id=user_id)

    def run_sequence(self, sequence, user_id, options=None, now=None):
        return self._run(sequence, user_id)

    def run_agent(self, agent_type, user_id, params=None, options=None, now=None):
        return self._run(agent_type, user_id)


class TestAgentScheduler:
    """Entry CRUD, claiming and execution"""

    @pytest.fixture(autouse=True)
    def setup(self, db_service, empty_plan, now):
        self.db_service = db_service
        self.user_id = empty_plan.user_id
        self.now = now
        self.orchestrator = FakeOrchestrator()
        self.store = SqlScheduleStore(db_service, stale_after=timedelta(minutes=15))
        self.scheduler = AgentScheduler(self.store, self.orchestrator, db_service)

    def test_entry_needs_exactly_one_target(self):
        with pytest.raises(DataIntegrityError):
            self.scheduler.create_entry(
                agent_type=AgentType.MONITOR,
                sequence_type=SequenceType.STANDARD,
                interval_minutes=60,
            )
        with pytest.raises(DataIntegrityError):
            self.scheduler.create_entry(interval_minutes=60)

    def test_recurring_entry_needs_interval(self):
        with pytest.raises(DataIntegrityError):
            self.scheduler.create_entry(agent_type=AgentType.MONITOR)

    def test_priority_range(self):
        with pytest.raises(DataIntegrityError):
            self.scheduler.create_entry(
                agent_type=AgentType.MONITOR, interval_minutes=60, priority=11
            )

    def test_update_and_delete(self):
        entry = self.scheduler.create_entry(
            agent_type=AgentType.MONITOR, interval_minutes=60, now=self.now
        )

        updated = self.scheduler.update_entry(entry.id, enabled=False, priority=7)
        assert updated.enabled is False
        assert updated.priority == 7

        with pytest.raises(DataIntegrityError):
            self.scheduler.update_entry(entry.id, in_progress=True)

        self.scheduler.delete_entry(entry.id)
        with pytest.raises(NotFoundError):
            self.scheduler.get_entry(entry.id)

    def test_due_entries_ordered_by_priority(self):
        low = self.scheduler.create_entry(
            agent_type=AgentType.MONITOR, interval_minutes=60, priority=2, now=self.now
        )
        high = self.scheduler.create_entry(
            sequence_type=SequenceType.STANDARD, interval_minutes=60, priority=9, now=self.now
        )
        self.scheduler.create_entry(
            agent_type=AgentType.MONITOR,
            interval_minutes=60,
            next_run=self.now + timedelta(hours=1),
        )

        due = self.scheduler.get_due_entries(self.now)

        assert [e.id for e in due] == [high.id, low.id]

    def test_recurring_entry_advances_past_now(self):
        entry = self.scheduler.create_entry(
            sequence_type=SequenceType.STANDARD,
            user_id=self.user_id,
            interval_minutes=60,
            next_run=self.now - timedelta(hours=3, minutes=30),
        )

        results = self.scheduler.process_due(self.now)

        assert len(results) == 1
        assert results[0]["success"] is True
        assert self.orchestrator.calls == [(SequenceType.STANDARD, self.user_id)]
        stored = self.scheduler.get_entry(entry.id)
        assert stored.next_run == self.now + timedelta(minutes=30)
        assert stored.last_run == self.now
        assert stored.in_progress is False
        assert stored.last_result["runs"][str(self.user_id)]["outcome"] == "SUCCEEDED"

    def test_one_time_entry_disabled_after_run(self):
        entry = self.scheduler.create_entry(
            agent_type=AgentType.MONITOR,
            schedule_type=ScheduleType.ONE_TIME,
            user_id=self.user_id,
            now=self.now,
        )

        self.scheduler.process_due(self.now)

        assert self.scheduler.get_entry(entry.id).enabled is False
        assert self.scheduler.process_due(self.now + timedelta(days=1)) == []

    def test_overlapping_sweeps_run_entry_once(self):
        self.scheduler.create_entry(
            sequence_type=SequenceType.STANDARD,
            user_id=self.user_id,
            interval_minutes=60,
            now=self.now,
        )
        inner = []
        self.orchestrator.during_run = lambda: inner.append(self.scheduler.process_due(self.now))

        self.scheduler.process_due(self.now)

        assert len(self.orchestrator.calls) == 1
        assert inner == [[]]

    def test_stale_claim_is_reclaimed(self):
        entry = self.scheduler.create_entry(
            agent_type=AgentType.MONITOR, interval_minutes=60, now=self.now
        )

        assert self.store.claim(entry.id, self.now)
        assert not self.store.claim(entry.id, self.now + timedelta(minutes=5))
        assert self.store.claim(entry.id, self.now + timedelta(minutes=20))

    def test_entry_without_user_fans_out(self):
        other = self.db_service.create_user(username="second")
        with self.db_service.get_session() as session:
            session.add(
                StudyPlan(
                    user_id=other.id,
                    exam_date=self.now + timedelta(days=40),
                    start_date=self.now,
                    end_date=self.now + timedelta(days=40),
                )
            )
            session.commit()
        self.db_service.create_user(username="planless")
        self.scheduler.create_entry(
            agent_type=AgentType.MONITOR, interval_minutes=60, now=self.now
        )

        self.scheduler.process_due(self.now)

        assert sorted(user for _, user in self.orchestrator.calls) == sorted(
            [self.user_id, other.id]
        )

    def test_standard_monitoring_adds_priority_entry_near_exam(self):
        soon = self.db_service.create_user(username="soon")
        with self.db_service.get_session() as session:
            session.add(
                StudyPlan(
                    user_id=soon.id,
                    exam_date=self.now + timedelta(days=10),
                    start_date=self.now,
                    end_date=self.now + timedelta(days=10),
                )
            )
            session.commit()

        created = self.scheduler.schedule_standard_monitoring_for_all_users(self.now)

        targets = {(e.user_id, e.sequence_type, e.interval_minutes) for e in created}
        assert targets == {
            (self.user_id, SequenceType.STANDARD, 1440),
            (soon.id, SequenceType.STANDARD, 1440),
            (soon.id, SequenceType.COMPREHENSIVE, 240),
        }
        assert self.scheduler.schedule_standard_monitoring_for_all_users(self.now) == []

    def test_trigger_event_run_leaves_no_entry(self):
        result = self.scheduler.trigger_event_run(
            self.user_id, agent_type=AgentType.MONITOR, now=self.now
        )

        assert result["success"] is True
        assert self.orchestrator.calls == [(AgentType.MONITOR, self.user_id)]
        assert self.scheduler.list_entries() == []

    def test_crashing_entry_does_not_stop_the_sweep(self):
        crashing = self.scheduler.create_entry(
            agent_type=AgentType.REMEDIATION,
            user_id=self.user_id,
            interval_minutes=60,
            priority=9,
            now=self.now,
        )
        healthy = self.scheduler.create_entry(
            agent_type=AgentType.MONITOR,
            user_id=self.user_id,
            interval_minutes=60,
            priority=5,
            now=self.now,
        )
        self.orchestrator.crash_on = {AgentType.REMEDIATION}

        results = self.scheduler.process_due(self.now)

        assert [r["entry_id"] for r in results] == [crashing.id, healthy.id]
        assert [r["success"] for r in results] == [False, True]
        assert self.orchestrator.calls == [
            (AgentType.REMEDIATION, self.user_id),
            (AgentType.MONITOR, self.user_id),
        ]
        failed = self.scheduler.get_entry(crashing.id)
        assert failed.in_progress is False
        assert failed.last_run == self.now
        assert failed.next_run == self.now + timedelta(hours=1)
        assert "lost its database connection" in failed.last_result["errors"][str(self.user_id)]
        assert self.scheduler.get_entry(healthy.id).in_progress is False

    def test_later_entries_stay_unclaimed_while_one_runs(self):
        first = self.scheduler.create_entry(
            agent_type=AgentType.MONITOR,
            user_id=self.user_id,
            interval_minutes=60,
            priority=9,
            now=self.now,
        )
        second = self.scheduler.create_entry(
            agent_type=AgentType.ADAPTATION,
            user_id=self.user_id,
            interval_minutes=60,
            priority=2,
            now=self.now,
        )
        seen = []
        self.orchestrator.during_run = lambda: seen.append(
            {e.id: e.in_progress for e in self.scheduler.list_entries()}
        )

        self.scheduler.process_due(self.now)

        assert seen[0] == {first.id: True, second.id: False}

    def test_malformed_params_recorded_and_sweep_continues(self):
        real = AgentScheduler(self.store, db_service=self.db_service)
        bad = real.create_entry(
            agent_type=AgentType.REMEDIATION,
            user_id=self.user_id,
            interval_minutes=60,
            priority=9,
            params={"topic_id": "abc"},
            now=self.now,
        )
        good = real.create_entry(
            agent_type=AgentType.MONITOR,
            user_id=self.user_id,
            interval_minutes=60,
            now=self.now,
        )

        results = real.process_due(self.now)

        assert [r["success"] for r in results] == [False, True]
        stored = real.get_entry(bad.id)
        assert stored.in_progress is False
        assert "topic_id" in stored.last_result["errors"][str(self.user_id)]
        assert real.get_entry(good.id).last_run == self.now
