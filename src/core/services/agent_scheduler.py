"""
Agent Scheduler for the exam preparation engine.

Holds recurring and one-off schedule entries and runs those that are due
through the orchestrator. Entries are claimed with a conditional UPDATE
before execution, so overlapping sweeps run each due occurrence once.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import and_, or_, select, update

from ..exceptions import DataIntegrityError, ExamPrepException, NotFoundError
from ..models import AgentType, ScheduleEntry, ScheduleType, SequenceType, StudyPlan
from .database import DatabaseService, get_db_service
from .logging import get_logging_service
from .orchestrator import AgentOrchestrator, get_orchestrator
from .settings_config_service import get_settings_service

UPDATABLE_FIELDS = {
    "agent_type",
    "sequence_type",
    "schedule_type",
    "user_id",
    "interval_minutes",
    "priority",
    "enabled",
    "params",
    "options",
    "next_run",
}


class ScheduleStore(Protocol):
    """Persistence for schedule entries"""

    def create(self, entry: ScheduleEntry) -> ScheduleEntry: ...

    def get(self, entry_id: int) -> Optional[ScheduleEntry]: ...

    def update(self, entry_id: int, changes: Dict[str, Any]) -> ScheduleEntry: ...

    def delete(self, entry_id: int) -> bool: ...

    def list(self, user_id: Optional[int] = None) -> List[ScheduleEntry]: ...

    def due(self, now: datetime) -> List[ScheduleEntry]: ...

    def claim(self, entry_id: int, now: datetime) -> bool: ...

    def release(self, entry_id: int, changes: Dict[str, Any]) -> None: ...


class SqlScheduleStore:
    """ScheduleStore backed by the schedule_entries table"""

    def __init__(self, db_service: DatabaseService, stale_after: Optional[timedelta] = None):
        self.db = db_service
        if stale_after is None:
            stale_after = timedelta(
                minutes=get_settings_service().getint("agent_scheduler", "stale_claim_minutes", 15)
            )
        self.stale_after = stale_after

    def create(self, entry: ScheduleEntry) -> ScheduleEntry:
        with self.db.get_session() as session:
            session.add(entry)
            session.commit()
            session.refresh(entry)
            return entry

    def get(self, entry_id: int) -> Optional[ScheduleEntry]:
        with self.db.get_session() as session:
            return session.get(ScheduleEntry, entry_id)

    def update(self, entry_id: int, changes: Dict[str, Any]) -> ScheduleEntry:
        with self.db.get_session() as session:
            entry = session.get(ScheduleEntry, entry_id)
            if entry is None:
                raise NotFoundError(f"Schedule entry {entry_id} not found")
            for key, value in changes.items():
                setattr(entry, key, value)
            session.commit()
            session.refresh(entry)
            return entry

    def delete(self, entry_id: int) -> bool:
        with self.db.get_session() as session:
            entry = session.get(ScheduleEntry, entry_id)
            if entry is None:
                return False
            session.delete(entry)
            session.commit()
            return True

    def list(self, user_id: Optional[int] = None) -> List[ScheduleEntry]:
        with self.db.get_session() as session:
            stmt = select(ScheduleEntry).order_by(ScheduleEntry.id)
            if user_id is not None:
                stmt = stmt.where(ScheduleEntry.user_id == user_id)
            return list(session.execute(stmt).scalars().all())

    def due(self, now: datetime) -> List[ScheduleEntry]:
        """Enabled entries whose next run has arrived, highest priority first"""
        with self.db.get_session() as session:
            stmt = (
                select(ScheduleEntry)
                .where(
                    ScheduleEntry.enabled.is_(True),
                    ScheduleEntry.next_run.is_not(None),
                    ScheduleEntry.next_run <= now,
                )
                .order_by(ScheduleEntry.priority.desc(), ScheduleEntry.next_run, ScheduleEntry.id)
            )
            return list(session.execute(stmt).scalars().all())

    def claim(self, entry_id: int, now: datetime) -> bool:
        """Atomically mark a due entry in progress; False when another sweep holds it"""
        stale_cutoff = now - self.stale_after
        with self.db.get_session() as session:
            result = session.execute(
                update(ScheduleEntry)
                .where(
                    ScheduleEntry.id == entry_id,
                    ScheduleEntry.enabled.is_(True),
                    ScheduleEntry.next_run <= now,
                    or_(
                        ScheduleEntry.in_progress.is_(False),
                        and_(
                            ScheduleEntry.claimed_at.is_not(None),
                            ScheduleEntry.claimed_at < stale_cutoff,
                        ),
                    ),
                )
                .values(in_progress=True, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def release(self, entry_id: int, changes: Dict[str, Any]) -> None:
        """Clear the claim and apply the post-run changes"""
        self.update(entry_id, {**changes, "in_progress": False, "claimed_at": None})


class AgentScheduler:
    """Cron-like driver that hands due entries to the orchestrator"""

    def __init__(
        self,
        store: ScheduleStore,
        orchestrator: Optional[AgentOrchestrator] = None,
        db_service: Optional[DatabaseService] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator or get_orchestrator()
        self.db = db_service or get_db_service()
        self.events = get_logging_service()
        self.logger = logging.getLogger(__name__)
        settings = get_settings_service()
        self.standard_interval = settings.getint(
            "agent_scheduler", "standard_interval_minutes", 1440
        )
        self.priority_interval = settings.getint(
            "agent_scheduler", "priority_interval_minutes", 240
        )
        self.priority_window_days = settings.getint("agent_scheduler", "priority_window_days", 14)

    # --- Entry management ---

    def _validate(self, fields: Dict[str, Any]) -> None:
        if (fields.get("agent_type") is None) == (fields.get("sequence_type") is None):
            raise DataIntegrityError("A schedule entry needs exactly one of agent_type or sequence_type")
        if fields.get("schedule_type") == ScheduleType.RECURRING and not (
            fields.get("interval_minutes") or 0
        ) > 0:
            raise DataIntegrityError("A recurring schedule entry needs a positive interval")
        priority = fields.get("priority", 5)
        if not 1 <= priority <= 10:
            raise DataIntegrityError(f"Priority {priority} outside 1-10")

    def create_entry(
        self,
        agent_type: Optional[AgentType] = None,
        sequence_type: Optional[SequenceType] = None,
        schedule_type: ScheduleType = ScheduleType.RECURRING,
        user_id: Optional[int] = None,
        interval_minutes: Optional[int] = None,
        priority: int = 5,
        enabled: bool = True,
        params: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
        next_run: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> ScheduleEntry:
        """Create a schedule entry; it is first due at ``next_run`` (default: now)"""
        fields = {
            "agent_type": agent_type,
            "sequence_type": sequence_type,
            "schedule_type": schedule_type,
            "user_id": user_id,
            "interval_minutes": interval_minutes,
            "priority": priority,
            "enabled": enabled,
            "params": dict(params or {}),
            "options": dict(options or {}),
            "next_run": next_run or now or datetime.now(),
        }
        self._validate(fields)
        entry = self.store.create(ScheduleEntry(**fields))
        self.events.log_schedule_event(
            "created",
            entry.id,
            user_id=user_id,
            target=(agent_type or sequence_type).value,
            schedule_type=schedule_type.value,
        )
        return entry

    def update_entry(self, entry_id: int, **changes: Any) -> ScheduleEntry:
        """Enable, disable or reconfigure an entry"""
        entry = self.get_entry(entry_id)
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise DataIntegrityError(f"Cannot update schedule fields: {sorted(unknown)}")
        merged = {f: getattr(entry, f) for f in UPDATABLE_FIELDS}
        merged.update(changes)
        self._validate(merged)
        updated = self.store.update(entry_id, changes)
        self.events.log_schedule_event("updated", entry_id, changes=sorted(changes))
        return updated

    def delete_entry(self, entry_id: int) -> None:
        if not self.store.delete(entry_id):
            raise NotFoundError(f"Schedule entry {entry_id} not found")
        self.events.log_schedule_event("deleted", entry_id)

    def get_entry(self, entry_id: int) -> ScheduleEntry:
        entry = self.store.get(entry_id)
        if entry is None:
            raise NotFoundError(f"Schedule entry {entry_id} not found")
        return entry

    def list_entries(self, user_id: Optional[int] = None) -> List[ScheduleEntry]:
        return self.store.list(user_id)

    def get_due_entries(self, now: Optional[datetime] = None) -> List[ScheduleEntry]:
        return self.store.due(now or datetime.now())

    # --- Execution ---

    def _target_users(self, entry: ScheduleEntry) -> List[int]:
        if entry.user_id is not None:
            return [entry.user_id]
        return [u.id for u in self.db.list_users_with_plans()]

    def _execute(self, entry: ScheduleEntry, now: datetime) -> Dict[str, Any]:
        runs: Dict[str, Any] = {}
        errors: Dict[str, str] = {}
        for user_id in self._target_users(entry):
            try:
                if entry.sequence_type is not None:
                    result = self.orchestrator.run_sequence(
                        entry.sequence_type, user_id, entry.options, now
                    )
                else:
                    result = self.orchestrator.run_agent(
                        entry.agent_type, user_id, entry.params, entry.options, now
                    )
            except ExamPrepException as e:
                errors[str(user_id)] = str(e)
                continue
            except Exception as e:
                self.logger.exception(
                    f"Schedule entry {entry.id} crashed for user {user_id}: {e}"
                )
                errors[str(user_id)] = str(e)
                continue
            runs[str(user_id)] = {
                "outcome": result.outcome.value,
                "failed_step": result.failed_step,
            }
        return {
            "ran_at": now.isoformat(),
            "success": not errors and all(r["outcome"] != "FAILED" for r in runs.values()),
            "runs": runs,
            "errors": errors,
        }

    def _next_run_after(self, entry: ScheduleEntry, now: datetime) -> datetime:
        interval = timedelta(minutes=entry.interval_minutes)
        next_run = (entry.next_run or now) + interval
        while next_run <= now:
            next_run += interval
        return next_run

    def _finish(self, entry: ScheduleEntry, outcome: Dict[str, Any], now: datetime) -> None:
        changes: Dict[str, Any] = {"last_run": now, "last_result": outcome}
        if entry.schedule_type == ScheduleType.RECURRING:
            changes["next_run"] = self._next_run_after(entry, now)
        else:
            changes["enabled"] = False
        self.store.release(entry.id, changes)

    def _failed_outcome(self, error: Exception, now: datetime) -> Dict[str, Any]:
        return {
            "ran_at": now.isoformat(),
            "success": False,
            "runs": {},
            "errors": {"entry": str(error)},
        }

    def _run_claimed(self, entry: ScheduleEntry, now: datetime) -> Dict[str, Any]:
        """Execute a claimed entry; the claim is released whatever happens"""
        try:
            outcome = self._execute(entry, now)
        except Exception as e:
            self.logger.exception(f"Schedule entry {entry.id} failed: {e}")
            outcome = self._failed_outcome(e, now)
        try:
            self._finish(entry, outcome, now)
        except Exception:
            self.store.release(entry.id, {"last_run": now})
            raise
        self.events.log_schedule_event(
            "executed",
            entry.id,
            success=outcome["success"],
            users=len(outcome["runs"]) + len(outcome["errors"]),
        )
        return {"entry_id": entry.id, **outcome}

    def process_due(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Run every due entry this sweep manages to claim.

        Entries are claimed one at a time just before they run, so a slow or
        failing entry never holds a claim on the ones behind it. A failure is
        recorded in that entry's result and the sweep moves on.
        """
        now = now or datetime.now()
        results = []
        for due in self.store.due(now):
            if not self.store.claim(due.id, now):
                continue
            entry = self.store.get(due.id)
            try:
                results.append(self._run_claimed(entry, now))
            except Exception as e:
                self.logger.exception(f"Could not record run of schedule entry {entry.id}: {e}")
                results.append({"entry_id": entry.id, **self._failed_outcome(e, now)})
        if results:
            self.events.log_schedule_event("sweep", processed=len(results))
        return results

    # --- Bulk helpers ---

    def schedule_standard_monitoring_for_all_users(
        self, now: Optional[datetime] = None
    ) -> List[ScheduleEntry]:
        """
        Give every user with a plan and no enabled entry a daily standard
        sequence, plus a 4-hourly comprehensive one when the exam is close.
        """
        now = now or datetime.now()
        created = []
        with self.db.get_session() as session:
            plans = list(session.execute(select(StudyPlan).order_by(StudyPlan.user_id)).scalars())

        for plan in plans:
            if any(e.enabled for e in self.store.list(plan.user_id)):
                continue
            created.append(
                self.create_entry(
                    sequence_type=SequenceType.STANDARD,
                    schedule_type=ScheduleType.RECURRING,
                    user_id=plan.user_id,
                    interval_minutes=self.standard_interval,
                    priority=5,
                    now=now,
                )
            )
            if plan.exam_date - now <= timedelta(days=self.priority_window_days):
                created.append(
                    self.create_entry(
                        sequence_type=SequenceType.COMPREHENSIVE,
                        schedule_type=ScheduleType.RECURRING,
                        user_id=plan.user_id,
                        interval_minutes=self.priority_interval,
                        priority=8,
                        now=now,
                    )
                )
        return created

    def trigger_event_run(
        self,
        user_id: int,
        agent_type: Optional[AgentType] = None,
        sequence_type: Optional[SequenceType] = None,
        params: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Run an agent or sequence now through a throwaway one-time entry"""
        now = now or datetime.now()
        entry = self.create_entry(
            agent_type=agent_type,
            sequence_type=sequence_type,
            schedule_type=ScheduleType.ONE_TIME,
            user_id=user_id,
            priority=10,
            params=params,
            next_run=now,
        )
        try:
            if not self.store.claim(entry.id, now):
                raise DataIntegrityError(f"Schedule entry {entry.id} is already in progress")
            return self._run_claimed(self.store.get(entry.id), now)
        finally:
            self.store.delete(entry.id)


_agent_scheduler = None


def get_agent_scheduler() -> AgentScheduler:
    """Get the global agent scheduler"""
    global _agent_scheduler
    if _agent_scheduler is None:
        _agent_scheduler = AgentScheduler(SqlScheduleStore(get_db_service()))
    return _agent_scheduler
