"""
Deduplication and cleanup of calendar records.

Every operation is idempotent: running it a second time finds nothing left
to do and reports zero counts.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import Alert, AlertType, Performance, StudyPlan, Task, TaskStatus, TaskType
from .database import DatabaseService, get_db_service
from .plan_lock import PlanLockRegistry, get_plan_locks
from .settings_config_service import get_settings_service
from .task_store import TaskStore

# Survivor preference when collapsing identical time slots
STATUS_RANK = {
    TaskStatus.COMPLETED: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.PENDING: 2,
    TaskStatus.SKIPPED: 3,
}


class CleanupService:
    """Collapses duplicate tasks and prunes stale alerts"""

    def __init__(self, db_service: DatabaseService, plan_locks: Optional[PlanLockRegistry] = None):
        self.db = db_service
        self.plan_locks = plan_locks or get_plan_locks()
        self.logger = logging.getLogger(__name__)
        self.max_general_alerts = get_settings_service().getint(
            "cleanup", "max_general_alerts", 3
        )

    def _plans(self, session: Session, user_id: Optional[int]) -> List[StudyPlan]:
        stmt = select(StudyPlan).order_by(StudyPlan.id)
        if user_id is not None:
            stmt = stmt.where(StudyPlan.user_id == user_id)
        return list(session.execute(stmt).scalars().all())

    def collapse_remediation_duplicates(
        self, user_id: Optional[int] = None, now: Optional[datetime] = None
    ) -> Dict[str, int]:
        """Keep the earliest pending remediation review per topic; re-point alerts of the rest"""
        now = now or datetime.now()
        removed = repointed = 0
        with self.db.get_session() as session:
            store = TaskStore(session)
            for plan in self._plans(session, user_id):
                with self.plan_locks.hold(plan.id):
                    by_topic: Dict[int, List[Task]] = defaultdict(list)
                    for task in store.find_tasks(
                        plan.id,
                        statuses=[TaskStatus.PENDING],
                        types=[TaskType.REVIEW],
                        start_from=now,
                    ):
                        if task.is_remediation:
                            by_topic[task.topic_id].append(task)

                    for topic_id, tasks in by_topic.items():
                        if len(tasks) < 2:
                            continue
                        survivor, duplicates = tasks[0], tasks[1:]
                        duplicate_ids = {t.id for t in duplicates}
                        for alert in store.find_alerts_for_tasks(duplicate_ids):
                            if alert.related_task_id in duplicate_ids:
                                alert.related_task_id = survivor.id
                            store.update_alert_metadata(alert, scheduled_task_id=survivor.id)
                            repointed += 1
                        removed += store.delete_tasks(duplicates)
                        self.logger.info(
                            f"Collapsed {len(duplicates)} remediation review(s) for topic "
                            f"{topic_id} onto task {survivor.id}"
                        )
                    session.commit()
        return {"removed_tasks": removed, "repointed_alerts": repointed}

    def collapse_time_duplicates(
        self, user_id: Optional[int] = None, now: Optional[datetime] = None
    ) -> Dict[str, int]:
        """Tasks sharing plan, topic and start time collapse to a single survivor"""
        now = now or datetime.now()
        removed = resolved = 0
        with self.db.get_session() as session:
            store = TaskStore(session)
            for plan in self._plans(session, user_id):
                with self.plan_locks.hold(plan.id):
                    groups: Dict[tuple, List[Task]] = defaultdict(list)
                    for task in store.find_tasks(plan.id, scheduled_only=True):
                        groups[(task.topic_id, task.start_time)].append(task)

                    for tasks in groups.values():
                        if len(tasks) < 2:
                            continue
                        tasks.sort(key=lambda t: (STATUS_RANK.get(t.status, 9), t.id))
                        survivor, duplicates = tasks[0], tasks[1:]
                        duplicate_ids = {t.id for t in duplicates}
                        for perf in session.execute(
                            select(Performance).where(Performance.task_id.in_(duplicate_ids))
                        ).scalars():
                            perf.task_id = survivor.id
                        for alert in store.find_alerts_for_tasks(duplicate_ids):
                            store.resolve_alert(
                                alert, now, resolution="DUPLICATE_REMOVED", survivor_task_id=survivor.id
                            )
                            resolved += 1
                        removed += store.delete_tasks(duplicates)
                    session.commit()
        if removed:
            self.logger.info(f"Removed {removed} time-duplicate task(s), resolved {resolved} alert(s)")
        return {"removed_tasks": removed, "resolved_alerts": resolved}

    def resolve_orphaned_alerts(
        self, user_id: Optional[int] = None, now: Optional[datetime] = None
    ) -> Dict[str, int]:
        """Resolve unresolved alerts whose target task no longer exists"""
        now = now or datetime.now()
        resolved = 0
        with self.db.get_session() as session:
            store = TaskStore(session)
            stmt = select(Alert).where(Alert.is_resolved.is_(False))
            if user_id is not None:
                stmt = stmt.where(Alert.user_id == user_id)
            alerts = list(session.execute(stmt).scalars().all())
            task_ids = set(session.execute(select(Task.id)).scalars().all())
            for alert in alerts:
                targets = [
                    t
                    for t in (
                        alert.related_task_id,
                        (alert.alert_metadata or {}).get("scheduled_task_id"),
                    )
                    if t is not None
                ]
                if targets and not any(t in task_ids for t in targets):
                    store.resolve_alert(alert, now, resolution="TASK_REMOVED")
                    resolved += 1
            session.commit()
        return {"resolved_alerts": resolved}

    def cap_general_alerts(
        self,
        user_id: Optional[int] = None,
        max_alerts: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Keep only the newest unresolved GENERAL alerts per user"""
        now = now or datetime.now()
        limit = self.max_general_alerts if max_alerts is None else max_alerts
        resolved = 0
        with self.db.get_session() as session:
            store = TaskStore(session)
            for plan in self._plans(session, user_id):
                alerts = store.find_alerts(
                    plan.user_id, types=[AlertType.GENERAL], is_resolved=False
                )
                for alert in alerts[limit:]:
                    store.resolve_alert(alert, now, resolution="CAPPED")
                    resolved += 1
            session.commit()
        return {"resolved_alerts": resolved}

    def trim_excessive_remediation_alerts(
        self, user_id: Optional[int] = None, now: Optional[datetime] = None
    ) -> Dict[str, int]:
        """Keep the newest unresolved REMEDIATION alert per topic"""
        now = now or datetime.now()
        resolved = 0
        with self.db.get_session() as session:
            store = TaskStore(session)
            for plan in self._plans(session, user_id):
                seen = set()
                for alert in store.find_alerts(
                    plan.user_id, types=[AlertType.REMEDIATION], is_resolved=False
                ):
                    if alert.related_topic_id not in seen:
                        seen.add(alert.related_topic_id)
                        continue
                    store.resolve_alert(alert, now, resolution="SUPERSEDED")
                    resolved += 1
            session.commit()
        return {"resolved_alerts": resolved}

    def run_all(
        self, user_id: Optional[int] = None, now: Optional[datetime] = None
    ) -> Dict[str, Dict[str, int]]:
        """Run every cleanup operation in order"""
        now = now or datetime.now()
        results = {
            "remediation_duplicates": self.collapse_remediation_duplicates(user_id, now),
            "time_duplicates": self.collapse_time_duplicates(user_id, now),
            "orphaned_alerts": self.resolve_orphaned_alerts(user_id, now),
            "general_alerts": self.cap_general_alerts(user_id, now=now),
            "remediation_alerts": self.trim_excessive_remediation_alerts(user_id, now),
        }
        self.logger.info(f"Cleanup run complete: {results}")
        return results


_cleanup_service = None


def get_cleanup_service() -> CleanupService:
    """Get the global cleanup service"""
    global _cleanup_service
    if _cleanup_service is None:
        _cleanup_service = CleanupService(get_db_service())
    return _cleanup_service
