"""
Topic prerequisite graph.

Used for validity checks and for ordering topics when building a plan; the
graph never creates or edits topics.
"""

import heapq
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from ..exceptions import DataIntegrityError
from ..models import Topic, TaskType


class TopicGraph:
    """Directed acyclic graph of topics keyed by prerequisite edges"""

    def __init__(self, topics: Iterable[Topic]):
        self.topics: Dict[int, Topic] = {t.id: t for t in topics}

    def prerequisites(self, topic_id: int) -> List[int]:
        """Prerequisite ids of a topic that are part of this graph"""
        topic = self.topics.get(topic_id)
        if topic is None:
            return []
        return [p for p in (topic.prerequisite_ids or []) if p in self.topics]

    def find_cycle(self) -> Optional[List[int]]:
        """Return one prerequisite cycle as a list of topic ids, or None"""
        WHITE, GREY, BLACK = 0, 1, 2
        color = {tid: WHITE for tid in self.topics}
        stack_path: List[int] = []

        def visit(tid: int) -> Optional[List[int]]:
            color[tid] = GREY
            stack_path.append(tid)
            for prereq in self.prerequisites(tid):
                if color[prereq] == GREY:
                    return stack_path[stack_path.index(prereq):] + [prereq]
                if color[prereq] == WHITE:
                    found = visit(prereq)
                    if found:
                        return found
            stack_path.pop()
            color[tid] = BLACK
            return None

        for tid in sorted(self.topics):
            if color[tid] == WHITE:
                cycle = visit(tid)
                if cycle:
                    return cycle
        return None

    def assert_acyclic(self) -> None:
        """Raise DataIntegrityError when prerequisites form a cycle"""
        cycle = self.find_cycle()
        if cycle:
            path = " -> ".join(str(t) for t in cycle)
            raise DataIntegrityError(f"Prerequisite cycle detected: {path}")

    def topological_order(
        self,
        topic_ids: Optional[Sequence[int]] = None,
        priority: Optional[Callable[[int], float]] = None,
    ) -> List[int]:
        """
        Order topics so every prerequisite comes before its dependents.

        Among topics whose prerequisites are already placed, the one with the
        highest priority goes first (ties broken by id). Prerequisites outside
        ``topic_ids`` are ignored.
        """
        self.assert_acyclic()
        selected = set(self.topics if topic_ids is None else topic_ids) & set(self.topics)
        priority = priority or (lambda tid: float(self.topics[tid].importance or 0))

        remaining = {
            tid: {p for p in self.prerequisites(tid) if p in selected} for tid in selected
        }
        dependents: Dict[int, List[int]] = {tid: [] for tid in selected}
        for tid, prereqs in remaining.items():
            for p in prereqs:
                dependents[p].append(tid)

        ready = [(-priority(tid), tid) for tid, prereqs in remaining.items() if not prereqs]
        heapq.heapify(ready)
        order: List[int] = []
        while ready:
            _, tid = heapq.heappop(ready)
            order.append(tid)
            for dep in dependents[tid]:
                remaining[dep].discard(tid)
                if not remaining[dep]:
                    heapq.heappush(ready, (-priority(dep), dep))
        return order

    def check_task_order(self, tasks: Iterable) -> List[Dict]:
        """
        Find tasks scheduled before any task of one of their prerequisites.

        Review tasks are ignored. A prerequisite with no scheduled task at all
        is reported too.
        """
        first_start: Dict[int, object] = {}
        for task in tasks:
            if task.type == TaskType.REVIEW or task.start_time is None:
                continue
            current = first_start.get(task.topic_id)
            if current is None or task.start_time < current:
                first_start[task.topic_id] = task.start_time

        violations = []
        for topic_id, start in first_start.items():
            for prereq in self.prerequisites(topic_id):
                prereq_start = first_start.get(prereq)
                if prereq_start is None:
                    violations.append(
                        {
                            "topic_id": topic_id,
                            "prerequisite_id": prereq,
                            "issue": "Prerequisite not scheduled",
                        }
                    )
                elif prereq_start > start:
                    violations.append(
                        {
                            "topic_id": topic_id,
                            "prerequisite_id": prereq,
                            "issue": "Prerequisite scheduled after topic",
                            "topic_start": start.isoformat(),
                            "prerequisite_start": prereq_start.isoformat(),
                        }
                    )
        return violations
