from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from plansync.models import (
    DependencyRef,
    DependencySyntaxError,
    PhaseStatus,
    ProgressIndex,
    TaskRef,
    TaskStatus,
)

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"(\d+)")


def natural_key(value: str) -> tuple[object, ...]:
    """Sort key that orders TASK-2 before TASK-10."""
    return tuple(int(part) if part.isdigit() else part for part in _DIGITS.split(value))


def ref_sort_key(ref: TaskRef) -> tuple[object, ...]:
    return (natural_key(ref.plan_id), natural_key(ref.task_id))


@dataclass(slots=True)
class ResolveResult:
    eligible: list[TaskRef] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    excluded: dict[str, str] = field(default_factory=dict)


def dependency_graph(index: ProgressIndex) -> dict[TaskRef, list[TaskRef]]:
    """Edges from each task to the tasks it depends on; unparseable refs are dropped."""
    graph: dict[TaskRef, list[TaskRef]] = {}
    for ref, task in index.iter_tasks():
        targets: list[TaskRef] = []
        for raw in task.deps:
            try:
                target = DependencyRef.parse(raw).resolve(ref.plan_id)
            except DependencySyntaxError:
                continue
            if index.task(target) is not None:
                targets.append(target)
        graph[ref] = targets
    return graph


def find_cyclic(graph: dict[TaskRef, list[TaskRef]]) -> set[TaskRef]:
    """Return every node that sits on a dependency cycle (Tarjan SCC, iterative)."""
    counter = 0
    indices: dict[TaskRef, int] = {}
    lowlinks: dict[TaskRef, int] = {}
    on_stack: set[TaskRef] = set()
    stack: list[TaskRef] = []
    cyclic: set[TaskRef] = set()

    for root in sorted(graph, key=ref_sort_key):
        if root in indices:
            continue
        work: list[tuple[TaskRef, int]] = [(root, 0)]
        while work:
            node, child_index = work.pop()
            if child_index == 0:
                indices[node] = lowlinks[node] = counter
                counter += 1
                stack.append(node)
                on_stack.add(node)
            children = graph.get(node, [])
            if child_index < len(children):
                work.append((node, child_index + 1))
                child = children[child_index]
                if child not in indices:
                    work.append((child, 0))
                elif child in on_stack:
                    lowlinks[node] = min(lowlinks[node], indices[child])
                continue

            if lowlinks[node] == indices[node]:
                component: list[TaskRef] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in graph.get(node, []):
                    cyclic.update(component)
            if work:
                parent = work[-1][0]
                lowlinks[parent] = min(lowlinks[parent], lowlinks[node])
    return cyclic


class DependencyResolver:
    """Computes the eligible frontier from a progress index snapshot.

    The frontier is recomputed from scratch on every call; no state is kept
    between passes, so resolving the same index twice yields the same list.
    """

    def analyze(self, index: ProgressIndex) -> ResolveResult:
        result = ResolveResult()
        cyclic = find_cyclic(dependency_graph(index))

        def _exclude(ref: TaskRef, reason: str) -> None:
            result.excluded[ref.key] = reason
            message = f"{ref.key}: {reason}"
            result.warnings.append(message)
            logger.warning("Excluding %s", message)

        candidates: list[tuple[int, TaskRef]] = []
        for ref, task in index.iter_tasks():
            plan = index.plans[ref.plan_id]
            if task.status is not TaskStatus.NOT_STARTED:
                continue
            if index.phase_status(plan.phase) is not PhaseStatus.READY:
                continue
            if not task.schedulable:
                _exclude(ref, "task is marked non-schedulable")
                continue
            try:
                deps = task.dependency_refs()
            except DependencySyntaxError as exc:
                _exclude(ref, str(exc))
                continue
            if ref in cyclic:
                _exclude(ref, "task is part of a dependency cycle")
                continue

            satisfied = True
            for dep in deps:
                target_ref = dep.resolve(ref.plan_id)
                if target_ref.plan_id not in index.plans:
                    _exclude(ref, f"dependency {dep} references unknown plan {target_ref.plan_id}")
                    satisfied = False
                    break
                target = index.task(target_ref)
                if target is None:
                    _exclude(ref, f"dependency {dep} references unknown task")
                    satisfied = False
                    break
                if target.status is not TaskStatus.COMPLETED:
                    satisfied = False
            if satisfied:
                candidates.append((plan.phase, ref))

        candidates.sort(key=lambda item: (item[0], *ref_sort_key(item[1])))
        result.eligible = [ref for _, ref in candidates]
        return result

    def resolve(self, index: ProgressIndex) -> list[TaskRef]:
        return self.analyze(index).eligible
