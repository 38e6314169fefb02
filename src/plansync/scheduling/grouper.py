from __future__ import annotations

import logging
from dataclasses import dataclass, field

from plansync.models import DependencyRef, DependencySyntaxError, ProgressIndex, TaskRef, TaskStatus
from plansync.scheduling.resolver import ref_sort_key

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Batch:
    tasks: list[TaskRef] = field(default_factory=list)
    parallel: bool = True

    def __len__(self) -> int:
        return len(self.tasks)

    def keys(self) -> list[str]:
        return [ref.key for ref in self.tasks]


def _normalize_path(path: str) -> str:
    return path.replace("\\", "/").strip().rstrip("/").lower()


class ParallelGrouper:
    """Partitions eligible tasks into batches that are safe to run concurrently.

    Batches run strictly in order. Tasks inside one batch share no remaining
    dependency edge and no deliverable path. Non-parallelizable tasks always
    get a batch of their own.
    """

    def __init__(self, max_batch_size: int | None = None) -> None:
        self.max_batch_size = max_batch_size if max_batch_size and max_batch_size > 0 else None

    def _direct_deps(self, index: ProgressIndex, ref: TaskRef) -> list[TaskRef]:
        task = index.task(ref)
        if task is None:
            return []
        deps: list[TaskRef] = []
        for raw in task.deps:
            try:
                deps.append(DependencyRef.parse(raw).resolve(ref.plan_id))
            except DependencySyntaxError:
                continue
        return deps

    def _member_predecessors(
        self, index: ProgressIndex, ref: TaskRef, members: set[TaskRef]
    ) -> set[TaskRef]:
        """Members reachable from ``ref`` through edges that are still outstanding."""
        found: set[TaskRef] = set()
        seen: set[TaskRef] = {ref}
        frontier = self._direct_deps(index, ref)
        while frontier:
            node = frontier.pop()
            if node in seen:
                continue
            seen.add(node)
            if node in members:
                found.add(node)
                continue
            task = index.task(node)
            if task is None or task.status is TaskStatus.COMPLETED:
                continue
            frontier.extend(self._direct_deps(index, node))
        return found

    def _layers(self, index: ProgressIndex, members: list[TaskRef]) -> list[list[TaskRef]]:
        member_set = set(members)
        remaining = {ref: self._member_predecessors(index, ref, member_set) for ref in members}
        layers: list[list[TaskRef]] = []
        while remaining:
            layer = sorted(
                (ref for ref, preds in remaining.items() if not preds), key=ref_sort_key
            )
            if not layer:
                stuck = sorted(remaining, key=ref_sort_key)
                logger.warning(
                    "Cyclic edges among eligible tasks: %s", ", ".join(ref.key for ref in stuck)
                )
                layers.extend([ref] for ref in stuck)
                break
            layers.append(layer)
            for ref in layer:
                del remaining[ref]
            done = set(layer)
            for preds in remaining.values():
                preds.difference_update(done)
        return layers

    def group(self, eligible: list[TaskRef], index: ProgressIndex) -> list[Batch]:
        members: list[TaskRef] = []
        for ref in eligible:
            if ref not in members and index.task(ref) is not None:
                members.append(ref)

        batches: list[Batch] = []
        for layer in self._layers(index, members):
            open_batches: list[tuple[Batch, set[str]]] = []
            for ref in layer:
                task = index.task(ref)
                if task is None:
                    continue
                if not task.parallelizable:
                    batches.append(Batch(tasks=[ref], parallel=False))
                    continue
                paths = {_normalize_path(item) for item in task.deliverables if item.strip()}
                placed = False
                for batch, claimed in open_batches:
                    if self.max_batch_size and len(batch) >= self.max_batch_size:
                        continue
                    if paths & claimed:
                        continue
                    batch.tasks.append(ref)
                    claimed.update(paths)
                    placed = True
                    break
                if not placed:
                    open_batches.append((Batch(tasks=[ref], parallel=True), set(paths)))
            batches.extend(batch for batch, _ in open_batches)
        return batches
