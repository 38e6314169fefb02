from plansync.scheduling.grouper import Batch, ParallelGrouper
from plansync.scheduling.resolver import DependencyResolver, ResolveResult, find_cyclic

__all__ = ["Batch", "DependencyResolver", "ParallelGrouper", "ResolveResult", "find_cyclic"]
