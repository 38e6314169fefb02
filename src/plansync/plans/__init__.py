from plansync.plans.reader import (
    PlanDefinition,
    PlanFormatError,
    PlanNotFoundError,
    PlanReader,
    TaskDefinition,
    parse_plan,
    register_plan,
)

__all__ = [
    "PlanDefinition",
    "PlanFormatError",
    "PlanNotFoundError",
    "PlanReader",
    "TaskDefinition",
    "parse_plan",
    "register_plan",
]
