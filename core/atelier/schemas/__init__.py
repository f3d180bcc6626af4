"""Persisted schemas for runs and async steps."""

from atelier.schemas.run import NodeStatus, RunRecord, RunStatus, StepRecord, StepStatus

__all__ = [
    "RunRecord",
    "RunStatus",
    "NodeStatus",
    "StepRecord",
    "StepStatus",
]
