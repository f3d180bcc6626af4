"""
Async Completion Reconciler - second entry point into run state.

External workers report async steps back through a signed callback:

    {taskId, stepIndex, status: "completed"|"failed", output?, errorMessage?,
     timestamp: epoch-ms, signature: hex}

Checks run in a fixed order and each one can reject the callback:

1. required fields            -> 400
2. HMAC signature             -> 403
3. timestamp freshness        -> 400
4. status value               -> 400
5. task exists                -> 404
6. (taskId, stepIndex) exists -> 404

A callback for a run that already finished (or was cancelled), or for a step
that is already terminal, is accepted without touching anything. Delivery is
at-least-once, so duplicates must be harmless.
"""

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from atelier.config import CallbackConfig
from atelier.errors import (
    CallbackError,
    CallbackPayloadError,
    NodeErrorKind,
    SignatureInvalidError,
    StepNotFoundError,
    TaskNotFoundError,
    TimestampExpiredError,
)
from atelier.observability import set_trace_context
from atelier.runtime.event_bus import EventBus, EventType
from atelier.runtime.signing import verify_signature
from atelier.schemas.run import RunStatus, StepStatus
from atelier.storage.backend import RunStore

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("taskId", "stepIndex", "status", "timestamp", "signature")
_CALLBACK_STATUSES = {"completed": StepStatus.COMPLETED, "failed": StepStatus.FAILED}


class RunResumer(Protocol):
    """Whoever holds live runs in memory and can continue them."""

    def owns(self, run_id: str) -> bool: ...

    def resume_step(self, run_id: str, step_index: int, output: Any) -> None: ...

    def fail_step(self, run_id: str, step_index: int, message: str) -> None: ...


@dataclass
class CallbackResponse:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status_code < 400

    @classmethod
    def ok(cls, message: str, **extra: Any) -> "CallbackResponse":
        return cls(200, {"success": True, "message": message, **extra})

    @classmethod
    def from_error(cls, error: CallbackError) -> "CallbackResponse":
        return cls(
            error.status_code,
            {"success": False, "message": error.message, "error": str(error.kind)},
        )


def _epoch_ms() -> float:
    return time.time() * 1000


def _as_step_index(value: Any) -> int:
    if isinstance(value, bool):
        raise CallbackPayloadError("stepIndex must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdecimal():
        return int(value.strip())
    raise CallbackPayloadError("stepIndex must be an integer")


def _as_timestamp(value: Any) -> int | float:
    """Epoch milliseconds; digit strings are accepted, non-finite numbers are not."""
    if isinstance(value, str) and value.strip().removeprefix("-").isdecimal():
        return int(value.strip())
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise CallbackPayloadError("timestamp must be epoch milliseconds")
    return value


class CallbackReconciler:
    """
    Applies signed completion callbacks to persisted run and step records.

    When a ``resumer`` owns the run, a completed step is handed over so the
    executor engine continues the walk and decides the run's final status.
    Otherwise the run succeeds once every persisted step has completed.
    A failed step fails the run immediately.
    """

    def __init__(
        self,
        store: RunStore,
        config: CallbackConfig | None = None,
        resumer: RunResumer | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.store = store
        self.config = config or CallbackConfig()
        if not self.config.secret:
            raise ValueError(
                "Callback secret is not configured "
                "(set ATELIER_CALLBACK_SECRET or callback.secret in the configuration file)"
            )
        self.resumer = resumer
        self._event_bus = event_bus
        self._clock = clock or _epoch_ms

    async def handle(self, payload: Any) -> CallbackResponse:
        """Process one callback body. Never raises for a rejected callback."""
        try:
            return await self._reconcile(payload)
        except CallbackError as e:
            logger.warning(f"✗ Callback rejected ({e.status_code} {e.kind}): {e.message}")
            return CallbackResponse.from_error(e)

    async def _reconcile(self, payload: Any) -> CallbackResponse:
        if not isinstance(payload, dict):
            raise CallbackPayloadError("Callback body must be a JSON object")

        missing = [name for name in REQUIRED_FIELDS if payload.get(name) in (None, "")]
        if missing:
            raise CallbackPayloadError(f"Missing required fields: {', '.join(missing)}")

        if not verify_signature(payload, self.config.secret):
            raise SignatureInvalidError("Invalid signature")

        timestamp = _as_timestamp(payload["timestamp"])
        skew = abs(self._clock() - timestamp)
        if skew > self.config.max_skew_ms:
            raise TimestampExpiredError(
                f"Callback timestamp is {int(skew / 1000)}s away from server time"
            )

        status = _CALLBACK_STATUSES.get(str(payload["status"]).lower())
        if status is None:
            raise CallbackPayloadError(
                f"Invalid status '{payload['status']}' (expected completed or failed)"
            )

        run_id = str(payload["taskId"])
        step_index = _as_step_index(payload["stepIndex"])
        set_trace_context(run_id=run_id)

        run = await self.store.get_run(run_id)
        if run is None:
            raise TaskNotFoundError(f"Task {run_id} not found")
        step = await self.store.get_step(run_id, step_index)
        if step is None:
            raise StepNotFoundError(f"Step {step_index} of task {run_id} not found")

        if run.status.is_terminal:
            logger.info(f"   Task {run_id} is {run.status}; callback for step {step_index} ignored")
            return CallbackResponse.ok(f"Task already {run.status}")
        if step.is_terminal:
            logger.info(
                f"   Step {step_index} of {run_id} already {step.status}; duplicate callback"
            )
            return CallbackResponse.ok(f"Step already {step.status}")

        if status == StepStatus.COMPLETED:
            return await self._complete(run_id, step_index, payload.get("output"))
        message = str(payload.get("errorMessage") or "External step failed")
        return await self._fail(run_id, step_index, step.node_id, message)

    async def _complete(self, run_id: str, step_index: int, output: Any) -> CallbackResponse:
        updated = await self.store.update_step(
            run_id, step_index, status=StepStatus.COMPLETED, output=output
        )
        if not updated:
            return CallbackResponse.ok("Step already settled")

        logger.info(f"✓ Step {step_index} of {run_id} completed")
        await self._emit(run_id, step_index, StepStatus.COMPLETED)

        if self.resumer is not None and self.resumer.owns(run_id):
            self.resumer.resume_step(run_id, step_index, output)
            return CallbackResponse.ok("Step completed; run resumed")

        completed = await self.store.count_steps(run_id, StepStatus.COMPLETED)
        total = await self.store.count_steps(run_id)
        if completed == total:
            artifacts = output if isinstance(output, dict) else {"result": output}
            await self.store.update_run(run_id, status=RunStatus.SUCCEEDED, artifacts=artifacts)
            logger.info(f"✓ Task {run_id} succeeded ({completed}/{total} steps)")
            return CallbackResponse.ok("Step completed; task succeeded")
        return CallbackResponse.ok(f"Step completed ({completed}/{total})")

    async def _fail(
        self, run_id: str, step_index: int, node_id: str, message: str
    ) -> CallbackResponse:
        updated = await self.store.update_step(
            run_id, step_index, status=StepStatus.FAILED, error_message=message
        )
        if not updated:
            return CallbackResponse.ok("Step already settled")

        # An external step is not a branch a join could absorb: fail the task now.
        await self.store.update_run(
            run_id,
            status=RunStatus.FAILED,
            error_message=message,
            error_kind=str(NodeErrorKind.PROVIDER_ERROR),
            error_node=node_id,
        )
        logger.error(f"✗ Step {step_index} of {run_id} failed: {message}")
        await self._emit(run_id, step_index, StepStatus.FAILED, error=message)

        if self.resumer is not None and self.resumer.owns(run_id):
            self.resumer.fail_step(run_id, step_index, message)
        return CallbackResponse.ok("Step failed; task failed")

    async def _emit(self, run_id: str, step_index: int, status: StepStatus, **data: Any) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.emit(
            EventType.STEP_RECONCILED,
            run_id=run_id,
            step_index=step_index,
            status=str(status),
            **data,
        )
