"""
Tests for CallbackReconciler.

Callbacks are signed with a fixed secret and checked against a frozen
clock so timestamp freshness is deterministic.
"""

from unittest.mock import MagicMock

import pytest

from atelier.config import CallbackConfig
from atelier.runtime.event_bus import EventBus, EventType
from atelier.runtime.reconciler import CallbackReconciler
from atelier.runtime.signing import sign_payload
from atelier.schemas.run import RunRecord, RunStatus, StepRecord, StepStatus
from atelier.storage.memory import InMemoryRunStore

SECRET = "whsec_test"
NOW = 1_700_000_000_000
RUN_ID = "run_1"


def signed(**fields):
    payload = {"taskId": RUN_ID, "stepIndex": 0, "status": "completed", "timestamp": NOW}
    payload.update(fields)
    payload["signature"] = sign_payload(payload, SECRET)
    return payload


async def seed(store, steps=1, status=RunStatus.RUNNING):
    await store.create_run(RunRecord(run_id=RUN_ID, definition_id="lookbook", status=status))
    for index in range(steps):
        await store.create_step(
            StepRecord(
                run_id=RUN_ID,
                step_index=index,
                node_id=f"tryon_{index}",
                kind="provider",
                status=StepStatus.PROCESSING,
            )
        )


def make_reconciler(store, **kwargs):
    config = CallbackConfig(secret=SECRET, max_skew_ms=5 * 60 * 1000)
    return CallbackReconciler(store, config, clock=lambda: NOW, **kwargs)


class TestCompletion:
    @pytest.mark.asyncio
    async def test_last_step_completes_task(self):
        store = InMemoryRunStore()
        await seed(store)
        reconciler = make_reconciler(store)

        response = await reconciler.handle(signed(output={"url": "https://cdn/tryon.png"}))

        assert response.status_code == 200
        assert response.body["success"] is True
        run = await store.get_run(RUN_ID)
        assert run.status == RunStatus.SUCCEEDED
        assert run.artifacts == {"url": "https://cdn/tryon.png"}
        step = await store.get_step(RUN_ID, 0)
        assert step.status == StepStatus.COMPLETED
        assert step.output == {"url": "https://cdn/tryon.png"}

    @pytest.mark.asyncio
    async def test_task_waits_for_remaining_steps(self):
        store = InMemoryRunStore()
        await seed(store, steps=2)
        reconciler = make_reconciler(store)

        response = await reconciler.handle(signed(stepIndex=1, output={"url": "b"}))

        assert response.body["message"] == "Step completed (1/2)"
        assert (await store.get_run(RUN_ID)).status == RunStatus.RUNNING

    @pytest.mark.asyncio
    async def test_non_object_output_is_wrapped(self):
        store = InMemoryRunStore()
        await seed(store)

        await make_reconciler(store).handle(signed(output="https://cdn/x.png"))

        assert (await store.get_run(RUN_ID)).artifacts == {"result": "https://cdn/x.png"}

    @pytest.mark.asyncio
    async def test_string_step_index(self):
        store = InMemoryRunStore()
        await seed(store)

        response = await make_reconciler(store).handle(signed(stepIndex="0"))

        assert response.status_code == 200
        assert (await store.get_step(RUN_ID, 0)).status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reconciled_event_emitted(self):
        store = InMemoryRunStore()
        await seed(store)
        bus = EventBus()

        await make_reconciler(store, event_bus=bus).handle(signed())

        events = bus.get_history(event_type=EventType.STEP_RECONCILED)
        assert len(events) == 1
        assert events[0].data["status"] == "completed"
        assert events[0].data["step_index"] == 0


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_duplicate_callback_changes_nothing(self):
        store = InMemoryRunStore()
        await seed(store)
        reconciler = make_reconciler(store)
        payload = signed(output={"url": "first"})

        await reconciler.handle(payload)
        step_before = await store.get_step(RUN_ID, 0)
        run_before = await store.get_run(RUN_ID)

        response = await reconciler.handle(payload)

        assert response.status_code == 200
        assert response.body["success"] is True
        step_after = await store.get_step(RUN_ID, 0)
        run_after = await store.get_run(RUN_ID)
        assert step_after.completed_at == step_before.completed_at
        assert run_after.updated_at == run_before.updated_at
        assert run_after.artifacts == {"url": "first"}

    @pytest.mark.asyncio
    async def test_late_callback_for_terminal_step(self):
        store = InMemoryRunStore()
        await seed(store, steps=2)
        await store.update_step(RUN_ID, 0, status=StepStatus.COMPLETED, output={"url": "a"})
        reconciler = make_reconciler(store)

        response = await reconciler.handle(signed(status="failed", errorMessage="late"))

        assert response.status_code == 200
        assert (await store.get_step(RUN_ID, 0)).status == StepStatus.COMPLETED
        assert (await store.get_run(RUN_ID)).status == RunStatus.RUNNING

    @pytest.mark.asyncio
    async def test_cancelled_run_is_inert(self):
        store = InMemoryRunStore()
        await seed(store, status=RunStatus.CANCELLED)

        response = await make_reconciler(store).handle(signed(output={"url": "x"}))

        assert response.status_code == 200
        assert (await store.get_step(RUN_ID, 0)).status == StepStatus.PROCESSING
        assert (await store.get_run(RUN_ID)).status == RunStatus.CANCELLED


class TestFailure:
    @pytest.mark.asyncio
    async def test_failed_step_fails_task_immediately(self):
        store = InMemoryRunStore()
        await seed(store, steps=3)

        response = await make_reconciler(store).handle(
            signed(stepIndex=1, status="failed", errorMessage="GPU out of memory")
        )

        assert response.status_code == 200
        run = await store.get_run(RUN_ID)
        assert run.status == RunStatus.FAILED
        assert run.error_message == "GPU out of memory"
        assert run.error_node == "tryon_1"
        assert run.error_kind == "PROVIDER_ERROR"
        # Sibling steps are left as they were.
        assert (await store.get_step(RUN_ID, 0)).status == StepStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_failed_without_message(self):
        store = InMemoryRunStore()
        await seed(store)

        await make_reconciler(store).handle(signed(status="FAILED"))

        step = await store.get_step(RUN_ID, 0)
        assert step.status == StepStatus.FAILED
        assert step.error_message == "External step failed"


class TestRejection:
    @pytest.mark.asyncio
    async def test_missing_fields(self):
        store = InMemoryRunStore()
        await seed(store)
        payload = signed()
        del payload["timestamp"]

        response = await make_reconciler(store).handle(payload)

        assert response.status_code == 400
        assert response.body["success"] is False
        assert "timestamp" in response.body["message"]

    @pytest.mark.asyncio
    async def test_body_not_an_object(self):
        response = await make_reconciler(InMemoryRunStore()).handle(["not", "a", "dict"])
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_tampered_body(self):
        store = InMemoryRunStore()
        await seed(store)
        payload = signed(output={"url": "honest"})
        payload["output"] = {"url": "forged"}

        response = await make_reconciler(store).handle(payload)

        assert response.status_code == 403
        assert response.body["error"] == "SIGNATURE_INVALID"
        assert (await store.get_step(RUN_ID, 0)).status == StepStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_stale_timestamp(self):
        store = InMemoryRunStore()
        await seed(store)

        response = await make_reconciler(store).handle(signed(timestamp=NOW - 10 * 60 * 1000))

        assert response.status_code == 400
        assert response.body["error"] == "TIMESTAMP_EXPIRED"
        assert (await store.get_step(RUN_ID, 0)).status == StepStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_future_timestamp(self):
        store = InMemoryRunStore()
        await seed(store)

        response = await make_reconciler(store).handle(signed(timestamp=NOW + 10 * 60 * 1000))

        assert response.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("timestamp", [float("nan"), float("inf"), float("-inf")])
    async def test_non_finite_timestamp_rejected(self, timestamp):
        store = InMemoryRunStore()
        await seed(store)

        response = await make_reconciler(store).handle(signed(timestamp=timestamp))

        assert response.status_code == 400
        assert "epoch milliseconds" in response.body["message"]
        assert (await store.get_step(RUN_ID, 0)).status == StepStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_string_timestamp(self):
        store = InMemoryRunStore()
        await seed(store)

        response = await make_reconciler(store).handle(signed(timestamp=str(NOW)))

        assert response.status_code == 200
        assert (await store.get_step(RUN_ID, 0)).status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stale_string_timestamp(self):
        store = InMemoryRunStore()
        await seed(store)

        response = await make_reconciler(store).handle(
            signed(timestamp=str(NOW - 10 * 60 * 1000))
        )

        assert response.status_code == 400
        assert response.body["error"] == "TIMESTAMP_EXPIRED"

    @pytest.mark.asyncio
    async def test_non_numeric_timestamp_rejected(self):
        store = InMemoryRunStore()
        await seed(store)

        response = await make_reconciler(store).handle(signed(timestamp="yesterday"))

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_signature_checked_before_timestamp(self):
        store = InMemoryRunStore()
        await seed(store)
        payload = signed(timestamp=NOW - 10 * 60 * 1000)
        payload["signature"] = "0" * 64

        response = await make_reconciler(store).handle(payload)

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_invalid_status(self):
        store = InMemoryRunStore()
        await seed(store)

        response = await make_reconciler(store).handle(signed(status="done"))

        assert response.status_code == 400
        assert "done" in response.body["message"]

    @pytest.mark.asyncio
    async def test_unknown_task(self):
        response = await make_reconciler(InMemoryRunStore()).handle(signed())

        assert response.status_code == 404
        assert response.body["error"] == "TASK_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_unknown_step(self):
        store = InMemoryRunStore()
        await seed(store)

        response = await make_reconciler(store).handle(signed(stepIndex=7))

        assert response.status_code == 404
        assert response.body["error"] == "STEP_NOT_FOUND"

    def test_secret_required(self):
        with pytest.raises(ValueError):
            CallbackReconciler(InMemoryRunStore(), CallbackConfig(secret=None))


class TestResumer:
    @pytest.mark.asyncio
    async def test_owned_run_is_handed_to_resumer(self):
        store = InMemoryRunStore()
        await seed(store)
        resumer = MagicMock()
        resumer.owns.return_value = True

        response = await make_reconciler(store, resumer=resumer).handle(signed(output={"url": "t"}))

        assert response.body["message"] == "Step completed; run resumed"
        resumer.resume_step.assert_called_once_with(RUN_ID, 0, {"url": "t"})
        # The engine, not the reconciler, decides the run outcome.
        assert (await store.get_run(RUN_ID)).status == RunStatus.RUNNING

    @pytest.mark.asyncio
    async def test_owned_run_failure_reaches_resumer(self):
        store = InMemoryRunStore()
        await seed(store)
        resumer = MagicMock()
        resumer.owns.return_value = True

        await make_reconciler(store, resumer=resumer).handle(
            signed(status="failed", errorMessage="bad garment mask")
        )

        resumer.fail_step.assert_called_once_with(RUN_ID, 0, "bad garment mask")

    @pytest.mark.asyncio
    async def test_unowned_run_completes_in_store(self):
        store = InMemoryRunStore()
        await seed(store)
        resumer = MagicMock()
        resumer.owns.return_value = False

        await make_reconciler(store, resumer=resumer).handle(signed())

        resumer.resume_step.assert_not_called()
        assert (await store.get_run(RUN_ID)).status == RunStatus.SUCCEEDED
