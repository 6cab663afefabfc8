"""Client polling loop: schedule, exactly-once callbacks, cancellation."""

import asyncio

from tablepay.client.polling import PaymentPoller, PollCallbacks, PollCheckError, PollPolicy, PollState
from tablepay.common.config import CommonSettings
from tablepay.services.orders.changefeed import OrderChange
from tablepay.services.reconciliation.schemas import PaymentStatusResponse, ReconcileOutcome, ReconcileResult

FAST = PollPolicy(
    initial_delay_seconds=0,
    fast_interval_seconds=0.01,
    medium_interval_seconds=0.01,
    slow_interval_seconds=0.01,
    error_backoff_seconds=0.01,
    max_attempts=1000,
    timeout_seconds=5,
)


def status(provider_status="pending", payment_status="pending", lifecycle="pending_payment"):
    terminal = payment_status != "pending"
    return PaymentStatusResponse(
        order_id="order-1",
        payment_id="pay-1",
        provider_status=provider_status,
        outcome=ReconcileOutcome.APPLIED if terminal else ReconcileOutcome.PENDING,
        applied=terminal,
        pending=not terminal,
        payment_status=payment_status,
        lifecycle_status=lifecycle,
    )


class ScriptedCheck:
    """Returns queued answers in order, then repeats the last one."""

    def __init__(self, *answers) -> None:
        self.answers = list(answers)
        self.calls = 0

    async def __call__(self, payment_id, order_id):
        self.calls += 1
        answer = self.answers[0] if len(self.answers) == 1 else self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


class Recorder:
    def __init__(self) -> None:
        self.events = []

    def callbacks(self) -> PollCallbacks:
        return PollCallbacks(
            on_success=lambda result: self.events.append(("success", result.final_payment_status)),
            on_failure=lambda result: self.events.append(("failure", result.final_payment_status)),
            on_timeout=lambda: self.events.append(("timeout",)),
            on_error=lambda exc: self.events.append(("error", str(exc))),
            on_status_change=lambda value: self.events.append(("status", value)),
        )


def test_progressive_schedule():
    policy = PollPolicy()

    assert policy.interval_after(1) == 5.0
    assert policy.interval_after(10) == 5.0
    assert policy.interval_after(11) == 10.0
    assert policy.interval_after(30) == 10.0
    assert policy.interval_after(31) == 15.0


def test_policy_from_settings():
    policy = PollPolicy.from_settings(CommonSettings(poll_max_attempts=12, poll_timeout_seconds=60))

    assert policy.max_attempts == 12
    assert policy.timeout_seconds == 60
    assert policy.initial_delay_seconds == 2.0


async def test_success_fires_once_and_stops():
    check = ScriptedCheck(
        status("pending"),
        status("in_process"),
        status("approved", "confirmed", "in_preparation"),
    )
    recorder = Recorder()
    poller = PaymentPoller(check, FAST)

    handle = poller.start("pay-1", "order-1", recorder.callbacks())
    await handle.wait()

    assert handle.state == PollState.SUCCEEDED
    assert recorder.events == [
        ("status", "pending"),
        ("status", "in_process"),
        ("status", "approved"),
        ("success", "confirmed"),
    ]
    assert check.calls == 3
    assert not poller.is_polling("pay-1")


async def test_rejected_payment_reports_failure():
    check = ScriptedCheck(status("rejected", "failed", "cancelled"))
    recorder = Recorder()

    handle = PaymentPoller(check, FAST).start("pay-1", "order-1", recorder.callbacks())
    await handle.wait()

    assert handle.state == PollState.ERRORED
    assert recorder.events[-1] == ("failure", "failed")


async def test_timeout_fires_once_and_polling_stops():
    check = ScriptedCheck(status("pending"))
    recorder = Recorder()
    expired = []

    async def expire(order_id):
        expired.append(order_id)
        return ReconcileResult(
            order_id=order_id,
            outcome=ReconcileOutcome.APPLIED,
            applied=True,
            pending=False,
            final_payment_status="failed",
            final_lifecycle_status="expired",
        )

    policy = PollPolicy(
        initial_delay_seconds=0,
        fast_interval_seconds=0.01,
        medium_interval_seconds=0.01,
        slow_interval_seconds=0.01,
        timeout_seconds=0.1,
    )
    handle = PaymentPoller(check, policy, expire=expire).start("pay-1", "order-1", recorder.callbacks())
    await handle.wait()
    calls_at_timeout = check.calls
    await asyncio.sleep(0.05)

    assert handle.state == PollState.TIMED_OUT
    assert [e for e in recorder.events if e[0] != "status"] == [("timeout",)]
    assert expired == ["order-1"]
    assert check.calls == calls_at_timeout


async def test_timeout_reports_settlement_found_by_expire():
    check = ScriptedCheck(status("pending"))
    recorder = Recorder()

    async def expire(order_id):
        return ReconcileResult(
            order_id=order_id,
            outcome=ReconcileOutcome.ALREADY_SETTLED,
            applied=False,
            pending=False,
            final_payment_status="confirmed",
            final_lifecycle_status="in_preparation",
        )

    policy = PollPolicy(initial_delay_seconds=0, fast_interval_seconds=0.01, max_attempts=2)
    handle = PaymentPoller(check, policy, expire=expire).start("pay-1", "order-1", recorder.callbacks())
    await handle.wait()

    assert handle.state == PollState.SUCCEEDED
    assert recorder.events[-1] == ("success", "confirmed")
    assert ("timeout",) not in recorder.events


async def test_max_attempts_bounds_the_loop():
    check = ScriptedCheck(status("pending"))
    recorder = Recorder()
    policy = PollPolicy(initial_delay_seconds=0, fast_interval_seconds=0.01, max_attempts=3)

    handle = PaymentPoller(check, policy).start("pay-1", "order-1", recorder.callbacks())
    await handle.wait()

    assert handle.state == PollState.TIMED_OUT
    assert check.calls == 3
    assert recorder.events[-1] == ("timeout",)


async def test_one_loop_per_payment():
    check = ScriptedCheck(status("pending"))
    poller = PaymentPoller(check, FAST)

    first = poller.start("pay-1", "order-1")
    second = poller.start("pay-1", "order-1")

    assert first is second
    assert poller.active_payment_ids() == ["pay-1"]
    await poller.stop_all()


async def test_stop_cancels_without_callbacks():
    check = ScriptedCheck(status("pending"))
    recorder = Recorder()
    poller = PaymentPoller(check, FAST)

    handle = poller.start("pay-1", "order-1", recorder.callbacks())
    await asyncio.sleep(0.03)
    await poller.stop("pay-1")
    calls = check.calls
    await asyncio.sleep(0.05)

    assert handle.state == PollState.CANCELLED
    assert check.calls == calls
    assert [e for e in recorder.events if e[0] != "status"] == []


async def test_transient_errors_keep_polling():
    check = ScriptedCheck(
        PollCheckError("503"),
        PollCheckError("timeout"),
        status("approved", "confirmed", "in_preparation"),
    )
    recorder = Recorder()

    handle = PaymentPoller(check, FAST).start("pay-1", "order-1", recorder.callbacks())
    await handle.wait()

    assert handle.state == PollState.SUCCEEDED
    assert check.calls == 3


async def test_permanent_error_stops_the_loop():
    check = ScriptedCheck(PollCheckError("order not found", retryable=False))
    recorder = Recorder()

    handle = PaymentPoller(check, FAST).start("pay-1", "order-1", recorder.callbacks())
    await handle.wait()

    assert handle.state == PollState.ERRORED
    assert recorder.events == [("error", "order not found")]


async def test_external_settlement_wins_over_in_flight_poll():
    release = asyncio.Event()
    started = asyncio.Event()
    calls = 0

    async def check(payment_id, order_id):
        nonlocal calls
        calls += 1
        started.set()
        await release.wait()
        return status("approved", "confirmed", "in_preparation")

    recorder = Recorder()
    poller = PaymentPoller(check, FAST)
    handle = poller.start("pay-1", "order-1", recorder.callbacks())
    await started.wait()

    change = OrderChange(
        order_id="order-1", payment_status="confirmed", lifecycle_status="in_preparation", state_version=1
    )
    settle = asyncio.create_task(poller.settle_externally("pay-1", change))
    await asyncio.sleep(0)
    release.set()
    assert await settle is True

    assert handle.state == PollState.CANCELLED
    assert [e for e in recorder.events if e[0] != "status"] == [("success", "confirmed")]
    assert calls == 1


async def test_settle_unknown_payment_is_not_handled():
    poller = PaymentPoller(ScriptedCheck(status()), FAST)
    change = OrderChange(order_id="order-1", payment_status="confirmed", lifecycle_status="paid", state_version=1)

    assert await poller.settle_externally("pay-x", change) is False


async def test_unexpected_check_errors_back_off_until_timeout():
    check = ScriptedCheck(RuntimeError("boom"))
    recorder = Recorder()
    policy = PollPolicy(initial_delay_seconds=0, error_backoff_seconds=0.01, timeout_seconds=0.1)
    poller = PaymentPoller(check, policy)

    handle = poller.start("pay-1", "order-1", recorder.callbacks())
    await asyncio.wait_for(handle.wait(), timeout=2)

    assert handle.state == PollState.TIMED_OUT
    assert recorder.events == [("timeout",)]
    assert check.calls > 1
    assert not poller.is_polling("pay-1")


async def test_unexpected_check_errors_then_recovery():
    check = ScriptedCheck(ValueError("not json"), status("approved", "confirmed", "in_preparation"))
    recorder = Recorder()

    handle = PaymentPoller(check, FAST).start("pay-1", "order-1", recorder.callbacks())
    await handle.wait()

    assert handle.state == PollState.SUCCEEDED
    assert recorder.events[-1] == ("success", "confirmed")


async def test_crash_outside_the_check_reports_error_once():
    class BrokenStatus:
        provider_status = "approved"

        def to_result(self):
            raise RuntimeError("bad payload")

    async def check(payment_id, order_id):
        return BrokenStatus()

    recorder = Recorder()
    poller = PaymentPoller(check, FAST)

    handle = poller.start("pay-1", "order-1", recorder.callbacks())
    await handle.wait()

    assert handle.state == PollState.ERRORED
    assert recorder.events[-1] == ("error", "bad payload")
    assert poller.start("pay-1", "order-1") is not handle
    await poller.stop_all()


async def test_finished_loops_are_forgotten():
    poller = PaymentPoller(ScriptedCheck(status("approved", "confirmed", "in_preparation")), FAST)
    succeeded = poller.start("pay-ok", "order-1")
    await succeeded.wait()

    timed_out = PaymentPoller(ScriptedCheck(status("pending")), PollPolicy(initial_delay_seconds=0, max_attempts=1))
    handle = timed_out.start("pay-slow", "order-2")
    await handle.wait()

    stopped = PaymentPoller(ScriptedCheck(status("pending")), FAST)
    stopped.start("pay-left", "order-3")
    await stopped.stop("pay-left")

    assert poller.handle("pay-ok") is None
    assert timed_out.handle("pay-slow") is None
    assert stopped.handle("pay-left") is None


async def test_late_change_after_finish_is_not_reported_again():
    poller = PaymentPoller(ScriptedCheck(status("approved", "confirmed", "in_preparation")), FAST)
    await poller.start("pay-1", "order-1").wait()
    change = OrderChange(
        order_id="order-1", payment_status="confirmed", lifecycle_status="in_preparation", state_version=1
    )

    assert poller.handle("pay-1") is None
    assert await poller.settle_externally("pay-1", change) is True
