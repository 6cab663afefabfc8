"""Payment screen polling fallback.

While a payment screen is open the client polls the status proxy so the order
reaches a terminal state even if the provider webhook never arrives. Each
payment id has at most one loop; the loop is stopped by a terminal result, by
the real-time listener, by its timeout, or by the caller leaving the screen.
"""

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from tablepay.common.config import CommonSettings, settings
from tablepay.common.logging import logger
from tablepay.common.metrics import poll_loops_total
from tablepay.common.state_machine import is_terminal_payment
from tablepay.services.orders.changefeed import OrderChange
from tablepay.services.reconciliation.schemas import PaymentStatusResponse, ReconcileOutcome, ReconcileResult


class PollState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    ERRORED = "errored"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_POLL_STATES = frozenset({PollState.SUCCEEDED, PollState.ERRORED, PollState.TIMED_OUT, PollState.CANCELLED})

# How many finished payment ids a poller remembers so late changes are not reported twice.
RECENTLY_FINISHED = 256


class PollCheckError(Exception):
    """Status check failed; `retryable` tells the loop whether to keep going."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


StatusCheck = Callable[[str, str], Awaitable[PaymentStatusResponse]]
ExpireOrder = Callable[[str], Awaitable[ReconcileResult]]


@dataclass(frozen=True)
class PollPolicy:
    """Progressive schedule: frequent at first, then spaced out."""

    initial_delay_seconds: float = 2.0
    fast_interval_seconds: float = 5.0
    fast_attempts: int = 10
    medium_interval_seconds: float = 10.0
    medium_attempts: int = 30
    slow_interval_seconds: float = 15.0
    error_backoff_seconds: float = 20.0
    max_attempts: int = 90
    timeout_seconds: float = 900.0

    @classmethod
    def from_settings(cls, config: CommonSettings = settings) -> "PollPolicy":
        return cls(
            initial_delay_seconds=config.poll_initial_delay_seconds,
            fast_interval_seconds=config.poll_fast_interval_seconds,
            fast_attempts=config.poll_fast_attempts,
            medium_interval_seconds=config.poll_medium_interval_seconds,
            medium_attempts=config.poll_medium_attempts,
            slow_interval_seconds=config.poll_slow_interval_seconds,
            error_backoff_seconds=config.poll_error_backoff_seconds,
            max_attempts=config.poll_max_attempts,
            timeout_seconds=config.poll_timeout_seconds,
        )

    def interval_after(self, attempt: int) -> float:
        if attempt <= self.fast_attempts:
            return self.fast_interval_seconds
        if attempt <= self.medium_attempts:
            return self.medium_interval_seconds
        return self.slow_interval_seconds


@dataclass
class PollCallbacks:
    on_success: Callable[[ReconcileResult], Any] | None = None
    on_failure: Callable[[ReconcileResult], Any] | None = None
    on_timeout: Callable[[], Any] | None = None
    on_error: Callable[[Exception], Any] | None = None
    on_status_change: Callable[[str], Any] | None = None


async def _invoke(callback, *args) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as exc:
        logger.exception("poll callback failed: %s", exc)


def result_from_change(change: OrderChange) -> ReconcileResult:
    return ReconcileResult(
        order_id=change.order_id,
        outcome=ReconcileOutcome.ALREADY_SETTLED,
        applied=False,
        pending=False,
        final_payment_status=change.payment_status,
        final_lifecycle_status=change.lifecycle_status,
    )


class PollHandle:
    """Lifecycle of one polling loop.

    A handle leaves `polling` exactly once; the callback matching that exit
    is fired exactly once.
    """

    def __init__(self, payment_id: str, order_id: str, callbacks: PollCallbacks) -> None:
        self.payment_id = payment_id
        self.order_id = order_id
        self.callbacks = callbacks
        self.state = PollState.IDLE
        self.attempts = 0
        self.last_provider_status: str | None = None
        self.result: ReconcileResult | None = None
        self._closing = False
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return not self._closing and self.state not in TERMINAL_POLL_STATES

    def _claim(self) -> bool:
        """Reserve the single exit; stops any further iteration."""

        if not self.active:
            return False
        self._closing = True
        self._stop.set()
        return True

    async def _complete(self, state: PollState, callback=None, *args) -> None:
        self.state = state
        poll_loops_total.labels(final_state=state.value).inc()
        logger.info(
            "poll loop finished payment_id=%s order_id=%s state=%s attempts=%s",
            self.payment_id,
            self.order_id,
            state.value,
            self.attempts,
        )
        await _invoke(callback, *args)

    async def _finish(self, state: PollState, callback=None, *args) -> bool:
        if not self._claim():
            return False
        await self._complete(state, callback, *args)
        return True

    async def wait(self) -> None:
        """Wait until the loop task has exited."""

        task = self._task
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass


class PaymentPoller:
    """Owns the polling loops of one client."""

    def __init__(
        self,
        check: StatusCheck,
        policy: PollPolicy | None = None,
        *,
        expire: ExpireOrder | None = None,
    ) -> None:
        self.check = check
        self.policy = policy or PollPolicy.from_settings()
        self.expire = expire
        self._handles: dict[str, PollHandle] = {}
        self._finished: deque[str] = deque(maxlen=RECENTLY_FINISHED)

    def start(self, payment_id: str, order_id: str, callbacks: PollCallbacks | None = None) -> PollHandle:
        """Start polling `payment_id`, or return the loop already running for it."""

        existing = self._handles.get(payment_id)
        if existing is not None and existing.active:
            logger.info("poll loop already active payment_id=%s", payment_id)
            return existing
        handle = PollHandle(payment_id, order_id, callbacks or PollCallbacks())
        handle.state = PollState.POLLING
        self._handles[payment_id] = handle
        handle._task = asyncio.create_task(self._run(handle), name=f"poll-{payment_id}")
        return handle

    def handle(self, payment_id: str) -> PollHandle | None:
        return self._handles.get(payment_id)

    def is_polling(self, payment_id: str) -> bool:
        handle = self._handles.get(payment_id)
        return handle is not None and handle.active

    def active_payment_ids(self) -> list[str]:
        return [payment_id for payment_id, handle in self._handles.items() if handle.active]

    async def stop(self, payment_id: str) -> None:
        """Caller left the payment screen: cancel without firing callbacks."""

        handle = self._handles.get(payment_id)
        if handle is None:
            return
        await handle._finish(PollState.CANCELLED)
        await handle.wait()

    async def stop_all(self) -> None:
        for payment_id in list(self._handles):
            await self.stop(payment_id)
        self._handles.clear()

    async def settle_externally(self, payment_id: str, change: OrderChange) -> bool:
        """Another path settled the order; cancel the loop and report once.

        Returns False when no loop is running or recently finished for
        `payment_id`, so the caller can report the outcome itself.
        """

        handle = self._handles.get(payment_id)
        if handle is None:
            return payment_id in self._finished
        if not is_terminal_payment(change.payment_status):
            return True
        result = result_from_change(change)
        callback = handle.callbacks.on_success if change.payment_status == "confirmed" else handle.callbacks.on_failure
        if handle._claim():
            handle.result = result
            await handle._complete(PollState.CANCELLED, callback, result)
        await handle.wait()
        return True

    async def _sleep(self, handle: PollHandle, delay: float, deadline: float) -> bool:
        """Sleep up to `delay` (never past `deadline`); True if stopped meanwhile."""

        remaining = deadline - asyncio.get_running_loop().time()
        try:
            await asyncio.wait_for(handle._stop.wait(), timeout=max(0.0, min(delay, remaining)))
            return True
        except asyncio.TimeoutError:
            return False

    async def _run(self, handle: PollHandle) -> None:
        try:
            await self._poll(handle)
        except Exception as exc:
            logger.exception("poll loop crashed payment_id=%s order_id=%s", handle.payment_id, handle.order_id)
            await handle._finish(PollState.ERRORED, handle.callbacks.on_error, exc)
        finally:
            # Task cancelled from outside (loop shutdown): the handle must not stay active.
            if handle._claim():
                handle.state = PollState.CANCELLED
            self._forget(handle)

    def _forget(self, handle: PollHandle) -> None:
        if self._handles.get(handle.payment_id) is handle:
            del self._handles[handle.payment_id]
            self._finished.append(handle.payment_id)

    async def _poll(self, handle: PollHandle) -> None:
        policy = self.policy
        loop = asyncio.get_running_loop()
        deadline = loop.time() + policy.timeout_seconds
        delay = policy.initial_delay_seconds

        while True:
            if await self._sleep(handle, delay, deadline) or not handle.active:
                return
            if loop.time() >= deadline or handle.attempts >= policy.max_attempts:
                await self._time_out(handle)
                return

            handle.attempts += 1
            try:
                status = await self.check(handle.payment_id, handle.order_id)
            except PollCheckError as exc:
                if not exc.retryable:
                    await handle._finish(PollState.ERRORED, handle.callbacks.on_error, exc)
                    return
                logger.warning(
                    "poll check failed payment_id=%s attempt=%s error=%s",
                    handle.payment_id,
                    handle.attempts,
                    exc,
                )
                delay = policy.error_backoff_seconds
                continue
            except Exception as exc:
                # Unparseable answers and client bugs back off like outages.
                logger.exception(
                    "poll check raised payment_id=%s attempt=%s error=%s",
                    handle.payment_id,
                    handle.attempts,
                    exc,
                )
                delay = policy.error_backoff_seconds
                continue

            # Stopped while the request was in flight: drop the answer.
            if not handle.active:
                return

            if status.provider_status != handle.last_provider_status:
                handle.last_provider_status = status.provider_status
                await _invoke(handle.callbacks.on_status_change, status.provider_status)

            result = status.to_result()
            if result.terminal:
                handle.result = result
                if result.confirmed:
                    await handle._finish(PollState.SUCCEEDED, handle.callbacks.on_success, result)
                else:
                    await handle._finish(PollState.ERRORED, handle.callbacks.on_failure, result)
                return
            delay = policy.interval_after(handle.attempts)

    async def _time_out(self, handle: PollHandle) -> None:
        if not handle._claim():
            return
        result = None
        if self.expire is not None:
            try:
                result = await self.expire(handle.order_id)
            except Exception as exc:
                logger.warning("expire after poll timeout failed order_id=%s error=%s", handle.order_id, exc)
        if result is not None and result.terminal and not result.applied:
            # Settled by the webhook before we gave up; report that instead.
            handle.result = result
            if result.confirmed:
                await handle._complete(PollState.SUCCEEDED, handle.callbacks.on_success, result)
            else:
                await handle._complete(PollState.ERRORED, handle.callbacks.on_failure, result)
            return
        handle.result = result
        await handle._complete(PollState.TIMED_OUT, handle.callbacks.on_timeout)
