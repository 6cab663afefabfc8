"""Payment reconciliation.

Webhook deliveries and client status polls both end up here as a
`PaymentClaim`. A claim is applied at most once per order: the first
compare-and-set on `payment_status == "pending"` wins, writes the side-effect
request to the outbox and publishes the order change; every later or
concurrent claim observes a terminal payment status and returns a no-op.
"""

from datetime import datetime, timezone
from typing import Callable

from tablepay.common.config import settings
from tablepay.common.events import OrderEvent
from tablepay.common.logging import log_context, logger, trace_id_ctx
from tablepay.common.metrics import (
    mismatched_payment_id_total,
    payment_amount_mismatch_total,
    payment_failure_total,
    payment_settle_seconds,
    payment_success_total,
    reconcile_claims_total,
)
from tablepay.common.state_machine import AWAITING_PAYMENT_STATUSES, lifecycle_path, validate_payment_transition
from tablepay.common.tracing import annotate_span, tracer
from tablepay.services.orders.store import OrderSnapshot, OrderStore, PaymentWrite
from tablepay.services.reconciliation.schemas import (
    ClaimSource,
    PaymentClaim,
    ReconcileOutcome,
    ReconcileResult,
)


APPROVED_PROVIDER_STATUSES = frozenset({"approved"})
FAILED_PROVIDER_STATUSES = frozenset({"rejected", "cancelled"})


class ReconciliationError(Exception):
    """Base class for reconciliation failures the caller must handle."""


class OrderNotFound(ReconciliationError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"order {order_id} not found")
        self.order_id = order_id


class ConcurrentUpdateError(ReconciliationError):
    """The order kept changing underneath the compare-and-set; retry later."""


def map_provider_status(provider_status: str, confirmed_order_status: str) -> tuple[str, str] | None:
    """Map a provider status to `(payment_status, lifecycle_status)`.

    Returns None for non-terminal provider statuses (`pending`, `in_process`,
    anything unknown).
    """

    status = (provider_status or "").lower()
    if status in APPROVED_PROVIDER_STATUSES:
        return "confirmed", confirmed_order_status
    if status in FAILED_PROVIDER_STATUSES:
        return "failed", "cancelled"
    return None


def _utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ReconciliationService:
    """Applies payment claims to canonical order state exactly once."""

    def __init__(
        self,
        store: OrderStore,
        *,
        confirmed_order_status: str | None = None,
        clock: Callable[[], datetime] | None = None,
        max_cas_attempts: int = 3,
    ) -> None:
        self.store = store
        self.confirmed_order_status = confirmed_order_status or settings.confirmed_order_status
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_cas_attempts = max_cas_attempts

    def _load(self, order_id: str) -> OrderSnapshot:
        snapshot = self.store.get_order_snapshot(order_id)
        if snapshot is None:
            raise OrderNotFound(order_id)
        return snapshot

    def _result(self, snapshot: OrderSnapshot, outcome: ReconcileOutcome, *, pending: bool = False) -> ReconcileResult:
        return ReconcileResult(
            order_id=snapshot.order_id,
            outcome=outcome,
            applied=False,
            pending=pending,
            final_payment_status=snapshot.payment_status,
            final_lifecycle_status=snapshot.status,
        )

    def _observe_settled(self, snapshot: OrderSnapshot, terminal_state: str, source: str) -> None:
        created_at = _utc(snapshot.created_at)
        if created_at is not None:
            elapsed = max(0.0, (self.clock() - created_at).total_seconds())
            payment_settle_seconds.labels(terminal_state=terminal_state).observe(elapsed)
        if terminal_state == "confirmed":
            payment_success_total.labels(source=source).inc()
        else:
            payment_failure_total.labels(source=source).inc()

    def _lifecycle_next(self, snapshot: OrderSnapshot, target: str) -> str:
        if snapshot.status in AWAITING_PAYMENT_STATUSES:
            lifecycle_path(snapshot.status, target)
            return target
        # Staff already moved the order on; settle the payment, keep the lifecycle.
        logger.warning(
            "late settlement order_id=%s lifecycle=%s target=%s",
            snapshot.order_id,
            snapshot.status,
            target,
        )
        return snapshot.status

    def _check_amount(self, snapshot: OrderSnapshot, claim: PaymentClaim) -> None:
        if claim.amount is None or snapshot.total_amount is None:
            return
        if claim.amount != snapshot.total_amount:
            payment_amount_mismatch_total.labels(source=claim.source.value).inc()
            logger.warning(
                "payment amount differs from order total order_id=%s payment_id=%s amount=%s total=%s",
                snapshot.order_id,
                claim.external_payment_id,
                claim.amount,
                snapshot.total_amount,
            )

    async def reconcile(self, order_id: str, claim: PaymentClaim) -> ReconcileResult:
        """Apply `claim` to the order if it is the first terminal claim for it.

        Raises `OrderNotFound` for unknown orders and `ConcurrentUpdateError`
        when the row keeps changing; store errors propagate unchanged.
        """

        with log_context(order_id=order_id, payment_id=claim.external_payment_id):
            with tracer.start_as_current_span("reconcile"):
                annotate_span(
                    order_id=order_id,
                    payment_id=claim.external_payment_id,
                    source=claim.source.value,
                    provider_status=claim.provider_status,
                )
                result = await self._reconcile(order_id, claim)
                annotate_span(outcome=result.outcome.value)
        reconcile_claims_total.labels(source=claim.source.value, outcome=result.outcome.value).inc()
        return result

    async def _reconcile(self, order_id: str, claim: PaymentClaim) -> ReconcileResult:
        if not claim.external_payment_id:
            raise ValueError("claim.external_payment_id must be non-empty")

        for attempt in range(1, self.max_cas_attempts + 1):
            snapshot = self._load(order_id)

            stored_id = snapshot.external_payment_id
            if stored_id is None:
                if self.store.attach_external_payment_id_if_absent(order_id, claim.external_payment_id):
                    stored_id = claim.external_payment_id
                else:
                    snapshot = self._load(order_id)
                    stored_id = snapshot.external_payment_id
            if stored_id != claim.external_payment_id:
                mismatched_payment_id_total.labels(source=claim.source.value).inc()
                logger.warning(
                    "claim rejected: mismatched payment id order_id=%s stored=%s claimed=%s source=%s",
                    order_id,
                    stored_id,
                    claim.external_payment_id,
                    claim.source.value,
                )
                return self._result(snapshot, ReconcileOutcome.MISMATCHED_PAYMENT_ID)

            if snapshot.payment_is_terminal:
                if snapshot.payment_status == "failed" and claim.provider_status in APPROVED_PROVIDER_STATUSES:
                    logger.warning(
                        "approved payment for settled-failed order, refund candidate order_id=%s payment_id=%s",
                        order_id,
                        claim.external_payment_id,
                    )
                logger.info(
                    "duplicate claim skipped order_id=%s payment_status=%s source=%s",
                    order_id,
                    snapshot.payment_status,
                    claim.source.value,
                )
                return self._result(snapshot, ReconcileOutcome.ALREADY_SETTLED)

            target = map_provider_status(claim.provider_status, self.confirmed_order_status)
            if target is None:
                return self._result(snapshot, ReconcileOutcome.PENDING, pending=True)

            payment_next, lifecycle_target = target
            validate_payment_transition(snapshot.payment_status, payment_next)
            lifecycle_next = self._lifecycle_next(snapshot, lifecycle_target)
            self._check_amount(snapshot, claim)

            write = self._build_write(snapshot, claim, payment_next, lifecycle_next)
            won = await self.store.compare_and_set_payment_status(
                order_id, snapshot.payment_status, payment_next, lifecycle_next, write
            )
            if won:
                self._observe_settled(snapshot, payment_next, claim.source.value)
                logger.info(
                    "payment reconciled order_id=%s payment_id=%s payment_status=%s lifecycle=%s source=%s",
                    order_id,
                    claim.external_payment_id,
                    payment_next,
                    lifecycle_next,
                    claim.source.value,
                )
                return ReconcileResult(
                    order_id=order_id,
                    outcome=ReconcileOutcome.APPLIED,
                    applied=True,
                    pending=False,
                    final_payment_status=payment_next,
                    final_lifecycle_status=lifecycle_next,
                )
            logger.info(
                "compare-and-set lost order_id=%s attempt=%s source=%s",
                order_id,
                attempt,
                claim.source.value,
            )

        raise ConcurrentUpdateError(f"order {order_id} changed during {self.max_cas_attempts} attempts")

    def _build_write(
        self, snapshot: OrderSnapshot, claim: PaymentClaim, payment_next: str, lifecycle_next: str
    ) -> PaymentWrite:
        now = self.clock()
        payload = {
            "order_id": snapshot.order_id,
            "external_payment_id": claim.external_payment_id,
            "amount": str(claim.amount if claim.amount is not None else snapshot.total_amount),
            "payment_method": claim.payment_method,
            "payment_status": payment_next,
            "lifecycle_status": lifecycle_next,
            "source": claim.source.value,
        }
        if payment_next == "confirmed":
            timestamps = {"payment_confirmed_at": now}
            payload["route_to_kitchen"] = lifecycle_next in ("in_preparation", "paid")
            effect = OrderEvent("order.payment_confirmed", payload)
        else:
            timestamps = {"cancelled_at": now} if lifecycle_next == "cancelled" else {}
            payload["provider_status"] = claim.provider_status
            effect = OrderEvent("order.payment_failed", payload)
        return PaymentWrite(
            expected_version=snapshot.state_version,
            from_status=snapshot.status,
            reason=f"provider_{claim.provider_status}",
            source=claim.source.value,
            external_payment_id=claim.external_payment_id,
            payment_method=claim.payment_method,
            trace_id=trace_id_ctx.get(),
            timestamps=timestamps,
            side_effects=[effect],
        )

    async def expire(
        self, order_id: str, reason: str = "payment_timeout", source: str = ClaimSource.POLL.value
    ) -> ReconcileResult:
        """Expire an order whose payment never settled.

        Uses the same compare-and-set as `reconcile`, so it is a no-op once a
        webhook or poll has settled the payment.
        """

        for attempt in range(1, self.max_cas_attempts + 1):
            snapshot = self._load(order_id)
            if snapshot.payment_is_terminal:
                return self._result(snapshot, ReconcileOutcome.ALREADY_SETTLED)

            lifecycle_next = self._lifecycle_next(snapshot, "expired")
            now = self.clock()
            write = PaymentWrite(
                expected_version=snapshot.state_version,
                from_status=snapshot.status,
                reason=reason,
                source=source,
                external_payment_id=snapshot.external_payment_id,
                trace_id=trace_id_ctx.get(),
                timestamps={"expired_at": now},
                side_effects=[
                    OrderEvent(
                        "order.payment_expired",
                        {
                            "order_id": order_id,
                            "external_payment_id": snapshot.external_payment_id,
                            "payment_status": "failed",
                            "lifecycle_status": lifecycle_next,
                            "reason": reason,
                            "source": source,
                        },
                    )
                ],
            )
            if await self.store.compare_and_set_payment_status(
                order_id, snapshot.payment_status, "failed", lifecycle_next, write
            ):
                self._observe_settled(snapshot, "expired", source)
                logger.info("order expired order_id=%s reason=%s", order_id, reason)
                return ReconcileResult(
                    order_id=order_id,
                    outcome=ReconcileOutcome.APPLIED,
                    applied=True,
                    pending=False,
                    final_payment_status="failed",
                    final_lifecycle_status=lifecycle_next,
                )
            logger.info("expire compare-and-set lost order_id=%s attempt=%s", order_id, attempt)

        raise ConcurrentUpdateError(f"order {order_id} changed during {self.max_cas_attempts} attempts")
