import logging

from tablepay.common.logging import ContextFilter, log_context, order_id_ctx, payment_id_ctx


def make_record():
    return logging.LogRecord("tablepay", logging.INFO, __file__, 1, "msg", None, None)


def test_log_context_binds_and_restores_ids():
    with log_context(order_id="ord-1", payment_id="pay-1"):
        with log_context(payment_id="pay-2", event_id=None):
            assert payment_id_ctx.get() == "pay-2"
            assert order_id_ctx.get() == "ord-1"
        assert payment_id_ctx.get() == "pay-1"
    assert order_id_ctx.get() == ""
    assert payment_id_ctx.get() == ""


def test_filter_copies_bound_ids_onto_records():
    record = make_record()
    with log_context(order_id="ord-9", trace_id="req-1"):
        assert ContextFilter().filter(record)

    assert record.order_id == "ord-9"
    assert record.trace_id == "req-1"
    assert record.payment_id == ""
    assert record.event_id == ""
