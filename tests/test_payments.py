import json

import pytest

from ticketgate.errors import AuthenticationFailed, InvalidRequest
from ticketgate.payments import (
    SIGNATURE_HEADER, MockPay, MockTransfers, mock_event, sign_payload,
)


def _event(kind="succeeded", **kw):
    fields = dict(session_ref="cs_1", buyer_id="b1", event_id="ev1",
                  amount=5000)
    fields.update(kw)
    return mock_event(kind, **fields)


def test_verify_and_parse():
    pay = MockPay("k")
    payload = json.dumps(_event(idempotency_key="evt_1")).encode()
    n = pay.verify_webhook(payload, pay.sign(payload))

    assert n.kind == "succeeded" and n.succeeded
    assert n.session_ref == "cs_1"
    assert (n.buyer_id, n.event_id, n.amount) == ("b1", "ev1", 5000)
    assert n.currency == "eur"
    assert n.payment_reference.startswith("pi_")
    assert n.idempotency_key == "evt_1"
    assert n.raw == payload.decode()


def test_header_lookup_is_case_insensitive():
    pay = MockPay("k")
    payload = json.dumps(_event()).encode()
    headers = {SIGNATURE_HEADER.upper(): sign_payload(payload, "k")}
    assert pay.verify_webhook(payload, headers).session_ref == "cs_1"


def test_wrong_secret_fails_closed():
    payload = json.dumps(_event()).encode()
    with pytest.raises(AuthenticationFailed):
        MockPay("k").verify_webhook(payload, MockPay("other").sign(payload))


def test_tampered_body_fails_closed():
    pay = MockPay("k")
    payload = json.dumps(_event(amount=5000)).encode()
    headers = pay.sign(payload)
    tampered = payload.replace(b"5000", b"1")
    with pytest.raises(AuthenticationFailed):
        pay.verify_webhook(tampered, headers)


@pytest.mark.parametrize("event", [
    {"type": "payment.refunded", "payment_session_id": "cs_1"},
    {"type": "payment.succeeded"},
    [1, 2, 3],
])
def test_unsupported_events(event):
    pay = MockPay("k")
    payload = json.dumps(event).encode()
    with pytest.raises(InvalidRequest):
        pay.verify_webhook(payload, pay.sign(payload))


def test_failure_kinds():
    pay = MockPay("k")
    for kind in ("failed", "canceled"):
        payload = json.dumps(_event(kind)).encode()
        n = pay.verify_webhook(payload, pay.sign(payload))
        assert n.kind == kind and not n.succeeded


def test_session_ids_are_unique():
    pay = MockPay("k")
    a = pay.create_session_id_and_url()
    b = pay.create_session_id_and_url()
    assert a["payment_session_id"] != b["payment_session_id"]
    assert a["redirect_url"] == f"/mockpay/{a['payment_session_id']}"


async def test_transfers_are_idempotent():
    tr = MockTransfers()
    first = await tr.transfer("org-1", 100, "eur", idempotency_key="p1")
    again = await tr.transfer("org-1", 100, "eur", idempotency_key="p1")
    other = await tr.transfer("org-1", 100, "eur", idempotency_key="p2")
    assert first == again
    assert other != first


async def test_refund_returns_reference():
    assert (await MockPay("k").refund("pi_1", 100)).startswith("re_")
