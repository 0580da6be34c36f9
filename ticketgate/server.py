from __future__ import annotations
from dataclasses import asdict
from typing import Any, Optional

import httpx
import json
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import ORJSONResponse
from loguru import logger
from sqlalchemy.exc import DBAPIError

from . import config
from .errors import AdminRequired, DomainError, EventNotFound, InvalidRequest
from .errors import TicketNotFound
from .helpers import ct_equal, now_ts, to_iso
from .infra.log import setup_logging
from .infra.sql import make_async_engine
from .infra.timings import snapshot, timeit
from .model import webhookseen
from .model.records import PaymentStatus, RefundStatus, Ticket, TicketType
from .model.schema import create_schema
from .model.store import TicketStore
from .notify import HttpNotifier, LogNotifier
from .payments import MockPay, MockTransfers, mock_event
from .services.payouts import PayoutScheduler
from .services.reconciler import Reconciler
from .services.refunds import RefundService
from .services.reservation import ReservationService
from .services.verification import VerificationService
from .sweeper import start_sweeps, stop_sweeps


app = FastAPI(
    title="ticketgate",
    default_response_class=ORJSONResponse,
)


# ---
# app state
# ---
async def init_state(
    app: FastAPI, database_url: Optional[str] = None, *, sweeps: bool = False
) -> None:
    """Engine, schema, clients and adapters on `app.state`."""
    engine, SessionAsync, gated = make_async_engine(
        database_url or config.DATABASE_URL
    )
    async with engine.begin() as conn:
        await create_schema(conn)

    app.state.engine = engine
    app.state.SessionAsync = SessionAsync
    app.state.gated = gated
    app.state.clock = now_ts

    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=256, max_keepalive_connections=256
        ),
    )
    app.state.webhook_url = config.MOCK_WEBHOOK_URL

    app.state.redis = None
    if webhookseen.BACKEND == "redis":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            max_connections=config.REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )

    app.state.adapter = MockPay(config.MOCK_SECRET)
    app.state.transfers = MockTransfers()
    if config.NOTIFY_URL:
        app.state.notifier = HttpNotifier(app.state.http, config.NOTIFY_URL)
    else:
        app.state.notifier = LogNotifier()

    app.state.sweeps = []
    if sweeps:
        app.state.sweeps = start_sweeps(
            SessionAsync, gated, app.state.transfers
        )


async def close_state(app: FastAPI) -> None:
    await stop_sweeps(getattr(app.state, "sweeps", []))
    app.state.sweeps = []

    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None

    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None

    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()
        app.state.engine = None


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    setup_logging()
    logger.info("ticketgate is starting up...")
    logger.info("   - database:      {}", config.DATABASE_URL.split("@")[-1])
    logger.info("   - webhook dedupe: {}", webhookseen.BACKEND)
    logger.info("   - sweeps:         {}",
                "on" if config.SWEEPS_ENABLED else "off")


@app.on_event("startup")
async def _state_start():
    await init_state(app, sweeps=config.SWEEPS_ENABLED)


@app.on_event("shutdown")
async def _state_stop():
    await close_state(app)


# ---
# dependencies
# ---
async def get_store(request: Request) -> TicketStore:
    st = request.app.state
    async with st.SessionAsync() as session:
        yield TicketStore(db=session, gated=st.gated)


async def get_reconciler(request: Request) -> Reconciler:
    st = request.app.state
    async with st.SessionAsync() as session:
        store = TicketStore(db=session, gated=st.gated)
        seen = webhookseen.new_store(db=session, r=st.redis, gated=st.gated)
        yield Reconciler(store, st.adapter, seen, st.notifier, clock=st.clock)


def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    if not x_admin_token or not ct_equal(x_admin_token, config.ADMIN_TOKEN):
        raise AdminRequired()


@app.exception_handler(DomainError)
async def _domain_error(request: Request, exc: DomainError):
    return ORJSONResponse(
        {"error": exc.code.value, "detail": exc.message},
        status_code=exc.status_code,
    )


# ----------------------------
# Request parsing helpers
# ----------------------------
def _str(payload: dict, key: str, required: bool = True) -> Optional[str]:
    v = payload.get(key)
    if v is None or (isinstance(v, str) and not v.strip()):
        if required:
            raise InvalidRequest(f"{key} is required")
        return None
    if not isinstance(v, str):
        raise InvalidRequest(f"{key} must be a string")
    return v.strip()


def _num(payload: dict, key: str, required: bool = True,
         cast=float) -> Any:
    v = payload.get(key)
    if v is None:
        if required:
            raise InvalidRequest(f"{key} is required")
        return None
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise InvalidRequest(f"{key} must be a number")
    if cast is int and int(v) != v:
        raise InvalidRequest(f"{key} must be an integer")
    return cast(v)


def _ticket_view(t: Ticket) -> dict:
    paid = t.payment_status == PaymentStatus.PAID
    return {
        "ticket_id": t.id,
        "event_id": t.event_id,
        "template_id": t.template_id,
        "holder_name": t.holder_name,
        "holder_email": t.holder_email,
        "price_paid": t.price_paid,
        "currency": t.currency,
        "payment_status": t.payment_status,
        "status": t.status,
        # the code exists only once paid
        "code": t.code if paid else None,
        "created_at": to_iso(t.created_at),
        "paid_at": to_iso(t.paid_at),
        "used_at": to_iso(t.used_at),
    }


# ----------------------------
# Events & templates
# ----------------------------
@app.post("/api/events")
async def create_event(payload: dict,
                       store: TicketStore = Depends(get_store)):
    starts_at = _num(payload, "starts_at")
    ends_at = _num(payload, "ends_at")
    if ends_at < starts_at:
        raise InvalidRequest("ends_at must not be before starts_at")
    tier = _str(payload, "organizer_tier", required=False) or "free"
    if tier not in config.COMMISSION_RATES:
        raise InvalidRequest(f"unknown organizer_tier {tier!r}")

    event = await store.create_event(
        organizer_id=_str(payload, "organizer_id"),
        name=_str(payload, "name"),
        starts_at=starts_at,
        ends_at=ends_at,
        organizer_tier=tier,
        now=now_ts(),
    )
    return asdict(event)


@app.post("/api/events/{event_id}/templates")
async def create_template(event_id: str, payload: dict,
                          store: TicketStore = Depends(get_store)):
    ttype = _str(payload, "type", required=False) or TicketType.GENERAL.value
    if ttype not in {t.value for t in TicketType}:
        raise InvalidRequest(f"unknown ticket type {ttype!r}")
    price = _num(payload, "price", cast=int)
    quantity = _num(payload, "quantity", cast=int)
    if price < 0 or quantity < 0:
        raise InvalidRequest("price and quantity must not be negative")

    tpl = await store.create_template(
        event_id=event_id,
        name=_str(payload, "name"),
        type=ttype,
        price=price,
        quantity=quantity,
        currency=(_str(payload, "currency", required=False) or "eur").lower(),
        sale_start=_num(payload, "sale_start", required=False),
        sale_end=_num(payload, "sale_end", required=False),
        now=now_ts(),
    )
    return asdict(tpl)


@app.get("/api/events/{event_id}/inventory")
async def get_inventory(event_id: str,
                        store: TicketStore = Depends(get_store)):
    event = await store.get_event(event_id)
    if event is None:
        raise EventNotFound(event_id)
    items = [{
        "template_id": t.id,
        "name": t.name,
        "type": t.type,
        "price": t.price,
        "currency": t.currency,
        "total": t.quantity_total,
        "available": t.quantity_available,
        "held": t.quantity_held,
        "sold": t.quantity_sold,
    } for t in await store.list_templates(event_id)]
    return {
        "event_id": event.id,
        "attendee_count": event.attendee_count,
        "items": items,
    }


@app.post("/api/events/{event_id}/dispute",
          dependencies=[Depends(require_admin)])
async def set_dispute(event_id: str, payload: dict,
                      store: TicketStore = Depends(get_store)):
    disputed = payload.get("disputed", True)
    if not isinstance(disputed, bool):
        raise InvalidRequest("disputed must be a boolean")
    await store.set_event_disputed(event_id, disputed)
    logger.warning("event={} disputed={}", event_id, disputed)
    return {"ok": True, "event_id": event_id, "disputed": disputed}


# ----------------------------
# Reservations
# ----------------------------
@app.post("/api/reservations")
async def create_reservation(request: Request, payload: dict,
                             store: TicketStore = Depends(get_store)):
    adapter: MockPay = request.app.state.adapter
    session = adapter.create_session_id_and_url()
    svc = ReservationService(store, clock=request.app.state.clock)

    async with timeit("api.reserve"):
        ticket = await svc.reserve(
            template_id=_str(payload, "template_id"),
            buyer_id=_str(payload, "buyer_id"),
            holder_name=_str(payload, "holder_name"),
            holder_email=_str(payload, "holder_email"),
            checkout_session_ref=session["payment_session_id"],
        )
    return {
        "ticket_id": ticket.id,
        "checkout_session_reference": ticket.checkout_session_ref,
        "status": ticket.payment_status,
        "redirect_url": session["redirect_url"],
        "amount": ticket.price_paid,
        "currency": ticket.currency,
    }


@app.post("/api/reservations/{ticket_id}/cancel")
async def cancel_reservation(request: Request, ticket_id: str, payload: dict,
                             store: TicketStore = Depends(get_store)):
    svc = ReservationService(store, clock=request.app.state.clock)
    ticket = await svc.cancel(ticket_id, _str(payload, "buyer_id"))
    return _ticket_view(ticket)


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    reconciler: Reconciler = Depends(get_reconciler),
):
    payload = await request.body()
    headers = dict(request.headers)
    try:
        async with timeit("api.webhook"):
            result = await reconciler.reconcile(payload, headers)
    except DBAPIError as e:
        # not acknowledged: the processor re-delivers later
        logger.error("webhook store error, asking for redelivery: {}", e)
        return ORJSONResponse(
            {"ok": False, "error": "STORE_UNAVAILABLE"}, status_code=503
        )
    return {
        "ok": True,
        "outcome": result.outcome,
        "ticket_id": result.ticket_id,
    }


# ----------------------------
# MockPay: stand-in processor emitting signed notifications
# ----------------------------
@app.post("/mockpay/{psid}/emit")
async def mockpay_emit(request: Request, psid: str, t: str = "succeeded",
                       store: TicketStore = Depends(get_store)):
    if t not in {"succeeded", "failed", "canceled"}:
        raise HTTPException(400, detail="invalid kind")
    ticket = await store.find_ticket_by_session(psid)
    if ticket is None:
        raise HTTPException(404, "payment session not found")

    st = request.app.state
    event = mock_event(
        t,
        session_ref=psid,
        buyer_id=ticket.buyer_id,
        event_id=ticket.event_id,
        amount=ticket.price_paid,
        currency=ticket.currency,
        created_at=st.clock(),
    )
    payload = json.dumps(event).encode()

    client_http: httpx.AsyncClient = st.http
    try:
        r = await client_http.post(
            st.webhook_url, content=payload, headers=st.adapter.sign(payload),
        )
        delivered, status = r.status_code == 200, r.status_code
    except httpx.HTTPError as e:
        # the buyer can simply press the button again
        logger.warning("mockpay webhook delivery failed: {}", e)
        delivered, status = False, None
    return {
        "ok": True,
        "delivered": delivered,
        "webhook_status": status,
        "ticket_id": ticket.id,
        "idempotency_key": event["idempotency_key"],
    }


# ----------------------------
# Check-in
# ----------------------------
@app.post("/api/verify")
async def verify_ticket(request: Request, payload: dict,
                        store: TicketStore = Depends(get_store)):
    svc = VerificationService(store, clock=request.app.state.clock)
    async with timeit("api.verify"):
        res = await svc.verify(
            event_id=_str(payload, "event_id"),
            verifier_id=_str(payload, "verifier_id"),
            code=_str(payload, "code", required=False),
            manual_id=_str(payload, "manual_id", required=False),
        )
    out = {"result": res.result}
    if res.holder_name is not None:
        out["holder_name"] = res.holder_name
    if res.ticket_type_name is not None:
        out["ticket_type_name"] = res.ticket_type_name
    if res.used_at is not None:
        out["used_at"] = to_iso(res.used_at)
    if res.reason is not None:
        out["reason"] = res.reason
    return out


# ----------------------------
# Buyer: tickets & refunds
# ----------------------------
@app.get("/api/tickets")
async def list_tickets(buyer_id: str, limit: int = 100,
                       store: TicketStore = Depends(get_store)):
    tickets = await store.list_tickets_for_buyer(buyer_id, limit)
    events = []
    for event_id in dict.fromkeys(t.event_id for t in tickets):
        event = await store.get_event(event_id)
        if event is not None:
            events.append(asdict(event))
    return {"tickets": [_ticket_view(t) for t in tickets], "events": events}


@app.get("/api/tickets/{ticket_id}")
async def get_ticket(ticket_id: str, buyer_id: str,
                     store: TicketStore = Depends(get_store)):
    ticket = await store.get_ticket(ticket_id)
    if ticket is None or ticket.buyer_id != buyer_id:
        raise TicketNotFound(ticket_id)
    return _ticket_view(ticket)


@app.post("/api/tickets/{ticket_id}/refund")
async def refund_ticket(request: Request, ticket_id: str, payload: dict,
                        store: TicketStore = Depends(get_store)):
    st = request.app.state
    svc = RefundService(store, st.adapter, st.notifier, clock=st.clock)
    refund = await svc.request_refund(
        ticket_id,
        _str(payload, "buyer_id"),
        _str(payload, "reason", required=False) or "",
    )
    body = asdict(refund)
    if refund.status == RefundStatus.PENDING:
        body["requires_manual_review"] = True
        return ORJSONResponse(body, status_code=202)
    return body


# ----------------------------
# Admin
# ----------------------------
@app.get("/api/admin/orphans", dependencies=[Depends(require_admin)])
async def api_admin_orphans(limit: int = 100,
                            store: TicketStore = Depends(get_store)):
    items = [asdict(o) for o in await store.list_orphans(limit)]
    return {"items": items, "limit": limit}


@app.post("/api/admin/sweeps/reservations",
          dependencies=[Depends(require_admin)])
async def api_admin_sweep_reservations(
    request: Request, store: TicketStore = Depends(get_store),
):
    svc = ReservationService(store, clock=request.app.state.clock)
    expired = await svc.expire_stale()
    return {"expired": expired}


@app.post("/api/admin/sweeps/payouts",
          dependencies=[Depends(require_admin)])
async def api_admin_sweep_payouts(
    request: Request, store: TicketStore = Depends(get_store),
):
    st = request.app.state
    svc = PayoutScheduler(store, st.transfers, clock=st.clock)
    released = await svc.sweep()
    return {"released": [asdict(p) for p in released]}


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def api_admin_timings():
    return {"items": snapshot()}
