from __future__ import annotations
import argparse
import asyncio
import logging
from typing import List, Optional

import httpx
import orjson
import redis.asyncio as redis
import uvicorn
from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Request,
    UploadFile,
)
from fastapi.responses import ORJSONResponse, Response
from pydantic import BaseModel
from starlette.middleware.sessions import SessionMiddleware

from .admin import AdminService
from .checkout import CheckoutService, validate_details
from .door import DoorValidationService
from .errors import BoxOfficeError, Conflict, InvalidInput, NotFound
from .fees import PROCESSING_FEES
from .helpers import ct_equal
from .infra import timings
from .infra.sql import make_async_engine
from .model import inventory
from .model.inventory import CartItem, InventoryLedger
from .model.orders import OrderStore, order_to_dict
from .model.orm import Base
from .model.paymentsession import new_store
from .model.paymentsession._postgres import create_schema as ps_schema
from .notify import (
    HttpSink,
    LogSink,
    NotificationDispatcher,
    NotificationSink,
)
from .payments import new_adapter
from .settings import Settings

logger = logging.getLogger(__name__)

router = APIRouter()


# ----------------------------
# Request bodies
# ----------------------------
class ItemIn(BaseModel):
    ticket_type_id: str
    quantity: int


class CartIn(BaseModel):
    items: List[ItemIn]


class CardCheckoutIn(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    items: List[ItemIn]
    method: str = "card"


class StatusIn(BaseModel):
    status: str
    admin_notes: Optional[str] = None
    override_token: Optional[str] = None


class TotalIn(BaseModel):
    total: int


class DoorIn(BaseModel):
    qr: Optional[str] = None
    order_number: Optional[str] = None
    ticket_id: Optional[str] = None
    scanned_by: Optional[str] = None


def _cart(items: List[ItemIn]) -> List[CartItem]:
    return [CartItem(i.ticket_type_id, i.quantity) for i in items]


def _parse_items_json(raw: str) -> List[CartItem]:
    try:
        data = orjson.loads(raw or "[]")
        return [
            CartItem(str(d["ticket_type_id"]), int(d["quantity"]))
            for d in data
        ]
    except (orjson.JSONDecodeError, KeyError, TypeError, ValueError):
        raise InvalidInput("items must be a JSON list of "
                           "{ticket_type_id, quantity}")


# ----------------------------
# Dependencies
# ----------------------------
def get_checkout(request: Request) -> CheckoutService:
    return request.app.state.checkout


def get_admin(request: Request) -> AdminService:
    return request.app.state.admin


def get_door(request: Request) -> DoorValidationService:
    return request.app.state.door


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


# ----------------------------
# Public API
# ----------------------------
@router.get("/")
async def health(request: Request):
    s: Settings = request.app.state.settings
    return {
        "ok": True,
        "event": s.event_name,
        "payment_provider": s.payment_provider,
        "paysession_backend": s.paysession_backend,
    }


@router.get("/api/inventory")
async def get_inventory(co: CheckoutService = Depends(get_checkout)):
    return {"items": [
        {"id": t["id"], "name": t["name"], "price": t["price"],
         "available": t["available"]}
        for t in await co.ledger.list_types()
    ]}


@router.post("/api/cart/check")
async def cart_check(body: CartIn,
                     co: CheckoutService = Depends(get_checkout)):
    try:
        avail = await co.ledger.check_cart_availability(_cart(body.items))
    except ValueError as e:
        raise InvalidInput(str(e)) from e
    return {"valid": avail.valid, "errors": avail.errors}


@router.get("/api/fees")
async def get_fees(subtotal: int, method: Optional[str] = None,
                   co: CheckoutService = Depends(get_checkout)):
    if subtotal < 0:
        raise InvalidInput("subtotal must be >= 0")
    if method:
        return co.quote(subtotal, method).to_dict()
    return {"methods": {
        m: co.quote(subtotal, m).to_dict() for m in PROCESSING_FEES
    }}


@router.post("/api/checkout/paynow")
async def checkout_paynow(
    name: str = Form(""),
    email: str = Form(""),
    phone: str = Form(""),
    items: str = Form("[]"),
    proof: Optional[UploadFile] = File(None),
    co: CheckoutService = Depends(get_checkout),
):
    details = validate_details(name, email, phone)
    cart = _parse_items_json(items)
    data = await proof.read() if proof is not None else None
    ctype = proof.content_type if proof is not None else None
    order = await co.submit_paynow(cart, details, data, ctype)
    return {
        "ok": True,
        "order_number": order.order_number,
        "status": order.status,
        "total": order.total_amount,
    }


@router.post("/api/checkout/card")
async def checkout_card(body: CardCheckoutIn,
                        co: CheckoutService = Depends(get_checkout)):
    details = validate_details(body.name, body.email, body.phone)
    started = await co.start_card_payment(
        _cart(body.items), details, body.method
    )
    return started.to_dict()


@router.get("/api/orders/{order_number}")
async def get_order(order_number: str,
                    co: CheckoutService = Depends(get_checkout)):
    order = await co.lookup(order_number)
    return order_to_dict(order)


# ----------------------------
# Webhooks + MockPay
# ----------------------------
@router.post("/payments/webhook")
async def payments_webhook(request: Request,
                           co: CheckoutService = Depends(get_checkout)):
    payload = await request.body()
    return await co.handle_webhook(co.provider, payload,
                                   dict(request.headers))


@router.post("/payments/mockpay/webhook")
async def mockpay_webhook(request: Request,
                          co: CheckoutService = Depends(get_checkout)):
    payload = await request.body()
    return await co.handle_webhook(co.fallback, payload,
                                   dict(request.headers))


@router.get("/mockpay/{psid}")
async def mockpay_screen(psid: str,
                         co: CheckoutService = Depends(get_checkout)):
    ps = await co.sessions.get(psid)
    if ps is None or ps.provider != co.fallback.name:
        raise NotFound("payment session not found")
    return {
        "psid": psid,
        "order_number": ps.order_number,
        "amount": ps.amount,
        "currency": ps.currency,
        "state": ps.state,
        "simulated": ps.simulated,
        "emit_url": f"/mockpay/{psid}/emit",
        "kinds": ["succeeded", "failed", "canceled"],
    }


@router.post("/mockpay/{psid}/emit")
async def mockpay_emit(psid: str, request: Request, t: str = Form(...),
                       co: CheckoutService = Depends(get_checkout)):
    ps = await co.sessions.get(psid)
    mock = co.fallback
    # only sessions MockPay opened can be settled from its hosted page
    if ps is None or ps.provider != mock.name:
        raise NotFound("payment session not found")
    payload = mock.build_event(psid, t, ps.amount, ps.currency)
    headers = {
        "x-mockpay-signature": mock.sign(payload),
        "content-type": "application/json",
    }

    s: Settings = request.app.state.settings
    if not s.mock_webhook_url:
        # deliver in-process
        result = await co.handle_webhook(mock, payload, headers)
        return {"ok": True, "kind": t, "order_number": ps.order_number,
                "result": result}

    http: httpx.AsyncClient = request.app.state.http
    try:
        await http.post(s.mock_webhook_url, content=payload, headers=headers)
    except httpx.HTTPError as e:
        # buyer can press the button again
        logger.warning("mockpay webhook delivery failed: %r", e)
        return {"ok": False, "kind": t, "order_number": ps.order_number}
    return {"ok": True, "kind": t, "order_number": ps.order_number}


# ----------------------------
# Admin
# ----------------------------
@router.post("/admin/login")
async def admin_login(request: Request, username: str = Form(...),
                      password: str = Form(...)):
    s: Settings = request.app.state.settings
    ok_user = ct_equal(username.strip(), s.admin_username)
    ok_pass = ct_equal(password, s.admin_password)
    if not (ok_user and ok_pass):
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    request.session["admin_user"] = username.strip()
    return {"ok": True}


@router.post("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"ok": True}


admin_router = APIRouter(dependencies=[Depends(require_admin)])


@admin_router.get("/api/admin/orders")
async def admin_orders(ad: AdminService = Depends(get_admin)):
    orders = await ad.orders.get_all()
    return {"items": [order_to_dict(o, admin=True) for o in orders]}


@admin_router.get("/api/admin/orders.csv")
async def admin_orders_csv(ad: AdminService = Depends(get_admin)):
    return Response(
        content=await ad.orders.export_csv(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="orders.csv"'},
    )


@admin_router.get("/api/admin/orders/{order_id}")
async def admin_order(order_id: str, ad: AdminService = Depends(get_admin)):
    order = await ad.orders.get(order_id)
    if order is None:
        raise NotFound("Order not found")
    return order_to_dict(order, admin=True)


@admin_router.get("/api/admin/orders/{order_id}/proof")
async def admin_order_proof(order_id: str,
                            ad: AdminService = Depends(get_admin)):
    data, ctype = await ad.orders.get_proof(order_id)
    return Response(content=data, media_type=ctype)


@admin_router.post("/api/admin/orders/{order_id}/status")
async def admin_order_status(order_id: str, body: StatusIn,
                             ad: AdminService = Depends(get_admin)):
    order = await ad.change_status(
        order_id, body.status,
        admin_notes=body.admin_notes,
        override_token=body.override_token,
    )
    return order_to_dict(order, admin=True)


@admin_router.delete("/api/admin/orders/{order_id}")
async def admin_order_delete(order_id: str,
                             ad: AdminService = Depends(get_admin)):
    order = await ad.delete(order_id)
    return {"ok": True, "deleted": order.order_number}


@admin_router.get("/api/admin/stats")
async def admin_stats(ad: AdminService = Depends(get_admin)):
    return {
        "orders": await ad.orders.stats(),
        "inventory": await ad.ledger.stats(),
    }


@admin_router.get("/api/admin/financials")
async def admin_financials(ad: AdminService = Depends(get_admin)):
    return await ad.orders.financials()


@admin_router.get("/api/admin/inventory")
async def admin_inventory(ad: AdminService = Depends(get_admin)):
    return {"items": await ad.ledger.list_types()}


@admin_router.post("/api/admin/inventory/reset")
async def admin_inventory_reset(ad: AdminService = Depends(get_admin)):
    await ad.reset_inventory()
    return {"ok": True}


@admin_router.post("/api/admin/inventory/{ticket_type_id}/total")
async def admin_inventory_total(ticket_type_id: str, body: TotalIn,
                                ad: AdminService = Depends(get_admin)):
    if body.total < 0:
        raise InvalidInput("total must be >= 0")
    if not await ad.set_total(ticket_type_id, body.total):
        raise Conflict("Total cannot be below sold + reserved")
    return await ad.ledger.get(ticket_type_id)


@admin_router.get("/api/admin/reconcile")
async def admin_reconcile(ad: AdminService = Depends(get_admin)):
    return {"items": await ad.reconcile()}


@admin_router.get("/api/pending")
async def api_pending(limit: int = 100,
                      co: CheckoutService = Depends(get_checkout)):
    total, items = await co.sessions.get_recent(limit=limit)
    return {"items": items, "limit": limit, "total": total}


@admin_router.post("/api/admin/reap")
async def admin_reap(co: CheckoutService = Depends(get_checkout)):
    return {"released": await co.reap_expired()}


@admin_router.get("/api/admin/timings")
async def admin_timings():
    return timings.summary()


@admin_router.post("/api/admin/timings/reset")
async def admin_timings_reset():
    timings.reset()
    return {"ok": True}


@admin_router.post("/api/door/validate")
async def door_validate(body: DoorIn, request: Request,
                        door: DoorValidationService = Depends(get_door)):
    by = body.scanned_by or request.session.get("admin_user") or "bouncer"
    if body.qr:
        result = await door.validate_qr(body.qr, by)
    elif body.order_number and body.ticket_id:
        result = await door.validate(body.order_number, body.ticket_id, by)
    else:
        raise InvalidInput("qr or order_number + ticket_id required")
    return result.to_dict()


# ----------------------------
# App factory
# ----------------------------
async def _reaper_loop(co: CheckoutService, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await co.reap_expired()
        except Exception:
            logger.exception("reaper pass failed")


def create_app(
    settings: Optional[Settings] = None,
    *,
    sink: Optional[NotificationSink] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(
        title="BoxOffice",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware,
                       secret_key=settings.session_secret)
    app.state.settings = settings
    app.include_router(router)
    app.include_router(admin_router)

    @app.exception_handler(BoxOfficeError)
    async def _boxoffice_error(request: Request, exc: BoxOfficeError):
        return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.on_event("startup")
    async def _say_hello():
        R = "PostgreSQL" if settings.paysession_backend == "pg" else "Redis"
        logger.info("=" * 50)
        logger.info("BoxOffice is starting up...")
        dialect = settings.database_url.split("://")[0]
        logger.info("   - Database: %s", dialect)
        logger.info("   - Payment Sessions Backend: %s", R)
        logger.info("   - Payment Provider: %s", settings.payment_provider)
        logger.info("=" * 50)

    @app.on_event("startup")
    async def _services_start():
        s = settings
        app.state.http = httpx.AsyncClient(
            timeout=5.0,
            limits=httpx.Limits(
                max_connections=512, max_keepalive_connections=512
            ),
            transport=transport,
        )

        db = make_async_engine(
            s.database_url,
            pool_size=s.db_pool_size,
            max_overflow=s.db_max_overflow,
            pool_timeout=s.db_pool_timeout,
            gate_limit=s.db_gate_limit,
        )
        app.state.db = db
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            await inventory.create_schema(conn, s.ticket_types)
            if s.paysession_backend == "pg":
                await ps_schema(conn)

        app.state.redis = None
        if s.paysession_backend != "pg":
            app.state.redis = redis.from_url(
                s.redis_url,
                decode_responses=True,
                max_connections=s.redis_max_conn,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
        sessions = new_store(
            s.paysession_backend, db=db, r=app.state.redis,
            ttl_seconds=s.reservation_ttl_seconds,
        )

        if sink is not None:
            out: NotificationSink = sink
        elif s.notify_url:
            out = HttpSink(app.state.http, s.notify_url)
        else:
            out = LogSink()
        dispatcher = NotificationDispatcher(out)
        app.state.dispatcher = dispatcher

        ledger = InventoryLedger(db)
        orders = OrderStore(db)
        app.state.checkout = CheckoutService(
            s, ledger, orders, sessions,
            new_adapter(s, app.state.http), dispatcher,
        )
        app.state.admin = AdminService(s, ledger, orders, dispatcher)
        app.state.door = DoorValidationService(orders)

        app.state.reaper = None
        if s.reaper_interval_seconds > 0:
            app.state.reaper = asyncio.create_task(_reaper_loop(
                app.state.checkout, s.reaper_interval_seconds
            ))

    @app.on_event("shutdown")
    async def _services_stop():
        reaper = getattr(app.state, "reaper", None)
        if reaper is not None:
            reaper.cancel()
            try:
                await reaper
            except asyncio.CancelledError:
                pass
        dispatcher = getattr(app.state, "dispatcher", None)
        if dispatcher is not None:
            await dispatcher.drain()
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None
        db = getattr(app.state, "db", None)
        if db is not None:
            await db.dispose()

    return app


app = create_app()


def main() -> None:
    parser = argparse.ArgumentParser(description="BoxOffice ticket shop")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("boxoffice.server:app", host=args.host, port=args.port,
                log_level=args.log_level)


if __name__ == "__main__":
    main()
