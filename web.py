"""FastAPI application exposing the token ledger."""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response

import redis_utils
from auth import AuthenticatedAccount, current_account
from billing import (
    BoostNotAllowed,
    IdempotencyConflict,
    UnknownTarget,
    _run_in_executor,
    acontact_influencer,
    apurchase_boost,
)
from ledger import InsufficientBalance, LedgerStorage, StorageFailure, get_ledger_storage
from logging_utils import bind_request_id, current_request_id, init_logging, reset_request_id
from marketplace import MarketplaceStorage, get_marketplace_storage
from metrics import render_metrics
from payments.stripe_callback import handle_webhook
from payments.stripe_checkout import CheckoutError, UnknownPackage, create_checkout_session, list_packages
from payments.stripe_signature import InvalidSignature
from pricing import BOOSTS, contact_cost, get_boost
from settings import STRIPE_WEBHOOK_SECRET, STRIPE_WEBHOOK_TOLERANCE_SEC
from texts import common_text

init_logging("influencerhub-web")
log = logging.getLogger("influencerhub-web")

app = FastAPI(title="InfluencerHub Token Ledger", docs_url=None, redoc_url=None)

_MAX_JSON_BYTES = 512 * 1024


def get_ledger() -> LedgerStorage:
    return get_ledger_storage()


def get_marketplace() -> MarketplaceStorage:
    return get_marketplace_storage()


def _op_id(flow: str, account_id: str, idempotency_key: Optional[str]) -> Optional[str]:
    key = (idempotency_key or "").strip()
    if not key:
        return None
    return f"{flow}:{account_id}:{key[:128]}"


@app.on_event("startup")
async def _startup_event() -> None:
    for name, factory in (("ledger", get_ledger_storage), ("marketplace", get_marketplace_storage)):
        try:
            storage = factory()
            await _run_in_executor(storage.start)
        except Exception:
            log.exception("storage.start_failed", extra={"meta": {"storage": name}})
        else:
            log.info("storage.started", extra={"meta": {"storage": name, "backend": storage.backend}})


@app.on_event("shutdown")
async def _shutdown_event() -> None:
    for storage in (get_ledger_storage(), get_marketplace_storage()):
        await _run_in_executor(storage.stop)


@app.middleware("http")
async def _middleware(request: Request, call_next):  # type: ignore[override]
    request_id = (request.headers.get("X-Request-ID") or "").strip()[:64] or None
    token = bind_request_id(request_id)
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = current_request_id() or ""
    finally:
        reset_request_id(token)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(InsufficientBalance)
async def _insufficient_balance(request: Request, exc: InsufficientBalance) -> JSONResponse:
    return JSONResponse(
        {
            "error": "insufficient_tokens",
            "message": common_text("balance.insufficient", need=exc.required, have=exc.balance),
            "required": exc.required,
            "balance": exc.balance,
            "shortfall": exc.shortfall,
        },
        status_code=402,
    )


@app.exception_handler(StorageFailure)
async def _storage_failure(request: Request, exc: StorageFailure) -> JSONResponse:
    log.error("storage.failure", extra={"meta": {"op": exc.op, "path": request.url.path, "error": str(exc)}})
    return JSONResponse(
        {"error": "storage_unavailable", "message": common_text("balance.storage_unavailable")},
        status_code=503,
    )


@app.exception_handler(UnknownTarget)
async def _unknown_target(request: Request, exc: UnknownTarget) -> JSONResponse:
    key = "contact.unknown" if exc.kind == "influencer" else "boost.unknown"
    return JSONResponse({"error": "not_found", "message": common_text(key)}, status_code=404)


@app.exception_handler(BoostNotAllowed)
async def _boost_not_allowed(request: Request, exc: BoostNotAllowed) -> JSONResponse:
    return JSONResponse({"error": "forbidden", "message": common_text("boost.not_allowed")}, status_code=403)


@app.exception_handler(IdempotencyConflict)
async def _idempotency_conflict(request: Request, exc: IdempotencyConflict) -> JSONResponse:
    return JSONResponse({"error": "idempotency_conflict", "message": common_text("idempotency.conflict")}, status_code=409)


@app.get("/healthz")
async def healthz(ledger: LedgerStorage = Depends(get_ledger)) -> JSONResponse:
    ledger_ok = bool(await _run_in_executor(ledger.ping))
    payload = {"ok": True, "ledger": ledger_ok, "redis": redis_utils.ping()}
    return JSONResponse(payload)


@app.get("/metrics", include_in_schema=False)
def metrics_endpoint() -> Response:
    payload = render_metrics()
    return Response(content=payload, media_type="text/plain; version=0.0.4; charset=utf-8")


@app.post("/api/payments/webhook")
async def payments_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    ledger: LedgerStorage = Depends(get_ledger),
    marketplace: MarketplaceStorage = Depends(get_marketplace),
) -> JSONResponse:
    body = await request.body()
    if not stripe_signature:
        log.warning("payments.webhook.no_signature", extra={"meta": {"size": len(body)}})
        return JSONResponse({"error": common_text("webhook.missing_signature")}, status_code=400)
    if len(body) > _MAX_JSON_BYTES:
        log.warning("payload too large", extra={"meta": {"size": len(body)}})
        raise HTTPException(status_code=413, detail="payload too large")

    try:
        result = await _run_in_executor(
            handle_webhook,
            body,
            stripe_signature,
            STRIPE_WEBHOOK_SECRET,
            ledger=ledger,
            marketplace=marketplace,
            tolerance=STRIPE_WEBHOOK_TOLERANCE_SEC,
        )
    except InvalidSignature as exc:
        log.warning("payments.webhook.invalid_signature", extra={"meta": {"reason": str(exc)}})
        return JSONResponse({"error": common_text("webhook.invalid_signature")}, status_code=400)

    return JSONResponse({"received": True, "status": result.get("status")})


@app.post("/api/payments/create-payment-intent")
async def create_payment_intent(
    request: Request,
    account: AuthenticatedAccount = Depends(current_account),
    ledger: LedgerStorage = Depends(get_ledger),
) -> JSONResponse:
    try:
        body: Any = json.loads(await request.body() or b"{}")
    except json.JSONDecodeError:
        body = {}
    package_id = str(body.get("packageId") or "") if isinstance(body, dict) else ""

    await _run_in_executor(ledger.ensure_account, account.account_id, email=account.email, role=account.role)
    try:
        session = await _run_in_executor(create_checkout_session, account.account_id, package_id)
    except UnknownPackage:
        packages = ", ".join(pack.package_id for pack in list_packages())
        return JSONResponse({"error": common_text("checkout.invalid_package", packages=packages)}, status_code=400)
    except CheckoutError as exc:
        log.error(
            "payments.checkout.error",
            extra={"meta": {"account_id": account.account_id, "package_id": package_id, "error": str(exc)}},
        )
        return JSONResponse({"error": common_text("checkout.failed")}, status_code=502)
    return JSONResponse(session.to_response())


@app.get("/api/user/tokens")
async def user_tokens(
    account: AuthenticatedAccount = Depends(current_account),
    ledger: LedgerStorage = Depends(get_ledger),
) -> JSONResponse:
    balance = await _run_in_executor(ledger.get_balance, account.account_id)
    return JSONResponse({"token_balance": int(balance), "account_id": account.account_id})


@app.get("/api/user/transactions")
async def user_transactions(
    limit: int = Query(default=50),
    offset: int = Query(default=0),
    account: AuthenticatedAccount = Depends(current_account),
    ledger: LedgerStorage = Depends(get_ledger),
) -> JSONResponse:
    page = await _run_in_executor(ledger.list_transactions, account.account_id, limit=limit, offset=offset)
    return JSONResponse(
        {
            "transactions": [tx.to_dict() for tx in page.transactions],
            "total": page.total,
            "limit": page.limit,
            "offset": page.offset,
        }
    )


@app.get("/api/payments/packages")
def token_packages() -> JSONResponse:
    return JSONResponse(
        {
            "packages": [
                {
                    "id": pack.package_id,
                    "name": pack.name,
                    "tokens": pack.tokens,
                    "price": pack.price_cents,
                }
                for pack in list_packages()
            ]
        }
    )


@app.get("/api/boosts")
def boost_catalog(audience: Optional[str] = Query(default=None)) -> JSONResponse:
    boosts = [boost for boost in BOOSTS.values() if audience is None or boost.audience == audience]
    return JSONResponse(
        {
            "boosts": [
                {
                    "id": boost.boost_id,
                    "name": boost.name,
                    "description": boost.description,
                    "price": boost.price,
                    "duration_days": boost.duration_days,
                    "audience": boost.audience,
                }
                for boost in boosts
            ]
        }
    )


@app.get("/api/influencers/{influencer_id}/contact-cost")
async def influencer_contact_cost(
    influencer_id: str,
    marketplace: MarketplaceStorage = Depends(get_marketplace),
) -> JSONResponse:
    influencer = await _run_in_executor(marketplace.get_influencer, influencer_id)
    if influencer is None:
        raise UnknownTarget("influencer", influencer_id)
    return JSONResponse(
        {
            "influencer_id": influencer.influencer_id,
            "followers": influencer.followers,
            "cost": contact_cost(influencer.followers),
        }
    )


@app.post("/api/influencers/{influencer_id}/contact")
async def contact_influencer(
    influencer_id: str,
    account: AuthenticatedAccount = Depends(current_account),
    ledger: LedgerStorage = Depends(get_ledger),
    marketplace: MarketplaceStorage = Depends(get_marketplace),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> JSONResponse:
    receipt = await acontact_influencer(
        account.account_id,
        influencer_id,
        ledger=ledger,
        marketplace=marketplace,
        business_name=account.name,
        op_id=_op_id("contact", account.account_id, idempotency_key),
    )
    return JSONResponse(
        {
            "status": "contacted",
            "cost": receipt.cost,
            "balance": receipt.balance,
            "duplicate": receipt.duplicate,
            "message": common_text("contact.success", cost=receipt.cost, balance=receipt.balance),
        }
    )


@app.post("/api/boosts/{boost_id}/purchase")
async def purchase_boost(
    boost_id: str,
    account: AuthenticatedAccount = Depends(current_account),
    ledger: LedgerStorage = Depends(get_ledger),
    marketplace: MarketplaceStorage = Depends(get_marketplace),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> JSONResponse:
    receipt = await apurchase_boost(
        account.account_id,
        boost_id,
        ledger=ledger,
        marketplace=marketplace,
        role=account.role,
        op_id=_op_id("boost", account.account_id, idempotency_key),
    )
    boost = get_boost(receipt.target_id)
    days = boost.duration_days if boost else 0
    return JSONResponse(
        {
            "status": "boosted",
            "boost_id": receipt.target_id,
            "cost": receipt.cost,
            "balance": receipt.balance,
            "expires_at": receipt.expires_at.isoformat() if receipt.expires_at else None,
            "duplicate": receipt.duplicate,
            "message": common_text(
                "boost.success",
                name=boost.name if boost else receipt.target_id,
                days=days,
                cost=receipt.cost,
                balance=receipt.balance,
            ),
        }
    )


__all__ = ["app", "get_ledger", "get_marketplace"]


if __name__ == "__main__":
    import uvicorn

    from settings import PORT

    uvicorn.run(app, host="0.0.0.0", port=PORT, log_config=None)
