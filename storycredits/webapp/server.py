from __future__ import annotations

import asyncio
import hmac
from collections.abc import Mapping
from typing import Literal
from uuid import UUID

import logfire
from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from ..credits.service import CreditService
from ..db.ledger import list_transactions
from ..db.session import DatabaseManager
from ..db.webhooks import get_webhook_stats
from ..errors import InsufficientBalanceError, InvalidBalanceTargetError
from ..payments.gate import WebhookGate
from ..payments.providers import ADAPTERS, get_adapter

DB_KEY = web.AppKey("db", DatabaseManager)
GATE_KEY = web.AppKey("gate", WebhookGate)
SECRETS_KEY = web.AppKey("secrets", dict)
ADMIN_TOKEN_KEY = web.AppKey("admin_token", str)
TASKS_KEY = web.AppKey("tasks", set)


class GrantRequest(BaseModel):
    user_id: UUID
    amount: int = Field(gt=0)
    source: Literal["admin_grant", "bonus", "initial"] = "admin_grant"
    reason: str | None = None
    expires_in_days: int | None = Field(default=None, gt=0)
    admin_id: str | None = None


class DeductRequest(BaseModel):
    user_id: UUID
    amount: int = Field(gt=0)
    reason: str | None = None
    admin_id: str | None = None


class SetBalanceRequest(BaseModel):
    user_id: UUID
    target: int
    reason: str | None = None
    admin_id: str | None = None


# -----------------------------------------------------------------------------
# Webhooks
# -----------------------------------------------------------------------------


async def _webhook(request: web.Request) -> web.Response:
    provider = request.match_info["provider"]
    if provider not in ADAPTERS:
        return web.json_response({"success": False, "error": "Unknown provider"}, status=404)

    raw_body = await request.read()
    adapter = get_adapter(provider, request.app[SECRETS_KEY])
    try:
        event = adapter.parse(raw_body, request.headers)
    except ValueError as e:
        logfire.warn("webhook_unparseable", provider=provider, error=str(e))
        return web.json_response({"success": False, "error": "Invalid payload"}, status=400)

    gate = request.app[GATE_KEY]
    try:
        recorded = await gate.record(event)
    except Exception:
        # Non-2xx is reserved for bad signatures
        logfire.exception(
            "webhook_record_failed", provider=provider, payment_id=event.payment_id
        )
        return web.json_response({"success": False, "error": "Webhook not recorded"})

    if not event.signature_verified:
        return web.json_response({"success": False, "error": "Invalid signature"}, status=401)

    if not recorded.duplicate:
        _process_in_background(request.app, recorded.webhook_id)

    return web.json_response(
        {
            "success": True,
            "webhook_id": str(recorded.webhook_id),
            "duplicate": recorded.duplicate,
        }
    )


def _process_in_background(app: web.Application, webhook_id: UUID) -> None:
    """Grant credits after the acknowledgement has gone out.

    A failure is stored on the event by the gate; the maintenance replay
    retries it.
    """
    task = asyncio.create_task(_process(app[GATE_KEY], webhook_id))
    tasks = app[TASKS_KEY]
    tasks.add(task)
    task.add_done_callback(tasks.discard)


async def _process(gate: WebhookGate, webhook_id: UUID) -> None:
    try:
        await gate.process(webhook_id)
    except Exception:
        logfire.exception("webhook_processing_deferred", webhook_id=str(webhook_id))


async def _drain_tasks(app: web.Application) -> None:
    tasks = list(app[TASKS_KEY])
    if tasks:
        await asyncio.gather(*tasks)


# -----------------------------------------------------------------------------
# Balance
# -----------------------------------------------------------------------------


async def _balance(request: web.Request) -> web.Response:
    try:
        user_id = UUID(request.match_info["user_id"])
    except ValueError:
        return web.json_response({"ok": False, "err": "Invalid user id"}, status=400)

    async with request.app[DB_KEY].session() as session:
        balance = await CreditService(session).get_cached_balance(user_id)
    return web.json_response({"ok": True, "balance": balance})


# -----------------------------------------------------------------------------
# Admin
# -----------------------------------------------------------------------------


def _is_admin(request: web.Request) -> bool:
    token = request.app[ADMIN_TOKEN_KEY]
    if not token:
        return False
    header = request.headers.get("Authorization", "")
    scheme, _, supplied = header.partition(" ")
    return scheme.lower() == "bearer" and hmac.compare_digest(supplied, token)


def _unauthorized() -> web.Response:
    return web.json_response({"ok": False, "err": "Unauthorized"}, status=401)


async def _parse(request: web.Request, model: type[BaseModel]):
    try:
        return model.model_validate(await request.json()), None
    except ValueError as e:
        # ValidationError and JSONDecodeError are both ValueErrors
        errors = e.errors(include_url=False) if isinstance(e, ValidationError) else str(e)
        return None, web.json_response({"ok": False, "err": errors}, status=400)


async def _admin_grant(request: web.Request) -> web.Response:
    if not _is_admin(request):
        return _unauthorized()
    body, error = await _parse(request, GrantRequest)
    if error:
        return error

    async with request.app[DB_KEY].session() as session:
        service = CreditService(session)
        grant_id = await service.admin_grant(
            body.user_id,
            body.amount,
            reason=body.reason,
            admin_id=body.admin_id,
            source=body.source,
            expires_in_days=body.expires_in_days,
        )
        balance = await service.get_balance(body.user_id)
    return web.json_response({"ok": True, "grant_id": str(grant_id), "balance": balance})


async def _admin_deduct(request: web.Request) -> web.Response:
    if not _is_admin(request):
        return _unauthorized()
    body, error = await _parse(request, DeductRequest)
    if error:
        return error

    try:
        async with request.app[DB_KEY].session() as session:
            result = await CreditService(session).deduct(
                body.user_id, body.amount, reason=body.reason, admin_id=body.admin_id
            )
    except InsufficientBalanceError as e:
        return web.json_response({"ok": False, "err": str(e)}, status=409)
    return web.json_response({"ok": True, "balance": result.new_balance})


async def _admin_set_balance(request: web.Request) -> web.Response:
    if not _is_admin(request):
        return _unauthorized()
    body, error = await _parse(request, SetBalanceRequest)
    if error:
        return error

    try:
        async with request.app[DB_KEY].session() as session:
            service = CreditService(session)
            grant_id = await service.set_exact_balance(
                body.user_id, body.target, reason=body.reason, admin_id=body.admin_id
            )
            balance = await service.get_balance(body.user_id)
    except InvalidBalanceTargetError as e:
        return web.json_response({"ok": False, "err": str(e)}, status=400)
    except InsufficientBalanceError as e:
        return web.json_response({"ok": False, "err": str(e)}, status=409)
    return web.json_response(
        {
            "ok": True,
            "grant_id": str(grant_id) if grant_id else None,
            "balance": balance,
        }
    )


async def _admin_credit_details(request: web.Request) -> web.Response:
    if not _is_admin(request):
        return _unauthorized()
    try:
        user_id = UUID(request.match_info["user_id"])
    except ValueError:
        return web.json_response({"ok": False, "err": "Invalid user id"}, status=400)

    async with request.app[DB_KEY].read_session() as session:
        service = CreditService(session)
        balance = await service.get_balance(user_id)
        grants = await service.get_credit_details(user_id)
        transactions = await list_transactions(session, user_id)

    return web.json_response(
        {
            "ok": True,
            "balance": balance,
            "grants": [
                {
                    "id": str(g.id),
                    "source": g.source,
                    "source_id": g.source_id,
                    "amount": g.amount,
                    "consumed": g.consumed,
                    "remaining": g.remaining,
                    "granted_at": g.granted_at.isoformat(),
                    "expires_at": g.expires_at.isoformat(),
                    "is_active": g.is_active,
                }
                for g in grants
            ],
            "transactions": [
                {
                    "id": str(t.id),
                    "type": t.type,
                    "amount": t.amount,
                    "balance_before": t.balance_before,
                    "balance_after": t.balance_after,
                    "description": t.description,
                    "created_at": t.created_at.isoformat(),
                }
                for t in transactions
            ],
        }
    )


async def _admin_webhook_stats(request: web.Request) -> web.Response:
    if not _is_admin(request):
        return _unauthorized()
    async with request.app[DB_KEY].read_session() as session:
        stats = await get_webhook_stats(session)
    return web.json_response(
        {
            "ok": True,
            "total": stats.total,
            "processed": stats.processed,
            "errored": stats.errored,
            "unverified": stats.unverified,
            "duplicates": stats.duplicates,
            "last_received_at": (
                stats.last_received_at.isoformat() if stats.last_received_at else None
            ),
        }
    )


def create_app(
    db: DatabaseManager,
    gate: WebhookGate,
    *,
    secrets: Mapping[str, str | None],
    admin_token: str | None = None,
) -> web.Application:
    app = web.Application()
    app[DB_KEY] = db
    app[GATE_KEY] = gate
    app[SECRETS_KEY] = dict(secrets)
    app[ADMIN_TOKEN_KEY] = admin_token or ""
    app[TASKS_KEY] = set()
    app.on_shutdown.append(_drain_tasks)
    app.router.add_post("/webhooks/{provider}", _webhook)
    app.router.add_get("/balance/{user_id}", _balance)
    app.router.add_post("/admin/credits/grant", _admin_grant)
    app.router.add_post("/admin/credits/deduct", _admin_deduct)
    app.router.add_post("/admin/credits/set-balance", _admin_set_balance)
    app.router.add_get("/admin/credits/{user_id}", _admin_credit_details)
    app.router.add_get("/admin/webhooks/stats", _admin_webhook_stats)
    return app
