from __future__ import annotations

import hashlib
import hmac
import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from qris_shop.engine import ReconciliationEngine
from qris_shop.errors import StoreUnavailable
from qris_shop.models import Notification

logger = logging.getLogger(__name__)

# Largest accepted amount is 10**15 - 1 rupiah.
MAX_AMOUNT_DIGITS = 15


def signature(data: dict[str, Any], secret: str) -> str:
    payload = {k: v for k, v in data.items() if k != "signature" and not isinstance(v, (dict, list))}
    payload["secret"] = secret
    digest = "".join(str(payload[k]) for k in sorted(payload))
    return hashlib.sha256(digest.encode()).hexdigest()


def parse_notification(payload: dict[str, Any]) -> Notification:
    reference = payload.get("reference")
    if reference is None or not str(reference).strip():
        raise ValueError("reference is required")
    raw_amount = payload.get("amount")
    if raw_amount is None or isinstance(raw_amount, bool):
        raise ValueError("amount is required")
    try:
        amount = Decimal(str(raw_amount).strip())
    except InvalidOperation:
        raise ValueError(f"amount is not a number: {raw_amount!r}") from None
    if not amount.is_finite() or amount.adjusted() >= MAX_AMOUNT_DIGITS:
        raise ValueError(f"amount out of range: {raw_amount!r}")
    if amount != amount.to_integral_value() or amount <= 0:
        raise ValueError(f"amount must be a positive whole number: {raw_amount!r}")
    return Notification(amount=int(amount), reference=str(reference).strip(), raw=payload)


def create_app(engine: ReconciliationEngine, webhook_secret: str = "") -> FastAPI:
    app = FastAPI()

    @app.post("/api/qris-callback")
    async def qris_callback(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"ok": False, "error": "invalid json"}, status_code=400)
        if not isinstance(payload, dict):
            return JSONResponse({"ok": False, "error": "expected a JSON object"}, status_code=400)
        if webhook_secret and not hmac.compare_digest(
            str(payload.get("signature", "")), signature(payload, webhook_secret)
        ):
            logger.warning("webhook rejected, bad signature ref=%s", payload.get("reference"))
            return JSONResponse({"ok": False, "error": "invalid signature"}, status_code=401)
        try:
            notification = parse_notification(payload)
        except ValueError as e:
            logger.warning("webhook rejected, %s payload=%s", e, payload)
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)

        logger.info("webhook amount=%s ref=%s", notification.amount, notification.reference)
        try:
            outcome = await engine.handle_notification(notification)
        except StoreUnavailable:
            logger.exception("webhook deferred ref=%s", notification.reference)
            return JSONResponse({"ok": False, "error": "temporarily unavailable"}, status_code=503)
        return {"ok": True, "status": outcome.value}

    @app.get("/health")
    async def health():
        return {"ok": True, "open_requests": len(engine.registry.open_requests())}

    return app
