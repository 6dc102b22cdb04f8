import json
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from core.dispatcher import DeliveryOutcome
from core.errors import AuthenticityError, ValidationError
from core.payment import PAYMENT_HEADER, PAYMENT_RESPONSE_HEADER, Challenge, GateError
from core.relay import Relay

from .discord_bot import DiscordInteractions
from .telegram_bot import SECRET_HEADER, WEBHOOK_PATH, TelegramTransport

log = logging.getLogger(__name__)


class InvokeRequest(BaseModel):
    input: Dict[str, Any] = Field(default_factory=dict)


class CallbackRequest(BaseModel):
    token: str = Field(min_length=1)
    result: Any = None
    source: Optional[str] = None


def create_app(
    relay: Relay,
    *,
    discord: Optional[DiscordInteractions] = None,
    telegram: Optional[TelegramTransport] = None,
) -> FastAPI:
    app = FastAPI(title="x402 chat relay")

    @app.get("/", response_class=PlainTextResponse)
    @app.get("/health", response_class=PlainTextResponse)
    @app.get("/healthz", response_class=PlainTextResponse)
    async def health():
        return "OK"

    @app.get("/interactions")
    async def interactions_status():
        return {
            "status": "ok" if discord else "disabled",
            "message": "Discord interactions endpoint is active",
            "publicKey": "set" if relay.settings.discord_public_key else "not set",
        }

    @app.post("/interactions")
    async def interactions(request: Request):
        if discord is None:
            raise HTTPException(status_code=404, detail="Discord interactions are not configured")
        body = await request.body()
        try:
            discord.authenticate(
                body,
                request.headers.get("x-signature-ed25519"),
                request.headers.get("x-signature-timestamp"),
            )
        except AuthenticityError as exc:
            log.warning("rejected discord interaction: %s", exc)
            return JSONResponse({"error": str(exc)}, status_code=401)
        try:
            payload = json.loads(body)
        except ValueError:
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)
        try:
            return JSONResponse(discord.handle(payload))
        except ValidationError as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)

    @app.post(WEBHOOK_PATH)
    async def telegram_webhook(request: Request):
        if telegram is None or not telegram.webhook:
            raise HTTPException(status_code=404, detail="Telegram webhook is not configured")
        if not telegram.verify_secret(request.headers.get(SECRET_HEADER)):
            log.warning("rejected telegram update with a bad secret token")
            raise HTTPException(status_code=403, detail="Unauthorized webhook source")
        try:
            payload = await request.json()
        except ValueError:
            return {"status": "ignored"}
        if not isinstance(payload, dict):
            return {"status": "ignored"}
        await telegram.feed(payload)
        return {"status": "ok"}

    @app.post("/entrypoints/{entrypoint}/invoke")
    async def invoke(entrypoint: str, body: InvokeRequest, request: Request):
        outcome = await relay.gate.invoke(entrypoint, body.input, request.headers.get(PAYMENT_HEADER))
        if isinstance(outcome, Challenge):
            return JSONResponse(outcome.to_body(), status_code=402)
        if isinstance(outcome, GateError):
            return JSONResponse(outcome.to_body(), status_code=outcome.status)
        headers = {}
        if outcome.receipt is not None:
            headers[PAYMENT_RESPONSE_HEADER] = outcome.receipt.header_value()
        return JSONResponse({"output": outcome.output}, headers=headers)

    async def _callback(body: CallbackRequest, platform: Optional[str]):
        outcome = await relay.dispatcher.deliver(body.token, body.result, platform=platform)
        if outcome is DeliveryOutcome.NOT_FOUND:
            return JSONResponse({"error": "Unknown or expired token", "status": 404}, status_code=404)
        return {"success": True}

    @app.post("/callback")
    async def callback(body: CallbackRequest):
        return await _callback(body, body.source)

    @app.post("/{platform}-callback")
    async def platform_callback(platform: str, body: CallbackRequest):
        if platform not in relay.pending:
            raise HTTPException(status_code=404, detail=f"Unknown platform {platform!r}")
        return await _callback(body, platform)

    return app
