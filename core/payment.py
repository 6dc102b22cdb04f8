"""x402 payment gate in front of the worker.

A request without an ``X-PAYMENT`` header gets a challenge describing what to
pay. A request with one has its proof checked against the requirement, then
verified by the facilitator; only then does the worker run. Settlement is
attempted after the worker succeeds and is best effort: a paying user is never
denied a result because settlement failed.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

import aiohttp

from .config import Settings
from .errors import PaymentVerificationError, ValidationError, WorkerError
from .history import ChatHistory

log = logging.getLogger(__name__)

X402_VERSION = 1
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

SUMMARISE = "summarise chat"
SEARCH_EVENTS = "search events"

ENTRYPOINTS = {
    SUMMARISE: "Summarise recent chat messages into a summary and action items",
    SEARCH_EVENTS: "Search upcoming events by topic and optional city",
}


@dataclass(frozen=True)
class PaymentRequirement:
    scheme: str
    network: str
    max_amount_required: str
    resource: str
    description: str
    pay_to: str
    asset: str
    max_timeout_seconds: int
    mime_type: str = "application/json"
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": self.max_amount_required,
            "resource": self.resource,
            "description": self.description,
            "mimeType": self.mime_type,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "asset": self.asset,
            "extra": dict(self.extra),
        }


@dataclass
class PaymentProof:
    x402_version: int
    scheme: str
    network: str
    payload: Dict[str, Any]
    raw: Dict[str, Any]

    @classmethod
    def decode(cls, header: str) -> "PaymentProof":
        """Parse a base64 JSON ``X-PAYMENT`` header. Raises ValueError."""

        try:
            decoded = base64.b64decode(header.strip(), validate=True)
            data = json.loads(decoded)
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"undecodable payment header: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("payment header must encode a JSON object")
        payload = data.get("payload")
        if not isinstance(payload, dict):
            raise ValueError("payment header is missing its payload")
        try:
            version = int(data.get("x402Version"))
        except (TypeError, ValueError) as exc:
            raise ValueError("payment header has no x402Version") from exc
        return cls(
            x402_version=version,
            scheme=str(data.get("scheme") or ""),
            network=str(data.get("network") or ""),
            payload=payload,
            raw=data,
        )


def encode_header(data: Dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(data, separators=(",", ":")).encode("utf-8")).decode("ascii")


@dataclass
class VerifyResponse:
    is_valid: bool
    invalid_reason: Optional[str] = None
    payer: Optional[str] = None


@dataclass
class SettleResponse:
    success: bool
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "transaction": self.transaction,
            "network": self.network,
            "payer": self.payer,
        }

    def header_value(self) -> str:
        return encode_header(self.to_dict())


class FacilitatorClient:
    """Talks to an x402 facilitator's ``/verify`` and ``/settle`` endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 15.0,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    async def _post(self, path: str, proof: PaymentProof, requirement: PaymentRequirement) -> Dict[str, Any]:
        body = {
            "x402Version": proof.x402_version,
            "paymentPayload": proof.raw,
            "paymentRequirements": requirement.to_dict(),
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        session = await self._get_session()
        try:
            async with session.post(f"{self.base_url}/{path}", json=body, headers=headers) as resp:
                data = await resp.json(content_type=None)
                if resp.status >= 500 or not isinstance(data, dict):
                    raise PaymentVerificationError(f"facilitator /{path} answered HTTP {resp.status}")
                return data
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise PaymentVerificationError(f"facilitator /{path} unreachable: {exc}") from exc

    async def verify(self, proof: PaymentProof, requirement: PaymentRequirement) -> VerifyResponse:
        data = await self._post("verify", proof, requirement)
        return VerifyResponse(
            is_valid=bool(data.get("isValid")),
            invalid_reason=data.get("invalidReason"),
            payer=data.get("payer"),
        )

    async def settle(self, proof: PaymentProof, requirement: PaymentRequirement) -> SettleResponse:
        data = await self._post("settle", proof, requirement)
        return SettleResponse(
            success=bool(data.get("success")),
            transaction=data.get("transaction"),
            network=data.get("network"),
            payer=data.get("payer"),
            error_reason=data.get("errorReason"),
        )

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()


@dataclass
class Challenge:
    requirements: List[PaymentRequirement]
    error: str = "X-PAYMENT header is required"

    def to_body(self) -> Dict[str, Any]:
        return {
            "x402Version": X402_VERSION,
            "error": self.error,
            "accepts": [req.to_dict() for req in self.requirements],
        }


@dataclass
class GateResult:
    output: Any
    receipt: Optional[SettleResponse] = None
    payer: Optional[str] = None


@dataclass
class GateError:
    code: str
    status: int = 402
    message: Optional[str] = None
    challenge: Optional[Challenge] = None

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": {"code": self.code, "message": self.message or self.code}}
        if self.challenge is not None:
            body["x402Version"] = X402_VERSION
            body["accepts"] = [req.to_dict() for req in self.challenge.requirements]
        return body


GateOutcome = Union[Challenge, GateResult, GateError]


def validate_input(entrypoint: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(parameters, dict):
        raise ValidationError("input must be an object")
    if entrypoint == SUMMARISE:
        try:
            minutes = int(parameters.get("lookbackMinutes", 60))
        except (TypeError, ValueError) as exc:
            raise ValidationError("lookbackMinutes must be a whole number") from exc
        if minutes <= 0:
            raise ValidationError("lookbackMinutes must be positive")
        if not (parameters.get("chatId") or parameters.get("channelId")):
            raise ValidationError("chatId or channelId is required")
        return {**parameters, "lookbackMinutes": minutes}
    if entrypoint == SEARCH_EVENTS:
        topic = str(parameters.get("topic") or "").strip()
        if not topic:
            raise ValidationError("topic is required")
        return {**parameters, "topic": topic}
    return dict(parameters)


def normalize_output(output: Any) -> Dict[str, Any]:
    if isinstance(output, dict):
        return output
    if isinstance(output, list):
        return {"events": output}
    if output is None:
        return {}
    return {"text": str(output)}


class PaymentGate:
    def __init__(self, settings: Settings, facilitator, worker, *, history: Optional[ChatHistory] = None):
        self.settings = settings
        self.facilitator = facilitator
        self.worker = worker
        self.history = history

    def resource_url(self, entrypoint: str) -> str:
        return f"{self.settings.public_base_url}/entrypoints/{quote(entrypoint)}/invoke"

    def requirement_for(self, entrypoint: str) -> PaymentRequirement:
        s = self.settings
        return PaymentRequirement(
            scheme="exact",
            network=s.network,
            max_amount_required=s.price_amount,
            resource=self.resource_url(entrypoint),
            description=ENTRYPOINTS.get(entrypoint, entrypoint),
            pay_to=s.pay_to,
            asset=s.asset,
            max_timeout_seconds=s.max_timeout_seconds,
            extra={"name": s.asset_name, "version": "2"},
        )

    def challenge_for(self, entrypoint: str, error: Optional[str] = None) -> Challenge:
        challenge = Challenge(requirements=[self.requirement_for(entrypoint)])
        if error:
            challenge.error = error
        return challenge

    async def invoke(
        self,
        entrypoint: str,
        parameters: Dict[str, Any],
        proof_header: Optional[str] = None,
    ) -> GateOutcome:
        if entrypoint not in ENTRYPOINTS:
            return GateError("unknown_entrypoint", 404, f"no entrypoint named {entrypoint!r}")
        try:
            parameters = validate_input(entrypoint, parameters)
        except ValidationError as exc:
            return GateError("invalid_input", 400, str(exc))

        if not proof_header:
            return self.challenge_for(entrypoint)

        requirement = self.requirement_for(entrypoint)
        try:
            proof = PaymentProof.decode(proof_header)
        except ValueError as exc:
            log.info("rejecting malformed payment header for %s: %s", entrypoint, exc)
            return GateError(
                "invalid_payment_header",
                402,
                str(exc),
                challenge=self.challenge_for(entrypoint, error="invalid_payment_header"),
            )

        mismatch = self._mismatch(proof, requirement)
        if mismatch:
            log.info("payment for %s does not match requirement: %s", entrypoint, mismatch)
            return GateError("requirements_mismatch", 402, mismatch)

        try:
            verdict = await self.facilitator.verify(proof, requirement)
        except PaymentVerificationError as exc:
            log.warning("payment verification unavailable: %s", exc)
            return GateError("facilitator_unavailable", 502, str(exc))
        if not verdict.is_valid:
            reason = verdict.invalid_reason or "invalid_payment"
            log.info("facilitator rejected payment for %s: %s", entrypoint, reason)
            return GateError(reason, 402, reason)

        try:
            response = await self.worker.invoke(entrypoint, self._worker_input(entrypoint, parameters))
        except WorkerError as exc:
            log.error("worker failed for %s after verified payment: %s", entrypoint, exc)
            return GateError("worker_error", 502, str(exc))
        if not response.success:
            return GateError("worker_client_error", 400, response.error or "worker rejected the request")

        receipt = await self._settle(proof, requirement)
        return GateResult(output=normalize_output(response.output), receipt=receipt, payer=verdict.payer)

    async def _settle(self, proof: PaymentProof, requirement: PaymentRequirement) -> Optional[SettleResponse]:
        try:
            settlement = await self.facilitator.settle(proof, requirement)
        except PaymentVerificationError as exc:
            log.warning("settlement failed, returning result anyway: %s", exc)
            return None
        if not settlement.success:
            log.warning("settlement rejected (%s), returning result anyway", settlement.error_reason)
            return None
        log.info("settled payment tx=%s payer=%s", settlement.transaction, settlement.payer)
        return settlement

    @staticmethod
    def _mismatch(proof: PaymentProof, requirement: PaymentRequirement) -> Optional[str]:
        if proof.x402_version != X402_VERSION:
            return f"unsupported x402Version {proof.x402_version}"
        if proof.scheme != requirement.scheme:
            return f"scheme {proof.scheme!r} != {requirement.scheme!r}"
        if proof.network != requirement.network:
            return f"network {proof.network!r} != {requirement.network!r}"
        authorization = proof.payload.get("authorization")
        if isinstance(authorization, dict):
            pay_to = str(authorization.get("to") or "")
            if pay_to.lower() != requirement.pay_to.lower():
                return "payment recipient does not match payTo"
            try:
                value = int(authorization.get("value"))
            except (TypeError, ValueError):
                return "payment value is not an integer"
            if value < int(requirement.max_amount_required):
                return "payment value below required amount"
        return None

    def _worker_input(self, entrypoint: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        if (
            entrypoint == SUMMARISE
            and self.history is not None
            and parameters.get("source") == "telegram"
            and parameters.get("chatId") is not None
            and "messages" not in parameters
        ):
            messages = self.history.within(str(parameters["chatId"]), parameters["lookbackMinutes"])
            return {**parameters, "messages": [msg.to_dict() for msg in messages]}
        return parameters
