import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from .errors import WorkerError

log = logging.getLogger(__name__)


@dataclass
class WorkerResponse:
    success: bool
    output: Any = None
    error: Optional[str] = None
    client_error: bool = False
    status: Optional[int] = None


@dataclass
class WorkerResult:
    """Normalized worker output as it arrives back through a payment callback."""

    summary_text: Optional[str] = None
    actionables: List[str] = field(default_factory=list)
    events: Optional[List[Dict[str, Any]]] = None
    formatted_events: Optional[str] = None
    error: Optional[str] = None
    raw_output: Any = None

    @classmethod
    def from_output(cls, output: Any) -> "WorkerResult":
        if isinstance(output, WorkerResult):
            return output
        if output is None:
            return cls(raw_output=None)
        if isinstance(output, str):
            return cls(summary_text=output, raw_output=output)
        if not isinstance(output, dict):
            return cls(summary_text=str(output), raw_output=output)
        # callers sometimes forward the whole gate response body
        if isinstance(output.get("output"), (dict, str)):
            return cls.from_output(output["output"])
        error = output.get("error")
        if isinstance(error, dict):
            error = error.get("message") or error.get("code")
        events = output.get("events")
        summary = output.get("summary")
        if summary is None:
            summary = output.get("text")
        return cls(
            summary_text=str(summary) if summary is not None else None,
            actionables=[str(item) for item in output.get("actionables") or [] if str(item).strip()],
            events=[e for e in events if isinstance(e, dict)] if isinstance(events, list) else None,
            formatted_events=output.get("formattedEvents") or output.get("formatted_events"),
            error=str(error) if error else None,
            raw_output=output,
        )


class WorkerClient:
    """Calls the content-generation service that sits behind the payment gate."""

    def __init__(self, base_url: str, *, timeout: float = 120.0, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    async def invoke(self, entrypoint: str, parameters: Dict[str, Any]) -> WorkerResponse:
        url = f"{self.base_url}/entrypoints/{quote(entrypoint)}/invoke"
        session = await self._get_session()
        try:
            async with session.post(url, json={"input": parameters}) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = {"error": await resp.text()}
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise WorkerError(f"worker unreachable: {exc}") from exc

        if 200 <= status < 300:
            output = body.get("output", body) if isinstance(body, dict) else body
            return WorkerResponse(success=True, output=output, status=status)
        message = _error_message(body) or f"HTTP {status}"
        if 400 <= status < 500:
            log.info("worker rejected %s input: %s", entrypoint, message)
            return WorkerResponse(success=False, error=message, client_error=True, status=status)
        raise WorkerError(f"worker failed with {message}", status=status)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()


def _error_message(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return str(body) if body else None
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("message") or error.get("code")
    if error:
        return str(error)
    return body.get("message")
