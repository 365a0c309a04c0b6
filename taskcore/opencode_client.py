"""Thin async client for the OpenCode local server: sessions, prompts, aborts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class OpencodeAPIError(RuntimeError):
    """Raised when the OpenCode server is unreachable or answers with an error."""


@dataclass(frozen=True)
class TurnReply:
    session_id: str
    message_id: str
    text: str


def assistant_text(message: Any) -> str:
    """Join the text parts of one ``{info, parts}`` message."""
    if not isinstance(message, dict) or not isinstance(message.get("parts"), list):
        return ""
    chunks = [
        p["text"]
        for p in message["parts"]
        if isinstance(p, dict) and p.get("type") == "text" and isinstance(p.get("text"), str)
    ]
    return "".join(chunks).strip()


class OpencodeClient:
    """One HTTP connection pool scoped to a project directory."""

    def __init__(
        self,
        *,
        base_url: str,
        directory: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._directory = directory
        # Agent turns can take minutes; callers bound them if they need to.
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
        params = {"directory": self._directory} if self._directory else None
        try:
            resp = await self._client.request(method, path, params=params, json=body)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise OpencodeAPIError(
                f"OpenCode API error {e.response.status_code} ({method} {path}): {e.response.text[:200]}"
            ) from e
        except httpx.RequestError as e:
            raise OpencodeAPIError(f"OpenCode request failed ({method} {path}): {e}") from e
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise OpencodeAPIError(f"Invalid JSON from OpenCode ({method} {path}): {resp.text[:200]}") from e

    async def create_session(self, *, title: str) -> str:
        payload = await self._call("POST", "/session", {"title": title})
        session_id = payload.get("id") if isinstance(payload, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise OpencodeAPIError(f"Unexpected create_session response: {payload}")
        return session_id

    async def abort_session(self, session_id: str) -> None:
        await self._call("POST", f"/session/{session_id}/abort")

    async def prompt(self, *, session_id: str, agent: str, text: str, system: str | None = None) -> TurnReply:
        """Send one user turn and wait for the assistant's reply."""
        body: dict[str, Any] = {"agent": agent, "parts": [{"type": "text", "text": text}]}
        if system:
            body["system"] = system
        payload = await self._call("POST", f"/session/{session_id}/message", body)

        info = payload.get("info") if isinstance(payload, dict) else None
        message_id = info.get("id") if isinstance(info, dict) else None
        if not isinstance(message_id, str) or not message_id:
            raise OpencodeAPIError(f"Unexpected prompt response: {payload}")

        reply = assistant_text(payload)
        if not reply:
            logger.warning("OpenCode returned no text for session %s", session_id)
        return TurnReply(session_id=session_id, message_id=message_id, text=reply)

    async def latest_assistant_text(self, *, session_id: str) -> str:
        """Text of the newest assistant message; some servers stream it in after the reply."""
        payload = await self._call("GET", f"/session/{session_id}/message")
        if isinstance(payload, dict):
            payload = payload.get("data")
        if not isinstance(payload, list):
            return ""
        for message in reversed(payload):
            info = message.get("info") if isinstance(message, dict) else None
            if isinstance(info, dict) and info.get("role") == "assistant":
                return assistant_text(message)
        return ""
