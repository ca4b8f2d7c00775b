"""Async HTTP client for a tellr server.

``events()`` keeps an SSE connection alive across drops. A connection that
stays silent for longer than the server heartbeat is treated as stale and
reopened. Missed events are never replayed: after every (re)connect the
client fetches the full election state and yields it as a ``sync`` event.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx
import structlog

from .errors import Conflict, Forbidden, NotFound, TellrError, Unauthorized, ValidationFailed

log = structlog.get_logger(__name__)

_ERRORS_BY_KIND = {
    cls.kind: cls for cls in (Unauthorized, Forbidden, NotFound, Conflict, ValidationFailed)
}


@dataclass
class StreamEvent:
    event: str
    data: Any
    event_id: Optional[str] = None


def parse_sse_lines(lines: list[str]) -> list[StreamEvent]:
    """Parse complete SSE frames; comments (keepalives) are dropped."""
    events: list[StreamEvent] = []
    name: str | None = None
    event_id: str | None = None
    data_lines: list[str] = []
    for raw in lines:
        line = raw.rstrip("\r")
        if line == "":
            if data_lines:
                payload = "\n".join(data_lines)
                try:
                    data = json.loads(payload)
                except json.JSONDecodeError:
                    data = payload
                events.append(StreamEvent(event=name or "message", data=data, event_id=event_id))
            name, event_id, data_lines = None, None, []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            name = value
        elif field == "data":
            data_lines.append(value)
        elif field == "id":
            event_id = value
    return events


class TellrClient:
    """One participant's view of one election."""

    def __init__(
        self,
        base_url: str,
        code: str = "",
        token: str = "",
        *,
        heartbeat_sec: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.code = code
        self.token = token
        self.heartbeat_sec = heartbeat_sec
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=10.0)
        self._closed = False

    # ---------------------------------------------------------------
    # Plumbing
    # ---------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _path(self, suffix: str = "") -> str:
        return f"/api/elections/{self.code}{suffix}"

    async def _request(self, method: str, path: str, body: dict | None = None) -> dict:
        resp = await self._client.request(method, path, json=body, headers=self._headers())
        if resp.status_code >= 400:
            raise self._error_from(resp)
        return resp.json()

    @staticmethod
    def _error_from(resp: httpx.Response) -> TellrError:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        cls = _ERRORS_BY_KIND.get(body.get("error"), TellrError)
        return cls(body.get("message") or f"HTTP {resp.status_code}")

    # ---------------------------------------------------------------
    # Commands
    # ---------------------------------------------------------------

    async def create_election(self, name: str, teller_name: str, body_size: int | None = None) -> dict:
        data = await self._request(
            "POST", "/api/elections",
            {"name": name, "tellerName": teller_name, "bodySize": body_size},
        )
        self.code, self.token = data["code"], data["token"]
        return data

    async def join(self, code: str, name: str) -> dict:
        data = await self._request("POST", "/api/elections/join", {"code": code, "name": name})
        self.code, self.token = data["code"], data["token"]
        return data

    async def rejoin(self) -> dict:
        return await self._request("POST", self._path("/rejoin"))

    async def get_state(self) -> dict:
        return await self._request("GET", self._path("/state"))

    async def update_name(self, name: str) -> None:
        await self._request("POST", self._path("/name"), {"name": name})

    async def promote_to_teller(self, participant_id: str) -> None:
        await self._request("POST", self._path("/tellers"), {"participantId": participant_id})

    async def step_down_as_teller(self) -> None:
        await self._request("POST", self._path("/tellers/step-down"))

    async def set_body_size(self, body_size: int | None) -> None:
        await self._request("PUT", self._path("/body-size"), {"bodySize": body_size})

    async def start_round(self, office: str, description: str | None = None) -> dict:
        return await self._request(
            "POST", self._path("/rounds"), {"office": office, "description": description}
        )

    async def cast_vote(self, round_id: str, candidate_id: str | None) -> None:
        await self._request(
            "POST", self._path(f"/rounds/{round_id}/votes"), {"candidateId": candidate_id}
        )

    async def close_voting(self, round_id: str) -> dict:
        return await self._request("POST", self._path(f"/rounds/{round_id}/close"))

    async def end_round(self, round_id: str, disclosure_level: str) -> None:
        await self._request(
            "POST", self._path(f"/rounds/{round_id}/end"), {"disclosureLevel": disclosure_level}
        )

    async def cancel_round(self, round_id: str) -> None:
        await self._request("POST", self._path(f"/rounds/{round_id}/cancel"))

    # ---------------------------------------------------------------
    # Event stream
    # ---------------------------------------------------------------

    async def events(self, max_failures: int = 5) -> AsyncIterator[StreamEvent]:
        """Yield a ``sync`` snapshot, then live events, reconnecting as needed.

        Auth failures are raised immediately; the caller should discard the
        token and join again.
        """
        backoff = 1.0
        failures = 0
        timeout = httpx.Timeout(10.0, read=self.heartbeat_sec * 2)

        while not self._closed:
            try:
                async with self._client.stream(
                    "GET", f"/events/{self.code}", headers=self._headers(), timeout=timeout
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise self._error_from(resp)

                    log.info("event_stream_connected", code=self.code)
                    backoff, failures = 1.0, 0
                    yield StreamEvent(event="sync", data=await self.get_state())

                    buffer: list[str] = []
                    async for line in resp.aiter_lines():
                        buffer.append(line)
                        if line == "":
                            for event in parse_sse_lines(buffer):
                                yield event
                            buffer = []
            except (Unauthorized, NotFound):
                raise
            except (httpx.TransportError, TellrError) as exc:
                failures += 1
                log.warning("event_stream_dropped", code=self.code, attempt=failures, error=str(exc))
                if failures >= max_failures:
                    raise

            if self._closed:
                break
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, 30.0)

    async def close(self) -> None:
        self._closed = True
        await self._client.aclose()
