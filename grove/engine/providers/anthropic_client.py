"""Streaming HTTP client for the Anthropic Messages API.

Uses aiohttp like the rest of grove's HTTP code. ``stream`` yields
``(event_name, payload)`` pairs decoded from the server-sent-event body;
HTTP failures raise AnthropicAPIError subclasses before any event is
yielded.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

import aiohttp

from grove.engine.errors import AnthropicAPIError, OverloadedError, RateLimitedError

logger = logging.getLogger(__name__)

API_VERSION = "2023-06-01"
PROMPT_CACHING_BETA = "prompt-caching-2024-07-31"


@dataclass
class AnthropicClientConfig:
    api_key: str
    base_url: str = "https://api.anthropic.com"
    connect_timeout: float = 15.0
    read_timeout: float = 600.0
    max_retries: int = 2
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0


class SSEDecoder:
    """Accumulates ``event:``/``data:`` lines into complete events.

    A blank line ends an event. Multiple data lines are joined with
    newlines. Comment lines (``:``) are ignored.
    """

    def __init__(self) -> None:
        self._event: str | None = None
        self._data: list[str] = []

    def feed_line(self, line: str) -> tuple[str, str] | None:
        line = line.rstrip("\r\n")
        if not line:
            if not self._data and self._event is None:
                return None
            event = (self._event or "message", "\n".join(self._data))
            self._event = None
            self._data = []
            return event
        if line.startswith(":"):
            return None
        field_name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field_name == "event":
            self._event = value
        elif field_name == "data":
            self._data.append(value)
        return None


def _retry_after(headers: Any) -> float | None:
    raw = headers.get("retry-after") if headers else None
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class AnthropicClient:
    """Thin Messages API client. One instance is shared by all sessions."""

    def __init__(self, config: AnthropicClientConfig):
        self.config = config
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is not None and not self._session.closed:
            return
        timeout = aiohttp.ClientTimeout(
            sock_connect=self.config.connect_timeout,
            total=self.config.read_timeout,
        )
        self._session = aiohttp.ClientSession(
            headers={
                "x-api-key": self.config.api_key,
                "anthropic-version": API_VERSION,
                "anthropic-beta": PROMPT_CACHING_BETA,
                "content-type": "application/json",
            },
            timeout=timeout,
        )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    @staticmethod
    async def _raise_for_status(response: aiohttp.ClientResponse) -> None:
        if response.status == 200:
            return
        body = await response.text()
        message = body[:500]
        try:
            parsed = json.loads(body)
            message = parsed.get("error", {}).get("message") or message
        except (json.JSONDecodeError, AttributeError):
            pass
        if response.status == 429:
            raise RateLimitedError(_retry_after(response.headers), message)
        if response.status == 529:
            raise OverloadedError(message)
        raise AnthropicAPIError(response.status, message)

    async def stream(self, body: dict[str, Any]) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        """POST /v1/messages with ``stream: true`` and yield decoded events.

        Rate-limit and overload responses are retried before streaming
        starts. Once events flow, failures propagate to the caller.
        """
        await self.connect()
        if self._session is None:
            raise RuntimeError("AnthropicClient session failed to open")
        url = f"{self.config.base_url.rstrip('/')}/v1/messages"
        payload = {**body, "stream": True}

        for attempt in range(self.config.max_retries + 1):
            async with self._session.post(url, json=payload) as response:
                try:
                    await self._raise_for_status(response)
                except (RateLimitedError, OverloadedError) as exc:
                    if attempt >= self.config.max_retries:
                        raise
                    delay = min(
                        self.config.retry_base_delay * (2 ** attempt),
                        self.config.retry_max_delay,
                    )
                    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
                        delay = min(exc.retry_after, self.config.retry_max_delay)
                    logger.warning(
                        "Messages API returned %s, retrying in %.1fs", exc.status, delay,
                    )
                    await asyncio.sleep(delay)
                    continue

                decoder = SSEDecoder()
                async for raw in response.content:
                    decoded = decoder.feed_line(raw.decode("utf-8", errors="replace"))
                    if decoded is None:
                        continue
                    name, data = decoded
                    try:
                        parsed = json.loads(data) if data else {}
                    except json.JSONDecodeError:
                        logger.debug("Dropping malformed SSE data: %.200s", data)
                        continue
                    yield name, parsed
                # Servers may close without a trailing blank line.
                tail = decoder.feed_line("")
                if tail is not None:
                    try:
                        yield tail[0], json.loads(tail[1]) if tail[1] else {}
                    except json.JSONDecodeError:
                        logger.debug("Dropping malformed trailing SSE data")
                return
