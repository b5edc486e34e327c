"""HTTP transport for the streaming Messages API.

ModelClient owns one httpx.AsyncClient configured with auth headers,
timeouts and connection limits. Opening a stream is retried on transport
failures and retryable statuses (408, 409, 429, 5xx) with capped
exponential backoff; once retries are exhausted the failure surfaces as a
ProtocolError. Bytes are handed to the caller unparsed; decoding is the
StreamDecoder's job.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from quill.abort import AbortSignal, iterate_until_aborted
from quill.config import Settings
from quill.errors import NetworkError, ProtocolError

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
_MESSAGES_PATH = "/v1/messages"

RETRYABLE_STATUS_CODES = frozenset({408, 409, 429})


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class ModelClient:
    """Streaming client for the model backend."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        # Auth token (Bearer) takes precedence over api key (x-api-key)
        if settings.anthropic_auth_token:
            headers["authorization"] = f"Bearer {settings.anthropic_auth_token}"
        elif settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
            transport=self._transport,
        )
        logger.info(
            "httpx client initialized (auth: %s)",
            "Bearer token" if settings.anthropic_auth_token else "API key",
        )

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> ModelClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def build_payload(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Build a streaming Messages API request payload.

        `tool_choice` is only sent alongside tools.
        """
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "messages": messages,
            "stream": True,
        }
        if system_prompt:
            payload["system"] = [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if tools:
            payload["tools"] = tools
            if tool_choice:
                payload["tool_choice"] = tool_choice
        return payload

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before retry number `attempt` (1-based), capped at network_backoff_max."""
        cap = self._settings.network_backoff_max
        if retry_after is not None:
            return min(retry_after, cap)
        return min(self._settings.network_backoff_base * (2 ** (attempt - 1)), cap)

    async def stream_bytes(
        self,
        payload: dict[str, Any],
        signal: AbortSignal | None = None,
    ) -> AsyncIterator[bytes]:
        """POST the payload and yield raw response bytes.

        Raises ProtocolError for non-retryable statuses, for a stream that
        breaks after it started, and once network retries are exhausted.
        """
        if self._http is None:
            raise RuntimeError("httpx client not initialized -- call start() first")

        max_attempts = self._settings.network_max_attempts
        last_error: NetworkError | None = None

        for attempt in range(1, max_attempts + 1):
            if signal is not None and signal.aborted:
                return
            try:
                async with self._http.stream("POST", _MESSAGES_PATH, json=payload) as response:
                    if response.status_code != 200:
                        await self._raise_for_status(response)
                    async for chunk in self._iter_body(response, signal):
                        yield chunk
                    return
            except NetworkError as e:
                last_error = e
            except httpx.TimeoutException as e:
                last_error = NetworkError(f"API request timed out: {e}")
            except httpx.TransportError as e:
                last_error = NetworkError(f"Connection error: {e}")

            if attempt >= max_attempts:
                break
            delay = self.backoff_delay(attempt, last_error.retry_after)
            logger.warning(
                "Network error (attempt %d/%d), retrying in %.1fs: %s",
                attempt,
                max_attempts,
                delay,
                last_error,
            )
            await self._sleep(delay, signal)

        raise ProtocolError(
            f"Model request failed after {max_attempts} attempts: {last_error}",
            error_type="network_error",
        ) from last_error

    async def _iter_body(
        self,
        response: httpx.Response,
        signal: AbortSignal | None,
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in iterate_until_aborted(response.aiter_bytes(), signal):
                yield chunk
        except httpx.HTTPError as e:
            raise ProtocolError(f"Stream interrupted: {e}", error_type="stream_interrupted") from e

    async def _raise_for_status(self, response: httpx.Response) -> None:
        body = await response.aread()
        try:
            error = json.loads(body).get("error", {})
            error_type = error.get("type", "unknown")
            error_msg = error.get("message", "unknown error")
        except (ValueError, AttributeError):
            error_type = "http_error"
            error_msg = body.decode(errors="replace")[:500]

        message = f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}"
        if is_retryable_status(response.status_code):
            raise NetworkError(
                message,
                status_code=response.status_code,
                retry_after=_parse_retry_after(response.headers.get("retry-after")),
            )
        raise ProtocolError(message, error_type=error_type)

    @staticmethod
    async def _sleep(delay: float, signal: AbortSignal | None) -> None:
        if signal is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(signal.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
