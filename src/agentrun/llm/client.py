"""OpenAI-compatible httpx client with tenacity retry.

Provides a sync HTTP client for chat-completion APIs: Retry-After-aware
backoff with injectable jitter, a one-shot parameter recovery that drops an
unsupported ``temperature``, a stable idempotency key per logical call, and
server-sent-event streaming.
"""

from __future__ import annotations

import json
import logging
import random
import secrets
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any, Callable

import httpx
import tenacity
from tenacity.wait import wait_base

from agentrun import audit
from agentrun.engine.sampling import supports_temperature
from agentrun.llm.errors import (
    LLMAuthError,
    LLMConfigError,
    LLMRateLimitError,
    LLMResponseError,
    LLMTimeoutError,
    StreamingUnsupportedError,
)

if TYPE_CHECKING:
    from agentrun.protocols import DeltaCallback

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_AUTH_ERROR_STATUS_CODES = {401, 403}
_MAX_BACKOFF = 2.0
_DEFAULT_BACKOFF = 0.2
_MAX_JITTER_FRACTION = 0.9
_ERROR_BODY_LIMIT = 2000


def _is_retryable(exc: BaseException) -> bool:
    """Check if an exception is retryable.

    Retryable: 429, 500, 502, 503, 504, connection errors, timeouts.
    Not retryable: 401, 403, 400, other client errors.
    """
    if isinstance(exc, LLMAuthError):
        return False
    if isinstance(exc, LLMRateLimitError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _RETRYABLE_STATUS_CODES
    return isinstance(exc, (httpx.ConnectError, httpx.TimeoutException))


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value or not value.strip():
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return seconds if seconds > 0 else None
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    now = now or datetime.now(timezone.utc)
    delta = (when - now).total_seconds()
    return delta if delta > 0 else None


def backoff_delay(
    base: float,
    attempt: int,
    jitter_fraction: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff for a zero-based retry ``attempt``.

    ``base * 2**attempt`` capped at 2s (base defaults to 0.2s). With a
    jitter fraction ``f`` the delay is scaled by a factor drawn uniformly
    from ``[1-f, 1+f]`` using ``rng``; ``f`` is capped at 0.9 and the
    result never drops below 1ms.
    """
    if base <= 0:
        base = _DEFAULT_BACKOFF
    delay = min(base * (2 ** attempt), _MAX_BACKOFF)
    if jitter_fraction <= 0:
        return delay
    jitter_fraction = min(jitter_fraction, _MAX_JITTER_FRACTION)
    rng = rng or random.Random()
    factor = (1.0 - jitter_fraction) + rng.random() * (2 * jitter_fraction)
    return max(0.001, delay * factor)


class WaitRetryAfter(wait_base):
    """Tenacity wait strategy: honour Retry-After, else jittered backoff."""

    def __init__(self, base: float, jitter_fraction: float, rng: random.Random | None) -> None:
        self.base = base
        self.jitter_fraction = jitter_fraction
        self.rng = rng

    def __call__(self, retry_state: tenacity.RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, LLMRateLimitError) and exc.retry_after is not None:
            return exc.retry_after
        if isinstance(exc, httpx.HTTPStatusError):
            retry_after = parse_retry_after(exc.response.headers.get("Retry-After"))
            if retry_after is not None:
                return retry_after
        return backoff_delay(
            self.base, retry_state.attempt_number - 1, self.jitter_fraction, self.rng
        )


def generate_idempotency_key() -> str:
    return "agentrun-" + secrets.token_hex(16)


def _mentions_temperature(body: str) -> bool:
    return "temperature" in body.lower()


class OpenAIClient:
    """Sync httpx client for OpenAI-compatible chat completions.

    Implements the ChatClient protocol. Retries transient errors (429,
    5xx, connect errors, timeouts) and fails immediately on authentication
    errors (401, 403).

    Usage::

        with OpenAIClient(base_url="http://localhost:8080/v1") as client:
            response = client.chat({"model": "m", "messages": [...]})
            text = OpenAIClient.extract_content(response)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        timeout: float = 90.0,
        retries: int = 2,
        backoff: float = 0.5,
        jitter_fraction: float = 0.0,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
        stage: str | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: API base URL (``/chat/completions`` is appended).
            api_key: Bearer token; omitted from requests when empty.
            timeout: Per-request timeout in seconds.
            retries: Retries after the first attempt (negative means 0).
            backoff: Base backoff in seconds.
            jitter_fraction: Relative jitter applied to backoff delays.
            rng: Random source for jitter.
            sleep: Sleep function used between attempts.
            stage: Label carried on audit events (e.g. "main", "prep").

        Raises:
            LLMConfigError: If no base URL is given.
        """
        if not base_url or not base_url.strip():
            raise LLMConfigError("No base URL provided. Pass --base-url or set OAI_BASE_URL.")
        self._base_url = base_url.strip().rstrip("/")
        self._timeout = timeout
        self._retries = max(0, retries)
        self._backoff = backoff
        self._jitter_fraction = jitter_fraction
        self._rng = rng
        self._sleep = sleep
        self._stage = stage
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(timeout=timeout, headers=headers)

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/chat/completions"

    @property
    def timeout(self) -> float:
        return self._timeout

    def chat(self, payload: dict) -> dict:
        """Send a chat completion request with retry.

        Uses tenacity.Retrying programmatically (not as decorator) so that
        the retry count is configurable per-instance. All attempts share
        one Idempotency-Key.

        Args:
            payload: Request body in OpenAI format.

        Returns:
            Full response dict with 'choices', 'usage', 'model', etc.

        Raises:
            LLMAuthError: On 401/403 (no retry).
            LLMRateLimitError: On 429 after all retries exhausted.
            LLMTimeoutError: When every attempt timed out.
            LLMResponseError: On other non-success statuses or a response
                without 'choices'.
        """
        payload = dict(payload)
        if "temperature" in payload and not supports_temperature(payload.get("model", "")):
            del payload["temperature"]
        idempotency_key = generate_idempotency_key()
        recovery = {"granted": False}
        audit.emit(
            "chat_meta",
            stage=self._stage,
            model=payload.get("model"),
            temperature_in_payload="temperature" in payload,
            temperature_effective=payload.get("temperature"),
        )
        retryer = tenacity.Retrying(
            retry=tenacity.retry_if_exception(_is_retryable),
            wait=WaitRetryAfter(self._backoff, self._jitter_fraction, self._rng),
            stop=tenacity.stop_after_attempt(self._retries + 1),
            before_sleep=self._before_sleep(idempotency_key),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return retryer(self._do_chat, payload, idempotency_key, recovery)
        except httpx.TimeoutException as exc:
            raise LLMTimeoutError(
                f"chat POST failed: {str(exc) or 'timeout'} "
                f"(base={self._base_url}, http-timeout={self._timeout:g}s)"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise self._status_error(exc.response) from exc
        except httpx.TransportError as exc:
            raise LLMResponseError(
                f"chat POST failed: {exc} (base={self._base_url}, http-timeout={self._timeout:g}s)"
            ) from exc

    def _before_sleep(self, idempotency_key: str) -> Callable[[tenacity.RetryCallState], None]:
        log_it = tenacity.before_sleep_log(logger, logging.WARNING)

        def before_sleep(retry_state: tenacity.RetryCallState) -> None:
            log_it(retry_state)
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            status = None
            if isinstance(exc, httpx.HTTPStatusError):
                status = exc.response.status_code
            elif isinstance(exc, LLMRateLimitError):
                status = 429
            audit.emit(
                "http_attempt",
                stage=self._stage,
                idempotency_key=idempotency_key,
                attempt=retry_state.attempt_number,
                max=self._retries + 1,
                status=status or 0,
                backoffMs=int((retry_state.next_action.sleep if retry_state.next_action else 0) * 1000),
                endpoint=self.endpoint,
                error=str(exc)[:500] if exc else None,
            )

        return before_sleep

    def _do_chat(self, payload: dict, idempotency_key: str, recovery: dict) -> dict:
        """Execute a single chat completion attempt (no retry).

        A 400 that complains about temperature is resent once without it;
        that resend happens inside this attempt and does not count against
        the retry budget.
        """
        while True:
            start = time.monotonic()
            response = self._client.post(
                self.endpoint,
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
            )
            audit.emit(
                "http_timing",
                stage=self._stage,
                idempotency_key=idempotency_key,
                endpoint=self.endpoint,
                status=response.status_code,
                totalMs=int((time.monotonic() - start) * 1000),
            )
            if (
                response.status_code == 400
                and not recovery["granted"]
                and "temperature" in payload
                and _mentions_temperature(response.text)
            ):
                logger.warning("Server rejected temperature; resending without it")
                recovery["granted"] = True
                payload = {k: v for k, v in payload.items() if k != "temperature"}
                audit.emit(
                    "http_attempt",
                    stage=self._stage,
                    idempotency_key=idempotency_key,
                    status=400,
                    endpoint=self.endpoint,
                    error="param_recovery: temperature",
                )
                continue
            break

        if response.status_code in _AUTH_ERROR_STATUS_CODES:
            raise LLMAuthError(
                f"Authentication failed: HTTP {response.status_code} - "
                f"{response.text[:_ERROR_BODY_LIMIT]}"
            )

        if response.status_code == 429:
            raise LLMRateLimitError(
                f"Rate limited: HTTP 429 - {response.text[:_ERROR_BODY_LIMIT]}",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )

        if response.status_code >= 500:
            response.raise_for_status()
        if not 200 <= response.status_code < 300:
            raise self._status_error(response)

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMResponseError(
                f"decode response: {exc}; body: {response.text[:1000]}"
            ) from exc
        if not isinstance(data, dict) or "choices" not in data:
            raise LLMResponseError(
                f"Unexpected response format: missing 'choices' key. Response: {data}"
            )
        return data

    def _status_error(self, response: httpx.Response) -> LLMResponseError:
        return LLMResponseError(
            f"chat API {self.endpoint}: {response.status_code}: "
            f"{response.text[:_ERROR_BODY_LIMIT]}",
            status_code=response.status_code,
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def stream_chat(self, payload: dict, on_delta: DeltaCallback) -> dict:
        """Stream a chat completion over server-sent events.

        Each content delta is passed to ``on_delta(channel, text)`` as it
        arrives. Streaming requests are not retried.

        Returns:
            A response dict in non-streaming shape (one choice carrying the
            assembled message and its finish_reason).

        Raises:
            StreamingUnsupportedError: If the response is not
                ``text/event-stream``.
            LLMAuthError: On 401/403.
            LLMResponseError: On other non-success statuses or a
                connection failure.
            LLMTimeoutError: If the request deadline expires.
        """
        payload = dict(payload)
        payload["stream"] = True
        if "temperature" in payload and not supports_temperature(payload.get("model", "")):
            del payload["temperature"]
        assembler = _StreamAssembler(on_delta)
        try:
            with self._client.stream(
                "POST",
                self.endpoint,
                json=payload,
                headers={"Idempotency-Key": generate_idempotency_key()},
            ) as response:
                if response.status_code in _AUTH_ERROR_STATUS_CODES:
                    response.read()
                    raise LLMAuthError(
                        f"Authentication failed: HTTP {response.status_code} - {response.text}"
                    )
                if not 200 <= response.status_code < 300:
                    response.read()
                    raise self._status_error(response)
                content_type = response.headers.get("Content-Type", "").strip().lower()
                if "text/event-stream" not in content_type:
                    response.read()
                    raise StreamingUnsupportedError(content_type)
                for line in response.iter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed stream chunk: %s", data[:200])
                        continue
                    assembler.feed(chunk)
        except httpx.TimeoutException as exc:
            raise LLMTimeoutError(
                f"chat stream failed: {str(exc) or 'timeout'} (http-timeout={self._timeout:g}s)"
            ) from exc
        except httpx.TransportError as exc:
            raise LLMResponseError(
                f"chat stream failed: {exc} (base={self._base_url}, http-timeout={self._timeout:g}s)"
            ) from exc
        return assembler.response()

    def close(self) -> None:
        """Close the underlying httpx client."""
        self._client.close()

    def __enter__(self) -> OpenAIClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Response helpers
    # ------------------------------------------------------------------

    @staticmethod
    def extract_content(response: dict) -> str:
        """Extract the assistant's message content from a response dict.

        Raises:
            LLMResponseError: If the response format is unexpected.
        """
        try:
            return response["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise LLMResponseError(
                f"Cannot extract content from response: {exc}. "
                f"Response: {response}"
            ) from exc


class _StreamAssembler:
    """Accumulates SSE chunks into one assistant message."""

    def __init__(self, on_delta: DeltaCallback) -> None:
        self._on_delta = on_delta
        self._content: list[str] = []
        self._channel = ""
        self._tool_calls: dict[int, dict[str, Any]] = {}
        self._finish_reason: str | None = None

    def feed(self, chunk: dict) -> None:
        choices = chunk.get("choices") or []
        if not choices:
            return
        choice = choices[0]
        delta = choice.get("delta") or {}
        if delta.get("channel"):
            self._channel = str(delta["channel"]).strip().lower()
        text = delta.get("content")
        if text:
            self._content.append(text)
            self._on_delta(self._channel, text)
        for tc in delta.get("tool_calls") or []:
            slot = self._tool_calls.setdefault(
                tc.get("index", len(self._tool_calls)),
                {"id": "", "type": "function", "function": {"name": "", "arguments": ""}},
            )
            if tc.get("id"):
                slot["id"] = tc["id"]
            fn = tc.get("function") or {}
            if fn.get("name"):
                slot["function"]["name"] += fn["name"]
            if fn.get("arguments"):
                slot["function"]["arguments"] += fn["arguments"]
        if choice.get("finish_reason"):
            self._finish_reason = choice["finish_reason"]

    def response(self) -> dict:
        message: dict[str, Any] = {"role": "assistant", "content": "".join(self._content)}
        if self._channel:
            message["channel"] = self._channel
        if self._tool_calls:
            message["tool_calls"] = [self._tool_calls[i] for i in sorted(self._tool_calls)]
        return {
            "choices": [{"index": 0, "message": message, "finish_reason": self._finish_reason}]
        }
