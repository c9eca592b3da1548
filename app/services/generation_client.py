"""Outbound client for the AI video generation provider."""

from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.core.config import get_settings
from app.core.exceptions import ProviderError
from app.core.logging import get_logger

log = get_logger(__name__)

USER_AGENT = "AnimateCredits/1.0"

PENDING_STATUSES = {"pending", "queued", "waiting", "created", "submitted"}
PROCESSING_STATUSES = {"processing", "running", "in_progress", "started", "generating"}
SUCCESS_STATUSES = {"completed", "complete", "success", "succeeded", "done"}
FAIL_STATUSES = {"failed", "fail", "error", "canceled", "cancelled"}


def normalize_status(raw: Any) -> str | None:
    """Map a provider status onto pending/processing/completed/failed; None if unrecognized."""
    value = str(raw or "").strip().lower()
    if value in PENDING_STATUSES:
        return "pending"
    if value in PROCESSING_STATUSES:
        return "processing"
    if value in SUCCESS_STATUSES:
        return "completed"
    if value in FAIL_STATUSES:
        return "failed"
    return None


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


@dataclass
class GenerationResult:
    id: str
    status: str | None
    raw_status: str = ""
    video_url: str | None = None
    thumbnail_url: str | None = None
    error: str | None = None


class RetryableResponseError(Exception):
    """429 or 5xx from the provider; retried by the client."""

    def __init__(self, response: httpx.Response, retry_after: float | None = None) -> None:
        super().__init__(f"HTTP {response.status_code}: {response.text[:200]}")
        self.status_code = response.status_code
        self.retry_after = retry_after


class wait_retry_after:
    """Honor the provider's Retry-After when it sent one, else fall back to exponential backoff."""

    def __init__(self, fallback, max_delay: float) -> None:
        self.fallback = fallback
        self.max_delay = max_delay

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RetryableResponseError) and exc.retry_after is not None:
            return min(exc.retry_after, self.max_delay)
        return self.fallback(retry_state)


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if isinstance(body, dict):
        message = _first(body, "message", "error")
        if message:
            return str(message)
    return f"API request failed: {response.status_code} {response.reason_phrase}"


class GenerationClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        retry_max_delay: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.generation_api_url).rstrip("/")
        self.api_key = settings.generation_api_key if api_key is None else api_key
        self.max_retries = settings.generation_max_retries if max_retries is None else max_retries
        self.retry_base_delay = settings.generation_retry_base_delay if retry_base_delay is None else retry_base_delay
        self.retry_max_delay = settings.generation_retry_max_delay if retry_max_delay is None else retry_max_delay
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.generation_timeout_seconds if timeout is None else timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self._client.request(method, path, headers=self._headers(), **kwargs)
        if response.status_code == 429:
            raise RetryableResponseError(response, parse_retry_after(response.headers.get("Retry-After")))
        if response.status_code >= 500:
            raise RetryableResponseError(response)
        return response

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "generation_request_retry",
            attempt=retry_state.attempt_number,
            wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(exc),
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        attempts = self.max_retries + 1
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_retry_after(
                wait_exponential(multiplier=self.retry_base_delay, max=self.retry_max_delay),
                self.retry_max_delay,
            ),
            retry=retry_if_exception_type((RetryableResponseError, httpx.TransportError)),
            before_sleep=self._log_retry,
        )
        response = None
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._send(method, path, **kwargs)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            log.error("generation_request_exhausted", method=method, path=path, attempts=attempts, error=str(last))
            raise ProviderError(
                f"Generation provider unavailable after {attempts} attempts: {last}",
                status_code=getattr(last, "status_code", None),
            ) from last

        if response.status_code >= 400:
            raise ProviderError(_error_message(response), status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError("Invalid provider response: body is not JSON") from exc
        if not isinstance(data, dict):
            raise ProviderError("Invalid provider response: expected a JSON object")
        return data

    @staticmethod
    def _parse(data: dict[str, Any], generation_id: str, default_status: str) -> GenerationResult:
        raw_status = str(_first(data, "status", "state") or default_status)
        return GenerationResult(
            id=generation_id,
            status=normalize_status(raw_status),
            raw_status=raw_status,
            video_url=_first(data, "videoUrl", "video_url"),
            thumbnail_url=_first(data, "thumbnailUrl", "thumbnail_url"),
            error=_first(data, "error", "errorMessage"),
        )

    async def generate_video(self, image_url: str, prompt: str, mood: str) -> GenerationResult:
        """Submit a job. A response without a correlation id is not an acceptance."""
        data = await self._request(
            "POST",
            "/generate",
            json={"imageUrl": image_url, "prompt": prompt, "mood": mood},
        )
        generation_id = _first(data, "id", "generationId")
        if not generation_id:
            raise ProviderError("Invalid provider response: missing generation id")
        result = self._parse(data, str(generation_id), default_status="pending")
        log.info("generation_submitted", generation_id=result.id, status=result.raw_status)
        return result

    async def get_generation_status(self, generation_id: str) -> GenerationResult:
        data = await self._request("GET", f"/generation/{generation_id}")
        return self._parse(data, str(_first(data, "id") or generation_id), default_status="")
