"""HTTP helpers shared by REST provider collaborators.

Upstream 429 responses are retried after the delay named by the
``Retry-After`` header, a bounded number of times.
"""

from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
)

from shared.logging import get_logger
from shared.models import utcnow

logger = get_logger(__name__)

MAX_ATTEMPTS = 3
DEFAULT_RETRY_AFTER = 1.0
MAX_RETRY_AFTER = 60.0


class UpstreamError(Exception):
    """A third-party API answered with an error status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"Upstream API {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class RateLimited(UpstreamError):
    """A third-party API answered 429."""

    def __init__(self, retry_after: float) -> None:
        super().__init__(429, f"rate limited, retry after {retry_after:g}s")
        self.retry_after = retry_after


def parse_retry_after(value: Optional[str], default: float = DEFAULT_RETRY_AFTER) -> float:
    """
    Parse a Retry-After header value.

    Accepts delta-seconds or an HTTP date; the result is clamped to
    ``[0, MAX_RETRY_AFTER]``.
    """
    if not value:
        return default

    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            seconds = (parsedate_to_datetime(value) - utcnow()).total_seconds()
        except (TypeError, ValueError):
            return default

    return min(max(seconds, 0.0), MAX_RETRY_AFTER)


def _wait_retry_after(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, RateLimited):
        return exc.retry_after
    return DEFAULT_RETRY_AFTER


def _log_rate_limit(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Upstream rate limited, waiting",
        attempt=retry_state.attempt_number,
        retry_after=getattr(exc, "retry_after", None),
    )


retry_on_rate_limit = retry(
    retry=retry_if_exception_type(RateLimited),
    wait=_wait_retry_after,
    stop=stop_after_attempt(MAX_ATTEMPTS),
    before_sleep=_log_rate_limit,
    reraise=True,
)


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            description = data.get("error_description")
            return f"{error} - {description}" if description else error
    return response.reason_phrase


@retry_on_rate_limit
async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    **kwargs: Any,
) -> Any:
    """
    Perform a request and decode its JSON body.

    Returns None for empty or non-JSON success responses.

    Raises:
        RateLimited: After the last attempt still answered 429
        UpstreamError: For any other error status
    """
    response = await client.request(method, url, **kwargs)

    if response.status_code == 429:
        raise RateLimited(parse_retry_after(response.headers.get("Retry-After")))

    if response.is_error:
        raise UpstreamError(response.status_code, _error_message(response))

    if response.status_code == 204 or not response.content:
        return None

    if "application/json" not in response.headers.get("Content-Type", ""):
        return None

    return response.json()
