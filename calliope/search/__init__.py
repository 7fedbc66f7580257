"""Search backend access: contract, implementations and HTTP retry helper."""
from __future__ import annotations

import logging
import time
from typing import Optional

import requests

from ..errors import SearchRequestError, SearchUnavailableError

log = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 30  # seconds; large aggregations on a cold cluster are slow


def request_with_retry(
    session: requests.Session,
    method: str,
    url: str,
    *,
    json: Optional[dict] = None,
    data: Optional[str] = None,
    headers: Optional[dict] = None,
    timeout: float = _DEFAULT_TIMEOUT,
    retries: int = 2,
    backoff: float = 1.0,
) -> requests.Response:
    """Send one request to the search backend, retrying transient failures.

    Retries on connection errors, timeouts, and 5xx responses.
    A 4xx response means the backend rejected the request itself and is
    raised immediately as :class:`SearchRequestError`.
    """
    last_exc: Optional[Exception] = None
    for attempt in range(1, retries + 2):  # 1 initial + retries
        try:
            resp = session.request(
                method, url, json=json, data=data, headers=headers,
                timeout=timeout,
            )
            if resp.status_code < 400:
                return resp
            if resp.status_code < 500:
                raise SearchRequestError(
                    f"{method} {url} rejected ({resp.status_code}): {resp.text[:300]}",
                    status=resp.status_code,
                )
            last_exc = SearchUnavailableError(
                f"{method} {url} returned {resp.status_code}"
            )
            log.warning("HTTP %d from %s (attempt %d/%d)",
                        resp.status_code, url[:80], attempt, retries + 1)
        except (requests.ConnectionError, requests.Timeout) as exc:
            last_exc = exc
            log.warning("Network error on %s (attempt %d/%d): %s",
                        url[:80], attempt, retries + 1, exc)

        if attempt <= retries:
            time.sleep(backoff * attempt)

    if isinstance(last_exc, SearchUnavailableError):
        raise last_exc
    raise SearchUnavailableError(
        f"{method} {url} failed after {retries + 1} attempts: {last_exc}"
    )
