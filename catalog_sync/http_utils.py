"""HTTP retry helpers with exponential backoff."""

from __future__ import annotations

import hashlib
from pathlib import Path
import time
from typing import Dict, Iterable, Optional

import requests


RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}
DEFAULT_USER_AGENT = "catalog-sync/0.1 (+asset download)"
CHUNK_SIZE = 64 * 1024


def request_with_retry(
    session: requests.Session,
    method: str,
    url: str,
    *,
    logger,
    timeout: float,
    retries: int,
    backoff: float,
    retryable_status: Optional[Iterable[int]] = None,
    **kwargs,
) -> requests.Response:
    """Issue one request, retrying transport errors and retryable statuses with backoff.

    The last response is returned as-is once retries run out; the last transport error is re-raised.
    """
    retryable = set(retryable_status or RETRYABLE_STATUS)
    retries = max(retries, 0)
    for attempt in range(retries + 1):
        last = attempt == retries
        try:
            response = session.request(method, url, timeout=timeout, **kwargs)
        except requests.RequestException as exc:
            if last:
                raise
            _log_retry(logger, url, attempt, detail=str(exc))
        else:
            if last or response.status_code not in retryable:
                return response
            _log_retry(logger, url, attempt, status=response.status_code)
            response.close()
        _sleep(backoff, attempt)


def _log_retry(logger, url: str, attempt: int, **details) -> None:
    logger.warning(
        "download_retry",
        extra={"event": "download_retry", "attempt": attempt + 1, "url": url, **details},
    )


def download_to(
    session: requests.Session,
    url: str,
    target: Path,
    *,
    logger,
    timeout: float,
    retries: int,
    backoff: float,
    headers: Optional[Dict[str, str]] = None,
) -> str:
    """Stream ``url`` into ``target`` and return the SHA-1 of the bytes written.

    Raises ``requests.HTTPError`` for a non-2xx final response.
    """
    merged = {"User-Agent": DEFAULT_USER_AGENT}
    merged.update(headers or {})
    response = request_with_retry(
        session,
        "GET",
        url,
        logger=logger,
        timeout=timeout,
        retries=retries,
        backoff=backoff,
        headers=merged,
        stream=True,
        allow_redirects=True,
    )
    digest = hashlib.sha1()
    try:
        response.raise_for_status()
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as handle:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                digest.update(chunk)
                handle.write(chunk)
    finally:
        response.close()
    return digest.hexdigest()


def _sleep(backoff: float, attempt: int) -> None:
    delay = backoff * (2**attempt)
    time.sleep(delay)
