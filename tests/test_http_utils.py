import hashlib
from types import SimpleNamespace

import pytest
import requests

from catalog_sync import http_utils


class DummyLogger:
    def __init__(self) -> None:
        self.messages = []

    def warning(self, message, extra=None):
        self.messages.append((message, extra))


class DummyResponse:
    def __init__(self, status_code: int, chunks=()) -> None:
        self.status_code = status_code
        self.chunks = list(chunks)
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}")

    def iter_content(self, chunk_size=1):
        return iter(self.chunks)

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(http_utils.time, "sleep", lambda *_: None)


def test_request_with_retry_on_status():
    calls = {"count": 0}

    def request(method, url, timeout, **kwargs):
        calls["count"] += 1
        return DummyResponse(500 if calls["count"] == 1 else 200)

    logger = DummyLogger()
    response = http_utils.request_with_retry(
        SimpleNamespace(request=request),
        "GET",
        "https://example.com",
        logger=logger,
        timeout=1,
        retries=2,
        backoff=0.0,
    )
    assert response.status_code == 200
    assert calls["count"] == 2
    assert logger.messages[0][1]["status"] == 500


def test_request_with_retry_on_exception():
    calls = {"count": 0}

    def request(method, url, timeout, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise requests.RequestException("boom")
        return DummyResponse(200)

    response = http_utils.request_with_retry(
        SimpleNamespace(request=request),
        "GET",
        "https://example.com",
        logger=DummyLogger(),
        timeout=1,
        retries=2,
        backoff=0.0,
    )
    assert response.status_code == 200
    assert calls["count"] == 2


def test_request_with_retry_gives_up():
    def request(method, url, timeout, **kwargs):
        raise requests.ConnectionError("down")

    with pytest.raises(requests.ConnectionError):
        http_utils.request_with_retry(
            SimpleNamespace(request=request),
            "GET",
            "https://example.com",
            logger=DummyLogger(),
            timeout=1,
            retries=1,
            backoff=0.0,
        )


def test_download_to_streams_and_hashes(tmp_path):
    seen = {}

    def request(method, url, timeout, **kwargs):
        seen.update(kwargs)
        return DummyResponse(200, [b"%PDF-1.4 ", b"", b"body"])

    target = tmp_path / "nested" / "doc.pdf"
    digest = http_utils.download_to(
        SimpleNamespace(request=request),
        "https://example.com/doc.pdf",
        target,
        logger=DummyLogger(),
        timeout=1,
        retries=0,
        backoff=0.0,
        headers={"Referer": "https://shop.example"},
    )
    assert target.read_bytes() == b"%PDF-1.4 body"
    assert digest == hashlib.sha1(b"%PDF-1.4 body").hexdigest()
    assert seen["headers"]["Referer"] == "https://shop.example"
    assert seen["stream"] is True


def test_download_to_raises_on_error_status(tmp_path):
    def request(method, url, timeout, **kwargs):
        return DummyResponse(404)

    with pytest.raises(requests.HTTPError):
        http_utils.download_to(
            SimpleNamespace(request=request),
            "https://example.com/missing.pdf",
            tmp_path / "missing.pdf",
            logger=DummyLogger(),
            timeout=1,
            retries=0,
            backoff=0.0,
        )
    assert not (tmp_path / "missing.pdf").exists()
