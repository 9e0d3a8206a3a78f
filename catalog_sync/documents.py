"""Document downloads attached to the product as catalog attachments."""

from __future__ import annotations

import hashlib
from pathlib import Path
import re
import shutil
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

import requests
import sqlalchemy as sa

from .audit import Failure, Outcome, WriterReport, attempt
from .db import first_id, insert_ignore, insert_row
from .http_utils import download_to
from .scope import RunContext


PDF_SIGNATURE = b"%PDF"
SNIFF_BYTES = 8192
ACCEPT = "application/pdf, */*;q=0.8"
ACCEPT_LANGUAGE = "fr,fr-FR;q=0.9,en;q=0.8"
MAX_FILENAME = 180

_ABSOLUTE_PDF = re.compile(r"https?:[^'\"<>\s]+?\.pdf", re.IGNORECASE)
_REFRESH_PDF = re.compile(r"url=([^'\"<>\s]+?\.pdf)", re.IGNORECASE)
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")

_MIME_BY_SUFFIX = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/msword",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.ms-excel",
    ".zip": "application/zip",
}


def sanitize_filename(name: str, fallback: str, max_len: int = MAX_FILENAME) -> str:
    cleaned = (name or "").strip().replace("\\", "/").split("/")[-1]
    cleaned = _UNSAFE.sub("-", cleaned)
    cleaned = re.sub(r"-+", "-", cleaned).strip("-.")
    if not cleaned:
        return fallback
    return cleaned[:max_len]


def guess_mime(file_name: str) -> str:
    return _MIME_BY_SUFFIX.get(Path(file_name.lower()).suffix, "application/octet-stream")


def document_urls(record: Dict[str, Any]) -> List[str]:
    raw = record.get("documents") if isinstance(record, dict) else None
    urls: List[str] = []
    for item in raw if isinstance(raw, list) else []:
        url = item.get("url") if isinstance(item, dict) else item
        url = str(url or "").strip()
        if url and url not in urls:
            urls.append(url)
    return urls


def fallback_pdf_url(head: bytes) -> Optional[str]:
    """A PDF link found in an HTML page served instead of the document."""
    text = head.decode("utf-8", errors="replace")
    match = _ABSOLUTE_PDF.search(text)
    if match:
        return match.group(0)
    match = _REFRESH_PDF.search(text)
    return match.group(1) if match else None


def url_basename(url: str) -> str:
    return unquote(urlparse(url).path.split("/")[-1])


def _head(path: Path, size: int = SNIFF_BYTES) -> bytes:
    with path.open("rb") as handle:
        return handle.read(size)


class DocumentPipeline:
    """Downloads each document URL once, stores it by content hash and links it to the product."""

    def __init__(
        self,
        ctx: RunContext,
        session: requests.Session,
        *,
        staging_root: str,
        download_dir: Optional[str],
        timeout: float = 20,
        retries: int = 2,
        backoff: float = 0.5,
    ) -> None:
        self.ctx = ctx
        self.session = session
        self.report = WriterReport("documents")
        self.settings = ctx.table_settings("document") or ctx.table_settings("attachment")
        self.staging_root = str(self.settings.get("staging_root") or "").strip() or staging_root
        self.download_dir = str(self.settings.get("download_dir") or "").strip() or download_dir
        timeout_ms = self.settings.get("timeout_ms")
        self.timeout = float(timeout_ms) / 1000 if timeout_ms else timeout
        self.retries = retries
        self.backoff = backoff

    def run(self) -> WriterReport:
        ctx = self.ctx
        urls = document_urls(ctx.record)
        if not ctx.product_id or not urls or not ctx.has_table("attachment"):
            return self.report
        if not self.download_dir:
            self.report.skip(
                Failure(
                    table=ctx.table("attachment"),
                    op="documents",
                    error="docs_skip_no_dir",
                    product_id=ctx.product_id,
                    payload={"count": len(urls)},
                )
            )
            return self.report

        staging = Path(self.staging_root) / "product_attachments" / str(ctx.product_id)
        for url in urls:
            self.attach(url, staging)
        return self.report

    def headers(self) -> Dict[str, str]:
        ctx = self.ctx
        referer = ctx.url or (f"https://{ctx.domain}" if ctx.domain else None)
        headers = {"Accept": ACCEPT, "Accept-Language": ACCEPT_LANGUAGE}
        if referer:
            headers["Referer"] = referer
        extra = self.settings.get("headers")
        if isinstance(extra, dict):
            headers.update({str(key): str(value) for key, value in extra.items()})
        return headers

    def _download(self, url: str, target: Path) -> str:
        return download_to(
            self.session,
            url,
            target,
            logger=self.ctx.logger,
            timeout=self.timeout,
            retries=self.retries,
            backoff=self.backoff,
            headers=self.headers(),
        )

    def _fail(self, url: str, error: str, **payload: Any) -> None:
        self.report.add(
            Outcome(
                failure=Failure(
                    table=self.ctx.table("attachment"),
                    op="download",
                    error=error,
                    product_id=self.ctx.product_id,
                    payload=dict(payload, url=url),
                )
            )
        )

    def fetch(self, url: str, staging: Path) -> Optional[Path]:
        """Staged copy of ``url`` that passed the signature check, or None."""
        ctx = self.ctx
        url_hash = hashlib.sha1(url.encode("utf-8")).hexdigest()
        file_name = sanitize_filename(url_basename(url), f"doc-{url_hash}.pdf")
        if not file_name.lower().endswith(".pdf"):
            file_name = f"{file_name}.pdf"
        staged = staging / file_name

        try:
            sha1 = self._download(url, staged)
        except (requests.RequestException, OSError) as exc:
            self._fail(url, str(exc))
            return None
        ctx.logger.info("docs_download_ok", extra={"event": "docs_download_ok", "url": url, "sha1": sha1})

        head = _head(staged)
        if head.startswith(PDF_SIGNATURE) or not url_basename(url).lower().endswith(".pdf"):
            return staged

        found = fallback_pdf_url(head)
        if found:
            ctx.logger.info("docs_fallback_pdf_url", extra={"event": "docs_fallback_pdf_url", "from": url, "to": found})
            retry = staging / f"fallback-{url_hash}.pdf"
            try:
                self._download(found, retry)
                if _head(retry, len(PDF_SIGNATURE)) == PDF_SIGNATURE:
                    shutil.copyfile(retry, staged)
            except (requests.RequestException, OSError) as exc:
                ctx.logger.warning(
                    "docs_fallback_failed",
                    extra={"event": "docs_fallback_failed", "url": found, "detail": str(exc)},
                )

        head = _head(staged, len(PDF_SIGNATURE))
        if head != PDF_SIGNATURE:
            self._fail(url, "not_pdf_signature", first_bytes=head.decode("latin-1"))
            return None
        return staged

    def attach(self, url: str, staging: Path) -> None:
        ctx = self.ctx
        staged = self.fetch(url, staging)
        if staged is None:
            return

        data_hash = hashlib.sha1()
        with staged.open("rb") as handle:
            for chunk in iter(lambda: handle.read(64 * 1024), b""):
                data_hash.update(chunk)
        token = data_hash.hexdigest()
        try:
            target = Path(self.download_dir) / token
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(staged, target)
        except OSError as exc:
            self._fail(url, str(exc), stage="copy")
            return

        file_name = sanitize_filename(url_basename(url) or "document.pdf", f"doc-{token}.pdf")
        attachment_id = self.ensure_attachment(token, file_name, staged.stat().st_size)
        if not attachment_id:
            return
        self.link(attachment_id, file_name)
        ctx.logger.info(
            "docs_attached",
            extra={"event": "docs_attached", "url": url, "idAttachment": attachment_id, "file": token},
        )

    def ensure_attachment(self, token: str, file_name: str, size: int) -> Optional[int]:
        ctx = self.ctx
        table = ctx.sa_table("attachment")
        lookup = sa.select(table.c.id_attachment).where(table.c.file == token)
        found = first_id(ctx.connection, lookup)
        if found:
            return found

        row: Dict[str, Any] = {"file": token}
        for column, value in (
            ("file_name", file_name),
            ("file_size", size),
            ("mime", guess_mime(file_name)),
            ("date_add", ctx.now),
            ("date_upd", ctx.now),
            ("checksum", token),
        ):
            if ctx.has_column("attachment", column):
                row[column] = value
        row, notes = ctx.fit_row("attachment", row)
        self.report.note(notes)
        outcome = self.report.add(
            attempt(
                lambda: insert_row(ctx.connection, table, row),
                table=ctx.table("attachment"),
                op="insert",
                product_id=ctx.product_id,
                payload={"row": row},
            )
        )
        if outcome.ok and outcome.value:
            return int(outcome.value)
        return first_id(ctx.connection, lookup)

    def link(self, attachment_id: int, file_name: str) -> None:
        ctx = self.ctx

        def ignore(name: str, row: Dict[str, Any], **ids: Any) -> None:
            table = ctx.sa_table(name)
            self.report.add(
                attempt(
                    lambda: insert_ignore(ctx.connection, table, row),
                    table=ctx.table(name),
                    op="insert",
                    product_id=ctx.product_id,
                    payload={"row": row},
                    **ids,
                )
            )

        if ctx.has_table("attachment_lang"):
            for id_lang in ctx.scope.langs:
                row, notes = ctx.fit_row(
                    "attachment_lang",
                    {"id_attachment": attachment_id, "id_lang": id_lang, "name": file_name, "description": ""},
                    id_lang=id_lang,
                )
                self.report.note(notes)
                ignore("attachment_lang", row, id_lang=id_lang)
        if ctx.has_table("attachment_shop"):
            for id_shop in ctx.scope.shops:
                ignore("attachment_shop", {"id_attachment": attachment_id, "id_shop": id_shop}, id_shop=id_shop)
        if ctx.has_table("product_attachment"):
            ignore("product_attachment", {"id_product": ctx.product_id, "id_attachment": attachment_id})
