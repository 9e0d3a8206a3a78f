"""Product images: download, store under the catalog image tree, link per shop and language."""

from __future__ import annotations

import hashlib
from pathlib import Path
import shutil
from typing import Any, Dict, List, Optional, Set

import requests
import sqlalchemy as sa

from .audit import Failure, Outcome, WriterReport, attempt
from .db import first_id, insert_row, upsert
from .documents import sanitize_filename, url_basename
from .field_spec import parse_field_spec
from .http_utils import download_to
from .scope import RunContext


ACCEPT = "image/avif,image/webp,image/*,*/*;q=0.8"
IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp", ".gif")

_LEGEND_PATHS = parse_field_spec(["product.name", "title", "name"])


def image_urls(record: Dict[str, Any]) -> List[str]:
    """Image URLs in display order: ``image`` first, then ``images``, then JSON-LD images."""
    if not isinstance(record, dict):
        return []
    candidates: List[Any] = [record.get("image")]
    if isinstance(record.get("images"), list):
        candidates.extend(record["images"])
    json_ld = record.get("json_ld")
    raw = json_ld.get("raw") if isinstance(json_ld, dict) else None
    if isinstance(raw, dict) and isinstance(raw.get("image"), list):
        candidates.extend(raw["image"])

    urls: List[str] = []
    for item in candidates:
        url = item.get("url") if isinstance(item, dict) else item
        url = url.strip() if isinstance(url, str) else ""
        if url and url not in urls:
            urls.append(url)
    return urls


def image_folder(id_image: int) -> Path:
    """Nested folder of an image id, one level per digit (``123`` -> ``1/2/3``)."""
    return Path(*str(int(id_image)))


class ImagePipeline:
    """Downloads product images, dedupes them by content and writes image, image_shop and image_lang rows."""

    def __init__(
        self,
        ctx: RunContext,
        session: requests.Session,
        store,
        *,
        staging_root: str,
        image_dir: Optional[str],
        timeout: float = 20,
        retries: int = 2,
        backoff: float = 0.5,
    ) -> None:
        self.ctx = ctx
        self.session = session
        self.store = store
        self.report = WriterReport("images")
        self.settings = ctx.table_settings("image")
        self.staging_root = str(self.settings.get("staging_root") or "").strip() or staging_root
        self.image_dir = str(self.settings.get("img_root") or "").strip() or image_dir
        timeout_ms = self.settings.get("timeout_ms")
        self.timeout = float(timeout_ms) / 1000 if timeout_ms else timeout
        self.retries = retries
        self.backoff = backoff
        self.cover_strategy = str(self.settings.get("cover_strategy") or "first")

    def run(self) -> WriterReport:
        ctx = self.ctx
        urls = image_urls(ctx.record)
        if not ctx.product_id or not urls or not ctx.has_table("image"):
            return self.report
        if self.settings.get("download") is False:
            ctx.logger.info("image_download_disabled", extra={"event": "image_download_disabled", "count": len(urls)})
            return self.report
        if not self.image_dir:
            self.report.skip(
                Failure(
                    table=ctx.table("image"),
                    op="images",
                    error="image_skip_no_dir",
                    product_id=ctx.product_id,
                    payload={"count": len(urls)},
                )
            )
            return self.report

        ctx.logger.info("image_urls_collected", extra={"event": "image_urls_collected", "count": len(urls)})
        staging = Path(self.staging_root) / "product_images" / str(ctx.product_id)
        seen: Set[str] = set()
        for index, url in enumerate(urls):
            cover = self.cover_strategy == "first" and index == 0
            self.add(url, staging, cover, seen)
        return self.report

    def headers(self) -> Dict[str, str]:
        ctx = self.ctx
        referer = ctx.url or (f"https://{ctx.domain}" if ctx.domain else None)
        headers = {"Accept": ACCEPT}
        if referer:
            headers["Referer"] = referer
        return headers

    def _fail(self, url: str, op: str, error: str, **payload: Any) -> None:
        self.report.add(
            Outcome(
                failure=Failure(
                    table=self.ctx.table("image"),
                    op=op,
                    error=error,
                    product_id=self.ctx.product_id,
                    payload=dict(payload, url=url),
                )
            )
        )

    def add(self, url: str, staging: Path, cover: bool, seen: Set[str]) -> None:
        ctx = self.ctx
        url_hash = hashlib.sha1(url.encode("utf-8")).hexdigest()
        file_name = sanitize_filename(url_basename(url), f"{url_hash}.jpg")
        if not file_name.lower().endswith(IMAGE_SUFFIXES):
            file_name = f"{file_name}.jpg"
        staged = staging / file_name

        try:
            sha1 = download_to(
                self.session,
                url,
                staged,
                logger=ctx.logger,
                timeout=self.timeout,
                retries=self.retries,
                backoff=self.backoff,
                headers=self.headers(),
            )
        except (requests.RequestException, OSError) as exc:
            self._fail(url, "download", str(exc))
            return
        if sha1 in seen:
            ctx.logger.info("image_skip_dupcontent", extra={"event": "image_skip_dupcontent", "url": url})
            return
        seen.add(sha1)

        id_image = self.known_image(sha1, url_hash)
        if id_image:
            ctx.logger.info("image_reuse", extra={"event": "image_reuse", "url": url, "idImage": id_image})
        else:
            id_image = self.insert_image(cover)
            if not id_image:
                return
            self.copy(url, staged, id_image)
            self.store.remember_image(ctx.domain, ctx.product_id, url, url_hash, sha1, id_image)
        self.link(id_image, cover)

    def known_image(self, sha1: str, url_hash: str) -> Optional[int]:
        """Image id from an earlier run, if that image row still belongs to the product."""
        ctx = self.ctx
        id_image = self.store.find_image(ctx.domain, ctx.product_id, sha1, url_hash)
        if not id_image:
            return None
        table = ctx.sa_table("image")
        stmt = sa.select(table.c.id_image).where(table.c.id_image == id_image, table.c.id_product == ctx.product_id)
        return first_id(ctx.connection, stmt)

    def _has_cover(self, stmt: sa.Select) -> bool:
        return first_id(self.ctx.connection, stmt) is not None

    def insert_image(self, cover: bool) -> Optional[int]:
        ctx = self.ctx
        table = ctx.sa_table("image")
        position = ctx.connection.execute(
            sa.select(sa.func.max(table.c.position)).where(table.c.id_product == ctx.product_id)
        ).scalar()
        row: Dict[str, Any] = {"id_product": ctx.product_id, "position": int(position or 0) + 1}
        if cover and ctx.has_column("image", "cover"):
            taken = sa.select(table.c.id_image).where(table.c.id_product == ctx.product_id, table.c.cover == 1)
            if not self._has_cover(taken):
                row["cover"] = 1
        outcome = self.report.add(
            attempt(
                lambda: insert_row(ctx.connection, table, row),
                table=ctx.table("image"),
                op="insert",
                product_id=ctx.product_id,
                payload={"row": row},
            )
        )
        if outcome.ok and outcome.value:
            return int(outcome.value)
        return None

    def copy(self, url: str, staged: Path, id_image: int) -> None:
        target = Path(self.image_dir) / image_folder(id_image) / f"{id_image}.jpg"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(staged, target)
        except OSError as exc:
            self._fail(url, "copy", str(exc), id_image=id_image)
            return
        self.ctx.logger.info(
            "image_copy_done",
            extra={"event": "image_copy_done", "idImage": id_image, "path": str(target)},
        )

    def link(self, id_image: int, cover: bool) -> None:
        ctx = self.ctx

        def write(name: str, row: Dict[str, Any], keys: List[str], **ids: Any) -> None:
            table = ctx.sa_table(name)
            self.report.add(
                attempt(
                    lambda: upsert(ctx.connection, table, row, keys),
                    table=ctx.table(name),
                    op="upsert",
                    product_id=ctx.product_id,
                    payload={"row": row},
                    **ids,
                )
            )

        if ctx.has_table("image_shop"):
            shop_table = ctx.sa_table("image_shop")
            image_table = ctx.sa_table("image")
            for id_shop in ctx.scope.shops:
                row: Dict[str, Any] = {"id_image": id_image, "id_shop": id_shop}
                if ctx.has_column("image_shop", "id_product"):
                    row["id_product"] = ctx.product_id
                if cover and ctx.has_column("image_shop", "cover"):
                    taken = (
                        sa.select(shop_table.c.id_image)
                        .select_from(shop_table.join(image_table, image_table.c.id_image == shop_table.c.id_image))
                        .where(
                            image_table.c.id_product == ctx.product_id,
                            shop_table.c.id_shop == id_shop,
                            shop_table.c.cover == 1,
                        )
                    )
                    if not self._has_cover(taken):
                        row["cover"] = 1
                write("image_shop", row, ["id_image", "id_shop"], id_shop=id_shop)

        if ctx.has_table("image_lang"):
            legend = self.legend()
            for id_lang in ctx.scope.langs:
                row = {"id_image": id_image, "id_lang": id_lang}
                if ctx.has_column("image_lang", "legend"):
                    row["legend"] = legend
                row, notes = ctx.fit_row("image_lang", row, id_lang=id_lang)
                self.report.note(notes)
                write("image_lang", row, ["id_image", "id_lang"], id_lang=id_lang)

    def legend(self) -> str:
        ctx = self.ctx
        spec = ctx.table_fields("image_lang").get("legend")
        value = ctx.resolve(spec) if spec is not None else ctx.resolve(_LEGEND_PATHS)
        return "" if value is None else str(value)
