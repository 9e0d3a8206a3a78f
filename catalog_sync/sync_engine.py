"""Synchronization engine: one extraction run -> target catalog."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import requests
import sqlalchemy as sa
from sqlalchemy.engine import Engine

from .audit import AuditSink, WriterReport
from .config import Config
from .core_entity import CoreEntityUpserter, resolve_core_values
from .db import ConnectionProfile, create_target_engine, open_connection
from .documents import DocumentPipeline
from .errors import MappingError, RunNotFound, TransferError
from .fanout import write_lang_rows, write_shop_rows, write_stock_rows
from .features import FeatureWriter
from .generic_writer import CATEGORY_TABLES, GenericTableWriter
from .images import ImagePipeline
from .mapping_loader import MappingSpec, load_mapping, read_mapping_document
from .mapping_store import MappingStore, RunRecord, StoredMapping, normalize_domain
from .schema import SchemaCache
from .scope import RunContext, first_resolved, resolve_prefix, resolve_scope
from .variants import VariantWriter


PRODUCT_PAGE = "product"
CATEGORY_PAGES = ("category", "article")
MODES = ("upsert", "insert")

EngineFactory = Callable[..., Engine]


@dataclass(frozen=True)
class TransferOptions:
    target_database_url: Optional[str] = None
    table_prefix: str = "ps_"
    connect_timeout: int = 10
    mapping_file: Optional[str] = None
    staging_root: str = "staging"
    download_dir: Optional[str] = None
    image_dir: Optional[str] = None
    http_timeout: float = 20
    retry_count: int = 2
    retry_backoff: float = 0.5

    @classmethod
    def from_config(cls, config: Config) -> "TransferOptions":
        return cls(
            target_database_url=config.target_database_url,
            table_prefix=config.table_prefix,
            connect_timeout=config.connect_timeout,
            mapping_file=config.mapping_file,
            staging_root=config.staging_root,
            download_dir=config.download_dir,
            image_dir=config.image_dir,
            http_timeout=config.http_timeout,
            retry_count=config.retry_count,
            retry_backoff=config.retry_backoff,
        )


def _has_config(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, StoredMapping):
        return bool(value.config)
    if isinstance(value, dict):
        return bool(value)
    return True


class SyncEngine:
    def __init__(
        self,
        store: MappingStore,
        logger,
        options: Optional[TransferOptions] = None,
        engine_factory: EngineFactory = create_target_engine,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.store = store
        self.logger = logger
        self.options = options or TransferOptions()
        self.engine_factory = engine_factory
        self.session = session or requests.Session()
        self._engines: Dict[str, Engine] = {}

    def close(self) -> None:
        for engine in self._engines.values():
            engine.dispose()
        self._engines.clear()

    # Run-level resolution

    def resolve_mapping(
        self,
        domain: str,
        page_type: str,
        explicit: Union[MappingSpec, Dict[str, Any], None] = None,
        pinned_version: Optional[int] = None,
    ) -> Tuple[MappingSpec, Optional[int], Optional[str]]:
        """Mapping for this run and the stored version it came from.

        The latest stored version is read once here; edits published later do not reach this run.
        """
        source, found = first_resolved(
            [
                ("explicit", lambda: explicit),
                (
                    "pinned",
                    lambda: self.store.mapping_version(domain, page_type, pinned_version) if pinned_version else None,
                ),
                ("latest", lambda: self.store.latest_mapping(domain, page_type)),
                (
                    "legacy_file",
                    lambda: read_mapping_document(self.options.mapping_file) if self.options.mapping_file else None,
                ),
            ],
            accept=_has_config,
        )
        if pinned_version and source != "pinned" and source != "explicit":
            self.logger.warning(
                "mapping_version_missing",
                extra={"event": "mapping_version_missing", "domain": domain, "version": pinned_version},
            )
        if isinstance(found, MappingSpec):
            return found, found.version, source
        if isinstance(found, StoredMapping):
            return load_mapping(found.config, version=found.version), found.version, source
        if isinstance(found, dict):
            return load_mapping(found), None, source
        return MappingSpec(), None, None

    def resolve_profile(self, domain: str, profile_id: Optional[int]) -> ConnectionProfile:
        if self.options.target_database_url and not profile_id:
            return ConnectionProfile(id=None, name="environment", url=self.options.target_database_url)
        return self.store.resolve_profile(domain, profile_id)

    def _engine_for(self, profile: ConnectionProfile) -> Engine:
        key = sa.engine.make_url(profile.url).render_as_string(hide_password=False)
        if key not in self._engines:
            self._engines[key] = self.engine_factory(
                profile.url,
                connect_timeout=self.options.connect_timeout,
                ssl=profile.ssl,
            )
        return self._engines[key]

    # Transfer

    def transfer(
        self,
        run_id: int,
        *,
        profile_id: Optional[int] = None,
        mapping: Union[MappingSpec, Dict[str, Any], None] = None,
        mapping_version: Optional[int] = None,
        page_type: Optional[str] = None,
        mode: str = "upsert",
        product_id: Optional[int] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        if mode not in MODES:
            raise TransferError(f"Unknown transfer mode: {mode}", code="bad_request")
        run = self.store.get_run(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")
        domain = normalize_domain(run.domain)
        kind = (page_type or run.page_type or PRODUCT_PAGE).strip().lower()
        audit = AuditSink(self.store, self.logger, run.id, domain, kind)

        try:
            return self._transfer(
                run,
                domain,
                kind,
                audit,
                profile_id=profile_id,
                mapping=mapping,
                mapping_version=mapping_version,
                mode=mode,
                product_id=product_id,
                dry_run=dry_run,
            )
        except (TransferError, MappingError) as exc:
            code = getattr(exc, "code", "mapping_invalid")
            self.logger.error(
                "transfer_failed",
                extra={"event": "transfer_failed", "runId": run.id, "code": code, "detail": str(exc)},
            )
            audit.event("transfer", "error", error=code, payload={"message": str(exc)})
            self.store.update_run(run.id, ok=False, error=f"{code}: {exc}")
            raise

    def _transfer(
        self,
        run: RunRecord,
        domain: str,
        kind: str,
        audit: AuditSink,
        *,
        profile_id: Optional[int],
        mapping: Union[MappingSpec, Dict[str, Any], None],
        mapping_version: Optional[int],
        mode: str,
        product_id: Optional[int],
        dry_run: bool,
    ) -> Dict[str, Any]:
        spec, version, source = self.resolve_mapping(domain, kind, mapping, mapping_version)
        settings = self.store.load_table_settings(domain, kind)
        domain_config = self.store.domain_config(domain)
        profile = self.resolve_profile(domain, profile_id)
        engine = self._engine_for(profile)

        with open_connection(engine) as connection:
            schema = SchemaCache(connection)
            prefix = resolve_prefix(spec, domain_config.prefix if domain_config else None, self.options.table_prefix)
            scope = resolve_scope(connection, schema, spec, settings, prefix)
            ctx = RunContext(
                run_id=run.id,
                domain=domain,
                page_type=kind,
                url=run.url,
                record=run.result,
                mapping=spec,
                settings=settings,
                scope=scope,
                schema=schema,
                connection=connection,
                logger=self.logger,
            )

            if dry_run:
                return self._preview(ctx, profile, version, source)

            audit.event(
                "transfer",
                "start",
                payload={"mode": mode, "prefix": prefix, "shops": scope.shops, "langs": scope.langs},
            )
            self.logger.info(
                "transfer_started",
                extra={
                    "event": "transfer_started",
                    "runId": run.id,
                    "domain": domain,
                    "pageType": kind,
                    "mappingVersion": version,
                    "mappingSource": source,
                    "scopeSources": scope.sources,
                },
            )

            reports: List[WriterReport] = []
            if kind == PRODUCT_PAGE:
                ok = self._product_steps(ctx, audit, reports, mode, product_id)
            else:
                allow = CATEGORY_TABLES if kind in CATEGORY_PAGES else None
                reports.append(GenericTableWriter(ctx, allow=allow).run())
                audit.collect(reports[-1])
                audit.event("transfer", "done_generic", payload={"generated": dict(ctx.generated_ids)})
                ok = True

        summary = {
            "ok": ok,
            "mode": mode,
            "run_id": run.id,
            "page_type": kind,
            "product_id": ctx.product_id,
            "created": "product" in ctx.generated_ids,
            "steps": [report.name for report in reports],
            "writers": {report.name: report.summary() for report in reports},
            "generated_ids": dict(ctx.generated_ids),
            "shops": list(scope.shops),
            "langs": list(scope.langs),
            "prefix": scope.prefix,
            "mapping_version": version,
            "mapping_source": source,
        }
        audit.event("transfer", "done", payload={"ok": ok, "product_id": ctx.product_id}, product_id=ctx.product_id)
        summary["audit_entries"] = audit.count
        self.store.update_run(
            run.id,
            ok=ok,
            error=None,
            product_id=ctx.product_id,
            mapping_version=version,
            mapping=spec.raw,
            transfer=summary,
        )
        self.logger.info(
            "transfer_finished",
            extra={"event": "transfer_finished", "runId": run.id, "ok": ok, "productId": ctx.product_id},
        )
        return summary

    def _product_steps(
        self,
        ctx: RunContext,
        audit: AuditSink,
        reports: List[WriterReport],
        mode: str,
        product_id: Optional[int],
    ) -> bool:
        def collect(report: WriterReport) -> WriterReport:
            reports.append(report)
            audit.collect(report)
            return report

        values = resolve_core_values(ctx)
        collect(CoreEntityUpserter(ctx).upsert(values, mode=mode, forced_id=product_id))
        if not ctx.product_id:
            self.logger.error(
                "core_write_failed",
                extra={"event": "core_write_failed", "runId": ctx.run_id, "detail": "no product id after core step"},
            )
            return False

        send = ctx.mapping.send
        unified = ctx.mapping.flags.unified_dynamic
        if not unified:
            collect(write_shop_rows(ctx, values))
            collect(write_lang_rows(ctx, values))
            collect(write_stock_rows(ctx, values))
        self.store.update_run(ctx.run_id, product_id=ctx.product_id)

        if send.enabled("images"):
            collect(
                ImagePipeline(
                    ctx,
                    self.session,
                    self.store,
                    staging_root=self.options.staging_root,
                    image_dir=self.options.image_dir,
                    timeout=self.options.http_timeout,
                    retries=self.options.retry_count,
                    backoff=self.options.retry_backoff,
                ).run()
            )
        if send.enabled("documents"):
            collect(
                DocumentPipeline(
                    ctx,
                    self.session,
                    staging_root=self.options.staging_root,
                    download_dir=self.options.download_dir,
                    timeout=self.options.http_timeout,
                    retries=self.options.retry_count,
                    backoff=self.options.retry_backoff,
                ).run()
            )
        if send.enabled("attributes"):
            collect(VariantWriter(ctx).run())
        if send.enabled("features"):
            collect(FeatureWriter(ctx).run())
        if send.enabled("generic") or unified:
            collect(GenericTableWriter(ctx, include_satellites=unified).run())
        return True

    def _preview(
        self,
        ctx: RunContext,
        profile: ConnectionProfile,
        version: Optional[int],
        source: Optional[str],
    ) -> Dict[str, Any]:
        preview: Dict[str, Any] = {}
        if ctx.page_type == PRODUCT_PAGE:
            values = resolve_core_values(ctx)
            preview = values.as_dict()
            preview["sources"] = dict(values.sources)
        self.logger.info(
            "dry_run_preview",
            extra={"event": "dry_run_preview", "runId": ctx.run_id, "preview": preview},
        )
        return {
            "ok": True,
            "mode": "dry_run",
            "run": {"id": ctx.run_id, "url": ctx.url, "page_type": ctx.page_type},
            "profile": {"id": profile.id, "name": profile.name},
            "checks": {"connected": True, "has_product_table": ctx.has_table("product")},
            "scope": {
                "prefix": ctx.scope.prefix,
                "shops": list(ctx.scope.shops),
                "langs": list(ctx.scope.langs),
                "groups": list(ctx.scope.groups),
                "id_shop_default": ctx.scope.id_shop_default,
            },
            "mapping_version": version,
            "mapping_source": source,
            "preview": preview,
        }
