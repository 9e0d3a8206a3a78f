"""Row-level outcomes and the audit sink that records them."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from .errors import ConnectError
from .logging_setup import summarize_payload


@dataclass(frozen=True)
class Failure:
    table: str
    op: str
    error: str
    product_id: Optional[int] = None
    id_shop: Optional[int] = None
    id_lang: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Outcome:
    value: Any = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass
class WriterReport:
    """What one writer did: rows written, rows skipped and every audit entry it produced."""

    name: str
    failures: List[Failure] = field(default_factory=list)
    written: int = 0
    skipped: int = 0
    ids: Dict[str, int] = field(default_factory=dict)

    def add(self, outcome: Outcome) -> Outcome:
        if outcome.failure is not None:
            self.failures.append(outcome.failure)
        else:
            self.written += 1
        return outcome

    def skip(self, failure: Failure) -> None:
        self.skipped += 1
        self.failures.append(failure)

    def note(self, entries: Iterable[Failure]) -> None:
        self.failures.extend(entries)

    def summary(self) -> Dict[str, Any]:
        return {
            "written": self.written,
            "skipped": self.skipped,
            "failures": len(self.failures),
        }


def error_text(exc: BaseException) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig if orig is not None else exc)


def attempt(
    action: Callable[[], Any],
    *,
    table: str,
    op: str,
    product_id: Optional[int] = None,
    id_shop: Optional[int] = None,
    id_lang: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> Outcome:
    """Run one write statement and turn a row-level error into a Failure.

    A dropped connection is not a row problem; it aborts the run.
    """
    try:
        return Outcome(value=action())
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise ConnectError(f"Target connection lost: {error_text(exc)}") from exc
        error = error_text(exc)
    except (SQLAlchemyError, ValueError, TypeError) as exc:
        error = error_text(exc)
    return Outcome(
        failure=Failure(
            table=table,
            op=op,
            error=error,
            product_id=product_id,
            id_shop=id_shop,
            id_lang=id_lang,
            payload=dict(payload or {}),
        )
    )


class AuditSink:
    """Appends audit entries to the error log table and mirrors them to the JSON log."""

    def __init__(self, store, logger, run_id: Optional[int], domain: str, page_type: str) -> None:
        self.store = store
        self.logger = logger
        self.run_id = run_id
        self.domain = domain
        self.page_type = page_type
        self.count = 0

    def collect(self, report: WriterReport) -> None:
        self.logger.info(
            "writer_done",
            extra={"event": "writer_done", "writer": report.name, **report.summary()},
        )
        self._persist(report.failures)

    def record(self, failure: Failure) -> None:
        self._persist([failure])

    def event(self, table: str, op: str, error: str = "", payload: Optional[Dict[str, Any]] = None,
              product_id: Optional[int] = None) -> None:
        self._persist([Failure(table=table, op=op, error=error, product_id=product_id, payload=dict(payload or {}))])

    def _persist(self, failures: List[Failure]) -> None:
        if not failures:
            return
        rows = []
        for failure in failures:
            self.count += 1
            self.logger.warning(
                "transfer_audit",
                extra={
                    "event": "transfer_audit",
                    "table": failure.table,
                    "op": failure.op,
                    "detail": failure.error,
                    "productId": failure.product_id,
                    "idShop": failure.id_shop,
                    "idLang": failure.id_lang,
                    "payload": summarize_payload(failure.payload),
                },
            )
            rows.append(
                {
                    "run_id": self.run_id,
                    "domain": self.domain,
                    "page_type": self.page_type,
                    "table_name": failure.table,
                    "op": failure.op,
                    "product_id": failure.product_id,
                    "id_shop": failure.id_shop,
                    "id_lang": failure.id_lang,
                    "error": failure.error,
                    "payload": failure.payload,
                }
            )
        if self.store is None:
            return
        try:
            self.store.append_error_logs(rows)
        except SQLAlchemyError as exc:
            self.logger.error(
                "audit_write_failed",
                extra={"event": "audit_write_failed", "detail": str(exc), "entries": len(rows)},
            )
