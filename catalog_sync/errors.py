"""Run-level errors. Anything raised from here aborts the whole transfer."""

from __future__ import annotations

from typing import Optional


class MappingError(Exception):
    pass


class TransferError(Exception):
    code = "transfer_failed"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code:
            self.code = code


class RunNotFound(TransferError):
    code = "not_found"


class ProfileError(TransferError):
    code = "missing_profile"


class ConnectError(TransferError):
    code = "connect_failed"


class EntityNotFound(TransferError):
    code = "forced_product_not_found"
