from __future__ import annotations

from enum import Enum


class ProspectorError(Exception):
    """Base class for errors the service maps to API responses."""

    status_code: int = 500


class SearchNotFoundError(ProspectorError):
    status_code = 404

    def __init__(self, search_id: str):
        super().__init__(f"Search {search_id} not found")
        self.search_id = search_id


class SearchOwnershipError(ProspectorError):
    status_code = 403


class InvalidSearchError(ProspectorError):
    status_code = 422


class SearchStateError(ProspectorError):
    status_code = 409


class JobPayloadError(ProspectorError):
    status_code = 422


class StoreError(ProspectorError):
    status_code = 503


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    TERMINAL = "terminal"


class TerminalStageError(ProspectorError):
    """Raised by stages for failures a retry cannot fix (missing input, bad config)."""


class StageError(ProspectorError):
    def __init__(self, stage: str, kind: ErrorKind, cause: BaseException):
        super().__init__(f"{stage} failed ({kind.value}): {cause}")
        self.stage = stage
        self.kind = kind
        self.cause = cause

    @property
    def is_transient(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT
