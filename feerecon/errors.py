"""Error taxonomy for statement reconciliation.

Row-level errors (:class:`MalformedInputError`, :class:`ReferenceNotFoundError`)
are recovered where they occur and surface only in the batch audit.
Batch-level errors (:class:`SchemaAmbiguousError`, :class:`BatchAbortedError`)
stop the batch and reach the operator.
"""

from __future__ import annotations

from typing import Any


class ReconError(Exception):
    """Base class for all reconciliation errors."""


class ConfigError(ReconError, ValueError):
    """Raised for invalid configuration values."""


class MalformedInputError(ReconError, ValueError):
    """A file or row could not be parsed.

    Raised for a whole file only when nothing usable can be read from it;
    individual bad rows are recorded with their line number and skipped.
    """

    def __init__(self, reason: str, line_number: int | None = None):
        self.reason = reason
        self.line_number = line_number
        where = f"line {line_number}: " if line_number is not None else ""
        super().__init__(f"{where}{reason}")


class SchemaAmbiguousError(ReconError):
    """No column could be confidently assigned to a required role.

    ``missing_roles`` names the roles that failed; ``candidates`` maps each
    column header to its best (role, confidence) guess so the caller can
    offer a manual column mapping.
    """

    def __init__(
        self,
        missing_roles: tuple[str, ...],
        candidates: dict[str, tuple[str, float]] | None = None,
    ):
        self.missing_roles = tuple(missing_roles)
        self.candidates = dict(candidates or {})
        roles = ", ".join(self.missing_roles)
        super().__init__(
            f"Could not confidently assign column role(s): {roles}. "
            "Provide a manual column mapping for these roles."
        )


class ReferenceNotFoundError(ReconError, LookupError):
    """No payer reference could be extracted from a row."""


class StoreUnavailableError(ReconError):
    """The invoice/transaction store could not be reached."""


class BatchAbortedError(ReconError):
    """A batch stopped before completion; ``batch`` holds the partial audit."""

    def __init__(self, message: str, batch: Any = None):
        self.batch = batch
        super().__init__(message)
