from __future__ import annotations


class PsetFlowError(RuntimeError):
    """Base error for the psetflow SDK."""


class PsetFlowConfigurationError(PsetFlowError):
    """Raised when the SDK is misconfigured (e.g., missing API key)."""


class DocumentValidationError(PsetFlowError):
    """Raised when the submitted source document is missing or malformed."""


class StageError(PsetFlowError):
    """Raised when a pipeline stage cannot produce its output."""


class LedgerError(PsetFlowError):
    """Base error for job ledger operations."""


class JobNotFoundError(LedgerError, KeyError):
    """Raised when a job or solver job id is unknown to the ledger."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Job not found"


class InvalidTransitionError(LedgerError):
    """Raised when a status or stage change violates the job lifecycle."""
