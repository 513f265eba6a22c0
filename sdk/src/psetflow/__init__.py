"""psetflow Python SDK."""

from .client import PsetFlow, SolveResult, load_document
from .config import SchedulerConfig
from .errors import (
    DocumentValidationError,
    InvalidTransitionError,
    JobNotFoundError,
    LedgerError,
    PsetFlowConfigurationError,
    PsetFlowError,
    StageError,
)

__all__ = [
    "DocumentValidationError",
    "InvalidTransitionError",
    "JobNotFoundError",
    "LedgerError",
    "PsetFlow",
    "PsetFlowConfigurationError",
    "PsetFlowError",
    "SchedulerConfig",
    "SolveResult",
    "StageError",
    "load_document",
]
