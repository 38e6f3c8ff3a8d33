from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    MALFORMED_DEFINITION = "MALFORMED_DEFINITION"
    DANGLING_REFERENCE = "DANGLING_REFERENCE"
    DYNAMIC_FETCH_FAILED = "DYNAMIC_FETCH_FAILED"
    REQUIRED = "REQUIRED"
    FORMAT_INVALID = "FORMAT_INVALID"
    SUBMIT_FAILED = "SUBMIT_FAILED"


@dataclass(frozen=True)
class Diagnostic:
    """A recorded, non-fatal problem (skipped rule, failed fetch, failed submit)."""

    kind: ErrorKind
    message: str
    rule_id: Optional[str] = None
    element_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "ruleId": self.rule_id,
            "elementId": self.element_id,
        }


class FormEngineError(Exception):
    kind: ErrorKind

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message}


class MalformedDefinitionError(FormEngineError):
    """Raised when a form definition cannot be parsed or breaks a structural invariant."""

    kind = ErrorKind.MALFORMED_DEFINITION


class DynamicFetchError(FormEngineError):
    """Raised by an option lookup when a dynamic source cannot be read."""

    kind = ErrorKind.DYNAMIC_FETCH_FAILED


class SubmitFailedError(FormEngineError):
    kind = ErrorKind.SUBMIT_FAILED

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
