from __future__ import annotations

"""
Error kinds raised by the engine.

Validation failures (and their consistency / not-found variants) are
expected and user-facing: the caller must change data before retrying.
Store errors wrap I/O failures and may be retried as-is.
"""

from typing import Any, Dict, List, Optional, Sequence

from .models import Violation


class EngineError(Exception):
    code = "ENGINE_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InputError(EngineError, ValueError):
    code = "INVALID_INPUT"


class ValidationFailure(EngineError):
    code = "VALIDATION_FAILED"

    def __init__(self, message: str, violations: Optional[Sequence[Violation]] = None):
        self.violations: List[Violation] = list(violations or [])
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["violations"] = [v.model_dump() for v in self.violations]
        return out


class PublishRejected(ValidationFailure):
    code = "PUBLISH_REJECTED"

    def __init__(self, violations: Sequence[Violation]):
        violations = list(violations)
        message = "; ".join(v.message for v in violations) or "Set cannot be published"
        super().__init__(message, violations)


class ConsistencyError(ValidationFailure):
    code = "CATEGORY_PRODUCT_MISMATCH"


class NotFoundError(ValidationFailure):
    code = "NOT_FOUND"

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class StoreError(EngineError):
    code = "STORE_ERROR"


class ConflictError(StoreError):
    code = "VERSION_CONFLICT"

    def __init__(self, set_id: str, expected: Optional[int], actual: Optional[int]):
        self.set_id = set_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Set {set_id} was modified concurrently "
            f"(expected version {expected}, found {actual}); reload and retry"
        )
