from __future__ import annotations

from typing import Any


class NLPError(Exception):
    """Base error for the text-to-command pipeline.

    Carries a stable ``code`` for callers and a ``details`` dict for logs.
    """

    code = "NLP_ERROR"

    def __init__(self, message: str, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": {k: v for k, v in self.details.items() if _is_plain(v)},
        }


class EntityExtractionError(NLPError):
    code = "ENTITY_EXTRACTION_ERROR"


class IntentClassificationError(NLPError):
    code = "INTENT_CLASSIFICATION_ERROR"


class ProcessingError(NLPError):
    code = "PROCESSING_ERROR"


class ParameterExtractionError(ProcessingError):
    code = "PARAMETER_EXTRACTION_ERROR"


class CommandBuildingError(ProcessingError):
    code = "COMMAND_BUILDING_ERROR"


def _is_plain(value: Any) -> bool:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return True
    if isinstance(value, (list, tuple)):
        return all(_is_plain(v) for v in value)
    if isinstance(value, dict):
        return all(isinstance(k, str) and _is_plain(v) for k, v in value.items())
    return False
