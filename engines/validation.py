"""Error taxonomy and defaulting events for normalized model output."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Base class for feedback engine errors."""
    pass


class GenerationError(EngineError):
    """Raised when the generation backend is unreachable, times out, or fails."""
    pass


class MalformedResponseError(EngineError):
    """Raised when the backend reply cannot be parsed into a JSON object."""

    def __init__(self, message: str, raw_text: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw_text = raw_text


class ServiceUnavailableError(EngineError):
    """User-facing condition for operations that may not fall back."""

    def __init__(self, operation: str, message: str = "service temporarily unavailable") -> None:
        super().__init__(message)
        self.operation = operation


@dataclass(frozen=True)
class ValidationDefaulted:
    """A recoverable substitution of a missing or invalid field.

    Not an error: the normalizer records it and carries on.
    """

    operation: str
    field: str
    reason: str
    substituted: Any = None


def record_default(
    operation: str,
    field: str,
    reason: str,
    substituted: Any = None,
    events: Optional[list[ValidationDefaulted]] = None,
) -> ValidationDefaulted:
    event = ValidationDefaulted(operation, field, reason, substituted)
    if events is not None:
        events.append(event)
    try:
        message = json.dumps({"event": "validation_defaulted", **asdict(event)}, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        message = repr(event)
    logger.info(message)
    return event
