from __future__ import annotations

import re
import traceback
from typing import Any, Dict, Optional, Protocol

from apigate.logging import get_logger, redact

logger = get_logger(__name__)

# Secret shapes scrubbed from exception messages before they leave the process
_SECRET_PATTERNS = [
    (re.compile(r"sk-[A-Za-z0-9_-]{8,}"), "[REDACTED_KEY]"),
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/-]+=*"), "Bearer [REDACTED]"),
    (re.compile(r"(?i)(key|token|secret|password)=[^&\s]+"), r"\1=[REDACTED]"),
]

# Request metadata forwarded with a report; bodies are never included
_REPORTABLE_CONTEXT_KEYS = ("method", "path", "principal_id", "correlation_id", "source", "state")


def scrub_message(message: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


class ErrorReporter(Protocol):
    def capture(self, exc: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        ...

    def flush(self, timeout: float) -> bool:
        ...


class LogErrorReporter:
    """Report errors as structured ``error_reported`` log records.

    Stands in for an external error tracker; it keeps the same contract so
    one can be swapped in through ``Runtime``.
    """

    def __init__(self) -> None:
        self.captured = 0

    def capture(self, exc: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        metadata = {k: v for k, v in (context or {}).items() if k in _REPORTABLE_CONTEXT_KEYS}
        self.captured += 1
        logger.error(
            "error_reported",
            error_type=type(exc).__name__,
            error=scrub_message(str(exc)),
            stack=scrub_message("".join(traceback.format_exception(type(exc), exc, exc.__traceback__))),
            **redact(metadata),
        )

    def flush(self, timeout: float) -> bool:
        """Records are written synchronously; nothing is buffered."""
        return True
