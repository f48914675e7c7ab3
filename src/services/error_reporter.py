"""Error reporting channel"""

from typing import Any, Protocol

import structlog

logger = structlog.get_logger()


class ErrorReporter(Protocol):
    """Sink for failures the engine degrades around instead of raising"""

    def report(self, error: BaseException, context: str, **details: Any) -> None: ...


class LoggingErrorReporter:
    """Reports errors as structured log events"""

    def report(self, error: BaseException, context: str, **details: Any) -> None:
        try:
            logger.error(
                "engine_error_reported",
                context=context,
                error_type=type(error).__name__,
                error=str(error),
                **details
            )
        except Exception:  # noqa: BLE001
            pass
