"""Error-tracking collaborator.

The default tracker writes to the structured log; a deployment can install a
different sink with ``set_tracker`` (tests install a recording one).
"""

from __future__ import annotations

import structlog

logger = structlog.get_logger(__name__)


class LogTracker:
    def capture_exception(self, exc: BaseException, **context) -> None:
        logger.error("exception_captured", error=str(exc), error_type=type(exc).__name__, exc_info=exc, **context)

    def capture_message(self, message: str, level: str = "info", **context) -> None:
        log = getattr(logger, level, logger.info)
        log("message_captured", message=message, **context)


_tracker = LogTracker()


def set_tracker(tracker) -> None:
    global _tracker
    _tracker = tracker


def reset_tracker() -> None:
    set_tracker(LogTracker())


def capture_exception(exc: BaseException, **context) -> None:
    try:
        _tracker.capture_exception(exc, **context)
    except Exception:
        logger.exception("error_tracker_failed")


def capture_message(message: str, level: str = "info", **context) -> None:
    try:
        _tracker.capture_message(message, level=level, **context)
    except Exception:
        logger.exception("error_tracker_failed")
