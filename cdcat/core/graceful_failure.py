"""
Graceful failure utilities for per-examinee isolation.

A CD-CAT batch runs one independent session per examinee. A malformed
response row or a degenerate posterior for one examinee must not abort the
rest of the batch, so each session body runs inside ``capture_failure``:

1. Attempt the session
2. On exception: log it with examinee context and keep the exception
3. Continue with the next examinee

Usage:
    from cdcat.core.graceful_failure import capture_failure

    with capture_failure("run CD-CAT session", logger, context={"examinee": 3}) as capture:
        result = session.run()
    if capture.failed:
        record_failure(capture.error)
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generator, Optional


@dataclass
class FailureCapture:
    """Holds the exception raised inside a ``capture_failure`` block, if any."""

    error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@contextmanager
def capture_failure(
    operation_name: str,
    logger: logging.Logger,
    *,
    log_level: int = logging.WARNING,
    exc_info: bool = False,
    context: Optional[dict[str, Any]] = None,
) -> Generator[FailureCapture, None, None]:
    """Context manager that records, logs and contains an ``Exception``.

    Unlike a bare ``try/except``, the caught exception is handed back on the
    yielded ``FailureCapture`` so the caller can turn it into a failed result.
    ``KeyboardInterrupt`` and other non-``Exception`` errors still propagate.

    Args:
        operation_name: Human-readable name of the operation for logging
            (e.g., "run CD-CAT session").
        logger: The logger instance to use for logging errors.
        log_level: Logging level for error messages. Defaults to WARNING.
        exc_info: Whether to include the traceback in the log entry.
        context: Optional dictionary of additional context to include in the log
            message (e.g., {"examinee": 12, "step": 4}).

    Yields:
        FailureCapture whose ``error`` is set if the block raised.
    """
    capture = FailureCapture()
    try:
        yield capture
    except Exception as e:
        capture.error = e
        if context:
            context_str = ", ".join(f"{k}={v}" for k, v in context.items())
            message = f"Failed to {operation_name} ({context_str}): {e}"
        else:
            message = f"Failed to {operation_name}: {e}"

        logger.log(log_level, message, exc_info=exc_info)
