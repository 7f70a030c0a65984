"""
Exception taxonomy for CD-CAT runs.

- ConfigurationError: invalid run configuration; raised before any session starts.
- SessionError (and subclasses): failure of a single examinee's session. The
  batch runner catches these per examinee and records a failed result.
"""

from typing import Any, Dict, Optional


class CDCATError(Exception):
    """Base exception for cdcat errors."""

    def __init__(  # noqa: D107
        self,
        message: str,
        original_error: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            msg = f"{msg} (context: {ctx_str})"
        if self.original_error:
            msg = f"{msg} - caused by: {str(self.original_error)}"
        return msg


class ConfigurationError(CDCATError):
    """Invalid selection rule, prior, worker count or missing inputs."""


class SessionError(CDCATError):
    """A single examinee's adaptive session could not complete."""

    def __init__(  # noqa: D107
        self,
        message: str,
        examinee: Optional[int] = None,
        step: Optional[int] = None,
        original_error: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.examinee = examinee
        self.step = step
        merged: Dict[str, Any] = {}
        if examinee is not None:
            merged["examinee"] = examinee
        if step is not None:
            merged["step"] = step
        merged.update(context or {})
        super().__init__(message, original_error=original_error, context=merged)


class MalformedResponseError(SessionError):
    """A response entry is not a 0/1 value."""


class DegeneratePosteriorError(SessionError):
    """The unnormalized posterior has zero (or non-finite) total mass."""


class ItemPoolExhaustedError(SessionError):
    """No remaining item satisfies the nonparametric targeting/discrimination search."""
