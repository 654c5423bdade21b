"""
Custom Exception Classes
========================

Exception hierarchy for the optimization session engine.

Every exception carries:
- A human-readable message
- A context dictionary with the values that triggered it
- An optional recovery suggestion
- An optional machine-readable error code

Catch ``OptSessionError`` to handle every engine failure at once, or one of the
category bases (``SessionError``, ``TrialError``, ``PersistenceError``,
``ConfigurationError``) for precise handling.
"""

import traceback
from typing import Optional, Dict, Any, Sequence
from datetime import datetime


class OptSessionError(Exception):
    """
    Base exception for all optimization engine errors

    Records a timestamp and the creation stack so errors raised inside
    worker threads can still be traced after they are re-raised elsewhere.
    """

    def __init__(self, message: str,
                 context: Optional[Dict[str, Any]] = None,
                 recovery_suggestion: Optional[str] = None,
                 error_code: Optional[str] = None):
        """
        Initialize base exception

        Args:
            message: Human-readable error description
            context: Additional context data
            recovery_suggestion: Suggested fix for the error
            error_code: Machine-readable error code
        """
        super().__init__(message)

        self.message = message
        self.context = context or {}
        self.recovery_suggestion = recovery_suggestion
        self.error_code = error_code
        self.timestamp = datetime.now()
        self.traceback_info = self._capture_traceback()

    def _capture_traceback(self) -> str:
        try:
            return ''.join(traceback.format_stack()[:-2])
        except Exception:
            return "Traceback unavailable"

    def get_detailed_message(self) -> str:
        """Get detailed error message with context"""
        details = [f"Error: {self.message}"]

        if self.error_code:
            details.append(f"Code: {self.error_code}")

        if self.context:
            context_str = ", ".join([f"{k}={v}" for k, v in self.context.items()])
            details.append(f"Context: {context_str}")

        if self.recovery_suggestion:
            details.append(f"Suggestion: {self.recovery_suggestion}")

        return " | ".join(details)

    def __str__(self) -> str:
        return self.get_detailed_message()


# =============================================================================
# SESSION EXCEPTIONS
# =============================================================================

class SessionError(OptSessionError):
    """Base exception for session lifecycle errors"""
    pass


class SessionMismatchError(SessionError):
    """Persisted session identity differs from the session being resumed"""

    def __init__(self, field: str, expected: Any, actual: Any, key: Optional[str] = None, **kwargs):
        message = f"Can't resume session, mismatching {field}"
        context = {"field": field, "expected": expected, "actual": actual}
        if key:
            context["key"] = key
        recovery = "Start a fresh session (resume=False) or restore the original search settings"
        super().__init__(message, context=context, recovery_suggestion=recovery,
                         error_code=kwargs.pop("error_code", "SESSION_MISMATCH"), **kwargs)
        self.field = field
        self.expected = expected
        self.actual = actual


class SearchCancelled(SessionError):
    """Cooperative stop requested through the cancellation token or a signal"""

    def __init__(self, reason: str = "cancelled", **kwargs):
        message = f"Search cancelled: {reason}"
        super().__init__(message, context={"reason": reason},
                         error_code=kwargs.pop("error_code", "CANCELLED"), **kwargs)
        self.reason = reason


# =============================================================================
# TRIAL EXCEPTIONS
# =============================================================================

class TrialError(OptSessionError):
    """Base exception for trial evaluation errors"""
    pass


class TrialFailureError(TrialError):
    """A single trial raised during evaluation"""

    def __init__(self, params: Dict[str, Any], original_error: BaseException,
                 repeat: Optional[int] = None, **kwargs):
        message = f"Trial failed for {params}: {original_error}"
        context = {"params": params, "error_type": type(original_error).__name__}
        if repeat is not None:
            context["repeat"] = repeat
        recovery = "Check the scored system for these parameter values"
        super().__init__(message, context=context, recovery_suggestion=recovery,
                         error_code=kwargs.pop("error_code", "TRIAL_FAILED"), **kwargs)
        self.params = params
        self.original_error = original_error


# =============================================================================
# PERSISTENCE EXCEPTIONS
# =============================================================================

class PersistenceError(OptSessionError):
    """Store unavailable or a write/read failed"""

    def __init__(self, key: str, operation: str, reason: str, **kwargs):
        message = f"Persistence {operation} failed for '{key}': {reason}"
        context = {"key": key, "operation": operation, "reason": reason}
        recovery = "Check the store location is writable, or delete the conflicting session"
        super().__init__(message, context=context, recovery_suggestion=recovery,
                         error_code=kwargs.pop("error_code", "PERSISTENCE_FAILED"), **kwargs)
        self.key = key
        self.operation = operation


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(OptSessionError):
    """Malformed configuration detected before any trial starts"""

    def __init__(self, config_component: str, config_issue: str, **kwargs):
        message = f"Configuration error in {config_component}: {config_issue}"
        context = {"config_component": config_component, "config_issue": config_issue}
        recovery = kwargs.pop("recovery_suggestion", "Check search configuration values")
        super().__init__(message, context=context, recovery_suggestion=recovery,
                         error_code=kwargs.pop("error_code", "CONFIG_INVALID"), **kwargs)


class ParameterSpaceError(ConfigurationError):
    """Error in parameter space or bounds definition"""

    def __init__(self, parameter: str, issue: str, **kwargs):
        super().__init__(
            "parameter space",
            f"'{parameter}': {issue}",
            recovery_suggestion="Fix parameter domains, bounds and precision specs",
            error_code="PARAM_SPACE_INVALID",
            **kwargs,
        )
        self.parameter = parameter


def describe_failures(errors: Sequence[BaseException], limit: int = 5) -> str:
    """Human-readable summary of collected failures"""
    if not errors:
        return "No failures"

    lines = [f"{len(errors)} failures:"]
    for i, exc in enumerate(errors[:limit], 1):
        if isinstance(exc, OptSessionError):
            lines.append(f"  {i}. {type(exc).__name__}: {exc.message}")
        else:
            lines.append(f"  {i}. {type(exc).__name__}: {exc}")
    if len(errors) > limit:
        lines.append(f"  ... and {len(errors) - limit} more")
    return "\n".join(lines)
