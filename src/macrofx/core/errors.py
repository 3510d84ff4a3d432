"""
Structured error types for macrofx.

Every failure the executor can surface falls into one of a small number of
categories. Structural problems (a malformed step, a capability nobody can
satisfy, a negative retry count) are detected before any I/O happens.
Effect problems (timeouts, an open circuit) are raised by the policy layer
and carry a stable ``code`` so macros and callers can branch on them without
string matching.

Manifesto:
    - **Fail fast on structure:** Validation errors name the offending field
      and, where possible, suggest the intended key
    - **Stable markers:** ``EffectTimeoutError``, ``AcquireTimeoutError`` and
      ``CircuitOpenError`` expose ``code`` strings that never change
    - **No envelopes:** Business errors raised by ``step.run`` and errors raised
      by a macro's ``resolve`` reach the caller unchanged
    - **Rich context:** Errors carry metadata for structured logging

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       MacrofxError                               │
        │  (category, retryable, context, cause)                           │
        ├─────────────────────────────────────────────────────────────────┤
        │  ValidationError          ConfigError          LeaseScopeError   │
        │  (VALIDATION)             (CONFIG)             (LEASE)           │
        │       │                        │                                  │
        │  InvalidStepError         UndeclaredCapabilityError              │
        │  StepValidationError      EngineRequiredError                    │
        │  InvalidPolicyError                                              │
        │                                                                  │
        │  CircuitOpenError         TimeoutExpired (also builtin           │
        │  (CIRCUIT, "circuit-open")   TimeoutError)                       │
        │                                │                                  │
        │                  EffectTimeoutError   AcquireTimeoutError        │
        │                  ("effect-timeout")   ("acquire-timeout")        │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = CircuitOpenError("payments", remaining_ms=1200.0)
    >>> error.code
    'circuit-open'
    >>> error.retryable
    False

    >>> try:
    ...     raise AcquireTimeoutError(timeout_ms=5, operation="lease.lock")
    ... except TimeoutError as e:
    ...     print(e.code)
    acquire-timeout

Tags:
    error-handling, exception-hierarchy, circuit-breaker, timeout,
    validation, macrofx

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    VALIDATION = "VALIDATION"
    CONFIG = "CONFIG"
    TIMEOUT = "TIMEOUT"
    CIRCUIT = "CIRCUIT"
    LEASE = "LEASE"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured context attached to errors for logging.

    Attributes:
        step: Name of the step being executed
        phase: Executor phase in which the error occurred
        capability: Capability or policy key involved
        metadata: Additional key-value pairs
    """

    step: str | None = None
    phase: str | None = None
    capability: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        fields = {"step": self.step, "phase": self.phase, "capability": self.capability}
        return {**{k: v for k, v in fields.items() if v is not None}, **self.metadata}


class MacrofxError(Exception):
    """
    Base exception for all macrofx errors.

    Subclasses set ``default_category`` and ``default_retryable`` to give
    sensible defaults for their domain.

    Examples:
        >>> error = MacrofxError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.with_context(step="load_user").context.step
        'load_user'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> MacrofxError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


@dataclass(frozen=True)
class ValidationIssue:
    """One problem found while validating a step or its metadata."""

    code: str
    message: str
    suggestion: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def format(self, index: int) -> str:
        text = f"{index}. [{self.code}] {self.message}"
        if self.suggestion:
            text += f"\n   hint: {self.suggestion}"
        return text


class ValidationError(MacrofxError):
    """
    Structural validation error.

    Never retryable - the step definition must be fixed.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class InvalidStepError(ValidationError):
    """The step itself is malformed (missing ``run``, non-mapping meta)."""

    pass


class StepValidationError(ValidationError):
    """Full validation of a step against the registered macros failed."""

    def __init__(self, step_name: str | None, issues: list[ValidationIssue]):
        self.issues = list(issues)
        body = "\n\n".join(issue.format(i) for i, issue in enumerate(self.issues, 1))
        super().__init__(
            f"Step validation failed for {step_name or '<unnamed>'}:\n\n{body}",
            field=self.issues[0].details.get("field") if self.issues else None,
        )

    @property
    def codes(self) -> list[str]:
        return [issue.code for issue in self.issues]


class InvalidPolicyError(ValidationError):
    """A policy key (retry, timeout, circuit, idempotency) holds invalid values."""

    def __init__(self, policy: str, value: Any, reason: str):
        self.policy = policy
        super().__init__(
            f"Invalid {policy} policy {value!r}: {reason}",
            field=policy,
            value=value,
        )


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(MacrofxError):
    """Configuration error. Never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class UndeclaredCapabilityError(ConfigError):
    """A macro contributed a capability key it did not declare in ``provides``."""

    def __init__(self, macro_key: str, keys: list[str]):
        self.macro_key = macro_key
        self.keys = keys
        super().__init__(
            f"Macro '{macro_key}' contributed undeclared capabilities: {', '.join(keys)}"
        )


class EngineRequiredError(ConfigError):
    """A composed step was run outside of an ``Engine``."""

    def __init__(self, operator: str):
        self.operator = operator
        super().__init__(f"{operator}() requires execution through Engine.run()")


# =============================================================================
# EFFECT ERRORS
# =============================================================================


class TimeoutExpired(MacrofxError, TimeoutError):
    """
    Raised when a wrapped call loses its race against the timer.

    Inherits from built-in TimeoutError for broad exception handling.

    Attributes:
        timeout_ms: The budget that was exceeded
        operation: Name of the wrapped operation
    """

    code = "timeout"
    default_category = ErrorCategory.TIMEOUT
    default_retryable = True

    def __init__(self, timeout_ms: float, operation: str = "operation"):
        self.timeout_ms = timeout_ms
        self.operation = operation
        super().__init__(f"{self.code}: '{operation}' exceeded {timeout_ms}ms")


class EffectTimeoutError(TimeoutExpired):
    """A port method exceeded ``timeout.ms``."""

    code = "effect-timeout"


class AcquireTimeoutError(TimeoutExpired):
    """A lease acquire exceeded ``timeout.acquire_ms``."""

    code = "acquire-timeout"


class CircuitOpenError(MacrofxError):
    """Raised when a circuit is open and rejecting calls."""

    code = "circuit-open"
    default_category = ErrorCategory.CIRCUIT
    default_retryable = False

    def __init__(self, name: str = "default", remaining_ms: float = 0.0):
        self.name = name
        self.remaining_ms = remaining_ms
        super().__init__(
            f"{self.code}: circuit '{name}' is open for another {remaining_ms:.0f}ms"
        )


class LeaseScopeError(MacrofxError):
    """A leased handle was used after the bracket that acquired it completed."""

    default_category = ErrorCategory.LEASE
    default_retryable = False


def is_circuit_open(error: BaseException) -> bool:
    """Check whether an error is the synthetic circuit-open rejection."""
    return getattr(error, "code", None) == CircuitOpenError.code


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "MacrofxError",
    "ValidationIssue",
    "ValidationError",
    "InvalidStepError",
    "StepValidationError",
    "InvalidPolicyError",
    "ConfigError",
    "UndeclaredCapabilityError",
    "EngineRequiredError",
    "TimeoutExpired",
    "EffectTimeoutError",
    "AcquireTimeoutError",
    "CircuitOpenError",
    "LeaseScopeError",
    "is_circuit_open",
]
