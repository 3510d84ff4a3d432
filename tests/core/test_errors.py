"""Tests for the macrofx error hierarchy."""

import pytest

from macrofx.core.errors import (
    AcquireTimeoutError,
    CircuitOpenError,
    ConfigError,
    EffectTimeoutError,
    EngineRequiredError,
    ErrorCategory,
    ErrorContext,
    InvalidPolicyError,
    MacrofxError,
    StepValidationError,
    TimeoutExpired,
    UndeclaredCapabilityError,
    ValidationError,
    ValidationIssue,
    is_circuit_open,
)


class TestMacrofxError:
    """Tests for the base error."""

    def test_defaults(self):
        """Test default category and retryability."""
        error = MacrofxError("boom")
        assert error.category == ErrorCategory.INTERNAL
        assert error.retryable is False
        assert str(error) == "boom"

    def test_cause_is_chained(self):
        """Test that cause becomes __cause__."""
        root = ValueError("root")
        error = MacrofxError("wrapped", cause=root)
        assert error.__cause__ is root
        assert error.to_dict()["cause"] == "root"

    def test_with_context(self):
        """Test fluent context with known and extra keys."""
        error = MacrofxError("boom").with_context(step="load_user", attempt=2)
        assert error.context.step == "load_user"
        assert error.context.metadata == {"attempt": 2}
        assert error.to_dict()["context"] == {"step": "load_user", "attempt": 2}

    def test_error_context_to_dict_skips_none(self):
        """Test that unset fields are omitted."""
        assert ErrorContext(phase="run").to_dict() == {"phase": "run"}


class TestEffectErrors:
    """Tests for timeout and circuit errors."""

    def test_effect_timeout_code(self):
        """Test stable code and builtin TimeoutError compatibility."""
        error = EffectTimeoutError(250, "http.get")
        assert error.code == "effect-timeout"
        assert isinstance(error, TimeoutError)
        assert isinstance(error, TimeoutExpired)
        assert "http.get" in str(error)
        assert error.timeout_ms == 250

    def test_acquire_timeout_code(self):
        """Test acquire timeout marker."""
        error = AcquireTimeoutError(5, "lease.lock.acquire")
        assert error.code == "acquire-timeout"
        assert error.operation == "lease.lock.acquire"
        assert error.retryable is True

    def test_circuit_open(self):
        """Test circuit-open error carries name and remaining time."""
        error = CircuitOpenError("payments", remaining_ms=1200.0)
        assert error.code == "circuit-open"
        assert error.name == "payments"
        assert error.retryable is False
        assert error.category == ErrorCategory.CIRCUIT
        assert "1200ms" in str(error)

    def test_is_circuit_open(self):
        """Test detection by code rather than type."""
        assert is_circuit_open(CircuitOpenError("x"))
        assert not is_circuit_open(EffectTimeoutError(1))
        assert not is_circuit_open(RuntimeError("circuit-open"))


class TestValidationErrors:
    """Tests for validation and configuration errors."""

    def test_step_validation_error_lists_issues(self):
        """Test numbered issues with hints in the message."""
        issues = [
            ValidationIssue("UNKNOWN_CAPABILITY", "unknown 'htp'", "Did you mean 'http'?", {"field": "htp"}),
            ValidationIssue("MISSING_NAME", "Step must have a name"),
        ]
        error = StepValidationError("load_user", issues)
        assert error.codes == ["UNKNOWN_CAPABILITY", "MISSING_NAME"]
        assert error.field == "htp"
        assert "1. [UNKNOWN_CAPABILITY]" in str(error)
        assert "hint: Did you mean 'http'?" in str(error)
        assert "load_user" in str(error)

    def test_invalid_policy_error(self):
        """Test policy name and reason in message."""
        error = InvalidPolicyError("retry", {"times": -1}, "times: too small")
        assert isinstance(error, ValidationError)
        assert error.policy == "retry"
        assert error.to_dict()["field"] == "retry"

    def test_config_errors(self):
        """Test configuration error subclasses."""
        undeclared = UndeclaredCapabilityError("http", ["kv"])
        assert isinstance(undeclared, ConfigError)
        assert undeclared.keys == ["kv"]
        assert "kv" in str(undeclared)

        engine = EngineRequiredError("pipe")
        assert engine.operator == "pipe"
        assert "pipe()" in str(engine)

    def test_errors_are_catchable_as_base(self):
        """Test every error is a MacrofxError."""
        with pytest.raises(MacrofxError):
            raise EngineRequiredError("race")
