"""Step and metadata validation.

Runs before any I/O. Catches the mistakes that would otherwise surface as
confusing runtime failures deep inside a step: a capability key that no
registered macro can satisfy (usually a typo), a missing ``run``, or a
policy with negative values.

Diagnostic codes
────────────────
INVALID_STEP          step is not a Step-like object
MISSING_NAME          step has no name
MISSING_META          meta is not a mapping
MISSING_RUN           run is not callable
UNKNOWN_CAPABILITY    meta declares a key no macro is registered for
INVALID_POLICY        retry/timeout/circuit/idempotency values rejected
INVALID_DB_ROLE       db.role is neither "ro" nor "rw"
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any

from macrofx.core.errors import (
    InvalidPolicyError,
    InvalidStepError,
    StepValidationError,
    ValidationIssue,
)
from macrofx.core.meta import POLICY_KEYS, parse_policy

SIMILARITY_THRESHOLD = 0.6


@dataclass(frozen=True)
class ValidationResult:
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues


def find_similar(name: str, candidates: Iterable[str]) -> str | None:
    """Return the candidate most similar to ``name`` above the threshold."""
    best: str | None = None
    best_ratio = SIMILARITY_THRESHOLD
    for candidate in candidates:
        ratio = SequenceMatcher(None, name.lower(), candidate.lower()).ratio()
        if ratio >= best_ratio:
            best, best_ratio = candidate, ratio
    return best


def check_structure(step: Any) -> None:
    """Cheap structural check that always runs, even with validation disabled."""
    if step is None or not callable(getattr(step, "run", None)):
        raise InvalidStepError("invalid step: run must be callable", field="run")
    if not isinstance(getattr(step, "meta", None), Mapping):
        raise InvalidStepError(
            "invalid step: meta must be a mapping",
            field="meta",
            value=getattr(step, "meta", None),
        )


def wants_temp_dir(config: Any) -> bool:
    """True when an ``fs`` config asks for a leased temp dir."""
    if not isinstance(config, Mapping):
        return False
    return bool(config.get("temp_dir", config.get("tempDir", False)))


def validate_meta(meta: Mapping[str, Any], macro_keys: Sequence[str]) -> ValidationResult:
    issues: list[ValidationIssue] = []
    available = list(dict.fromkeys(macro_keys))

    for cap in meta:
        if cap in POLICY_KEYS or cap in available:
            continue
        similar = find_similar(cap, available)
        issues.append(
            ValidationIssue(
                code="UNKNOWN_CAPABILITY",
                message=f"Meta declares capability '{cap}' but no matching macro is registered",
                suggestion=(
                    f"Did you mean '{similar}'?"
                    if similar
                    else f"Register a macro with key '{cap}' or remove it from meta"
                ),
                details={"field": cap, "available_macros": available},
            )
        )

    for name in sorted(POLICY_KEYS):
        value = meta.get(name)
        if value is None:
            continue
        try:
            parse_policy(name, value)
        except InvalidPolicyError as e:
            issues.append(
                ValidationIssue(
                    code="INVALID_POLICY",
                    message=e.message,
                    suggestion="Use non-negative numbers for counts and milliseconds",
                    details={"field": name},
                )
            )

    db = meta.get("db")
    if isinstance(db, Mapping) and "role" in db and db["role"] not in ("ro", "rw"):
        issues.append(
            ValidationIssue(
                code="INVALID_DB_ROLE",
                message=f"Invalid db role: {db['role']!r}. Must be 'ro' or 'rw'",
                suggestion="Use 'ro' for read-only or 'rw' for read-write access",
                details={"field": "db.role"},
            )
        )

    fs = meta.get("fs")
    if "fs" in available and "fs" in meta and not wants_temp_dir(fs):
        issues.append(
            ValidationIssue(
                code="FS_WITHOUT_TEMP_DIR",
                message="Meta declares 'fs' without 'temp_dir', so no lease.temp_dir is provided",
                suggestion="Use fs={'temp_dir': True} or remove 'fs' from meta",
                details={"field": "fs.temp_dir"},
            )
        )

    return ValidationResult(issues)


def validate_step(step: Any, macro_keys: Sequence[str]) -> ValidationResult:
    issues: list[ValidationIssue] = []

    if step is None or not hasattr(step, "meta") or not hasattr(step, "run"):
        return ValidationResult(
            [ValidationIssue("INVALID_STEP", "Step must be a Step-like object", "Use define_step() to build steps")]
        )

    if not isinstance(getattr(step, "name", None), str) or not step.name:
        issues.append(
            ValidationIssue(
                "MISSING_NAME",
                "Step must have a name",
                "Add a descriptive name to help with debugging and tracing",
                {"field": "name"},
            )
        )

    if not isinstance(step.meta, Mapping):
        issues.append(ValidationIssue("MISSING_META", "Step meta must be a mapping", details={"field": "meta"}))
        return ValidationResult(issues)

    if not callable(step.run):
        issues.append(
            ValidationIssue(
                "MISSING_RUN",
                "Step must have a run function",
                "Add a run function that accepts an ExecutionContext",
                {"field": "run"},
            )
        )

    issues.extend(validate_meta(step.meta, macro_keys).issues)
    return ValidationResult(issues)


def assert_valid_step(step: Any, macro_keys: Sequence[str]) -> None:
    result = validate_step(step, macro_keys)
    if not result.valid:
        raise StepValidationError(getattr(step, "name", None), result.issues)


def assert_valid_meta(meta: Mapping[str, Any], macro_keys: Sequence[str]) -> None:
    result = validate_meta(meta, macro_keys)
    if not result.valid:
        raise StepValidationError(None, result.issues)


__all__ = [
    "ValidationResult",
    "find_similar",
    "wants_temp_dir",
    "check_structure",
    "validate_meta",
    "validate_step",
    "assert_valid_step",
    "assert_valid_meta",
]
