"""Tests for step and metadata validation."""

import pytest

from macrofx.core.errors import InvalidStepError, StepValidationError
from macrofx.core.meta import Step
from macrofx.core.validation import (
    assert_valid_meta,
    assert_valid_step,
    check_structure,
    find_similar,
    validate_meta,
    validate_step,
)

MACRO_KEYS = ["http", "kv", "db", "log", "fs"]


def _noop(ctx):
    return None


class TestFindSimilar:
    """Tests for typo suggestions."""

    def test_close_match(self):
        assert find_similar("htp", MACRO_KEYS) == "http"
        assert find_similar("KV", MACRO_KEYS) == "kv"

    def test_no_match(self):
        assert find_similar("websocket", MACRO_KEYS) is None


class TestValidateMeta:
    """Tests for validate_meta."""

    def test_valid_meta(self):
        """Test known capabilities and policies pass."""
        result = validate_meta({"http": {}, "retry": {"times": 1}, "timeout": {"ms": 10}}, MACRO_KEYS)
        assert result.valid

    def test_unknown_capability_with_suggestion(self):
        """Test a typo names the intended key."""
        result = validate_meta({"htpp": {}}, MACRO_KEYS)
        assert not result.valid
        issue = result.issues[0]
        assert issue.code == "UNKNOWN_CAPABILITY"
        assert issue.suggestion == "Did you mean 'http'?"
        assert issue.details["available_macros"] == MACRO_KEYS

    def test_unknown_capability_without_suggestion(self):
        """Test an unrelated key suggests registering a macro."""
        issue = validate_meta({"graphql": {}}, MACRO_KEYS).issues[0]
        assert "Register a macro" in issue.suggestion

    def test_fs_without_temp_dir(self):
        """Test an fs key that would never match its macro is reported."""
        result = validate_meta({"fs": {}}, MACRO_KEYS)
        assert [i.code for i in result.issues] == ["FS_WITHOUT_TEMP_DIR"]
        assert validate_meta({"fs": {"tempDir": True}}, MACRO_KEYS).valid
        assert validate_meta({"fs": {"temp_dir": True}}, MACRO_KEYS).valid

    def test_invalid_policy(self):
        """Test negative retry counts are reported."""
        result = validate_meta({"retry": {"times": -1}}, MACRO_KEYS)
        assert [i.code for i in result.issues] == ["INVALID_POLICY"]

    def test_invalid_db_role(self):
        """Test db role must be ro or rw."""
        result = validate_meta({"db": {"role": "admin"}}, MACRO_KEYS)
        assert [i.code for i in result.issues] == ["INVALID_DB_ROLE"]

    def test_assert_valid_meta_raises(self):
        with pytest.raises(StepValidationError):
            assert_valid_meta({"nope": {}}, MACRO_KEYS)


class TestValidateStep:
    """Tests for validate_step and check_structure."""

    def test_valid_step(self):
        assert validate_step(Step("ok", {"kv": {}}, _noop), MACRO_KEYS).valid

    def test_not_a_step(self):
        """Test objects without meta/run are rejected."""
        result = validate_step(object(), MACRO_KEYS)
        assert result.issues[0].code == "INVALID_STEP"

    def test_missing_name(self):
        result = validate_step(Step("", {}, _noop), MACRO_KEYS)
        assert result.issues[0].code == "MISSING_NAME"

    def test_collects_all_issues(self):
        """Test several problems are reported together."""
        step = Step("", {"htp": {}, "timeout": {"ms": -1}}, _noop)
        with pytest.raises(StepValidationError) as exc_info:
            assert_valid_step(step, MACRO_KEYS)
        assert exc_info.value.codes == ["MISSING_NAME", "UNKNOWN_CAPABILITY", "INVALID_POLICY"]

    def test_check_structure_requires_callable_run(self):
        """Test structure check runs independently of validation."""

        class Broken:
            name = "broken"
            meta = {}
            run = None

        with pytest.raises(InvalidStepError) as exc_info:
            check_structure(Broken())
        assert exc_info.value.field == "run"

    def test_check_structure_requires_mapping_meta(self):
        class Broken:
            name = "broken"
            meta = ["http"]

            def run(self, ctx):
                return None

        with pytest.raises(InvalidStepError) as exc_info:
            check_structure(Broken())
        assert exc_info.value.field == "meta"
