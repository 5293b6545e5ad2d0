"""
Tests for secrets handling: resolution, masking and the logging filter.
"""

import logging

import pytest

from stepflow.engine import TestEngine
from stepflow.exceptions import TestCaseValidationError
from stepflow.models import Secret, Step, TestCase
from stepflow.security.secrets import MASK, SecretsManager, SecretsMaskingFilter


class TestSecretsManager:
    """Test the SecretsManager class."""

    def test_inline_value_wins_over_file(self, tmp_path):
        (tmp_path / "s.txt").write_text("from-file")
        manager = SecretsManager(tmp_path)
        assert manager.read_secret(Secret(name="s", value="inline", file="s.txt")) == "inline"

    def test_file_secret_read_relative_to_base_dir(self, tmp_path):
        (tmp_path / "s.txt").write_text("from-file\n")
        manager = SecretsManager(tmp_path)
        assert manager.read_secret(Secret(name="s", file="s.txt")) == "from-file"

    def test_missing_file_raises_validation_error(self, tmp_path):
        manager = SecretsManager(tmp_path)
        with pytest.raises(TestCaseValidationError) as exc_info:
            manager.read_secret(Secret(name="s", file="nope.txt"))
        assert "variables.secrets.s" in str(exc_info.value)

    def test_mask_text(self):
        manager = SecretsManager()
        manager.register("password", "secret123")
        manager.register("token", "abc-token-xyz")

        text = "Login with password=secret123 and token=abc-token-xyz"
        assert manager.mask_text(text) == f"Login with password={MASK} and token={MASK}"

    def test_longest_secret_masked_first(self):
        manager = SecretsManager()
        manager.register("short", "abc")
        manager.register("long", "abcdef")
        assert manager.mask_text("abcdef abc") == f"{MASK} {MASK}"

    def test_empty_and_unmasked_values_never_masked(self):
        manager = SecretsManager()
        manager.register("empty", "")
        manager.register("visible", "public", mask_output=False)
        assert manager.mask_text("public text") == "public text"

    def test_mask_value_recurses(self):
        manager = SecretsManager()
        manager.register("k", "hidden")
        value = {"a": ["hidden", 1], "b": "x hidden y"}
        assert manager.mask_value(value) == {"a": [MASK, 1], "b": f"x {MASK} y"}

    def test_names_never_include_values(self):
        manager = SecretsManager()
        manager.register("api_key", "value-1")
        assert manager.names == ["api_key"]


class TestSecretsMaskingFilter:
    """Logging filter masks secrets in messages and arguments."""

    def test_filter_masks_message_and_args(self):
        manager = SecretsManager()
        manager.register("pw", "hunter2")
        log_filter = SecretsMaskingFilter(manager)

        record = logging.LogRecord(
            name="test", level=logging.INFO, pathname=__file__, lineno=1,
            msg="password is hunter2 (%s)", args=("hunter2",), exc_info=None
        )
        assert log_filter.filter(record) is True
        assert record.getMessage() == f"password is {MASK} ({MASK})"


class TestMaskingInResults:
    """Secret values never appear in step results."""

    def test_secret_masked_in_step_output_and_history(self):
        test_case = TestCase(
            name="masking",
            secrets=[Secret(name="api_key", value="sk-live-42")],
            steps=[
                Step(name="echo key", action="echo", args=["key=${api_key}"], result="echoed"),
                Step(name="history", action="echo", args=["${__steps[0].output}"]),
                Step(name="fail with key", action="fail", args=["bad key ${api_key}"],
                     continue_on_failure=True),
            ]
        )

        result = TestEngine().execute_test_case(test_case)

        for step_result in result.step_results:
            assert "sk-live-42" not in step_result.output
            assert "sk-live-42" not in step_result.error
        assert result.step_results[0].output == f"key={MASK}"
        assert result.step_results[1].output == f"key={MASK}"
        assert result.step_results[2].error == f"bad key {MASK}"

    def test_secret_masked_inside_structured_output(self):
        test_case = TestCase(
            name="structured",
            secrets=[Secret(name="pw", value='s3cr"et-ü')],
            steps=[Step(name="payload", action="echo", args=[{"token": "${pw}"}])]
        )

        result = TestEngine().execute_test_case(test_case)

        output = result.step_results[0].output
        assert output == f'{{"token": "{MASK}"}}'
        assert "s3cr" not in output
        assert "\\u00fc" not in output
