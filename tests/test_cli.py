"""Tests for the stepflow command line."""

import textwrap

import pytest

from stepflow.cli.main import create_parser, main


@pytest.fixture
def write_yaml(tmp_path):
    def _write(name, content):
        path = tmp_path / name
        path.write_text(textwrap.dedent(content))
        return path
    return _write


class TestRunCommand:
    """Exit codes and summaries of `stepflow run`."""

    def test_passing_test_case(self, write_yaml, capsys):
        path = write_yaml("ok.yaml", """
            testcase: greeting
            variables:
              vars: {who: world}
            steps:
              - action: echo
                args: ["hello ${who}"]
        """)
        assert main(["run", str(path)]) == 0
        out = capsys.readouterr().out
        assert "PASSED" in out
        assert "greeting (1 passed, 0 failed, 0 skipped" in out

    def test_failing_test_case(self, write_yaml, capsys):
        path = write_yaml("fail.yaml", """
            testcase: broken
            steps:
              - name: boom
                action: fail
                args: [nope]
        """)
        assert main(["run", str(path)]) == 1
        assert "step 'boom' failed: nope" in capsys.readouterr().out

    def test_validation_error_exit_code(self, write_yaml):
        path = write_yaml("invalid.yaml", """
            testcase: invalid
            steps:
              - name: no action here
        """)
        assert main(["run", str(path)]) == 2

    def test_missing_file(self, tmp_path):
        assert main(["run", str(tmp_path / "nope.yaml")]) == 1

    def test_dry_run_does_not_execute(self, write_yaml, capsys):
        path = write_yaml("dry.yaml", """
            testcase: dry
            steps:
              - action: fail
        """)
        assert main(["run", str(path), "--dry-run"]) == 0
        assert "FAILED" not in capsys.readouterr().out

    def test_var_override(self, write_yaml):
        path = write_yaml("vars.yaml", """
            testcase: vars
            variables:
              vars: {expected: a}
            steps:
              - action: assert
                args: ["${expected}", "==", "b"]
        """)
        assert main(["run", str(path)]) == 1
        assert main(["run", str(path), "--var", "expected=b"]) == 0

    def test_bad_var_format(self, write_yaml):
        path = write_yaml("v.yaml", "testcase: v\nsteps:\n  - action: echo\n")
        assert main(["run", str(path), "--var", "no-equals"]) == 2

    def test_max_concurrency_out_of_range(self, write_yaml):
        path = write_yaml("p.yaml", "testcase: p\nsteps:\n  - action: echo\n")
        assert main(["run", str(path), "--max-concurrency", "0"]) == 2
        assert main(["run", str(path), "--max-concurrency", "101"]) == 2

    def test_parallel_flag(self, write_yaml):
        path = write_yaml("par.yaml", """
            testcase: par
            steps:
              - action: sleep
                args: [10ms]
              - action: sleep
                args: [10ms]
        """)
        assert main(["run", str(path), "--parallel", "--max-concurrency", "2"]) == 0

    def test_secret_file_relative_to_test_file(self, write_yaml, tmp_path, capsys):
        (tmp_path / "token.txt").write_text("tok-999\n")
        path = write_yaml("secret.yaml", """
            testcase: secret
            variables:
              secrets:
                token: {file: token.txt}
            steps:
              - action: fail
                args: ["rejected ${token}"]
        """)
        assert main(["run", str(path)]) == 1
        out = capsys.readouterr().out
        assert "tok-999" not in out
        assert "rejected ***" in out

    def test_suite(self, write_yaml, capsys):
        write_yaml("a.yaml", "testcase: a\nsteps:\n  - action: echo\n")
        write_yaml("b.yaml", "testcase: b\nsteps:\n  - action: fail\n")
        suite = write_yaml("suite.yaml", """
            testsuite: smoke
            fail_fast: true
            testcases: [b.yaml, a.yaml]
        """)
        assert main(["run", str(suite)]) == 1
        out = capsys.readouterr().out
        assert "skipped due to fail-fast after failure: b" in out
        assert "Suite 'smoke': FAILED" in out

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out.lower()


class TestParser:

    def test_defaults(self):
        args = create_parser().parse_args(["run", "t.yaml"])
        assert args.log_level == "info"
        assert args.parallel is False
        assert args.max_concurrency is None
        assert args.var is None

    def test_repeated_vars(self):
        args = create_parser().parse_args(["run", "t.yaml", "--var", "a=1", "--var", "b=2"])
        assert args.var == ["a=1", "b=2"]
