"""Test case and suite loader with strict YAML validation."""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from stepflow.exceptions import ValidationError, TestCaseValidationError
from stepflow.models import (
    BACKOFF_STRATEGIES,
    EXPECT_ERROR_TYPES,
    ConditionalBlock,
    ExpectErrorSpec,
    LoopBlock,
    ParallelConfig,
    RetryPolicy,
    Secret,
    Step,
    TestCase,
    TestSuite,
)


class PreservingLoader(yaml.SafeLoader):
    """YAML loader that keeps 'on'/'off'/'yes'/'no' as strings instead of booleans."""
    pass


# Only true/false stay booleans; 'on', 'off', 'yes', 'no' (any case) load as strings
PreservingLoader.yaml_implicit_resolvers = dict(PreservingLoader.yaml_implicit_resolvers)
for _first in ('o', 'O', 'y', 'Y', 'n', 'N'):
    if _first in PreservingLoader.yaml_implicit_resolvers:
        PreservingLoader.yaml_implicit_resolvers[_first] = [
            (tag, regexp) for tag, regexp in PreservingLoader.yaml_implicit_resolvers[_first]
            if tag != 'tag:yaml.org,2002:bool'
        ]


DURATION_PATTERN = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$')
DURATION_UNITS = {'ms': 0.001, 's': 1.0, 'm': 60.0, 'h': 3600.0}

MAX_CONCURRENCY_LIMIT = 100


def parse_duration(value: Union[int, float, str]) -> float:
    """
    Parse a duration into seconds.

    Accepts numbers (seconds) and strings like "500ms", "2s", "1.5m", "1h";
    a bare numeric string is seconds.

    Raises:
        ValueError: If the value is negative or not a duration
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"duration must not be negative: {value}")
        return float(value)
    if isinstance(value, str):
        match = DURATION_PATTERN.match(value)
        if match:
            return float(match.group(1)) * DURATION_UNITS[match.group(2) or 's']
    raise ValueError(f"invalid duration: {value!r}")


class TestCaseLoader:
    """Loads and validates test case YAML, collecting every error before raising."""

    __test__ = False

    TOP_LEVEL_FIELDS = {'testcase', 'description', 'variables', 'steps', 'skip', 'parallel', 'timeout'}
    VARIABLE_FIELDS = {'vars', 'secrets'}
    SECRET_FIELDS = {'value', 'file', 'mask_output'}
    STEP_FIELDS = {
        'name', 'action', 'args', 'options', 'result', 'skip', 'continue_on_failure',
        'retry', 'expect_error', 'if', 'for', 'while'
    }
    RETRY_FIELDS = {'attempts', 'delay', 'backoff', 'max_delay', 'jitter', 'conditions'}
    PARALLEL_FIELDS = {'enabled', 'max_concurrency', 'group_timeout', 'unsafe_actions'}
    CONTROL_BLOCKS = ('if', 'for', 'while')

    def __init__(self):
        self.errors: List[ValidationError] = []

    def load(self, path: Path) -> TestCase:
        """Load and validate a test case file."""
        data = self._read_yaml(Path(path))
        test_case = self.parse(data)
        if self.errors:
            self._raise_validation_errors()
        return test_case

    def parse(self, data: Any) -> TestCase:
        """
        Build a TestCase from already-loaded YAML data.

        Errors are accumulated in self.errors; callers decide when to raise.
        """
        if not isinstance(data, dict):
            self._add_error("Test case must be a YAML object/dictionary")
            return TestCase(name="")

        for key in data:
            if key not in self.TOP_LEVEL_FIELDS:
                self._add_error(f"Unknown field '{key}'", path=str(key))

        name = data.get('testcase')
        if not name or not isinstance(name, str):
            self._add_error("'testcase' field is required and must be a string", path='testcase')
            name = ""

        steps_data = data.get('steps')
        if not steps_data:
            self._add_error("'steps' field is required and must not be empty", path='steps')
            steps: List[Step] = []
        else:
            steps = self.parse_steps(steps_data, 'steps')

        variables, secrets = self.parse_variables(data.get('variables'), 'variables')

        timeout = 0.0
        if 'timeout' in data:
            timeout = self._duration(data['timeout'], 'timeout')

        return TestCase(
            name=name,
            steps=steps,
            description=str(data.get('description') or ""),
            variables=variables,
            secrets=secrets,
            skip=self._skip(data.get('skip'), 'skip'),
            parallel=self.parse_parallel(data.get('parallel'), 'parallel'),
            timeout=timeout
        )

    def parse_variables(self, data: Any, path: str):
        """Parse a `variables: {vars, secrets}` block."""
        if data is None:
            return {}, []
        if not isinstance(data, dict):
            self._add_error("'variables' must be a dictionary", path=path)
            return {}, []

        for key in data:
            if key not in self.VARIABLE_FIELDS:
                self._add_error(f"Unknown field '{key}'", path=f"{path}.{key}")

        variables = data.get('vars') or {}
        if not isinstance(variables, dict):
            self._add_error("'vars' must be a dictionary", path=f"{path}.vars")
            variables = {}

        secrets: List[Secret] = []
        secrets_data = data.get('secrets') or {}
        if not isinstance(secrets_data, dict):
            self._add_error("'secrets' must be a dictionary of name -> {value|file}", path=f"{path}.secrets")
            secrets_data = {}

        for name, config in secrets_data.items():
            secret_path = f"{path}.secrets.{name}"
            if not isinstance(config, dict):
                self._add_error("Secret must be a dictionary", path=secret_path)
                continue
            for key in config:
                if key not in self.SECRET_FIELDS:
                    self._add_error(f"Unknown field '{key}'", path=f"{secret_path}.{key}")
            if config.get('value') is None and not config.get('file'):
                self._add_error("Secret must have either 'value' or 'file' specified", path=secret_path)
                continue
            value = config.get('value')
            secrets.append(Secret(
                name=str(name),
                value=None if value is None else str(value),
                file=config.get('file'),
                mask_output=bool(config.get('mask_output', True))
            ))

        return dict(variables), secrets

    def parse_parallel(self, data: Any, path: str) -> Optional[ParallelConfig]:
        """Parse `parallel: true` or a parallel mapping."""
        if data is None:
            return None
        if isinstance(data, bool):
            return ParallelConfig(enabled=data)
        if not isinstance(data, dict):
            self._add_error("'parallel' must be a boolean or a dictionary", path=path)
            return None

        for key in data:
            if key not in self.PARALLEL_FIELDS:
                self._add_error(f"Unknown field '{key}'", path=f"{path}.{key}")

        config = ParallelConfig(enabled=bool(data.get('enabled', False)))

        if 'max_concurrency' in data:
            value = data['max_concurrency']
            if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= MAX_CONCURRENCY_LIMIT:
                self._add_error(
                    f"max_concurrency must be an integer between 1 and {MAX_CONCURRENCY_LIMIT}, got {value!r}",
                    path=f"{path}.max_concurrency"
                )
            else:
                config.max_concurrency = value

        if 'group_timeout' in data:
            config.group_timeout = self._duration(data['group_timeout'], f"{path}.group_timeout")

        if 'unsafe_actions' in data:
            actions = data['unsafe_actions']
            if not isinstance(actions, list) or not all(isinstance(a, str) for a in actions):
                self._add_error("'unsafe_actions' must be a list of action names", path=f"{path}.unsafe_actions")
            else:
                config.unsafe_actions = frozenset(actions)

        return config

    def parse_steps(self, data: Any, path: str) -> List[Step]:
        """Parse a list of step definitions, skipping invalid ones."""
        if not isinstance(data, list):
            self._add_error("must be a list of steps", path=path)
            return []

        steps = []
        for i, step_data in enumerate(data):
            step = self.parse_step(step_data, f"{path}[{i}]")
            if step is not None:
                steps.append(step)
        return steps

    def parse_step(self, data: Any, path: str) -> Optional[Step]:
        """Parse one step; returns None when it is invalid."""
        if not isinstance(data, dict):
            self._add_error("Step must be a dictionary", path=path)
            return None

        error_count = len(self.errors)

        for key in data:
            if key not in self.STEP_FIELDS:
                self._add_error(f"Unknown field '{key}'", path=f"{path}.{key}")

        blocks = [b for b in self.CONTROL_BLOCKS if b in data]
        if len(blocks) > 1:
            self._add_error(f"Step may set only one of if/for/while, got {blocks}", path=path)
        if not blocks and not data.get('action'):
            self._add_error("Step must have an 'action' or an if/for/while block", path=path)

        name = data.get('name', "")
        if not isinstance(name, str):
            self._add_error("'name' must be a string", path=f"{path}.name")
            name = str(name)

        action = data.get('action', "")
        if action and not isinstance(action, str):
            self._add_error("'action' must be a string", path=f"{path}.action")

        args = data.get('args', [])
        if args is None:
            args = []
        elif not isinstance(args, list):
            self._add_error("'args' must be a list", path=f"{path}.args")

        options = data.get('options', {})
        if options is None:
            options = {}
        elif not isinstance(options, dict):
            self._add_error("'options' must be a dictionary", path=f"{path}.options")

        result = data.get('result')
        if result is not None and (not isinstance(result, str) or not result):
            self._add_error("'result' must be a non-empty variable name", path=f"{path}.result")

        continue_on_failure = data.get('continue_on_failure', False)
        if not isinstance(continue_on_failure, bool):
            self._add_error("'continue_on_failure' must be a boolean", path=f"{path}.continue_on_failure")

        retry = self.parse_retry(data['retry'], f"{path}.retry") if 'retry' in data else None
        expect_error = self.parse_expect_error(data['expect_error'], f"{path}.expect_error") \
            if 'expect_error' in data else None

        if_block = self.parse_if(data['if'], f"{path}.if") if 'if' in data else None
        for_block = self.parse_loop(data['for'], f"{path}.for") if 'for' in data else None
        while_block = self.parse_loop(data['while'], f"{path}.while") if 'while' in data else None

        if len(self.errors) > error_count:
            return None

        return Step(
            name=name,
            action=action or "",
            args=args,
            options=options,
            result=result,
            skip=self._skip(data.get('skip'), f"{path}.skip"),
            continue_on_failure=continue_on_failure,
            retry=retry,
            expect_error=expect_error,
            if_block=if_block,
            for_block=for_block,
            while_block=while_block
        )

    def parse_retry(self, data: Any, path: str) -> Optional[RetryPolicy]:
        if not isinstance(data, dict):
            self._add_error("'retry' must be a dictionary", path=path)
            return None

        for key in data:
            if key not in self.RETRY_FIELDS:
                self._add_error(f"Unknown field '{key}'", path=f"{path}.{key}")

        attempts = data.get('attempts', 1)
        if isinstance(attempts, bool) or not isinstance(attempts, int) or attempts < 1:
            self._add_error(f"'attempts' must be an integer >= 1, got {attempts!r}", path=f"{path}.attempts")
            attempts = 1

        delay = self._duration(data['delay'], f"{path}.delay") if 'delay' in data else 1.0
        max_delay = self._duration(data['max_delay'], f"{path}.max_delay") if 'max_delay' in data else 0.0
        if max_delay > 0 and delay > max_delay:
            self._add_error(f"'delay' ({delay}s) must not exceed 'max_delay' ({max_delay}s)", path=f"{path}.delay")

        backoff = data.get('backoff', 'fixed')
        if backoff not in BACKOFF_STRATEGIES:
            self._add_error(
                f"Unknown backoff '{backoff}'. Supported: {', '.join(BACKOFF_STRATEGIES)}",
                path=f"{path}.backoff"
            )

        jitter = data.get('jitter', False)
        if not isinstance(jitter, bool):
            self._add_error("'jitter' must be a boolean", path=f"{path}.jitter")

        conditions = data.get('conditions') or []
        if isinstance(conditions, str):
            conditions = [conditions]
        if not isinstance(conditions, list):
            self._add_error("'conditions' must be a list", path=f"{path}.conditions")
            conditions = []

        return RetryPolicy(
            attempts=attempts,
            delay=delay,
            backoff=backoff,
            max_delay=max_delay,
            jitter=bool(jitter),
            conditions=[str(c) for c in conditions]
        )

    def parse_expect_error(self, data: Any, path: str) -> Optional[ExpectErrorSpec]:
        try:
            spec = ExpectErrorSpec.from_value(data)
        except ValueError as e:
            self._add_error(str(e), path=path)
            return None

        if spec.type not in EXPECT_ERROR_TYPES:
            self._add_error(
                f"Unknown expect_error type '{spec.type}'. Supported: {', '.join(EXPECT_ERROR_TYPES)}",
                path=f"{path}.type"
            )
        elif spec.type in ('matches', 'not_matches'):
            try:
                re.compile(spec.message)
            except re.error as e:
                self._add_error(f"Invalid regex pattern '{spec.message}': {e}", path=f"{path}.message")
        return spec

    def parse_if(self, data: Any, path: str) -> Optional[ConditionalBlock]:
        if not isinstance(data, dict):
            self._add_error("'if' must be a dictionary", path=path)
            return None
        for key in data:
            if key not in ('condition', 'then', 'else'):
                self._add_error(f"Unknown field '{key}'", path=f"{path}.{key}")
        condition = self._condition(data.get('condition'), path)
        return ConditionalBlock(
            condition=condition,
            then=self.parse_steps(data.get('then') or [], f"{path}.then"),
            else_=self.parse_steps(data.get('else') or [], f"{path}.else")
        )

    def parse_loop(self, data: Any, path: str) -> Optional[LoopBlock]:
        if not isinstance(data, dict):
            self._add_error("loop must be a dictionary", path=path)
            return None
        for key in data:
            if key not in ('condition', 'steps', 'max_iterations'):
                self._add_error(f"Unknown field '{key}'", path=f"{path}.{key}")

        max_iterations = data.get('max_iterations', 0)
        if isinstance(max_iterations, bool) or not isinstance(max_iterations, int) or max_iterations < 0:
            self._add_error("'max_iterations' must be a non-negative integer", path=f"{path}.max_iterations")
            max_iterations = 0

        return LoopBlock(
            condition=self._condition(data.get('condition'), path),
            steps=self.parse_steps(data.get('steps') or [], f"{path}.steps"),
            max_iterations=max_iterations
        )

    def _condition(self, value: Any, path: str) -> str:
        if value is None or value == "":
            self._add_error("'condition' is required", path=f"{path}.condition")
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def _skip(self, value: Any, path: str) -> Optional[Union[bool, str]]:
        if value is None or isinstance(value, (bool, str)):
            return value
        self._add_error("'skip' must be a boolean or a string", path=path)
        return None

    def _duration(self, value: Any, path: str) -> float:
        try:
            return parse_duration(value)
        except ValueError as e:
            self._add_error(str(e), path=path)
            return 0.0

    def _read_yaml(self, path: Path) -> Any:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return yaml.load(f, Loader=PreservingLoader)
        except (OSError, yaml.YAMLError) as e:
            self._add_error(f"Failed to load {path}: {e}")
            self._raise_validation_errors()

    def _add_error(self, message: str, path: str = "", exit_code: int = 2):
        """Add validation error."""
        self.errors.append(ValidationError(message, path, exit_code))

    def _raise_validation_errors(self):
        """Raise TestCaseValidationError with accumulated errors."""
        raise TestCaseValidationError(self.errors)


class TestSuiteLoader(TestCaseLoader):
    """Loads a suite file and every test case file it references."""

    __test__ = False

    SUITE_FIELDS = {
        'testsuite', 'name', 'description', 'variables', 'setup', 'teardown',
        'testcases', 'fail_fast', 'parallel'
    }

    def load(self, path: Path) -> TestSuite:
        """Load a suite; test case paths resolve relative to the suite file."""
        path = Path(path)
        data = self._read_yaml(path)
        suite = self.parse_suite(data, path.parent)
        if self.errors:
            self._raise_validation_errors()
        return suite

    def parse_suite(self, data: Any, base_dir: Path) -> TestSuite:
        if not isinstance(data, dict):
            self._add_error("Test suite must be a YAML object/dictionary")
            return TestSuite(name="")

        for key in data:
            if key not in self.SUITE_FIELDS:
                self._add_error(f"Unknown field '{key}'", path=str(key))

        name = data.get('testsuite') or data.get('name')
        if not name or not isinstance(name, str):
            self._add_error("'testsuite' field is required and must be a string", path='testsuite')
            name = ""

        variables, secrets = self.parse_variables(data.get('variables'), 'variables')

        fail_fast = data.get('fail_fast', False)
        if not isinstance(fail_fast, bool):
            self._add_error("'fail_fast' must be a boolean", path='fail_fast')
            fail_fast = False

        references = data.get('testcases')
        if not references or not isinstance(references, list):
            self._add_error("'testcases' field is required and must be a non-empty list", path='testcases')
            references = []

        test_cases = []
        for i, reference in enumerate(references):
            test_case = self._load_reference(reference, base_dir, f"testcases[{i}]")
            if test_case is not None:
                test_cases.append(test_case)

        return TestSuite(
            name=name,
            test_cases=test_cases,
            variables=variables,
            secrets=secrets,
            setup=self.parse_steps(data.get('setup') or [], 'setup'),
            teardown=self.parse_steps(data.get('teardown') or [], 'teardown'),
            fail_fast=fail_fast,
            parallel=self.parse_parallel(data.get('parallel'), 'parallel')
        )

    def _load_reference(self, reference: Any, base_dir: Path, path: str) -> Optional[TestCase]:
        """Load a `testcases` entry: a file path or {file, variables}."""
        overrides: Dict[str, Any] = {}
        if isinstance(reference, str):
            file = reference
        elif isinstance(reference, dict) and isinstance(reference.get('file'), str):
            file = reference['file']
            override_vars, _ = self.parse_variables(reference.get('variables'), f"{path}.variables")
            overrides = override_vars
        else:
            self._add_error("test case reference must be a path or {file, variables}", path=path)
            return None

        case_path = Path(file)
        if not case_path.is_absolute():
            case_path = base_dir / case_path

        loader = TestCaseLoader()
        try:
            test_case = loader.load(case_path)
        except TestCaseValidationError as e:
            for error in e.errors:
                nested = f"{path}({file}).{error.path}" if error.path else f"{path}({file})"
                self._add_error(error.message, path=nested)
            return None

        if overrides:
            test_case.variables = {**test_case.variables, **overrides}
        return test_case


def load_file(path: Path) -> Union[TestCase, TestSuite]:
    """
    Load a test case or a suite, depending on whether it has `testcases`.

    Raises:
        TestCaseValidationError: On any validation problem
    """
    path = Path(path)
    probe = TestCaseLoader()._read_yaml(path)
    if isinstance(probe, dict) and 'testcases' in probe:
        return TestSuiteLoader().load(path)
    return TestCaseLoader().load(path)
