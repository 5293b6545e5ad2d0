"""Run command implementation."""

import logging
from argparse import Namespace
from pathlib import Path
from typing import Dict, List, Optional

from stepflow.engine import TestEngine
from stepflow.exceptions import TestCaseValidationError
from stepflow.loader import MAX_CONCURRENCY_LIMIT, load_file
from stepflow.models import ParallelConfig, StepStatus, TestCase, TestResult, TestSuite
from stepflow.security.secrets import SecretsManager, SecretsMaskingFilter
from stepflow.workflow.suite import SuiteRunner


logger = logging.getLogger(__name__)


def parse_vars(args: Namespace) -> Dict[str, str]:
    """Parse --var KEY=VALUE overrides."""
    variables = {}
    for item in args.var or []:
        if '=' not in item:
            raise ValueError(f"Invalid variable format: {item}. Expected KEY=VALUE")
        key, value = item.split('=', 1)
        variables[key] = value
    return variables


def configure_logging(args: Namespace, secrets_manager: SecretsManager) -> None:
    """Configure root logging from CLI flags and mask secrets in every handler."""
    log_level = getattr(logging, args.log_level.upper())
    if args.debug:
        log_level = logging.DEBUG
    elif args.quiet:
        log_level = logging.ERROR
    elif args.verbose:
        log_level = logging.DEBUG

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    root = logging.getLogger()
    root.setLevel(log_level)

    masking_filter = SecretsMaskingFilter(secrets_manager)
    for handler in root.handlers:
        handler.addFilter(masking_filter)


def apply_parallel_overrides(
    config: Optional[ParallelConfig],
    args: Namespace
) -> Optional[ParallelConfig]:
    """Merge --parallel and --max-concurrency into a parallel config."""
    if not args.parallel and args.max_concurrency is None:
        return config

    config = config or ParallelConfig()
    if args.parallel:
        config.enabled = True
    if args.max_concurrency is not None:
        config.max_concurrency = args.max_concurrency
    return config


def format_summary(name: str, result: TestResult) -> str:
    line = (
        f"{result.status.value:<8} {name} "
        f"({result.passed_steps} passed, {result.failed_steps} failed, "
        f"{result.skipped_steps} skipped, {result.duration:.2f}s)"
    )
    if result.error and result.status != StepStatus.PASSED:
        line += f": {result.error}"
    return line


def run_test_case(engine: TestEngine, test_case: TestCase, variables: Dict[str, str]) -> List[StepStatus]:
    result = engine.execute_test_case(test_case, variables=variables)
    print(format_summary(test_case.name, result))
    return [result.status]


def run_suite(engine: TestEngine, suite: TestSuite, variables: Dict[str, str]) -> List[StepStatus]:
    suite.variables = {**suite.variables, **variables}
    suite_result = SuiteRunner(engine).run(suite)

    if suite_result.setup_result is not None and suite_result.setup_result.status == StepStatus.FAILED:
        print(format_summary(f"{suite.name} setup", suite_result.setup_result))

    for outcome in suite_result.case_results:
        if outcome.result is not None:
            print(format_summary(outcome.test_case.name, outcome.result))
        else:
            print(f"{outcome.status.value:<8} {outcome.test_case.name}: {outcome.error}")

    if suite_result.teardown_result is not None and suite_result.teardown_result.status == StepStatus.FAILED:
        print(format_summary(f"{suite.name} teardown", suite_result.teardown_result))

    print(f"Suite '{suite.name}': {suite_result.status.value} in {suite_result.duration:.2f}s")
    return [suite_result.status]


def run_tests(args: Namespace) -> int:
    """
    Run a test case or suite file.

    Returns:
        0 when everything passed or was skipped, 1 on failures,
        2 on validation errors
    """
    secrets_manager = SecretsManager()
    configure_logging(args, secrets_manager)

    try:
        path = Path(args.file).resolve()
        if not path.exists():
            logger.error(f"Test file not found: {path}")
            return 1

        if args.max_concurrency is not None and not 1 <= args.max_concurrency <= MAX_CONCURRENCY_LIMIT:
            logger.error(f"Validation error: --max-concurrency must be between 1 and {MAX_CONCURRENCY_LIMIT}")
            return 2

        logger.info(f"Loading {path}")
        try:
            loaded = load_file(path)
        except TestCaseValidationError as e:
            for error in e.errors:
                location = f" at {error.path}" if error.path else ""
                logger.error(f"Validation error{location}: {error.message}")
            return e.exit_code

        if args.dry_run:
            logger.info("[DRY RUN] Validation successful")
            return 0

        variables = parse_vars(args)
        secrets_manager.base_dir = path.parent
        engine = TestEngine(secrets_manager=secrets_manager)

        loaded.parallel = apply_parallel_overrides(loaded.parallel, args)
        if isinstance(loaded, TestSuite):
            statuses = run_suite(engine, loaded, variables)
        else:
            statuses = run_test_case(engine, loaded, variables)

        return 1 if StepStatus.FAILED in statuses else 0

    except ValueError as e:
        logger.error(f"Validation error: {e}")
        return 2
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1
