"""Main CLI entry point for stepflow."""

import argparse
import sys
from typing import Optional

from .commands import run_tests


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the stepflow CLI."""
    parser = argparse.ArgumentParser(
        prog='stepflow',
        description='Declarative step-based test runner'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    run_parser = subparsers.add_parser('run', help='Run a test case or test suite')
    run_parser.add_argument(
        'file',
        type=str,
        help='Path to test case or test suite YAML file'
    )
    run_parser.add_argument(
        '--var',
        action='append',
        metavar='KEY=VALUE',
        help='Override a variable (can be specified multiple times)'
    )
    run_parser.add_argument(
        '--parallel',
        action='store_true',
        help='Run steps (or suite test cases) in parallel groups'
    )
    run_parser.add_argument(
        '--max-concurrency',
        type=int,
        metavar='N',
        help='Maximum concurrent steps or test cases (1-100)'
    )
    run_parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Validate without execution'
    )
    run_parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    run_parser.add_argument(
        '--quiet',
        action='store_true',
        help='Suppress non-error output'
    )
    run_parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose output'
    )
    run_parser.add_argument(
        '--log-level',
        choices=['debug', 'info', 'warn', 'error'],
        default='info',
        help='Set log level'
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if parsed_args.command == 'run':
        return run_tests(parsed_args)

    parser.print_help()
    return 1


if __name__ == '__main__':
    sys.exit(main())
