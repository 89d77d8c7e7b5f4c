#!/usr/bin/env python3
"""CLI entry point for the reconciliation engine.

Usage:
    reconcile validate -f <document>
    reconcile plan -f <document> [--destroy] [--json-output]
    reconcile apply -f <document> --backend-url <url> [--dry-run] [--json-output]
    reconcile destroy -f <document> --backend-url <url> [--yes] [--dry-run]
    reconcile state -f <document>
"""

import argparse
import json
import logging
import os
import signal
import sys
from typing import Optional

from common import BuildError, PlanInfeasible, ReconcileError, StoreCorrupt, StoreError
from config import ConfigError, EngineSettings, load_settings
from document import Document, load_document
from reconciler.engine import Reconciler
from reconciler.graph import ResourceGraph
from reconciler.planner import format_plan
from reconciler.providers import HttpBackend, ProviderRegistry
from reconciler.state import StateStore

COMMANDS = {
    'validate': 'Check a document for duplicate, dangling or cyclic references',
    'plan': 'Show the changes needed to reach the desired state',
    'apply': 'Apply the plan through a provisioning backend',
    'destroy': 'Destroy every resource recorded in state',
    'state': 'List resources recorded in state',
}

logger = logging.getLogger(__name__)


def _common_parser(verb: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'reconcile {verb}',
        description=COMMANDS[verb],
    )
    parser.add_argument(
        '--file', '-f',
        help='Path to desired-state document (YAML or JSON)',
    )
    parser.add_argument(
        '--document-json',
        help='Inline document JSON',
    )
    parser.add_argument(
        '--config',
        help='Engine config file (default: $RECONCILE_CONFIG or reconcile.yaml)',
    )
    parser.add_argument(
        '--state-dir',
        help='Override state directory',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _backend_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--backend-url',
        default=os.environ.get('RECONCILE_BACKEND_URL'),
        help='Provisioning backend URL (override: RECONCILE_BACKEND_URL env var)',
    )
    parser.add_argument(
        '--backend-token',
        default=os.environ.get('RECONCILE_BACKEND_TOKEN'),
        help='Bearer token for the backend (override: RECONCILE_BACKEND_TOKEN env var)',
    )
    parser.add_argument(
        '--insecure',
        action='store_true',
        help='Skip TLS certificate verification for the backend',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr if json_output else sys.stdout)
    handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    ))
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _load(args) -> tuple[Document, EngineSettings]:
    """Load document and merged settings from parsed args.

    Raises:
        SystemExit: On load errors
    """
    if not args.file and not args.document_json:
        print("Error: specify a document with -f or --document-json", file=sys.stderr)
        sys.exit(1)

    try:
        document = load_document(file_path=args.file, json_str=args.document_json)
        settings = load_settings(args.config, overrides=document.settings)
        if args.state_dir:
            settings = settings.merged({'state_dir': args.state_dir})
    except ConfigError as e:
        print(f"Error loading document: {e}", file=sys.stderr)
        sys.exit(1)
    return document, settings


def _registry(args) -> ProviderRegistry:
    if not getattr(args, 'backend_url', None):
        return ProviderRegistry()
    return ProviderRegistry(HttpBackend(
        args.backend_url,
        token=args.backend_token,
        verify=not args.insecure,
    ))


def _report_error(e: ReconcileError) -> int:
    if isinstance(e, BuildError):
        stage = 'Invalid document'
    elif isinstance(e, PlanInfeasible):
        stage = 'Planning failed'
    elif isinstance(e, StoreError):
        stage = 'State store error'
    else:
        stage = 'Error'
    print(f"{stage}: {e}", file=sys.stderr)
    return 1


def validate_main(argv: list) -> int:
    """Handle 'validate' verb."""
    args = _common_parser('validate').parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    document, _ = _load(args)
    try:
        graph = ResourceGraph(document)
    except BuildError as e:
        return _report_error(e)

    count = len(graph)
    print(f"Document '{document.name}' is valid "
          f"({count} resource{'s' if count != 1 else ''}, {len(graph.edges)} references)")
    return 0


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser('plan')
    parser.add_argument(
        '--destroy',
        action='store_true',
        help='Plan destruction of every recorded resource',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    document, settings = _load(args)

    reconciler = Reconciler(document, ProviderRegistry(), settings=settings)
    try:
        plan = reconciler.plan(destroy=args.destroy)
    except ReconcileError as e:
        return _report_error(e)

    if args.json_output:
        print(json.dumps(plan.to_dict(), indent=2))
    else:
        print(format_plan(plan, document.name))
    return 0


def _run(verb: str, argv: list) -> int:
    parser = _common_parser(verb)
    _backend_args(parser)
    if verb == 'destroy':
        parser.add_argument(
            '--yes', '-y',
            action='store_true',
            help='Skip confirmation prompt',
        )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    document, settings = _load(args)

    if not args.dry_run and not args.backend_url:
        print("Error: --backend-url (or RECONCILE_BACKEND_URL) is required", file=sys.stderr)
        return 1

    if verb == 'destroy' and not args.dry_run and not args.yes:
        print(f"\nWARNING: This will destroy all resources recorded for '{document.name}'.")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1

    reconciler = Reconciler(document, _registry(args), settings=settings)
    previous = signal.signal(signal.SIGINT, lambda signum, frame: reconciler.cancel())
    try:
        report = reconciler.apply(dry_run=args.dry_run, destroy=(verb == 'destroy'))
    except ReconcileError as e:
        return _report_error(e)
    finally:
        signal.signal(signal.SIGINT, previous)

    if args.json_output:
        print(json.dumps(report.to_dict(), indent=2))
    elif not args.dry_run:
        for name, value in report.outputs.items():
            print(f"{name} = {value}")
        for identity in report.failed:
            print(f"  ✗ {identity}: {report.get(identity).error}", file=sys.stderr)
        for identity in report.blocked:
            print(f"  - {identity}: {report.get(identity).error}", file=sys.stderr)

    return 0 if report.success else 1


def state_main(argv: list) -> int:
    """Handle 'state' verb."""
    args = _common_parser('state').parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    document, settings = _load(args)

    reconciler = Reconciler(document, ProviderRegistry(), settings=settings)
    store: StateStore = reconciler.store
    try:
        snapshot = store.snapshot()
    except StoreCorrupt as e:
        return _report_error(e)

    if args.json_output:
        print(json.dumps({str(i): s.to_dict() for i, s in snapshot.items()}, indent=2))
        return 0
    if not snapshot:
        print(f"No resources recorded for '{document.name}' in {store.root}")
        return 0
    for identity, state in snapshot.items():
        print(f"{str(identity):<50} {state.resource_id}")
    return 0


def print_usage() -> None:
    print("Usage: reconcile <command> [options]")
    print()
    print("Commands:")
    for name, desc in COMMANDS.items():
        print(f"  {name:<10} {desc}")
    print()
    print("Run 'reconcile <command> --help' for command-specific options.")


def main(argv: Optional[list] = None) -> int:
    """Dispatch to command handlers."""
    if argv is None:
        argv = sys.argv[1:]
    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0

    command, rest = argv[0], argv[1:]
    if command == 'validate':
        return validate_main(rest)
    if command == 'plan':
        return plan_main(rest)
    if command in ('apply', 'destroy'):
        return _run(command, rest)
    if command == 'state':
        return state_main(rest)

    print(f"Error: Unknown command '{command}'", file=sys.stderr)
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
