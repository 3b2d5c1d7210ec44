"""CLI handlers for reconciliation commands.

Usage:
    pve-dsc reconcile --manifest <path> [--dry-run] [--json-output] [--verbose]
    pve-dsc manifest validate --manifest <path> [--json-output]
    pve-dsc inventory list [--json-output]
    pve-dsc inventory adopt [--manifest <path>]
"""

import argparse
import json
import logging
import sys

import yaml

from config import ConfigError, EngineConfig, load_engine_config
from locking import LockTimeout
from manifest import load_manifest
from pve.host import HostQueryError, PveHost
from reconcile.coordinator import EXIT_FATAL, EXIT_OK, RunCoordinator, exit_code
from reconcile.gate import adoption_fragment
from reconcile.inventory import InventoryScanner

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def _setup_logging(verbose: bool, json_output: bool, log_file: str | None = None) -> None:
    """Configure logging based on flags."""
    root_logger = logging.getLogger()
    if json_output:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        root_logger.addHandler(stderr_handler)

    if log_file:
        # Rotation is left to logrotate
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        root_logger.addHandler(file_handler)

    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _add_common_args(parser: argparse.ArgumentParser, json_output: bool = True) -> None:
    parser.add_argument(
        '--config', '-c',
        help='Engine config file (default: $PVE_DSC_CONFIG or /etc/pve-dsc/config.yaml)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    if json_output:
        parser.add_argument(
            '--json-output',
            action='store_true',
            help='Output structured JSON to stdout (logs to stderr)',
        )


def _load_config(path: str | None) -> EngineConfig | None:
    """Load engine config, printing the error on failure."""
    try:
        return load_engine_config(path)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None


def reconcile_main(argv: list) -> int:
    """Handle 'reconcile'."""
    parser = argparse.ArgumentParser(
        prog='pve-dsc reconcile',
        description='Reconcile the node against a manifest',
    )
    parser.add_argument(
        '--manifest', '-M',
        required=True,
        help='Path to manifest file (YAML or JSON)',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Report only; never mutate the host',
    )
    parser.add_argument(
        '--log-file',
        help='Also append log lines to this file',
    )
    _add_common_args(parser)
    args = parser.parse_args(argv)
    try:
        _setup_logging(args.verbose, args.json_output, args.log_file)
    except OSError as e:
        print(f"Error: cannot open log file: {e}", file=sys.stderr)
        return EXIT_FATAL

    config = _load_config(args.config)
    if config is None:
        return EXIT_FATAL

    coordinator = RunCoordinator(config)
    try:
        report = coordinator.run(args.manifest, live=not args.dry_run)
    except (LockTimeout, ConfigError, HostQueryError, OSError) as e:
        logger.error(f"Run aborted: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL

    if args.json_output:
        print(report.to_json())
    else:
        print(report.to_text(), end='')
    return exit_code(report)


def validate_main(argv: list) -> int:
    """Handle 'manifest validate': offline check, no host access."""
    parser = argparse.ArgumentParser(
        prog='pve-dsc manifest validate',
        description='Validate manifest structure and values',
    )
    parser.add_argument(
        '--manifest', '-M',
        required=True,
        help='Path to manifest file (YAML or JSON)',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON',
    )
    args = parser.parse_args(argv)

    try:
        manifest = load_manifest(args.manifest)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL

    if args.json_output:
        print(json.dumps({
            'valid': manifest.is_valid,
            'resources': len(manifest.resources),
            'errors': manifest.errors,
        }, indent=2))
    elif manifest.is_valid:
        print(f"Manifest OK: {len(manifest.resources)} resource(s)")
    else:
        for error in manifest.errors:
            print(f"ERROR: {error}")
        print(f"\n{len(manifest.errors)} error(s)")

    return EXIT_OK if manifest.is_valid else EXIT_FATAL


def inventory_list_main(argv: list) -> int:
    """Handle 'inventory list': show guests as the engine sees them."""
    parser = argparse.ArgumentParser(
        prog='pve-dsc inventory list',
        description='List guests on the node',
    )
    _add_common_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    config = _load_config(args.config)
    if config is None:
        return EXIT_FATAL

    try:
        entries = InventoryScanner(PveHost(config), config).scan()
    except HostQueryError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL

    if args.json_output:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return EXIT_OK

    print(f"{'ID':>6}  {'KIND':<15} {'POWER':<8} {'MEM':>6} {'CORES':>5}  {'HOSTNAME':<20} STORAGE")
    for e in entries:
        print(f"{e.id:>6}  {e.kind:<15} {e.power:<8} {e.memory or '-':>6} {e.cores or '-':>5}  "
              f"{e.hostname or '-':<20} {e.storage or '-'}")
    return EXIT_OK


def adopt_main(argv: list) -> int:
    """Handle 'inventory adopt': print manifest entries for foreign guests.

    Without --manifest every scanned guest is foreign, which bootstraps a
    manifest for an existing node.
    """
    parser = argparse.ArgumentParser(
        prog='pve-dsc inventory adopt',
        description='Print manifest entries for guests the manifest does not declare',
    )
    parser.add_argument(
        '--manifest', '-M',
        help='Manifest to compare against (default: treat every guest as foreign)',
    )
    _add_common_args(parser, json_output=False)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, json_output=True)

    config = _load_config(args.config)
    if config is None:
        return EXIT_FATAL

    try:
        if args.manifest:
            report = RunCoordinator(config).run(args.manifest, live=False)
            fragments = [report.gate.adoptions[e.id] for e in report.foreign]
        else:
            entries = InventoryScanner(PveHost(config), config).scan()
            fragments = [adoption_fragment(e) for e in entries]
    except (LockTimeout, ConfigError, HostQueryError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL

    if not fragments:
        print("# No foreign guests")
        return EXIT_OK
    print(yaml.safe_dump(fragments, sort_keys=False, default_flow_style=False), end='')
    return EXIT_OK
