#!/usr/bin/env python3
"""CLI entry point for pve-dsc.

Noun-action subcommands:
- pve-dsc reconcile --manifest /etc/pve-dsc/manifest.yaml [--dry-run]
- pve-dsc manifest validate --manifest manifest.yaml
- pve-dsc inventory list
- pve-dsc inventory adopt --manifest manifest.yaml

Exit codes: 0 ok (including every dry run; a blocked dry run reports
FOREIGN:/ERROR: markers on stdout), 1 fatal, 2 usage, 3 live run blocked by
policy, 4 applied with failures.
"""

import logging
import subprocess
import sys
from pathlib import Path

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "reconcile": "Converge the node to its manifest (dry-run or live)",
    "manifest": "Manifest utilities (validate)",
    "inventory": "Host inventory (list/adopt)",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version():
    """Get version from git tags, falling back to the installed metadata."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except OSError:
        pass
    from importlib.metadata import PackageNotFoundError, version
    try:
        return version('pve-dsc')
    except PackageNotFoundError:
        return 'dev'


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"pve-dsc {get_version()}")
    print()
    print("Usage: pve-dsc <noun> [action] [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'pve-dsc <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  pve-dsc reconcile --manifest /etc/pve-dsc/manifest.yaml --dry-run")
    print("  pve-dsc reconcile --manifest /etc/pve-dsc/manifest.yaml")
    print("  pve-dsc manifest validate --manifest manifest.yaml")
    print("  pve-dsc inventory adopt > manifest.yaml")


def dispatch_manifest(argv: list) -> int:
    """Dispatch 'manifest' noun to action-specific handler.

    Args:
        argv: Arguments after 'manifest' (e.g., ['validate', '--manifest', 'm.yaml'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: pve-dsc manifest <action> [options]")
        print()
        print("Actions:")
        print("  validate  Check manifest structure and values (no host access)")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action == "validate":
        from reconcile.cli import validate_main
        rc: int = validate_main(rest)
        return rc

    print(f"Error: Unknown manifest action '{action}'")
    print("Available actions: validate")
    return 1


def dispatch_inventory(argv: list) -> int:
    """Dispatch 'inventory' noun to action-specific handler."""
    if not argv or argv[0].startswith('-'):
        print("Usage: pve-dsc inventory <action> [options]")
        print()
        print("Actions:")
        print("  list   Show guests on the node")
        print("  adopt  Print manifest entries for foreign guests (YAML)")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action == "list":
        from reconcile.cli import inventory_list_main
        rc: int = inventory_list_main(rest)
        return rc
    if action == "adopt":
        from reconcile.cli import adopt_main
        rc = adopt_main(rest)
        return rc

    print(f"Error: Unknown inventory action '{action}'")
    print("Available actions: list, adopt")
    return 1


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "reconcile", "inventory")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "reconcile":
        from reconcile.cli import reconcile_main
        rc: int = reconcile_main(argv)
        return rc

    if noun == "manifest":
        return dispatch_manifest(argv)

    if noun == "inventory":
        return dispatch_inventory(argv)

    print(f"Error: Unknown command '{noun}'")
    print_usage()
    return 1


def main(argv: list | None = None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0

    if argv[0] == '--version':
        print(f"pve-dsc {get_version()}")
        return 0

    return dispatch_noun(argv[0], argv[1:])


if __name__ == '__main__':
    sys.exit(main())
