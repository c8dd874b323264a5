"""
Canopy CLI — Database bootstrap and configuration checks.

Commands:
- canopy init    — Create the items / item_memberships tables
- canopy check   — Validate canopy.yaml and print the effective limits
"""

from __future__ import annotations

import argparse
import logging
from typing import Optional

from canopy.engine.errors import CanopyConfigError

logger = logging.getLogger("canopy.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="canopy",
        description="Canopy — hierarchical items with inherited permissions",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # canopy init
    init_parser = subparsers.add_parser("init", help="Create the database schema")
    init_parser.add_argument(
        "--config", default="canopy.yaml", help="Path to canopy.yaml (default: canopy.yaml)"
    )

    # canopy check
    check_parser = subparsers.add_parser("check", help="Validate configuration")
    check_parser.add_argument(
        "--config", default="canopy.yaml", help="Path to canopy.yaml (default: canopy.yaml)"
    )

    args = parser.parse_args(argv)

    if args.command == "init":
        return cmd_init(args)
    elif args.command == "check":
        return cmd_check(args)
    else:
        parser.print_help()
        return 0


def cmd_init(args: argparse.Namespace) -> int:
    """Load config, connect, create tables."""
    from sqlalchemy.exc import SQLAlchemyError

    from canopy.db.session import dispose, init_db
    from canopy.engine.config import load_config

    try:
        config = load_config(args.config)
        print(f"[OK] Loaded config from {args.config}")
    except CanopyConfigError as e:
        print(f"[ERROR] Failed to load config: {e.message}")
        return 1

    try:
        factory = init_db(config.database.url, create_tables=True)
        dispose(factory)
    except SQLAlchemyError as e:
        print(f"[ERROR] Failed to create tables: {e}")
        return 1

    print("[OK] Database tables created")
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    """Validate config and print the limits in effect."""
    from canopy.engine.config import load_config

    try:
        config = load_config(args.config)
    except CanopyConfigError as e:
        print(f"[ERROR] {e.message}")
        return 1

    print(f"[OK] {config.name}: valid ({config.environment})")
    for key, value in config.limits.model_dump().items():
        print(f"  {key:<28} {value}")
    return 0
