"""Command-line interface for laneboard configuration and board previews."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError


if TYPE_CHECKING:
    from collections.abc import Sequence

    from .board import Board


def main(argv: Sequence[str] | None = None) -> int:
    """Run the main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    parser = argparse.ArgumentParser(
        prog="laneboard",
        description="laneboard configuration and board preview tools",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show or export configuration",
    )
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )
    config_group.add_argument(
        "--toml",
        action="store_true",
        help="Export configuration as TOML",
    )
    config_group.add_argument(
        "--env",
        action="store_true",
        help="Export configuration as environment variables",
    )
    config_group.add_argument(
        "--sources",
        action="store_true",
        help="Show configuration file sources",
    )
    config_parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Output file path (default: stdout)",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Initialize a laneboard.toml configuration file",
    )
    init_parser.add_argument(
        "--force",
        "-f",
        action="store_true",
        help="Overwrite existing configuration file",
    )
    init_parser.add_argument(
        "--path",
        "-p",
        type=str,
        default="laneboard.toml",
        help="Path for configuration file (default: laneboard.toml)",
    )

    # build command
    build_parser = subparsers.add_parser(
        "build",
        help="Build lanes from a JSON record file and print them as JSON",
    )
    build_parser.add_argument("records", type=str, help="JSON file holding a list of records")
    build_parser.add_argument(
        "--config",
        "-c",
        type=str,
        required=True,
        help="JSON file holding the board configuration",
    )
    build_parser.add_argument(
        "--metadata",
        "-m",
        type=str,
        default=None,
        help="JSON file holding card object metadata",
    )
    build_parser.add_argument(
        "--parent",
        action="append",
        default=None,
        help="Selected parent record id (repeatable)",
    )
    build_parser.add_argument("--search", type=str, default=None, help="Search text")
    build_parser.add_argument("--sort", type=str, default=None, help="Sort field")
    build_parser.add_argument(
        "--descending",
        action="store_true",
        help="Sort the primary field descending",
    )
    build_parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Output file path (default: stdout)",
    )

    args = parser.parse_args(argv)

    if args.command == "config":
        return handle_config(args)
    if args.command == "init":
        return handle_init(args)
    if args.command == "build":
        return handle_build(args)
    parser.print_help()
    return 0


def _emit(output: str, path: str | None) -> None:
    if path:
        Path(path).write_text(output, encoding="utf-8")
        print(f"Output written to {path}")
    else:
        print(output)


def handle_config(args: argparse.Namespace) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .config import LaneBoardSettings

    settings = LaneBoardSettings()

    if args.sources:
        return show_config_sources()

    if args.toml:
        output = settings.to_toml()
    elif args.env:
        output = settings.to_env()
    else:
        output = settings.show()

    _emit(output, args.output)
    return 0


def handle_init(args: argparse.Namespace) -> int:
    """Handle the init command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .config import LaneBoardSettings

    path = Path(args.path)

    if path.exists() and not args.force:
        print(f"Error: {path} already exists. Use --force to overwrite.", file=sys.stderr)
        return 1

    settings = LaneBoardSettings()
    toml_content = settings.to_toml()

    header = """# laneboard Configuration File
#
# Environment variables can override any setting:
#   LANEBOARD_LOCALE__LOCALE="de-DE"
#   LANEBOARD_LOCALE__TIME_ZONE="Europe/Berlin"
#   LANEBOARD_TIMING__SEARCH_DEBOUNCE_MS=300
#   LANEBOARD_VIRTUALIZATION__PERFORMANCE_THRESHOLD=0
#
# Use nested keys with __ (double underscore) delimiter.

"""
    path.write_text(header + toml_content, encoding="utf-8")
    print(f"Created {path}")

    return 0


def _load_json(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def handle_build(args: argparse.Namespace) -> int:
    """Handle the build command.

    Loads records, configuration and optional metadata into an
    in-memory backend, mounts a board on it and prints the lanes.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code; 1 when inputs are unreadable or the board reports an error.
    """
    from .models import BoardConfig, ObjectMetadata, Record

    try:
        records = [Record.model_validate(item) for item in _load_json(args.records)]
        config = BoardConfig.model_validate(_load_json(args.config))
        metadata = ObjectMetadata.model_validate(_load_json(args.metadata)) if args.metadata else None
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        print(f"Error: unable to read input: {e}", file=sys.stderr)
        return 1

    board = asyncio.run(_build_board(records, config, metadata, args))

    if board.error_message:
        print(f"Error: {board.error_message}", file=sys.stderr)
        return 1
    if board.warning_message:
        print(f"Warning: {board.warning_message}", file=sys.stderr)

    payload = {
        "title": config.board_title,
        "lanes": [lane.model_dump(mode="json") for lane in board.lanes],
        "filters": [definition.model_dump(mode="json") for definition in board.filter_definitions],
    }
    _emit(json.dumps(payload, indent=2, ensure_ascii=False), args.output)
    return 0


async def _build_board(
    records: list[Any],
    config: Any,
    metadata: Any,
    args: argparse.Namespace,
) -> Board:
    from .backend import MemoryBackend
    from .board import Board

    backend = MemoryBackend(records, {metadata.api_name: metadata} if metadata else None)
    board = Board(config, backend)
    if args.parent:
        board.selected_parent_ids = tuple(args.parent)
    await board.connect()
    if args.sort:
        board.set_sort_field(args.sort)
    if args.descending:
        board.toggle_sort_direction()
    if args.search:
        board.set_search_text(args.search, immediate=True)
    await board.settle()
    board.disconnect()
    return board


def show_config_sources() -> int:
    """Show configuration file sources and their status.

    Returns
    -------
    int
        Exit code.
    """
    from .config import user_config_path

    sources = [
        ("Built-in defaults", None),
        ("pyproject.toml [tool.laneboard]", Path("pyproject.toml")),
        ("./laneboard.toml", Path("laneboard.toml")),
        ("User config", user_config_path()),
    ]
    env_file = os.environ.get("LANEBOARD_CONFIG_FILE")
    if env_file:
        sources.append(("LANEBOARD_CONFIG_FILE", Path(env_file)))

    print("Configuration Sources (in order of precedence):\n")
    print(f"{'Source':<40} {'Status':<15} {'Path'}")
    print("-" * 80)

    for name, path in sources:
        if path is None:
            status, path_display = "✓ Active", ""
        elif path.exists():
            status, path_display = "✓ Found", str(path)
        else:
            status, path_display = "✗ Not found", str(path)
        print(f"{name:<40} {status:<15} {path_display}")

    env_vars = [k for k in os.environ if k.startswith("LANEBOARD_")]
    if env_vars:
        status = f"✓ {len(env_vars)} vars"
        path_display = ", ".join(env_vars[:3]) + ("..." if len(env_vars) > 3 else "")
    else:
        status, path_display = "✗ No vars", ""
    print(f"{'Environment variables':<40} {status:<15} {path_display}")

    print("\nNote: Later sources override earlier ones.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
