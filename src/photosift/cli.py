"""CLI argument parsing and subcommand dispatch."""

from __future__ import annotations

from photosift.commands import Commands
from photosift.config import create_config_interactive
from photosift.config import DEFAULT_EXCLUDE_PATTERNS
from photosift.config import load_config
from photosift.config import merge_config_into_args
from photosift.library import Library
from photosift.logging import configure_logging
from photosift.preferences import EXCLUDE_PATTERNS
from photosift.preferences import SCAN_DEPTH
from photosift.preferences import WATCH_ENABLED
from photosift.progress import Progress
from photosift.trash import format_size
from tqdm import tqdm

import argparse
import asyncio
import logging
import pathlib


logger = logging.getLogger(__name__)

_PHASE_LABELS = {
    "quick": "Quick scan",
    "full": "Full hash",
    "hash": "Hashing",
    "index": "Indexing",
    "trash": "Trashing",
}


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="photosift",
        description="Photo library duplicate finder: scans, hashes, groups and trashes redundant copies.",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Show debug output")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only show warnings and errors")
    parser.add_argument("--configure", action="store_true", help="Interactively create config.toml")
    parser.add_argument("--db", dest="db_path", type=pathlib.Path, default=None, help="Library database file")
    parser.add_argument("--log-file", type=pathlib.Path, default=None, help="Append debug log to this file")
    parser.add_argument("--scan-depth", type=int, default=None, help="Maximum recursion depth (1-20)")
    parser.add_argument(
        "--exclude", action="append", default=None, metavar="SUBSTRING",
        help="Skip entries whose name contains SUBSTRING. Repeatable.",
    )
    sub = parser.add_subparsers(dest="command")

    # --- root ---
    p_root = sub.add_parser("root", help="Show, set or clear the root directory")
    p_root.add_argument("action", choices=["get", "set", "clear"], help="What to do with the root")
    p_root.add_argument("path", type=pathlib.Path, nargs="?", default=None, help="New root (for 'set')")

    # --- scan ---
    p_scan = sub.add_parser("scan", help="Count files, images and bytes under a directory")
    p_scan.add_argument("path", type=pathlib.Path, nargs="?", default=None, help="Directory (default: root)")
    p_scan.add_argument("--no-recursive", dest="recursive", action="store_false", help="Only the top level")

    # --- dupes ---
    p_dupes = sub.add_parser("dupes", help="Find duplicate files with two-phase hashing")
    p_dupes.add_argument("path", type=pathlib.Path, nargs="?", default=None, help="Directory (default: root)")
    p_dupes.add_argument("--no-recursive", dest="recursive", action="store_false", help="Only the top level")
    p_dupes.add_argument("--delete", action="store_true", help="Trash all but the first file of each group")

    # --- index ---
    p_index = sub.add_parser("index", help="Hash images into the library and rebuild duplicate groups")
    p_index.add_argument("path", type=pathlib.Path, nargs="?", default=None, help="Directory (default: root)")

    # --- stats ---
    sub.add_parser("stats", help="Show duplicate statistics of the library")

    # --- groups ---
    p_groups = sub.add_parser("groups", help="List persisted duplicate groups")
    p_groups.add_argument("--limit", type=int, default=20, help="Number of groups to show (default: 20)")

    # --- trash ---
    p_trash = sub.add_parser("trash", help="Move files to the system trash")
    p_trash.add_argument("paths", type=pathlib.Path, nargs="+", help="Files to trash")

    # --- watch ---
    p_watch = sub.add_parser("watch", help="Watch the root directory and keep the library current")
    p_watch.add_argument("--seconds", type=float, default=None, help="Stop after this many seconds")
    p_watch.add_argument("--interval", dest="watch_interval", type=float, default=None, help="Poll interval")
    p_watch.add_argument("--depth", dest="watch_depth", type=int, default=None, help="Watch depth")

    return parser


class _PhaseBars:
    """Progress callback drawing one tqdm bar per phase."""

    def __init__(self, disable: bool = False) -> None:
        self._disable = disable
        self._phase: str | None = None
        self._bar: tqdm | None = None

    def __call__(self, progress: Progress) -> None:
        if progress.phase != self._phase:
            self.close()
            self._phase = progress.phase
            self._bar = tqdm(
                total=progress.total,
                desc=_PHASE_LABELS.get(progress.phase, progress.phase),
                unit="file",
                disable=self._disable,
            )
        self._bar.update(1)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None


def _open_library(args: argparse.Namespace) -> Library:
    defaults: dict[str, object] = {
        SCAN_DEPTH: args.scan_depth,
        EXCLUDE_PATTERNS: list(DEFAULT_EXCLUDE_PATTERNS) + [
            e for e in args.exclude if e not in DEFAULT_EXCLUDE_PATTERNS
        ],
        WATCH_ENABLED: args.watch,
    }
    if args.db_path is not None:
        args.db_path.parent.mkdir(parents=True, exist_ok=True)
    return Library.open(
        args.db_path,
        watch_depth=args.watch_depth,
        watch_interval=args.watch_interval,
        preference_defaults=defaults,
    )


async def _with_commands(args: argparse.Namespace, body) -> int:
    library = _open_library(args)
    try:
        return await body(Commands(library))
    finally:
        await library.close()


def _fail(message: str) -> int:
    print(f"Error: {message}")
    return 1


def cmd_root(args: argparse.Namespace) -> int:
    """Show, set or clear the root directory."""

    async def body(commands: Commands) -> int:
        if args.action == "set":
            if args.path is None:
                return _fail("'root set' needs a path")
            resp = await commands.set_root(str(args.path))
        elif args.action == "clear":
            resp = await commands.clear_root()
        else:
            resp = await commands.get_root()
        if not resp.success:
            return _fail(resp.error)
        if args.action == "clear":
            print("Root directory cleared.")
        elif resp.data is None:
            print("No root directory set.")
        else:
            state = "" if resp.data.is_valid else " (not accessible)"
            print(f"Root directory: {resp.data.path}{state}")
        return 0

    return asyncio.run(_with_commands(args, body))


def cmd_scan(args: argparse.Namespace) -> int:
    """Print aggregate counts for a directory tree."""

    async def body(commands: Commands) -> int:
        resp = await commands.scan(str(args.path) if args.path else None, recursive=args.recursive)
        if not resp.success:
            return _fail(resp.error)
        stats = resp.data
        print(
            f"{stats.total_files} file(s), {stats.image_files} image(s), "
            f"{stats.directories} director{'y' if stats.directories == 1 else 'ies'}, "
            f"{format_size(stats.total_size)}"
        )
        return 0

    return asyncio.run(_with_commands(args, body))


def cmd_dupes(args: argparse.Namespace) -> int:
    """Find duplicates in a directory, optionally trashing redundant copies."""

    async def body(commands: Commands) -> int:
        bars = _PhaseBars(disable=args.quiet)
        try:
            resp = await commands.scan_duplicates(
                str(args.path) if args.path else None, recursive=args.recursive, on_progress=bars
            )
        finally:
            bars.close()
        if not resp.success:
            return _fail(resp.error)

        report = resp.data
        if not report.groups:
            print(f"No duplicates found among {report.total_files} file(s).")
            return 0

        print(f"\nFound {len(report.groups)} duplicate group(s):\n")
        for i, group in enumerate(report.groups, 1):
            print(f"  Group {i} ({len(group.files)} files, {format_size(group.file_size)} each):")
            for p in group.files:
                print(f"    {p}")
            print()
        print(
            f"{report.total_duplicate_files} redundant file(s), "
            f"{format_size(report.total_wasted_bytes)} recoverable."
        )

        if not args.delete:
            return 0

        failures = 0
        for group in report.groups:
            result = await commands.trash_duplicates([str(p) for p in group.files], keep_index=0)
            if not result.success:
                failures += 1
                print(f"  Could not process group {group.hash[:12]}..: {result.error}")
                continue
            for failed in result.data.failed:
                failures += 1
                print(f"  Failed to trash {failed.path}: {failed.error}")
            logger.info(f"Kept {group.files[0]}, trashed {len(result.data.successful)} copy(ies)")
        return 1 if failures else 0

    return asyncio.run(_with_commands(args, body))


def cmd_index(args: argparse.Namespace) -> int:
    """Hash images into the library and rebuild duplicate groups."""

    async def body(commands: Commands) -> int:
        bars = _PhaseBars(disable=args.quiet)
        try:
            resp = await commands.index(str(args.path) if args.path else None, on_progress=bars)
        finally:
            bars.close()
        if not resp.success:
            return _fail(resp.error)
        summary = resp.data
        print(
            f"Indexed {summary['indexed']} image(s), pruned {summary['pruned']} missing, "
            f"{summary['groups']} duplicate group(s)."
        )
        return 0

    return asyncio.run(_with_commands(args, body))


def cmd_stats(args: argparse.Namespace) -> int:
    """Print duplicate statistics of the library."""

    async def body(commands: Commands) -> int:
        resp = await commands.duplicate_stats()
        if not resp.success:
            return _fail(resp.error)
        stats = resp.data
        print(f"Duplicate groups:      {stats.total_groups}")
        print(f"Redundant copies:      {stats.total_duplicate_files}")
        print(f"Largest group:         {stats.largest_group_size}")
        print(f"Potential space saved: {format_size(stats.potential_space_saved)}")
        return 0

    return asyncio.run(_with_commands(args, body))


def cmd_groups(args: argparse.Namespace) -> int:
    """List persisted duplicate groups with their members."""

    async def body(commands: Commands) -> int:
        resp = await commands.duplicate_groups(limit=args.limit)
        if not resp.success:
            return _fail(resp.error)
        if not resp.data:
            print("No duplicate groups in the library.")
            return 0
        for entry in resp.data:
            print(f"  [{entry.group.id}] {entry.group.hash[:12]}.. ({entry.group.count} files)")
            for image in entry.images:
                print(f"    {image.path}")
        return 0

    return asyncio.run(_with_commands(args, body))


def cmd_trash(args: argparse.Namespace) -> int:
    """Move files to the system trash."""

    async def body(commands: Commands) -> int:
        resp = await commands.trash_files([str(p) for p in args.paths])
        if not resp.success:
            return _fail(resp.error)
        outcome = resp.data
        for failed in outcome.failed:
            print(f"Failed to trash {failed.path}: {failed.error}")
        print(f"Trashed {len(outcome.successful)} of {outcome.total_processed} file(s).")
        return 1 if outcome.failed else 0

    return asyncio.run(_with_commands(args, body))


def cmd_watch(args: argparse.Namespace) -> int:
    """Watch the root directory and apply changes to the library."""

    async def body(commands: Commands) -> int:
        library = commands.library
        if library.scanner.root is None:
            return _fail("No root directory set; use 'photosift root set PATH' first")
        resp = await commands.start_watch()
        if not resp.success:
            return _fail(resp.error)
        if not resp.data:
            return _fail("Watching is disabled (set 'watch = true' in config.toml)")
        print(f"Watching {library.scanner.root} (Ctrl-C to stop) ...")
        stop = asyncio.Event()
        if args.seconds is not None:
            asyncio.get_running_loop().call_later(args.seconds, stop.set)
        handled = await library.follow(stop)
        print(f"Handled {handled} change(s).")
        return 0

    try:
        return asyncio.run(_with_commands(args, body))
    except KeyboardInterrupt:
        print("\nStopped.")
        return 0


def main() -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if args.configure:
        create_config_interactive()
        return

    merge_config_into_args(args, load_config())
    configure_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    commands = {
        "root": cmd_root,
        "scan": cmd_scan,
        "dupes": cmd_dupes,
        "index": cmd_index,
        "stats": cmd_stats,
        "groups": cmd_groups,
        "trash": cmd_trash,
        "watch": cmd_watch,
    }

    cmd_func = commands.get(args.command)
    if cmd_func is None:
        parser.print_help()
        return
    code = cmd_func(args)
    if code:
        raise SystemExit(code)
