"""
Main CLI for the bannerkit tool.

Provides a unified interface for developing, building, archiving and
publishing a multi-size banner project.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from bannerkit import __version__
from bannerkit.core.errors import BannerkitError
from bannerkit.core.utils import find_project_root, log


# =============================================================================
# Argument Parsing
# =============================================================================


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with all subcommands."""

    parser = argparse.ArgumentParser(
        prog="bannerkit",
        description="Banner ad build orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  dev           Serve the build tree with live reload and watch sources (default)
  build         Clean and rebuild all units
  zip           Rebuild assets, archive every unit and create the packages
  clean         Remove build output (or only archives with --zips)
  upload        Build, zip and upload everything over SFTP
  remote-list   List the remote upload folder
  remote-clean  Empty the remote upload folder

Examples:
  bannerkit                      # Start the dev server on localhost:9000
  bannerkit dev --full-build     # Full build before serving
  bannerkit zip                  # Produce <name>-all-banners.zip
  bannerkit clean --zips --check # Preview which archives would be removed
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug output (same as DEBUG=true)",
    )

    parser.add_argument(
        "--project-dir", "-C",
        type=Path,
        default=None,
        help="Project directory (default: nearest parent with banner.yaml)",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to banner.yaml (default: <project-dir>/banner.yaml)",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    # --- dev ---
    dev_parser = subparsers.add_parser(
        "dev",
        help="Serve with live reload and watch sources",
    )
    dev_parser.add_argument(
        "--full-build",
        action="store_true",
        help="Run a full build before serving",
    )
    dev_parser.add_argument(
        "--auto-zip",
        action="store_true",
        help="Re-archive changed units automatically",
    )
    dev_parser.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="HTTP port (websocket uses port + 1)",
    )

    # --- build ---
    subparsers.add_parser("build", help="Clean and rebuild all units")

    # --- zip ---
    subparsers.add_parser("zip", help="Archive every unit and create the packages")

    # --- clean ---
    clean_parser = subparsers.add_parser("clean", help="Remove build output")
    clean_parser.add_argument(
        "--zips",
        action="store_true",
        help="Only remove archives and the export folder",
    )
    clean_parser.add_argument(
        "--check",
        action="store_true",
        help="Show what would be removed without deleting",
    )

    # --- upload ---
    subparsers.add_parser("upload", help="Build, zip and upload over SFTP")
    subparsers.add_parser("remote-list", help="List the remote upload folder")
    subparsers.add_parser("remote-clean", help="Empty the remote upload folder")

    return parser


# =============================================================================
# Command Dispatch
# =============================================================================


def _run_command(args: argparse.Namespace) -> int:
    from bannerkit.build.config import load_config

    project_root = (args.project_dir or find_project_root()).resolve()
    config = load_config(project_root, args.config)
    if config.debug:
        log.set_verbose(True)

    command = args.command or "dev"

    if command == "dev":
        if getattr(args, "auto_zip", False):
            config.features.enable_auto_zip = True
        from bannerkit.commands.dev import cmd_dev
        return cmd_dev(config, args)

    elif command == "clean":
        from bannerkit.commands.clean import cmd_clean
        return cmd_clean(config, args)

    elif command in ("build", "zip", "upload"):
        from bannerkit.build.orchestrator import BuildOrchestrator
        orchestrator = BuildOrchestrator(config)
        ok = getattr(orchestrator, command)()
        return 0 if ok else 1

    elif command in ("remote-list", "remote-clean"):
        from bannerkit.archive.upload import RemoteFolder, load_upload_config
        remote = RemoteFolder(load_upload_config(config.project_root))
        if command == "remote-list":
            remote.list()
        else:
            remote.clean()
        return 0

    log.error(f"Unknown command: {command}")
    return 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.no_color:
        log.set_color(False)
    if args.verbose:
        log.set_verbose(True)

    try:
        return _run_command(args)
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 130
    except BannerkitError as e:
        log.error(str(e))
        return 1
    except Exception as e:
        log.error(str(e))
        if log.verbose:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
