"""bannerkit clean -- Remove build output, archives and the export folder."""

from __future__ import annotations

import argparse
from pathlib import Path

from bannerkit.build.config import BannerConfig
from bannerkit.build.phases import build_clean_targets, directory_size, zip_clean_targets
from bannerkit.core.utils import format_size, log, remove_path


def _path_size(path: Path) -> int:
    if path.is_dir():
        return directory_size(path)
    try:
        return path.stat().st_size
    except OSError:
        return 0


def collect_clean_targets(config: BannerConfig, zips_only: bool = False) -> list[tuple[Path, int]]:
    """Paths that would be cleaned, with their sizes in bytes."""
    if zips_only:
        paths = zip_clean_targets(config)
    else:
        paths = build_clean_targets(config)
        if config.export_dir.exists():
            paths.append(config.export_dir)
    return [(path, _path_size(path)) for path in paths]


def cmd_clean(config: BannerConfig, args: argparse.Namespace) -> int:
    """Handle 'bannerkit clean' command."""
    zips_only = getattr(args, "zips", False)
    dry_run = getattr(args, "check", False)

    mode_label = "DRY RUN" if dry_run else "CLEAN"
    log.header(f"{mode_label}: {'archives' if zips_only else 'build output'}")

    targets = collect_clean_targets(config, zips_only)
    if not targets:
        log.info("Nothing to clean")
        return 0

    total_size = 0
    failed = 0
    for path, size in targets:
        rel = path.relative_to(config.project_root) if path.is_relative_to(config.project_root) else path
        if dry_run:
            log.info(f"[DRY-RUN] Would remove {rel} ({format_size(size)})")
            total_size += size
            continue
        try:
            remove_path(path)
        except OSError as e:
            log.warning(f"Could not remove {rel}: {e}")
            failed += 1
            continue
        log.info(f"Removed {rel} ({format_size(size)})")
        total_size += size

    log.info(f"Total: {format_size(total_size)}")
    return 1 if failed else 0
