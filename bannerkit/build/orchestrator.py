"""
Build orchestrator for bannerkit.

Runs the one-shot flows (full build, zip, upload) as timed phases over the
same build steps the watch loop uses incrementally.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable, Optional

from bannerkit.archive.upload import RemoteFolder, announce_public_url, load_upload_config
from bannerkit.build.caching import ArchiveCache, FingerprintStore
from bannerkit.build.config import BannerConfig
from bannerkit.build.phases import (
    StepResult,
    TemplateRenderer,
    build_styles,
    clean_assets,
    clean_build,
    clean_zips,
    copy_newer,
    create_complete_package,
    create_package,
    run_step,
    write_manifest_placeholder,
)
from bannerkit.commands.watch import ZipScheduler
from bannerkit.core.utils import log


# =============================================================================
# Phase Timings
# =============================================================================


def format_duration(seconds: float) -> str:
    """``0.05`` -> ``50ms``, ``1.5`` -> ``1.5s``, ``65.3`` -> ``1m 5.3s``.

    Most phases of a banner build finish in well under a second, so
    sub-second durations are shown in milliseconds.
    """
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, remaining = divmod(seconds, 60)
    return f"{int(minutes)}m {remaining:.1f}s"


def timing_summary(timings: dict[str, float]) -> str:
    """Phases in run order plus the total, e.g. ``clean: 12ms | zip: 1.2s | total: 1.2s``."""
    if not timings:
        return "(no timing data)"
    parts = [f"{phase}: {format_duration(seconds)}" for phase, seconds in timings.items()]
    parts.append(f"total: {format_duration(sum(timings.values()))}")
    return " | ".join(parts)


# =============================================================================
# Orchestrator
# =============================================================================


class BuildOrchestrator:
    """Orchestrates full builds, archive runs and uploads."""

    def __init__(
        self,
        config: BannerConfig,
        renderer: Optional[TemplateRenderer] = None,
        remote_factory: Optional[Callable[[BannerConfig], RemoteFolder]] = None,
    ):
        self.config = config
        self.renderer = renderer or TemplateRenderer(config)
        self.remote_factory = remote_factory or _default_remote
        self.cache = ArchiveCache(FingerprintStore(config.cache_dir), config.unit_archive_path)

        self._phase_timings: dict[str, float] = {}
        self._failures: list[StepResult] = []

    @property
    def timings(self) -> dict[str, float]:
        return dict(self._phase_timings)

    @property
    def failures(self) -> list[StepResult]:
        return list(self._failures)

    # --- Phases ---

    def _phase(self, name: str, fn: Callable[..., Any], *args: Any) -> StepResult:
        """Run one timed phase, recording failures instead of raising."""
        start = time.monotonic()
        result = run_step(name, fn, *args)
        self._phase_timings[name] = round(time.monotonic() - start, 3)
        if not result.ok:
            self._failures.append(result)
        return result

    def _reset(self) -> None:
        self._phase_timings = {}
        self._failures = []

    def _finish(self, title: str) -> bool:
        log.dim(timing_summary(self._phase_timings))
        if self._failures:
            log.error(f"{title} finished with {len(self._failures)} failed phase(s)")
            return False
        log.success(f"{title} complete")
        return True

    def compile_sources(self, use_cache: bool = True) -> None:
        """Templates, styles, images and scripts into the output tree."""
        self._phase("templates", self.renderer.build_all, use_cache)
        self._phase("styles", build_styles, self.config)
        self._phase("images", copy_newer, self.config, "images")
        self._phase("scripts", copy_newer, self.config, "scripts")

    def archive_pass(self, reason: str = "manual") -> list[Path]:
        """Archive every unit whose fingerprint changed or whose zip is missing."""
        scheduler = ZipScheduler(self.config, self.cache)
        result = self._phase("zip", scheduler.run_now, reason)
        return result.value or []

    # --- Flows ---

    def build(self, clean_zips_first: bool = False) -> bool:
        """Clean output, compile everything, write the placeholder manifest."""
        self._reset()
        log.header(f"Building {self.config.project.name}")

        if clean_zips_first:
            self._phase("clean_zips", clean_zips, self.config)
        self._phase("clean", clean_build, self.config)
        self.renderer.clear_cache()
        self.compile_sources(use_cache=False)
        self._phase("manifest", write_manifest_placeholder, self.config.build_dir)
        return self._finish("Build")

    def zip(self) -> bool:
        """Re-copy assets, re-render templates, then archive and package.

        Unit zips are deleted first, so every unit is re-archived through
        the missing-artifact rule while fingerprints stay in the cache.
        """
        self._reset()
        log.header(f"Zipping {self.config.project.name}")

        self._phase("clean_zips", clean_zips, self.config)
        self._phase("clean_images", clean_assets, self.config, "images")
        self._phase("clean_scripts", clean_assets, self.config, "scripts")
        self._phase("images", copy_newer, self.config, "images")
        self._phase("scripts", copy_newer, self.config, "scripts")
        self.renderer.clear_cache()
        self._phase("templates", self.renderer.build_all, False)
        self._package()
        return self._finish("Zip")

    def _package(self) -> None:
        self.archive_pass("zip")
        if not self._failures:
            self._phase("all_banners", create_complete_package, self.config)
            self._phase("package", create_package, self.config)

    def upload(self) -> bool:
        """Full build, archive and packages, then replace the remote folder."""
        self._reset()
        log.header(f"Uploading {self.config.project.name}")

        remote = self.remote_factory(self.config)

        self._phase("clean_zips", clean_zips, self.config)
        self._phase("clean", clean_build, self.config)
        self.renderer.clear_cache()
        self.compile_sources(use_cache=False)
        self._package()
        if self._failures:
            log.error("Build failed; nothing uploaded")
            return self._finish("Upload")

        self._phase("remote_clean", remote.clean)
        if not self._failures:
            self._phase("upload", remote.upload, self.config.build_dir)
        if not self._failures:
            announce_public_url(remote.cfg)
        return self._finish("Upload")


def _default_remote(config: BannerConfig) -> RemoteFolder:
    return RemoteFolder(load_upload_config(config.project_root))
