"""
Watch mode for bannerkit.

Monitors the source tree, rebuilds only what changed, keeps the output tree
in step with the unit directories and coalesces archive passes.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler

from bannerkit.build.caching import ArchiveCache, FingerprintStore
from bannerkit.build.config import BannerConfig
from bannerkit.build.phases import (
    StepResult,
    TemplateRenderer,
    archive_unit,
    asset_output_paths,
    build_styles,
    compile_style,
    copy_newer,
    output_units,
    remove_unit_outputs,
    restore_global_asset,
    run_step,
    write_size_manifest,
)
from bannerkit.core.errors import ConfigError
from bannerkit.core.utils import (
    glob_match,
    is_private,
    list_subdirectories,
    log,
    remove_path,
    remove_paths,
)


# =============================================================================
# Timers
# =============================================================================

# (interval_seconds, callback) -> object with start() and cancel()
TimerFactory = Callable[[float, Callable[[], None]], Any]


def thread_timer(interval: float, callback: Callable[[], None]) -> threading.Timer:
    """Default timer factory: a daemon ``threading.Timer``."""
    timer = threading.Timer(interval, callback)
    timer.daemon = True
    return timer


def _noop() -> None:
    pass


# =============================================================================
# Debouncer
# =============================================================================


class Debouncer:
    """Runs a callback once a quiet period follows the most recent trigger.

    Two states: idle, or pending with one timer. Triggering while pending
    cancels the timer and starts a new one, so a burst fires exactly once,
    ``delay`` seconds after its last event. The callback receives the reason
    of the last trigger.
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[[Optional[str]], None],
        timer_factory: TimerFactory = thread_timer,
    ):
        self.delay = delay
        self.callback = callback
        self.timer_factory = timer_factory
        self._timer: Optional[Any] = None
        self._reason: Optional[str] = None
        # Incremented per trigger; a timer that already fired but lost the
        # race against cancel() sees a stale generation and does nothing.
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    @property
    def reason(self) -> Optional[str]:
        with self._lock:
            return self._reason

    def trigger(self, reason: Optional[str] = None) -> None:
        """Register an event. Resets the debounce timer."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            self._reason = reason
            self._timer = self.timer_factory(self.delay, partial(self._fire, self._generation))
            self._timer.start()

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._timer is None:
                return
            reason = self._reason
            self._timer = None
            self._reason = None

        self.callback(reason)

    def cancel(self) -> None:
        """Cancel any pending timer and return to idle."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._reason = None
            self._generation += 1


# =============================================================================
# Zip Scheduler
# =============================================================================


class ZipScheduler:
    """Coalesces change events into at most one archive pass per window.

    The pass archives only units whose :class:`ArchiveCache` decision is
    positive, then rewrites the size manifest and triggers a reload.
    ``schedule`` does nothing while ``features.enable_auto_zip`` is off; the
    flag is read on every call.
    """

    def __init__(
        self,
        config: BannerConfig,
        cache: ArchiveCache,
        archive: Callable[[Path], Path] = archive_unit,
        write_manifest: Callable[[Path], Any] = write_size_manifest,
        notify_reload: Callable[[], None] = _noop,
        output_lock: Optional[threading.RLock] = None,
        timer_factory: TimerFactory = thread_timer,
    ):
        self.config = config
        self.cache = cache
        self.archive = archive
        self.write_manifest = write_manifest
        self.notify_reload = notify_reload
        self.output_lock = output_lock or threading.RLock()
        self._debouncer = Debouncer(config.timing.zip_debounce, self._on_timer, timer_factory)
        self.pass_count = 0

    @property
    def pending(self) -> bool:
        return self._debouncer.pending

    @property
    def reason(self) -> Optional[str]:
        return self._debouncer.reason

    def schedule(self, reason: str) -> bool:
        """Request an archive pass. Returns False when auto-zip is disabled."""
        if not self.config.features.enable_auto_zip:
            log.debug(f"[zip] Skipped (auto-zip disabled), reason: {reason}")
            return False
        log.debug(f"[zip] Scheduling zip, reason: {reason}")
        self._debouncer.trigger(reason)
        return True

    def run_now(self, reason: str = "manual") -> list[Path]:
        """Cancel any pending pass and archive immediately."""
        self._debouncer.cancel()
        return self._run_pass(reason)

    def cancel(self) -> None:
        self._debouncer.cancel()

    def _on_timer(self, reason: Optional[str]) -> None:
        run_step("[zip] Archive pass", self._run_pass, reason or "scheduled")

    def _run_pass(self, reason: str) -> list[Path]:
        build_dir = self.config.build_dir
        archived: list[Path] = []
        with self.output_lock:
            self.pass_count += 1
            for unit_dir in output_units(build_dir):
                if not self.cache.should_archive(unit_dir):
                    continue
                try:
                    archived.append(self.archive(unit_dir))
                except Exception:
                    # The fingerprint was already recorded; drop the stale
                    # zip so the missing artifact forces a retry next pass.
                    remove_path(self.config.unit_archive_path(unit_dir.name))
                    raise
            self.write_manifest(build_dir)

        if archived:
            names = ", ".join(p.name for p in archived)
            log.success(f"[zip] Archived {len(archived)} unit(s): {names} ({reason})")
        else:
            log.info(f"[zip] All archives up to date ({reason})")
        self.notify_reload()
        return archived


# =============================================================================
# Orphan Reconciler
# =============================================================================


class OrphanReconciler:
    """Removes output units whose source directory no longer exists.

    Debounced like :class:`ZipScheduler` but on its own timer, and never
    gated by the auto-zip flag. Best-effort: unreadable directories abort
    the run quietly and the next trigger tries again.
    """

    def __init__(
        self,
        config: BannerConfig,
        notify_reload: Callable[[], None] = _noop,
        output_lock: Optional[threading.RLock] = None,
        timer_factory: TimerFactory = thread_timer,
    ):
        self.config = config
        self.notify_reload = notify_reload
        self.output_lock = output_lock or threading.RLock()
        self._debouncer = Debouncer(
            config.timing.reconcile_debounce, self._on_timer, timer_factory
        )

    @property
    def pending(self) -> bool:
        return self._debouncer.pending

    def schedule(self) -> None:
        self._debouncer.trigger("orphan check")

    def cancel(self) -> None:
        self._debouncer.cancel()

    def _on_timer(self, _reason: Optional[str]) -> None:
        self.run_now()

    def find_orphans(self) -> list[str]:
        source_units = set(list_subdirectories(self.config.sizes_dir))
        return [
            name
            for name in list_subdirectories(self.config.build_dir)
            if name not in source_units
        ]

    def run_now(self) -> list[str]:
        """Delete orphaned unit outputs. Returns the orphan names."""
        try:
            with self.output_lock:
                orphans = self.find_orphans()
                for name in orphans:
                    remove_unit_outputs(self.config, name)
        except OSError as e:
            log.debug(f"[reconcile] Skipped: {e}")
            return []

        if orphans:
            log.info(f"[reconcile] Removed orphaned output: {', '.join(orphans)}")
            self.notify_reload()
        return orphans


# =============================================================================
# Rebuild Dispatcher
# =============================================================================


class RebuildDispatcher:
    """Recompiles a single changed template or stylesheet, then reloads."""

    def __init__(
        self,
        config: BannerConfig,
        renderer: TemplateRenderer,
        notify_reload: Callable[[], None] = _noop,
        output_lock: Optional[threading.RLock] = None,
        style_compiler: Callable[[BannerConfig, Path], Path] = compile_style,
    ):
        self.config = config
        self.renderer = renderer
        self.notify_reload = notify_reload
        self.output_lock = output_lock or threading.RLock()
        self.style_compiler = style_compiler

    def dispatch(self, source: Path, category: str) -> StepResult:
        """Compile ``source`` into its output path.

        Reload fires only after the compile step finished successfully.
        """
        if category == "templates":
            compile_one = self.renderer.render_file
        elif category == "styles":
            compile_one = partial(self.style_compiler, self.config)
        else:
            raise ValueError(f"No single-file compiler for category: {category}")

        source = source.resolve()
        rel = source.relative_to(self.config.sizes_dir).as_posix()
        log.info(f"[watch] Compiling {rel}")
        with self.output_lock:
            result = run_step(f"[watch] Compile {rel}", compile_one, source)
        if result.ok:
            self.notify_reload()
        return result


# =============================================================================
# Watcher Registry
# =============================================================================


@dataclass
class CategoryWatch:
    """Glob patterns (relative to the source root) for one source category."""

    name: str
    patterns: list[str] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)

    def add(self, pattern: str) -> None:
        if pattern not in self.patterns:
            self.patterns.append(pattern)

    def matches(self, rel_path: str) -> bool:
        if any(glob_match(rel_path, pattern) for pattern in self.ignored):
            return False
        return any(glob_match(rel_path, pattern) for pattern in self.patterns)


class WatcherRegistry:
    """Category name -> watch, plus the observer handles that feed them."""

    def __init__(self) -> None:
        self.watches: dict[str, CategoryWatch] = {}
        self.handles: list[Any] = []
        self.units: set[str] = set()
        self._lock = threading.Lock()

    def register(self, watch: CategoryWatch) -> CategoryWatch:
        self.watches[watch.name] = watch
        return watch

    def patterns(self, category: str) -> list[str]:
        with self._lock:
            return list(self.watches[category].patterns)

    def extend(self, unit: str, patterns: dict[str, str]) -> None:
        """Add one unit's per-category patterns."""
        with self._lock:
            for category, pattern in patterns.items():
                self.watches[category].add(pattern)
            self.units.add(unit)

    def route(self, rel_path: str) -> list[str]:
        """Categories whose patterns match ``rel_path``."""
        with self._lock:
            return [name for name, watch in self.watches.items() if watch.matches(rel_path)]


# =============================================================================
# Watch Coordinator
# =============================================================================

UNIT_CATEGORIES = ("templates", "styles", "images", "scripts")


class WatchCoordinator:
    """Routes filesystem events by category to the right rebuild step.

    Owns one watch per source category plus the unit-directory watch.
    Unit watches are extended after a short settle delay whenever a new
    unit directory appears.
    """

    def __init__(
        self,
        config: BannerConfig,
        renderer: TemplateRenderer,
        zip_scheduler: ZipScheduler,
        reconciler: OrphanReconciler,
        dispatcher: RebuildDispatcher,
        notify_reload: Callable[[], None] = _noop,
        output_lock: Optional[threading.RLock] = None,
        timer_factory: TimerFactory = thread_timer,
        copy_assets: Callable[[BannerConfig, str], int] = copy_newer,
        rebuild_styles: Callable[[BannerConfig], list[Path]] = build_styles,
    ):
        self.config = config
        self.renderer = renderer
        self.zip_scheduler = zip_scheduler
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.notify_reload = notify_reload
        self.output_lock = output_lock or threading.RLock()
        self.timer_factory = timer_factory
        self.copy_assets = copy_assets
        self.rebuild_styles = rebuild_styles
        self._refresh_timers: list[Any] = []

        src = config.src_dir
        try:
            self.sizes_rel = config.sizes_dir.relative_to(src).as_posix()
            self.global_rel = config.global_dir.relative_to(src).as_posix()
            self.plugins_rel = config.plugins_dir.relative_to(src).as_posix()
        except ValueError as e:
            raise ConfigError(f"sizes, global and plugins must live under {src}") from e

        self.registry = self._build_registry()

    # --- Registry ---

    def unit_patterns(self, unit: str) -> dict[str, str]:
        p = self.config.patterns
        base = f"{self.sizes_rel}/{unit}/**/"
        return {
            "templates": f"{base}*{p.template}",
            "styles": f"{base}*{p.style}",
            "images": f"{base}{p.image_glob}",
            "scripts": f"{base}*{p.script}",
        }

    def _build_registry(self) -> WatcherRegistry:
        p = self.config.patterns
        sizes, global_ = self.sizes_rel, self.global_rel

        registry = WatcherRegistry()
        registry.register(CategoryWatch("templates", [f"{sizes}/*{p.template}"]))
        registry.register(CategoryWatch("global_templates", [f"{global_}/*{p.template}"]))
        registry.register(CategoryWatch("plugins", [f"{self.plugins_rel}/*{p.script}"]))
        registry.register(CategoryWatch("styles", [f"{sizes}/*{p.style}"]))
        registry.register(CategoryWatch("global_styles", [f"{global_}/*{p.style}"]))
        registry.register(CategoryWatch(
            "images", [f"{sizes}/{p.image_glob}", f"{global_}/**/{p.image_glob}"]
        ))
        registry.register(CategoryWatch(
            "scripts",
            [f"{sizes}/*{p.script}", f"{global_}/**/*{p.script}"],
            ignored=[f"{self.plugins_rel}/*{p.script}"],
        ))
        registry.register(CategoryWatch("directories", [f"{sizes}/*"]))

        for unit in self.config.source_units():
            registry.extend(unit, self.unit_patterns(unit))
        return registry

    def extend_unit_watches(self, unit: str) -> None:
        self.registry.extend(unit, self.unit_patterns(unit))
        log.debug(f"[watch] Watching new unit: {unit}")

    # --- Observer wiring ---

    def start(self, observer: Any) -> None:
        """Schedule the primary handler and the fallback deletion watch."""
        src = self.config.src_dir
        handle = observer.schedule(SourceEventHandler(self), str(src), recursive=True)
        self.registry.handles.append(handle)
        log.info(f"  Watching: Sources ({src})")

        sizes = self.config.sizes_dir
        if sizes.is_dir():
            fallback = observer.schedule(
                DeletionFallbackHandler(self.reconciler), str(sizes), recursive=True
            )
            self.registry.handles.append(fallback)

    def stop(self) -> None:
        for timer in list(self._refresh_timers):
            timer.cancel()
        self._refresh_timers.clear()
        self.zip_scheduler.cancel()
        self.reconciler.cancel()

    # --- Routing ---

    def _rel(self, path: Path) -> Optional[str]:
        try:
            return path.relative_to(self.config.src_dir).as_posix()
        except ValueError:
            return None

    def _is_unit_dir(self, path: Path) -> bool:
        return path.parent == self.config.sizes_dir

    def handle_file_changed(self, path: Path) -> None:
        path = path.resolve()
        rel = self._rel(path)
        if rel is None:
            return
        for category in self.registry.route(rel):
            if category in ("templates", "styles"):
                self.on_source_changed(path, category, rel)
            elif category == "global_templates":
                self.on_global_templates_changed("global template changed")
            elif category == "plugins":
                self.on_global_templates_changed("global plugin changed")
            elif category == "global_styles":
                self.on_global_styles_changed()
            elif category in ("images", "scripts"):
                self.on_assets_changed(category)

    def handle_file_deleted(self, path: Path) -> None:
        path = path.resolve()
        rel = self._rel(path)
        if rel is None:
            return
        for category in self.registry.route(rel):
            if category in ("images", "scripts"):
                self.on_asset_deleted(path, category, rel)
            elif category in ("global_templates", "plugins"):
                self.on_global_templates_changed(f"{rel} deleted")
            elif category == "global_styles":
                self.on_global_styles_changed()

    def handle_dir_added(self, path: Path) -> None:
        path = path.resolve()
        rel = self._rel(path)
        if rel is None or not self._is_unit_dir(path):
            return
        if "directories" in self.registry.route(rel):
            self.on_unit_added(path.name)

    def handle_dir_removed(self, path: Path) -> None:
        path = path.resolve()
        rel = self._rel(path)
        if rel is None or not self._is_unit_dir(path):
            return
        if "directories" in self.registry.route(rel):
            self.on_unit_removed(path.name)

    # --- Handlers ---

    def on_source_changed(self, path: Path, category: str, rel: str) -> None:
        if any(is_private(part) for part in Path(rel).parts):
            log.info(f"[watch] Skipping partial: {rel}")
            return
        result = self.dispatcher.dispatch(path, category)
        if result.ok:
            label = "template" if category == "templates" else "style"
            self.zip_scheduler.schedule(f"{label} file changed: {rel}")

    def on_global_templates_changed(self, reason: str) -> None:
        # Unit templates include globals without their own text changing
        self.renderer.clear_cache()
        with self.output_lock:
            result = run_step("[watch] Template rebuild", self.renderer.build_all)
        if result.ok:
            log.info(f"[watch] Rebuilt {len(result.value)} template(s): {reason}")
            self.notify_reload()
            self.zip_scheduler.schedule(reason)

    def on_global_styles_changed(self) -> None:
        with self.output_lock:
            result = run_step("[watch] Style rebuild", self.rebuild_styles, self.config)
        if result.ok:
            self.notify_reload()
            self.zip_scheduler.schedule("global style changed")

    def on_assets_changed(self, category: str) -> None:
        with self.output_lock:
            result = run_step(f"[watch] Copy {category}", self.copy_assets, self.config, category)
        if result.ok:
            self.notify_reload()
            self.zip_scheduler.schedule(f"{category} changed")

    def on_asset_deleted(self, path: Path, category: str, rel: str) -> None:
        with self.output_lock:
            removed = remove_paths(asset_output_paths(self.config, path))
            restored = restore_global_asset(self.config, path)
        for output in removed:
            log.info(f"[watch:unlink] Removed orphaned {category[:-1]}: {output}")
        if restored is not None:
            log.info(f"[watch:unlink] Restored global {category[:-1]}: {restored}")
        self.zip_scheduler.schedule(f"{rel} deleted")
        self.notify_reload()

    def on_unit_removed(self, unit: str) -> None:
        log.info(f"[watch:unlinkDir] Directory removed: {unit}")
        with self.output_lock:
            remove_unit_outputs(self.config, unit)
        self.notify_reload()

    def on_unit_added(self, unit: str) -> None:
        if is_private(unit):
            self._clean_renamed_to_private(unit)
            return

        log.info(f"[watch:addDir] Building new unit: {unit}")
        with self.output_lock:
            built = run_step(f"[watch] Fresh build {unit}", self.build_unit_fresh, unit)
            index = run_step("[watch] Index rebuild", self.renderer.build_index)
        if built.ok and index.ok:
            self.notify_reload()
            self.zip_scheduler.schedule(f"dir added:{unit}")

        # Let the new directory's initial files land before globbing them
        timer = self.timer_factory(
            self.config.timing.watcher_refresh, lambda: self._refresh_unit_watches(unit, timer)
        )
        self._refresh_timers.append(timer)
        timer.start()

    def _refresh_unit_watches(self, unit: str, timer: Any) -> None:
        if timer in self._refresh_timers:
            self._refresh_timers.remove(timer)
        self.extend_unit_watches(unit)

    def build_unit_fresh(self, unit: str) -> list[Path]:
        """Templates without the render cache, then the unit's styles and assets."""
        written = self.renderer.build_unit(unit)
        unit_dir = self.config.sizes_dir / unit
        for source in sorted(unit_dir.rglob(f"*{self.config.patterns.style}")):
            if not any(is_private(part) for part in source.relative_to(unit_dir).parts):
                written.append(self.dispatcher.style_compiler(self.config, source))
        self.copy_assets(self.config, "images")
        self.copy_assets(self.config, "scripts")
        return written

    def _clean_renamed_to_private(self, unit: str) -> None:
        public = unit[1:]
        if not public:
            return
        targets = [self.config.unit_output_dir(public), self.config.unit_archive_path(public)]
        if not any(t.exists() for t in targets):
            return
        log.info(f"[watch:addDir] Cleaning up output for private unit: {public}")
        with self.output_lock:
            remove_paths(targets)
        self.notify_reload()


# =============================================================================
# File System Event Handlers
# =============================================================================


class SourceEventHandler(FileSystemEventHandler):
    """Translates watchdog events into coordinator calls.

    Moves are a removal of the old path followed by an addition of the new
    one. Errors are logged so the observer thread keeps running.
    """

    def __init__(self, coordinator: WatchCoordinator):
        super().__init__()
        self.coordinator = coordinator

    def _safely(self, fn: Callable[[Path], None], src_path: Any) -> None:
        run_step("[watch] Event handler", fn, Path(str(src_path)))

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._safely(self.coordinator.handle_file_changed, event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            self._safely(self.coordinator.handle_dir_added, event.src_path)
        else:
            self._safely(self.coordinator.handle_file_changed, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            self._safely(self.coordinator.handle_dir_removed, event.src_path)
        else:
            self._safely(self.coordinator.handle_file_deleted, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            self._safely(self.coordinator.handle_dir_removed, event.src_path)
            self._safely(self.coordinator.handle_dir_added, event.dest_path)
        else:
            self._safely(self.coordinator.handle_file_deleted, event.src_path)
            self._safely(self.coordinator.handle_file_changed, event.dest_path)


class DeletionFallbackHandler(FileSystemEventHandler):
    """Schedules orphan reconciliation on any deletion under ``sizes/``.

    Directory removal events are not delivered reliably on every platform,
    so any deletion or move-away triggers a reconcile pass.
    """

    def __init__(self, reconciler: OrphanReconciler):
        super().__init__()
        self.reconciler = reconciler

    def on_deleted(self, event: FileSystemEvent) -> None:
        self.reconciler.schedule()

    def on_moved(self, event: FileSystemEvent) -> None:
        self.reconciler.schedule()


# =============================================================================
# Wiring
# =============================================================================


def create_coordinator(
    config: BannerConfig,
    notify_reload: Callable[[], None] = _noop,
    timer_factory: TimerFactory = thread_timer,
    renderer: Optional[TemplateRenderer] = None,
) -> WatchCoordinator:
    """Build a coordinator whose collaborators share one output lock."""
    output_lock = threading.RLock()
    renderer = renderer or TemplateRenderer(config)
    cache = ArchiveCache(FingerprintStore(config.cache_dir), config.unit_archive_path)
    zip_scheduler = ZipScheduler(
        config,
        cache,
        notify_reload=notify_reload,
        output_lock=output_lock,
        timer_factory=timer_factory,
    )
    reconciler = OrphanReconciler(
        config, notify_reload=notify_reload, output_lock=output_lock, timer_factory=timer_factory
    )
    dispatcher = RebuildDispatcher(
        config, renderer, notify_reload=notify_reload, output_lock=output_lock
    )
    return WatchCoordinator(
        config,
        renderer,
        zip_scheduler,
        reconciler,
        dispatcher,
        notify_reload=notify_reload,
        output_lock=output_lock,
        timer_factory=timer_factory,
    )
