"""
Build configuration for bannerkit.

Dataclasses mirroring ``banner.yaml`` and the loader that fills them in.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from bannerkit.core.errors import ConfigError
from bannerkit.core.utils import CONFIG_FILENAME, is_private, log

__all__ = [
    "ProjectConfig",
    "PathsConfig",
    "PatternsConfig",
    "ServerConfig",
    "FeatureFlags",
    "TimingConfig",
    "StylesConfig",
    "BannerConfig",
    "load_config",
]


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class ProjectConfig:
    """Project identification (``name`` prefixes the aggregate zips)."""

    name: str = "banners"
    title: str = ""


@dataclass
class PathsConfig:
    """Source, output and cache locations relative to the project root."""

    src: str = "src"
    sizes: str = "src/sizes"
    global_: str = "src/global"
    plugins: str = "src/global/plugins"
    build: str = "build.nosync"
    export: str = "export.nosync"
    cache: str = ".cache/zips"


@dataclass
class PatternsConfig:
    """File extensions per source category."""

    template: str = ".j2"
    style: str = ".sass"
    script: str = ".js"
    images: list[str] = field(
        default_factory=lambda: ["jpg", "png", "gif", "svg", "webp"]
    )

    @property
    def image_glob(self) -> str:
        return "*.{" + ",".join(self.images) + "}"

    def is_image(self, name: str) -> bool:
        return name.rsplit(".", 1)[-1].lower() in {ext.lower() for ext in self.images}


@dataclass
class ServerConfig:
    """Dev server settings. The websocket server listens on ``port + 1``."""

    host: str = "localhost"
    port: int = 9000
    open: bool = False


@dataclass
class FeatureFlags:
    """Build feature flags."""

    # Rebuild zips automatically when files change
    enable_auto_zip: bool = False
    # Start the dev server without a full build
    skip_initial_build: bool = True


@dataclass
class TimingConfig:
    """Debounce and settle delays, in milliseconds."""

    zip_debounce_ms: int = 350
    reconcile_debounce_ms: int = 300
    watcher_refresh_ms: int = 120

    @property
    def zip_debounce(self) -> float:
        return self.zip_debounce_ms / 1000

    @property
    def reconcile_debounce(self) -> float:
        return self.reconcile_debounce_ms / 1000

    @property
    def watcher_refresh(self) -> float:
        return self.watcher_refresh_ms / 1000


@dataclass
class StylesConfig:
    """External stylesheet compiler. Source and destination are appended."""

    command: list[str] = field(default_factory=lambda: ["sass", "--no-source-map"])


@dataclass
class BannerConfig:
    """Complete configuration for one banner project."""

    project_root: Path
    project: ProjectConfig = field(default_factory=ProjectConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    patterns: PatternsConfig = field(default_factory=PatternsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    features: FeatureFlags = field(default_factory=FeatureFlags)
    timing: TimingConfig = field(default_factory=TimingConfig)
    styles: StylesConfig = field(default_factory=StylesConfig)
    debug: bool = False

    # --- Resolved paths ---

    def _resolve(self, rel: str) -> Path:
        return (self.project_root / rel).resolve()

    @property
    def src_dir(self) -> Path:
        return self._resolve(self.paths.src)

    @property
    def sizes_dir(self) -> Path:
        return self._resolve(self.paths.sizes)

    @property
    def global_dir(self) -> Path:
        return self._resolve(self.paths.global_)

    @property
    def plugins_dir(self) -> Path:
        return self._resolve(self.paths.plugins)

    @property
    def build_dir(self) -> Path:
        return self._resolve(self.paths.build)

    @property
    def export_dir(self) -> Path:
        return self._resolve(self.paths.export)

    @property
    def cache_dir(self) -> Path:
        return self._resolve(self.paths.cache)

    # --- Units ---

    def unit_output_dir(self, unit: str) -> Path:
        return self.build_dir / unit

    def unit_archive_path(self, unit: str) -> Path:
        return self.build_dir / f"{unit}.zip"

    def source_units(self) -> list[str]:
        """Non-private unit directories currently present under sizes/."""
        if not self.sizes_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.sizes_dir.iterdir()
            if entry.is_dir() and not is_private(entry.name)
        )


# =============================================================================
# Loading
# =============================================================================

_SECTIONS: dict[str, type] = {
    "project": ProjectConfig,
    "paths": PathsConfig,
    "patterns": PatternsConfig,
    "server": ServerConfig,
    "features": FeatureFlags,
    "timing": TimingConfig,
    "styles": StylesConfig,
}

# YAML keys that are Python keywords
_KEY_ALIASES = {"global": "global_"}


def _build_section(name: str, cls: type, raw: Any) -> Any:
    """Instantiate one config section, ignoring unknown keys."""
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"'{name}' must be a mapping, got {type(raw).__name__}")

    known = {f.name: f for f in fields(cls)}
    defaults = cls()
    values: dict[str, Any] = {}
    for key, value in raw.items():
        attr = _KEY_ALIASES.get(key, key)
        if attr not in known:
            log.debug(f"Ignoring unknown config key: {name}.{key}")
            continue
        expected = getattr(defaults, attr)
        if isinstance(expected, bool):
            if not isinstance(value, bool):
                raise ConfigError(f"{name}.{key} must be true or false")
        elif isinstance(expected, int):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name}.{key} must be an integer")
        elif isinstance(expected, list):
            if not isinstance(value, list):
                raise ConfigError(f"{name}.{key} must be a list")
            value = [str(item) for item in value]
        elif isinstance(expected, str):
            value = str(value)
        values[attr] = value
    return cls(**values)


def load_config(project_root: Path, config_path: Optional[Path] = None) -> BannerConfig:
    """Load ``banner.yaml`` from ``project_root``.

    A missing file yields the defaults. ``DEBUG=true`` in the environment
    turns on debug logging.
    """
    project_root = project_root.resolve()
    path = config_path or project_root / CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(f"{path} must contain a mapping at the top level")
        raw = loaded or {}
    else:
        log.debug(f"No {CONFIG_FILENAME} in {project_root}, using defaults")

    sections = {
        name: _build_section(name, cls, raw.get(name))
        for name, cls in _SECTIONS.items()
    }

    debug = bool(raw.get("debug", False)) or os.environ.get("DEBUG", "").lower() == "true"
    return BannerConfig(project_root=project_root, debug=debug, **sections)
