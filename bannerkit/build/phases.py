"""
Build phases for bannerkit.

Individual build operations (template rendering, stylesheet compilation,
asset copying, archiving, manifests, cleanup) that the orchestrator and the
watch loop invoke.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from bannerkit.build.config import BannerConfig
from bannerkit.core.errors import CompileError
from bannerkit.core.utils import is_noise, is_private, log, remove_paths, run_cmd

SIZE_MANIFEST_NAME = "banner-sizes.js"
ALL_BANNERS_SUFFIX = "-all-banners.zip"
WHOLE_PACKAGE_SUFFIX = "-whole-package.zip"

_UNIT_DIMENSIONS = re.compile(r"(\d+)x(\d+)")


# =============================================================================
# Step Results
# =============================================================================


@dataclass
class StepResult:
    """Outcome of one collaborator call."""

    label: str
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None


def run_step(label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> StepResult:
    """Run a build step, logging any failure here and nowhere else.

    The dev loop must survive every failed rebuild, archive or cleanup, so
    exceptions become a failed StepResult instead of propagating.
    """
    try:
        value = fn(*args, **kwargs)
    except Exception as e:
        log.error(f"{label} failed: {e}")
        return StepResult(label=label, ok=False, error=e)
    return StepResult(label=label, ok=True, value=value)


# =============================================================================
# Source Discovery
# =============================================================================


def _has_private_part(rel: Path) -> bool:
    return any(is_private(part) for part in rel.parts)


def iter_sources(root: Path, suffix: str) -> list[Path]:
    """Non-private files under ``root`` ending with ``suffix``, sorted."""
    if not root.is_dir():
        return []
    found: list[Path] = []
    for path in sorted(root.rglob(f"*{suffix}")):
        if not path.is_file():
            continue
        if _has_private_part(path.relative_to(root)):
            continue
        found.append(path)
    return found


def unit_dimensions(unit: str) -> tuple[Optional[int], Optional[int]]:
    """Parse ``300x250``-style unit names into (width, height)."""
    match = _UNIT_DIMENSIONS.search(unit)
    if not match:
        return None, None
    return int(match.group(1)), int(match.group(2))


# =============================================================================
# Templates
# =============================================================================


def template_output_name(name: str, suffix: str) -> str:
    """``index.j2`` -> ``index.html``; ``feed.xml.j2`` -> ``feed.xml``."""
    stem = name[: -len(suffix)] if name.endswith(suffix) else name
    if "." not in stem:
        stem += ".html"
    return stem


class TemplateRenderer:
    """Renders unit templates from ``sizes/`` into the output tree with Jinja2.

    Keeps a content cache (source path -> digest of the last rendered
    source) so full builds skip templates whose text did not change. Global
    template or plugin changes must call :meth:`clear_cache` because unit
    templates depend on them without their own text changing.
    """

    def __init__(self, config: BannerConfig):
        self.config = config
        self.env = Environment(
            loader=FileSystemLoader([str(config.src_dir)]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            auto_reload=True,
        )
        self._cache: dict[Path, str] = {}

    def clear_cache(self) -> None:
        """Forget rendered digests and compiled templates."""
        self._cache.clear()
        if self.env.cache is not None:
            self.env.cache.clear()

    def output_path(self, source: Path) -> Path:
        rel = source.relative_to(self.config.sizes_dir)
        name = template_output_name(rel.name, self.config.patterns.template)
        return self.config.build_dir / rel.parent / name

    def _plugins(self) -> dict[str, str]:
        """Global plugin scripts, inlined by templates as ``plugins['name.js']``."""
        plugins_dir = self.config.plugins_dir
        if not plugins_dir.is_dir():
            return {}
        return {
            path.name: path.read_text(encoding="utf-8")
            for path in sorted(plugins_dir.glob(f"*{self.config.patterns.script}"))
            if path.is_file()
        }

    def _context(self, source: Path) -> dict[str, Any]:
        rel = source.relative_to(self.config.sizes_dir)
        unit = rel.parts[0] if len(rel.parts) > 1 else None
        width, height = unit_dimensions(unit) if unit else (None, None)
        return {
            "project": self.config.project,
            "unit": unit,
            "width": width,
            "height": height,
            "units": self.config.source_units(),
            "plugins": self._plugins(),
            "current_year": datetime.now().year,
        }

    def render_file(self, source: Path) -> Path:
        """Render one template. Raises CompileError on template failure."""
        template_name = source.relative_to(self.config.src_dir).as_posix()
        dest = self.output_path(source)
        try:
            html = self.env.get_template(template_name).render(**self._context(source))
        except TemplateError as e:
            raise CompileError(source, str(e)) from e

        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(html, encoding="utf-8")
        self._cache[source] = _digest_file(source)
        return dest

    def unit_sources(self) -> list[Path]:
        return iter_sources(self.config.sizes_dir, self.config.patterns.template)

    def build_all(self, use_cache: bool = True) -> list[Path]:
        """Render every non-private template under ``sizes/``."""
        written: list[Path] = []
        for source in self.unit_sources():
            if use_cache and self._cache.get(source) == _digest_file(source):
                continue
            written.append(self.render_file(source))
        return written

    def build_unit(self, unit: str) -> list[Path]:
        """Fresh render of one unit's top-level templates, bypassing the cache."""
        if not unit or is_private(unit):
            return []
        unit_dir = self.config.sizes_dir / unit
        if not unit_dir.is_dir():
            return []
        written: list[Path] = []
        for source in sorted(unit_dir.glob(f"*{self.config.patterns.template}")):
            if source.is_file() and not is_private(source.name):
                written.append(self.render_file(source))
        return written

    def build_index(self) -> Optional[Path]:
        """Re-render ``sizes/index`` so unit listings pick up new units."""
        source = self.config.sizes_dir / f"index{self.config.patterns.template}"
        if not source.is_file():
            return None
        return self.render_file(source)


def _digest_file(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


# =============================================================================
# Stylesheets
# =============================================================================


def style_output_path(config: BannerConfig, source: Path) -> Path:
    rel = source.relative_to(config.sizes_dir)
    return config.build_dir / rel.with_suffix(".css")


def compile_style(config: BannerConfig, source: Path) -> Path:
    """Compile one stylesheet with the configured external compiler."""
    dest = style_output_path(config, source)
    dest.parent.mkdir(parents=True, exist_ok=True)
    cmd = [*config.styles.command, str(source), str(dest)]
    try:
        result = run_cmd(cmd, capture=True, check=False)
    except FileNotFoundError as e:
        raise CompileError(source, f"style compiler not found: {cmd[0]}") from e
    if result.returncode != 0:
        raise CompileError(source, (result.stderr or result.stdout).strip()[:500])
    return dest


def build_styles(config: BannerConfig) -> list[Path]:
    """Compile every non-private stylesheet under ``sizes/``."""
    return [
        compile_style(config, source)
        for source in iter_sources(config.sizes_dir, config.patterns.style)
    ]


# =============================================================================
# Images and Scripts
# =============================================================================


def _is_newer(source: Path, dest: Path) -> bool:
    try:
        return source.stat().st_mtime_ns > dest.stat().st_mtime_ns
    except FileNotFoundError:
        return True


def _copy_if_newer(source: Path, dest: Path) -> bool:
    if not _is_newer(source, dest):
        return False
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, dest)
    return True


def _asset_matches(config: BannerConfig, category: str, name: str) -> bool:
    if category == "images":
        return config.patterns.is_image(name)
    return name.endswith(config.patterns.script)


def _iter_assets(config: BannerConfig, category: str, root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    exclude = [config.plugins_dir] if category == "scripts" else []
    found: list[Path] = []
    for path in sorted(root.rglob("*")):
        if not path.is_file() or not _asset_matches(config, category, path.name):
            continue
        rel = path.relative_to(root)
        if _has_private_part(rel) or is_noise(path.name):
            continue
        if any(path.resolve().is_relative_to(ex.resolve()) for ex in exclude):
            continue
        found.append(path)
    return found


def asset_output_paths(config: BannerConfig, source: Path) -> list[Path]:
    """Output locations of an image or script source.

    Unit assets mirror their path under ``sizes/``. Global assets are copied
    into every unit so each unit archive is self-contained, except into
    units that have their own file at the same path.
    """
    source = source.resolve()
    if source.is_relative_to(config.sizes_dir):
        return [config.build_dir / source.relative_to(config.sizes_dir)]
    if source.is_relative_to(config.global_dir):
        rel = source.relative_to(config.global_dir)
        return [
            config.unit_output_dir(unit) / rel
            for unit in config.source_units()
            if not (config.sizes_dir / unit / rel).exists()
        ]
    return []


def global_counterpart(config: BannerConfig, source: Path) -> Optional[Path]:
    """The global asset a unit-local asset overrides, if one exists."""
    source = source.resolve()
    if not source.is_relative_to(config.sizes_dir):
        return None
    parts = source.relative_to(config.sizes_dir).parts
    if len(parts) < 2:
        return None
    rel = Path(*parts[1:])
    candidate = config.global_dir / rel
    if _has_private_part(rel) or not candidate.is_file():
        return None
    if candidate.resolve().is_relative_to(config.plugins_dir):
        return None
    return candidate


def restore_global_asset(config: BannerConfig, source: Path) -> Optional[Path]:
    """After a unit override is deleted, copy the global file back in its place."""
    fallback = global_counterpart(config, source)
    if fallback is None:
        return None
    dest = asset_output_paths(config, source)[0]
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(fallback, dest)
    return dest


def copy_newer(config: BannerConfig, category: str) -> int:
    """Copy images or scripts whose source is newer than the output copy.

    ``category`` is ``"images"`` or ``"scripts"``. Global plugin scripts are
    template inputs and never copied. Returns the number of files copied.
    """
    copied = 0
    for root in (config.sizes_dir, config.global_dir):
        for source in _iter_assets(config, category, root):
            for dest in asset_output_paths(config, source):
                if _copy_if_newer(source, dest):
                    copied += 1
    if copied:
        log.debug(f"Copied {copied} {category}")
    return copied


# =============================================================================
# Archives
# =============================================================================


def _write_zip(zip_path: Path, members: Iterable[tuple[Path, str]]) -> Path:
    """Write a zip atomically: readers never see a half-written archive."""
    zip_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{zip_path.stem}-", suffix=".tmp", dir=zip_path.parent)
    os.close(fd)
    try:
        with zipfile.ZipFile(tmp_name, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path, arcname in members:
                zf.write(path, arcname)
        os.replace(tmp_name, zip_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return zip_path


def _iter_members(root: Path) -> list[tuple[Path, str]]:
    members: list[tuple[Path, str]] = []
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root)
        if any(is_noise(part) for part in rel.parts) or not path.is_file():
            continue
        members.append((path, rel.as_posix()))
    return members


def archive_unit(unit_dir: Path) -> Path:
    """Zip one unit directory into ``<build>/<unit>.zip``."""
    zip_path = unit_dir.parent / f"{unit_dir.name}.zip"
    return _write_zip(zip_path, _iter_members(unit_dir))


def output_units(build_dir: Path) -> list[Path]:
    """Unit directories currently present in the output tree."""
    if not build_dir.is_dir():
        return []
    return sorted(p for p in build_dir.iterdir() if p.is_dir() and not is_noise(p.name))


def _is_aggregate(name: str) -> bool:
    return name.endswith("-banners.zip") or name.endswith(WHOLE_PACKAGE_SUFFIX)


def create_complete_package(config: BannerConfig) -> Path:
    """Bundle the individual unit zips into ``<project>-all-banners.zip``."""
    build_dir = config.build_dir
    members = [
        (path, path.name)
        for path in sorted(build_dir.glob("*.zip"))
        if not _is_aggregate(path.name)
    ]
    package = _write_zip(build_dir / f"{config.project.name}{ALL_BANNERS_SUFFIX}", members)
    log.info(f"Complete package: {package.name} ({len(members)} banners)")
    return package


def create_package(config: BannerConfig) -> Path:
    """Bundle the whole output tree into ``<project>-whole-package.zip``."""
    build_dir = config.build_dir
    package_path = build_dir / f"{config.project.name}{WHOLE_PACKAGE_SUFFIX}"
    members = [(path, arc) for path, arc in _iter_members(build_dir) if path != package_path]
    # Unit zips are excluded by the noise filter; add the top-level ones back
    members.extend(
        (path, path.name)
        for path in sorted(build_dir.glob("*.zip"))
        if path != package_path
    )
    package = _write_zip(package_path, members)
    log.info(f"Package: {package.name}")
    return package


# =============================================================================
# Size Manifest
# =============================================================================


def directory_size(path: Path) -> int:
    """Total bytes of the non-noise files under ``path``."""
    total = 0
    for file_path in path.rglob("*"):
        rel = file_path.relative_to(path)
        if any(is_noise(part) for part in rel.parts):
            continue
        try:
            if file_path.is_file():
                total += file_path.stat().st_size
        except OSError:
            continue
    return total


def collect_zip_sizes(build_dir: Path) -> dict[str, int]:
    """Map ``<unit>.zip`` -> bytes for the preview page.

    Units that have an ``index.html`` but no zip yet report their directory
    size under the same key.
    """
    files: dict[str, int] = {}
    if not build_dir.is_dir():
        return files
    for path in sorted(build_dir.iterdir()):
        if path.is_file() and path.suffix.lower() == ".zip" and not _is_aggregate(path.name):
            files[path.name] = path.stat().st_size
    for path in sorted(build_dir.iterdir()):
        if not path.is_dir() or not (path / "index.html").exists():
            continue
        files.setdefault(f"{path.name}.zip", directory_size(path))
    return files


def render_size_manifest(files: dict[str, int], updated_at: str) -> str:
    return (
        "// Auto-generated by bannerkit\n"
        "if (typeof window !== 'undefined') {\n"
        f"    window.BANNER_SIZES = {json.dumps(files, indent=2)};\n"
        f"    window.BANNER_SIZES_UPDATED = {json.dumps(updated_at)};\n"
        "    if (typeof window.applyBannerSizes === 'function') {\n"
        "        window.applyBannerSizes();\n"
        "    }\n"
        "}\n"
    )


def write_size_manifest(build_dir: Path) -> dict[str, Any]:
    """Write ``banner-sizes.js`` and return ``{updatedAt, files}``."""
    manifest = {
        "updatedAt": datetime.now(timezone.utc).isoformat(),
        "files": collect_zip_sizes(build_dir),
    }
    build_dir.mkdir(parents=True, exist_ok=True)
    (build_dir / SIZE_MANIFEST_NAME).write_text(
        render_size_manifest(manifest["files"], manifest["updatedAt"]),
        encoding="utf-8",
    )
    log.debug(f"Updated {SIZE_MANIFEST_NAME} ({len(manifest['files'])} entries)")
    return manifest


def write_manifest_placeholder(build_dir: Path) -> bool:
    """Write an empty ``banner-sizes.js`` unless a real one exists."""
    path = build_dir / SIZE_MANIFEST_NAME
    if path.exists():
        return False
    build_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(
        "// Auto-generated placeholder (dev)\n"
        "if (typeof window !== 'undefined') {\n"
        "    window.BANNER_SIZES = window.BANNER_SIZES || {};\n"
        "    window.BANNER_SIZES_UPDATED = window.BANNER_SIZES_UPDATED || '';\n"
        "    if (typeof window.applyBannerSizes === 'function') window.applyBannerSizes();\n"
        "}\n",
        encoding="utf-8",
    )
    log.debug(f"Wrote placeholder {path}")
    return True


# =============================================================================
# Cleanup
# =============================================================================


def build_clean_targets(config: BannerConfig) -> list[Path]:
    """Everything inside the output directory."""
    build_dir = config.build_dir
    if not build_dir.is_dir():
        return []
    return sorted(build_dir.iterdir())


def zip_clean_targets(config: BannerConfig, include_export: bool = True) -> list[Path]:
    """Top-level zips, plus the export folder when it exists."""
    targets: list[Path] = []
    if config.build_dir.is_dir():
        targets.extend(sorted(config.build_dir.glob("*.zip")))
    if include_export and config.export_dir.exists():
        targets.append(config.export_dir)
    return targets


def clean_build(config: BannerConfig) -> int:
    """Delete everything inside the output directory."""
    return len(remove_paths(build_clean_targets(config)))


def clean_zips(config: BannerConfig, include_export: bool = True) -> int:
    """Delete top-level zips (and the export folder)."""
    return len(remove_paths(zip_clean_targets(config, include_export)))


def clean_assets(config: BannerConfig, category: str) -> int:
    """Delete copied images or scripts from the output tree.

    ``banner-sizes.js`` is generated, not copied, and survives a script clean.
    """
    build_dir = config.build_dir
    if not build_dir.is_dir():
        return 0
    targets = [
        path
        for path in build_dir.rglob("*")
        if path.is_file()
        and _asset_matches(config, category, path.name)
        and path != build_dir / SIZE_MANIFEST_NAME
    ]
    return len(remove_paths(targets))


def remove_unit_outputs(config: BannerConfig, unit: str) -> list[Path]:
    """Best-effort removal of a unit's output directory and archive."""
    return remove_paths([config.unit_output_dir(unit), config.unit_archive_path(unit)])
