"""
Tests for the individual build phases.

Covers template rendering, stylesheet compilation through an external
command, asset copying, archives, the size manifest and cleanup.
"""

from __future__ import annotations

import sys
import zipfile
from pathlib import Path

import pytest

from bannerkit.build.config import BannerConfig
from bannerkit.build.phases import (
    SIZE_MANIFEST_NAME,
    TemplateRenderer,
    archive_unit,
    asset_output_paths,
    build_styles,
    clean_assets,
    clean_build,
    clean_zips,
    collect_zip_sizes,
    compile_style,
    copy_newer,
    create_complete_package,
    create_package,
    global_counterpart,
    iter_sources,
    remove_unit_outputs,
    run_step,
    template_output_name,
    unit_dimensions,
    write_manifest_placeholder,
    write_size_manifest,
)
from bannerkit.core.errors import CompileError
from conftest import write

# Stands in for the sass CLI: copies <source> to <dest>
COPY_COMMAND = [
    sys.executable,
    "-c",
    "import shutil, sys; shutil.copyfile(sys.argv[1], sys.argv[2])",
]


# =============================================================================
# Helper Tests
# =============================================================================


@pytest.mark.evergreen
class TestHelpers:
    """Naming and discovery helpers."""

    @pytest.mark.parametrize(
        "name, expected",
        [("index.j2", "index.html"), ("feed.xml.j2", "feed.xml"), ("plain", "plain.html")],
    )
    def test_template_output_name(self, name: str, expected: str) -> None:
        assert template_output_name(name, ".j2") == expected

    def test_unit_dimensions(self) -> None:
        assert unit_dimensions("300x250") == (300, 250)
        assert unit_dimensions("mobile-320x50") == (320, 50)
        assert unit_dimensions("skyscraper") == (None, None)

    def test_iter_sources_skips_private(self, tmp_path: Path) -> None:
        write(tmp_path / "a" / "index.j2")
        write(tmp_path / "a" / "_partial.j2")
        write(tmp_path / "_draft" / "index.j2")
        assert iter_sources(tmp_path, ".j2") == [tmp_path / "a" / "index.j2"]

    def test_run_step_captures_failure(self, capsys: pytest.CaptureFixture[str]) -> None:
        def explode() -> None:
            raise ValueError("nope")

        result = run_step("Explode", explode)
        assert not result.ok
        assert isinstance(result.error, ValueError)
        assert "Explode failed: nope" in capsys.readouterr().out

    def test_run_step_returns_value(self) -> None:
        result = run_step("Add", lambda a, b: a + b, 1, 2)
        assert result.ok and result.value == 3


# =============================================================================
# Template Tests
# =============================================================================


@pytest.mark.evergreen
class TestTemplateRenderer:
    """Jinja2 rendering from sizes/ into the output tree."""

    def test_build_all_renders_units_and_index(self, config: BannerConfig) -> None:
        written = TemplateRenderer(config).build_all()
        assert sorted(p.relative_to(config.build_dir).as_posix() for p in written) == [
            "160x600/index.html",
            "index.html",
        ]
        assert "160x600/" in (config.build_dir / "index.html").read_text()

    def test_build_all_uses_content_cache(self, config: BannerConfig) -> None:
        renderer = TemplateRenderer(config)
        assert len(renderer.build_all()) == 2
        assert renderer.build_all() == []
        assert len(renderer.build_all(use_cache=False)) == 2
        renderer.clear_cache()
        assert len(renderer.build_all()) == 2

    def test_context_has_plugins_and_dimensions(self, config: BannerConfig) -> None:
        write(config.plugins_dir / "clicktag.js", "var clickTag = '';")
        source = write(
            config.sizes_dir / "300x250" / "index.j2",
            "{{ width }}|{{ height }}|{{ plugins['clicktag.js'] }}|{{ project.name }}",
        )
        dest = TemplateRenderer(config).render_file(source)
        assert dest == config.build_dir / "300x250" / "index.html"
        assert dest.read_text() == "300|250|var clickTag = '';|demo"

    def test_global_include(self, config: BannerConfig) -> None:
        write(config.global_dir / "_footer.j2", "<footer>{{ unit }}</footer>")
        source = write(
            config.sizes_dir / "160x600" / "index.j2",
            "{% include 'global/_footer.j2' %}",
        )
        assert TemplateRenderer(config).render_file(source).read_text() == "<footer>160x600</footer>"

    def test_undefined_variable_raises_compile_error(self, config: BannerConfig) -> None:
        source = write(config.sizes_dir / "160x600" / "index.j2", "{{ missing }}")
        with pytest.raises(CompileError) as exc:
            TemplateRenderer(config).render_file(source)
        assert exc.value.source == source

    def test_build_unit_renders_top_level_only(self, config: BannerConfig) -> None:
        write(config.sizes_dir / "160x600" / "parts" / "extra.j2", "x")
        write(config.sizes_dir / "160x600" / "_partial.j2", "x")
        written = TemplateRenderer(config).build_unit("160x600")
        assert written == [config.build_dir / "160x600" / "index.html"]

    def test_build_unit_ignores_private_and_missing(self, config: BannerConfig) -> None:
        renderer = TemplateRenderer(config)
        assert renderer.build_unit("_draft") == []
        assert renderer.build_unit("nope") == []

    def test_build_index_without_template(self, tmp_path: Path) -> None:
        config = BannerConfig(project_root=tmp_path)
        assert TemplateRenderer(config).build_index() is None


# =============================================================================
# Stylesheet Tests
# =============================================================================


@pytest.mark.evergreen
class TestStyles:
    """Stylesheets go through the configured external command."""

    def test_compile_style_runs_command(self, config: BannerConfig) -> None:
        config.styles.command = list(COPY_COMMAND)
        source = write(config.sizes_dir / "160x600" / "style.sass", "body { margin: 0 }")
        dest = compile_style(config, source)
        assert dest == config.build_dir / "160x600" / "style.css"
        assert dest.read_text() == "body { margin: 0 }"

    def test_missing_compiler_raises_compile_error(self, config: BannerConfig) -> None:
        config.styles.command = ["bannerkit-no-such-sass-binary"]
        source = write(config.sizes_dir / "160x600" / "style.sass", "")
        with pytest.raises(CompileError, match="not found"):
            compile_style(config, source)

    def test_compiler_failure_raises_compile_error(self, config: BannerConfig) -> None:
        config.styles.command = [sys.executable, "-c", "import sys; sys.exit('bad indent')"]
        source = write(config.sizes_dir / "160x600" / "style.sass", "")
        with pytest.raises(CompileError, match="bad indent"):
            compile_style(config, source)

    def test_build_styles_skips_partials(self, config: BannerConfig) -> None:
        config.styles.command = list(COPY_COMMAND)
        write(config.sizes_dir / "160x600" / "style.sass", "a")
        write(config.sizes_dir / "160x600" / "_vars.sass", "b")
        assert build_styles(config) == [config.build_dir / "160x600" / "style.css"]


# =============================================================================
# Asset Tests
# =============================================================================


@pytest.mark.evergreen
class TestAssets:
    """Images and scripts are copied when newer; globals go into every unit."""

    def test_unit_assets_mirror_sizes(self, config: BannerConfig) -> None:
        write(config.sizes_dir / "160x600" / "img" / "bg.jpg", "jpg")
        assert copy_newer(config, "images") == 1
        assert (config.build_dir / "160x600" / "img" / "bg.jpg").read_text() == "jpg"

    def test_global_assets_copied_into_each_unit(self, config: BannerConfig) -> None:
        (config.sizes_dir / "300x250").mkdir()
        write(config.global_dir / "vendor" / "gsap.js", "gsap")
        assert copy_newer(config, "scripts") == 2
        for unit in ("160x600", "300x250"):
            assert (config.build_dir / unit / "vendor" / "gsap.js").exists()

    def test_plugins_and_private_files_not_copied(self, config: BannerConfig) -> None:
        write(config.plugins_dir / "clicktag.js", "x")
        write(config.sizes_dir / "160x600" / "_draft.png", "x")
        write(config.sizes_dir / "160x600" / ".DS_Store", "x")
        assert copy_newer(config, "scripts") == 0
        assert copy_newer(config, "images") == 0

    def test_second_copy_is_noop(self, config: BannerConfig) -> None:
        write(config.sizes_dir / "160x600" / "main.js", "1")
        assert copy_newer(config, "scripts") == 1
        assert copy_newer(config, "scripts") == 0

    def test_asset_output_paths_outside_sources(self, config: BannerConfig, tmp_path: Path) -> None:
        assert asset_output_paths(config, tmp_path / "elsewhere.png") == []

    def test_unit_asset_overrides_global(self, config: BannerConfig) -> None:
        (config.sizes_dir / "300x250").mkdir()
        write(config.sizes_dir / "160x600" / "img" / "logo.png", "UNIT")
        write(config.global_dir / "img" / "logo.png", "GLOBAL")

        assert copy_newer(config, "images") == 2
        assert copy_newer(config, "images") == 0

        assert (config.build_dir / "160x600" / "img" / "logo.png").read_text() == "UNIT"
        assert (config.build_dir / "300x250" / "img" / "logo.png").read_text() == "GLOBAL"

    def test_global_output_paths_skip_overriding_units(self, config: BannerConfig) -> None:
        (config.sizes_dir / "300x250").mkdir()
        write(config.sizes_dir / "160x600" / "img" / "logo.png", "UNIT")
        outputs = asset_output_paths(config, config.global_dir / "img" / "logo.png")
        assert outputs == [config.build_dir / "300x250" / "img" / "logo.png"]

    def test_global_counterpart(self, config: BannerConfig) -> None:
        unit_logo = config.sizes_dir / "160x600" / "img" / "logo.png"
        assert global_counterpart(config, unit_logo) is None

        shared = write(config.global_dir / "img" / "logo.png", "GLOBAL")
        assert global_counterpart(config, unit_logo) == shared
        assert global_counterpart(config, config.sizes_dir / "logo.png") is None
        assert global_counterpart(config, shared) is None

    def test_plugins_are_never_counterparts(self, config: BannerConfig) -> None:
        write(config.plugins_dir / "clicktag.js", "x")
        unit_script = config.sizes_dir / "160x600" / "plugins" / "clicktag.js"
        assert global_counterpart(config, unit_script) is None


# =============================================================================
# Archive Tests
# =============================================================================


def _built_unit(config: BannerConfig, unit: str) -> Path:
    unit_dir = config.build_dir / unit
    write(unit_dir / "index.html", unit)
    write(unit_dir / "img" / "bg.jpg", "jpg")
    return unit_dir


@pytest.mark.evergreen
class TestArchives:
    """Unit zips and the two aggregate packages."""

    def test_archive_unit(self, config: BannerConfig) -> None:
        unit_dir = _built_unit(config, "160x600")
        write(unit_dir / ".DS_Store", "x")
        path = archive_unit(unit_dir)
        assert path == config.unit_archive_path("160x600")
        with zipfile.ZipFile(path) as zf:
            assert sorted(zf.namelist()) == ["img/bg.jpg", "index.html"]

    def test_archive_leaves_no_temp_files(self, config: BannerConfig) -> None:
        archive_unit(_built_unit(config, "160x600"))
        assert sorted(p.name for p in config.build_dir.iterdir()) == ["160x600", "160x600.zip"]

    def test_complete_package_holds_unit_zips_only(self, config: BannerConfig) -> None:
        for unit in ("160x600", "300x250"):
            archive_unit(_built_unit(config, unit))
        write(config.build_dir / "demo-whole-package.zip", "old")
        package = create_complete_package(config)
        assert package.name == "demo-all-banners.zip"
        with zipfile.ZipFile(package) as zf:
            assert sorted(zf.namelist()) == ["160x600.zip", "300x250.zip"]

    def test_whole_package_excludes_itself(self, config: BannerConfig) -> None:
        archive_unit(_built_unit(config, "160x600"))
        write(config.build_dir / "index.html", "index")
        create_package(config)
        package = create_package(config)
        with zipfile.ZipFile(package) as zf:
            names = sorted(zf.namelist())
        assert names == ["160x600.zip", "160x600/img/bg.jpg", "160x600/index.html", "index.html"]


# =============================================================================
# Size Manifest Tests
# =============================================================================


@pytest.mark.evergreen
class TestSizeManifest:
    """banner-sizes.js lists unit zip sizes for the preview page."""

    def test_collect_sizes(self, config: BannerConfig) -> None:
        write(config.build_dir / "160x600.zip", "0123456789")
        write(config.build_dir / "demo-all-banners.zip", "aggregate")
        write(config.build_dir / "demo-whole-package.zip", "aggregate")
        write(config.build_dir / "300x250" / "index.html", "12345")
        write(config.build_dir / "assets" / "x.css", "no index")

        assert collect_zip_sizes(config.build_dir) == {"160x600.zip": 10, "300x250.zip": 5}

    def test_zip_size_wins_over_directory_size(self, config: BannerConfig) -> None:
        write(config.build_dir / "160x600.zip", "zip")
        write(config.build_dir / "160x600" / "index.html", "a much longer page")
        assert collect_zip_sizes(config.build_dir) == {"160x600.zip": 3}

    def test_write_manifest(self, config: BannerConfig) -> None:
        write(config.build_dir / "160x600.zip", "zip")
        manifest = write_size_manifest(config.build_dir)
        assert manifest["files"] == {"160x600.zip": 3}
        text = (config.build_dir / SIZE_MANIFEST_NAME).read_text()
        assert 'window.BANNER_SIZES = {\n  "160x600.zip": 3\n}' in text
        assert manifest["updatedAt"] in text
        assert "applyBannerSizes" in text

    def test_placeholder_never_overwrites(self, config: BannerConfig) -> None:
        assert write_manifest_placeholder(config.build_dir) is True
        assert "placeholder" in (config.build_dir / SIZE_MANIFEST_NAME).read_text()
        write_size_manifest(config.build_dir)
        assert write_manifest_placeholder(config.build_dir) is False
        assert "placeholder" not in (config.build_dir / SIZE_MANIFEST_NAME).read_text()


# =============================================================================
# Cleanup Tests
# =============================================================================


@pytest.mark.evergreen
class TestCleanup:
    """Clean operations remove exactly their targets."""

    def test_clean_build_empties_output(self, config: BannerConfig) -> None:
        _built_unit(config, "160x600")
        write(config.build_dir / "index.html", "x")
        assert clean_build(config) == 2
        assert config.build_dir.exists()
        assert list(config.build_dir.iterdir()) == []

    def test_clean_zips_keeps_units(self, config: BannerConfig) -> None:
        archive_unit(_built_unit(config, "160x600"))
        write(config.export_dir / "export.zip", "x")
        assert clean_zips(config) == 2
        assert not config.export_dir.exists()
        assert (config.build_dir / "160x600" / "index.html").exists()

    def test_clean_scripts_keeps_manifest(self, config: BannerConfig) -> None:
        write(config.build_dir / "160x600" / "main.js", "x")
        write_manifest_placeholder(config.build_dir)
        assert clean_assets(config, "scripts") == 1
        assert (config.build_dir / SIZE_MANIFEST_NAME).exists()

    def test_remove_unit_outputs(self, config: BannerConfig) -> None:
        archive_unit(_built_unit(config, "160x600"))
        removed = remove_unit_outputs(config, "160x600")
        assert len(removed) == 2
        assert remove_unit_outputs(config, "160x600") == []
