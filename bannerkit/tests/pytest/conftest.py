"""
Shared pytest fixtures for bannerkit tests.

Provides isolated banner projects on disk and a manual timer factory so
debounced components can be driven without sleeping.

Test Tier Markers:
  @pytest.mark.evergreen - Tests that always run, never skip (production tests)
  @pytest.mark.dev       - Development/WIP tests, toggle-able
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import pytest

from bannerkit.build.config import BannerConfig, FeatureFlags, ProjectConfig


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test tiers."""
    config.addinivalue_line(
        "markers",
        "evergreen: tests that always run, never skip (production tests)"
    )
    config.addinivalue_line(
        "markers",
        "dev: development/WIP tests, toggle-able for active development"
    )


# =============================================================================
# Manual Timers
# =============================================================================


class ManualTimer:
    """Timer handle created by :class:`ManualClock`."""

    def __init__(self, clock: "ManualClock", interval: float, callback: Callable[[], None]):
        self.clock = clock
        self.interval = interval
        self.callback = callback
        self.due: Optional[float] = None
        self.cancelled = False
        self.fired = False

    def start(self) -> None:
        self.due = self.clock.now + self.interval
        self.clock.timers.append(self)

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def active(self) -> bool:
        return self.due is not None and not self.cancelled and not self.fired


class ManualClock:
    """Timer factory whose time only moves when a test calls :meth:`advance`."""

    # Float sums like 0.2 + 0.1 must still reach a 0.3 deadline
    EPSILON = 1e-9

    def __init__(self) -> None:
        self.now = 0.0
        self.timers: list[ManualTimer] = []

    def __call__(self, interval: float, callback: Callable[[], None]) -> ManualTimer:
        return ManualTimer(self, interval, callback)

    @property
    def active(self) -> list[ManualTimer]:
        return [t for t in self.timers if t.active]

    def advance(self, seconds: float) -> None:
        """Move time forward, firing due timers in deadline order."""
        target = self.now + seconds
        while True:
            due = [t for t in self.active if t.due <= target + self.EPSILON]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.now = max(self.now, timer.due)
            timer.fired = True
            timer.callback()
        self.now = target


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


# =============================================================================
# Project Fixtures
# =============================================================================


def write(path: Path, text: str = "") -> Path:
    """Create ``path`` (and its parents) with ``text``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


INDEX_TEMPLATE = "{% for u in units %}<a href=\"{{ u }}/\">{{ u }}</a>\n{% endfor %}"
UNIT_TEMPLATE = "<html><body>{{ unit }} {{ width }}x{{ height }}</body></html>"


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A banner project with one unit (160x600) and a unit index."""
    root = tmp_path / "project"
    src = root / "src"
    write(src / "sizes" / "index.j2", INDEX_TEMPLATE)
    write(src / "sizes" / "160x600" / "index.j2", UNIT_TEMPLATE)
    (src / "global" / "plugins").mkdir(parents=True)
    return root


def make_config(root: Path, auto_zip: bool = True) -> BannerConfig:
    return BannerConfig(
        project_root=root,
        project=ProjectConfig(name="demo"),
        features=FeatureFlags(enable_auto_zip=auto_zip),
    )


@pytest.fixture
def config(project: Path) -> BannerConfig:
    """Config for :func:`project` with auto-zip enabled."""
    return make_config(project)
