"""
bannerkit.build - Build orchestration for banner projects.

Provides configuration loading, archive caching, the individual build
phases and the one-shot build/zip/upload flows.
"""

from bannerkit.build.config import (
    BannerConfig,
    FeatureFlags,
    PathsConfig,
    PatternsConfig,
    ProjectConfig,
    ServerConfig,
    StylesConfig,
    TimingConfig,
    load_config,
)
from bannerkit.build.caching import (
    ArchiveCache,
    FingerprintStore,
    fingerprint_directory,
)
from bannerkit.build.orchestrator import BuildOrchestrator

__all__ = [
    # Data classes
    "BannerConfig",
    "FeatureFlags",
    "PathsConfig",
    "PatternsConfig",
    "ProjectConfig",
    "ServerConfig",
    "StylesConfig",
    "TimingConfig",
    # Functions
    "load_config",
    "fingerprint_directory",
    # Caching
    "ArchiveCache",
    "FingerprintStore",
    # Orchestrator
    "BuildOrchestrator",
]
