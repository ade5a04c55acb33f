"""bannerkit - build orchestrator for multi-size banner ad projects."""

__version__ = "0.1.0"
