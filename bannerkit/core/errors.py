"""Exception types raised by bannerkit."""


class BannerkitError(Exception):
    """Base class for all bannerkit errors."""


class ConfigError(BannerkitError):
    """banner.yaml or upload settings are missing or malformed."""


class CompileError(BannerkitError):
    """A template or stylesheet failed to compile."""

    def __init__(self, source, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class UploadError(BannerkitError):
    """Remote upload, listing or cleanup failed."""
