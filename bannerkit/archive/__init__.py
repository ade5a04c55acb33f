"""Publishing of finished banner packages."""

from bannerkit.archive.upload import (
    RemoteFolder,
    UploadConfig,
    announce_public_url,
    load_upload_config,
    open_sftp,
)

__all__ = [
    "RemoteFolder",
    "UploadConfig",
    "announce_public_url",
    "load_upload_config",
    "open_sftp",
]
