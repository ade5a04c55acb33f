"""
Remote upload for bannerkit.

Publishes the build tree to an SFTP server for client review:
1. Resolves connection settings (FTP_* environment, then ftp.config.json)
2. Clears the remote folder
3. Uploads every output file, creating remote directories on demand
4. Prints and opens the public preview URL when one is configured
"""

from __future__ import annotations

import json
import os
import posixpath
import shutil
import stat
import subprocess
import sys
import webbrowser
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, ContextManager, Iterator, Mapping, Optional

from bannerkit.core.errors import ConfigError, UploadError
from bannerkit.core.utils import format_size, is_os_metadata, log

UPLOAD_CONFIG_FILENAME = "ftp.config.json"


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class UploadConfig:
    """SFTP connection and destination settings."""

    host: str
    user: str
    password: str
    remote_path: str
    port: int = 22
    remote_subdir: str = ""
    public_url_base: str = ""

    @property
    def remote_base(self) -> str:
        base = self.remote_path.replace("\\", "/").rstrip("/")
        if self.remote_subdir:
            sub = self.remote_subdir.replace("\\", "/").lstrip("/")
            base = posixpath.join(base, sub)
        return base or "/"

    @property
    def public_url(self) -> Optional[str]:
        if not self.public_url_base:
            return None
        url = self.public_url_base.rstrip("/") + "/"
        if self.remote_subdir:
            url += self.remote_subdir.strip("/") + "/"
        return url


def _port(value: Any) -> int:
    try:
        return int(value or 22)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid upload port: {value!r}") from e


def load_upload_config(
    project_root: Path,
    environ: Optional[Mapping[str, str]] = None,
) -> UploadConfig:
    """Resolve upload settings.

    ``FTP_HOST``, ``FTP_USER`` and ``FTP_PASSWORD`` must all be set for the
    environment to win; otherwise ``ftp.config.json`` in the project root is
    used (camelCase keys). Raises ConfigError when neither is complete.
    """
    env = os.environ if environ is None else environ
    raw: dict[str, Any] = {
        "host": env.get("FTP_HOST"),
        "user": env.get("FTP_USER"),
        "password": env.get("FTP_PASSWORD"),
        "port": env.get("FTP_PORT"),
        "remotePath": env.get("FTP_REMOTE_PATH"),
        "remoteSubdir": env.get("FTP_REMOTE_SUBDIR"),
        "publicUrlBase": env.get("FTP_PUBLIC_URL"),
    }

    if raw["host"] and raw["user"] and raw["password"]:
        log.debug("[upload] Using environment variables")
    else:
        path = project_root / UPLOAD_CONFIG_FILENAME
        if path.exists():
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid JSON in {path}: {e}") from e
            if not isinstance(raw, dict):
                raise ConfigError(f"{path} must contain a JSON object")
            log.debug(f"[upload] Using {UPLOAD_CONFIG_FILENAME}")

    if not all(raw.get(key) for key in ("host", "user", "password", "remotePath")):
        raise ConfigError(
            "Upload config missing. Set FTP_HOST, FTP_USER, FTP_PASSWORD, FTP_REMOTE_PATH "
            f"environment variables or provide {UPLOAD_CONFIG_FILENAME}"
        )

    return UploadConfig(
        host=str(raw["host"]),
        user=str(raw["user"]),
        password=str(raw["password"]),
        remote_path=str(raw["remotePath"]),
        port=_port(raw.get("port")),
        remote_subdir=str(raw.get("remoteSubdir") or ""),
        public_url_base=str(raw.get("publicUrlBase") or ""),
    )


# =============================================================================
# SFTP Session
# =============================================================================


@contextmanager
def open_sftp(cfg: UploadConfig) -> Iterator[Any]:
    """Connect with paramiko and yield an SFTP client."""
    try:
        import paramiko
    except ImportError as e:
        raise UploadError("paramiko is required for uploads: pip install 'bannerkit[upload]'") from e

    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(
            cfg.host,
            port=cfg.port,
            username=cfg.user,
            password=cfg.password,
            look_for_keys=False,
            allow_agent=False,
        )
    except (paramiko.SSHException, OSError) as e:
        client.close()
        raise UploadError(f"Could not connect to {cfg.host}:{cfg.port}: {e}") from e

    try:
        sftp = client.open_sftp()
        try:
            yield sftp
        finally:
            sftp.close()
    finally:
        client.close()


def _exists(sftp: Any, path: str) -> bool:
    try:
        sftp.stat(path)
    except FileNotFoundError:
        return False
    return True


def _makedirs(sftp: Any, path: str) -> None:
    """``mkdir -p`` over SFTP."""
    current = "/" if path.startswith("/") else ""
    for part in path.strip("/").split("/"):
        if not part:
            continue
        current = posixpath.join(current, part) if current else part
        if not _exists(sftp, current):
            sftp.mkdir(current)


def _rmtree(sftp: Any, path: str) -> None:
    for entry in sftp.listdir_attr(path):
        child = posixpath.join(path, entry.filename)
        if stat.S_ISDIR(entry.st_mode or 0):
            _rmtree(sftp, child)
        else:
            sftp.remove(child)
    sftp.rmdir(path)


# =============================================================================
# Remote Operations
# =============================================================================


SessionFactory = Callable[[UploadConfig], ContextManager[Any]]


class RemoteFolder:
    """List, clear and upload to the configured remote folder."""

    def __init__(self, cfg: UploadConfig, session: SessionFactory = open_sftp):
        self.cfg = cfg
        self.session = session

    def list(self) -> list[tuple[str, bool, int]]:
        """Log and return ``(name, is_dir, size)`` for the remote folder."""
        base = self.cfg.remote_base
        with self.session(self.cfg) as sftp:
            if not _exists(sftp, base):
                _makedirs(sftp, base)
            entries = [
                (e.filename, stat.S_ISDIR(e.st_mode or 0), e.st_size or 0)
                for e in sorted(sftp.listdir_attr(base), key=lambda e: e.filename)
            ]

        log.info(f"Remote listing for {base}:")
        for name, is_dir, size in entries:
            kind = "dir " if is_dir else "file"
            log.info(f" - [{kind}] {name} {'-' if is_dir else format_size(size)}")
        if self.cfg.public_url:
            log.info(f"Public URL: {self.cfg.public_url}")
        return entries

    def clean(self) -> None:
        """Remove the remote folder recursively and recreate it empty."""
        base = self.cfg.remote_base
        with self.session(self.cfg) as sftp:
            if _exists(sftp, base):
                _rmtree(sftp, base)
            _makedirs(sftp, base)
        log.success(f"Remote folder cleared: {base}")

    def upload(self, local_dir: Path) -> int:
        """Upload every file under ``local_dir``. Returns the file count."""
        base = self.cfg.remote_base
        files = [
            path
            for path in sorted(local_dir.rglob("*"))
            if path.is_file() and not is_os_metadata(path.name)
        ]

        created: set[str] = set()
        with self.session(self.cfg) as sftp:
            for path in files:
                rel = path.relative_to(local_dir).as_posix()
                remote_path = posixpath.join(base, rel)
                remote_dir = posixpath.dirname(remote_path)
                if remote_dir not in created:
                    _makedirs(sftp, remote_dir)
                    created.add(remote_dir)
                try:
                    sftp.put(str(path), remote_path)
                except OSError as e:
                    raise UploadError(f"Upload of {rel} failed: {e}") from e
                log.debug(f"[upload] {rel}")

        log.success(f"Uploaded {len(files)} file(s) to {self.cfg.host}:{base}")
        return len(files)


CLIPBOARD_COMMANDS = {
    "darwin": [["pbcopy"]],
    "win32": [["clip"]],
    "linux": [["wl-copy"], ["xclip", "-selection", "clipboard"], ["xsel", "--clipboard", "--input"]],
}


def copy_to_clipboard(text: str) -> bool:
    """Pipe ``text`` into the platform clipboard tool, if one is installed."""
    for cmd in CLIPBOARD_COMMANDS.get(sys.platform, []):
        if shutil.which(cmd[0]) is None:
            continue
        try:
            subprocess.run(cmd, input=text, text=True, check=True, capture_output=True, timeout=5)
            return True
        except (OSError, subprocess.SubprocessError) as e:
            log.debug(f"Clipboard copy via {cmd[0]} failed: {e}")
    return False


def announce_public_url(cfg: UploadConfig, open_browser: bool = True) -> Optional[str]:
    """Print the preview URL, copy it to the clipboard and try to open it."""
    url = cfg.public_url
    if not url:
        return None
    log.info(f"Public URL: {url}")
    if copy_to_clipboard(url):
        log.dim("Copied to clipboard.")
    if open_browser and not webbrowser.open(url):
        log.dim("Tip: open this URL in your browser if it did not open automatically.")
    return url
