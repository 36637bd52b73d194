"""
Storage backends used to enumerate and delete database backup files.

Three kinds of storage are supported:
- DiskBackend: local filesystem
- FtpBackend: FTP servers, one connection per call
- RemoteSyncBackend: cloud remotes reached through the rclone control API
"""
from __future__ import annotations

import ftplib
import logging
import os
import stat
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import unquote, urlparse

if TYPE_CHECKING:
    from rclone_session import RemoteSyncSession


logger = logging.getLogger(__name__)

MAX_DEPTH = 100
MAX_REMOTE_DEPTH = 5
FTP_DEFAULT_PORT = 21
FTP_FILE_UNAVAILABLE = "550"


class StorageKind(Enum):
    DISK = "disk"
    FTP = "ftp"
    CLOUD = "cloud"


class StorageError(Exception):
    """Base class for storage backend failures."""


class EnumerationError(StorageError):
    """Raised when a directory listing cannot be obtained."""


class DeleteError(StorageError):
    """Raised when a single file could not be deleted."""


@dataclass(frozen=True)
class StorageEntry:
    name: str
    full_path: str
    is_directory: bool
    archive_bit: bool = False


class StorageBackend:
    """Common recursion over ``list_children`` shared by every backend."""

    kind: StorageKind
    max_depth = MAX_DEPTH

    def list_children(self, path: str) -> List[StorageEntry]:
        raise NotImplementedError

    def delete_file(self, path: str) -> None:
        raise NotImplementedError

    def walk(self, path: str, depth: int) -> List[StorageEntry]:
        """Return the files below ``path``.

        Files are collected at every visited directory. Subdirectories are
        entered while the remaining depth budget is positive, so ``depth=0``
        lists the root only.
        """
        depth = max(0, min(depth, self.max_depth))
        files: List[StorageEntry] = []
        directories: List[StorageEntry] = []
        for entry in self.list_children(path):
            if entry.is_directory:
                directories.append(entry)
            else:
                files.append(entry)

        if depth > 0:
            for directory in directories:
                files.extend(self.walk(directory.full_path, depth - 1))
        return files


def _has_archive_bit(stat_result: os.stat_result) -> bool:
    attributes = getattr(stat_result, "st_file_attributes", None)
    if attributes is None:
        return False
    return bool(attributes & stat.FILE_ATTRIBUTE_ARCHIVE)


class DiskBackend(StorageBackend):
    kind = StorageKind.DISK

    def list_children(self, path: str) -> List[StorageEntry]:
        directory = Path(path)
        try:
            children = sorted(directory.iterdir())
        except OSError as error:
            raise EnumerationError(f"Cannot list {directory}: {error}") from error

        entries: List[StorageEntry] = []
        for child in children:
            try:
                child_stat = child.stat()
            except OSError as error:
                logger.warning("Skipping unreadable entry %s: %s", child, error)
                continue
            entries.append(
                StorageEntry(
                    name=child.name,
                    full_path=str(child),
                    is_directory=stat.S_ISDIR(child_stat.st_mode),
                    archive_bit=_has_archive_bit(child_stat),
                )
            )
        return entries

    def delete_file(self, path: str) -> None:
        target = Path(path)
        if target.is_dir():
            raise DeleteError(f"{target} is a directory.")
        try:
            target.unlink(missing_ok=True)
        except OSError as error:
            raise DeleteError(f"Failed to delete {target}: {error}") from error


def redact_url(path: str) -> str:
    """Mask the password of a URL with credentials, for logging."""
    scheme, separator, rest = path.partition("://")
    if not separator:
        return path
    netloc, slash, remainder = rest.partition("/")
    userinfo, at, host = netloc.rpartition("@")
    if not at or ":" not in userinfo:
        return path
    user = userinfo.split(":", 1)[0]
    return f"{scheme}://{user}:***@{host}{slash}{remainder}"


def _is_file_unavailable(error: ftplib.Error) -> bool:
    return str(error).startswith(FTP_FILE_UNAVAILABLE)


def parse_ftp_listing_line(line: str) -> Optional[Tuple[str, bool]]:
    """Parse one unix-style LIST line into ``(name, is_directory)``."""
    parts = line.split(None, 8)
    if len(parts) < 9:
        return None
    permissions, name = parts[0], parts[8]
    if name in (".", ".."):
        return None
    return name, permissions.startswith("d")


class FtpBackend(StorageBackend):
    kind = StorageKind.FTP
    max_depth = MAX_REMOTE_DEPTH

    def __init__(
        self,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.user = user
        self.password = password
        self.timeout = timeout

    @contextmanager
    def _connect(self, url: str) -> Iterator[Tuple[ftplib.FTP, str]]:
        parsed = urlparse(url)
        user = unquote(parsed.username) if parsed.username else self.user
        password = unquote(parsed.password) if parsed.password else self.password

        ftp = ftplib.FTP(timeout=self.timeout)
        try:
            ftp.connect(parsed.hostname or "", parsed.port or FTP_DEFAULT_PORT)
        except ftplib.all_errors:
            ftp.close()
            raise
        try:
            ftp.login(user or "anonymous", password or "")
            yield ftp, unquote(parsed.path).rstrip("/") or "/"
        finally:
            try:
                ftp.quit()
            except ftplib.all_errors:
                ftp.close()

    def list_children(self, path: str) -> List[StorageEntry]:
        lines: List[str] = []
        try:
            with self._connect(path) as (ftp, remote_path):
                ftp.dir(remote_path, lines.append)
        except ftplib.all_errors as error:
            raise EnumerationError(f"Cannot list {redact_url(path)}: {error}") from error

        base = path.rstrip("/")
        entries: List[StorageEntry] = []
        for line in lines:
            parsed = parse_ftp_listing_line(line)
            if parsed is None:
                logger.debug("Ignoring FTP listing line %r", line)
                continue
            name, is_directory = parsed
            entries.append(
                StorageEntry(name=name, full_path=f"{base}/{name}", is_directory=is_directory)
            )
        return entries

    def delete_file(self, path: str) -> None:
        try:
            with self._connect(path) as (ftp, remote_path):
                ftp.voidcmd("TYPE I")
                try:
                    ftp.size(remote_path)
                except ftplib.error_perm as error:
                    if not _is_file_unavailable(error):
                        raise
                    if self._is_directory(ftp, remote_path):
                        raise DeleteError(f"{redact_url(path)} is a directory.")
                    logger.debug("%s is already gone: %s", redact_url(path), error)
                    return

                try:
                    ftp.delete(remote_path)
                except ftplib.error_perm as error:
                    if not _is_file_unavailable(error):
                        raise
                    logger.debug("%s vanished before deletion: %s", redact_url(path), error)
        except ftplib.all_errors as error:
            raise DeleteError(f"Failed to delete {redact_url(path)}: {error}") from error

    @staticmethod
    def _is_directory(ftp: ftplib.FTP, remote_path: str) -> bool:
        try:
            ftp.cwd(remote_path)
        except ftplib.error_perm:
            return False
        return True


def split_remote_path(path: str) -> Tuple[str, str]:
    """Split ``remote:dir/file`` into the rclone ``fs`` and ``remote`` parts."""
    prefix, separator, remote = path.partition(":")
    if not separator or not prefix:
        raise ValueError(f"Not a remote path: {path}")
    return f"{prefix}:", remote.strip("/")


class RemoteSyncBackend(StorageBackend):
    """Cloud storage driven through the control API of an rclone worker."""

    kind = StorageKind.CLOUD
    max_depth = MAX_REMOTE_DEPTH

    def __init__(self, session: "RemoteSyncSession") -> None:
        self.session = session

    def list_children(self, path: str) -> List[StorageEntry]:
        fs, remote = split_remote_path(path)
        payload = self.session.call("operations/list", {"fs": fs, "remote": remote})

        entries: List[StorageEntry] = []
        items: List[Dict[str, Any]] = payload.get("list") or []
        for item in items:
            name = item.get("Name")
            if not name:
                continue
            relative = item.get("Path") or "/".join(part for part in (remote, name) if part)
            entries.append(
                StorageEntry(
                    name=name,
                    full_path=f"{fs}{relative}",
                    is_directory=bool(item.get("IsDir")),
                )
            )
        return entries

    def delete_file(self, path: str) -> None:
        fs, remote = split_remote_path(path)
        self.session.call("operations/deletefile", {"fs": fs, "remote": remote})
