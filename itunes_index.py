"""In-memory index of the files stored in a device backup.

A backup keeps every file under a content-addressed name: the SHA-1 of
``"<domain>-<relative path>"``.  The manifest maps the virtual paths of an
application domain to those names.  Two manifest encodings exist:

* ``Manifest.db`` -- a SQLite database with a ``Files`` table.  Files live
  in ``<root>/<id[:2]>/<id>``.
* ``Manifest.mbdb`` -- the legacy length-prefixed record stream.  Files live
  directly in ``<root>/<id>``.

:class:`ITunesDb` loads one domain from either encoding into a list sorted by
virtual path, so prefix lookups only touch the matching slice.  The list is
never modified after :meth:`ITunesDb.load` returns and can be shared between
threads without locking.
"""

from __future__ import annotations

import hashlib
import logging
import os
import plistlib
import shutil
import sqlite3
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from itunes_manifest import MANIFEST_DB, MANIFEST_MBDB, find_manifest_file, read_info_plist

logger = logging.getLogger(__name__)

FLAG_FILE = 1
FLAG_DIRECTORY = 2
FLAG_SYMLINK = 4

MBDB_HEADER = b"mbdb\x05\x00"
_MBDB_FIXED = struct.Struct(">HQIIIIIQBB")

LoadingFilter = Callable[[str, int], bool]


class BackupLoadError(RuntimeError):
    """Base class for manifest loading failures."""


class BackupNotFoundError(BackupLoadError):
    """Raised when the backup has no manifest file."""


class BackupMalformedError(BackupLoadError):
    """Raised when the manifest cannot be decoded."""


class CopyError(OSError):
    """Raised when a virtual file cannot be copied out of the backup."""


@dataclass(frozen=True)
class ITunesFile:
    file_id: str
    relative_path: str
    flags: int
    modified_time: int = 0
    blob: Optional[bytes] = None

    @property
    def is_dir(self) -> bool:
        return self.flags == FLAG_DIRECTORY


def file_id_for(domain: str, relative_path: str) -> str:
    """Return the content-addressed name of ``relative_path`` in ``domain``."""

    return hashlib.sha1(f"{domain}-{relative_path}".encode("utf-8")).hexdigest()


def parse_modified_time(blob: Optional[bytes]) -> int:
    """Return ``LastModified`` from the archived file properties, or 0.

    ``Manifest.db`` stores the properties of each file as an NSKeyedArchiver
    binary plist.  The root object is referenced from ``$top`` and carries the
    modification time as seconds since the epoch.
    """

    if not blob:
        return 0
    try:
        archive = plistlib.loads(blob)
        objects = archive["$objects"]
        root = archive.get("$top", {}).get("root")
        index = root.data if isinstance(root, plistlib.UID) else 1
        value = objects[index].get("LastModified", 0)
        return int(value)
    except (plistlib.InvalidFileException, ValueError, KeyError, IndexError,
            TypeError, AttributeError):
        return 0


class PrefixFilter:
    """Select the files whose virtual path starts with ``prefix``.

    ``compare`` positions a path relative to the matching range of the sorted
    catalog; ``predicate`` further narrows the files inside that range.
    """

    def __init__(self, prefix: str, predicate: Optional[Callable[[ITunesFile], bool]] = None) -> None:
        self.prefix = prefix
        self.predicate = predicate

    def compare(self, path: str) -> int:
        if path.startswith(self.prefix):
            return 0
        return -1 if path < self.prefix else 1

    def __call__(self, file: ITunesFile) -> bool:
        if not file.relative_path.startswith(self.prefix):
            return False
        return self.predicate is None or self.predicate(file)


class _Truncated(Exception):
    pass


def _read_mbdb_string(data: bytes, offset: int) -> Tuple[str, int]:
    if offset + 2 > len(data):
        raise _Truncated()
    (length,) = struct.unpack_from(">H", data, offset)
    offset += 2
    if length == 0xFFFF:
        return "", offset
    if offset + length > len(data):
        raise _Truncated()
    return data[offset:offset + length].decode("utf-8", "replace"), offset + length


def iter_mbdb_records(data: bytes):
    """Yield ``(domain, path, mode, mtime)`` for each complete mbdb record.

    Decoding stops at the first record that runs past the end of ``data``.
    """

    if not data.startswith(MBDB_HEADER):
        raise BackupMalformedError("Missing mbdb header")

    offset = len(MBDB_HEADER)
    while offset < len(data):
        try:
            domain, offset = _read_mbdb_string(data, offset)
            path, offset = _read_mbdb_string(data, offset)
            for _ in range(3):  # link target, data hash, encryption key
                _, offset = _read_mbdb_string(data, offset)
            if offset + _MBDB_FIXED.size > len(data):
                raise _Truncated()
            fields = _MBDB_FIXED.unpack_from(data, offset)
            offset += _MBDB_FIXED.size
            mode, mtime, prop_count = fields[0], fields[4], fields[9]
            for _ in range(prop_count):
                _, offset = _read_mbdb_string(data, offset)
                _, offset = _read_mbdb_string(data, offset)
        except _Truncated:
            logger.debug("Truncated mbdb record at offset %d", offset)
            return
        yield domain, path, mode, mtime


def _flags_from_mode(mode: int) -> int:
    kind = mode & 0xE000
    if kind == 0x4000:
        return FLAG_DIRECTORY
    if kind == 0x8000:
        return FLAG_FILE
    if kind == 0xA000:
        return FLAG_SYMLINK
    return 0


class ITunesDb:
    """Catalog of one application domain inside a backup."""

    def __init__(self, root_path: str, manifest_file_name: str = MANIFEST_DB) -> None:
        self.root_path = root_path
        self.manifest_file_name = manifest_file_name
        self.is_mbdb = False
        self.version = ""
        self.ios_version = ""
        self._files: List[ITunesFile] = []
        self._paths: List[str] = []

    def __len__(self) -> int:
        return len(self._files)

    @property
    def files(self) -> Tuple[ITunesFile, ...]:
        return tuple(self._files)

    def load(
        self,
        domain: str,
        only_file: bool = False,
        loading_filter: Optional[LoadingFilter] = None,
    ) -> None:
        """Load the records of ``domain`` from the backup manifest.

        Records rejected by ``loading_filter`` (and directories when
        ``only_file`` is set) are dropped while reading.  A domain that does
        not appear in the manifest yields an empty catalog.
        """

        manifest = find_manifest_file(self.root_path, self.manifest_file_name)
        if manifest is None:
            raise BackupNotFoundError(f"No manifest found in {self.root_path}")

        info = read_info_plist(self.root_path)
        self.version = str(info.get("iTunes Version", "") or info.get("macOS Version", "") or "")
        self.ios_version = str(info.get("Product Version", "") or "")

        self.is_mbdb = os.path.basename(manifest) == MANIFEST_MBDB
        if self.is_mbdb:
            files = self._load_mbdb(manifest, domain, only_file, loading_filter)
        else:
            files = self._load_db(manifest, domain, only_file, loading_filter)

        files.sort(key=lambda f: f.relative_path)
        unique: List[ITunesFile] = []
        for item in files:
            if unique and unique[-1].relative_path == item.relative_path:
                continue
            unique.append(item)
        self._files = unique
        self._paths = [f.relative_path for f in unique]
        logger.info("Loaded %d entries of %s from %s", len(unique), domain, manifest)

    @staticmethod
    def _accept(path: str, flags: int, only_file: bool, loading_filter: Optional[LoadingFilter]) -> bool:
        if only_file and flags == FLAG_DIRECTORY:
            return False
        return loading_filter is None or loading_filter(path, flags)

    def _load_db(self, manifest: str, domain: str, only_file: bool,
                 loading_filter: Optional[LoadingFilter]) -> List[ITunesFile]:
        files: List[ITunesFile] = []
        try:
            conn = sqlite3.connect(Path(manifest).resolve().as_uri() + "?mode=ro", uri=True)
        except sqlite3.Error as exc:
            raise BackupMalformedError(f"Cannot open {manifest}: {exc}") from exc
        try:
            cur = conn.execute(
                "SELECT fileID, relativePath, flags, file FROM Files WHERE domain = ?",
                (domain,),
            )
            for file_id, path, flags, blob in cur:
                path = path or ""
                flags = int(flags or 0)
                if not self._accept(path, flags, only_file, loading_filter):
                    continue
                blob = bytes(blob) if blob is not None else None
                files.append(
                    ITunesFile(
                        file_id=str(file_id),
                        relative_path=path,
                        flags=flags,
                        modified_time=parse_modified_time(blob),
                        blob=blob,
                    )
                )
        except sqlite3.DatabaseError as exc:
            raise BackupMalformedError(f"Cannot read {manifest}: {exc}") from exc
        finally:
            conn.close()
        return files

    def _load_mbdb(self, manifest: str, domain: str, only_file: bool,
                   loading_filter: Optional[LoadingFilter]) -> List[ITunesFile]:
        try:
            data = Path(manifest).read_bytes()
        except OSError as exc:
            raise BackupNotFoundError(f"Cannot read {manifest}: {exc}") from exc

        files: List[ITunesFile] = []
        for record_domain, path, mode, mtime in iter_mbdb_records(data):
            if record_domain != domain:
                continue
            flags = _flags_from_mode(mode)
            if not self._accept(path, flags, only_file, loading_filter):
                continue
            files.append(
                ITunesFile(
                    file_id=file_id_for(record_domain, path),
                    relative_path=path,
                    flags=flags,
                    modified_time=mtime,
                )
            )
        return files

    # Queries -----------------------------------------------------------------

    def find_file(self, relative_path: str) -> Optional[ITunesFile]:
        lo, hi = 0, len(self._paths)
        while lo < hi:
            mid = (lo + hi) // 2
            if self._paths[mid] < relative_path:
                lo = mid + 1
            else:
                hi = mid
        if lo < len(self._paths) and self._paths[lo] == relative_path:
            return self._files[lo]
        return None

    def find_file_id(self, relative_path: str) -> Optional[str]:
        found = self.find_file(relative_path)
        return found.file_id if found else None

    def find_real_path(self, relative_path: str) -> Optional[str]:
        found = self.find_file(relative_path)
        return self.get_real_path(found) if found else None

    def _bound(self, path_filter, lo: int, strict: bool) -> int:
        hi = len(self._paths)
        while lo < hi:
            mid = (lo + hi) // 2
            order = path_filter.compare(self._paths[mid])
            if order < 0 or (strict and order == 0):
                lo = mid + 1
            else:
                hi = mid
        return lo

    def filter(self, path_filter) -> List[ITunesFile]:
        """Return files accepted by ``path_filter`` in path order.

        The filter's ``compare`` bounds the candidate slice by binary search;
        its call operator is then applied to each file inside the slice.
        """

        first = self._bound(path_filter, 0, strict=False)
        last = self._bound(path_filter, first, strict=True)
        return [f for f in self._files[first:last] if path_filter(f)]

    def find_range(self, prefix: str,
                   predicate: Optional[Callable[[ITunesFile], bool]] = None) -> List[ITunesFile]:
        return self.filter(PrefixFilter(prefix, predicate))

    def enum_files(self, handler: Callable[[ITunesFile], bool]) -> None:
        for item in self._files:
            if not handler(item):
                break

    def get_real_path(self, file: Union[ITunesFile, str]) -> str:
        if isinstance(file, ITunesFile):
            file_id = file.file_id
        else:
            found = self.find_file(file)
            if found is None:
                raise KeyError(file)
            file_id = found.file_id
        if self.is_mbdb:
            return os.path.join(self.root_path, file_id)
        return os.path.join(self.root_path, file_id[:2], file_id)

    def copy_file(self, vpath: str, dest: str, overwrite: bool = False,
                  dest_file_name: Optional[str] = None) -> None:
        """Copy the backing file of ``vpath`` to ``dest``.

        With ``dest_file_name`` the target is ``dest/dest_file_name``.  An
        existing target is kept unless ``overwrite`` is set.
        """

        found = self.find_file(vpath)
        if found is None:
            raise CopyError(f"Virtual file not found: {vpath}")
        source = self.get_real_path(found)
        if not os.path.isfile(source):
            raise CopyError(f"Backing file for {vpath} missing: {source}")

        target = os.path.join(dest, dest_file_name) if dest_file_name else dest
        if os.path.exists(target) and not overwrite:
            return
        try:
            parent = os.path.dirname(target)
            if parent:
                os.makedirs(parent, exist_ok=True)
            shutil.copyfile(source, target)
            if found.modified_time:
                os.utime(target, (found.modified_time, found.modified_time))
        except OSError as exc:
            raise CopyError(f"Failed to copy {vpath} to {target}: {exc}") from exc
        logger.debug("Copied %s to %s", vpath, target)
