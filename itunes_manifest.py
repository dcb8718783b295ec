"""Discover iTunes/Finder device backups and read their descriptors.

A backup directory carries an ``Info.plist`` describing the device and the
time of the backup, a ``Manifest.plist`` with the encryption flag and the
file inventory itself (``Manifest.db`` or the legacy ``Manifest.mbdb``).
The backup root usually holds a mix of complete and stale folders; anything
that does not look like a complete backup is skipped without raising.
"""

from __future__ import annotations

import logging
import os
import plistlib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

INFO_PLIST = "Info.plist"
MANIFEST_PLIST = "Manifest.plist"
MANIFEST_DB = "Manifest.db"
MANIFEST_MBDB = "Manifest.mbdb"


class ManifestParseError(RuntimeError):
    """Raised when a directory does not hold a usable backup descriptor."""


@dataclass(frozen=True)
class BackupManifest:
    path: str
    device_name: str = field(default="", compare=False)
    display_name: str = field(default="", compare=False)
    backup_time: str = field(default="", compare=False)
    itunes_version: str = field(default="", compare=False)
    macos_version: str = field(default="", compare=False)
    ios_version: str = field(default="", compare=False)
    encrypted: bool = field(default=False, compare=False)

    def is_valid(self) -> bool:
        return bool(self.display_name and self.backup_time and self.device_name)

    def version_label(self) -> str:
        """Return the tool version which produced the backup."""

        if self.itunes_version:
            return self.itunes_version
        if self.macos_version:
            return f"Embedded iTunes on macOS {self.macos_version}"
        return ""

    def __str__(self) -> str:
        if self.itunes_version:
            suffix = f" iTunes Version: {self.itunes_version}"
        else:
            suffix = f" Embedded iTunes on macOS: {self.macos_version}"
        return f"{self.display_name} [{self.backup_time}] ({self.path}){suffix}"


def read_info_plist(backup_path: str) -> dict:
    """Return the parsed ``Info.plist`` of ``backup_path`` or ``{}``."""

    try:
        with open(os.path.join(backup_path, INFO_PLIST), "rb") as fh:
            data = plistlib.load(fh)
    except (OSError, plistlib.InvalidFileException, ValueError) as exc:
        logger.debug("Cannot read %s in %s: %s", INFO_PLIST, backup_path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _format_backup_time(value) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    return str(value) if value else ""


class ManifestParser:
    """Scan a backup root (or a single backup folder) for descriptors."""

    def __init__(self, manifest_path: str) -> None:
        self.manifest_path = manifest_path
        self.last_error = ""

    def parse(self) -> List[BackupManifest]:
        if self.is_valid_backup_item(self.manifest_path):
            try:
                return [self.parse_backup(self.manifest_path)]
            except ManifestParseError as exc:
                self.last_error = str(exc)
                return []
        return self._parse_directory(self.manifest_path)

    def _parse_directory(self, path: str) -> List[BackupManifest]:
        manifests: List[BackupManifest] = []
        try:
            entries = sorted(os.listdir(path))
        except OSError as exc:
            self.last_error = f"Cannot read directory {path}: {exc}"
            logger.debug(self.last_error)
            return manifests

        for name in entries:
            backup_path = os.path.join(path, name)
            if not os.path.isdir(backup_path):
                continue
            if not self.is_valid_backup_item(backup_path):
                logger.debug("Skipping %s: not a complete backup", backup_path)
                continue
            try:
                manifest = self.parse_backup(backup_path)
            except ManifestParseError as exc:
                self.last_error = str(exc)
                logger.debug("Skipping %s: %s", backup_path, exc)
                continue
            manifests.append(manifest)
        return manifests

    @staticmethod
    def is_valid_backup_item(path: str) -> bool:
        base = Path(path)
        if not (base / INFO_PLIST).is_file() or not (base / MANIFEST_PLIST).is_file():
            return False
        return (base / MANIFEST_DB).is_file() or (base / MANIFEST_MBDB).is_file()

    @staticmethod
    def parse_backup(path: str) -> BackupManifest:
        """Return the descriptor of the backup in ``path``.

        :class:`ManifestParseError` is raised when ``Info.plist`` is unreadable
        or lacks the device name, display name or backup date.
        """

        info = read_info_plist(path)
        if not info:
            raise ManifestParseError(f"Invalid {INFO_PLIST} in {path}")

        encrypted = False
        try:
            with open(os.path.join(path, MANIFEST_PLIST), "rb") as fh:
                manifest = plistlib.load(fh)
            encrypted = bool(manifest.get("IsEncrypted", False))
        except (OSError, plistlib.InvalidFileException, ValueError, AttributeError):
            logger.debug("Cannot read %s in %s", MANIFEST_PLIST, path)

        result = BackupManifest(
            path=path,
            device_name=str(info.get("Device Name", "") or ""),
            display_name=str(info.get("Display Name", "") or ""),
            backup_time=_format_backup_time(info.get("Last Backup Date")),
            itunes_version=str(info.get("iTunes Version", "") or ""),
            macos_version=str(info.get("macOS Version", "") or ""),
            ios_version=str(info.get("Product Version", "") or ""),
            encrypted=encrypted,
        )
        if not result.is_valid():
            raise ManifestParseError(f"Incomplete backup descriptor in {path}")
        return result


def discover(root_directory: str) -> List[BackupManifest]:
    """Return the descriptors of all complete backups below ``root_directory``."""

    return ManifestParser(root_directory).parse()


def find_manifest_file(backup_path: str, preferred: str = MANIFEST_DB) -> Optional[str]:
    """Return the manifest file in ``backup_path``, falling back to mbdb."""

    for name in (preferred, MANIFEST_MBDB):
        candidate = os.path.join(backup_path, name)
        if os.path.isfile(candidate):
            return candidate
    return None
