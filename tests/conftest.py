"""Fixtures building small fake device backups on disk."""

from __future__ import annotations

import hashlib
import os
import plistlib
import sqlite3
import struct
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from chat_records import APP_DOMAIN
from itunes_index import MBDB_HEADER, file_id_for

ACCOUNT = "0123456789abcdef0123456789abcdef"
BASE_TIME = 1600000000


def archived_properties(mtime: int, size: int) -> bytes:
    return plistlib.dumps(
        {
            "$archiver": "NSKeyedArchiver",
            "$version": 100000,
            "$objects": ["$null", {"LastModified": mtime, "Size": size, "Mode": 33188}],
            "$top": {"root": plistlib.UID(1)},
        },
        fmt=plistlib.FMT_BINARY,
    )


def _mbdb_string(value: Optional[str]) -> bytes:
    if value is None:
        return b"\xff\xff"
    raw = value.encode("utf-8")
    return struct.pack(">H", len(raw)) + raw


def mbdb_record(domain: str, path: str, is_dir: bool = False, mtime: int = BASE_TIME,
                size: int = 0, props: Tuple[Tuple[str, str], ...] = ()) -> bytes:
    mode = 0x41ED if is_dir else 0x81A4
    data = b"".join(_mbdb_string(v) for v in (domain, path, None, None, None))
    data += struct.pack(">HQIIIIIQBB", mode, 1, 501, 501, mtime, mtime, mtime, size, 0, len(props))
    for key, value in props:
        data += _mbdb_string(key) + _mbdb_string(value)
    return data


class BackupBuilder:
    """Collect virtual files and chats, then write them as a backup folder."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.entries: List[Tuple[str, str, bool, bytes]] = []
        self.chats: Dict[Tuple[str, str], Dict[str, List[tuple]]] = {}
        self.nick_names: Dict[str, Dict[str, str]] = {}
        self.info = {
            "Device Name": "Test iPhone",
            "Display Name": "Test iPhone",
            "Last Backup Date": datetime(2021, 5, 1, 12, 30),
            "iTunes Version": "12.11.3",
            "Product Version": "14.5",
        }
        self.encrypted = False

    def add_file(self, path: str, content: bytes = b"", domain: str = APP_DOMAIN) -> None:
        self.entries.append((domain, path, False, content))

    def add_dir(self, path: str, domain: str = APP_DOMAIN) -> None:
        self.entries.append((domain, path, True, b""))

    def add_chat(self, usr_name: str, count: int, nick_name: Optional[str] = None,
                 account: str = ACCOUNT, store: str = "message_1.sqlite", msg_type: int = 1) -> None:
        self.nick_names.setdefault(account, {})[usr_name] = nick_name or usr_name
        chats = self.chats.setdefault((account, store), {})
        chats.setdefault(usr_name, [])
        self.add_messages(usr_name, count, account, store, msg_type)

    def add_messages(self, usr_name: str, count: int, account: str = ACCOUNT,
                     store: str = "message_1.sqlite", msg_type: int = 1) -> None:
        rows = self.chats[(account, store)][usr_name]
        start = rows[-1][0] + 1 if rows else 1
        for record_id in range(start, start + count):
            rows.append(
                (record_id, 9000 + record_id, BASE_TIME + record_id,
                 f"message {record_id}", msg_type, record_id % 2)
            )

    def real_path(self, domain: str, path: str, mbdb: bool = False) -> Path:
        file_id = file_id_for(domain, path)
        return self.root / file_id if mbdb else self.root / file_id[:2] / file_id

    def _store_paths(self) -> List[Tuple[str, str]]:
        paths = set()
        for account in self.nick_names:
            paths.add((account, "MM.sqlite"))
        for account, store in self.chats:
            paths.add((account, store))
        return sorted(paths)

    def _write_store(self, target: Path, account: str, store: str) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            target.unlink()
        conn = sqlite3.connect(str(target))
        if store == "MM.sqlite":
            conn.execute("CREATE TABLE Friend (UsrName TEXT, NickName TEXT)")
            conn.executemany(
                "INSERT INTO Friend VALUES (?, ?)", sorted(self.nick_names.get(account, {}).items())
            )
        for usr_name, rows in self.chats.get((account, store), {}).items():
            table = "Chat_" + hashlib.md5(usr_name.encode("utf-8")).hexdigest()
            conn.execute(
                f"CREATE TABLE {table} (MesLocalID INTEGER PRIMARY KEY, MesSvrID INTEGER, "
                "CreateTime INTEGER, Message TEXT, Type INTEGER, Des INTEGER)"
            )
            conn.executemany(f"INSERT INTO {table} VALUES (?, ?, ?, ?, ?, ?)", rows)
        conn.commit()
        conn.close()

    def build(self, mbdb: bool = False) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        with open(self.root / "Info.plist", "wb") as fh:
            plistlib.dump(self.info, fh)
        with open(self.root / "Manifest.plist", "wb") as fh:
            plistlib.dump({"IsEncrypted": self.encrypted}, fh)

        entries = list(self.entries)
        store_entries = []
        for account, store in self._store_paths():
            store_entries.append((APP_DOMAIN, f"Documents/{account}/DB/{store}", account, store))
        for domain, path, account, store in store_entries:
            self._write_store(self.real_path(domain, path, mbdb), account, store)
            entries.append((domain, path, False, None))
        for domain, path, is_dir, content in self.entries:
            if not is_dir:
                target = self.real_path(domain, path, mbdb)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)

        for name in ("Manifest.db", "Manifest.mbdb"):
            if (self.root / name).exists():
                os.remove(self.root / name)
        if mbdb:
            data = MBDB_HEADER + b"".join(
                mbdb_record(domain, path, is_dir) for domain, path, is_dir, _ in entries
            )
            (self.root / "Manifest.mbdb").write_bytes(data)
        else:
            conn = sqlite3.connect(str(self.root / "Manifest.db"))
            conn.execute(
                "CREATE TABLE Files (fileID TEXT PRIMARY KEY, domain TEXT, "
                "relativePath TEXT, flags INTEGER, file BLOB)"
            )
            for domain, path, is_dir, content in entries:
                size = len(content) if content else 0
                conn.execute(
                    "INSERT INTO Files VALUES (?, ?, ?, ?, ?)",
                    (file_id_for(domain, path), domain, path, 2 if is_dir else 1,
                     archived_properties(BASE_TIME, size)),
                )
            conn.commit()
            conn.close()
        return str(self.root)


@pytest.fixture
def backup_builder(tmp_path):
    return BackupBuilder(tmp_path / "backup")


@pytest.fixture
def output_dir(tmp_path):
    path = tmp_path / "output"
    path.mkdir()
    return str(path)
