"""Accounts, conversations and message records stored in a WeChat backup.

Each logged in account owns ``Documents/<md5 of account>/DB``.  Messages of a
conversation live in a ``Chat_<md5 of conversation>`` table of one of the
``message_<n>.sqlite`` stores (older versions keep them in ``MM.sqlite``).
"""

from __future__ import annotations

import hashlib
import logging
import re
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from itunes_index import ITunesDb, ITunesFile

logger = logging.getLogger(__name__)

APP_DOMAIN = "AppDomain-com.tencent.xin"
SHARED_DOMAIN = "AppDomainGroup-group.com.tencent.xin"

SYSTEM_MESSAGE_TYPE = 10000

_ACCOUNT_DB_RE = re.compile(r"^Documents/([0-9a-f]{32})/DB/MM\.sqlite$")
_MESSAGE_STORE_RE = re.compile(r"/DB/(message_\d+|MM)\.sqlite$")
_CHAT_TABLE_PREFIX = "Chat_"

_SKIPPED_FOLDERS = (
    "/Audio/", "/Img/", "/OpenData/", "/Video/", "/appicon/", "/translate/",
    "/Brand/", "/Pattern_v3/", "/WCPay/",
)


class StoreNotFoundError(FileNotFoundError):
    """Raised when the message store of a conversation is missing."""


@dataclass(frozen=True)
class ChatRecord:
    record_id: int
    server_id: int
    create_time: int
    content: str
    msg_type: int
    outgoing: bool


@dataclass
class Conversation:
    account_index: int
    usr_name: str
    hash: str
    display_name: str
    store_vpath: str
    table: str
    record_count: int = 0

    @property
    def is_subscription(self) -> bool:
        return self.usr_name.startswith("gh_")


@dataclass
class Account:
    usr_hash: str
    display_name: str
    conversations: List[Conversation] = field(default_factory=list)

    @property
    def base_path(self) -> str:
        return f"Documents/{self.usr_hash}"


@dataclass
class ChatCatalog:
    accounts: List[Account] = field(default_factory=list)

    def account_of(self, conversation: Conversation) -> Account:
        return self.accounts[conversation.account_index]

    def conversation_key(self, conversation: Conversation) -> str:
        """Return the stable identifier used for incremental state."""

        return f"{self.account_of(conversation).usr_hash}/{conversation.hash}"


def md5_hex(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def index_loading_filter(path: str, flags: int) -> bool:
    """Return ``False`` for the bulky media folders not needed to list chats."""

    if path.startswith("Documents/MMappedKV/"):
        return path.startswith("mmsetting", 20)
    if path.startswith("Documents/MapDocument/") or path.startswith("Library/WebKit/"):
        return False
    first = path.find("/")
    if first >= 0:
        second = path.find("/", first + 1)
        if second >= 0:
            rest = path[second:]
            if any(rest.startswith(folder) for folder in _SKIPPED_FOLDERS):
                return False
    return True


def _open_readonly(path: str) -> sqlite3.Connection:
    if not Path(path).is_file():
        raise StoreNotFoundError(f"Message store not found: {path}")
    return sqlite3.connect(Path(path).resolve().as_uri() + "?mode=ro", uri=True)


def _load_contact_names(index: ITunesDb, account: Account) -> Dict[str, Tuple[str, str]]:
    """Map conversation hashes to ``(usr_name, display_name)``."""

    real_path = index.find_real_path(f"{account.base_path}/DB/MM.sqlite")
    if not real_path or not Path(real_path).is_file():
        return {}

    queries = [
        "SELECT UsrName, NickName FROM Friend;",
        "SELECT UsrName, UsrName FROM Friend;",
    ]
    names: Dict[str, Tuple[str, str]] = {}
    conn = _open_readonly(real_path)
    try:
        for query in queries:
            try:
                rows = conn.execute(query).fetchall()
            except sqlite3.DatabaseError:
                continue
            for usr_name, nick_name in rows:
                if not usr_name:
                    continue
                names[md5_hex(str(usr_name))] = (str(usr_name), str(nick_name or usr_name))
            break
    finally:
        conn.close()
    return names


def _list_chat_tables(real_path: str) -> List[Tuple[str, int]]:
    conn = _open_readonly(real_path)
    try:
        tables = [
            row[0]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name LIKE 'Chat\\_%' ESCAPE '\\';"
            )
        ]
        result = []
        for table in tables:
            (count,) = conn.execute(f'SELECT COUNT(*) FROM "{table}";').fetchone()
            result.append((table, int(count)))
        return result
    finally:
        conn.close()


def load_catalog(index: ITunesDb) -> ChatCatalog:
    """Discover the accounts and conversations present in ``index``."""

    catalog = ChatCatalog()
    account_files = index.find_range(
        "Documents/", lambda f: _ACCOUNT_DB_RE.match(f.relative_path) is not None
    )
    for account_file in account_files:
        usr_hash = _ACCOUNT_DB_RE.match(account_file.relative_path).group(1)
        account = Account(usr_hash=usr_hash, display_name=usr_hash)
        account_index = len(catalog.accounts)
        catalog.accounts.append(account)

        try:
            names = _load_contact_names(index, account)
        except (sqlite3.DatabaseError, StoreNotFoundError) as exc:
            logger.warning("Cannot read contacts of %s: %s", usr_hash, exc)
            names = {}

        stores: List[ITunesFile] = index.find_range(
            f"{account.base_path}/DB/",
            lambda f: _MESSAGE_STORE_RE.search(f.relative_path) is not None,
        )
        seen = set()
        for store in stores:
            real_path = index.get_real_path(store)
            try:
                tables = _list_chat_tables(real_path)
            except (sqlite3.DatabaseError, StoreNotFoundError) as exc:
                logger.warning("Skipping message store %s: %s", store.relative_path, exc)
                continue
            for table, count in tables:
                conv_hash = table[len(_CHAT_TABLE_PREFIX):]
                if conv_hash in seen:
                    continue
                seen.add(conv_hash)
                usr_name, display_name = names.get(conv_hash, (conv_hash, conv_hash))
                account.conversations.append(
                    Conversation(
                        account_index=account_index,
                        usr_name=usr_name,
                        hash=conv_hash,
                        display_name=display_name,
                        store_vpath=store.relative_path,
                        table=table,
                        record_count=count,
                    )
                )
        account.conversations.sort(key=lambda c: (c.display_name.lower(), c.hash))
        logger.info("Account %s: %d chats found", usr_hash, len(account.conversations))
    return catalog


class MessageEnumerator:
    """Lazily yield the records of one conversation above ``min_id``.

    Records come in ascending ``record_id`` order.  ``max_id`` is the largest
    identifier yielded so far (``min_id`` until something is yielded), so an
    interrupted pass can still advance its high-water mark.
    """

    def __init__(self, store_path: str, table: str, min_id: int = 0) -> None:
        self.store_path = store_path
        self.table = table
        self.min_id = min_id
        self.max_id = min_id
        self.count = 0
        self._conn: Optional[sqlite3.Connection] = None
        self._cursor = None
        self._done = False

    def _open(self) -> None:
        self._conn = _open_readonly(self.store_path)
        self._cursor = self._conn.execute(
            f'SELECT MesLocalID, MesSvrID, CreateTime, Message, Type, Des FROM "{self.table}" '
            "WHERE MesLocalID > ? ORDER BY MesLocalID ASC;",
            (self.min_id,),
        )

    def next_record(self) -> Optional[ChatRecord]:
        if self._done:
            return None
        if self._cursor is None:
            self._open()
        row = self._cursor.fetchone()
        if row is None:
            self.close()
            return None
        record_id, server_id, create_time, message, msg_type, des = row
        record = ChatRecord(
            record_id=int(record_id),
            server_id=int(server_id or 0),
            create_time=int(create_time or 0),
            content=message if isinstance(message, str) else (message or b"").decode("utf-8", "replace"),
            msg_type=int(msg_type or 0),
            outgoing=int(des or 0) == 0,
        )
        self.count += 1
        if record.record_id > self.max_id:
            self.max_id = record.record_id
        return record

    def __iter__(self) -> Iterator[ChatRecord]:
        return self

    def __next__(self) -> ChatRecord:
        record = self.next_record()
        if record is None:
            raise StopIteration
        return record

    def close(self) -> None:
        self._done = True
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._cursor = None

    def __enter__(self) -> "MessageEnumerator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def open_enumerator(index: ITunesDb, conversation: Conversation, min_id: int) -> MessageEnumerator:
    """Return an enumerator over ``conversation`` resolved through ``index``."""

    real_path = index.find_real_path(conversation.store_vpath)
    if real_path is None:
        raise StoreNotFoundError(f"Message store not in backup: {conversation.store_vpath}")
    return MessageEnumerator(real_path, conversation.table, min_id)
