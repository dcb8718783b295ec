import hashlib

import pytest

from chat_records import (
    APP_DOMAIN,
    MessageEnumerator,
    StoreNotFoundError,
    index_loading_filter,
    load_catalog,
    open_enumerator,
)
from itunes_index import ITunesDb
from conftest import ACCOUNT


def _md5(value):
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def _catalog(builder):
    index = ITunesDb(builder.build())
    index.load(APP_DOMAIN)
    return index, load_catalog(index)


def test_catalog_discovers_accounts_and_chats(backup_builder):
    backup_builder.add_chat("wxid_bob", 4, "Bob")
    backup_builder.add_chat("wxid_alice", 2, "Alice", store="message_2.sqlite")
    backup_builder.add_chat("12345@chatroom", 1)
    _, catalog = _catalog(backup_builder)

    assert [a.usr_hash for a in catalog.accounts] == [ACCOUNT]
    account = catalog.accounts[0]
    names = [(c.display_name, c.usr_name, c.record_count) for c in account.conversations]
    assert names == [
        ("12345@chatroom", "12345@chatroom", 1),
        ("Alice", "wxid_alice", 2),
        ("Bob", "wxid_bob", 4),
    ]
    alice = account.conversations[1]
    assert alice.account_index == 0
    assert catalog.account_of(alice) is account
    assert alice.store_vpath == f"Documents/{ACCOUNT}/DB/message_2.sqlite"
    assert alice.table == "Chat_" + _md5("wxid_alice")
    assert catalog.conversation_key(alice) == f"{ACCOUNT}/{_md5('wxid_alice')}"


def test_subscription_flag(backup_builder):
    backup_builder.add_chat("gh_news", 1)
    _, catalog = _catalog(backup_builder)
    assert catalog.accounts[0].conversations[0].is_subscription


def test_enumerator_yields_ascending_above_threshold(backup_builder):
    backup_builder.add_chat("wxid_bob", 10, "Bob")
    index, catalog = _catalog(backup_builder)
    conversation = catalog.accounts[0].conversations[0]

    with open_enumerator(index, conversation, 4) as enumerator:
        records = list(enumerator)
        assert [r.record_id for r in records] == [5, 6, 7, 8, 9, 10]
        assert enumerator.max_id == 10
        assert enumerator.count == 6
    assert records[0].content == "message 5"
    assert records[0].create_time == 1600000005
    assert records[1].outgoing  # Des == 0
    assert not records[0].outgoing


def test_enumerators_are_independent(backup_builder):
    backup_builder.add_chat("wxid_bob", 5, "Bob")
    index, catalog = _catalog(backup_builder)
    conversation = catalog.accounts[0].conversations[0]

    first = open_enumerator(index, conversation, 0)
    assert first.next_record().record_id == 1
    second = open_enumerator(index, conversation, 3)
    assert [r.record_id for r in second] == [4, 5]
    assert first.next_record().record_id == 2
    assert first.max_id == 2
    first.close()
    assert first.next_record() is None


def test_enumerator_without_new_records(backup_builder):
    backup_builder.add_chat("wxid_bob", 3, "Bob")
    index, catalog = _catalog(backup_builder)
    enumerator = open_enumerator(index, catalog.accounts[0].conversations[0], 3)
    assert enumerator.next_record() is None
    assert enumerator.max_id == 3
    assert enumerator.count == 0


def test_missing_store(tmp_path):
    enumerator = MessageEnumerator(str(tmp_path / "missing.sqlite"), "Chat_x", 0)
    with pytest.raises(StoreNotFoundError):
        enumerator.next_record()


def test_index_loading_filter():
    assert index_loading_filter(f"Documents/{ACCOUNT}/DB/MM.sqlite", 1)
    assert not index_loading_filter(f"Documents/{ACCOUNT}/Img/abc/1.pic", 1)
    assert not index_loading_filter(f"Documents/{ACCOUNT}/Audio/abc/1.aud", 1)
    assert not index_loading_filter("Library/WebKit/cache", 1)
    assert not index_loading_filter("Documents/MapDocument/x", 1)
    assert index_loading_filter("Documents/MMappedKV/mmsetting.archive.1", 1)
    assert not index_loading_filter("Documents/MMappedKV/other", 1)
