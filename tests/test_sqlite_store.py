import sqlite3

import pytest

from proxytunnel.statistic.sqlite_store import SqlitePersistencer, StoredUser
from proxytunnel.statistic.statistics import StatisticError


@pytest.fixture
def store(tmp_path):
    with SqlitePersistencer(str(tmp_path / "users.db")) as persistencer:
        yield persistencer


def test_stored_user_accessors():
    user = StoredUser("h", sent=1, recv=2, max_ip_num=3, send_limit=4, recv_limit=5)
    assert user.traffic() == (1, 2)
    assert user.speed_limit() == (4, 5)
    assert user.ip_limit() == 3


def test_save_and_load(store):
    user = StoredUser("h1", sent=100, recv=200, max_ip_num=3, send_limit=30, recv_limit=20)
    store.save_user(user)
    assert store.load_user("h1") == user


def test_save_upserts(store):
    store.save_user(StoredUser("h1", sent=1, recv=2))
    store.save_user(StoredUser("h1", sent=5, recv=6, max_ip_num=2))
    users = store.list_users()
    assert users == [StoredUser("h1", sent=5, recv=6, max_ip_num=2)]


def test_update_traffic_keeps_limits(store):
    store.save_user(StoredUser("h1", sent=1, recv=2, max_ip_num=4, send_limit=7, recv_limit=8))
    store.update_user_traffic("h1", 1000, 2000)
    loaded = store.load_user("h1")
    assert loaded.traffic() == (1000, 2000)
    assert loaded.speed_limit() == (7, 8)
    assert loaded.ip_limit() == 4


def test_delete(store):
    store.save_user(StoredUser("h1"))
    store.delete_user("h1")
    with pytest.raises(StatisticError):
        store.load_user("h1")
    assert store.list_users() == []


def test_load_missing(store):
    with pytest.raises(StatisticError, match="not found"):
        store.load_user("nobody")


def test_save_none(store):
    with pytest.raises(StatisticError):
        store.save_user(None)


def test_list_users(store):
    for name in ("b", "a", "c"):
        store.save_user(StoredUser(name, sent=len(name)))
    assert sorted(u.hash for u in store.list_users()) == ["a", "b", "c"]


def test_counter_is_eight_byte_big_endian(tmp_path):
    path = str(tmp_path / "raw.db")
    with SqlitePersistencer(path) as persistencer:
        persistencer.save_user(StoredUser("h1", sent=1, recv=0))
    conn = sqlite3.connect(path)
    try:
        sent, recv = conn.execute("SELECT sent, recv FROM users WHERE hash = 'h1'").fetchone()
    finally:
        conn.close()
    assert sent == b"\x00\x00\x00\x00\x00\x00\x00\x01"
    assert recv == bytes(8)


def test_max_counter_round_trip(store):
    biggest = 2**64 - 1
    store.save_user(StoredUser("h1", sent=biggest, recv=biggest))
    assert store.load_user("h1").traffic() == (biggest, biggest)


def test_persists_across_reopen(tmp_path):
    path = str(tmp_path / "users.db")
    with SqlitePersistencer(path) as first:
        first.save_user(StoredUser("h1", sent=10, recv=20, send_limit=3))
    with SqlitePersistencer(path) as second:
        assert second.load_user("h1") == StoredUser("h1", sent=10, recv=20, send_limit=3)