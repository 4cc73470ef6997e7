import time
from unittest import mock

import pymysql
import pytest

from proxytunnel.statistic.mysql_auth import MySQLAuthenticator, MySQLConfig, connect_database
from proxytunnel.statistic.statistics import StatisticError


class FakeCursor:
    def __init__(self, db):
        self.db = db
        self.rows = []

    def execute(self, sql, params=None):
        if sql.startswith("UPDATE"):
            if self.db.fail_update:
                raise RuntimeError("update failed")
            upload, download, user_hash = params
            entry = self.db.table.get(user_hash)
            if entry is None:
                return 0
            entry["upload"] += upload
            entry["download"] += download
            return 1
        if sql.startswith("SELECT"):
            if self.db.fail_select:
                raise RuntimeError("select failed")
            self.rows = [
                (h, e["quota"], e["download"], e["upload"]) for h, e in self.db.table.items()
            ]
            return len(self.rows)
        raise AssertionError(sql)

    def fetchall(self):
        return self.rows

    def close(self):
        pass


class FakeDatabase:
    def __init__(self, rows):
        self.table = {
            h: {"quota": q, "download": d, "upload": u} for h, (q, d, u) in rows.items()
        }
        self.fail_select = False
        self.fail_update = False
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        pass

    def close(self):
        self.closed = True


def _auth(db, check_rate=30):
    return MySQLAuthenticator(MySQLConfig(check_rate=check_rate), db)


def test_sync_adds_users_within_quota():
    db = FakeDatabase({"alice": (100, 10, 20), "bob": (100, 60, 40), "carol": (-1, 500, 500)})
    auth = _auth(db)
    auth.sync_once()
    assert {u.hash for u in auth.list_users()} == {"alice", "carol"}
    auth.close()


def test_sync_pushes_swapped_traffic():
    db = FakeDatabase({"alice": (1000, 0, 0)})
    auth = _auth(db)
    auth.sync_once()
    user = auth.auth_user("alice")
    user.add_sent_traffic(100)
    user.add_recv_traffic(200)
    auth.sync_once()
    assert db.table["alice"]["upload"] == 200
    assert db.table["alice"]["download"] == 100
    assert user.traffic() == (0, 0)
    auth.close()


def test_sync_removes_users_missing_from_table():
    db = FakeDatabase({"alice": (100, 0, 0)})
    auth = _auth(db)
    auth.add_user("ghost")
    auth.sync_once()
    assert auth.auth_user("ghost") is None
    assert auth.auth_user("alice").hash == "alice"
    auth.close()


def test_sync_removes_user_over_quota():
    db = FakeDatabase({"alice": (100, 0, 0)})
    auth = _auth(db)
    auth.sync_once()
    assert [u.hash for u in auth.list_users()] == ["alice"]
    db.table["alice"]["download"] = 100
    auth.sync_once()
    assert auth.list_users() == []
    auth.close()


def test_failed_select_keeps_users():
    db = FakeDatabase({})
    auth = _auth(db)
    auth.add_user("alice")
    db.fail_select = True
    auth.sync_once()
    assert auth.auth_user("alice").hash == "alice"
    auth.close()


def test_failed_update_does_not_stop_sync():
    db = FakeDatabase({"alice": (100, 0, 0)})
    auth = _auth(db)
    auth.sync_once()
    auth.auth_user("alice").add_sent_traffic(50)
    db.fail_update = True
    auth.sync_once()
    assert db.table["alice"]["download"] == 0
    assert auth.auth_user("alice").hash == "alice"
    auth.close()


def test_start_syncs_in_background_and_close_stops():
    db = FakeDatabase({"alice": (100, 0, 0)})
    auth = _auth(db, check_rate=1)
    auth.start()
    deadline = time.monotonic() + 3
    while auth.auth_user("alice") is None and time.monotonic() < deadline:
        time.sleep(0.02)
    assert auth.auth_user("alice").hash == "alice"
    auth.close()
    assert db.closed


def test_connect_database_passes_settings():
    password = "password"
    config = MySQLConfig(server_host="db.example.com", database="trojan",
                         username="user", password=password)
    with mock.patch("pymysql.connect", return_value="connection") as connect:
        assert connect_database(config) == "connection"
    connect.assert_called_once_with(
        host="db.example.com", port=3306, user="user", password=password,
        database="trojan", charset="utf8",
    )


def test_connect_database_wraps_errors():
    with mock.patch("pymysql.connect", side_effect=pymysql.err.OperationalError(2003, "down")):
        with pytest.raises(StatisticError):
            connect_database(MySQLConfig(server_host="db.example.com"))