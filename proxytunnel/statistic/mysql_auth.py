"""Authenticator that keeps its users in step with a MySQL `users` table."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional

import pymysql

from proxytunnel.statistic.memory import MemoryAuthenticator, MemoryConfig
from proxytunnel.statistic.sqlite_store import SqlitePersistencer
from proxytunnel.statistic.statistics import StatisticError, register_authenticator_creator

NAME = "MYSQL"

_UPDATE_SQL = (
    "UPDATE `users` SET `upload`=`upload`+%s, `download`=`download`+%s WHERE `password`=%s;"
)
_SELECT_SQL = "SELECT password,quota,download,upload FROM users"

log = logging.getLogger(__name__)


@dataclass
class MySQLConfig:
    enabled: bool = False
    server_host: str = ""
    server_port: int = 3306
    database: str = ""
    username: str = ""
    password: str = ""
    check_rate: int = 30


def connect_database(config: MySQLConfig) -> Any:
    """Open a connection to the configured MySQL server."""
    try:
        return pymysql.connect(
            host=config.server_host,
            port=config.server_port,
            user=config.username,
            password=config.password,
            database=config.database,
            charset="utf8",
        )
    except pymysql.MySQLError as exc:
        raise StatisticError("Failed to connect to database server") from exc


class MySQLAuthenticator(MemoryAuthenticator):
    """Memory authenticator whose user set and traffic follow a database table."""

    def __init__(self, config: MySQLConfig, connection: Any,
                 memory_config: Optional[MemoryConfig] = None) -> None:
        memory_config = memory_config if memory_config is not None else MemoryConfig()
        persistencer = SqlitePersistencer(memory_config.sqlite) if memory_config.sqlite else None
        super().__init__(memory_config, persistencer)
        self._db = connection
        self._interval = config.check_rate
        self._stopped = threading.Event()
        self._worker: Optional[threading.Thread] = None
        log.debug("mysql authenticator created")

    def _push_traffic(self) -> None:
        for user in self.list_users():
            sent, recv = user.reset_traffic()
            try:
                cursor = self._db.cursor()
                try:
                    # the table counts from the user's side, so directions swap
                    cursor.execute(_UPDATE_SQL, (recv, sent, user.hash))
                finally:
                    cursor.close()
                self._db.commit()
            except Exception as exc:  # driver errors differ; the sync carries on
                log.error("failed to update data to user table: %s", exc)

    def _fetch_rows(self) -> list:
        cursor = self._db.cursor()
        try:
            cursor.execute(_SELECT_SQL)
            rows = list(cursor.fetchall())
        finally:
            cursor.close()
        # end the read transaction so the next query sees fresh data
        self._db.commit()
        return rows

    def _ensure_user(self, hash: str) -> None:
        try:
            self.add_user(hash)
        except StatisticError:
            pass

    def _drop_user(self, hash: str) -> None:
        try:
            self.del_user(hash)
        except StatisticError:
            pass

    def sync_once(self) -> None:
        """Write buffered traffic to the table, then reload the allowed users."""
        self._push_traffic()
        log.info("buffered data has been written into the database")
        try:
            rows = self._fetch_rows()
        except Exception as exc:  # a failed pull leaves the current users in place
            log.error("failed to pull data from the database: %s", exc)
            return
        seen: set[str] = set()
        for row in rows:
            try:
                hash_ = str(row[0])
                quota, download, upload = int(row[1]), int(row[2]), int(row[3])
            except (TypeError, ValueError, IndexError) as exc:
                log.error("failed to obtain data from the query result: %s", exc)
                break
            seen.add(hash_)
            if download + upload < quota or quota < 0:
                self._ensure_user(hash_)
            else:
                self._drop_user(hash_)
        for user in self.list_users():
            if user.hash not in seen:
                self._drop_user(user.hash)

    def _run(self) -> None:
        while True:
            self.sync_once()
            if self._stopped.wait(self._interval):
                log.debug("MySQL daemon exiting...")
                return

    def start(self) -> None:
        """Start syncing in the background every `check_rate` seconds."""
        if self._worker is not None and self._worker.is_alive():
            return
        self._stopped.clear()
        self._worker = threading.Thread(target=self._run, daemon=True)
        self._worker.start()

    def close(self) -> None:
        self._stopped.set()
        super().close()
        try:
            self._db.close()
        except Exception as exc:  # closing a dead connection is harmless
            log.debug("closing database failed: %s", exc)


def _create(config: MySQLConfig) -> MySQLAuthenticator:
    auth = MySQLAuthenticator(config, connect_database(config))
    auth.start()
    return auth


register_authenticator_creator(NAME, _create)