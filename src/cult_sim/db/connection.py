from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2.extensions import connection as PgConnection

from cult_sim.config.settings import DBSettings

CONNECT_TIMEOUT_S = 5


class DBClient:
    """One shared psycopg2 connection, reopened after the server drops it."""

    def __init__(self, settings: DBSettings, application_name: str = "cult-sim") -> None:
        self._settings = settings
        self._application_name = application_name
        self._conn: PgConnection | None = None
        self._logger = logging.getLogger("cult_sim.db")
        # Writes arrive from the best-effort thread pool; one cursor at a time.
        self._lock = threading.RLock()

    def connect(self) -> None:
        if self._conn is not None and not self._conn.closed:
            return
        self._conn = psycopg2.connect(
            self._settings.dsn,
            connect_timeout=CONNECT_TIMEOUT_S,
            application_name=self._application_name,
        )
        self._conn.autocommit = False
        self._logger.info(
            "db CONNECT host=%s port=%d name=%s",
            self._settings.host, self._settings.port, self._settings.name,
        )

    @property
    def conn(self) -> PgConnection:
        self.connect()
        assert self._conn is not None
        return self._conn

    @contextmanager
    def cursor(self) -> Iterator:
        with self._lock:
            conn = self.conn
            cur = conn.cursor()
            try:
                yield cur
                conn.commit()
            except (psycopg2.OperationalError, psycopg2.InterfaceError):
                # connection is gone; the next cursor() reconnects
                self._discard()
                raise
            except Exception:
                conn.rollback()
                raise
            finally:
                if not cur.closed:
                    cur.close()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None and not self._conn.closed:
                self._conn.close()
            self._conn = None

    def _discard(self) -> None:
        if self._conn is not None:
            self._logger.warning("db DISCONNECTED, will reconnect on next use")
            try:
                self._conn.close()
            except psycopg2.Error as exc:
                self._logger.debug("db close of dropped connection failed error=%s", exc)
        self._conn = None
