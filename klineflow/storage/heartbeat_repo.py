from typing import Optional

import psycopg2

from klineflow.common.errors import StoreError
from klineflow.common.timeutil import now_ms
from klineflow.storage.db import load_config, make_conn


class HeartbeatRepository:
    """Last-seen timestamps per service, so other processes can tell a stream runner is alive."""

    def __init__(self, cfg=None, connect=None):
        self.cfg = cfg or load_config()
        self._connect = connect or make_conn

    def beat(self, service_name: str, ts_ms: Optional[int] = None):
        if ts_ms is None:
            ts_ms = now_ms()

        sql = """
        INSERT INTO heartbeat(service_name, last_seen_ts)
        VALUES (%s, %s)
        ON CONFLICT (service_name) DO UPDATE
        SET last_seen_ts = EXCLUDED.last_seen_ts,
            updated_at   = now()
        """

        try:
            conn = self._connect(self.cfg)
            try:
                with conn.cursor() as cur:
                    cur.execute(sql, (service_name, int(ts_ms)))
                conn.commit()
            finally:
                conn.close()
        except psycopg2.Error as e:
            raise StoreError(f"heartbeat write failed: {e}") from e

    def last_seen(self, service_name: str) -> Optional[int]:
        try:
            conn = self._connect(self.cfg)
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT last_seen_ts FROM heartbeat WHERE service_name=%s;", (service_name,))
                    row = cur.fetchone()
            finally:
                conn.close()
        except psycopg2.Error as e:
            raise StoreError(f"heartbeat read failed: {e}") from e
        return int(row[0]) if row else None
