"""
Local persistent store (SQLite).

The on-device database is the source of truth while offline. Each entity owns
its own table; there are no cross-entity transactions, so a failure while
writing one entity never rolls back another.

Schema changes are additive only: `load()` creates missing tables and adds
missing columns on every start, and never drops or renames anything.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .logs import json_log
from .models import AggregatorOrder, DineInPriceOverride, StaffMember


TABLES: dict[str, str] = {
    "local_staff": """
        CREATE TABLE IF NOT EXISTS local_staff (
          id TEXT NOT NULL,
          tenant_id TEXT NOT NULL,
          name TEXT NOT NULL,
          role TEXT NOT NULL DEFAULT 'server',
          pin_hash TEXT,
          is_active INTEGER DEFAULT 1,
          joined_at TEXT,
          PRIMARY KEY (tenant_id, id)
        )
    """,
    "local_restaurant_settings": """
        CREATE TABLE IF NOT EXISTS local_restaurant_settings (
          tenant_id TEXT PRIMARY KEY,
          settings_json TEXT NOT NULL
        )
    """,
    "dine_in_pricing_overrides": """
        CREATE TABLE IF NOT EXISTS dine_in_pricing_overrides (
          id TEXT PRIMARY KEY,
          menu_item_id TEXT NOT NULL,
          tenant_id TEXT NOT NULL,
          dine_in_price REAL,
          dine_in_available INTEGER DEFAULT 1,
          created_at TEXT,
          updated_at TEXT,
          UNIQUE(menu_item_id, tenant_id)
        )
    """,
    "local_aggregator_orders": """
        CREATE TABLE IF NOT EXISTS local_aggregator_orders (
          order_id TEXT NOT NULL,
          tenant_id TEXT NOT NULL,
          order_json TEXT NOT NULL,
          PRIMARY KEY (tenant_id, order_id)
        )
    """,
    "pos_sync_state": """
        CREATE TABLE IF NOT EXISTS pos_sync_state (
          entity TEXT NOT NULL,
          tenant_id TEXT NOT NULL,
          last_synced_at TEXT,
          PRIMARY KEY (entity, tenant_id)
        )
    """,
}

INDEXES: list[str] = [
    "CREATE INDEX IF NOT EXISTS idx_local_staff_tenant ON local_staff(tenant_id)",
    "CREATE INDEX IF NOT EXISTS idx_dine_in_pricing_tenant ON dine_in_pricing_overrides(tenant_id)",
    "CREATE INDEX IF NOT EXISTS idx_aggregator_orders_tenant ON local_aggregator_orders(tenant_id)",
]

# CREATE TABLE IF NOT EXISTS does not add columns to tables created by an
# older build. Columns listed here are added in place when missing.
WANTED_COLUMNS: dict[str, dict[str, str]] = {
    "local_staff": {
        "email": "TEXT",
        "phone": "TEXT",
        "updated_at": "TEXT",
    },
    "local_restaurant_settings": {
        "is_configured": "INTEGER DEFAULT 0",
        "updated_at": "TEXT",
    },
    "local_aggregator_orders": {
        "order_number": "TEXT",
        "status": "TEXT",
        "created_at": "TEXT",
        "updated_at": "TEXT",
    },
}


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TableAdapter:
    """Tenant-scoped row access for one entity table."""

    def __init__(
        self,
        store: "LocalStore",
        table: str,
        key: str,
        columns: list[str],
        to_row: Callable[[Any], dict],
        from_row: Callable[[dict], Any],
        conflict: tuple[str, ...] = ("tenant_id",),
        order_by: str = "rowid",
    ):
        self.store = store
        self.table = table
        self.key = key
        self.columns = columns
        self.to_row = to_row
        self.from_row = from_row
        self.conflict = conflict
        self.order_by = order_by

    def _upsert_sql(self) -> str:
        cols = ", ".join(self.columns)
        marks = ", ".join(["?"] * len(self.columns))
        updates = ",\n              ".join(f"{c}=excluded.{c}" for c in self.columns if c not in self.conflict)
        return f"""
            INSERT INTO {self.table} ({cols})
            VALUES ({marks})
            ON CONFLICT({", ".join(self.conflict)}) DO UPDATE SET
              {updates}
        """

    def query(self, tenant_id: str) -> list:
        with self.store.connect() as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT * FROM {self.table} WHERE tenant_id = ? ORDER BY {self.order_by}", (tenant_id,))
            rows = [dict(r) for r in cur.fetchall()]
        out = []
        for row in rows:
            try:
                out.append(self.from_row(row))
            except Exception as ex:
                json_log("error", "db.row.unreadable", table=self.table, key=row.get(self.key), error=str(ex))
        return out

    def get(self, key_value: str, tenant_id: str):
        with self.store.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                f"SELECT * FROM {self.table} WHERE tenant_id = ? AND {self.key} = ?",
                (tenant_id, key_value),
            )
            row = cur.fetchone()
        return self.from_row(dict(row)) if row else None

    def upsert(self, item) -> None:
        row = self.to_row(item)
        with self.store.connect() as conn:
            conn.execute(self._upsert_sql(), tuple(row.get(c) for c in self.columns))

    def upsert_many(self, items) -> int:
        """Write every item; a failing row is logged and skipped, the rest still land."""
        written = 0
        sql = self._upsert_sql()
        with self.store.connect() as conn:
            for item in items or []:
                try:
                    row = self.to_row(item)
                    conn.execute(sql, tuple(row.get(c) for c in self.columns))
                    written += 1
                except Exception as ex:
                    json_log("error", "db.row.write_failed", table=self.table, error=str(ex))
        return written

    def delete(self, key_value: str, tenant_id: str) -> bool:
        with self.store.connect() as conn:
            cur = conn.execute(
                f"DELETE FROM {self.table} WHERE tenant_id = ? AND {self.key} = ?",
                (tenant_id, key_value),
            )
            return cur.rowcount > 0

    def delete_all(self, tenant_id: str) -> int:
        with self.store.connect() as conn:
            cur = conn.execute(f"DELETE FROM {self.table} WHERE tenant_id = ?", (tenant_id,))
            return int(cur.rowcount or 0)


def _staff_to_row(m: StaffMember) -> dict:
    return {
        "id": m.id,
        "tenant_id": m.tenant_id,
        "name": m.name,
        "role": m.role.value,
        "pin_hash": m.pin_hash,
        "email": m.email,
        "phone": m.phone,
        "is_active": 1 if m.is_active else 0,
        "joined_at": m.joined_at,
        "updated_at": utcnow_iso(),
    }


def _row_to_staff(row: dict) -> StaffMember:
    return StaffMember(
        id=row["id"],
        tenant_id=row.get("tenant_id"),
        name=row.get("name") or "",
        role=row.get("role"),
        pin_hash=row.get("pin_hash"),
        email=row.get("email"),
        phone=row.get("phone"),
        is_active=bool(row.get("is_active", 1)),
        joined_at=row.get("joined_at"),
    )


def _override_to_row(o: DineInPriceOverride) -> dict:
    now = utcnow_iso()
    return {
        "id": f"dinein-{o.tenant_id}-{o.menu_item_id}",
        "menu_item_id": o.menu_item_id,
        "tenant_id": o.tenant_id,
        "dine_in_price": o.dine_in_price,
        "dine_in_available": 1 if o.dine_in_available else 0,
        "created_at": o.created_at or now,
        "updated_at": o.updated_at or now,
    }


def _row_to_override(row: dict) -> DineInPriceOverride:
    return DineInPriceOverride(
        menu_item_id=row["menu_item_id"],
        tenant_id=row.get("tenant_id"),
        dine_in_price=row.get("dine_in_price"),
        dine_in_available=row.get("dine_in_available") == 1,
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _order_to_row(o: AggregatorOrder) -> dict:
    return {
        "order_id": o.order_id,
        "tenant_id": o.tenant_id,
        "order_number": o.order_number,
        "status": o.status,
        "created_at": o.created_at,
        "order_json": json.dumps(o.model_dump(mode="json")),
        "updated_at": utcnow_iso(),
    }


def _row_to_order(row: dict) -> AggregatorOrder:
    return AggregatorOrder.model_validate(json.loads(row["order_json"]))


class LocalStore:
    def __init__(self, path: str):
        self.path = path
        self.loaded = False
        self.staff = TableAdapter(
            self,
            "local_staff",
            key="id",
            columns=["id", "tenant_id", "name", "role", "pin_hash", "email", "phone", "is_active", "joined_at", "updated_at"],
            to_row=_staff_to_row,
            from_row=_row_to_staff,
            conflict=("tenant_id", "id"),
        )
        self.overrides = TableAdapter(
            self,
            "dine_in_pricing_overrides",
            key="menu_item_id",
            columns=["id", "menu_item_id", "tenant_id", "dine_in_price", "dine_in_available", "created_at", "updated_at"],
            to_row=_override_to_row,
            from_row=_row_to_override,
            conflict=("menu_item_id", "tenant_id"),
            order_by="menu_item_id",
        )
        self.orders = TableAdapter(
            self,
            "local_aggregator_orders",
            key="order_id",
            columns=["order_id", "tenant_id", "order_number", "status", "created_at", "order_json", "updated_at"],
            to_row=_order_to_row,
            from_row=_row_to_order,
            conflict=("tenant_id", "order_id"),
            order_by="created_at DESC",
        )

    @contextmanager
    def connect(self):
        # One short-lived connection per call so calls can run on worker threads.
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def load(self) -> dict:
        """Ensure the schema exists. Safe to call on every start."""
        summary = {"tables": 0, "columns_added": [], "errors": 0}
        with self.connect() as conn:
            for table, ddl in TABLES.items():
                try:
                    conn.execute(ddl)
                    summary["tables"] += 1
                except Exception as ex:
                    summary["errors"] += 1
                    json_log("error", "db.migrate.table_failed", table=table, error=str(ex))

            for table, wanted in WANTED_COLUMNS.items():
                try:
                    cols = {r[1] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()}
                except Exception as ex:
                    summary["errors"] += 1
                    json_log("error", "db.migrate.inspect_failed", table=table, error=str(ex))
                    continue
                for col, ddl in wanted.items():
                    if col in cols:
                        continue
                    try:
                        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col} {ddl}")
                        summary["columns_added"].append(f"{table}.{col}")
                    except Exception as ex:
                        summary["errors"] += 1
                        json_log("error", "db.migrate.column_failed", table=table, column=col, error=str(ex))

            for ddl in INDEXES:
                try:
                    conn.execute(ddl)
                except Exception as ex:
                    summary["errors"] += 1
                    json_log("error", "db.migrate.index_failed", error=str(ex))

        self.loaded = True
        if summary["columns_added"] or summary["errors"]:
            json_log("info", "db.migrate.done", path=self.path, **summary)
        return summary

    def load_settings(self, tenant_id: str) -> Optional[dict]:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT settings_json, is_configured FROM local_restaurant_settings WHERE tenant_id = ?",
                (tenant_id,),
            )
            row = cur.fetchone()
        if not row:
            return None
        return {"settings": json.loads(row["settings_json"]), "is_configured": bool(row["is_configured"])}

    def save_settings(self, tenant_id: str, settings_data: dict, is_configured: bool) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO local_restaurant_settings (tenant_id, settings_json, is_configured, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET
                  settings_json=excluded.settings_json,
                  is_configured=excluded.is_configured,
                  updated_at=excluded.updated_at
                """,
                (tenant_id, json.dumps(settings_data), 1 if is_configured else 0, utcnow_iso()),
            )

    def get_last_synced(self, entity: str, tenant_id: str) -> Optional[str]:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT last_synced_at FROM pos_sync_state WHERE entity = ? AND tenant_id = ?",
                (entity, tenant_id),
            )
            row = cur.fetchone()
        return row["last_synced_at"] if row else None

    def set_last_synced(self, entity: str, tenant_id: str, synced_at: str) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO pos_sync_state (entity, tenant_id, last_synced_at)
                VALUES (?, ?, ?)
                ON CONFLICT(entity, tenant_id) DO UPDATE SET
                  last_synced_at=excluded.last_synced_at
                """,
                (entity, tenant_id, synced_at),
            )
