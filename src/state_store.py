import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from recon_models import AssignmentAttempt, Order, PaymentRecord, Provider

DEFAULT_OPEN_STATUSES = ("awaiting_payment", "sent")

_RECORD_COLUMNS = (
    "id", "owner_id", "amount", "currency", "receipt_number", "extracted_fields",
    "status", "assigned_provider_id", "assigned_order_id", "assignment_confidence",
    "assignment_method", "processing_error", "payment_date", "payment_method",
    "processed_at", "sent_at", "message_id", "created_at",
)
# update_recordで更新可能な列
_UPDATABLE = set(_RECORD_COLUMNS) - {"id", "owner_id", "created_at"}


def _get_db_path() -> str:
    """環境変数から毎回DBパスを取得（テストでの monkeypatch に追従するため）。"""
    return os.getenv("RECON_STATE_DB", "recon_state.db")


def _encode(column: str, value):
    if value is None:
        return None
    if column == "extracted_fields":
        return json.dumps(value, ensure_ascii=False, default=str)
    if isinstance(value, Decimal):
        return str(value)
    return value


def _decimal(value) -> Optional[Decimal]:
    return Decimal(value) if value not in (None, "") else None


class SqliteRecordStore:
    """証憑レコード・仕入先台帳・注文台帳・割当試行ログのSQLite実装"""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    @contextmanager
    def _conn(self):
        con = sqlite3.connect(self.db_path or _get_db_path())
        con.execute("PRAGMA journal_mode=WAL;")
        try:
            yield con
            con.commit()
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def init_db(self):
        with self._conn() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS providers (
                  id TEXT PRIMARY KEY,
                  owner_id TEXT NOT NULL,
                  name TEXT NOT NULL,
                  tax_id TEXT,
                  phone TEXT
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS orders (
                  id TEXT PRIMARY KEY,
                  owner_id TEXT NOT NULL,
                  provider_id TEXT NOT NULL,
                  order_number TEXT,
                  amount TEXT NOT NULL,
                  status TEXT NOT NULL,
                  created_at TEXT
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS payment_records (
                  id TEXT PRIMARY KEY,
                  owner_id TEXT NOT NULL,
                  amount TEXT,
                  currency TEXT,
                  receipt_number TEXT,
                  extracted_fields TEXT,
                  status TEXT NOT NULL,
                  assigned_provider_id TEXT,
                  assigned_order_id TEXT,
                  assignment_confidence REAL,
                  assignment_method TEXT,
                  processing_error TEXT,
                  payment_date TEXT,
                  payment_method TEXT,
                  processed_at TEXT,
                  sent_at TEXT,
                  message_id TEXT,
                  created_at TEXT
                );
                """
            )
            # 割当試行は追記のみ（再処理でも削除しない）
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS assignment_attempts (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  record_id TEXT NOT NULL,
                  target_id TEXT NOT NULL,
                  target_kind TEXT NOT NULL,
                  method TEXT,
                  confidence REAL,
                  details TEXT,
                  success INTEGER,
                  created_at TEXT
                );
                """
            )

    # --- 仕入先・注文台帳 ---

    def add_provider(self, provider: Provider):
        with self._conn() as con:
            con.execute(
                "INSERT OR REPLACE INTO providers(id, owner_id, name, tax_id, phone) VALUES (?,?,?,?,?)",
                (provider.id, provider.owner_id, provider.name, provider.tax_id, provider.phone),
            )

    def add_order(self, order: Order):
        with self._conn() as con:
            con.execute(
                "INSERT OR REPLACE INTO orders(id, owner_id, provider_id, order_number, amount, status, created_at) VALUES (?,?,?,?,?,?,?)",
                (
                    order.id,
                    order.owner_id,
                    order.provider_id,
                    order.order_number,
                    str(order.amount),
                    order.status,
                    order.created_at.isoformat() if order.created_at else None,
                ),
            )

    def list_providers(self, owner_id: str) -> List[Provider]:
        with self._conn() as con:
            cur = con.execute(
                "SELECT id, owner_id, name, tax_id, phone FROM providers WHERE owner_id=? ORDER BY id",
                (owner_id,),
            )
            return [Provider(*row) for row in cur.fetchall()]

    def list_open_orders(
        self,
        owner_id: str,
        provider_ids: Optional[Iterable[str]] = None,
        statuses: Iterable[str] = DEFAULT_OPEN_STATUSES,
    ) -> List[Order]:
        statuses = list(statuses)
        sql = "SELECT id, owner_id, provider_id, amount, status, order_number, created_at FROM orders WHERE owner_id=?"
        params: List = [owner_id]
        sql += f" AND status IN ({','.join('?' for _ in statuses)})"
        params.extend(statuses)
        if provider_ids is not None:
            provider_ids = list(provider_ids)
            if not provider_ids:
                return []
            sql += f" AND provider_id IN ({','.join('?' for _ in provider_ids)})"
            params.extend(provider_ids)
        sql += " ORDER BY id"

        with self._conn() as con:
            rows = con.execute(sql, params).fetchall()
        return [
            Order(
                id=row[0],
                owner_id=row[1],
                provider_id=row[2],
                amount=Decimal(row[3]),
                status=row[4],
                order_number=row[5],
                created_at=datetime.fromisoformat(row[6]) if row[6] else None,
            )
            for row in rows
        ]

    # --- 証憑レコード ---

    def create_record(self, record: PaymentRecord) -> PaymentRecord:
        if not record.created_at:
            record.created_at = datetime.now().isoformat()
        values = [_encode(c, getattr(record, c)) for c in _RECORD_COLUMNS]
        with self._conn() as con:
            con.execute(
                f"INSERT INTO payment_records({', '.join(_RECORD_COLUMNS)}) VALUES ({','.join('?' for _ in _RECORD_COLUMNS)})",
                values,
            )
        return record

    def get_record(self, record_id: str) -> Optional[PaymentRecord]:
        with self._conn() as con:
            cur = con.execute(
                f"SELECT {', '.join(_RECORD_COLUMNS)} FROM payment_records WHERE id=?",
                (record_id,),
            )
            row = cur.fetchone()
        if not row:
            return None
        data = dict(zip(_RECORD_COLUMNS, row))
        data["amount"] = _decimal(data["amount"])
        data["extracted_fields"] = json.loads(data["extracted_fields"] or "{}")
        return PaymentRecord(**data)

    def update_record(self, record_id: str, fields: Dict):
        """単一のUPDATE文で更新（呼び出し側から見て原子的）"""
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"unknown record fields: {sorted(unknown)}")
        if not fields:
            return
        columns = sorted(fields)
        with self._conn() as con:
            cur = con.execute(
                f"UPDATE payment_records SET {', '.join(f'{c}=?' for c in columns)} WHERE id=?",
                [_encode(c, fields[c]) for c in columns] + [record_id],
            )
            if cur.rowcount == 0:
                raise LookupError(f"payment record not found: {record_id}")

    # --- 割当試行ログ ---

    def insert_assignment_attempts(self, rows: List[AssignmentAttempt]):
        now = datetime.now().isoformat()
        with self._conn() as con:
            con.executemany(
                "INSERT INTO assignment_attempts(record_id, target_id, target_kind, method, confidence, details, success, created_at) VALUES (?,?,?,?,?,?,?,?)",
                [
                    (
                        r.record_id,
                        r.target_id,
                        r.target_kind,
                        r.method,
                        r.confidence,
                        json.dumps(r.details, ensure_ascii=False, default=str),
                        1 if r.success else 0,
                        now,
                    )
                    for r in rows
                ],
            )

    def list_assignment_attempts(self, record_id: str) -> List[AssignmentAttempt]:
        with self._conn() as con:
            cur = con.execute(
                "SELECT record_id, target_id, target_kind, method, confidence, details, success FROM assignment_attempts WHERE record_id=? ORDER BY id",
                (record_id,),
            )
            rows = cur.fetchall()
        return [
            AssignmentAttempt(
                record_id=row[0],
                target_id=row[1],
                target_kind=row[2],
                method=row[3],
                confidence=row[4],
                details=json.loads(row[5] or "{}"),
                success=bool(row[6]),
            )
            for row in rows
        ]
