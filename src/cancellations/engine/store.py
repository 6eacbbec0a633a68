from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .models import (
    TERMINAL_STATUSES,
    ApprovalItem,
    AuditEvent,
    CancellationWorkflow,
    Escalation,
    FulfillmentConfig,
    OrderSnapshot,
    RunnerLease,
    SideEffectRecord,
    WorkflowError,
    default_runner_owner_id,
    json_dumps,
    json_loads,
    now_utc,
    parse_iso,
    to_iso,
)


def _default_state_db_path() -> Path:
    return Path(os.getenv("CANCELLATIONS_STATE_DB", "./data/cancellations.db"))


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS cancellation_workflows (
  workflow_id TEXT PRIMARY KEY,
  idempotency_key TEXT NOT NULL UNIQUE,
  user_id TEXT NOT NULL,
  email_id TEXT NOT NULL,
  order_id TEXT NOT NULL,
  order_number TEXT NOT NULL,
  order_total TEXT NOT NULL,
  order_created_at TEXT NOT NULL,
  customer_email TEXT NOT NULL,
  customer_name TEXT,
  fulfillment_method TEXT NOT NULL,
  fulfillment_config TEXT NOT NULL,
  order_snapshot TEXT NOT NULL,
  status TEXT NOT NULL,
  step TEXT NOT NULL,
  eligible INTEGER,
  eligibility_reason TEXT,
  eligibility_deadline TEXT,
  customer_acknowledgment_sent INTEGER NOT NULL DEFAULT 0,
  warehouse_email_sent INTEGER NOT NULL DEFAULT 0,
  awaiting_since TEXT,
  warehouse_reply_due_at TEXT,
  warehouse_reply_received INTEGER NOT NULL DEFAULT 0,
  warehouse_reply TEXT,
  warehouse_reply_at TEXT,
  cancel_outcome TEXT,
  was_canceled INTEGER,
  refund_processed INTEGER NOT NULL DEFAULT 0,
  refund_amount TEXT,
  refund_id TEXT,
  needs_reconciliation INTEGER NOT NULL DEFAULT 0,
  attempt_count INTEGER NOT NULL DEFAULT 0,
  next_attempt_at TEXT,
  error TEXT,
  escalation_reason TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  completed_at TEXT,
  lock_owner TEXT,
  lock_expires_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_workflows_status ON cancellation_workflows(status);
CREATE INDEX IF NOT EXISTS idx_workflows_user_order ON cancellation_workflows(user_id, order_number);
CREATE INDEX IF NOT EXISTS idx_workflows_customer ON cancellation_workflows(customer_email, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_workflows_created_at ON cancellation_workflows(created_at DESC);

CREATE TABLE IF NOT EXISTS workflow_audit_events (
  audit_id TEXT PRIMARY KEY,
  workflow_id TEXT NOT NULL,
  timestamp TEXT NOT NULL,
  event TEXT NOT NULL,
  actor TEXT NOT NULL,
  details TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_workflow_id ON workflow_audit_events(workflow_id);

CREATE TABLE IF NOT EXISTS approval_items (
  approval_id TEXT PRIMARY KEY,
  workflow_id TEXT NOT NULL,
  proposed_action TEXT NOT NULL,
  status TEXT NOT NULL,
  metadata TEXT,
  edits TEXT,
  requested_at TEXT NOT NULL,
  decided_by TEXT,
  decided_at TEXT,
  decision_reason TEXT
);

CREATE INDEX IF NOT EXISTS idx_approvals_workflow ON approval_items(workflow_id, proposed_action);
CREATE UNIQUE INDEX IF NOT EXISTS idx_approvals_one_pending ON approval_items(workflow_id) WHERE status='pending';

CREATE TABLE IF NOT EXISTS escalations (
  escalation_id TEXT PRIMARY KEY,
  workflow_id TEXT NOT NULL,
  kind TEXT NOT NULL,
  priority TEXT NOT NULL,
  reason TEXT NOT NULL,
  status TEXT NOT NULL,
  details TEXT,
  created_at TEXT NOT NULL,
  resolved_by TEXT,
  resolved_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_escalations_one_open ON escalations(workflow_id, kind) WHERE status='open';

CREATE TABLE IF NOT EXISTS side_effects (
  idempotency_key TEXT PRIMARY KEY,
  workflow_id TEXT NOT NULL,
  kind TEXT NOT NULL,
  status TEXT NOT NULL,
  result TEXT,
  claimed_at TEXT NOT NULL,
  completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_side_effects_workflow ON side_effects(workflow_id);

CREATE TABLE IF NOT EXISTS inbox (
  event_id TEXT NOT NULL,
  consumer_id TEXT NOT NULL,
  processed_at TEXT NOT NULL,
  PRIMARY KEY (event_id, consumer_id)
);

CREATE TABLE IF NOT EXISTS runner_leases (
  runner_name TEXT PRIMARY KEY,
  owner_id TEXT NOT NULL,
  lease_expires_at TEXT NOT NULL,
  heartbeat_at TEXT NOT NULL,
  pid INTEGER NOT NULL,
  host TEXT NOT NULL
);
"""

# Columns a step handler may change after creation.
MUTABLE_COLUMNS = frozenset(
    {
        "status",
        "step",
        "eligible",
        "eligibility_reason",
        "eligibility_deadline",
        "customer_acknowledgment_sent",
        "warehouse_email_sent",
        "awaiting_since",
        "warehouse_reply_due_at",
        "warehouse_reply_received",
        "warehouse_reply",
        "warehouse_reply_at",
        "cancel_outcome",
        "was_canceled",
        "refund_processed",
        "refund_amount",
        "refund_id",
        "needs_reconciliation",
        "attempt_count",
        "next_attempt_at",
        "error",
        "escalation_reason",
    }
)

_TERMINAL_SQL = "(" + ",".join(f"'{s}'" for s in sorted(TERMINAL_STATUSES)) + ")"


def _encode(value: Any) -> Any:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, WorkflowError):
        return json_dumps(value.model_dump())
    if isinstance(value, datetime):
        return to_iso(value)
    return value


def _optional_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)


class WorkflowStore:
    """
    Durable record of every cancellation workflow (sqlite, WAL).

    The store is the source of truth for resumption: step handlers only ever
    move a workflow with conditional updates keyed on its persisted step and
    non-terminal status, so duplicate events and racing sweeps become no-ops.
    """

    def __init__(self, db_path: Optional[Path] = None, *, clock: Optional[Callable[[], datetime]] = None):
        self.db_path = Path(db_path or _default_state_db_path())
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or now_utc
        self._init_db()

    def _now_iso(self) -> str:
        return to_iso(self._clock())

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.commit()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE;")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def ping(self) -> bool:
        with self._read() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    # ---------------------------------------------------------------------
    # Row mapping
    # ---------------------------------------------------------------------

    def _row_to_workflow(self, row: sqlite3.Row) -> CancellationWorkflow:
        error = None
        if row["error"]:
            try:
                error = WorkflowError.model_validate(json_loads(row["error"]))
            except ValueError:
                error = WorkflowError(code="unknown_error", message=str(row["error"]))

        return CancellationWorkflow(
            workflow_id=row["workflow_id"],
            idempotency_key=row["idempotency_key"],
            user_id=row["user_id"],
            email_id=row["email_id"],
            order_id=row["order_id"],
            order_number=row["order_number"],
            order_total=Decimal(row["order_total"]),
            order_created_at=row["order_created_at"],
            customer_email=row["customer_email"],
            customer_name=row["customer_name"],
            fulfillment_method=row["fulfillment_method"],
            fulfillment_config=FulfillmentConfig.model_validate(json_loads(row["fulfillment_config"])),
            order=OrderSnapshot.model_validate(json_loads(row["order_snapshot"])),
            status=row["status"],
            step=row["step"],
            eligible=_optional_bool(row["eligible"]),
            eligibility_reason=row["eligibility_reason"],
            eligibility_deadline=row["eligibility_deadline"],
            customer_acknowledgment_sent=bool(row["customer_acknowledgment_sent"]),
            warehouse_email_sent=bool(row["warehouse_email_sent"]),
            awaiting_since=row["awaiting_since"],
            warehouse_reply_due_at=row["warehouse_reply_due_at"],
            warehouse_reply_received=bool(row["warehouse_reply_received"]),
            warehouse_reply=row["warehouse_reply"],
            warehouse_reply_at=row["warehouse_reply_at"],
            cancel_outcome=row["cancel_outcome"],
            was_canceled=_optional_bool(row["was_canceled"]),
            refund_processed=bool(row["refund_processed"]),
            refund_amount=Decimal(row["refund_amount"]) if row["refund_amount"] is not None else None,
            refund_id=row["refund_id"],
            needs_reconciliation=bool(row["needs_reconciliation"]),
            attempt_count=int(row["attempt_count"] or 0),
            next_attempt_at=row["next_attempt_at"],
            error=error,
            escalation_reason=row["escalation_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            lock_owner=row["lock_owner"],
            lock_expires_at=row["lock_expires_at"],
        )

    def _load_audit(self, conn: sqlite3.Connection, workflow_id: str) -> List[AuditEvent]:
        rows = conn.execute(
            "SELECT audit_id, timestamp, event, actor, details FROM workflow_audit_events WHERE workflow_id=? ORDER BY timestamp ASC, rowid ASC",
            (workflow_id,),
        ).fetchall()
        out: List[AuditEvent] = []
        for r in rows:
            details = {}
            if r["details"]:
                try:
                    details = json_loads(r["details"]) or {}
                except ValueError:
                    details = {"raw": r["details"]}
            out.append(AuditEvent(audit_id=r["audit_id"], timestamp=r["timestamp"], event=r["event"], actor=r["actor"], details=details))
        return out

    def _row_to_approval(self, row: sqlite3.Row) -> ApprovalItem:
        return ApprovalItem(
            approval_id=row["approval_id"],
            workflow_id=row["workflow_id"],
            proposed_action=row["proposed_action"],
            status=row["status"],
            metadata=json_loads(row["metadata"]) or {},
            edits=json_loads(row["edits"]) or {},
            requested_at=row["requested_at"],
            decided_by=row["decided_by"],
            decided_at=row["decided_at"],
            decision_reason=row["decision_reason"],
        )

    def _row_to_escalation(self, row: sqlite3.Row) -> Escalation:
        return Escalation(
            escalation_id=row["escalation_id"],
            workflow_id=row["workflow_id"],
            kind=row["kind"],
            priority=row["priority"],
            reason=row["reason"],
            status=row["status"],
            details=json_loads(row["details"]) or {},
            created_at=row["created_at"],
            resolved_by=row["resolved_by"],
            resolved_at=row["resolved_at"],
        )

    def _row_to_side_effect(self, row: sqlite3.Row) -> SideEffectRecord:
        return SideEffectRecord(
            idempotency_key=row["idempotency_key"],
            workflow_id=row["workflow_id"],
            kind=row["kind"],
            status=row["status"],
            result=json_loads(row["result"]) or {},
            claimed_at=row["claimed_at"],
            completed_at=row["completed_at"],
        )

    # ---------------------------------------------------------------------
    # Workflows
    # ---------------------------------------------------------------------

    def add_audit_event(
        self,
        conn: sqlite3.Connection,
        workflow_id: str,
        *,
        event: str,
        actor: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        audit = AuditEvent(timestamp=self._now_iso(), event=event, actor=actor, details=details or {})
        conn.execute(
            "INSERT INTO workflow_audit_events (audit_id, workflow_id, timestamp, event, actor, details) VALUES (?, ?, ?, ?, ?, ?)",
            (audit.audit_id, workflow_id, audit.timestamp, audit.event, audit.actor, json_dumps(audit.details or {})),
        )

    def create_workflow(self, workflow: CancellationWorkflow, *, actor: str) -> Tuple[CancellationWorkflow, bool]:
        """
        Create a workflow with idempotency.

        Returns: (workflow, created_new)
        """
        now_iso = self._now_iso()
        with self._tx() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO cancellation_workflows (
                      workflow_id, idempotency_key, user_id, email_id, order_id, order_number, order_total,
                      order_created_at, customer_email, customer_name, fulfillment_method, fulfillment_config,
                      order_snapshot, status, step, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        workflow.workflow_id,
                        workflow.idempotency_key,
                        workflow.user_id,
                        workflow.email_id,
                        workflow.order_id,
                        workflow.order_number,
                        str(workflow.order_total),
                        workflow.order_created_at,
                        workflow.customer_email,
                        workflow.customer_name,
                        workflow.fulfillment_method,
                        json_dumps(workflow.fulfillment_config.model_dump(mode="json")),
                        json_dumps(workflow.order.model_dump(mode="json")),
                        workflow.status,
                        workflow.step,
                        now_iso,
                        now_iso,
                    ),
                )
                self.add_audit_event(
                    conn,
                    workflow.workflow_id,
                    event="created",
                    actor=actor,
                    details={
                        "order_number": workflow.order_number,
                        "fulfillment_method": workflow.fulfillment_method,
                        "approval_required": workflow.fulfillment_config.approval_required,
                    },
                )
                workflow_id = workflow.workflow_id
                created = True
            except sqlite3.IntegrityError:
                # Idempotency hit: same inbound email already started a workflow
                existing = conn.execute(
                    "SELECT workflow_id FROM cancellation_workflows WHERE idempotency_key=?",
                    (workflow.idempotency_key,),
                ).fetchone()
                if not existing:
                    raise
                workflow_id = existing["workflow_id"]
                created = False

            row = conn.execute("SELECT * FROM cancellation_workflows WHERE workflow_id=?", (workflow_id,)).fetchone()
            stored = self._row_to_workflow(row)
            stored.audit_trail = self._load_audit(conn, workflow_id)
            return stored, created

    def get_workflow(self, workflow_id: str) -> Optional[CancellationWorkflow]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM cancellation_workflows WHERE workflow_id=?", (workflow_id,)).fetchone()
            if not row:
                return None
            workflow = self._row_to_workflow(row)
            workflow.audit_trail = self._load_audit(conn, workflow_id)
            return workflow

    def get_workflow_by_idempotency_key(self, idempotency_key: str) -> Optional[CancellationWorkflow]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM cancellation_workflows WHERE idempotency_key=?", (idempotency_key,)).fetchone()
            return self._row_to_workflow(row) if row else None

    def find_active_workflow(self, *, user_id: str, order_number: str) -> Optional[CancellationWorkflow]:
        with self._read() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM cancellation_workflows
                WHERE user_id=? AND order_number=? AND status NOT IN {_TERMINAL_SQL}
                ORDER BY created_at DESC LIMIT 1
                """,
                (user_id, order_number),
            ).fetchone()
            return self._row_to_workflow(row) if row else None

    def count_workflows_for_customer(self, *, customer_email: str, since: str, user_id: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) AS c FROM cancellation_workflows WHERE lower(customer_email)=lower(?) AND created_at >= ?"
        params: List[Any] = [customer_email, since]
        if user_id:
            sql += " AND user_id=?"
            params.append(user_id)
        with self._read() as conn:
            return int(conn.execute(sql, params).fetchone()["c"])

    @staticmethod
    def _workflow_filters(
        *,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        customer_email: Optional[str] = None,
        active_only: bool = False,
    ) -> Tuple[str, List[Any]]:
        where: List[str] = []
        params: List[Any] = []
        if user_id:
            where.append("user_id = ?")
            params.append(user_id)
        if status:
            where.append("status = ?")
            params.append(status)
        if customer_email:
            where.append("lower(customer_email) = lower(?)")
            params.append(customer_email)
        if active_only:
            where.append(f"status NOT IN {_TERMINAL_SQL}")

        return (" WHERE " + " AND ".join(where)) if where else "", params

    def count_workflows(self, **filters: Any) -> int:
        clause, params = self._workflow_filters(**filters)
        with self._read() as conn:
            return int(conn.execute(f"SELECT COUNT(*) AS c FROM cancellation_workflows{clause}", params).fetchone()["c"])

    def list_workflows(self, *, limit: int = 50, offset: int = 0, **filters: Any) -> List[CancellationWorkflow]:
        clause, params = self._workflow_filters(**filters)
        sql = "SELECT * FROM cancellation_workflows" + clause
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
        params.extend([max(1, int(limit)), max(0, int(offset))])

        with self._read() as conn:
            # Lightweight list response: no audit trail.
            return [self._row_to_workflow(row) for row in conn.execute(sql, params).fetchall()]

    def update_workflow(
        self,
        workflow_id: str,
        changes: Dict[str, Any],
        *,
        actor: str,
        event: str,
        details: Optional[Dict[str, Any]] = None,
        expected_step: Optional[str] = None,
        expected_status: Optional[str] = None,
    ) -> Optional[CancellationWorkflow]:
        """
        Conditionally apply `changes` to a non-terminal workflow.

        Returns the updated workflow, or None when the precondition no longer
        holds (already terminal, step moved on, or was_canceled already set).
        """
        unknown = set(changes) - MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"immutable_workflow_columns:{sorted(unknown)}")
        if changes.get("refund_processed") and changes.get("was_canceled") is not True:
            raise ValueError("refund_processed_requires_was_canceled")

        now_iso = self._now_iso()
        columns = dict(changes)
        if columns.get("status") in TERMINAL_STATUSES:
            columns["completed_at"] = now_iso
            columns.setdefault("next_attempt_at", None)
        columns["updated_at"] = now_iso

        assignments = ", ".join(f"{name}=?" for name in columns)
        params: List[Any] = [_encode(v) for v in columns.values()]

        conditions = ["workflow_id=?", f"status NOT IN {_TERMINAL_SQL}"]
        params.append(workflow_id)
        if expected_step is not None:
            conditions.append("step=?")
            params.append(expected_step)
        if expected_status is not None:
            conditions.append("status=?")
            params.append(expected_status)
        if "was_canceled" in changes:
            conditions.append("was_canceled IS NULL")

        with self._tx() as conn:
            cur = conn.execute(
                f"UPDATE cancellation_workflows SET {assignments} WHERE {' AND '.join(conditions)}",
                tuple(params),
            )
            if cur.rowcount != 1:
                return None
            self.add_audit_event(conn, workflow_id, event=event, actor=actor, details=details)

        return self.get_workflow(workflow_id)

    def record_event(self, workflow_id: str, *, event: str, actor: str, details: Optional[Dict[str, Any]] = None) -> None:
        with self._tx() as conn:
            self.add_audit_event(conn, workflow_id, event=event, actor=actor, details=details)

    def list_audit_events(self, workflow_id: str) -> List[AuditEvent]:
        with self._read() as conn:
            return self._load_audit(conn, workflow_id)

    # ---------------------------------------------------------------------
    # Per-workflow lock + due work
    # ---------------------------------------------------------------------

    def claim_workflow_lock(self, *, workflow_id: str, owner_id: str, lease_seconds: int = 120) -> bool:
        now = self._clock()
        now_iso = to_iso(now)
        exp_iso = to_iso(now + timedelta(seconds=max(10, int(lease_seconds))))
        with self._tx() as conn:
            cur = conn.execute(
                f"""
                UPDATE cancellation_workflows
                SET lock_owner=?, lock_expires_at=?
                WHERE workflow_id=?
                  AND status NOT IN {_TERMINAL_SQL}
                  AND (lock_expires_at IS NULL OR lock_expires_at < ? OR lock_owner=?)
                """,
                (owner_id, exp_iso, workflow_id, now_iso, owner_id),
            )
            return cur.rowcount == 1

    def release_workflow_lock(self, *, workflow_id: str, owner_id: str) -> None:
        with self._tx() as conn:
            conn.execute(
                "UPDATE cancellation_workflows SET lock_owner=NULL, lock_expires_at=NULL WHERE workflow_id=? AND lock_owner=?",
                (workflow_id, owner_id),
            )

    def list_due_workflow_ids(self, *, stalled_before: str, limit: int = 100) -> List[str]:
        """
        Workflows the sweep should resume: a scheduled retry is due, or the
        workflow sat in `processing` without progress past the stall cutoff.
        Workflows paused on a pending approval are never due.
        """
        now_iso = self._now_iso()
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT w.workflow_id
                FROM cancellation_workflows w
                WHERE w.status='processing'
                  AND (w.lock_expires_at IS NULL OR w.lock_expires_at < ?)
                  AND NOT EXISTS (
                    SELECT 1 FROM approval_items a WHERE a.workflow_id=w.workflow_id AND a.status='pending'
                  )
                  AND (
                    (w.next_attempt_at IS NOT NULL AND w.next_attempt_at <= ?)
                    OR (w.next_attempt_at IS NULL AND w.updated_at <= ?)
                  )
                ORDER BY COALESCE(w.next_attempt_at, w.updated_at) ASC
                LIMIT ?
                """,
                (now_iso, now_iso, stalled_before, max(1, int(limit))),
            ).fetchall()
            return [r["workflow_id"] for r in rows]

    def list_sla_breached_workflow_ids(self, *, limit: int = 100) -> List[str]:
        now_iso = self._now_iso()
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT workflow_id
                FROM cancellation_workflows
                WHERE status='awaiting_warehouse'
                  AND step='await_warehouse'
                  AND warehouse_reply_received=0
                  AND warehouse_reply_due_at IS NOT NULL
                  AND warehouse_reply_due_at <= ?
                ORDER BY warehouse_reply_due_at ASC
                LIMIT ?
                """,
                (now_iso, max(1, int(limit))),
            ).fetchall()
            return [r["workflow_id"] for r in rows]

    # ---------------------------------------------------------------------
    # Approval items
    # ---------------------------------------------------------------------

    def create_approval(self, item: ApprovalItem, *, actor: str) -> Tuple[ApprovalItem, bool]:
        """Insert a pending approval; returns the already-pending one when present."""
        item = item.model_copy(update={"requested_at": self._now_iso(), "status": "pending"})
        with self._tx() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO approval_items (approval_id, workflow_id, proposed_action, status, metadata, edits, requested_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item.approval_id,
                        item.workflow_id,
                        item.proposed_action,
                        item.status,
                        json_dumps(item.metadata or {}),
                        json_dumps(item.edits or {}),
                        item.requested_at,
                    ),
                )
                self.add_audit_event(
                    conn,
                    item.workflow_id,
                    event="approval_requested",
                    actor=actor,
                    details={"approval_id": item.approval_id, "proposed_action": item.proposed_action},
                )
                return item, True
            except sqlite3.IntegrityError:
                row = conn.execute(
                    "SELECT * FROM approval_items WHERE workflow_id=? AND status='pending'",
                    (item.workflow_id,),
                ).fetchone()
                if not row:
                    raise
                return self._row_to_approval(row), False

    def get_approval(self, approval_id: str) -> Optional[ApprovalItem]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM approval_items WHERE approval_id=?", (approval_id,)).fetchone()
            return self._row_to_approval(row) if row else None

    def get_pending_approval(self, workflow_id: str) -> Optional[ApprovalItem]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM approval_items WHERE workflow_id=? AND status='pending'",
                (workflow_id,),
            ).fetchone()
            return self._row_to_approval(row) if row else None

    def get_latest_approval(self, *, workflow_id: str, proposed_action: str) -> Optional[ApprovalItem]:
        with self._read() as conn:
            row = conn.execute(
                """
                SELECT * FROM approval_items
                WHERE workflow_id=? AND proposed_action=?
                ORDER BY requested_at DESC, rowid DESC LIMIT 1
                """,
                (workflow_id, proposed_action),
            ).fetchone()
            return self._row_to_approval(row) if row else None

    def list_approvals(self, workflow_id: str) -> List[ApprovalItem]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM approval_items WHERE workflow_id=? ORDER BY requested_at ASC, rowid ASC",
                (workflow_id,),
            ).fetchall()
            return [self._row_to_approval(r) for r in rows]

    def list_pending_approvals(self, *, user_id: Optional[str] = None, limit: int = 50) -> List[ApprovalItem]:
        sql = "SELECT a.* FROM approval_items a"
        params: List[Any] = []
        if user_id:
            sql += " JOIN cancellation_workflows w ON w.workflow_id=a.workflow_id WHERE a.status='pending' AND w.user_id=?"
            params.append(user_id)
        else:
            sql += " WHERE a.status='pending'"
        sql += " ORDER BY a.requested_at ASC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._read() as conn:
            return [self._row_to_approval(r) for r in conn.execute(sql, params).fetchall()]

    def resolve_approval(
        self,
        *,
        approval_id: str,
        status: str,
        actor: str,
        reason: Optional[str] = None,
        edits: Optional[Dict[str, Any]] = None,
    ) -> Optional[ApprovalItem]:
        """Move a pending approval to its decision. None if it was not pending."""
        now_iso = self._now_iso()
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM approval_items WHERE approval_id=?", (approval_id,)).fetchone()
            if not row:
                raise KeyError("approval_not_found")
            cur = conn.execute(
                """
                UPDATE approval_items
                SET status=?, decided_by=?, decided_at=?, decision_reason=?, edits=?
                WHERE approval_id=? AND status='pending'
                """,
                (status, actor, now_iso, (reason or "")[:1000] or None, json_dumps(edits or {}), approval_id),
            )
            if cur.rowcount != 1:
                return None
            self.add_audit_event(
                conn,
                row["workflow_id"],
                event=f"approval_{status}",
                actor=actor,
                details={"approval_id": approval_id, "proposed_action": row["proposed_action"], "reason": reason},
            )
            updated = conn.execute("SELECT * FROM approval_items WHERE approval_id=?", (approval_id,)).fetchone()
            return self._row_to_approval(updated)

    # ---------------------------------------------------------------------
    # Escalations
    # ---------------------------------------------------------------------

    def create_escalation(self, escalation: Escalation, *, actor: str) -> Tuple[Escalation, bool]:
        escalation = escalation.model_copy(update={"created_at": self._now_iso(), "status": "open"})
        with self._tx() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO escalations (escalation_id, workflow_id, kind, priority, reason, status, details, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        escalation.escalation_id,
                        escalation.workflow_id,
                        escalation.kind,
                        escalation.priority,
                        escalation.reason,
                        escalation.status,
                        json_dumps(escalation.details or {}),
                        escalation.created_at,
                    ),
                )
                self.add_audit_event(
                    conn,
                    escalation.workflow_id,
                    event="escalated",
                    actor=actor,
                    details={"escalation_id": escalation.escalation_id, "kind": escalation.kind, "reason": escalation.reason},
                )
                return escalation, True
            except sqlite3.IntegrityError:
                row = conn.execute(
                    "SELECT * FROM escalations WHERE workflow_id=? AND kind=? AND status='open'",
                    (escalation.workflow_id, escalation.kind),
                ).fetchone()
                if not row:
                    raise
                return self._row_to_escalation(row), False

    def list_escalations(
        self,
        *,
        status: Optional[str] = "open",
        kind: Optional[str] = None,
        workflow_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Escalation]:
        where: List[str] = []
        params: List[Any] = []
        if status:
            where.append("status=?")
            params.append(status)
        if kind:
            where.append("kind=?")
            params.append(kind)
        if workflow_id:
            where.append("workflow_id=?")
            params.append(workflow_id)
        sql = "SELECT * FROM escalations"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY CASE priority WHEN 'high' THEN 0 WHEN 'normal' THEN 1 ELSE 2 END, created_at ASC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._read() as conn:
            return [self._row_to_escalation(r) for r in conn.execute(sql, params).fetchall()]

    def resolve_escalation(self, *, escalation_id: str, actor: str, note: Optional[str] = None) -> Escalation:
        now_iso = self._now_iso()
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM escalations WHERE escalation_id=?", (escalation_id,)).fetchone()
            if not row:
                raise KeyError("escalation_not_found")
            if row["status"] != "open":
                raise ValueError(f"escalation_not_open:{row['status']}")
            conn.execute(
                "UPDATE escalations SET status='resolved', resolved_by=?, resolved_at=? WHERE escalation_id=?",
                (actor, now_iso, escalation_id),
            )
            self.add_audit_event(
                conn,
                row["workflow_id"],
                event="escalation_resolved",
                actor=actor,
                details={"escalation_id": escalation_id, "kind": row["kind"], "note": note},
            )
            updated = conn.execute("SELECT * FROM escalations WHERE escalation_id=?", (escalation_id,)).fetchone()
            return self._row_to_escalation(updated)

    # ---------------------------------------------------------------------
    # Side-effect ledger (at-most-once emails and refunds)
    # ---------------------------------------------------------------------

    def claim_side_effect(
        self,
        *,
        idempotency_key: str,
        workflow_id: str,
        kind: str,
        stale_after_seconds: int = 300,
    ) -> Tuple[SideEffectRecord, bool]:
        """
        Claim the right to perform a side effect.

        Returns (record, claimed). A stale claim (holder crashed mid-call) may be
        taken over; the downstream call still carries the same idempotency key.
        """
        now = self._clock()
        now_iso = to_iso(now)
        stale_iso = to_iso(now - timedelta(seconds=max(1, int(stale_after_seconds))))
        with self._tx() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO side_effects (idempotency_key, workflow_id, kind, status, result, claimed_at)
                    VALUES (?, ?, ?, 'claimed', '{}', ?)
                    """,
                    (idempotency_key, workflow_id, kind, now_iso),
                )
                claimed = True
            except sqlite3.IntegrityError:
                cur = conn.execute(
                    "UPDATE side_effects SET claimed_at=? WHERE idempotency_key=? AND status='claimed' AND claimed_at < ?",
                    (now_iso, idempotency_key, stale_iso),
                )
                claimed = cur.rowcount == 1
            row = conn.execute("SELECT * FROM side_effects WHERE idempotency_key=?", (idempotency_key,)).fetchone()
            return self._row_to_side_effect(row), claimed

    def complete_side_effect(self, *, idempotency_key: str, result: Dict[str, Any], succeeded: bool = True) -> None:
        with self._tx() as conn:
            conn.execute(
                "UPDATE side_effects SET status=?, result=?, completed_at=? WHERE idempotency_key=?",
                ("succeeded" if succeeded else "failed", json_dumps(result or {}), self._now_iso(), idempotency_key),
            )

    def release_side_effect(self, *, idempotency_key: str) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM side_effects WHERE idempotency_key=? AND status='claimed'", (idempotency_key,))

    def list_side_effects(self, workflow_id: str) -> List[SideEffectRecord]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM side_effects WHERE workflow_id=? ORDER BY claimed_at ASC, rowid ASC",
                (workflow_id,),
            ).fetchall()
            return [self._row_to_side_effect(r) for r in rows]

    # ---------------------------------------------------------------------
    # Inbox (inbound event dedup)
    # ---------------------------------------------------------------------

    def inbox_mark(self, *, event_id: str, consumer_id: str) -> bool:
        with self._tx() as conn:
            try:
                conn.execute(
                    "INSERT INTO inbox (event_id, consumer_id, processed_at) VALUES (?, ?, ?)",
                    (event_id, consumer_id, self._now_iso()),
                )
                return True
            except sqlite3.IntegrityError:
                return False

    def inbox_remove(self, *, event_id: str, consumer_id: str) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM inbox WHERE event_id=? AND consumer_id=?", (event_id, consumer_id))

    # ---------------------------------------------------------------------
    # Runner lease (single active sweeper)
    # ---------------------------------------------------------------------

    def acquire_runner_lease(
        self,
        *,
        runner_name: str = "cancellation_sweeper",
        owner_id: Optional[str] = None,
        lease_seconds: int = 30,
        pid: Optional[int] = None,
        host: Optional[str] = None,
    ) -> bool:
        owner_id = owner_id or default_runner_owner_id()
        pid = pid if pid is not None else os.getpid()
        host = host or os.uname().nodename
        now = self._clock()
        now_iso = to_iso(now)
        exp_iso = to_iso(now + timedelta(seconds=max(5, int(lease_seconds))))

        with self._tx() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO runner_leases (runner_name, owner_id, lease_expires_at, heartbeat_at, pid, host)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (runner_name, owner_id, exp_iso, now_iso, int(pid), str(host)),
                )
                return True
            except sqlite3.IntegrityError:
                # Take over only if expired or already ours
                cur = conn.execute(
                    """
                    UPDATE runner_leases
                    SET owner_id=?, lease_expires_at=?, heartbeat_at=?, pid=?, host=?
                    WHERE runner_name=? AND (lease_expires_at < ? OR owner_id=?)
                    """,
                    (owner_id, exp_iso, now_iso, int(pid), str(host), runner_name, now_iso, owner_id),
                )
                return cur.rowcount == 1

    def release_runner_lease(self, *, runner_name: str, owner_id: str) -> None:
        with self._tx() as conn:
            conn.execute(
                "UPDATE runner_leases SET lease_expires_at=? WHERE runner_name=? AND owner_id=?",
                (self._now_iso(), runner_name, owner_id),
            )

    def get_runner_lease(self, *, runner_name: str) -> Optional[RunnerLease]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM runner_leases WHERE runner_name=?", (runner_name,)).fetchone()
            if not row:
                return None
            return RunnerLease(
                runner_name=row["runner_name"],
                owner_id=row["owner_id"],
                lease_expires_at=row["lease_expires_at"],
                heartbeat_at=row["heartbeat_at"],
                pid=int(row["pid"]),
                host=row["host"],
            )

    # ---------------------------------------------------------------------
    # Monitoring
    # ---------------------------------------------------------------------

    def workflow_metrics(self, *, window_hours: int = 24) -> Dict[str, Any]:
        cutoff = to_iso(self._clock() - timedelta(hours=max(1, int(window_hours))))
        with self._read() as conn:
            by_status = {
                r["status"]: int(r["c"])
                for r in conn.execute("SELECT status, COUNT(*) AS c FROM cancellation_workflows GROUP BY status").fetchall()
            }
            by_method = {
                r["fulfillment_method"]: int(r["c"])
                for r in conn.execute(
                    "SELECT fulfillment_method, COUNT(*) AS c FROM cancellation_workflows WHERE created_at >= ? GROUP BY fulfillment_method",
                    (cutoff,),
                ).fetchall()
            }
            pending_approvals = conn.execute("SELECT COUNT(*) AS c FROM approval_items WHERE status='pending'").fetchone()["c"]
            open_escalations = conn.execute("SELECT COUNT(*) AS c FROM escalations WHERE status='open'").fetchone()["c"]
            reconciliation = conn.execute(
                "SELECT COUNT(*) AS c FROM cancellation_workflows WHERE needs_reconciliation=1"
            ).fetchone()["c"]

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "created_by_method": by_method,
            "window_hours": int(window_hours),
            "pending_approvals": int(pending_approvals),
            "open_escalations": int(open_escalations),
            "needs_reconciliation": int(reconciliation),
        }


def workflow_due_cutoff(now: datetime, stall_seconds: int) -> str:
    return to_iso(now - timedelta(seconds=max(1, int(stall_seconds))))


__all__ = ["WorkflowStore", "SCHEMA_SQL", "workflow_due_cutoff", "parse_iso"]
