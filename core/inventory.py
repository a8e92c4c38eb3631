"""
Durable VM inventory.

One SQLite row per VM name, written through peewee. The row keeps the full
serialized VmRecord plus indexed `state` / `in_progress` columns for queries.
Every write is an IMMEDIATE transaction, so a read-modify-write of one record
is atomic. A per-name lock additionally queues writers of the same name inside
this process instead of leaving them to SQLite's busy timeout.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional

import peewee

from config.settings import INVENTORY_DB_PATH
from core.errors import RecordNotFoundError
from core.logger import log_event
from schemas.vm_schema import ProvisionRequest, VmRecord, VmState, utcnow

# Global database instance - path set via InventoryStore()
db = peewee.SqliteDatabase(None)


class VmRow(peewee.Model):
    name = peewee.CharField(primary_key=True)
    state = peewee.CharField(index=True)
    in_progress = peewee.BooleanField(default=False, index=True)
    payload = peewee.TextField()  # VmRecord JSON

    class Meta:
        database = db
        table_name = "vm_records"


def _load(row: VmRow) -> VmRecord:
    return VmRecord.model_validate_json(row.payload)


def _dump(record: VmRecord) -> dict:
    return {
        "state": record.state.value,
        "in_progress": record.in_progress,
        "payload": record.model_dump_json(by_alias=True),
    }


class InventoryStore:
    def __init__(self, db_path: str = INVENTORY_DB_PATH) -> None:
        self.db_path = db_path
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        if not db.is_closed():
            db.close()
        db.init(db_path, pragmas={"journal_mode": "wal"}, timeout=10)
        try:
            db.connect(reuse_if_open=True)
            db.create_tables([VmRow], safe=True)
        except peewee.OperationalError as e:
            log_event(f"[inventory] Failed to open inventory '{db_path}': {e}")
            raise
        log_event(f"[inventory] Inventory opened at {db_path} ({VmRow.select().count()} records)")

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------
    def reserve(self, name: str, request: ProvisionRequest) -> bool:
        """
        Atomically claim `name` for a new provisioning attempt.

        Creates a Pending record, or re-arms an idle Failed one (attempt + 1).
        A re-armed record keeps its disk image and domain references so the
        next attempt can verify and reuse them.
        Returns False when the name is held by a live record, by an attempt
        still in progress, or by a Failed record awaiting manual cleanup.
        """
        with self._lock_for(name), db.atomic("IMMEDIATE"):
            row = VmRow.get_or_none(VmRow.name == name)
            now = utcnow()
            if row is None:
                record = VmRecord(
                    name=name,
                    request=request,
                    state=VmState.PENDING,
                    attempt=1,
                    created_at=now,
                    updated_at=now,
                    in_progress=True,
                )
                try:
                    VmRow.create(name=name, **_dump(record))
                except peewee.IntegrityError:
                    return False
                log_event(f"[inventory] Reserved '{name}'")
                return True

            record = _load(row)
            if (
                record.in_progress
                or record.state != VmState.FAILED
                or record.rollback_incomplete
            ):
                return False

            record.request = request
            record.state = VmState.PENDING
            record.attempt += 1
            record.last_error = None
            record.cancel_requested = False
            record.delete_requested = False
            record.in_progress = True
            record.updated_at = now
            VmRow.update(**_dump(record)).where(VmRow.name == name).execute()
            log_event(f"[inventory] Re-reserved failed '{name}' (attempt {record.attempt})")
            return True

    def acquire(self, name: str) -> bool:
        """Mark an idle record in progress. False if already busy."""
        with self._lock_for(name), db.atomic("IMMEDIATE"):
            row = VmRow.get_or_none(VmRow.name == name)
            if row is None:
                raise RecordNotFoundError(name)
            record = _load(row)
            if record.in_progress:
                return False
            record.in_progress = True
            record.updated_at = utcnow()
            VmRow.update(**_dump(record)).where(VmRow.name == name).execute()
            return True

    def release(self, name: str) -> Optional[VmRecord]:
        """Clear the in-progress marker and any unobserved cancel request."""

        def clear(record: VmRecord) -> None:
            record.in_progress = False
            record.cancel_requested = False

        try:
            return self.update(name, clear)
        except RecordNotFoundError:
            return None

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------
    def get(self, name: str) -> Optional[VmRecord]:
        row = VmRow.get_or_none(VmRow.name == name)
        return _load(row) if row is not None else None

    def update(self, name: str, mutator: Callable[[VmRecord], None]) -> VmRecord:
        """
        Atomic read-modify-write of one record.

        `mutator` edits the record in place; if it raises, nothing is written
        and the exception propagates.
        """
        with self._lock_for(name), db.atomic("IMMEDIATE"):
            row = VmRow.get_or_none(VmRow.name == name)
            if row is None:
                raise RecordNotFoundError(name)
            record = _load(row)
            mutator(record)
            record.updated_at = utcnow()
            VmRow.update(**_dump(record)).where(VmRow.name == name).execute()
            return record

    def list(self) -> list[VmRecord]:
        return [_load(row) for row in VmRow.select().order_by(VmRow.name)]

    def list_in_progress(self) -> list[VmRecord]:
        query = VmRow.select().where(VmRow.in_progress == True)  # noqa: E712
        return [_load(row) for row in query]

    def remove(self, name: str) -> None:
        with self._lock_for(name), db.atomic("IMMEDIATE"):
            VmRow.delete().where(VmRow.name == name).execute()
        with self._locks_guard:
            self._locks.pop(name, None)
        log_event(f"[inventory] Removed '{name}'")

    def close(self) -> None:
        if not db.is_closed():
            db.close()
