"""
devices/store.py -- SQLAlchemy Core persistence for per-user device records.

Pattern: Repository + Data Mapper. DeviceStore is the repository;
_row_to_device is the mapper.

(user_id, fingerprint) is unique. upsert() inserts and falls back to an
UPDATE on IntegrityError, so two concurrent first logins from the same
device end up as one row with the later timestamp.

Rows are never deleted: deactivate() flips is_active so suspicion scoring
still sees the history.

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, UniqueConstraint
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from core.clock import Clock, from_iso, to_iso, utcnow
from core.db import make_engine
from devices.models import DeviceRecord

logger = logging.getLogger("authguard.devices")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_devices = Table(
    "user_devices",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),  # weak reference, no FK
    Column("fingerprint", String(64), nullable=False),
    Column("device_name", String(100), nullable=False),
    Column("device_type", String(20), nullable=False, server_default="desktop"),
    Column("browser", String(100), nullable=False),
    Column("operating_system", String(100), nullable=False),
    Column("ip_address", String(45), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_trusted", Integer, nullable=False, server_default="0"),
    Column("last_used_at", String(40), nullable=False),
    Column("created_at", String(40), nullable=False),
    UniqueConstraint("user_id", "fingerprint", name="uq_user_device"),
    Index("ix_user_devices_user_active", "user_id", "is_active"),
    Index("ix_user_devices_last_used", "last_used_at"),
)


class DeviceStore:
    """Repository for DeviceRecord entities.

    Usage:
        store = DeviceStore("sqlite:///authguard.db")
        record = store.upsert(DeviceRecord(user_id=1, fingerprint=fp, ip_address="203.0.113.7"))
        recent = store.recent(1, limit=5)
        store.close()
    """

    def __init__(self, db_url: str, clock: Clock = utcnow) -> None:
        self.engine: Engine = make_engine(db_url)
        self._clock = clock
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, record: DeviceRecord) -> DeviceRecord:
        """Insert a device or refresh last_used_at / ip_address / is_active on an existing one.

        Labels parsed from the user agent are written on insert only; the
        fingerprint already pins the exact user agent string.
        """
        now = to_iso(self._clock())
        existing = self.get_by_fingerprint(record.user_id, record.fingerprint)
        if existing is None:
            try:
                with self.engine.connect() as conn:
                    conn.execute(
                        _devices.insert().values(
                            user_id=record.user_id,
                            fingerprint=record.fingerprint,
                            device_name=record.device_name,
                            device_type=record.device_type,
                            browser=record.browser,
                            operating_system=record.operating_system,
                            ip_address=record.ip_address,
                            is_active=1,
                            is_trusted=1 if record.is_trusted else 0,
                            last_used_at=now,
                            created_at=now,
                        )
                    )
                    conn.commit()
            except IntegrityError:
                # Lost an insert race for the same (user, fingerprint).
                logger.debug("Device %s for user %s already exists, updating", record.fingerprint[:12], record.user_id)
                self._touch(record, now)
        else:
            self._touch(record, now)
        return self.get_by_fingerprint(record.user_id, record.fingerprint)

    def _touch(self, record: DeviceRecord, now: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _devices.update()
                .where((_devices.c.user_id == record.user_id) & (_devices.c.fingerprint == record.fingerprint))
                .values(last_used_at=now, ip_address=record.ip_address, is_active=1)
            )
            conn.commit()

    def update(
        self,
        user_id: int,
        device_id: int,
        *,
        device_name: Optional[str] = None,
        is_trusted: Optional[bool] = None,
    ) -> Optional[DeviceRecord]:
        """Rename and/or (un)trust a device owned by user_id.

        Returns the updated record, or None if the device does not exist or
        belongs to another user.
        """
        values: dict = {}
        if device_name is not None:
            values["device_name"] = device_name
        if is_trusted is not None:
            values["is_trusted"] = 1 if is_trusted else 0
        if values:
            with self.engine.connect() as conn:
                conn.execute(
                    _devices.update()
                    .where((_devices.c.id == device_id) & (_devices.c.user_id == user_id))
                    .values(**values)
                )
                conn.commit()
        return self.get(user_id, device_id)

    def deactivate(self, user_id: int, device_id: int) -> bool:
        """Soft-delete a device. Returns False if it is not owned by user_id."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.update()
                .where((_devices.c.id == device_id) & (_devices.c.user_id == user_id))
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, user_id: int, device_id: int) -> Optional[DeviceRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _devices.select().where((_devices.c.id == device_id) & (_devices.c.user_id == user_id))
            ).fetchone()
        return _row_to_device(row) if row is not None else None

    def get_by_fingerprint(self, user_id: int, fingerprint: str) -> Optional[DeviceRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _devices.select().where((_devices.c.user_id == user_id) & (_devices.c.fingerprint == fingerprint))
            ).fetchone()
        return _row_to_device(row) if row is not None else None

    def list_for_user(self, user_id: int, *, active_only: bool = False) -> list[DeviceRecord]:
        """Every device for a user, most recently used first."""
        stmt = _devices.select().where(_devices.c.user_id == user_id)
        if active_only:
            stmt = stmt.where(_devices.c.is_active == 1)
        stmt = stmt.order_by(_devices.c.last_used_at.desc(), _devices.c.id.desc())
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_device(r) for r in rows]

    def recent(self, user_id: int, limit: int) -> list[DeviceRecord]:
        """The user's `limit` most recently used devices, including deactivated ones."""
        stmt = (
            _devices.select()
            .where(_devices.c.user_id == user_id)
            .order_by(_devices.c.last_used_at.desc(), _devices.c.id.desc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_device(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_device(row) -> DeviceRecord:
    return DeviceRecord(
        id=row.id,
        user_id=row.user_id,
        fingerprint=row.fingerprint,
        device_name=row.device_name,
        device_type=row.device_type,
        browser=row.browser,
        operating_system=row.operating_system,
        ip_address=row.ip_address,
        is_active=bool(row.is_active),
        is_trusted=bool(row.is_trusted),
        last_used_at=from_iso(row.last_used_at),
        created_at=from_iso(row.created_at),
    )
