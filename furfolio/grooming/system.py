"""Core orchestration logic for the Furfolio grooming client records."""

from __future__ import annotations

import datetime as dt
import functools
import logging
import threading
from collections import Counter
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from .database import get_connection, initialize_database
from .stats import (
    NEW_CLIENT_DAYS,
    RETENTION_RISK_DAYS,
    REWARD_THRESHOLD,
    SEVERITY_TAGS,
    TOP_SPENDER_THRESHOLD,
    AppointmentRecord,
    BehaviorLogRecord,
    ChargeRecord,
    OwnerRecord,
    OwnerStats,
    compute_stats,
    money,
)

logger = logging.getLogger(__name__)

SERVICE_TYPES = ("Basic Package", "Full Package", "Custom Package")
PAYMENT_METHODS = ("cash", "card", "transfer", "gift_card")

OWNER_FIELDS = ("owner_name", "dog_name", "breed", "contact_info", "address", "notes", "birthdate")
APPOINTMENT_FIELDS = ("service_type", "notes", "duration_minutes")
CHARGE_FIELDS = ("amount", "payment_method", "notes")

MILESTONE_DETAILS = {
    "first_visit": ("🎉", "Congratulations on your first visit!"),
    "five_visits": ("🏅", "You've reached 5 visits, thank you!"),
    "revenue_threshold": ("💰", "Total revenue reached ${amount}"),
    "retention_risk": ("⚠️", "No visits in over {days} days"),
}


class ValidationError(RuntimeError):
    """Raised when incoming data fails validation."""


class NotFoundError(ValidationError):
    """Raised when a record does not exist."""


def _parse_datetime(value: Any, field: str) -> dt.datetime:
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, dt.date):
        parsed = dt.datetime.combine(value, dt.time())
    elif isinstance(value, str) and value.strip():
        try:
            parsed = dt.datetime.fromisoformat(value.strip())
        except ValueError as exc:
            raise ValidationError(f"{field} must be an ISO 8601 date") from exc
    else:
        raise ValidationError(f"{field} is required")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed.replace(microsecond=0)


def _parse_date(value: Any, field: str) -> dt.date | None:
    if value in (None, ""):
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    try:
        return dt.date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"{field} must be an ISO 8601 date") from exc


def _parse_amount(value: Any) -> Decimal:
    try:
        amount = money(value)
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationError("Charge amount must be a number") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Charge amount must be greater than 0")
    return amount


def _parse_duration(value: Any) -> int | None:
    if value in (None, ""):
        return None
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError("Duration must be a whole number of minutes")
    try:
        minutes = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Duration must be a whole number of minutes") from exc
    if minutes <= 0:
        raise ValidationError("Duration must be positive")
    return minutes


def _text(value: Any, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be text")
    return value.strip() or None


def _require_choice(value: Any, choices: Iterable[str], field: str) -> str:
    choices = tuple(choices)
    if value not in choices:
        raise ValidationError(f"{field} must be one of: {', '.join(choices)}")
    return value


def _severity_tag(value: Any) -> str | None:
    if value in (None, ""):
        return None
    tag = str(value).strip().lower()
    if tag not in SEVERITY_TAGS:
        raise ValidationError("Severity must be low, medium or high")
    return tag


def _locked(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


class GroomingSystem:
    """High level façade over owners, their visits, charges and behaviour logs."""

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        reward_threshold: int = REWARD_THRESHOLD,
        retention_days: int = RETENTION_RISK_DAYS,
        top_spender_threshold: Decimal = TOP_SPENDER_THRESHOLD,
    ) -> None:
        self.conn = get_connection(db_path)
        initialize_database(self.conn)
        self.reward_threshold = reward_threshold
        self.retention_days = retention_days
        self.top_spender_threshold = money(top_spender_threshold)
        self._snapshots: dict[int, OwnerRecord] = {}
        self._versions: dict[int, int] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _fetch(self, table: str, row_id: int, label: str) -> dict:
        row = self.conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone()
        if not row:
            raise NotFoundError(f"{label} not found")
        return row

    def _apply_update(self, table: str, row_id: int, changes: dict[str, Any]) -> None:
        if not changes:
            return
        assignments = ", ".join(f"{column} = ?" for column in changes)
        self.conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            [*changes.values(), row_id],
        )
        self.conn.commit()

    def _check_fields(self, changes: dict[str, Any], allowed: Iterable[str], immutable: str) -> None:
        if immutable in changes:
            raise ValidationError(f"{immutable.replace('_', ' ').capitalize()} cannot be changed once saved")
        unknown = set(changes) - set(allowed)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

    def _invalidate(self, owner_id: int) -> None:
        self._versions[owner_id] = self._versions.get(owner_id, 0) + 1
        if self._snapshots.pop(owner_id, None) is not None:
            logger.debug("Invalidated stats snapshot for owner %s", owner_id)

    # ------------------------------------------------------------------
    # Owners
    # ------------------------------------------------------------------
    @_locked
    def register_owner(
        self,
        *,
        owner_name: str,
        dog_name: str | None = None,
        breed: str | None = None,
        contact_info: str | None = None,
        address: str | None = None,
        notes: str | None = None,
        birthdate: str | dt.date | None = None,
        created_at: str | dt.datetime | None = None,
    ) -> dict:
        name = _text(owner_name, "Owner name")
        if not name:
            raise ValidationError("Owner name is required")
        born = _parse_date(birthdate, "Birthdate")
        created = _parse_datetime(created_at or dt.datetime.now(), "Created at")
        cur = self.conn.execute(
            """
            INSERT INTO owners(
                owner_name, dog_name, breed, contact_info, address, notes, birthdate, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                name,
                _text(dog_name, "Dog name"),
                _text(breed, "Breed"),
                _text(contact_info, "Contact info"),
                _text(address, "Address"),
                _text(notes, "Notes"),
                born.isoformat() if born else None,
                created.isoformat(),
            ),
        )
        self.conn.commit()
        logger.info("Registered owner %s (%s)", cur.lastrowid, name)
        return self.get_owner(cur.lastrowid)

    def get_owner(self, owner_id: int) -> dict:
        return self._fetch("owners", owner_id, "Owner")

    def list_owners(self, *, search: str | None = None) -> list[dict]:
        """Return owners ordered by name, optionally filtered by owner or dog name."""

        if search:
            pattern = f"%{search.strip().lower()}%"
            return self.conn.execute(
                """
                SELECT * FROM owners
                WHERE lower(owner_name) LIKE ? OR lower(COALESCE(dog_name, '')) LIKE ?
                ORDER BY owner_name, id
                """,
                (pattern, pattern),
            ).fetchall()
        return self.conn.execute("SELECT * FROM owners ORDER BY owner_name, id").fetchall()

    @_locked
    def update_owner(self, owner_id: int, /, **changes: Any) -> dict:
        self.get_owner(owner_id)
        self._check_fields(changes, OWNER_FIELDS, "created_at")
        for field in OWNER_FIELDS:
            if field in changes and field != "birthdate":
                changes[field] = _text(changes[field], field.replace("_", " ").capitalize())
        if "owner_name" in changes and not changes["owner_name"]:
            raise ValidationError("Owner name is required")
        if "birthdate" in changes:
            born = _parse_date(changes["birthdate"], "Birthdate")
            changes["birthdate"] = born.isoformat() if born else None
        self._apply_update("owners", owner_id, changes)
        self._invalidate(owner_id)
        logger.info("Updated owner %s: %s", owner_id, ", ".join(sorted(changes)))
        return self.get_owner(owner_id)

    @_locked
    def delete_owner(self, owner_id: int) -> None:
        self.get_owner(owner_id)
        self.conn.execute("DELETE FROM owners WHERE id = ?", (owner_id,))
        self.conn.commit()
        self._invalidate(owner_id)
        logger.info("Deleted owner %s", owner_id)

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------
    @_locked
    def schedule_appointment(
        self,
        *,
        owner_id: int,
        date: str | dt.datetime,
        service_type: str,
        notes: str | None = None,
        duration_minutes: int | None = None,
    ) -> dict:
        self.get_owner(owner_id)
        when = _parse_datetime(date, "Appointment date")
        _require_choice(service_type, SERVICE_TYPES, "Service type")
        cur = self.conn.execute(
            """
            INSERT INTO appointments(owner_id, date, service_type, notes, duration_minutes)
            VALUES (?, ?, ?, ?, ?)
            """,
            (owner_id, when.isoformat(), service_type, _text(notes, "Notes"), _parse_duration(duration_minutes)),
        )
        self.conn.commit()
        self._invalidate(owner_id)
        logger.info("Scheduled appointment %s for owner %s at %s", cur.lastrowid, owner_id, when)
        return self.get_appointment(cur.lastrowid)

    def get_appointment(self, appointment_id: int) -> dict:
        return self._fetch("appointments", appointment_id, "Appointment")

    def list_appointments(self, *, owner_id: int, upcoming_only: bool = False) -> list[dict]:
        self.get_owner(owner_id)
        params: list[Any] = [owner_id]
        where = "WHERE owner_id = ?"
        if upcoming_only:
            where += " AND date > ?"
            params.append(dt.datetime.now().replace(microsecond=0).isoformat())
        return self.conn.execute(
            f"SELECT * FROM appointments {where} ORDER BY date",
            params,
        ).fetchall()

    @_locked
    def update_appointment(self, appointment_id: int, /, **changes: Any) -> dict:
        appointment = self.get_appointment(appointment_id)
        self._check_fields(changes, APPOINTMENT_FIELDS, "date")
        if "service_type" in changes:
            _require_choice(changes["service_type"], SERVICE_TYPES, "Service type")
        if "duration_minutes" in changes:
            changes["duration_minutes"] = _parse_duration(changes["duration_minutes"])
        if "notes" in changes:
            changes["notes"] = _text(changes["notes"], "Notes")
        self._apply_update("appointments", appointment_id, changes)
        self._invalidate(appointment["owner_id"])
        return self.get_appointment(appointment_id)

    @_locked
    def delete_appointment(self, appointment_id: int) -> None:
        appointment = self.get_appointment(appointment_id)
        self.conn.execute("DELETE FROM appointments WHERE id = ?", (appointment_id,))
        self.conn.commit()
        self._invalidate(appointment["owner_id"])
        logger.info("Deleted appointment %s", appointment_id)

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------
    @_locked
    def record_charge(
        self,
        *,
        owner_id: int,
        amount: Decimal | float | str,
        payment_method: str = "card",
        date: str | dt.datetime | None = None,
        notes: str | None = None,
    ) -> dict:
        self.get_owner(owner_id)
        value = _parse_amount(amount)
        _require_choice(payment_method, PAYMENT_METHODS, "Payment method")
        when = _parse_datetime(date or dt.datetime.now(), "Charge date")
        cur = self.conn.execute(
            """
            INSERT INTO charges(owner_id, date, amount, payment_method, notes)
            VALUES (?, ?, ?, ?, ?)
            """,
            (owner_id, when.isoformat(), str(value), payment_method, _text(notes, "Notes")),
        )
        self.conn.commit()
        self._invalidate(owner_id)
        logger.info("Recorded charge %s of %s for owner %s", cur.lastrowid, value, owner_id)
        return self.get_charge(cur.lastrowid)

    def get_charge(self, charge_id: int) -> dict:
        return self._fetch("charges", charge_id, "Charge")

    def list_charges(self, *, owner_id: int) -> list[dict]:
        self.get_owner(owner_id)
        return self.conn.execute(
            "SELECT * FROM charges WHERE owner_id = ? ORDER BY date DESC, id DESC",
            (owner_id,),
        ).fetchall()

    @_locked
    def update_charge(self, charge_id: int, /, **changes: Any) -> dict:
        charge = self.get_charge(charge_id)
        self._check_fields(changes, CHARGE_FIELDS, "date")
        if "amount" in changes:
            changes["amount"] = str(_parse_amount(changes["amount"]))
        if "payment_method" in changes:
            _require_choice(changes["payment_method"], PAYMENT_METHODS, "Payment method")
        if "notes" in changes:
            changes["notes"] = _text(changes["notes"], "Notes")
        self._apply_update("charges", charge_id, changes)
        self._invalidate(charge["owner_id"])
        return self.get_charge(charge_id)

    @_locked
    def delete_charge(self, charge_id: int) -> None:
        charge = self.get_charge(charge_id)
        self.conn.execute("DELETE FROM charges WHERE id = ?", (charge_id,))
        self.conn.commit()
        self._invalidate(charge["owner_id"])
        logger.info("Deleted charge %s", charge_id)

    # ------------------------------------------------------------------
    # Behaviour logs
    # ------------------------------------------------------------------
    @_locked
    def log_behavior(
        self,
        *,
        owner_id: int,
        note: str,
        severity_tag: str | None = None,
        logged_at: str | dt.datetime | None = None,
    ) -> dict:
        self.get_owner(owner_id)
        text = _text(note, "Behaviour note")
        if not text:
            raise ValidationError("Behaviour note is required")
        when = _parse_datetime(logged_at or dt.datetime.now(), "Logged at")
        cur = self.conn.execute(
            """
            INSERT INTO behavior_logs(owner_id, note, severity_tag, logged_at)
            VALUES (?, ?, ?, ?)
            """,
            (owner_id, text, _severity_tag(severity_tag), when.isoformat()),
        )
        self.conn.commit()
        self._invalidate(owner_id)
        return self._fetch("behavior_logs", cur.lastrowid, "Behaviour log")

    def list_behavior_logs(self, *, owner_id: int) -> list[dict]:
        self.get_owner(owner_id)
        return self.conn.execute(
            "SELECT * FROM behavior_logs WHERE owner_id = ? ORDER BY logged_at DESC, id DESC",
            (owner_id,),
        ).fetchall()

    @_locked
    def delete_behavior_log(self, log_id: int) -> None:
        log = self._fetch("behavior_logs", log_id, "Behaviour log")
        self.conn.execute("DELETE FROM behavior_logs WHERE id = ?", (log_id,))
        self.conn.commit()
        self._invalidate(log["owner_id"])

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------
    @_locked
    def owner_snapshot(self, owner_id: int) -> OwnerRecord:
        """Return the cached snapshot for an owner, loading it on first use."""

        cached = self._snapshots.get(owner_id)
        if cached is not None:
            logger.debug("Stats snapshot cache hit for owner %s", owner_id)
            return cached
        version = self._versions.get(owner_id, 0)
        owner = self.get_owner(owner_id)
        appointments = tuple(
            AppointmentRecord(
                id=row["id"],
                date=dt.datetime.fromisoformat(row["date"]),
                service_type=row["service_type"],
                notes=row["notes"],
                duration_minutes=row["duration_minutes"],
            )
            for row in self.list_appointments(owner_id=owner_id)
        )
        charges = tuple(
            ChargeRecord(
                id=row["id"],
                date=dt.datetime.fromisoformat(row["date"]),
                amount=Decimal(row["amount"]),
                payment_method=row["payment_method"],
                notes=row["notes"],
            )
            for row in self.list_charges(owner_id=owner_id)
        )
        logs = tuple(
            BehaviorLogRecord(
                id=row["id"],
                note=row["note"],
                logged_at=dt.datetime.fromisoformat(row["logged_at"]),
                severity_tag=row["severity_tag"],
            )
            for row in self.list_behavior_logs(owner_id=owner_id)
        )
        snapshot = OwnerRecord(
            id=owner["id"],
            owner_name=owner["owner_name"],
            created_at=dt.datetime.fromisoformat(owner["created_at"]),
            dog_name=owner["dog_name"],
            birthdate=dt.date.fromisoformat(owner["birthdate"]) if owner["birthdate"] else None,
            appointments=appointments,
            charges=charges,
            behavior_logs=logs,
        )
        # A mutation made while the rows were being read leaves the snapshot stale.
        if self._versions.get(owner_id, 0) == version:
            self._snapshots[owner_id] = snapshot
        return snapshot

    def compute_stats(self, owner_id: int, *, now: dt.datetime | None = None) -> OwnerStats:
        return compute_stats(
            self.owner_snapshot(owner_id),
            now,
            reward_threshold=self.reward_threshold,
            retention_days=self.retention_days,
            top_spender_threshold=self.top_spender_threshold,
        )

    def all_stats(self, *, now: dt.datetime | None = None) -> list[OwnerStats]:
        now = now or dt.datetime.now()
        return [self.compute_stats(row["id"], now=now) for row in self.list_owners()]

    def milestones(self, owner_id: int, *, now: dt.datetime | None = None) -> list[dict]:
        """Describe the milestones an owner has reached."""

        stats = self.compute_stats(owner_id, now=now)
        entries = []
        for milestone in stats.milestones:
            icon, template = MILESTONE_DETAILS[milestone]
            entries.append(
                {
                    "type": milestone,
                    "icon": icon,
                    "details": template.format(
                        amount=stats.visits.total_revenue, days=self.retention_days
                    ),
                }
            )
        return entries

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def top_clients(self, *, limit: int = 5, now: dt.datetime | None = None) -> list[dict]:
        if limit < 1:
            raise ValidationError("Limit must be at least 1")
        ranked = sorted(
            self.all_stats(now=now),
            key=lambda stats: (-stats.visits.total_revenue, stats.owner_name.lower(), stats.owner_id),
        )
        return [
            {
                "owner_id": stats.owner_id,
                "owner_name": stats.owner_name,
                "total_revenue": str(stats.visits.total_revenue),
                "total_visits": stats.visits.total_visits,
                "loyalty_tier": stats.loyalty.tier,
            }
            for stats in ranked[:limit]
        ]

    def retention_summary(self, *, now: dt.datetime | None = None) -> dict:
        everyone = self.all_stats(now=now)
        counts = Counter({tag: 0 for tag in ("new", "active", "at_risk", "inactive", "no_history")})
        counts.update(stats.retention_tag for stats in everyone)
        return {
            "total_owners": len(everyone),
            "counts": dict(counts),
            "at_risk_owner_ids": [stats.owner_id for stats in everyone if stats.retention_risk],
            "new_client_days": NEW_CLIENT_DAYS,
            "retention_days": self.retention_days,
        }

    def dashboard(self, *, now: dt.datetime | None = None) -> dict:
        """Return a snapshot summary for the dashboard view."""

        now = now or dt.datetime.now()
        everyone = self.all_stats(now=now)
        revenue = sum((stats.visits.total_revenue for stats in everyone), Decimal("0"))
        return {
            "date": now.date().isoformat(),
            "owners": len(everyone),
            "total_revenue": str(money(revenue)),
            "upcoming_appointments": sum(stats.visits.upcoming_count for stats in everyone),
            "retention_risk": sum(1 for stats in everyone if stats.retention_risk),
            "behavior_risk": sum(1 for stats in everyone if stats.behavior.is_risk),
            "rewards_earned": sum(1 for stats in everyone if stats.loyalty.reward_earned),
            "top_clients": self.top_clients(now=now),
        }

    def close(self) -> None:
        self.conn.close()
