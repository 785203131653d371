"""Client statistics derived from an owner's appointments, charges and behaviour logs.

Every function in this module is pure: it works on immutable snapshots of an
owner's records and never touches the database. ``GroomingSystem`` builds the
snapshots and memoises them; this module only does the arithmetic.
"""

from __future__ import annotations

import datetime as dt
import re
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Sequence

REWARD_THRESHOLD = 10
RETENTION_RISK_DAYS = 90
INACTIVE_DAYS = 180
NEW_CLIENT_DAYS = 14
FIVE_VISITS = 5
TOP_SPENDER_THRESHOLD = Decimal("1000.00")
RECENT_LIMIT = 3

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

SEVERITY_LOW = 1
SEVERITY_MEDIUM = 2
SEVERITY_HIGH = 3

SEVERITY_LABELS = {SEVERITY_LOW: "Low", SEVERITY_MEDIUM: "Medium", SEVERITY_HIGH: "High"}
SEVERITY_EMOJI = {SEVERITY_LOW: "🟢", SEVERITY_MEDIUM: "🟡", SEVERITY_HIGH: "🔴"}
SEVERITY_TAGS = {
    "low": SEVERITY_LOW,
    "medium": SEVERITY_MEDIUM,
    "high": SEVERITY_HIGH,
    "🟢": SEVERITY_LOW,
    "🟡": SEVERITY_MEDIUM,
    "🔴": SEVERITY_HIGH,
}

# Checked from most to least severe; the first level with a whole-word hit wins.
BEHAVIOR_KEYWORDS: tuple[tuple[int, tuple[str, ...]], ...] = (
    (SEVERITY_HIGH, ("aggressive", "aggression", "bite", "bites", "biting", "bit", "snapped")),
    (SEVERITY_MEDIUM, ("anxious", "timid", "nervous", "agitated")),
    (SEVERITY_LOW, ("calm", "friendly", "relaxed")),
)
_KEYWORD_PATTERNS = tuple(
    (level, re.compile(r"\b(?:" + "|".join(words) + r")\b"))
    for level, words in BEHAVIOR_KEYWORDS
)

RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"

BADGE_PRIORITY = (
    "retention_risk",
    "behavior_challenging",
    "loyalty_star",
    "top_spender",
    "birthday",
    "new_client",
    "behavior_good",
)


# ----------------------------------------------------------------------
# Snapshots
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class AppointmentRecord:
    id: int | None
    date: dt.datetime
    service_type: str
    notes: str | None = None
    duration_minutes: int | None = None


@dataclass(frozen=True)
class ChargeRecord:
    id: int | None
    date: dt.datetime
    amount: Decimal
    payment_method: str
    notes: str | None = None


@dataclass(frozen=True)
class BehaviorLogRecord:
    id: int | None
    note: str
    logged_at: dt.datetime
    severity_tag: str | None = None


@dataclass(frozen=True)
class OwnerRecord:
    """An owner together with every record the statistics read."""

    id: int | None
    owner_name: str
    created_at: dt.datetime
    dog_name: str | None = None
    birthdate: dt.date | None = None
    appointments: tuple[AppointmentRecord, ...] = ()
    charges: tuple[ChargeRecord, ...] = ()
    behavior_logs: tuple[BehaviorLogRecord, ...] = ()


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class VisitSummary:
    total_visits: int
    upcoming_count: int
    past_count: int
    charge_count: int
    total_revenue: Decimal
    average_charge: Decimal
    next_appointment: AppointmentRecord | None
    last_appointment: AppointmentRecord | None
    recent_appointments: tuple[AppointmentRecord, ...]


@dataclass(frozen=True)
class LoyaltyStatus:
    tier: str
    remaining: int
    progress: str
    reward_earned: bool


@dataclass(frozen=True)
class BehaviorRisk:
    average_severity: float
    category: str
    is_risk: bool
    scored_logs: int
    recent_badges: tuple[str, ...]


@dataclass(frozen=True)
class OwnerStats:
    owner_id: int | None
    owner_name: str
    computed_at: dt.datetime
    visits: VisitSummary
    loyalty: LoyaltyStatus
    behavior: BehaviorRisk
    retention_risk: bool
    retention_tag: str
    days_since_last_visit: int | None
    badges: tuple[str, ...]
    milestones: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON friendly representation."""

        return _jsonable(asdict(self))


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    return value


def money(value: Decimal | int | float | str | None) -> Decimal:
    """Quantize ``value`` to cents, treating ``None`` as zero."""

    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


# ----------------------------------------------------------------------
# Visits & revenue
# ----------------------------------------------------------------------
def aggregate_visits(
    appointments: Sequence[AppointmentRecord],
    charges: Sequence[ChargeRecord],
    now: dt.datetime,
) -> VisitSummary:
    """Count visits and total the charges for one owner.

    Appointments dated after ``now`` are upcoming, the rest are past. An
    owner without charges has a total and an average of zero.
    """

    upcoming = sorted((appt for appt in appointments if appt.date > now), key=lambda a: a.date)
    past = sorted(
        (appt for appt in appointments if appt.date <= now),
        key=lambda a: a.date,
        reverse=True,
    )
    total = sum((charge.amount for charge in charges), Decimal("0"))
    average = total / len(charges) if charges else Decimal("0")
    return VisitSummary(
        total_visits=len(appointments),
        upcoming_count=len(upcoming),
        past_count=len(past),
        charge_count=len(charges),
        total_revenue=money(total),
        average_charge=money(average),
        next_appointment=upcoming[0] if upcoming else None,
        last_appointment=past[0] if past else None,
        recent_appointments=tuple(past[:RECENT_LIMIT]),
    )


# ----------------------------------------------------------------------
# Loyalty
# ----------------------------------------------------------------------
def loyalty_tier(visit_count: int, threshold: int = REWARD_THRESHOLD) -> str:
    if visit_count <= 0:
        return "New"
    if visit_count >= threshold:
        return "Loyal"
    if visit_count * 2 < threshold:
        return "Returning"
    return "Regular"


def loyalty_progress(visit_count: int, threshold: int = REWARD_THRESHOLD) -> str:
    remaining = max(0, threshold - visit_count)
    if remaining == 0:
        return "Reward earned"
    if remaining == 1:
        return "1 more visit to reward"
    return f"{remaining} more visits to reward"


def classify_loyalty(visit_count: int, threshold: int = REWARD_THRESHOLD) -> LoyaltyStatus:
    """Map a visit count onto a tier and the progress towards the next reward."""

    if threshold < 1:
        raise ValueError("Reward threshold must be at least one visit")
    remaining = max(0, threshold - visit_count)
    return LoyaltyStatus(
        tier=loyalty_tier(visit_count, threshold),
        remaining=remaining,
        progress=loyalty_progress(visit_count, threshold),
        reward_earned=remaining == 0,
    )


# ----------------------------------------------------------------------
# Behaviour
# ----------------------------------------------------------------------
def score_note(note: str) -> int | None:
    """Infer a severity from free text, or ``None`` when no keyword matches."""

    text = note.lower()
    for level, pattern in _KEYWORD_PATTERNS:
        if pattern.search(text):
            return level
    return None


def severity_for_log(log: BehaviorLogRecord) -> int | None:
    if log.severity_tag:
        tag = log.severity_tag.strip().lower()
        if tag in SEVERITY_TAGS:
            return SEVERITY_TAGS[tag]
    return score_note(log.note)


def risk_category(average: float) -> str:
    if average < 1.5:
        return RISK_LOW
    if average < 2.5:
        return RISK_MEDIUM
    return RISK_HIGH


def score_behavior(logs: Iterable[BehaviorLogRecord]) -> BehaviorRisk:
    """Average the severities of ``logs`` and bucket the result.

    Neutral logs carry no score and are left out of the average; an owner
    without any scored log is low risk.
    """

    newest_first = sorted(logs, key=lambda log: log.logged_at, reverse=True)
    scored = [(log, severity_for_log(log)) for log in newest_first]
    scored = [(log, level) for log, level in scored if level is not None]
    if not scored:
        return BehaviorRisk(0.0, RISK_LOW, False, 0, ())
    average = round(sum(level for _, level in scored) / len(scored), 2)
    category = risk_category(average)
    badges = tuple(
        f"{SEVERITY_EMOJI[level]} {SEVERITY_LABELS[level]}" for _, level in scored[:RECENT_LIMIT]
    )
    return BehaviorRisk(
        average_severity=average,
        category=category,
        is_risk=category == RISK_HIGH,
        scored_logs=len(scored),
        recent_badges=badges,
    )


# ----------------------------------------------------------------------
# Retention
# ----------------------------------------------------------------------
def is_retention_risk(
    last_appointment: dt.datetime | None,
    now: dt.datetime,
    threshold_days: int = RETENTION_RISK_DAYS,
) -> bool:
    """Return ``True`` when the last visit is more than ``threshold_days`` ago.

    Owners who have never visited have no baseline and are not flagged.
    """

    if last_appointment is None:
        return False
    return now - last_appointment > dt.timedelta(days=threshold_days)


def retention_tag(
    created_at: dt.datetime,
    last_appointment: dt.datetime | None,
    now: dt.datetime,
    threshold_days: int = RETENTION_RISK_DAYS,
    *,
    booked: bool = False,
) -> str:
    """Bucket an owner by recency. A pending booking always counts as active."""

    if last_appointment is None and now - created_at <= dt.timedelta(days=NEW_CLIENT_DAYS):
        return "new"
    if booked:
        return "active"
    if last_appointment is None:
        return "no_history"
    if is_retention_risk(last_appointment, now, max(INACTIVE_DAYS, threshold_days)):
        return "inactive"
    if is_retention_risk(last_appointment, now, threshold_days):
        return "at_risk"
    return "active"


# ----------------------------------------------------------------------
# Badges & milestones
# ----------------------------------------------------------------------
def owner_badges(
    owner: OwnerRecord,
    visits: VisitSummary,
    loyalty: LoyaltyStatus,
    behavior: BehaviorRisk,
    retention_risk: bool,
    now: dt.datetime,
    top_spender_threshold: Decimal = TOP_SPENDER_THRESHOLD,
) -> tuple[str, ...]:
    earned = {
        "retention_risk": retention_risk,
        "behavior_challenging": behavior.is_risk,
        "loyalty_star": loyalty.reward_earned,
        "top_spender": visits.total_revenue >= top_spender_threshold,
        "birthday": owner.birthdate is not None and owner.birthdate.month == now.month,
        "new_client": now - owner.created_at <= dt.timedelta(days=NEW_CLIENT_DAYS),
        "behavior_good": behavior.scored_logs > 0 and behavior.category == RISK_LOW,
    }
    return tuple(badge for badge in BADGE_PRIORITY if earned[badge])


def owner_milestones(
    visits: VisitSummary,
    retention_risk: bool,
    top_spender_threshold: Decimal = TOP_SPENDER_THRESHOLD,
) -> tuple[str, ...]:
    milestones = []
    if visits.past_count >= 1:
        milestones.append("first_visit")
    if visits.past_count >= FIVE_VISITS:
        milestones.append("five_visits")
    if visits.total_revenue >= top_spender_threshold:
        milestones.append("revenue_threshold")
    if retention_risk:
        milestones.append("retention_risk")
    return tuple(milestones)


def compute_stats(
    owner: OwnerRecord,
    now: dt.datetime | None = None,
    *,
    reward_threshold: int = REWARD_THRESHOLD,
    retention_days: int = RETENTION_RISK_DAYS,
    top_spender_threshold: Decimal = TOP_SPENDER_THRESHOLD,
) -> OwnerStats:
    """Compute the full set of derived statistics for ``owner``."""

    now = now or dt.datetime.now()
    visits = aggregate_visits(owner.appointments, owner.charges, now)
    loyalty = classify_loyalty(visits.total_visits, reward_threshold)
    behavior = score_behavior(owner.behavior_logs)
    last_visit = visits.last_appointment.date if visits.last_appointment else None
    booked = visits.upcoming_count > 0
    at_risk = not booked and is_retention_risk(last_visit, now, retention_days)
    return OwnerStats(
        owner_id=owner.id,
        owner_name=owner.owner_name,
        computed_at=now,
        visits=visits,
        loyalty=loyalty,
        behavior=behavior,
        retention_risk=at_risk,
        retention_tag=retention_tag(owner.created_at, last_visit, now, retention_days, booked=booked),
        days_since_last_visit=(now - last_visit).days if last_visit else None,
        badges=owner_badges(
            owner, visits, loyalty, behavior, at_risk, now, top_spender_threshold
        ),
        milestones=owner_milestones(visits, at_risk, top_spender_threshold),
    )
