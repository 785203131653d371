import datetime as dt
import unittest
from decimal import Decimal

from furfolio.grooming.stats import (
    AppointmentRecord,
    BehaviorLogRecord,
    ChargeRecord,
    OwnerRecord,
    aggregate_visits,
    classify_loyalty,
    compute_stats,
    is_retention_risk,
    retention_tag,
    score_behavior,
    score_note,
)

NOW = dt.datetime(2025, 6, 15, 12, 0)


def appointment(days_ago: float, service_type: str = "Full Package") -> AppointmentRecord:
    return AppointmentRecord(id=None, date=NOW - dt.timedelta(days=days_ago), service_type=service_type)


def charge(amount: str, days_ago: int = 1) -> ChargeRecord:
    return ChargeRecord(
        id=None,
        date=NOW - dt.timedelta(days=days_ago),
        amount=Decimal(amount),
        payment_method="card",
    )


def behavior(note: str, days_ago: int = 1, tag: str | None = None) -> BehaviorLogRecord:
    return BehaviorLogRecord(
        id=None, note=note, logged_at=NOW - dt.timedelta(days=days_ago), severity_tag=tag
    )


class StatsAggregatorTestCase(unittest.TestCase):
    def test_revenue_totals_and_average(self) -> None:
        summary = aggregate_visits([], [charge("40"), charge("60"), charge("80")], NOW)
        self.assertEqual(summary.total_revenue, Decimal("180.00"))
        self.assertEqual(summary.average_charge, Decimal("60.00"))
        self.assertEqual(summary.charge_count, 3)

    def test_no_charges_yields_zero_average(self) -> None:
        summary = aggregate_visits([appointment(3)], [], NOW)
        self.assertEqual(summary.total_revenue, Decimal("0.00"))
        self.assertEqual(summary.average_charge, Decimal("0.00"))

    def test_average_rounds_half_up_to_cents(self) -> None:
        summary = aggregate_visits([], [charge("10"), charge("10"), charge("10.01")], NOW)
        self.assertEqual(summary.average_charge, Decimal("10.00"))
        summary = aggregate_visits([], [charge("0.01"), charge("0.02")], NOW)
        self.assertEqual(summary.average_charge, Decimal("0.02"))

    def test_partitions_upcoming_and_past(self) -> None:
        appointments = [appointment(10), appointment(2), appointment(-3), appointment(-1), appointment(0)]
        summary = aggregate_visits(appointments, [], NOW)
        self.assertEqual(summary.total_visits, 5)
        self.assertEqual(summary.upcoming_count, 2)
        # An appointment at exactly "now" counts as past.
        self.assertEqual(summary.past_count, 3)
        self.assertEqual(summary.next_appointment.date, NOW + dt.timedelta(days=1))
        self.assertEqual(summary.last_appointment.date, NOW)
        self.assertEqual(
            [appt.date for appt in summary.recent_appointments],
            [NOW, NOW - dt.timedelta(days=2), NOW - dt.timedelta(days=10)],
        )


class LoyaltyClassifierTestCase(unittest.TestCase):
    def test_progress_below_threshold(self) -> None:
        status = classify_loyalty(7, 10)
        self.assertEqual(status.remaining, 3)
        self.assertEqual(status.progress, "3 more visits to reward")
        self.assertFalse(status.reward_earned)

    def test_remaining_is_never_negative(self) -> None:
        for visits in range(0, 25):
            status = classify_loyalty(visits, 10)
            self.assertEqual(status.remaining, max(0, 10 - visits))
            self.assertGreaterEqual(status.remaining, 0)

    def test_reward_earned_at_and_above_threshold(self) -> None:
        for visits in (10, 11, 40):
            status = classify_loyalty(visits, 10)
            self.assertEqual(status.remaining, 0)
            self.assertEqual(status.progress, "Reward earned")
            self.assertTrue(status.reward_earned)
            self.assertEqual(status.tier, "Loyal")

    def test_single_visit_remaining_is_singular(self) -> None:
        self.assertEqual(classify_loyalty(9, 10).progress, "1 more visit to reward")

    def test_tiers(self) -> None:
        self.assertEqual(classify_loyalty(0).tier, "New")
        self.assertEqual(classify_loyalty(1).tier, "Returning")
        self.assertEqual(classify_loyalty(4).tier, "Returning")
        self.assertEqual(classify_loyalty(5).tier, "Regular")
        self.assertEqual(classify_loyalty(9).tier, "Regular")

    def test_threshold_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            classify_loyalty(3, 0)


class BehaviorRiskScorerTestCase(unittest.TestCase):
    def test_keyword_levels(self) -> None:
        self.assertEqual(score_note("Tried to BITE the groomer"), 3)
        self.assertEqual(score_note("Very aggressive with the dryer"), 3)
        self.assertEqual(score_note("A little anxious at first"), 2)
        self.assertEqual(score_note("Timid around clippers"), 2)
        self.assertEqual(score_note("Calm and friendly"), 1)
        self.assertIsNone(score_note("Had a bath"))

    def test_highest_keyword_wins(self) -> None:
        self.assertEqual(score_note("Calm at first, then snapped and bit"), 3)

    def test_whole_words_only(self) -> None:
        self.assertIsNone(score_note("Good habit of sitting still"))
        self.assertIsNone(score_note("Enjoyed a biscuit"))

    def test_explicit_tag_overrides_keywords(self) -> None:
        risk = score_behavior([behavior("Bit the leash playfully", tag="low")])
        self.assertEqual(risk.average_severity, 1.0)
        self.assertEqual(risk.category, "low")
        risk = score_behavior([behavior("Seemed fine", tag="🔴")])
        self.assertEqual(risk.category, "high")
        self.assertTrue(risk.is_risk)

    def test_average_and_buckets(self) -> None:
        risk = score_behavior(
            [behavior("aggressive", 1), behavior("calm", 2), behavior("anxious", 3), behavior("Had a bath", 4)]
        )
        self.assertEqual(risk.scored_logs, 3)
        self.assertEqual(risk.average_severity, 2.0)
        self.assertEqual(risk.category, "medium")
        self.assertFalse(risk.is_risk)
        self.assertEqual(risk.recent_badges, ("🔴 High", "🟢 Low", "🟡 Medium"))

    def test_no_scored_logs_is_low_risk(self) -> None:
        risk = score_behavior([behavior("Had a bath")])
        self.assertEqual(risk.average_severity, 0.0)
        self.assertEqual(risk.category, "low")
        self.assertFalse(risk.is_risk)
        self.assertEqual(risk.recent_badges, ())


class RetentionFlaggerTestCase(unittest.TestCase):
    def test_no_appointments_is_not_at_risk(self) -> None:
        self.assertFalse(is_retention_risk(None, NOW, 90))

    def test_threshold_boundary(self) -> None:
        self.assertFalse(is_retention_risk(NOW - dt.timedelta(days=90), NOW, 90))
        self.assertTrue(is_retention_risk(NOW - dt.timedelta(days=91), NOW, 90))

    def test_retention_tags(self) -> None:
        created = NOW - dt.timedelta(days=400)
        self.assertEqual(retention_tag(NOW - dt.timedelta(days=3), None, NOW), "new")
        self.assertEqual(retention_tag(created, None, NOW), "no_history")
        self.assertEqual(retention_tag(created, NOW - dt.timedelta(days=10), NOW), "active")
        self.assertEqual(retention_tag(created, NOW - dt.timedelta(days=120), NOW), "at_risk")
        self.assertEqual(retention_tag(created, NOW - dt.timedelta(days=200), NOW), "inactive")
        self.assertEqual(retention_tag(created, NOW - dt.timedelta(days=200), NOW, booked=True), "active")
        self.assertEqual(retention_tag(created, None, NOW, booked=True), "active")


class ComputeStatsTestCase(unittest.TestCase):
    def test_owner_without_records(self) -> None:
        owner = OwnerRecord(id=1, owner_name="Jordan River", created_at=NOW - dt.timedelta(days=60))
        stats = compute_stats(owner, NOW)
        self.assertEqual(stats.visits.total_revenue, Decimal("0.00"))
        self.assertEqual(stats.visits.average_charge, Decimal("0.00"))
        self.assertFalse(stats.retention_risk)
        self.assertIsNone(stats.days_since_last_visit)
        self.assertEqual(stats.loyalty.tier, "New")
        self.assertEqual(stats.loyalty.progress, "10 more visits to reward")
        self.assertEqual(stats.badges, ())
        self.assertEqual(stats.milestones, ())

    def test_loyal_lapsed_owner(self) -> None:
        appointments = tuple(appointment(100 + idx * 7) for idx in range(10))
        owner = OwnerRecord(
            id=7,
            owner_name="Casey Brooks",
            created_at=NOW - dt.timedelta(days=500),
            birthdate=dt.date(2019, NOW.month, 2),
            appointments=appointments,
            charges=tuple(charge("120") for _ in range(10)),
            behavior_logs=(behavior("Growled and tried to bite"),),
        )
        stats = compute_stats(owner, NOW)
        self.assertTrue(stats.retention_risk)
        self.assertEqual(stats.retention_tag, "at_risk")
        self.assertEqual(stats.days_since_last_visit, 100)
        self.assertTrue(stats.loyalty.reward_earned)
        self.assertEqual(
            stats.badges,
            ("retention_risk", "behavior_challenging", "loyalty_star", "top_spender", "birthday"),
        )
        self.assertEqual(
            stats.milestones, ("first_visit", "five_visits", "revenue_threshold", "retention_risk")
        )

    def test_upcoming_booking_clears_retention_risk(self) -> None:
        owner = OwnerRecord(
            id=5,
            owner_name="Robin Shaw",
            created_at=NOW - dt.timedelta(days=300),
            appointments=(appointment(100), appointment(-3)),
        )
        stats = compute_stats(owner, NOW)
        self.assertFalse(stats.retention_risk)
        self.assertEqual(stats.retention_tag, "active")
        self.assertEqual(stats.days_since_last_visit, 100)
        self.assertNotIn("retention_risk", stats.badges)
        self.assertNotIn("retention_risk", stats.milestones)

    def test_configurable_thresholds(self) -> None:
        owner = OwnerRecord(
            id=3,
            owner_name="Sam Lee",
            created_at=NOW - dt.timedelta(days=5),
            appointments=(appointment(40), appointment(45)),
            charges=(charge("55.50"),),
        )
        stats = compute_stats(owner, NOW, reward_threshold=2, retention_days=30)
        self.assertTrue(stats.loyalty.reward_earned)
        self.assertTrue(stats.retention_risk)
        self.assertIn("new_client", stats.badges)
        self.assertNotIn("top_spender", stats.badges)

    def test_to_dict_is_json_friendly(self) -> None:
        owner = OwnerRecord(
            id=2,
            owner_name="Alex Kim",
            created_at=NOW - dt.timedelta(days=30),
            appointments=(appointment(3),),
            charges=(charge("40"), charge("60"), charge("80")),
        )
        payload = compute_stats(owner, NOW).to_dict()
        self.assertEqual(payload["visits"]["total_revenue"], "180.00")
        self.assertEqual(payload["visits"]["average_charge"], "60.00")
        self.assertEqual(payload["visits"]["last_appointment"]["date"], (NOW - dt.timedelta(days=3)).isoformat())
        self.assertEqual(payload["loyalty"]["progress"], "9 more visits to reward")
        self.assertEqual(payload["computed_at"], NOW.isoformat())


if __name__ == "__main__":
    unittest.main()
