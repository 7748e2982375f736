from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import pytest

from apex_achievements.errors import AwardKeyConflict, InvalidAmount, ReservedAwardKey
from apex_achievements.points_ledger import PointsLedger, activity_points, describe, validate_amount
from apex_achievements.records import PointsTransaction
from apex_achievements.store import InMemoryGamificationStore


def _ledger() -> PointsLedger:
    return PointsLedger(InMemoryGamificationStore())


def test_total_is_sum_of_signed_transactions() -> None:
    ledger = _ledger()
    ledger.append("u1", 10, "lesson_complete")
    ledger.append("u1", 50, "badge_rare")
    ledger.append("u1", -15, "adjustment", "Refund for duplicate quiz")
    ledger.append("u2", 7, "forum_post")

    assert ledger.total_for("u1") == 45
    assert ledger.total_for("u2") == 7
    assert ledger.total_for("nobody") == 0


@pytest.mark.parametrize("amount", [0, 0.0, 1.5, math.nan, math.inf, True, "10", None])
def test_invalid_amounts_are_rejected_without_writing(amount: object) -> None:
    ledger = _ledger()
    with pytest.raises(InvalidAmount):
        ledger.append("u1", amount, "lesson_complete")
    assert ledger.history("u1") == []
    assert ledger.total_for("u1") == 0


def test_invalid_amount_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        validate_amount(0)


def test_integral_float_is_accepted() -> None:
    ledger = _ledger()
    ledger.append("u1", 20.0, "quiz_pass")
    assert ledger.total_for("u1") == 20
    assert isinstance(ledger.history("u1")[0].amount, int)


def test_keyed_append_is_idempotent() -> None:
    ledger = _ledger()
    first = ledger.append("u1", 100, "quiz_perfect", award_key="quiz:final-exam")
    second = ledger.append("u1", 100, "quiz_perfect", award_key="quiz:final-exam")

    assert first == second
    assert ledger.total_for("u1") == 100
    assert len(ledger.history("u1")) == 1
    assert ledger.is_credited("u1", "quiz:final-exam")
    assert not ledger.is_credited("u2", "quiz:final-exam")


def test_same_award_key_for_different_users_is_independent() -> None:
    ledger = _ledger()
    ledger.append("u1", 10, "streak_bonus", award_key="streak:2026-10-17")
    ledger.append("u2", 10, "streak_bonus", award_key="streak:2026-10-17")
    assert ledger.total_for("u1") == 10
    assert ledger.total_for("u2") == 10


def test_cached_total_tracks_new_appends() -> None:
    ledger = _ledger()
    ledger.append("u1", 10, "lesson_complete")
    assert ledger.total_for("u1") == 10
    ledger.append("u1", 5, "forum_post")
    assert ledger.total_for("u1") == 15
    assert ledger.replay("u1") == 15


def test_filtered_totals_by_course_and_window() -> None:
    ledger = _ledger()
    base = datetime(2026, 10, 12, 9, 0, tzinfo=timezone.utc)
    ledger.append("u1", 10, "lesson_complete", course_slug="Python-Basics", created_at=base)
    ledger.append("u1", 20, "quiz_pass", course_slug="python-basics", created_at=base + timedelta(days=1))
    ledger.append("u1", 30, "code_pass", course_slug="web-dev", created_at=base + timedelta(days=8))

    assert ledger.total_for("u1", course_slug="python-basics") == 30
    assert ledger.total_for("u1", course_slug="web-dev") == 30
    assert ledger.total_for("u1", since=base + timedelta(hours=1)) == 50
    assert ledger.total_for("u1", until=base + timedelta(days=1)) == 10
    assert ledger.last_activity("u1", course_slug="python-basics") == base + timedelta(days=1)


def test_history_is_newest_first() -> None:
    ledger = _ledger()
    base = datetime(2026, 10, 1, tzinfo=timezone.utc)
    for offset in range(3):
        ledger.append("u1", offset + 1, "lesson_complete", created_at=base + timedelta(hours=offset))

    history = ledger.history("u1", limit=2)
    assert [tx.amount for tx in history] == [3, 2]


def test_descriptions_default_from_source() -> None:
    ledger = _ledger()
    ledger.append("u1", 20, "quiz_pass")
    ledger.append("u1", 4, "mystery")

    descriptions = {tx.source: tx.description for tx in ledger.history("u1")}
    assert descriptions["quiz_pass"] == "Passed a quiz (+20 points)"
    assert descriptions["mystery"] == "Earned 4 points"
    assert describe("badge_legendary", 500) == "Earned a legendary badge (+500 points)"


def test_empty_source_or_user_is_rejected() -> None:
    ledger = _ledger()
    with pytest.raises(ValueError):
        ledger.append("u1", 10, "  ")
    with pytest.raises(ValueError):
        ledger.append("  ", 10, "lesson_complete")


@pytest.mark.parametrize(
    ("activity", "performance", "expected"),
    [
        ("lesson_complete", None, 10),
        ("lesson_complete", 95, 15),
        ("quiz_pass", 89.9, 20),
        ("quiz_pass", 90, 30),
        ("code_submit", 100, 23),
        ("forum_reply", 92, 5),
        ("unknown_activity", None, 5),
    ],
)
def test_activity_points(activity: str, performance: float | None, expected: int) -> None:
    assert activity_points(activity, performance) == expected


def test_grant_credits_activity_points() -> None:
    ledger = _ledger()
    transaction = ledger.grant("u1", "quiz_perfect", performance=100, course_slug="algebra")
    assert transaction.amount == 75
    assert transaction.course_slug == "algebra"
    assert ledger.total_for("u1", course_slug="algebra") == 75


def test_listeners_receive_only_new_transactions() -> None:
    ledger = _ledger()
    seen: list[PointsTransaction] = []
    ledger.add_listener(seen.append)

    ledger.append("u1", 10, "streak_bonus", award_key="streak:2026-10-17")
    ledger.append("u1", 10, "streak_bonus", award_key="streak:2026-10-17")

    assert len(seen) == 1
    assert seen[0].award_key == "streak:2026-10-17"


def test_failing_listener_does_not_fail_the_append() -> None:
    ledger = _ledger()

    def explode(transaction: PointsTransaction) -> None:
        raise RuntimeError("listener down")

    ledger.add_listener(explode)
    ledger.append("u1", 10, "lesson_complete")
    assert ledger.total_for("u1") == 10


def test_badge_keys_are_reserved_for_payouts() -> None:
    ledger = _ledger()
    with pytest.raises(ReservedAwardKey):
        ledger.append("u1", 1, "quiz_pass", award_key="badge:streak_30")
    assert ledger.history("u1") == []
    assert not ledger.is_credited("u1", "badge:streak_30")


def test_keyed_retry_with_different_terms_conflicts() -> None:
    ledger = _ledger()
    ledger.append("u1", 20, "quiz_pass", award_key="quiz:q-17")
    with pytest.raises(AwardKeyConflict):
        ledger.append("u1", 50, "quiz_pass", award_key="quiz:q-17")
    with pytest.raises(AwardKeyConflict):
        ledger.append("u1", 20, "quiz_perfect", award_key="quiz:q-17")
    assert ledger.total_for("u1") == 20


def test_badge_credit_leaves_notification_to_the_caller() -> None:
    ledger = _ledger()
    seen: list[PointsTransaction] = []
    ledger.add_listener(seen.append)

    payout, created = ledger.credit_badge(
        "u1", 10, "badge_common", "Earned badge: First Steps", award_key="badge:first_lesson"
    )
    assert created is True
    assert seen == []
    ledger.notify(payout)
    assert seen == [payout]

    again, created_again = ledger.credit_badge(
        "u1", 10, "badge_common", "Earned badge: First Steps", award_key="badge:first_lesson"
    )
    assert created_again is False
    assert again.transaction_id == payout.transaction_id
    assert ledger.total_for("u1") == 10

    with pytest.raises(ValueError):
        ledger.credit_badge("u1", 10, "badge_common", "Earned badge", award_key="quiz:q-17")
