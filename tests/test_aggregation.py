"""Tests for derived metrics over snapshot history."""

from datetime import datetime, timedelta

import pytest

from dorm_collector import aggregation
from dorm_collector.aggregation import (
    comparison,
    consumption_over,
    daily_consumption,
    hourly_profile,
    monthly_stats,
    summary_stats,
)
from conftest import TZ


def at(day: int, hour: int = 18, minute: int = 0) -> datetime:
    return datetime(2026, 1, day, hour, minute, tzinfo=TZ)


class TestDailyConsumption:

    def test_normal_spending(self, make_snapshot):
        history = [
            make_snapshot(at(1), balance=100.0, price=0.5),
            make_snapshot(at(2), balance=95.0, price=0.5),
            make_snapshot(at(3), balance=92.0, price=0.5),
        ]
        daily = daily_consumption(history)

        assert [d.date for d in daily] == ["2026-01-02", "2026-01-03"]
        assert [d.consumption for d in daily] == [10.0, 6.0]
        assert [d.cost for d in daily] == [5.0, 3.0]

    def test_recharge_is_zero_consumption(self, make_snapshot):
        history = [
            make_snapshot(at(1), balance=100.0, price=0.5),
            make_snapshot(at(2), balance=130.0, price=0.5),
        ]
        [day] = daily_consumption(history)

        assert day.consumption == 0
        assert day.cost == -30.0

    def test_first_reading_of_each_day_is_used(self, make_snapshot):
        history = [
            make_snapshot(at(1, 6), balance=100.0, price=0.5),
            make_snapshot(at(1, 18), balance=90.0, price=0.5),
            make_snapshot(at(2, 6), balance=88.0, price=0.5),
            make_snapshot(at(2, 18), balance=80.0, price=0.5),
        ]
        [day] = daily_consumption(history)

        assert day.cost == 12.0
        assert day.consumption == 24.0

    def test_consumption_rounded_to_tenths(self, make_snapshot):
        history = [
            make_snapshot(at(1), balance=50.0, price=0.5441),
            make_snapshot(at(2), balance=48.0, price=0.5441),
        ]
        [day] = daily_consumption(history)

        # 2.00 / 0.5441 = 3.6758...
        assert day.consumption == 3.7
        assert day.cost == 2.0

    def test_uses_previous_day_tariff(self, make_snapshot):
        history = [
            make_snapshot(at(1), balance=100.0, price=0.5),
            make_snapshot(at(2), balance=90.0, price=1.0),
        ]
        [day] = daily_consumption(history)
        assert day.consumption == 20.0

    def test_zero_tariff_yields_zero(self, make_snapshot):
        history = [
            make_snapshot(at(1), balance=100.0, price=0.0),
            make_snapshot(at(2), balance=90.0, price=0.0),
        ]
        [day] = daily_consumption(history)
        assert day.consumption == 0.0

    def test_sparse_input(self, make_snapshot):
        assert daily_consumption([]) == []
        assert daily_consumption([make_snapshot(at(1))]) == []

    def test_unsorted_input(self, make_snapshot):
        history = [
            make_snapshot(at(2), balance=95.0, price=0.5),
            make_snapshot(at(1), balance=100.0, price=0.5),
        ]
        [day] = daily_consumption(history)
        assert day.date == "2026-01-02"
        assert day.consumption == 10.0


class TestHourlyProfile:

    def test_always_24_buckets(self):
        profile = hourly_profile([])
        assert [b.hour for b in profile] == list(range(24))
        assert all(b.count == 0 and b.avg_consumption == 0 for b in profile)

    def test_single_reading_bucket_has_zero_consumption(self, make_snapshot):
        profile = hourly_profile([make_snapshot(at(1, 6), balance=80.0)])

        assert profile[6].count == 1
        assert profile[6].avg_balance == 80.0
        assert profile[6].avg_consumption == 0

    def test_bucket_pools_days(self, make_snapshot):
        history = [
            make_snapshot(at(1, 6), balance=100.0, price=0.5),
            make_snapshot(at(2, 6), balance=96.0, price=0.5),
            make_snapshot(at(3, 6), balance=94.0, price=0.5),
            make_snapshot(at(3, 12), balance=93.0, price=0.5),
        ]
        profile = hourly_profile(history)

        assert profile[6].count == 3
        assert profile[6].avg_balance == pytest.approx(96.67)
        # (100 - 94) / 0.5 / 3
        assert profile[6].avg_consumption == 4.0
        assert profile[12].count == 1

    def test_recharge_within_bucket_is_not_clamped(self, make_snapshot):
        history = [
            make_snapshot(at(1, 6), balance=10.0, price=0.5),
            make_snapshot(at(2, 6), balance=60.0, price=0.5),
        ]
        profile = hourly_profile(history)
        assert profile[6].avg_consumption == -50.0


class TestComparison:

    def test_sorted_by_balance_with_rank(self, store, make_entity, make_snapshot):
        now = at(10)
        entities = [make_entity("A-1"), make_entity("B-2"), make_entity("C-3")]
        for entity, balance in zip(entities, (80.0, 20.0, 50.0)):
            store.append(make_snapshot(now, balance=balance, entity_id=entity.id))

        entries = comparison(entities, store, now=now)

        assert [e.current_balance for e in entries] == [80.0, 50.0, 20.0]
        assert [e.rank for e in entries] == [1, 2, 3]
        assert entries[1].entity_id == "C-3"
        assert aggregation.rank_of(entries, "C-3") == 2

    def test_seven_day_consumption(self, store, make_entity, make_snapshot):
        entity = make_entity("A-1")
        now = at(10)
        store.append(make_snapshot(now - timedelta(days=9), balance=200.0, entity_id="A-1"))
        store.append(make_snapshot(now - timedelta(days=6), balance=100.0, entity_id="A-1"))
        store.append(make_snapshot(now, balance=90.0, price=0.5, entity_id="A-1"))

        [entry] = comparison([entity], store, now=now)
        assert entry.consumption_7d == 20.0

    def test_recharge_week_is_clamped(self, store, make_entity, make_snapshot):
        entity = make_entity("A-1")
        now = at(10)
        store.append(make_snapshot(now - timedelta(days=3), balance=10.0, entity_id="A-1"))
        store.append(make_snapshot(now, balance=110.0, entity_id="A-1"))

        [entry] = comparison([entity], store, now=now)
        assert entry.consumption_7d == 0.0

    def test_entities_without_readings_are_skipped(self, store, make_entity, make_snapshot):
        now = at(10)
        store.append(make_snapshot(now, entity_id="A-1"))

        entries = comparison([make_entity("A-1"), make_entity("B-2")], store, now=now)
        assert [e.entity_id for e in entries] == ["A-1"]

    def test_rank_of_unknown(self):
        assert aggregation.rank_of([], "A-1") is None


class TestConsumptionOver:

    def test_needs_two_readings(self, make_snapshot):
        assert consumption_over([make_snapshot(at(1))], 0.5) == 0.0


class TestMonthlyStats:

    def test_totals_and_estimate(self, make_snapshot):
        history = [
            make_snapshot(at(1), balance=100.0, price=0.5),
            make_snapshot(at(2), balance=96.0, price=0.5),
            make_snapshot(at(3), balance=120.0, price=0.5),
            make_snapshot(at(4), balance=118.0, price=0.5),
        ]
        stats = monthly_stats("13-513", history)

        assert stats.days_covered == 3
        assert stats.total_consumption == 12.0
        assert stats.total_cost == 6.0
        assert stats.avg_daily_cost == 2.0
        assert stats.current_balance == 118.0
        assert stats.estimated_days == 59
        assert stats.ranking is None
        assert stats.total_rooms == 0

    def test_no_spending_has_no_estimate(self, make_snapshot):
        stats = monthly_stats("13-513", [make_snapshot(at(1), balance=40.0)])

        assert stats.days_covered == 0
        assert stats.current_balance == 40.0
        assert stats.estimated_days is None

    def test_empty_history(self):
        stats = monthly_stats("13-513", [])
        assert stats.current_balance is None
        assert stats.total_cost == 0.0


class TestSummaryStats:

    def test_overview(self, store, make_entity, make_snapshot):
        now = at(10)
        entities = [make_entity("A-1"), make_entity("B-2"), make_entity("C-3")]
        store.append(make_snapshot(now, balance=80.0, entity_id="A-1"))
        store.append(make_snapshot(now + timedelta(hours=1), balance=10.0, entity_id="B-2", online=False))

        stats = summary_stats(entities, store, low_balance_threshold=20.0)

        assert stats.total_dormitories == 3
        assert stats.online_count == 1
        assert stats.total_balance == 90.0
        assert stats.avg_balance == 30.0
        assert stats.low_balance_count == 1
        assert stats.last_update == now + timedelta(hours=1)

    def test_no_entities(self, store):
        stats = summary_stats([], store)
        assert stats.total_dormitories == 0
        assert stats.avg_balance == 0.0
        assert stats.last_update is None
