"""Derived metrics over stored snapshot history.

Everything here is a pure read. Sampling is irregular (three scheduled
readings a day plus manual ones, with gaps when the portal is down), so
every function tolerates sparse or empty input.
"""

import math
from collections import OrderedDict
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from .models import (
    ComparisonEntry,
    DailyConsumption,
    HourlyBucket,
    MonitoredEntity,
    MonthlyStats,
    Snapshot,
    SummaryStats,
)
from .store import SnapshotStore

COMPARISON_WINDOW_DAYS = 7
MONTHLY_WINDOW_DAYS = 30


def _chronological(history: Iterable[Snapshot]) -> List[Snapshot]:
    return sorted(history, key=lambda s: s.timestamp)


def _units(balance_drop: float, tariff: float) -> float:
    """Convert a balance drop into consumed units at the given tariff."""
    if tariff <= 0:
        return 0.0
    return balance_drop / tariff


def daily_consumption(history: Sequence[Snapshot]) -> List[DailyConsumption]:
    """Consumption per calendar day.

    Each date is represented by its first reading. For consecutive recorded
    dates (prev, cur): cost = balance(prev) - balance(cur) and consumption =
    max(0, cost) / tariff(prev). A recharge makes cost negative but never
    consumption. The first date has no predecessor and is left out.
    """
    start_of_day = OrderedDict()
    for snapshot in _chronological(history):
        if snapshot.date not in start_of_day:
            start_of_day[snapshot.date] = snapshot

    days = list(start_of_day.values())
    result = []
    for prev, cur in zip(days, days[1:]):
        cost = prev.balance - cur.balance
        result.append(DailyConsumption(
            date=cur.date,
            consumption=round(_units(max(0.0, cost), prev.tariff), 1),
            cost=round(cost, 2),
        ))
    return result


def hourly_profile(history: Sequence[Snapshot]) -> List[HourlyBucket]:
    """Hour-of-day profile (24 buckets) pooling all days in the window.

    avg_consumption = (first - last) / tariff(first) / count, using the
    chronologically first and last readings in the bucket, and only for
    buckets with at least two readings. Readings from different days are
    pooled as if sequential and no clamp is applied.
    """
    buckets = {hour: [] for hour in range(24)}
    for snapshot in _chronological(history):
        buckets[snapshot.hour].append(snapshot)

    profile = []
    for hour, records in buckets.items():
        bucket = HourlyBucket(hour=hour, count=len(records))
        if records:
            bucket.avg_balance = round(sum(r.balance for r in records) / len(records), 2)
        if len(records) >= 2:
            first, last = records[0], records[-1]
            bucket.avg_consumption = round(
                _units(first.balance - last.balance, first.tariff) / len(records), 3
            )
        profile.append(bucket)
    return profile


def consumption_over(history: Sequence[Snapshot], tariff: float) -> float:
    """Units consumed between the first and last reading of a window (clamped)."""
    if len(history) < 2:
        return 0.0
    ordered = _chronological(history)
    return max(0.0, _units(ordered[0].balance - ordered[-1].balance, tariff))


def comparison(
    entities: Iterable[MonitoredEntity],
    store: SnapshotStore,
    now: Optional[datetime] = None,
) -> List[ComparisonEntry]:
    """Cross-dormitory comparison sorted by current balance, highest first.

    Dormitories without any reading are skipped. ``rank`` is the 1-based
    position in the sorted list.
    """
    entries = []
    for entity in entities:
        latest = store.latest(entity.id)
        if latest is None:
            continue
        week = store.history(entity.id, COMPARISON_WINDOW_DAYS, now=now)
        entries.append(ComparisonEntry(
            entity_id=entity.id,
            name=entity.name,
            building=entity.building,
            room_number=entity.room_number,
            current_balance=latest.balance,
            device_price=latest.tariff,
            consumption_7d=round(consumption_over(week, latest.tariff), 1),
            update_time=latest.device_info.update_time,
            is_online=latest.device_info.is_online,
        ))

    entries.sort(key=lambda e: e.current_balance, reverse=True)
    for position, entry in enumerate(entries, start=1):
        entry.rank = position
    return entries


def rank_of(entries: Sequence[ComparisonEntry], entity_id: str) -> Optional[int]:
    """1-based rank of a dormitory in a comparison result, or None."""
    for position, entry in enumerate(entries, start=1):
        if entry.entity_id == entity_id:
            return position
    return None


def monthly_stats(
    entity_id: str,
    history: Sequence[Snapshot],
    ranking: Sequence[ComparisonEntry] = (),
) -> MonthlyStats:
    """Rolling statistics over a (typically 30-day) history window.

    Recharge days contribute zero cost. The days-remaining estimate divides
    the latest balance by the average daily cost and is None when there is
    no measurable spending yet.
    """
    daily = daily_consumption(history)
    total_consumption = sum(d.consumption for d in daily)
    total_cost = sum(max(0.0, d.cost) for d in daily)
    days = len(daily)

    avg_consumption = total_consumption / days if days else 0.0
    avg_cost = total_cost / days if days else 0.0

    current_balance = _chronological(history)[-1].balance if history else None
    estimated_days = None
    if current_balance is not None and avg_cost > 0:
        estimated_days = math.floor(max(0.0, current_balance) / avg_cost)

    return MonthlyStats(
        entity_id=entity_id,
        days_covered=days,
        total_consumption=round(total_consumption, 1),
        total_cost=round(total_cost, 2),
        avg_daily_consumption=round(avg_consumption, 1),
        avg_daily_cost=round(avg_cost, 2),
        current_balance=current_balance,
        estimated_days=estimated_days,
        ranking=rank_of(ranking, entity_id),
        total_rooms=len(ranking),
    )


def summary_stats(
    entities: Sequence[MonitoredEntity],
    store: SnapshotStore,
    low_balance_threshold: float = 20.0,
) -> SummaryStats:
    """Overview across dormitories.

    The average balance is taken over all registered dormitories, including
    ones that have no reading yet.
    """
    stats = SummaryStats(total_dormitories=len(entities))
    total = 0.0
    for entity in entities:
        latest = store.latest(entity.id)
        if latest is None:
            continue
        if latest.device_info.is_online:
            stats.online_count += 1
        total += latest.balance
        if latest.balance < low_balance_threshold:
            stats.low_balance_count += 1
        if stats.last_update is None or latest.timestamp > stats.last_update:
            stats.last_update = latest.timestamp

    stats.total_balance = round(total, 2)
    stats.avg_balance = round(total / len(entities), 2) if entities else 0.0
    return stats
