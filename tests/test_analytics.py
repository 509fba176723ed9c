from datetime import datetime, timedelta, timezone

import pytest

from analytics import AnalyticsAggregator
from errors import ValidationError

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def aggregator(db):
    return AnalyticsAggregator(db)


def _payment(db, amount, days_ago, hour=0):
    db["payments"].insert_one(
        {
            "userEmail": "a@x.com",
            "amount": amount,
            "transactionId": f"pi_{amount}_{days_ago}_{hour}",
            "date": NOW - timedelta(days=days_ago, hours=hour),
        }
    )


def test_revenue_week_excludes_older_payments(db, aggregator):
    _payment(db, 30, days_ago=3)
    _payment(db, 70, days_ago=10)

    series = aggregator.analytics("revenue", "week", now=NOW)

    assert series == [{"date": "2026-10-16", "value": 30}]


def test_revenue_sums_within_a_day_and_orders_by_day(db, aggregator):
    _payment(db, 10, days_ago=2)
    _payment(db, 15, days_ago=2, hour=1)
    _payment(db, 5, days_ago=20)

    series = aggregator.analytics("revenue", "month", now=NOW)

    assert series == [
        {"date": "2026-09-29", "value": 5},
        {"date": "2026-10-17", "value": 25},
    ]


def test_counts_products_per_day_without_zero_fill(db, aggregator):
    for days_ago in (1, 1, 5):
        db["products"].insert_one({"name": "p", "status": "Pending", "timestamp": NOW - timedelta(days=days_ago)})

    series = aggregator.analytics("products", "week", now=NOW)

    assert series == [
        {"date": "2026-10-14", "value": 1},
        {"date": "2026-10-18", "value": 2},
    ]


def test_users_metric_uses_creation_instant(db, aggregator):
    db["users"].insert_one({"email": "a@x.com", "createdAt": NOW - timedelta(days=100)})
    db["users"].insert_one({"email": "b@x.com", "createdAt": NOW - timedelta(days=400)})

    assert aggregator.analytics("users", "month", now=NOW) == []
    assert aggregator.analytics("users", "year", now=NOW) == [{"date": "2026-07-11", "value": 1}]


def test_unknown_metric_or_range(aggregator):
    with pytest.raises(ValidationError):
        aggregator.analytics("clicks", "week")
    with pytest.raises(ValidationError):
        aggregator.analytics("revenue", "decade")


def test_statistics(db, aggregator):
    db["products"].insert_many(
        [
            {"name": "a", "status": "Approved"},
            {"name": "b", "status": "Pending"},
            {"name": "c", "status": "Rejected"},
        ]
    )
    db["users"].insert_one({"email": "a@x.com"})
    db["reviews"].insert_one({"productId": "x", "rating": 5})
    db["reports"].insert_many([{"productId": "x"}, {"productId": "y"}])
    db["payments"].insert_many([{"amount": 10.5}, {"amount": 4.5}])

    assert aggregator.statistics() == {
        "totalProducts": 3,
        "approvedProducts": 1,
        "pendingProducts": 1,
        "totalUsers": 1,
        "totalReviews": 1,
        "totalReports": 2,
        "totalRevenue": 15.0,
    }


def test_statistics_on_empty_store(aggregator):
    assert aggregator.statistics()["totalRevenue"] == 0
