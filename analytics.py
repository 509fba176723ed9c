from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from pymongo.database import Database

from database import store_guard
from errors import ValidationError
from schemas import APPROVED, PENDING

logger = structlog.get_logger(component="analytics")

RANGES = {"week": 7, "month": 30, "year": 365}

# metric -> (collection, date field, summed field or None to count)
METRICS = {
    "revenue": ("payments", "date", "amount"),
    "products": ("products", "timestamp", None),
    "users": ("users", "createdAt", None),
}


class AnalyticsAggregator:
    def __init__(self, db: Database):
        self.db = db

    def statistics(self) -> Dict[str, Any]:
        with store_guard("statistics"):
            products = self.db["products"]
            revenue = list(
                self.db["payments"].aggregate(
                    [{"$group": {"_id": None, "total": {"$sum": "$amount"}}}]
                )
            )
            return {
                "totalProducts": products.count_documents({}),
                "approvedProducts": products.count_documents({"status": APPROVED}),
                "pendingProducts": products.count_documents({"status": PENDING}),
                "totalUsers": self.db["users"].count_documents({}),
                "totalReviews": self.db["reviews"].count_documents({}),
                "totalReports": self.db["reports"].count_documents({}),
                "totalRevenue": revenue[0]["total"] if revenue else 0,
            }

    def analytics(self, metric: str, range_: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Per-day series over a trailing window; days without records are absent"""
        if metric not in METRICS:
            raise ValidationError(f"Unknown metric: {metric}")
        if range_ not in RANGES:
            raise ValidationError(f"Unknown range: {range_}")

        collection, date_field, sum_field = METRICS[metric]
        now = now or datetime.now(timezone.utc)
        # stored instants come back naive UTC
        since = (now.astimezone(timezone.utc) - timedelta(days=RANGES[range_])).replace(tzinfo=None)

        pipeline = [
            {"$match": {date_field: {"$gte": since}}},
            {
                "$group": {
                    "_id": {
                        "year": {"$year": f"${date_field}"},
                        "month": {"$month": f"${date_field}"},
                        "day": {"$dayOfMonth": f"${date_field}"},
                    },
                    "value": {"$sum": f"${sum_field}" if sum_field else 1},
                }
            },
        ]
        with store_guard(f"analytics:{metric}"):
            rows = list(self.db[collection].aggregate(pipeline))

        buckets = sorted(
            (date(r["_id"]["year"], r["_id"]["month"], r["_id"]["day"]), r["value"]) for r in rows
        )
        return [{"date": day.isoformat(), "value": value} for day, value in buckets]
