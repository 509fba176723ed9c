"""
Engagement ledger: upvotes and reports.

An upvote is one conditional update on the product document. The filter
excludes products whose voters already contain the caller, and the update adds
the voter and increments the counter together, so the counter and the voter
set can never drift apart.
"""

from enum import Enum
from typing import Any, Dict, List

import structlog
from bson import ObjectId
from pymongo.database import Database

from database import now_utc, oid, serialize_doc, store_guard
from schemas import Report

logger = structlog.get_logger(component="engagement")


class UpvoteOutcome(str, Enum):
    APPLIED = "applied"
    NO_CHANGE = "no_change"


class EngagementLedger:
    def __init__(self, db: Database):
        self.products = db["products"]
        self.reports = db["reports"]

    def upvote(self, product_id: str, voter: str) -> UpvoteOutcome:
        _id = oid(product_id)
        with store_guard("upvote"):
            result = self.products.update_one(
                {"_id": _id, "voters": {"$ne": voter}},
                {"$addToSet": {"voters": voter}, "$inc": {"upvotes": 1}},
            )
        if result.modified_count == 1:
            logger.info("product_upvoted", product_id=product_id, voter=voter)
            return UpvoteOutcome.APPLIED
        logger.info("upvote_no_change", product_id=product_id, voter=voter)
        return UpvoteOutcome.NO_CHANGE

    def has_voted(self, product_id: str, voter: str) -> bool:
        with store_guard("has_voted"):
            return self.products.count_documents({"_id": oid(product_id), "voters": voter}, limit=1) > 0

    def report(self, product_id: str, reporter: str) -> str:
        # the product may be deleted later, so only the id shape is checked
        oid(product_id)
        report = Report(productId=product_id, reporterEmail=reporter, reportedAt=now_utc())
        with store_guard("report"):
            result = self.reports.insert_one(report.model_dump())
        logger.info("product_reported", product_id=product_id, reporter=reporter)
        return str(result.inserted_id)

    def list_reports_with_product_summary(self) -> List[Dict[str, Any]]:
        with store_guard("list_reports"):
            reports = list(self.reports.find({}).sort("reportedAt", -1))
            product_ids = [
                ObjectId(r["productId"]) for r in reports if ObjectId.is_valid(r.get("productId", ""))
            ]
            names = {
                str(p["_id"]): p.get("name")
                for p in self.products.find({"_id": {"$in": product_ids}}, {"name": 1})
            }

        out = []
        for r in reports:
            item = serialize_doc(r)
            name = names.get(r.get("productId"))
            item["productName"] = name
            item["productExists"] = name is not None
            out.append(item)
        return out
