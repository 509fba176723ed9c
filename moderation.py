"""
Product submission and the moderation state machine.

Pending -> Approved | Rejected. `isFeatured` is derived from the status on
every transition and is never written on its own.
"""

import re
from typing import Any, Dict, List, Optional

import structlog
from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, now_utc, oid, serialize_doc, store_guard
from errors import Conflict, Forbidden, NotFound, ValidationError
from schemas import APPROVED, PENDING, REJECTED, Product

logger = structlog.get_logger(component="moderation")

TRANSITIONS = {
    PENDING: {APPROVED, REJECTED},
    APPROVED: set(),
    REJECTED: set(),
}

# fields an owner edit may never touch
PROTECTED_FIELDS = {"_id", "id", "status", "isFeatured", "upvotes", "voters", "ownerEmail", "timestamp"}


class ProductCatalog:
    def __init__(self, db: Database, featured_limit: int = 6):
        self.db = db
        self.products = db["products"]
        self.featured_limit = featured_limit

    def submit(self, owner_email: str, fields: Dict[str, Any]) -> str:
        data = {k: v for k, v in fields.items() if k not in PROTECTED_FIELDS}
        product = Product(
            **data,
            ownerEmail=owner_email,
            status=PENDING,
            isFeatured=False,
            upvotes=0,
            voters=[],
            timestamp=now_utc(),
        )
        product_id = create_document(self.db, "products", product)
        logger.info("product_submitted", product_id=product_id, owner=owner_email)
        return product_id

    def get(self, product_id: str) -> Dict[str, Any]:
        with store_guard("get_product"):
            doc = self.products.find_one({"_id": oid(product_id)})
        if not doc:
            raise NotFound("Product not found")
        return doc

    def exists(self, product_id: str) -> bool:
        with store_guard("product_exists"):
            return self.products.count_documents({"_id": oid(product_id)}, limit=1) > 0

    def list(
        self,
        page: int = 0,
        limit: int = 6,
        search: Optional[str] = None,
        owner_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if owner_email:
            query["ownerEmail"] = owner_email
        else:
            query["status"] = APPROVED
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"tags": {"$regex": pattern, "$options": "i"}},
            ]
        with store_guard("list_products"):
            total = self.products.count_documents(query)
            cursor = (
                self.products.find(query)
                .sort("timestamp", DESCENDING)
                .skip(page * limit)
                .limit(limit)
            )
            products = [serialize_doc(p) for p in cursor]
        return {"products": products, "total": total, "page": page, "limit": limit}

    def featured(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with store_guard("featured_products"):
            cursor = (
                self.products.find({"isFeatured": True})
                .sort("timestamp", DESCENDING)
                .limit(limit or self.featured_limit)
            )
            return [serialize_doc(p) for p in cursor]

    def trending(self, limit: int = 6) -> List[Dict[str, Any]]:
        with store_guard("trending_products"):
            cursor = (
                self.products.find({"status": APPROVED})
                .sort([("upvotes", DESCENDING), ("timestamp", DESCENDING)])
                .limit(limit)
            )
            return [serialize_doc(p) for p in cursor]

    def review_queue(self) -> List[Dict[str, Any]]:
        with store_guard("review_queue"):
            cursor = self.products.find({"status": PENDING}).sort("timestamp", DESCENDING)
            return [serialize_doc(p) for p in cursor]

    def update(self, product_id: str, editor: str, editor_is_admin: bool, fields: Dict[str, Any]) -> Dict[str, Any]:
        doc = self.get(product_id)
        if doc.get("ownerEmail") != editor and not editor_is_admin:
            raise Forbidden("Only the owner can edit this product")
        updates = {k: v for k, v in fields.items() if k not in PROTECTED_FIELDS}
        if not updates:
            raise ValidationError("No updates provided")
        with store_guard("update_product"):
            result = self.products.update_one({"_id": doc["_id"]}, {"$set": updates})
        if result.matched_count == 0:
            raise NotFound("Product not found")
        logger.info("product_updated", product_id=product_id, fields=sorted(updates))
        return {"updated": True, "modifiedCount": result.modified_count}

    def set_status(self, product_id: str, new_status: str) -> Dict[str, Any]:
        if new_status not in TRANSITIONS:
            raise ValidationError(f"Unknown status: {new_status}")
        _id = oid(product_id)
        allowed_from = [s for s, targets in TRANSITIONS.items() if new_status in targets]
        with store_guard("set_status"):
            result = self.products.update_one(
                {"_id": _id, "status": {"$in": allowed_from}},
                {"$set": {"status": new_status, "isFeatured": new_status == APPROVED}},
            )
        if result.matched_count == 0:
            current = self.get(product_id)
            if current.get("status") == new_status:
                return {"status": new_status, "isFeatured": bool(current.get("isFeatured")), "changed": False}
            raise Conflict(
                f"Cannot move product from {current.get('status')} to {new_status}"
            )
        logger.info("product_status_changed", product_id=product_id, status=new_status)
        return {"status": new_status, "isFeatured": new_status == APPROVED, "changed": True}

    def delete(self, product_id: str, requester: str, requester_is_admin: bool) -> None:
        doc = self.get(product_id)
        if doc.get("ownerEmail") != requester and not requester_is_admin:
            raise Forbidden("Only the owner or an admin can delete this product")
        with store_guard("delete_product"):
            result = self.products.delete_one({"_id": doc["_id"]})
        if result.deleted_count == 0:
            raise NotFound("Product not found")
        logger.info("product_deleted", product_id=product_id, by=requester)
