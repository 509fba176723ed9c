from typing import Any, Dict, List, Optional

import structlog
from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, now_utc, oid, serialize_doc, store_guard
from errors import NotFound
from schemas import Review

logger = structlog.get_logger(component="reviews")


class ReviewBook:
    """Append-only product reviews, newest first on read"""

    def __init__(self, db: Database):
        self.db = db
        self.reviews = db["reviews"]

    def add(self, product_id: str, reviewer_name: str, description: str, rating: int,
            reviewer_image: Optional[str] = None) -> str:
        with store_guard("find_product"):
            found = self.db["products"].count_documents({"_id": oid(product_id)}, limit=1)
        if not found:
            raise NotFound("Product not found")
        review = Review(
            productId=product_id,
            reviewerName=reviewer_name,
            reviewerImage=reviewer_image,
            description=description,
            rating=rating,
            createdAt=now_utc(),
        )
        review_id = create_document(self.db, "reviews", review)
        logger.info("review_added", product_id=product_id, review_id=review_id)
        return review_id

    def for_product(self, product_id: str) -> List[Dict[str, Any]]:
        oid(product_id)
        with store_guard("list_reviews"):
            cursor = self.reviews.find({"productId": product_id}).sort(
                [("createdAt", DESCENDING), ("_id", DESCENDING)]
            )
            return [serialize_doc(r) for r in cursor]

    def all(self) -> List[Dict[str, Any]]:
        with store_guard("list_reviews"):
            return [serialize_doc(r) for r in self.reviews.find({}).sort("createdAt", DESCENDING)]
