from typing import Any, Dict, List, Optional

import structlog
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import now_utc, serialize_doc, store_guard
from errors import Conflict, Forbidden, NotFound
from schemas import User

logger = structlog.get_logger(component="users")

# roles a subscription update may assign
SUBSCRIPTION_ROLES = {"user", "member"}


class UserDirectory:
    def __init__(self, db: Database):
        self.users = db["users"]

    def create(self, email: str, name: Optional[str] = None, image: Optional[str] = None) -> str:
        user = User(email=email.lower(), name=name, image=image, createdAt=now_utc())
        with store_guard("create_user"):
            try:
                # insert-if-absent in one operation; an existing record is never overwritten
                result = self.users.update_one(
                    {"email": user.email},
                    {"$setOnInsert": user.model_dump()},
                    upsert=True,
                )
            except DuplicateKeyError:
                raise Conflict("User already exists")
        if result.upserted_id is None:
            raise Conflict("User already exists")
        logger.info("user_created", email=user.email)
        return str(result.upserted_id)

    def get(self, email: str) -> Dict[str, Any]:
        with store_guard("get_user"):
            user = self.users.find_one({"email": email.lower()})
        if not user:
            raise NotFound("User not found")
        return serialize_doc(user)

    def all(self) -> List[Dict[str, Any]]:
        with store_guard("list_users"):
            return [serialize_doc(u) for u in self.users.find({}).sort("createdAt", -1)]

    def set_role(self, email: str, role: str) -> Dict[str, Any]:
        with store_guard("set_role"):
            result = self.users.update_one({"email": email.lower()}, {"$set": {"role": role}})
        if result.matched_count == 0:
            raise NotFound("User not found")
        logger.info("user_role_changed", email=email, role=role)
        return {"email": email.lower(), "role": role, "modifiedCount": result.modified_count}

    def set_subscription(self, email: str, is_subscribed: bool, role: Optional[str] = None,
                         coupon: Optional[str] = None) -> Dict[str, Any]:
        updates: Dict[str, Any] = {"isSubscribed": is_subscribed}
        if role is not None:
            if role not in SUBSCRIPTION_ROLES:
                raise Forbidden("Role cannot be granted through a subscription")
            updates["role"] = role
        if coupon is not None:
            updates["coupon"] = coupon
        with store_guard("set_subscription"):
            result = self.users.update_one(
                {"email": email.lower(), "role": {"$ne": "admin"}}, {"$set": updates}
            )
            if result.matched_count == 0:
                # admins keep their role when the subscription flag changes
                updates.pop("role", None)
                result = self.users.update_one({"email": email.lower()}, {"$set": updates})
        if result.matched_count == 0:
            raise NotFound("User not found")
        logger.info("subscription_changed", email=email, is_subscribed=is_subscribed)
        return {"email": email.lower(), **updates, "modifiedCount": result.modified_count}
