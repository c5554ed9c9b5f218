import logging
import re
import secrets
import string
import time
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from lifecycle import (
    LINK_COMPLETED,
    LINK_EXPIRED,
    LINK_FAILED,
    LINK_PENDING,
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_PENDING,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    stock_flags,
)

logger = logging.getLogger(__name__)

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number(now: Optional[datetime] = None) -> str:
    timestamp = int((now.timestamp() if now else time.time()) * 1000)
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"ORD-{timestamp}-{suffix}"


def normalize_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def ensure_indexes(db):
    try:
        db.payment_links.create_index("reference", unique=True)
        db.payment_links.create_index([("status", ASCENDING), ("created_at", DESCENDING)])
        db.payment_links.create_index("expires_at")
        db.orders.create_index("order_number", unique=True)
        db.orders.create_index(
            "payment_reference",
            unique=True,
            partialFilterExpression={"payment_reference": {"$type": "string"}},
        )
        db.orders.create_index([("status", ASCENDING), ("created_at", DESCENDING)])
        db.orders.create_index("customer_email")
    except Exception as exc:
        logger.warning("Unable to ensure store indexes: %s", exc)


class ProductCatalog:
    def __init__(self, collection):
        self.collection = collection

    def find_by_id(self, product_id) -> Optional[Dict]:
        object_id = normalize_object_id(product_id)
        if object_id is None:
            return None
        return self.collection.find_one({"_id": object_id})

    def adjust_stock(self, product_id, delta: int) -> Optional[Dict]:
        """Move stock by delta and refresh in_stock/badge from the new count.

        The increment is atomic. The flag write is conditional on the quantity
        we observed so a racing adjustment is never clobbered with stale flags;
        the racer writes its own flags.
        """
        object_id = normalize_object_id(product_id)
        if object_id is None:
            return None

        product = self.collection.find_one_and_update(
            {"_id": object_id},
            {"$inc": {"quantity": int(delta)}, "$set": {"updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not product:
            return None

        observed = int(product.get("quantity") or 0)
        quantity = max(0, observed)
        if observed < 0:
            logger.warning(
                "Stock for product %s went negative (%s); clamping to 0", object_id, observed
            )
        in_stock, badge = stock_flags(quantity, product.get("badge"))
        changes = {"quantity": quantity, "in_stock": in_stock}
        update: Dict[str, Dict] = {"$set": changes}
        if badge:
            changes["badge"] = badge
        elif product.get("badge"):
            update["$unset"] = {"badge": ""}

        self.collection.update_one({"_id": object_id, "quantity": observed}, update)
        product.update(changes)
        if not badge:
            product.pop("badge", None)
        return product

    def list(self, include_inactive: bool = False) -> List[Dict]:
        query = {} if include_inactive else {"active": {"$ne": False}}
        return list(self.collection.find(query).sort([("created_at", -1), ("_id", -1)]))

    def create(self, document: Dict) -> Dict:
        now = datetime.utcnow()
        document.setdefault("created_at", now)
        document["updated_at"] = now
        result = self.collection.insert_one(document)
        document["_id"] = result.inserted_id
        return document

    def update(self, product_id, changes: Dict) -> Optional[Dict]:
        object_id = normalize_object_id(product_id)
        if object_id is None:
            return None
        changes = dict(changes, updated_at=datetime.utcnow())
        return self.collection.find_one_and_update(
            {"_id": object_id},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )


    def set_stock(self, product_id, quantity: int) -> Optional[Dict]:
        object_id = normalize_object_id(product_id)
        if object_id is None:
            return None
        product = self.collection.find_one({"_id": object_id})
        if not product:
            return None

        quantity = max(0, int(quantity))
        in_stock, badge = stock_flags(quantity, product.get("badge"))
        changes = {"quantity": quantity, "in_stock": in_stock, "updated_at": datetime.utcnow()}
        update: Dict[str, Dict] = {"$set": changes}
        if badge:
            changes["badge"] = badge
        elif product.get("badge"):
            update["$unset"] = {"badge": ""}
        return self.collection.find_one_and_update(
            {"_id": object_id}, update, return_document=ReturnDocument.AFTER
        )

    def delete(self, product_id) -> bool:
        object_id = normalize_object_id(product_id)
        if object_id is None:
            return False
        return self.collection.delete_one({"_id": object_id}).deleted_count > 0


class OrderStore:
    def __init__(self, collection):
        self.collection = collection

    def find_by_payment_reference(self, reference: str) -> Optional[Dict]:
        if not reference:
            return None
        return self.collection.find_one({"payment_reference": reference})

    def find(self, identifier) -> Optional[Dict]:
        object_id = normalize_object_id(identifier)
        clauses: List[Dict] = [{"order_number": str(identifier)}]
        if object_id is not None:
            clauses.insert(0, {"_id": object_id})
        return self.collection.find_one({"$or": clauses})

    def create(self, order: Dict) -> Dict:
        now = datetime.utcnow()
        order.setdefault("created_at", now)
        order["updated_at"] = now
        result = self.collection.insert_one(order)
        order["_id"] = result.inserted_id
        return order

    def insert_if_absent(self, order: Dict) -> Tuple[Dict, bool]:
        """Insert keyed on payment_reference in one atomic upsert.

        Returns (document, created). Only the caller that gets created=True
        owns the side effects of the new order.
        """
        reference = order["payment_reference"]
        now = datetime.utcnow()
        fields = {key: value for key, value in order.items() if key != "payment_reference"}
        fields.setdefault("created_at", now)
        fields["updated_at"] = now
        try:
            previous = self.collection.find_one_and_update(
                {"payment_reference": reference},
                {"$setOnInsert": fields},
                upsert=True,
                return_document=ReturnDocument.BEFORE,
            )
        except DuplicateKeyError:
            # Lost the upsert race against the unique index.
            return self.find_by_payment_reference(reference), False

        if previous is not None:
            return previous, False
        return self.find_by_payment_reference(reference), True

    def mark_paid(self, order_id, status: str) -> bool:
        result = self.collection.update_one(
            {"_id": order_id, "payment_status": {"$ne": PAYMENT_PAID}},
            {
                "$set": {
                    "payment_status": PAYMENT_PAID,
                    "status": status,
                    "updated_at": datetime.utcnow(),
                }
            },
        )
        return result.modified_count > 0

    def mark_payment_failed(self, order_id) -> bool:
        result = self.collection.update_one(
            {"_id": order_id, "payment_status": {"$nin": [PAYMENT_PAID, PAYMENT_FAILED]}},
            {"$set": {"payment_status": PAYMENT_FAILED, "updated_at": datetime.utcnow()}},
        )
        return result.modified_count > 0

    def claim_cancellation(self, order_id) -> bool:
        """Move an open order to cancelled. Only one caller ever wins."""
        result = self.collection.update_one(
            {"_id": order_id, "status": {"$nin": [ORDER_COMPLETED, ORDER_CANCELLED]}},
            {"$set": {"status": ORDER_CANCELLED, "updated_at": datetime.utcnow()}},
        )
        return result.modified_count > 0

    def revenue(self, match: Dict) -> float:
        rows = list(
            self.collection.aggregate(
                [{"$match": match}, {"$group": {"_id": None, "total": {"$sum": "$total"}}}]
            )
        )
        return round(float(rows[0]["total"]), 2) if rows else 0.0

    def stats(self, now: Optional[datetime] = None) -> Dict:
        now = now or datetime.utcnow()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        earned = {"status": ORDER_COMPLETED, "payment_status": PAYMENT_PAID}

        top_customers = self.collection.aggregate(
            [
                {
                    "$group": {
                        "_id": "$customer_email",
                        "customer_name": {"$first": "$customer_name"},
                        "total_orders": {"$sum": 1},
                        "total_spent": {"$sum": "$total"},
                    }
                },
                {"$sort": {"total_orders": -1}},
                {"$limit": 5},
            ]
        )
        recent_orders = self.collection.find(
            {},
            {"order_number": 1, "customer_name": 1, "total": 1, "status": 1, "created_at": 1},
        ).sort([("created_at", -1), ("_id", -1)]).limit(10)

        return {
            "total_orders": self.collection.count_documents({}),
            "pending_orders": self.collection.count_documents({"status": ORDER_PENDING}),
            "completed_orders": self.collection.count_documents({"status": ORDER_COMPLETED}),
            "cancelled_orders": self.collection.count_documents({"status": ORDER_CANCELLED}),
            "total_revenue": self.revenue(earned),
            "monthly_revenue": self.revenue(dict(earned, created_at={"$gte": month_start})),
            "daily_orders": self.collection.count_documents({"created_at": {"$gte": day_start}}),
            "top_customers": list(top_customers),
            "recent_orders": list(recent_orders),
        }

    def save(self, order: Dict, fields: Optional[List[str]] = None) -> Dict:
        keys = fields or [key for key in order if key != "_id"]
        changes = {key: order.get(key) for key in keys}
        changes["updated_at"] = datetime.utcnow()
        self.collection.update_one({"_id": order["_id"]}, {"$set": changes})
        order["updated_at"] = changes["updated_at"]
        return order

    def list(self, filters: Dict, page: int = 1, limit: int = 20, sort=None):
        sort = sort or [("created_at", -1), ("_id", -1)]
        skip = max(0, (page - 1) * limit)
        documents = list(self.collection.find(filters).sort(sort).skip(skip).limit(limit))
        total = self.collection.count_documents(filters)
        return documents, total


class PaymentLinkStore:
    def __init__(self, collection):
        self.collection = collection

    def find_by_reference(self, reference: str) -> Optional[Dict]:
        if not reference:
            return None
        return self.collection.find_one({"reference": reference})

    def create(self, link: Dict) -> Dict:
        now = link.get("created_at") or datetime.utcnow()
        link["created_at"] = now
        link["updated_at"] = now
        link.setdefault("status", LINK_PENDING)
        link.setdefault("view_count", 0)
        link.setdefault("ip_addresses", [])
        result = self.collection.insert_one(link)
        link["_id"] = result.inserted_id
        return link

    def mark_completed(self, reference: str, now: datetime) -> bool:
        result = self.collection.update_one(
            {"reference": reference, "status": {"$ne": LINK_COMPLETED}},
            {
                "$set": {
                    "status": LINK_COMPLETED,
                    "paid_at": now,
                    "verified_at": now,
                    "updated_at": now,
                }
            },
        )
        return result.modified_count > 0

    def mark_failed(self, reference: str) -> bool:
        result = self.collection.update_one(
            {"reference": reference, "status": {"$ne": LINK_COMPLETED}},
            {"$set": {"status": LINK_FAILED, "updated_at": datetime.utcnow()}},
        )
        return result.modified_count > 0

    def set_status(self, reference: str, status: str) -> Optional[Dict]:
        return self.collection.find_one_and_update(
            {"reference": reference},
            {"$set": {"status": status, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    def expire_overdue(self, now: datetime) -> int:
        result = self.collection.update_many(
            {"status": LINK_PENDING, "expires_at": {"$lt": now}},
            {"$set": {"status": LINK_EXPIRED, "updated_at": now}},
        )
        return result.modified_count

    def find_stale_pending(self, cutoff: datetime) -> List[Dict]:
        return list(
            self.collection.find(
                {"status": LINK_PENDING, "created_at": {"$lt": cutoff}},
                {"reference": 1, "status": 1},
            )
        )

    def record_view(self, reference: str, ip_address: str, now: datetime) -> Optional[Dict]:
        return self.collection.find_one_and_update(
            {"reference": reference},
            {
                "$inc": {"view_count": 1},
                "$set": {"last_viewed_at": now},
                "$addToSet": {"ip_addresses": ip_address},
            },
            return_document=ReturnDocument.AFTER,
        )

    def delete(self, reference: str) -> bool:
        return self.collection.delete_one({"reference": reference}).deleted_count > 0

    def search(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ):
        query: Dict[str, object] = {}
        if status and status != "all":
            query["status"] = status
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [
                {field: pattern}
                for field in (
                    "reference",
                    "customer_email",
                    "customer_name",
                    "product_name",
                    "description",
                )
            ]

        direction = DESCENDING if sort_order == "desc" else ASCENDING
        skip = max(0, (page - 1) * limit)
        documents = list(
            self.collection.find(query).sort([(sort_by, direction)]).skip(skip).limit(limit)
        )
        return documents, self.collection.count_documents(query)
