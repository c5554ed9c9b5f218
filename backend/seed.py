import logging
import os
from datetime import datetime
from typing import Dict, List, Optional

import bcrypt
from dotenv import load_dotenv
from pymongo import MongoClient

from lifecycle import stock_flags
from orders import normalize_email

logger = logging.getLogger(__name__)

seed_products: List[Dict] = [
    {
        "name": "Adire Silk Kimono",
        "price": 45000,
        "quantity": 8,
        "category": "Outerwear",
        "description": "Hand-dyed adire silk kimono with a relaxed drape.",
    },
    {
        "name": "Ankara Wrap Dress",
        "price": 32500,
        "quantity": 12,
        "category": "Dresses",
        "description": "Midi wrap dress cut from vibrant ankara cotton.",
    },
    {
        "name": "Aso Oke Clutch",
        "price": 18000,
        "quantity": 5,
        "category": "Accessories",
        "badge": "NEW",
        "description": "Structured clutch woven from aso oke with a gold clasp.",
    },
    {
        "name": "Linen Kaftan",
        "price": 27000,
        "quantity": 0,
        "category": "Menswear",
        "description": "Breathable linen kaftan with embroidered neckline.",
    },
]


def ensure_seed_products(db) -> int:
    if db.products.count_documents({}) > 0:
        return 0

    timestamp = datetime.utcnow()
    documents = []
    for product in seed_products:
        quantity = int(product.get("quantity", 0) or 0)
        in_stock, badge = stock_flags(quantity, product.get("badge"))
        document = {
            "name": product.get("name", ""),
            "price": float(product.get("price", 0) or 0),
            "quantity": quantity,
            "in_stock": in_stock,
            "category": product.get("category", ""),
            "description": product.get("description", ""),
            "image": product.get("image", ""),
            "active": True,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        if badge:
            document["badge"] = badge
        documents.append(document)

    if documents:
        db.products.insert_many(documents)
    return len(documents)


def ensure_admin_user(db, email: Optional[str], password: Optional[str], name: str = "") -> bool:
    """Create the admin account if it does not exist yet. Existing users are left alone."""
    email = normalize_email(email)
    if not email or not password:
        return False
    if db.users.find_one({"email": email}):
        return False

    hashed_pw = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    db.users.insert_one(
        {
            "email": email,
            "name": name or "Store Admin",
            "password": hashed_pw,
            "role": "admin",
            "created_at": datetime.utcnow(),
        }
    )
    logger.info("Created admin user %s", email)
    return True


if __name__ == "__main__":
    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    client = MongoClient(os.getenv("MONGO_URI", "mongodb://localhost:27017/nevellines"))
    database = client.get_default_database("nevellines")
    inserted = ensure_seed_products(database)
    logger.info("Seeded %s products", inserted)
    ensure_admin_user(
        database,
        os.getenv("DEFAULT_ADMIN_EMAIL"),
        os.getenv("DEFAULT_ADMIN_PASSWORD"),
        os.getenv("DEFAULT_ADMIN_NAME", ""),
    )
