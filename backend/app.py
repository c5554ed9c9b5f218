import math
import os
import re
from datetime import datetime, timedelta
from typing import Dict, Optional

import bcrypt
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo.errors import PyMongoError
from werkzeug.middleware.proxy_fix import ProxyFix

from lifecycle import format_time_remaining, is_expired, stock_flags, time_remaining
from money import as_float, to_amount
from notifications import Mailer
from orders import (
    OrderError,
    cancel_order,
    normalize_email,
    place_store_order,
    update_order_status,
)
from paystack import GatewayError, PaystackClient, is_valid_reference
from reconciliation import InvalidSignature, ReconciliationEngine, ValidationError
from seed import ensure_admin_user
from storage import (
    OrderStore,
    PaymentLinkStore,
    ProductCatalog,
    ensure_indexes,
)

load_dotenv()

SETTINGS_ID = "site_settings"
DEFAULT_SETTINGS = {
    "site_name": "Nevellines",
    "currency": {"code": "NGN", "symbol": "₦"},
    "shipping": {"default_shipping_fee": 0, "free_shipping_threshold": None},
    "contact": {"email": "", "phone": "", "whatsapp": ""},
}


def create_app(test_config: Optional[Dict] = None, db=None, gateway=None, mailer=None) -> Flask:
    """Create and configure the Flask application.

    db, gateway and mailer are the application's collaborators; when omitted
    they are built from configuration.
    """
    app = Flask(__name__)

    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=12)
    app.config["MONGO_URI"] = os.getenv("MONGO_URI", "mongodb://localhost:27017/nevellines")
    app.config["PAYSTACK_SECRET_KEY"] = os.getenv("PAYSTACK_SECRET_KEY", "")
    app.config["PAYSTACK_BASE_URL"] = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    app.config["PAYSTACK_TIMEOUT_SECONDS"] = float(os.getenv("PAYSTACK_TIMEOUT_SECONDS", "30"))
    app.config["PAYMENT_CURRENCY"] = os.getenv("PAYMENT_CURRENCY", "NGN")
    app.config["FRONTEND_URL"] = os.getenv("FRONTEND_URL", "").strip()
    app.config["FALLBACK_CUSTOMER_EMAIL"] = os.getenv(
        "FALLBACK_CUSTOMER_EMAIL", "customer@nevellines.com"
    )
    app.config["DEFAULT_LINK_TIMEOUT_MINUTES"] = int(
        os.getenv("DEFAULT_LINK_TIMEOUT_MINUTES", "1440")
    )
    app.config["STALE_LINK_MINUTES"] = int(os.getenv("STALE_LINK_MINUTES", "10"))
    app.config["RESEND_API_KEY"] = (os.getenv("RESEND_API_KEY") or "").strip()
    app.config["ORDER_SENDER_EMAIL"] = os.getenv("ORDER_SENDER_EMAIL", "orders@nevellines.com")
    app.config["STORE_NAME"] = os.getenv("STORE_NAME", "Nevellines")
    app.config["DEFAULT_ADMIN_EMAIL"] = os.getenv("DEFAULT_ADMIN_EMAIL", "")
    app.config["DEFAULT_ADMIN_PASSWORD"] = os.getenv("DEFAULT_ADMIN_PASSWORD", "")
    if test_config:
        app.config.update(test_config)

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:5173",
        "http://localhost:3000",
        app.config["FRONTEND_URL"],
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]
    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    JWTManager(app)
    if db is None:
        db = PyMongo(app).db
    ensure_indexes(db)
    ensure_admin_user(
        db, app.config["DEFAULT_ADMIN_EMAIL"], app.config["DEFAULT_ADMIN_PASSWORD"]
    )

    if gateway is None:
        gateway = PaystackClient(
            app.config["PAYSTACK_SECRET_KEY"],
            base_url=app.config["PAYSTACK_BASE_URL"],
            timeout=app.config["PAYSTACK_TIMEOUT_SECONDS"],
        )
    if mailer is None:
        mailer = Mailer(
            app.config["RESEND_API_KEY"],
            sender=app.config["ORDER_SENDER_EMAIL"],
            store_name=app.config["STORE_NAME"],
        )

    catalog = ProductCatalog(db.products)
    order_store = OrderStore(db.orders)
    link_store = PaymentLinkStore(db.payment_links)
    engine = ReconciliationEngine(
        gateway,
        link_store,
        order_store,
        catalog,
        mailer,
        webhook_secret=app.config["PAYSTACK_SECRET_KEY"],
        frontend_url=app.config["FRONTEND_URL"],
        currency=app.config["PAYMENT_CURRENCY"],
        fallback_customer_email=app.config["FALLBACK_CUSTOMER_EMAIL"],
        default_timeout_minutes=app.config["DEFAULT_LINK_TIMEOUT_MINUTES"],
        stale_after_minutes=app.config["STALE_LINK_MINUTES"],
    )
    app.extensions["reconciliation"] = engine
    app.extensions["store_db"] = db

    # --- Helpers ---

    def iso(value) -> Optional[str]:
        if not isinstance(value, datetime):
            return None
        return value.isoformat() if value.tzinfo is not None else f"{value.isoformat()}Z"

    def safe_int(value, default: int) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def error_response(message: str, status: int):
        return jsonify({"success": False, "error": message}), status

    def gateway_error_response(exc: GatewayError):
        app.logger.error("Paystack error (%s): %s", type(exc).__name__, exc.message)
        payload = {"success": False, "error": exc.message, "retryable": exc.retryable}
        return jsonify(payload), exc.status_code

    def pagination(page: int, limit: int, total: int) -> Dict:
        total_pages = math.ceil(total / limit) if limit else 0
        return {
            "currentPage": page,
            "totalPages": total_pages,
            "totalItems": total,
            "hasNext": page < total_pages,
            "hasPrev": page > 1,
        }

    def load_settings() -> Dict:
        document = db.settings.find_one({"_id": SETTINGS_ID}) or {}
        settings = {key: value for key, value in DEFAULT_SETTINGS.items()}
        for key in settings:
            if isinstance(document.get(key), dict):
                settings[key] = dict(settings[key], **document[key])
            elif key in document:
                settings[key] = document[key]
        return settings

    def require_admin_user():
        current_email = normalize_email(get_jwt_identity())
        user = db.users.find_one({"email": current_email}) if current_email else None
        if not user or user.get("role") != "admin":
            return None, error_response("Admin access required.", 403)
        return user, None

    def serialize_product(document) -> Optional[Dict]:
        if not document:
            return None
        quantity = int(document.get("quantity") or 0)
        in_stock, badge = stock_flags(quantity, document.get("badge"))
        return {
            "id": str(document.get("_id")),
            "name": document.get("name", ""),
            "price": as_float(to_amount(document.get("price") or 0)),
            "originalPrice": document.get("original_price"),
            "category": document.get("category") or "",
            "image": document.get("image") or "",
            "quantity": quantity,
            "inStock": in_stock,
            "badge": badge,
            "description": document.get("description") or "",
            "active": document.get("active", True),
            "createdAt": iso(document.get("created_at")),
        }

    def serialize_order(document) -> Optional[Dict]:
        if not document:
            return None
        items = []
        for entry in document.get("items") or []:
            item = {
                "productId": entry.get("product_id") or "",
                "name": entry.get("name") or "Item",
                "price": entry.get("price") or 0,
                "quantity": entry.get("quantity") or 1,
                "image": entry.get("image"),
                "lineTotal": round(
                    float(entry.get("price") or 0) * int(entry.get("quantity") or 1), 2
                ),
            }
            if entry.get("color"):
                item["color"] = entry["color"]
            if entry.get("size"):
                item["size"] = entry["size"]
            items.append(item)
        return {
            "id": str(document.get("_id")),
            "orderNumber": document.get("order_number", ""),
            "orderType": document.get("order_type") or "store",
            "customerName": document.get("customer_name") or "",
            "customerEmail": document.get("customer_email") or "",
            "customerPhone": document.get("customer_phone") or "",
            "customerAddress": document.get("customer_address"),
            "items": items,
            "subtotal": document.get("subtotal") or 0,
            "shipping": document.get("shipping") or 0,
            "total": document.get("total") or 0,
            "status": document.get("status") or "pending",
            "paymentMethod": document.get("payment_method") or "",
            "paymentReference": document.get("payment_reference"),
            "paymentStatus": document.get("payment_status") or "pending",
            "notes": document.get("notes"),
            "createdAt": iso(document.get("created_at")),
            "updatedAt": iso(document.get("updated_at")),
        }

    def serialize_payment_link(document) -> Optional[Dict]:
        if not document:
            return None
        now = datetime.utcnow()
        return {
            "id": str(document.get("_id")),
            "reference": document.get("reference"),
            "amount": document.get("amount"),
            "productId": document.get("product_id"),
            "productName": document.get("product_name") or "",
            "description": document.get("description") or "",
            "customerEmail": document.get("customer_email") or "",
            "customerName": document.get("customer_name") or "",
            "customerPhone": document.get("customer_phone") or "",
            "quantity": document.get("quantity") or 1,
            "paymentUrl": document.get("checkout_url"),
            "authorizationUrl": document.get("authorization_url"),
            "accessCode": document.get("access_code"),
            "qrCode": document.get("qr_code"),
            "shortUrl": document.get("short_url"),
            "status": document.get("status"),
            "paidAt": iso(document.get("paid_at")),
            "verifiedAt": iso(document.get("verified_at")),
            "expiresAt": iso(document.get("expires_at")),
            "sessionTimeoutMinutes": document.get("session_timeout_minutes"),
            "viewCount": document.get("view_count") or 0,
            "lastViewedAt": iso(document.get("last_viewed_at")),
            "ipAddresses": document.get("ip_addresses") or [],
            "createdAt": iso(document.get("created_at")),
            "isExpired": is_expired(document, now),
            "timeRemaining": time_remaining(document, now),
            "timeRemainingFormatted": format_time_remaining(document.get("expires_at"), now),
        }

    # --- ROUTES ---

    # ---- Auth ----

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")
        if not email or not password:
            return error_response("Email and password are required.", 400)

        user = db.users.find_one({"email": email})
        password_hash = user.get("password") if user else None
        if isinstance(password_hash, str):
            password_hash = password_hash.encode("utf-8")
        if not password_hash or not bcrypt.checkpw(password.encode("utf-8"), password_hash):
            return error_response("Invalid credentials.", 401)
        if user.get("role") != "admin":
            return error_response("Admin access required.", 403)

        token = create_access_token(identity=email)
        return jsonify(
            {
                "success": True,
                "token": token,
                "user": {"email": email, "name": user.get("name", ""), "role": "admin"},
            }
        )

    @app.route("/api/auth/me", methods=["GET"])
    @jwt_required()
    def current_admin():
        user, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        return jsonify(
            {
                "success": True,
                "user": {"email": user["email"], "name": user.get("name", ""), "role": "admin"},
            }
        )

    # ---- Products ----

    @app.route("/api/products", methods=["GET"])
    def list_products():
        return jsonify(
            {"success": True, "products": [serialize_product(doc) for doc in catalog.list()]}
        )

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product = catalog.find_by_id(product_id)
        if not product:
            return error_response("Product not found", 404)
        return jsonify({"success": True, "product": serialize_product(product)})

    def product_fields_from_payload(payload: Dict, partial: bool) -> Dict:
        fields: Dict[str, object] = {}
        if "name" in payload or not partial:
            name = str(payload.get("name") or "").strip()
            if not name:
                raise ValidationError("Product name is required.")
            fields["name"] = name
        if "price" in payload or not partial:
            try:
                price = to_amount(payload.get("price"))
            except ValueError:
                raise ValidationError("Product price must be a number.")
            if price < 0:
                raise ValidationError("Product price cannot be negative.")
            fields["price"] = as_float(price)
        if "quantity" in payload or not partial:
            quantity = safe_int(payload.get("quantity", 0), -1)
            if quantity < 0:
                raise ValidationError("Quantity must be a non-negative whole number.")
            fields["quantity"] = quantity
        for source, target in (
            ("category", "category"),
            ("image", "image"),
            ("description", "description"),
            ("originalPrice", "original_price"),
            ("active", "active"),
            ("badge", "badge"),
        ):
            if source in payload:
                fields[target] = payload[source]
        return fields

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        payload = request.get_json(silent=True) or {}
        try:
            fields = product_fields_from_payload(payload, partial=False)
        except ValidationError as exc:
            return error_response(exc.message, exc.status_code)
        fields.setdefault("active", True)
        fields["in_stock"], badge = stock_flags(fields["quantity"], fields.get("badge"))
        if badge:
            fields["badge"] = badge
        else:
            fields.pop("badge", None)
        product = catalog.create(fields)
        app.logger.info("Product %s created", product["_id"])
        return jsonify({"success": True, "product": serialize_product(product)}), 201

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        existing = catalog.find_by_id(product_id)
        if not existing:
            return error_response("Product not found", 404)
        payload = request.get_json(silent=True) or {}
        try:
            fields = product_fields_from_payload(payload, partial=True)
        except ValidationError as exc:
            return error_response(exc.message, exc.status_code)
        quantity = fields.get("quantity", existing.get("quantity") or 0)
        fields["in_stock"], badge = stock_flags(
            int(quantity), fields.get("badge", existing.get("badge"))
        )
        fields["badge"] = badge
        product = catalog.update(product_id, fields)
        return jsonify({"success": True, "product": serialize_product(product)})

    @app.route("/api/products/<product_id>/stock", methods=["PATCH"])
    @jwt_required()
    def update_product_stock(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        payload = request.get_json(silent=True) or {}
        quantity = safe_int(payload.get("quantity"), -1)
        operation = payload.get("operation") or "set"
        if quantity < 0:
            return error_response("Quantity must be a non-negative whole number.", 400)

        if operation == "set":
            product = catalog.set_stock(product_id, quantity)
        elif operation == "increment":
            product = catalog.adjust_stock(product_id, quantity)
        elif operation == "decrement":
            product = catalog.adjust_stock(product_id, -quantity)
        else:
            return error_response("Operation must be one of: set, increment, decrement", 400)
        if not product:
            return error_response("Product not found", 404)

        app.logger.info("Stock for product %s: %s %s", product_id, operation, quantity)
        return jsonify(
            {
                "success": True,
                "product": serialize_product(product),
                "message": "Stock updated successfully",
            }
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        if not catalog.delete(product_id):
            return error_response("Product not found", 404)
        app.logger.info("Product %s deleted", product_id)
        return jsonify({"success": True, "message": "Product deleted successfully"})

    # ---- Settings ----

    @app.route("/api/settings", methods=["GET"])
    def get_settings():
        return jsonify({"success": True, "settings": load_settings()})

    @app.route("/api/settings", methods=["PUT"])
    @jwt_required()
    def update_settings():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        payload = request.get_json(silent=True) or {}
        changes: Dict[str, object] = {}
        for key in DEFAULT_SETTINGS:
            if key in payload:
                changes[key] = payload[key]
        shipping = changes.get("shipping")
        if shipping is not None:
            if not isinstance(shipping, dict):
                return error_response("Shipping settings must be an object.", 400)
            try:
                fee = to_amount(shipping.get("default_shipping_fee") or 0)
            except ValueError:
                return error_response("Shipping fee must be a number.", 400)
            if fee < 0:
                return error_response("Shipping fee cannot be negative.", 400)
        if changes:
            changes["updated_at"] = datetime.utcnow()
            db.settings.update_one({"_id": SETTINGS_ID}, {"$set": changes}, upsert=True)
        return jsonify({"success": True, "settings": load_settings()})

    # ---- Orders ----

    @app.route("/api/orders", methods=["POST"])
    def create_order():
        payload = request.get_json(silent=True) or {}
        try:
            order = place_store_order(
                payload, catalog, order_store, mailer, load_settings().get("shipping")
            )
        except OrderError as exc:
            app.logger.warning("Order rejected: %s", exc.message)
            return error_response(exc.message, exc.status_code)
        except Exception as exc:
            app.logger.error("Error creating order: %s", exc)
            return error_response("Failed to create order", 500)
        return (
            jsonify(
                {
                    "success": True,
                    "data": serialize_order(order),
                    "message": "Order created successfully",
                }
            ),
            201,
        )

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        filters: Dict[str, object] = {}
        for param, field in (
            ("status", "status"),
            ("paymentStatus", "payment_status"),
            ("orderType", "order_type"),
        ):
            value = (request.args.get(param) or "").strip()
            if value:
                filters[field] = value

        search = (request.args.get("search") or "").strip()
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            filters["$or"] = [
                {"order_number": pattern},
                {"customer_name": pattern},
                {"customer_email": pattern},
                {"customer_phone": pattern},
            ]

        page = max(1, safe_int(request.args.get("page"), 1))
        limit = min(100, max(1, safe_int(request.args.get("limit"), 20)))
        documents, total = order_store.list(filters, page, limit)
        return jsonify(
            {
                "success": True,
                "data": {
                    "orders": [serialize_order(doc) for doc in documents],
                    "pagination": pagination(page, limit, total),
                },
            }
        )

    @app.route("/api/orders/admin/stats", methods=["GET"])
    @jwt_required()
    def order_stats():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        stats = order_store.stats()
        return jsonify(
            {
                "success": True,
                "stats": {
                    "totalOrders": stats["total_orders"],
                    "pendingOrders": stats["pending_orders"],
                    "completedOrders": stats["completed_orders"],
                    "cancelledOrders": stats["cancelled_orders"],
                    "totalRevenue": stats["total_revenue"],
                    "monthlyRevenue": stats["monthly_revenue"],
                    "dailyOrders": stats["daily_orders"],
                    "topCustomers": [
                        {
                            "customerEmail": row.get("_id") or "",
                            "customerName": row.get("customer_name") or "",
                            "totalOrders": row.get("total_orders", 0),
                            "totalSpent": round(float(row.get("total_spent") or 0), 2),
                        }
                        for row in stats["top_customers"]
                    ],
                    "recentOrders": [
                        {
                            "id": str(row["_id"]),
                            "orderNumber": row.get("order_number", ""),
                            "customerName": row.get("customer_name") or "",
                            "total": row.get("total") or 0,
                            "status": row.get("status") or "pending",
                            "createdAt": iso(row.get("created_at")),
                        }
                        for row in stats["recent_orders"]
                    ],
                },
            }
        )

    @app.route("/api/orders/order/<order_identifier>", methods=["GET"])
    def get_public_order(order_identifier: str):
        order = order_store.find(order_identifier)
        if not order:
            return error_response("Order not found", 404)
        return jsonify({"success": True, "order": serialize_order(order)})

    @app.route("/api/orders/<order_identifier>", methods=["GET"])
    @jwt_required()
    def get_order(order_identifier: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        order = order_store.find(order_identifier)
        if not order:
            return error_response("Order not found", 404)
        return jsonify({"success": True, "order": serialize_order(order)})

    @app.route("/api/orders/customer/<email>", methods=["GET"])
    def list_customer_orders(email: str):
        normalized = normalize_email(email)
        if not normalized:
            return error_response("Email is required", 400)
        documents, _ = order_store.list({"customer_email": normalized}, 1, 50)
        return jsonify({"success": True, "orders": [serialize_order(doc) for doc in documents]})

    @app.route("/api/orders/<order_identifier>/status", methods=["PATCH"])
    @jwt_required()
    def change_order_status(order_identifier: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        payload = request.get_json(silent=True) or {}
        try:
            order = update_order_status(
                order_identifier,
                order_store,
                catalog,
                mailer,
                status=payload.get("status"),
                payment_status=payload.get("paymentStatus"),
                notes=payload.get("notes"),
            )
        except OrderError as exc:
            return error_response(exc.message, exc.status_code)
        return jsonify(
            {"success": True, "order": serialize_order(order), "message": "Order updated successfully"}
        )

    def cancel_response(order_identifier: str):
        try:
            order = cancel_order(order_identifier, order_store, catalog)
        except OrderError as exc:
            return error_response(exc.message, exc.status_code)
        return jsonify(
            {
                "success": True,
                "order": serialize_order(order),
                "message": "Order cancelled successfully",
            }
        )

    @app.route("/api/orders/cancel/<order_identifier>", methods=["PATCH"])
    def cancel_customer_order(order_identifier: str):
        return cancel_response(order_identifier)

    @app.route("/api/orders/admin/cancel/<order_identifier>", methods=["PATCH"])
    @jwt_required()
    def cancel_order_as_admin(order_identifier: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        return cancel_response(order_identifier)

    # ---- Paystack Payment Links ----

    @app.route("/api/payments/generate-link", methods=["POST"])
    @jwt_required()
    def generate_payment_link():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        payload = request.get_json(silent=True) or {}
        try:
            link = engine.create_link(payload)
        except ValidationError as exc:
            return error_response(exc.message, exc.status_code)
        except GatewayError as exc:
            return gateway_error_response(exc)

        serialized = serialize_payment_link(link)
        return jsonify(
            {
                "success": True,
                "data": {
                    "paymentUrl": serialized["paymentUrl"],
                    "shortUrl": serialized["shortUrl"],
                    "qrCode": serialized["qrCode"],
                    "reference": serialized["reference"],
                    "accessCode": serialized["accessCode"],
                    "amount": serialized["amount"],
                    "productName": serialized["productName"],
                    "customerEmail": serialized["customerEmail"] or "Not provided",
                    "description": serialized["description"],
                    "expiresAt": serialized["expiresAt"],
                    "timeRemainingFormatted": serialized["timeRemainingFormatted"],
                },
                "message": "Payment link generated successfully",
            }
        )

    @app.route("/api/payments/verify/<reference>", methods=["GET"])
    def verify_payment(reference: str):
        if not is_valid_reference(reference):
            return error_response("Invalid transaction reference", 400)
        try:
            verification = engine.verify(reference)
        except GatewayError as exc:
            return gateway_error_response(exc)
        return jsonify(
            {
                "success": True,
                "data": verification.as_dict(),
                "message": "Payment verified successfully"
                if verification.status == "success"
                else "Payment verification completed",
            }
        )

    @app.route("/api/payments/webhook/paystack", methods=["POST"])
    def paystack_webhook():
        raw_body = request.get_data(cache=False)
        signature = request.headers.get("x-paystack-signature")
        try:
            handled = engine.handle_webhook(raw_body, signature)
        except InvalidSignature:
            return error_response("Invalid signature", 400)
        except ValidationError as exc:
            return error_response(exc.message, exc.status_code)
        except GatewayError as exc:
            # Paystack retries non-2xx deliveries; the sweep catches anything it gives up on.
            return gateway_error_response(exc)
        return jsonify({"success": True, "event": handled}), 200

    @app.route("/api/payments/link/track/<reference>", methods=["POST"])
    def track_payment_link_view(reference: str):
        link = engine.track_view(reference, request.remote_addr or "unknown")
        if not link:
            return error_response("Payment link not found", 404)
        return jsonify(
            {
                "success": True,
                "data": {
                    "reference": link["reference"],
                    "viewCount": link.get("view_count", 0),
                    "isExpired": is_expired(link),
                    "timeRemainingFormatted": format_time_remaining(link.get("expires_at")),
                },
            }
        )

    @app.route("/api/payments/links", methods=["GET"])
    @jwt_required()
    def list_payment_links():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        page = max(1, safe_int(request.args.get("page"), 1))
        limit = min(100, max(1, safe_int(request.args.get("limit"), 20)))
        sort_by = {
            "createdAt": "created_at",
            "amount": "amount",
            "status": "status",
            "expiresAt": "expires_at",
        }.get(request.args.get("sortBy") or "createdAt", "created_at")
        documents, total, sweep_summary = engine.list_links(
            status=(request.args.get("status") or "").strip() or None,
            search=(request.args.get("search") or "").strip() or None,
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order="asc" if request.args.get("sortOrder") == "asc" else "desc",
        )
        return jsonify(
            {
                "success": True,
                "data": {
                    "paymentLinks": [serialize_payment_link(doc) for doc in documents],
                    "pagination": pagination(page, limit, total),
                    "reconciliation": sweep_summary,
                },
            }
        )

    @app.route("/api/payments/links/<reference>/status", methods=["PATCH"])
    @jwt_required()
    def update_payment_link_status(reference: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        payload = request.get_json(silent=True) or {}
        try:
            link = engine.set_link_status(reference, str(payload.get("status") or ""))
        except ValidationError as exc:
            return error_response(exc.message, exc.status_code)
        return jsonify(
            {
                "success": True,
                "data": serialize_payment_link(link),
                "message": "Payment link status updated successfully",
            }
        )

    @app.route("/api/payments/links/<reference>", methods=["DELETE"])
    @jwt_required()
    def delete_payment_link(reference: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        try:
            engine.delete_link(reference)
        except ValidationError as exc:
            return error_response(exc.message, exc.status_code)
        return jsonify({"success": True, "message": "Payment link deleted successfully"})

    @app.route("/api/payments/transactions", methods=["GET"])
    @jwt_required()
    def list_gateway_transactions():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        try:
            data, meta = gateway.list_transactions(
                per_page=safe_int(request.args.get("perPage"), 20),
                page=safe_int(request.args.get("page"), 1),
                status=request.args.get("status") or None,
                from_date=request.args.get("from") or None,
                to_date=request.args.get("to") or None,
            )
        except GatewayError as exc:
            return gateway_error_response(exc)
        return jsonify({"success": True, "data": data, "meta": meta})

    @app.route("/api/payments/transaction/<transaction_id>", methods=["GET"])
    @jwt_required()
    def get_gateway_transaction(transaction_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        try:
            data = gateway.get_transaction(transaction_id)
        except GatewayError as exc:
            return gateway_error_response(exc)
        return jsonify({"success": True, "data": data})

    @app.errorhandler(PyMongoError)
    def handle_database_error(exc):
        app.logger.error("Database error on %s %s: %s", request.method, request.path, exc)
        return error_response("Database error, please try again later", 500)

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
