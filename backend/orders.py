import logging
import math
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, List, Optional, Tuple

from flask import jsonify, request
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from errors import BadRequest, NotFound
from gate import current_identity
from pagination import page_args, pagination_payload
from products import MAX_PRICE, serialize_product
from users import Role, serialize_user, to_object_id

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
MAX_ORDER_TOTAL = Decimal("1000000000.00")
ORDER_NUMBER_COUNTER = "order_number"


class OrderStatus(str, Enum):
    NEW = "new"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses only move forward; completed and cancelled are terminal.
STATUS_TRANSITIONS = {
    OrderStatus.NEW: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}


def to_amount(value) -> Decimal:
    try:
        return Decimal(str(value)).quantize(CENT)
    except InvalidOperation:
        raise BadRequest("Amount is out of range.")


def parse_declared_total(value) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise BadRequest("Order total must be a number.")
    if isinstance(value, float) and not math.isfinite(value):
        raise BadRequest("Order total must be a finite number.")
    if not 0 <= value <= MAX_ORDER_TOTAL:
        raise BadRequest("Order total is out of range.")
    return to_amount(value)


def parse_order_number(value) -> int:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise BadRequest("Invalid order number.")
    if number < 1:
        raise BadRequest("Invalid order number.")
    return number


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(str(value or "").strip().lower())
    except ValueError:
        allowed = ", ".join(status.value for status in OrderStatus)
        raise BadRequest(f"Order status must be one of: {allowed}.")


def _first_present(payload: Dict, *keys: str):
    for key in keys:
        if key in payload:
            return payload[key]
    return None


def _text(payload: Dict, *keys: str) -> str:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return str(value).strip()
    return ""


class OrderStore:
    def __init__(self, db):
        self.collection = db.orders
        self.counters = db.counters

    def ensure_indexes(self) -> None:
        self.collection.create_index("order_number", unique=True)
        self.collection.create_index([("customer", 1), ("created_at", -1)])

    def next_order_number(self) -> int:
        counter = self.counters.find_one_and_update(
            {"_id": ORDER_NUMBER_COUNTER},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["seq"])

    def insert(self, order_document: Dict) -> Dict:
        order_document["order_number"] = self.next_order_number()
        result = self.collection.insert_one(order_document)
        order_document["_id"] = result.inserted_id
        return order_document

    def find_by_number(self, order_number: int, customer=None):
        query: Dict[str, object] = {"order_number": order_number}
        if customer is not None:
            query["customer"] = customer
        return self.collection.find_one(query)

    def list(self, query: Dict, page: int, limit: int) -> Tuple[List[Dict], int]:
        cursor = (
            self.collection.find(query)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return list(cursor), self.collection.count_documents(query)

    def update_status(self, order_number: int, status: OrderStatus):
        allowed_from = [
            current.value
            for current, targets in STATUS_TRANSITIONS.items()
            if status in targets
        ]
        updated = self.collection.find_one_and_update(
            {"order_number": order_number, "status": {"$in": allowed_from}},
            {"$set": {"status": status.value, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated:
            return updated

        existing = self.find_by_number(order_number)
        if not existing:
            raise NotFound("Order not found.")
        if existing.get("status") == status.value:
            return existing
        raise BadRequest(
            f"Cannot change order status from {existing.get('status')} to {status.value}."
        )

    def delete(self, order_id):
        object_id = to_object_id(order_id)
        if object_id is None:
            raise BadRequest("Invalid order identifier.")
        order_document = self.collection.find_one_and_delete({"_id": object_id})
        if not order_document:
            raise NotFound("Order not found.")
        return order_document


class OrderAssembler:
    """Builds orders whose total is recomputed from live catalog prices.

    The client-declared total is only compared, never stored. Every failure
    is a BadRequest and leaves nothing behind in the store.
    """

    def __init__(self, settings, products, orders: OrderStore, users):
        self.max_basket_items = settings.max_basket_items
        self.products = products
        self.orders = orders
        self.users = users

    def create_order(self, caller_id, payload: Dict) -> Dict:
        items = payload.get("items")
        if not isinstance(items, list) or not items:
            raise BadRequest("The basket is empty.")
        if len(items) > self.max_basket_items:
            raise BadRequest(
                f"The basket cannot hold more than {self.max_basket_items} items."
            )

        product_ids = []
        for item in items:
            object_id = to_object_id(item) if isinstance(item, str) else None
            if object_id is None:
                raise BadRequest(f"Invalid product identifier: {item}.")
            product_ids.append(object_id)

        declared_total = parse_declared_total(
            _first_present(payload, "total", "declared_total", "declaredTotal")
        )

        unique_ids = list(dict.fromkeys(product_ids))
        catalog = {
            product["_id"]: product for product in self.products.find_by_ids(unique_ids)
        }
        if len(catalog) != len(unique_ids):
            missing = next(pid for pid in unique_ids if pid not in catalog)
            raise BadRequest(f"Product {missing} was not found.")

        for product_id in unique_ids:
            price = catalog[product_id].get("price")
            if (
                price is None
                or isinstance(price, bool)
                or not isinstance(price, (int, float))
                or not 0 <= price <= MAX_PRICE
            ):
                raise BadRequest(f"Product {product_id} is not for sale.")

        authoritative_total = sum(
            (to_amount(catalog[product_id]["price"]) for product_id in product_ids),
            Decimal("0.00"),
        )
        if authoritative_total != declared_total:
            logger.info(
                "Rejected basket for user %s: declared %s, computed %s",
                caller_id,
                declared_total,
                authoritative_total,
            )
            raise BadRequest("Order total does not match the basket.")

        now = datetime.utcnow()
        order_document = self.orders.insert(
            {
                "customer": to_object_id(caller_id),
                "products": product_ids,
                "total_amount": float(authoritative_total),
                "status": OrderStatus.NEW.value,
                "payment": _text(payload, "payment"),
                "delivery_address": _text(payload, "address", "delivery_address"),
                "phone": _text(payload, "phone"),
                "email": _text(payload, "email"),
                "comment": _text(payload, "comment"),
                "created_at": now,
                "updated_at": now,
            }
        )
        logger.info(
            "Created order %s for user %s, total %s",
            order_document["order_number"],
            caller_id,
            authoritative_total,
        )

        refresh_customer_stats(self.users, order_document["customer"])
        return order_document


def refresh_customer_stats(users, customer_id) -> None:
    if customer_id is None:
        return
    try:
        users.recalculate_order_stats(customer_id)
    except PyMongoError as exc:
        logger.warning("Unable to refresh order stats for %s: %s", customer_id, exc)


def serialize_order(order_document, customer=None, products_by_id=None) -> Optional[Dict]:
    if not order_document:
        return None

    products_by_id = products_by_id or {}
    customer_id = order_document.get("customer")
    created_at = order_document.get("created_at")
    return {
        "id": str(order_document.get("_id")),
        "order_number": order_document.get("order_number"),
        "status": order_document.get("status"),
        "total_amount": order_document.get("total_amount"),
        "payment": order_document.get("payment", ""),
        "delivery_address": order_document.get("delivery_address", ""),
        "phone": order_document.get("phone", ""),
        "email": order_document.get("email", ""),
        "comment": order_document.get("comment", ""),
        "created_at": created_at.isoformat() if isinstance(created_at, datetime) else None,
        "customer": serialize_user(customer)
        if customer
        else {"id": str(customer_id) if customer_id else None},
        "products": [
            serialize_product(products_by_id[product_id])
            if product_id in products_by_id
            else {"id": str(product_id)}
            for product_id in order_document.get("products") or []
        ],
    }


def resolve_orders(order_documents: List[Dict], users, products) -> List[Dict]:
    customer_ids = {
        document.get("customer") for document in order_documents if document.get("customer")
    }
    product_ids = {
        product_id
        for document in order_documents
        for product_id in document.get("products") or []
    }
    customers = {user["_id"]: user for user in users.find_by_ids(customer_ids)}
    catalog = {product["_id"]: product for product in products.find_by_ids(product_ids)}
    return [
        serialize_order(document, customers.get(document.get("customer")), catalog)
        for document in order_documents
    ]


def register_order_routes(app, gate, assembler: OrderAssembler, orders: OrderStore, users, products):
    def respond(order_document, status_code=200):
        return jsonify(resolve_orders([order_document], users, products)[0]), status_code

    def respond_page(documents, total, page, limit):
        return jsonify(
            {
                "orders": resolve_orders(documents, users, products),
                "pagination": pagination_payload(total, page, limit),
            }
        )

    @app.route("/orders", methods=["POST"])
    @gate.login_required
    def create_order():
        payload = request.get_json(silent=True) or {}
        order_document = assembler.create_order(current_identity().id, payload)
        return respond(order_document, 201)

    @app.route("/orders/all", methods=["GET"])
    @gate.roles_required(Role.ADMIN)
    def list_all_orders():
        page, limit = page_args()
        query: Dict[str, object] = {}
        if request.args.get("status"):
            query["status"] = parse_status(request.args.get("status")).value
        documents, total = orders.list(query, page, limit)
        return respond_page(documents, total, page, limit)

    @app.route("/orders/all/me", methods=["GET"])
    @gate.login_required
    def list_my_orders():
        page, limit = page_args(default_limit=5)
        documents, total = orders.list({"customer": current_identity().id}, page, limit)
        return respond_page(documents, total, page, limit)

    @app.route("/orders/<order_number>", methods=["GET"])
    @gate.roles_required(Role.ADMIN)
    def get_order(order_number: str):
        order_document = orders.find_by_number(parse_order_number(order_number))
        if not order_document:
            raise NotFound("Order not found.")
        return respond(order_document)

    @app.route("/orders/me/<order_number>", methods=["GET"])
    @gate.login_required
    def get_my_order(order_number: str):
        # Foreign orders look exactly like missing ones.
        order_document = orders.find_by_number(
            parse_order_number(order_number), customer=current_identity().id
        )
        if not order_document:
            raise NotFound("Order not found.")
        return respond(order_document)

    @app.route("/orders/<order_number>", methods=["PATCH"])
    @gate.roles_required(Role.ADMIN)
    def update_order_status(order_number: str):
        payload = request.get_json(silent=True) or {}
        status = parse_status(payload.get("status"))
        order_document = orders.update_status(parse_order_number(order_number), status)
        app.logger.info("Order %s is now %s", order_number, status.value)
        return respond(order_document)

    @app.route("/orders/<order_id>", methods=["DELETE"])
    @gate.roles_required(Role.ADMIN)
    def delete_order(order_id: str):
        order_document = orders.delete(order_id)
        refresh_customer_stats(users, order_document.get("customer"))
        app.logger.info("Deleted order %s", order_document.get("order_number"))
        return respond(order_document)
