import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from flask import jsonify, request
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from errors import BadRequest, Conflict, NotFound
from pagination import page_args, pagination_payload
from users import Role, to_object_id

TITLE_MIN_LENGTH = 2
TITLE_MAX_LENGTH = 30
MAX_PRICE = 1_000_000
PRODUCT_FIELDS = ("title", "description", "category", "price", "image")


def normalize_price(value) -> Optional[float]:
    """None means the product is not for sale."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise BadRequest("Price must be a number or null.")
    if isinstance(value, float) and not math.isfinite(value):
        raise BadRequest("Price must be a finite number.")
    if not 0 <= value <= MAX_PRICE:
        raise BadRequest(f"Price must be between 0 and {MAX_PRICE}.")
    return round(float(value), 2)


def normalize_title(value) -> str:
    title = value.strip() if isinstance(value, str) else ""
    if not TITLE_MIN_LENGTH <= len(title) <= TITLE_MAX_LENGTH:
        raise BadRequest(
            f'Field "title" must be a string of {TITLE_MIN_LENGTH} to {TITLE_MAX_LENGTH} characters.'
        )
    return title


def normalize_image(value) -> Optional[Dict[str, str]]:
    if not value:
        return None
    if isinstance(value, str):
        return {"file_name": value.strip(), "original_name": ""}
    if isinstance(value, dict):
        file_name = value.get("file_name") or value.get("fileName") or ""
        original_name = value.get("original_name") or value.get("originalName") or ""
        return {"file_name": str(file_name).strip(), "original_name": str(original_name).strip()}
    raise BadRequest("Image must be an uploaded file reference.")


def serialize_product(product_document) -> Dict[str, object]:
    if not product_document:
        return {}
    created_at = product_document.get("created_at")
    return {
        "id": str(product_document.get("_id")),
        "title": product_document.get("title", "") or "",
        "description": product_document.get("description", "") or "",
        "category": product_document.get("category", "") or "",
        "price": product_document.get("price"),
        "image": product_document.get("image"),
        "created_at": created_at.isoformat() if isinstance(created_at, datetime) else None,
    }


class ProductStore:
    """Read access the order assembler needs, plus admin CRUD."""

    def __init__(self, db):
        self.collection = db.products

    def ensure_indexes(self) -> None:
        self.collection.create_index("title", unique=True)

    def find_by_id(self, product_id):
        object_id = to_object_id(product_id)
        if object_id is None:
            return None
        return self.collection.find_one({"_id": object_id})

    def find_by_ids(self, product_ids: Iterable) -> List[Dict]:
        return list(self.collection.find({"_id": {"$in": list(product_ids)}}))

    def list(self, page: int, limit: int) -> Tuple[List[Dict], int]:
        cursor = (
            self.collection.find({})
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return list(cursor), self.collection.count_documents({})

    def create(self, payload: Dict):
        product_document = {
            "title": normalize_title(payload.get("title")),
            "description": str(payload.get("description") or "").strip(),
            "category": str(payload.get("category") or "").strip(),
            "price": normalize_price(payload.get("price")),
            "image": normalize_image(payload.get("image")),
            "created_at": datetime.utcnow(),
        }
        try:
            result = self.collection.insert_one(product_document)
        except DuplicateKeyError:
            raise Conflict("A product with this title already exists.")
        product_document["_id"] = result.inserted_id
        return product_document

    def update(self, product_id, payload: Dict):
        object_id = to_object_id(product_id)
        if object_id is None:
            raise BadRequest("Invalid product identifier.")

        updates: Dict[str, object] = {}
        if "title" in payload:
            updates["title"] = normalize_title(payload.get("title"))
        if "description" in payload:
            updates["description"] = str(payload.get("description") or "").strip()
        if "category" in payload:
            updates["category"] = str(payload.get("category") or "").strip()
        if "price" in payload:
            updates["price"] = normalize_price(payload.get("price"))
        if "image" in payload:
            updates["image"] = normalize_image(payload.get("image"))

        if updates:
            try:
                self.collection.update_one({"_id": object_id}, {"$set": updates})
            except DuplicateKeyError:
                raise Conflict("A product with this title already exists.")

        product_document = self.collection.find_one({"_id": object_id})
        if not product_document:
            raise NotFound("Product not found.")
        return product_document

    def delete(self, product_id):
        object_id = to_object_id(product_id)
        if object_id is None:
            raise BadRequest("Invalid product identifier.")
        product_document = self.collection.find_one({"_id": object_id})
        if not product_document:
            raise NotFound("Product not found.")
        self.collection.delete_one({"_id": object_id})
        return product_document


def register_product_routes(app, gate, products: ProductStore) -> None:
    @app.route("/product", methods=["GET"])
    def list_products():
        page, limit = page_args(default_limit=5)
        documents, total = products.list(page, limit)
        return jsonify(
            {
                "items": [serialize_product(document) for document in documents],
                "pagination": pagination_payload(total, page, limit),
            }
        )

    @app.route("/product", methods=["POST"])
    @gate.roles_required(Role.ADMIN)
    def create_product():
        payload = request.get_json(silent=True) or {}
        product_document = products.create(payload)
        app.logger.info("Created product %s", product_document["_id"])
        return jsonify(serialize_product(product_document)), 201

    @app.route("/product/<product_id>", methods=["PATCH"])
    @gate.roles_required(Role.ADMIN)
    def update_product(product_id: str):
        payload = request.get_json(silent=True) or {}
        updates = {key: payload[key] for key in PRODUCT_FIELDS if key in payload}
        return jsonify(serialize_product(products.update(product_id, updates)))

    @app.route("/product/<product_id>", methods=["DELETE"])
    @gate.roles_required(Role.ADMIN)
    def delete_product(product_id: str):
        product_document = products.delete(product_id)
        app.logger.info("Deleted product %s", product_id)
        return jsonify(serialize_product(product_document))
