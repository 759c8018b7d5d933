import logging
import re
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from errors import BadRequest, Conflict

logger = logging.getLogger(__name__)

EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 30
PASSWORD_MIN_LENGTH = 6
DEFAULT_NAME = "Customer"

# Never leave the store through a read that feeds a response.
SECRET_FIELDS = {"password_hash": 0, "refresh_tokens": 0}

# Rotation retries when a concurrent login changes the fingerprint list.
FINGERPRINT_SWAP_ATTEMPTS = 5
# Oldest sessions are dropped beyond this many.
MAX_REFRESH_SESSIONS = 10


class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


def parse_roles(values: Optional[Iterable]) -> FrozenSet[Role]:
    roles = set()
    for value in values or ():
        try:
            roles.add(Role(str(value).strip().lower()))
        except ValueError:
            continue
    return frozenset(roles)


def has_any_role(roles: Iterable[Role], required: Iterable[Role]) -> bool:
    return bool(frozenset(roles) & frozenset(required))


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and EMAIL_REGEX.match(normalized))


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else None


def serialize_user(user_document) -> Dict[str, object]:
    if not user_document:
        return {}

    last_order = user_document.get("last_order")
    return {
        "id": str(user_document.get("_id")),
        "name": user_document.get("name", "") or "",
        "email": user_document.get("email", "") or "",
        "phone": user_document.get("phone", "") or "",
        "roles": sorted(role.value for role in parse_roles(user_document.get("roles"))),
        "total_amount": user_document.get("total_amount", 0) or 0,
        "order_count": user_document.get("order_count", 0) or 0,
        "last_order_date": _isoformat(user_document.get("last_order_date")),
        "last_order": str(last_order) if last_order else None,
        "created_at": _isoformat(user_document.get("created_at")),
    }


def build_password_hasher(settings) -> PasswordHasher:
    return PasswordHasher(
        time_cost=settings.password_time_cost,
        memory_cost=settings.password_memory_cost,
        parallelism=settings.password_parallelism,
    )


class UserStore:
    """Credential store over the ``users`` collection.

    Holds identity, the Argon2 password hash and the HMAC fingerprints of
    every refresh token issued to the user. Order aggregates kept on the
    document are derived and can be recomputed from ``orders`` at any time.
    """

    def __init__(self, db, hasher: PasswordHasher, admin_emails: Iterable[str] = ()):
        self.collection = db.users
        self.orders = db.orders
        self.hasher = hasher
        self.admin_emails = frozenset(normalize_email(email) for email in admin_emails)
        # Verified against on unknown emails so both login failures cost the same.
        self._decoy_hash = hasher.hash("decoy-password")

    def ensure_indexes(self) -> None:
        self.collection.create_index("email", unique=True)

    def find_by_id(self, user_id, exclude_secrets: bool = True):
        object_id = to_object_id(user_id)
        if object_id is None:
            return None
        projection = SECRET_FIELDS if exclude_secrets else None
        return self.collection.find_one({"_id": object_id}, projection)

    def find_by_ids(self, user_ids: Iterable) -> List[Dict]:
        return list(self.collection.find({"_id": {"$in": list(user_ids)}}, SECRET_FIELDS))

    def find_by_email(self, email: str, exclude_secrets: bool = True):
        projection = SECRET_FIELDS if exclude_secrets else None
        return self.collection.find_one({"email": normalize_email(email)}, projection)

    def list(self, page: int, limit: int) -> Tuple[List[Dict], int]:
        cursor = (
            self.collection.find({}, SECRET_FIELDS)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return list(cursor), self.collection.count_documents({})

    def create(self, email: str, password: str, name: Optional[str] = None, phone: str = ""):
        email = normalize_email(email)
        name = str(name or DEFAULT_NAME).strip()
        validate_email(email)
        validate_name(name)
        validate_password(password)

        roles = [Role.CUSTOMER.value]
        if email in self.admin_emails:
            roles.append(Role.ADMIN.value)

        now = datetime.utcnow()
        user_document = {
            "email": email,
            "name": name,
            "password_hash": self.hasher.hash(password),
            "roles": roles,
            "refresh_tokens": [],
            "total_amount": 0,
            "order_count": 0,
            "last_order_date": None,
            "last_order": None,
            "created_at": now,
            "updated_at": now,
        }
        if phone:
            user_document["phone"] = str(phone).strip()

        try:
            result = self.collection.insert_one(user_document)
        except DuplicateKeyError:
            raise Conflict("An account with this email already exists.")

        return self.find_by_id(result.inserted_id)

    def authenticate(self, email: str, password: str):
        """Return the user for a matching email/password pair, otherwise None.

        An unknown email and a wrong password are indistinguishable to the
        caller, and both perform one hash verification.
        """
        user = self.find_by_email(email, exclude_secrets=False)
        stored_hash = (user or {}).get("password_hash") or self._decoy_hash
        try:
            self.hasher.verify(stored_hash, str(password or ""))
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return None
        if not user:
            return None

        if self.hasher.check_needs_rehash(stored_hash):
            self.collection.update_one(
                {"_id": user["_id"]},
                {"$set": {"password_hash": self.hasher.hash(password)}},
            )
        return self.find_by_id(user["_id"])

    def update_profile(self, user_id, payload: Dict):
        object_id = to_object_id(user_id)
        updates: Dict[str, object] = {}

        if "name" in payload:
            name = str(payload.get("name") or "").strip()
            validate_name(name)
            updates["name"] = name
        if "email" in payload:
            email = normalize_email(payload.get("email"))
            validate_email(email)
            updates["email"] = email
        if "phone" in payload:
            updates["phone"] = str(payload.get("phone") or "").strip()
        if "password" in payload:
            password = str(payload.get("password") or "")
            validate_password(password)
            updates["password_hash"] = self.hasher.hash(password)
            # Existing sessions end with the old password.
            updates["refresh_tokens"] = []

        if updates:
            updates["updated_at"] = datetime.utcnow()
            try:
                self.collection.update_one({"_id": object_id}, {"$set": updates})
            except DuplicateKeyError:
                raise Conflict("An account with this email already exists.")
        return self.find_by_id(object_id)

    def delete(self, user_id):
        object_id = to_object_id(user_id)
        user_document = self.find_by_id(object_id)
        if user_document:
            self.collection.delete_one({"_id": object_id})
        return user_document

    # --- Refresh token fingerprints ---

    def add_refresh_fingerprint(self, user_id, fingerprint: str) -> bool:
        result = self.collection.update_one(
            {"_id": to_object_id(user_id)},
            {
                "$push": {
                    "refresh_tokens": {
                        "$each": [fingerprint],
                        "$slice": -MAX_REFRESH_SESSIONS,
                    }
                }
            },
        )
        return result.matched_count == 1

    def remove_refresh_fingerprint(self, user_id, fingerprint: str) -> bool:
        result = self.collection.update_one(
            {"_id": to_object_id(user_id), "refresh_tokens": fingerprint},
            {"$pull": {"refresh_tokens": fingerprint}},
        )
        return result.modified_count == 1

    def has_refresh_fingerprint(self, user_id, fingerprint: str) -> bool:
        object_id = to_object_id(user_id)
        if object_id is None:
            return False
        match = self.collection.find_one(
            {"_id": object_id, "refresh_tokens": fingerprint}, {"_id": 1}
        )
        return match is not None

    def replace_refresh_fingerprint(self, user_id, old: str, new: str) -> bool:
        """Swap ``old`` for ``new`` in a single conditional write.

        The write only lands if the list is unchanged since it was read, so
        two rotations of the same token cannot both succeed.
        """
        object_id = to_object_id(user_id)
        for _ in range(FINGERPRINT_SWAP_ATTEMPTS):
            document = self.collection.find_one({"_id": object_id}, {"refresh_tokens": 1})
            current = list((document or {}).get("refresh_tokens") or [])
            if old not in current:
                return False

            replaced = [fingerprint for fingerprint in current if fingerprint != old]
            replaced.append(new)
            result = self.collection.update_one(
                {"_id": object_id, "refresh_tokens": current},
                {"$set": {"refresh_tokens": replaced}},
            )
            if result.modified_count == 1:
                return True

        logger.warning("Gave up swapping refresh fingerprint for user %s", object_id)
        return False

    # --- Derived order aggregates ---

    def recalculate_order_stats(self, user_id):
        object_id = to_object_id(user_id)
        total_amount = 0.0
        order_count = 0
        last_order = None
        cursor = self.orders.find(
            {"customer": object_id}, {"total_amount": 1, "created_at": 1}
        ).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        for order_document in cursor:
            total_amount += float(order_document.get("total_amount") or 0)
            order_count += 1
            last_order = order_document

        stats = {
            "total_amount": round(total_amount, 2),
            "order_count": order_count,
            "last_order_date": last_order.get("created_at") if last_order else None,
            "last_order": last_order["_id"] if last_order else None,
        }
        self.collection.update_one({"_id": object_id}, {"$set": stats})
        return stats


def validate_email(email: str) -> None:
    if not is_valid_email(email):
        raise BadRequest("Please provide a valid email address.")


def validate_name(name: str) -> None:
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise BadRequest(
            f"Name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters."
        )


def validate_password(password: str) -> None:
    if len(password or "") < PASSWORD_MIN_LENGTH:
        raise BadRequest(
            f"Password must be at least {PASSWORD_MIN_LENGTH} characters long."
        )
