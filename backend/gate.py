import logging
from dataclasses import dataclass
from functools import wraps
from typing import Callable, FrozenSet, Optional, Sequence, Union

from bson import ObjectId
from flask import g, request

from errors import ApiError, Forbidden, NotFound, Unauthorized
from tokens import TokenError, TokenExpired
from users import Role, has_any_role, parse_roles, to_object_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Found:
    token: str


class Absent:
    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = Absent()

Extraction = Union[Found, Absent]
Strategy = Callable[[], Extraction]


def bearer_header() -> Extraction:
    header = request.headers.get("Authorization", "")
    scheme, _, credentials = header.strip().partition(" ")
    credentials = credentials.strip()
    if scheme.lower() == "bearer" and credentials:
        return Found(credentials)
    return ABSENT


def cookie(name: str) -> Strategy:
    def extract() -> Extraction:
        value = request.cookies.get(name, "")
        return Found(value) if value else ABSENT

    extract.__name__ = f"cookie[{name}]"
    return extract


def first_found(strategies: Sequence[Strategy]) -> Extraction:
    for strategy in strategies:
        extracted = strategy()
        if isinstance(extracted, Found):
            return extracted
    return ABSENT


@dataclass(frozen=True)
class Identity:
    id: ObjectId
    email: str
    name: str
    roles: FrozenSet[Role]

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN in self.roles


class AuthorizationGate:
    """Resolves the caller of the current request into an ``Identity``.

    Access tokens come from the bearer header, then the access cookie. When
    neither is present and the fallback is enabled, the refresh cookie is
    accepted on its own. Any failure, expected or not, ends in Unauthorized.
    """

    def __init__(self, settings, tokens, users):
        self.tokens = tokens
        self.users = users
        self.access_strategies = (bearer_header, cookie(settings.access_cookie_name))
        self.refresh_strategies = (
            (cookie(settings.refresh_cookie_name),)
            if settings.refresh_cookie_fallback
            else ()
        )

    def authenticate(self) -> Identity:
        try:
            return self._authenticate()
        except ApiError:
            raise
        except Exception:
            logger.exception("Authentication failed unexpectedly")
            raise Unauthorized(code=Unauthorized.INVALID_TOKEN)

    def _authenticate(self) -> Identity:
        access = first_found(self.access_strategies)
        if isinstance(access, Found):
            try:
                claims = self.tokens.verify_access_token(access.token)
            except TokenExpired:
                raise Unauthorized("Access token has expired.", Unauthorized.TOKEN_EXPIRED)
            except TokenError:
                raise Unauthorized(code=Unauthorized.INVALID_TOKEN)
            return self._load_identity(claims["sub"])

        refresh = first_found(self.refresh_strategies)
        if isinstance(refresh, Found):
            try:
                claims = self.tokens.verify_refresh_token(refresh.token)
            except TokenError:
                raise Unauthorized(code=Unauthorized.INVALID_TOKEN)
            return self._load_identity(claims["sub"])

        raise Unauthorized(code=Unauthorized.MISSING_CREDENTIALS)

    def _load_identity(self, user_id) -> Identity:
        user_document = self.users.find_by_id(user_id, exclude_secrets=True)
        if not user_document:
            raise Unauthorized(code=Unauthorized.INVALID_TOKEN)
        return Identity(
            id=user_document["_id"],
            email=user_document.get("email", ""),
            name=user_document.get("name", ""),
            roles=parse_roles(user_document.get("roles")),
        )

    # --- Route decorators ---

    def login_required(self, view):
        @wraps(view)
        def decorated(*args, **kwargs):
            g.current_user = self.authenticate()
            return view(*args, **kwargs)

        return decorated

    def roles_required(self, *roles: Role):
        required = frozenset(roles)

        def decorator(view):
            @wraps(view)
            def decorated(*args, **kwargs):
                identity = self.authenticate()
                if not has_any_role(identity.roles, required):
                    raise Forbidden()
                g.current_user = identity
                return view(*args, **kwargs)

            return decorated

        return decorator

    def owner_required(
        self,
        lookup: Callable[[ObjectId], Optional[dict]],
        owner_field: str,
        view_arg: str = "id",
    ):
        """Only the owner of the looked-up resource (or an admin) may pass.

        A missing resource is NotFound so non-owners cannot probe for ids.
        """

        def decorator(view):
            @wraps(view)
            def decorated(*args, **kwargs):
                identity = self.authenticate()
                g.current_user = identity
                if identity.is_admin:
                    return view(*args, **kwargs)

                object_id = to_object_id(kwargs.get(view_arg))
                resource = lookup(object_id) if object_id is not None else None
                if not resource:
                    raise NotFound()
                if resource.get(owner_field) != identity.id:
                    raise Forbidden()
                return view(*args, **kwargs)

            return decorated

        return decorator


def current_identity() -> Identity:
    return g.current_user
