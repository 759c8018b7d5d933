import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Tuple
from uuid import uuid4

import jwt

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenError(Exception):
    pass


class TokenExpired(TokenError):
    pass


class TokenInvalid(TokenError):
    pass


class TokenRevoked(TokenError):
    pass


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


class TokenService:
    """Issues, verifies and rotates the access/refresh token pair.

    Access tokens are stateless. Refresh tokens are only valid while the
    HMAC fingerprint recorded at issuance is still present on the user, so
    logout and rotation revoke them without storing the raw token.
    """

    def __init__(self, settings, users):
        self.access_secret = settings.access_token_secret
        self.access_ttl = settings.access_token_ttl
        self.refresh_secret = settings.refresh_token_secret
        self.refresh_ttl = settings.refresh_token_ttl
        self.users = users

    def fingerprint(self, token: str) -> str:
        return hmac.new(
            self.refresh_secret.encode("utf-8"),
            token.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _sign(self, claims: Dict, secret: str, ttl) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            **claims,
            "iat": now,
            "exp": now + ttl,
            "jti": uuid4().hex,
        }
        return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)

    def _decode(self, token: str, secret: str, token_type: str) -> Dict:
        if not token or not isinstance(token, str):
            raise TokenInvalid("Token is missing.")
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["sub", "exp", "typ"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired("Token has expired.") from exc
        except jwt.InvalidTokenError as exc:
            raise TokenInvalid("Token is invalid.") from exc

        if claims.get("typ") != token_type:
            raise TokenInvalid("Unexpected token type.")
        return claims

    def issue_access_token(self, user_id, email: str) -> str:
        return self._sign(
            {"sub": str(user_id), "email": email, "typ": ACCESS_TOKEN_TYPE},
            self.access_secret,
            self.access_ttl,
        )

    def issue_refresh_token(self, user_id) -> str:
        token = self._new_refresh_token(user_id)
        if not self.users.add_refresh_fingerprint(user_id, self.fingerprint(token)):
            raise TokenInvalid("Unknown token subject.")
        return token

    def _new_refresh_token(self, user_id) -> str:
        return self._sign(
            {"sub": str(user_id), "typ": REFRESH_TOKEN_TYPE},
            self.refresh_secret,
            self.refresh_ttl,
        )

    def issue_pair(self, user_document) -> TokenPair:
        user_id = user_document["_id"]
        return TokenPair(
            access_token=self.issue_access_token(user_id, user_document.get("email", "")),
            refresh_token=self.issue_refresh_token(user_id),
        )

    def verify_access_token(self, token: str) -> Dict:
        return self._decode(token, self.access_secret, ACCESS_TOKEN_TYPE)

    def verify_refresh_token(self, token: str) -> Dict:
        claims = self._decode(token, self.refresh_secret, REFRESH_TOKEN_TYPE)
        if not self.users.has_refresh_fingerprint(claims["sub"], self.fingerprint(token)):
            logger.warning("Rejected revoked refresh token for user %s", claims["sub"])
            raise TokenRevoked("Token has been revoked.")
        return claims

    def rotate_refresh_token(self, old_token: str) -> Tuple[TokenPair, Dict]:
        """Consume ``old_token`` and return a fresh pair plus the owner."""
        claims = self.verify_refresh_token(old_token)
        user_document = self.users.find_by_id(claims["sub"])
        if not user_document:
            raise TokenInvalid("Unknown token subject.")

        new_refresh = self._new_refresh_token(user_document["_id"])
        swapped = self.users.replace_refresh_fingerprint(
            user_document["_id"],
            self.fingerprint(old_token),
            self.fingerprint(new_refresh),
        )
        if not swapped:
            logger.warning(
                "Refresh token for user %s was consumed concurrently", claims["sub"]
            )
            raise TokenRevoked("Token has been revoked.")

        logger.info("Rotated refresh token for user %s", claims["sub"])
        pair = TokenPair(
            access_token=self.issue_access_token(
                user_document["_id"], user_document.get("email", "")
            ),
            refresh_token=new_refresh,
        )
        return pair, user_document

    def revoke_refresh_token(self, token: str) -> Dict:
        claims = self.verify_refresh_token(token)
        if not self.users.remove_refresh_fingerprint(claims["sub"], self.fingerprint(token)):
            raise TokenRevoked("Token has been revoked.")
        logger.info("Revoked refresh token for user %s", claims["sub"])
        return claims
