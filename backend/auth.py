from flask import jsonify, request

from errors import BadRequest, NotFound, Unauthorized
from gate import current_identity
from tokens import TokenError, TokenExpired, TokenRevoked
from users import normalize_email, serialize_user

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password."
PROFILE_FIELDS = ("name", "email")


def unauthorized_from(error: TokenError) -> Unauthorized:
    if isinstance(error, TokenExpired):
        return Unauthorized("Refresh token has expired.", Unauthorized.TOKEN_EXPIRED)
    if isinstance(error, TokenRevoked):
        return Unauthorized("Refresh token has been revoked.", Unauthorized.TOKEN_REVOKED)
    return Unauthorized(code=Unauthorized.INVALID_TOKEN)


def register_auth_routes(app, settings, gate, tokens, users) -> None:
    refresh_cookie = settings.refresh_cookie_name
    refresh_max_age = int(settings.refresh_token_ttl.total_seconds())

    def set_refresh_cookie(response, token: str):
        response.set_cookie(
            refresh_cookie,
            token,
            max_age=refresh_max_age,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )

    def clear_refresh_cookie(response):
        response.delete_cookie(
            refresh_cookie,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )

    def signed_in(user_document, pair, status_code=200):
        response = jsonify(
            {
                "success": True,
                "user": serialize_user(user_document),
                "access_token": pair.access_token,
            }
        )
        set_refresh_cookie(response, pair.refresh_token)
        return response, status_code

    def read_refresh_cookie() -> str:
        token = request.cookies.get(refresh_cookie, "")
        if not token:
            raise Unauthorized(code=Unauthorized.MISSING_CREDENTIALS)
        return token

    @app.route("/auth/register", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        user_document = users.create(
            email=payload.get("email"),
            password=str(payload.get("password") or ""),
            name=payload.get("name"),
            phone=payload.get("phone") or "",
        )
        app.logger.info("Registered user %s", user_document["_id"])
        return signed_in(user_document, tokens.issue_pair(user_document), 201)

    @app.route("/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")
        if not email or not password:
            raise BadRequest("Email and password are required.")

        user_document = users.authenticate(email, password)
        if not user_document:
            app.logger.warning("Failed sign-in for %s", email)
            raise Unauthorized(INVALID_CREDENTIALS_MESSAGE, Unauthorized.INVALID_CREDENTIALS)

        app.logger.info("User %s signed in", user_document["_id"])
        return signed_in(user_document, tokens.issue_pair(user_document))

    @app.route("/auth/token", methods=["GET"])
    def refresh_access_token():
        try:
            pair, user_document = tokens.rotate_refresh_token(read_refresh_cookie())
        except TokenError as exc:
            raise unauthorized_from(exc)
        return signed_in(user_document, pair)

    @app.route("/auth/logout", methods=["GET"])
    def logout():
        try:
            claims = tokens.revoke_refresh_token(read_refresh_cookie())
        except TokenError as exc:
            raise unauthorized_from(exc)

        app.logger.info("User %s signed out", claims["sub"])
        response = jsonify({"success": True})
        clear_refresh_cookie(response)
        return response

    @app.route("/auth/user", methods=["GET"])
    @gate.login_required
    def get_current_user():
        user_document = users.find_by_id(current_identity().id)
        if not user_document:
            raise NotFound("User not found.")
        return jsonify({"success": True, "user": serialize_user(user_document)})

    @app.route("/auth/me", methods=["PATCH"])
    @gate.login_required
    def update_current_user():
        payload = request.get_json(silent=True) or {}
        updates = {key: payload[key] for key in PROFILE_FIELDS if key in payload}
        user_document = users.update_profile(current_identity().id, updates)
        return jsonify({"success": True, "user": serialize_user(user_document)})

    @app.route("/auth/user/roles", methods=["GET"])
    @gate.login_required
    def get_current_user_roles():
        roles = sorted(role.value for role in current_identity().roles)
        return jsonify({"success": True, "roles": roles})
