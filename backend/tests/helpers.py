from bson import ObjectId

from config import Settings

ADMIN_EMAIL = "admin@example.com"
PASSWORD = "secret1"


def make_settings(**overrides) -> Settings:
    values = dict(
        access_token_secret="access-test-secret",
        refresh_token_secret="refresh-test-secret",
        cookie_secure=False,
        admin_emails=frozenset({ADMIN_EMAIL}),
        trusted_proxy_hops=0,
        password_time_cost=1,
        password_memory_cost=1024,
        password_parallelism=1,
    )
    values.update(overrides)
    return Settings(**values)


def bearer(token: str):
    return {"Authorization": f"Bearer {token}"}


def with_cookie(name: str, value: str):
    return {"Cookie": f"{name}={value}"}


def response_cookie(response, name: str = "refreshToken"):
    """Return the raw Set-Cookie header for ``name`` or None."""
    for header in response.headers.getlist("Set-Cookie"):
        if header.split("=", 1)[0] == name:
            return header
    return None


def cookie_value(response, name: str = "refreshToken") -> str:
    header = response_cookie(response, name) or ""
    return header.split("=", 1)[1].split(";", 1)[0] if header else ""


def sign_up(client, email: str, password: str = PASSWORD, name: str = "Alice"):
    response = client.post(
        "/auth/register", json={"email": email, "password": password, "name": name}
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()["access_token"], cookie_value(response)


def add_product(db, title: str, price=10) -> ObjectId:
    return db.products.insert_one({"title": title, "price": price}).inserted_id
