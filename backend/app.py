import logging
import os
from typing import Optional

from flask import Flask
from flask_cors import CORS
from flask_pymongo import PyMongo
from pymongo.errors import PyMongoError
from werkzeug.middleware.proxy_fix import ProxyFix

from auth import register_auth_routes
from config import Settings
from customers import register_customer_routes
from errors import register_error_handlers
from gate import AuthorizationGate
from orders import OrderAssembler, OrderStore, register_order_routes
from products import ProductStore, register_product_routes
from tokens import TokenService
from uploads import register_upload_routes
from users import UserStore, build_password_hasher


def create_app(settings: Optional[Settings] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``database`` lets callers hand in an existing pymongo database instead
    of connecting to ``settings.mongo_uri``.
    """
    settings = settings or Settings.from_env()
    settings.validate()

    app = Flask(__name__)
    app.logger.setLevel(getattr(logging, settings.log_level, logging.INFO))

    # Honor proxy headers so client addresses and scheme survive the hop.
    if settings.trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=settings.trusted_proxy_hops,
            x_proto=settings.trusted_proxy_hops,
            x_host=settings.trusted_proxy_hops,
            x_port=settings.trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["MONGO_URI"] = settings.mongo_uri
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_mb * 1024 * 1024

    # --- Initialize extensions ---
    CORS(app, supports_credentials=True, origins=list(settings.cors_origins))

    if database is None:
        database = PyMongo(app).db

    users = UserStore(database, build_password_hasher(settings), settings.admin_emails)
    products = ProductStore(database)
    orders = OrderStore(database)
    tokens = TokenService(settings, users)
    gate = AuthorizationGate(settings, tokens, users)
    assembler = OrderAssembler(settings, products, orders, users)

    for store in (users, products, orders):
        try:
            store.ensure_indexes()
        except PyMongoError as exc:
            app.logger.warning(
                "Unable to ensure indexes for %s: %s", type(store).__name__, exc
            )

    # --- ROUTES ---
    register_error_handlers(app)
    register_auth_routes(app, settings, gate, tokens, users)
    register_product_routes(app, gate, products)
    register_order_routes(app, gate, assembler, orders, users, products)
    register_customer_routes(app, gate, users)
    register_upload_routes(app, settings, gate)

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
