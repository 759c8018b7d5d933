"""
Name: Pytest Configuration and Shared Fixtures

Responsibilities:
  - Put the backend modules on sys.path
  - Build the app against an in-memory mongomock database
  - Keep Argon2 cheap so the suite stays fast
"""

import sys
from pathlib import Path

import mongomock
import pytest

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from app import create_app  # noqa: E402
from helpers import make_settings  # noqa: E402
from products import ProductStore  # noqa: E402
from users import UserStore, build_password_hasher  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    return make_settings(upload_folder=str(tmp_path / "uploads"))


@pytest.fixture
def db():
    return mongomock.MongoClient().store


@pytest.fixture
def app(settings, db):
    return create_app(settings, database=db)


@pytest.fixture
def client(app):
    # Cookies are sent explicitly per request so each test controls them.
    return app.test_client(use_cookies=False)


@pytest.fixture
def users(settings, db):
    store = UserStore(db, build_password_hasher(settings), settings.admin_emails)
    store.ensure_indexes()
    return store


@pytest.fixture
def products(db):
    store = ProductStore(db)
    store.ensure_indexes()
    return store
