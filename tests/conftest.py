# tests/conftest.py

import itertools
import os
import tempfile

import pytest

# Set test environment variables before the app module reads its config
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["UPLOAD_FOLDER"] = tempfile.mkdtemp(prefix="marketplace-uploads-")
os.environ["JWT_SECRET"] = "test-jwt-secret-with-enough-bytes-for-hs256"
os.environ["GOOGLE_CLIENT_ID"] = "test-client.apps.googleusercontent.com"
os.environ["EXPOSE_ERRORS"] = "true"
os.environ["COOKIE_SECURE"] = "false"

from app import app as flask_app, seed_core  # noqa: E402
from auth import issue_session_token  # noqa: E402
from catalog import find_or_create_location  # noqa: E402
from extensions import db  # noqa: E402
from models import Category, CategoryProduct, ListingStatus, Product, User, utcnow  # noqa: E402


@pytest.fixture
def app():
    """Fresh schema and seed rows for every test.

    No app context is held while the test runs, so each test-client request
    gets its own context (and its own Flask-Login user cache).
    """
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        seed_core()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """Create a user and return its id."""
    counter = itertools.count(1)

    def _make_user(**fields):
        n = next(counter)
        fields.setdefault("email", f"user{n}@example.com")
        fields.setdefault("username", f"user{n}")
        with app.app_context():
            user = User(**fields)
            db.session.add(user)
            db.session.commit()
            return user.id

    return _make_user


@pytest.fixture
def make_category(app):
    def _make_category(name):
        with app.app_context():
            category = Category(name=name)
            db.session.add(category)
            db.session.commit()
            return category.id

    return _make_category


@pytest.fixture
def make_product(app, make_user):
    """Create a product directly in the database and return its id."""

    def _make_product(user_id=None, title="Road bike", description="Lightly used", price=100.0,
                      status=ListingStatus.ACTIVE, category_ids=(), city="Ljubljana",
                      country="Slovenia", created_at=None, deleted=False):
        if user_id is None:
            user_id = make_user()
        with app.app_context():
            product = Product(
                title=title,
                description=description,
                price=price,
                user_id=user_id,
                status_id=int(status),
                location=find_or_create_location(city, country),
            )
            if created_at is not None:
                product.created_at = created_at
            if deleted:
                product.deleted_at = utcnow()
            for category_id in category_ids:
                product.categories.append(CategoryProduct(category_id=category_id))
            db.session.add(product)
            db.session.commit()
            return product.id

    return _make_product


@pytest.fixture
def auth_headers(app):
    """Bearer header carrying a session token for the given user id."""

    def _auth_headers(user_id):
        with app.app_context():
            user = db.session.get(User, user_id)
            return {"Authorization": f"Bearer {issue_session_token(user)}"}

    return _auth_headers
