# tests/test_categories.py

from extensions import db
from models import Category, ListingStatus


def test_list_categories_with_counts(client, make_product):
    make_product(category_ids=[1])
    make_product(category_ids=[1, 2], status=ListingStatus.SOLD)
    make_product(category_ids=[2], deleted=True)

    categories = client.get("/api/categories").get_json()
    assert categories == [
        {"id": 1, "name": "electronics", "productCount": 2},
        {"id": 2, "name": "computers", "productCount": 1},
    ]


def test_get_category(client):
    response = client.get("/api/categories/2")
    assert response.get_json() == {"category": {"id": 2, "name": "computers"}}

    missing = client.get("/api/categories/99")
    assert missing.status_code == 404
    assert missing.get_json() == {"error": "Category not found"}


def test_category_changes_require_login(client):
    assert client.post("/api/categories", json={"name": "toys"}).status_code == 401
    assert client.put("/api/categories/1", json={"name": "toys"}).status_code == 401
    assert client.delete("/api/categories/1").status_code == 401


def test_create_category(client, app, make_user, auth_headers):
    headers = auth_headers(make_user())

    created = client.post("/api/categories", json={"name": "  furniture "}, headers=headers)
    assert created.status_code == 201
    assert created.get_json()["name"] == "furniture"

    duplicate = client.post("/api/categories", json={"name": "furniture"}, headers=headers)
    assert duplicate.status_code == 409

    blank = client.post("/api/categories", json={"name": "   "}, headers=headers)
    assert blank.status_code == 400
    assert blank.get_json() == {"error": "Category name is required"}

    with app.app_context():
        assert Category.query.count() == 3


def test_rename_category(client, make_user, auth_headers):
    headers = auth_headers(make_user())

    renamed = client.put("/api/categories/2", json={"name": "laptops"}, headers=headers)
    assert renamed.status_code == 200
    assert renamed.get_json() == {"id": 2, "name": "laptops"}

    clash = client.put("/api/categories/2", json={"name": "electronics"}, headers=headers)
    assert clash.status_code == 409

    assert client.put("/api/categories/99", json={"name": "x"}, headers=headers).status_code == 404


def test_delete_unused_category(client, app, make_user, make_category, auth_headers):
    category_id = make_category("garden")
    response = client.delete(f"/api/categories/{category_id}", headers=auth_headers(make_user()))
    assert response.status_code == 200
    assert response.get_json()["category"] == {"id": category_id, "name": "garden"}

    with app.app_context():
        assert db.session.get(Category, category_id) is None


def test_delete_category_in_use_conflicts(client, make_user, make_product, auth_headers):
    make_product(category_ids=[1])
    response = client.delete("/api/categories/1", headers=auth_headers(make_user()))
    assert response.status_code == 409
    assert response.get_json() == {"error": "Category is in use"}
