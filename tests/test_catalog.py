import pytest
from bson import ObjectId

from conftest import auth, product_payload, stock
from schemas import effective_price


@pytest.mark.parametrize(
    "doc, expected",
    [
        ({"sale_price": 10, "base_price": 20}, 10.0),
        ({"sale_price": None, "base_price": 20}, 20.0),
        ({"base_price": 0}, 0.0),
        ({"base_price": -1}, None),
        ({"base_price": "20"}, None),
        ({}, None),
    ],
)
def test_effective_price(doc, expected):
    assert effective_price(doc) == expected


def test_created_products_are_stored_through_the_model(db, admin, make_product):
    doc = db["product"].find_one({"_id": ObjectId(make_product(sale_price=14.0))})

    assert doc["ratings"] == [] and doc["total_reviews"] == 0
    assert doc["created_by"] == str(admin["_id"])
    assert doc["metadata"] == {"is_new_arrival": False, "is_best_seller": False, "is_sale": False, "sale_percentage": None}
    assert effective_price(doc) == 14.0


def test_admin_creates_product(client, admin_headers):
    payload = product_payload()
    payload["color_variants"][0]["images"] = [{"url": "tee-red.jpg"}]

    res = client.post("/api/products", json=payload, headers=admin_headers)

    assert res.status_code == 201
    product = res.json()
    assert product["color_variants"][0]["images"][0]["url"] == "/uploads/products/tee-red.jpg"
    assert product["average_rating"] == 0
    assert product["ratings"] == []


def test_non_admin_cannot_create_product(client, user_headers):
    res = client.post("/api/products", json=product_payload(), headers=user_headers)
    assert res.status_code == 403
    assert res.json()["error"] == "Admin access required"


@pytest.mark.parametrize(
    "mutate",
    [
        lambda p: p.update(color_variants=[]),
        lambda p: p["color_variants"][0].update(images=[]),
        lambda p: p["color_variants"][0].update(sizes=[]),
        lambda p: p["color_variants"][0]["sizes"].append({"name": "4XL", "quantity": 1}),
        lambda p: p["color_variants"][0]["sizes"].append({"name": "M", "quantity": 1}),
        lambda p: p["color_variants"][0]["sizes"][0].update(quantity=-1),
        lambda p: p["color_variants"][0]["color"].update(hex_code="red"),
        lambda p: p["color_variants"][1]["color"].update(name="Red"),
        lambda p: p.update(category="pets"),
    ],
)
def test_invalid_products_are_rejected(client, db, admin_headers, mutate):
    payload = product_payload()
    mutate(payload)

    res = client.post("/api/products", json=payload, headers=admin_headers)

    assert res.status_code == 400
    assert res.json()["error"]
    assert db["product"].count_documents({}) == 0


def test_get_product(client, product_id):
    res = client.get(f"/api/products/{product_id}")
    assert res.status_code == 200
    assert res.json()["id"] == product_id

    assert client.get("/api/products/64b000000000000000000000").status_code == 404
    assert client.get("/api/products/not-an-id").status_code == 404


def test_list_products_paginates(client, make_product):
    for name in ("Alpha Tee", "Beta Tee", "Gamma Tee"):
        make_product(name=name)

    res = client.get("/api/products", params={"limit": 2, "sort": "name"})

    body = res.json()
    assert body["total_pages"] == 2
    assert body["current_page"] == 1
    assert [p["name"] for p in body["products"]] == ["Alpha Tee", "Beta Tee"]

    body = client.get("/api/products", params={"limit": 2, "page": 2, "sort": "-name"}).json()
    assert [p["name"] for p in body["products"]] == ["Alpha Tee"]


def test_list_products_rejects_unknown_sort(client, product_id):
    assert client.get("/api/products", params={"sort": "password"}).status_code == 400


def test_search_and_filters(client, make_product):
    make_product()
    make_product(name="Denim Jacket", sub_category="jackets", base_price=90.0, tags=["denim"])
    make_product(name="Summer Dress", category="women", sub_category="dresses", base_price=50.0)

    names = lambda res: sorted(p["name"] for p in res.json())
    assert names(client.get("/api/products/search", params={"q": "denim"})) == ["Denim Jacket"]
    assert names(client.get("/api/products/search", params={"min_price": 40})) == ["Denim Jacket", "Summer Dress"]
    assert names(client.get("/api/products/search", params={"max_price": 60, "category": "men"})) == ["Classic Tee"]
    assert names(client.get("/api/products/category/women")) == ["Summer Dress"]
    assert names(client.get("/api/products/banner/DENIM")) == ["Denim Jacket"]


def test_related_products(client, make_product):
    pid = make_product()
    make_product(name="Pocket Tee", tags=["basics", "summer"])
    make_product(name="Other Tee", tags=["premium"])
    make_product(name="Basics Jacket", sub_category="jackets")

    res = client.get(f"/api/products/related/{pid}")

    assert res.json()["count"] == 1
    related = res.json()["related_products"][0]
    assert related["name"] == "Pocket Tee"
    assert related["price"] == 20.0
    assert related["image"] == "https://img.example.com/red.jpg"


def test_update_and_delete_product(client, admin_headers, user_headers, product_id):
    res = client.patch(f"/api/products/{product_id}", json={"sale_price": 15.0}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["sale_price"] == 15.0
    assert res.json()["name"] == "Classic Tee"

    assert client.patch(f"/api/products/{product_id}", json={}, headers=admin_headers).status_code == 400
    assert client.delete(f"/api/products/{product_id}", headers=user_headers).status_code == 403

    assert client.delete(f"/api/products/{product_id}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/products/{product_id}").status_code == 404
    assert client.delete(f"/api/products/{product_id}", headers=admin_headers).status_code == 404


def test_reviews_keep_average_in_step(client, make_user, user_headers, product_id):
    res = client.post(f"/api/products/{product_id}/reviews", json={"rating": 4, "review": "Nice"}, headers=user_headers)
    assert res.status_code == 201
    assert res.json()["message"] == "Review added successfully"

    res = client.post(f"/api/products/{product_id}/reviews", json={"rating": 2}, headers=user_headers)
    assert res.json()["message"] == "Review updated successfully"

    other = auth(make_user(email="second@example.com", name="Second"))
    client.post(f"/api/products/{product_id}/reviews", json={"rating": 5}, headers=other)

    reviews = client.get(f"/api/products/{product_id}/reviews").json()
    assert reviews["total_reviews"] == 2
    assert reviews["average_rating"] == 3.5
    assert {r["user"]["name"] for r in reviews["reviews"]} == {"Shopper", "Second"}

    assert client.delete(f"/api/products/{product_id}/reviews", headers=user_headers).status_code == 200
    assert client.get(f"/api/products/{product_id}").json()["average_rating"] == 5
    assert client.delete(f"/api/products/{product_id}/reviews", headers=user_headers).status_code == 404


def test_review_rating_bounds(client, user_headers, product_id):
    res = client.post(f"/api/products/{product_id}/reviews", json={"rating": 6}, headers=user_headers)
    assert res.status_code == 400


def test_admin_sets_size_stock(client, db, admin_headers, product_id):
    res = client.patch(
        f"/api/admin/products/{product_id}/inventory",
        json={"color": "Red", "size": "L", "quantity": 9},
        headers=admin_headers,
    )
    assert res.status_code == 200
    assert stock(db, product_id, "Red", "L") == 9
    assert stock(db, product_id, "Red", "M") == 5

    res = client.patch(
        f"/api/admin/products/{product_id}/inventory",
        json={"color": "Green", "size": "L", "quantity": 9},
        headers=admin_headers,
    )
    assert res.status_code == 400


def test_low_stock_report(client, admin_headers, product_id):
    res = client.get("/api/admin/products/low-stock", params={"threshold": 2}, headers=admin_headers)

    assert res.status_code == 200
    assert res.json() == [
        {"product_id": product_id, "name": "Classic Tee", "color": "Red", "size": "L", "quantity": 2}
    ]


def test_bulk_update_reports_each_entry(client, db, admin_headers, user_headers, make_product):
    first = make_product()
    second = make_product(name="Pocket Tee")
    body = {
        "products": [
            {"id": first, "sale_price": 12.0},
            {"sale_price": 10.0},
            {"id": "64b000000000000000000000", "sale_price": 10.0},
            {"id": second, "is_active": False},
            {"id": second},
        ]
    }

    assert client.post("/api/admin/products/bulk-update", json=body, headers=user_headers).status_code == 403
    res = client.post("/api/admin/products/bulk-update", json=body, headers=admin_headers)

    assert res.status_code == 200
    results = res.json()
    assert results[0]["id"] == first and results[0]["sale_price"] == 12.0
    assert results[1] == {"error": "Product ID is required"}
    assert results[2] == {"error": "Product not found", "id": "64b000000000000000000000"}
    assert results[3]["is_active"] is False
    assert results[4] == {"error": "No updates provided", "id": second}
    assert db["admin_activity"].count_documents({"entity_type": "product", "action": "update"}) == 2


def test_bulk_update_rejects_invalid_fields(client, admin_headers, product_id):
    body = {"products": [{"id": product_id, "base_price": -5}]}
    assert client.post("/api/admin/products/bulk-update", json=body, headers=admin_headers).status_code == 400


def test_product_writes_leave_an_audit_trail(client, admin_headers, product_id):
    created = client.post("/api/products", json=product_payload(name="Audit Tee"), headers=admin_headers).json()
    client.patch(f"/api/products/{product_id}", json={"sale_price": 15.0}, headers=admin_headers)
    client.patch(
        f"/api/admin/products/{product_id}/inventory",
        json={"color": "Red", "size": "L", "quantity": 9},
        headers=admin_headers,
    )
    client.delete(f"/api/products/{created['id']}", headers=admin_headers)

    logs = client.get("/api/admin/activity-logs", params={"entity_type": "product"}, headers=admin_headers).json()

    assert sorted((log["action"], log["entity_id"]) for log in logs) == sorted([
        ("create", created["id"]),
        ("update", product_id),
        ("update", product_id),
        ("delete", created["id"]),
    ])
    changes = [log["details"].get("changes") for log in logs if log["action"] == "update"]
    assert {"sale_price": 15.0} in changes
    assert {"color": "Red", "size": "L", "quantity": 9} in changes
    assert all(log["user_agent"] == "testclient" for log in logs)
