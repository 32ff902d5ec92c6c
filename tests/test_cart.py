import pydantic
import pytest
from bson import ObjectId

import cart
from conftest import stock


def cart_line(product_id, quantity=1, color="Red", size="M"):
    return {"product_id": product_id, "color": color, "size": size, "quantity": quantity}


def test_empty_cart(client, user_headers):
    res = client.get("/api/cart", headers=user_headers)
    assert res.status_code == 200
    assert res.json() == {"items": [], "total_items": 0, "total_amount": 0}


def test_adding_same_line_twice_merges_quantities(client, db, user, user_headers, product_id):
    client.post("/api/cart/add", json=cart_line(product_id, 2), headers=user_headers)
    res = client.post("/api/cart/add", json=cart_line(product_id, 1), headers=user_headers)

    assert res.status_code == 200
    cart = res.json()
    assert len(cart["items"]) == 1
    line = cart["items"][0]
    assert line["size"] == {"name": "M", "quantity": 3}
    assert line["product"] == {"id": product_id, "name": "Classic Tee", "category": "men"}
    assert cart["total_items"] == 3
    assert cart["total_amount"] == line["price"] * 3 == 60.0
    # adding to the cart never touches stock
    assert stock(db, product_id, "Red", "M") == 5


def test_different_sizes_are_separate_lines(client, user_headers, product_id):
    client.post("/api/cart/add", json=cart_line(product_id, 1), headers=user_headers)
    res = client.post("/api/cart/add", json=cart_line(product_id, 1, size="L"), headers=user_headers)

    cart = res.json()
    assert [i["size"]["name"] for i in cart["items"]] == ["M", "L"]
    assert cart["total_amount"] == 40.0


def test_legacy_user_cart_is_mirrored(client, db, user, user_headers, product_id):
    client.post("/api/cart/add", json=cart_line(product_id, 2), headers=user_headers)
    client.post("/api/cart/add", json=cart_line(product_id, 1, color="Blue", size="S"), headers=user_headers)

    legacy = db["user"].find_one({"_id": user["_id"]})["cart"]
    assert legacy == [{"product": product_id, "quantity": 3}]


def test_add_checks_stock_against_merged_quantity(client, user_headers, product_id):
    assert client.post("/api/cart/add", json=cart_line(product_id, 4), headers=user_headers).status_code == 200

    res = client.post("/api/cart/add", json=cart_line(product_id, 2), headers=user_headers)

    assert res.status_code == 400
    assert "Insufficient stock" in res.json()["error"]


def test_add_rejects_unknown_product_color_and_size(client, user_headers, product_id):
    res = client.post("/api/cart/add", json=cart_line("64b000000000000000000000"), headers=user_headers)
    assert res.status_code == 404

    res = client.post("/api/cart/add", json=cart_line(product_id, color="Green"), headers=user_headers)
    assert res.status_code == 400

    res = client.post("/api/cart/add", json=cart_line(product_id, color="Blue", size="M"), headers=user_headers)
    assert res.status_code == 400
    assert 'Size "M" not found for color "Blue"' in res.json()["error"]


def test_update_sets_quantity_and_rederives_totals(client, user_headers, product_id):
    client.post("/api/cart/add", json=cart_line(product_id, 1), headers=user_headers)

    res = client.put("/api/cart/update", json=cart_line(product_id, 4), headers=user_headers)

    assert res.status_code == 200
    assert res.json()["items"][0]["size"]["quantity"] == 4
    assert res.json()["total_items"] == 4
    assert res.json()["total_amount"] == 80.0


def test_update_missing_cart_or_line_is_404(client, user_headers, product_id):
    res = client.put("/api/cart/update", json=cart_line(product_id, 2), headers=user_headers)
    assert res.status_code == 404
    assert res.json()["error"] == "Cart not found"

    client.post("/api/cart/add", json=cart_line(product_id, 1), headers=user_headers)
    res = client.put("/api/cart/update", json=cart_line(product_id, 2, size="L"), headers=user_headers)
    assert res.status_code == 404
    assert res.json()["error"] == "Item not found in cart"


def test_update_rejects_zero_quantity(client, user_headers, product_id):
    client.post("/api/cart/add", json=cart_line(product_id, 1), headers=user_headers)
    res = client.put("/api/cart/update", json=cart_line(product_id, 0), headers=user_headers)
    assert res.status_code == 400


def test_remove_line(client, db, user, user_headers, product_id):
    client.post("/api/cart/add", json=cart_line(product_id, 2), headers=user_headers)
    client.post("/api/cart/add", json=cart_line(product_id, 1, size="L"), headers=user_headers)

    res = client.request(
        "DELETE",
        "/api/cart/remove",
        json={"product_id": product_id, "color": "Red", "size": "M"},
        headers=user_headers,
    )

    assert res.status_code == 200
    assert [i["size"]["name"] for i in res.json()["items"]] == ["L"]
    assert res.json()["total_amount"] == 20.0
    assert db["user"].find_one({"_id": user["_id"]})["cart"] == [{"product": product_id, "quantity": 1}]


def test_clear_cart(client, db, user, user_headers, product_id):
    assert client.delete("/api/cart/clear", headers=user_headers).status_code == 404

    client.post("/api/cart/add", json=cart_line(product_id, 2), headers=user_headers)
    res = client.delete("/api/cart/clear", headers=user_headers)

    assert res.json() == {"message": "Cart cleared successfully"}
    cart = client.get("/api/cart", headers=user_headers).json()
    assert cart["items"] == []
    assert cart["total_amount"] == 0
    assert db["user"].find_one({"_id": user["_id"]})["cart"] == []


def test_cart_is_built_from_legacy_entries(client, db, user, user_headers, product_id):
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"cart": [{"product": product_id, "quantity": 2}, {"product": str(ObjectId()), "quantity": 1}]}},
    )

    res = client.get("/api/cart", headers=user_headers)

    cart = res.json()
    assert len(cart["items"]) == 1
    line = cart["items"][0]
    assert line["color_variant"]["color"]["name"] == "Red"
    assert line["size"] == {"name": "M", "quantity": 2}
    assert cart["total_amount"] == 40.0
    assert db["cart"].count_documents({"user": str(user["_id"])}) == 1


def test_unusable_legacy_entries_are_skipped(client, db, user, user_headers, product_id):
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"cart": [
            {"product": "not-an-id", "quantity": 1},
            {"product": product_id, "quantity": 0},
            {"product": product_id, "quantity": 1},
        ]}},
    )

    res = client.get("/api/cart", headers=user_headers)

    assert res.status_code == 200
    assert [i["size"]["quantity"] for i in res.json()["items"]] == [1]
    assert res.json()["total_amount"] == 20.0


def test_cart_lines_are_validated_before_writing(db, user, product_id):
    line = {
        "product": product_id,
        "color_variant": {"color": {"name": "Red", "hex_code": "#FF0000"}, "images": []},
        "size": {"name": "M", "quantity": 0},
        "price": 20.0,
    }

    with pytest.raises(pydantic.ValidationError):
        cart._save(db, str(user["_id"]), [line])

    assert db["cart"].count_documents({}) == 0
