"""
Per-user shopping cart.

A cart line is identified by (product, color name, size name). Totals are
rederived from the lines on every write, and the user's legacy ``cart``
list (product id and quantity only) is rebuilt from the same lines.
"""
import logging
from typing import Any, Dict, List, Tuple

from bson import ObjectId
from pymongo.database import Database

from catalog import check_stock, get_product, populate_items, require_price
from database import now_utc, oid
from errors import NotFound
from schemas import Cart, CartItemKey, CartItemRequest, effective_price

logger = logging.getLogger(__name__)


def line_key(item: Dict[str, Any]) -> Tuple[str, str, str]:
    return item["product"], item["color_variant"]["color"]["name"], item["size"]["name"]


def _matches(item: Dict[str, Any], key: CartItemKey) -> bool:
    return line_key(item) == (key.product_id, key.color, key.size)


def cart_totals(items: List[Dict[str, Any]]) -> Tuple[int, float]:
    total_items = sum(item["size"]["quantity"] for item in items)
    total_amount = sum(item["price"] * item["size"]["quantity"] for item in items)
    return total_items, total_amount


def _mirror_legacy_cart(db: Database, user_id: str, items: List[Dict[str, Any]]) -> None:
    quantities: Dict[str, int] = {}
    for item in items:
        quantities[item["product"]] = quantities.get(item["product"], 0) + item["size"]["quantity"]
    legacy = [{"product": pid, "quantity": qty} for pid, qty in quantities.items()]
    db["user"].update_one({"_id": oid(user_id)}, {"$set": {"cart": legacy, "updated_at": now_utc()}})


def _save(db: Database, user_id: str, items: List[Dict[str, Any]]) -> Dict[str, Any]:
    total_items, total_amount = cart_totals(items)
    doc = Cart(user=user_id, items=items, total_items=total_items, total_amount=total_amount).model_dump()
    stamp = now_utc()
    db["cart"].update_one(
        {"user": user_id},
        {
            "$set": {
                "items": doc["items"],
                "total_items": doc["total_items"],
                "total_amount": doc["total_amount"],
                "updated_at": stamp,
            },
            "$setOnInsert": {"created_at": stamp},
        },
        upsert=True,
    )
    _mirror_legacy_cart(db, user_id, doc["items"])
    return db["cart"].find_one({"user": user_id})


def _find_cart(db: Database, user_id: str) -> Dict[str, Any]:
    cart = db["cart"].find_one({"user": user_id})
    if not cart:
        raise NotFound("Cart not found")
    return cart


def _populated(db: Database, cart: Dict[str, Any]) -> Dict[str, Any]:
    return populate_items(db, [cart])[0]


def add_item(db: Database, user: Dict[str, Any], req: CartItemRequest) -> Dict[str, Any]:
    user_id = str(user["_id"])
    product = get_product(db, req.product_id)
    cart = db["cart"].find_one({"user": user_id}) or {"items": []}
    items = cart["items"]

    existing = next((item for item in items if _matches(item, req)), None)
    already = existing["size"]["quantity"] if existing else 0
    variant = check_stock(product, req.color, req.size, already + req.quantity)
    price = require_price(product)

    if existing:
        existing["size"]["quantity"] += req.quantity
    else:
        items.append({
            "product": req.product_id,
            "color_variant": {"color": variant["color"], "images": variant.get("images", [])},
            "size": {"name": req.size, "quantity": req.quantity},
            "price": price,
        })
    return _populated(db, _save(db, user_id, items))


def _cart_from_legacy(db: Database, user_id: str, legacy: List[Dict[str, Any]]) -> Dict[str, Any]:
    items = []
    for entry in legacy:
        product_id = entry.get("product")
        quantity = entry.get("quantity", 1)
        if not isinstance(product_id, str) or not ObjectId.is_valid(product_id):
            continue
        if not isinstance(quantity, int) or quantity < 1:
            continue
        product = db["product"].find_one({"_id": ObjectId(product_id)})
        if not product or not product.get("color_variants"):
            continue
        variant = product["color_variants"][0]
        price = effective_price(product)
        if not variant.get("sizes") or price is None:
            continue
        items.append({
            "product": product_id,
            "color_variant": {"color": variant["color"], "images": variant.get("images", [])},
            "size": {"name": variant["sizes"][0]["name"], "quantity": quantity},
            "price": price,
        })
    logger.info("Built cart for user %s from %d legacy entries", user_id, len(items))
    return _save(db, user_id, items)


def get_cart(db: Database, user: Dict[str, Any]) -> Dict[str, Any]:
    user_id = str(user["_id"])
    cart = db["cart"].find_one({"user": user_id})
    if cart:
        return _populated(db, cart)
    legacy = user.get("cart") or []
    if legacy:
        return _populated(db, _cart_from_legacy(db, user_id, legacy))
    return {"items": [], "total_items": 0, "total_amount": 0}


def update_item(db: Database, user: Dict[str, Any], req: CartItemRequest) -> Dict[str, Any]:
    user_id = str(user["_id"])
    cart = _find_cart(db, user_id)
    items = cart["items"]
    item = next((i for i in items if _matches(i, req)), None)
    if item is None:
        raise NotFound("Item not found in cart")
    product = get_product(db, req.product_id)
    check_stock(product, req.color, req.size, req.quantity)
    item["size"]["quantity"] = req.quantity
    return _populated(db, _save(db, user_id, items))


def remove_item(db: Database, user: Dict[str, Any], key: CartItemKey) -> Dict[str, Any]:
    user_id = str(user["_id"])
    cart = _find_cart(db, user_id)
    items = [i for i in cart["items"] if not _matches(i, key)]
    return _populated(db, _save(db, user_id, items))


def clear_cart(db: Database, user: Dict[str, Any]) -> None:
    user_id = str(user["_id"])
    _find_cart(db, user_id)
    _save(db, user_id, [])
