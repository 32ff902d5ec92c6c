"""
Checkout, order reads, status updates and cancellation.

Placement runs as a saga over single-document writes: every line's stock is
reserved with a guarded decrement, then the order is inserted. If a
reservation or the insert fails, the reservations already made are given
back before the error propagates. Cancellation returns stock to the same
color/size counters that placement took it from.
"""
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING
from pymongo.database import Database

from catalog import adjust_stock, check_stock, get_product, populate_items, require_price
from database import create_document, now_utc, oid
from errors import InsufficientStock, NotFound, PermissionDenied, StateError, ValidationError
from schemas import (
    CANCELLABLE_STATUSES,
    MOBILE_WALLETS,
    ORDER_STATUSES,
    STATUS_TRANSITIONS,
    Order,
    OrderCreateRequest,
    OrderStatusRequest,
    PaymentDetails,
)
from security import is_admin

logger = logging.getLogger(__name__)

PAYMENT_NUMBER_RE = re.compile(r"[0-9]{11}")
MIN_TRANSACTION_ID_LENGTH = 6


def validate_payment(method: str, details: Optional[PaymentDetails]) -> None:
    if method not in MOBILE_WALLETS:
        return
    if not details or not details.payment_number or not details.transaction_id:
        raise ValidationError(f"For {method} payments, payment_number and transaction_id are required")
    if not PAYMENT_NUMBER_RE.fullmatch(details.payment_number):
        raise ValidationError("Payment number should be a valid 11-digit phone number")
    if len(details.transaction_id) < MIN_TRANSACTION_ID_LENGTH:
        raise ValidationError("Transaction ID is invalid")


def build_line_items(db: Database, req: OrderCreateRequest) -> Tuple[List[Dict[str, Any]], float]:
    """Check every requested line against the catalog and snapshot it.

    Quantities for repeated (product, color, size) lines are added up before
    the stock check.
    """
    products: Dict[str, Dict[str, Any]] = {}
    requested: Dict[Tuple[str, str, str], int] = {}
    lines = []
    total = 0.0
    for item in req.items:
        product = products.get(item.product_id)
        if product is None:
            product = products[item.product_id] = get_product(db, item.product_id)
        key = (item.product_id, item.color, item.size)
        requested[key] = requested.get(key, 0) + item.quantity
        variant = check_stock(product, item.color, item.size, requested[key])
        price = require_price(product)
        lines.append({
            "product": item.product_id,
            "color_variant": {"color": variant["color"], "images": variant.get("images", [])},
            "size": {"name": item.size, "quantity": item.quantity},
            "quantity": item.quantity,
            "price": price,
        })
        total += price * item.quantity
    return lines, total


def release_stock(db: Database, lines: List[Dict[str, Any]]) -> int:
    """Give back each line's quantity. Returns how many lines could not be restored."""
    failed = 0
    for line in lines:
        color = line["color_variant"]["color"]["name"]
        size = line["size"]["name"]
        if not adjust_stock(db, line["product"], color, size, line["quantity"]):
            failed += 1
            logger.error(
                "Could not restore %d units of product %s (color %s, size %s)",
                line["quantity"], line["product"], color, size,
            )
    return failed


def reserve_stock(db: Database, lines: List[Dict[str, Any]]) -> None:
    reserved: List[Dict[str, Any]] = []
    try:
        for line in lines:
            color = line["color_variant"]["color"]["name"]
            size = line["size"]["name"]
            if not adjust_stock(db, line["product"], color, size, -line["quantity"]):
                raise InsufficientStock(
                    f'Insufficient stock for product {line["product"]} (size "{size}", color "{color}")'
                )
            reserved.append(line)
    except Exception:
        if reserved:
            logger.warning("Stock reservation failed; releasing %d reserved lines", len(reserved))
            release_stock(db, reserved)
        raise


def _attach_users(db: Database, orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = {o["user"] for o in orders if isinstance(o.get("user"), str)}
    users = {}
    if ids:
        for u in db["user"].find({"_id": {"$in": [oid(i) for i in ids]}}, {"name": 1, "email": 1}):
            users[str(u["_id"])] = {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")}
    for o in orders:
        o["user"] = users.get(o["user"], {"id": o["user"]})
    return orders


def place_order(db: Database, user: Dict[str, Any], req: OrderCreateRequest) -> Dict[str, Any]:
    validate_payment(req.payment_method, req.payment_details)
    lines, total = build_line_items(db, req)

    mobile = req.payment_method in MOBILE_WALLETS
    order = Order(
        user=str(user["_id"]),
        items=lines,
        total_amount=total,
        shipping_address=req.shipping_address,
        payment_method=req.payment_method,
        payment_details=req.payment_details,
        payment_status="paid" if mobile else "pending",
        status="pending",
        notes=req.notes,
    )

    reserve_stock(db, lines)
    try:
        order_id = create_document(db, "order", order)
    except Exception:
        logger.exception("Order insert failed for user %s; restoring reserved stock", user["_id"])
        release_stock(db, lines)
        raise

    logger.info("Order %s placed by %s: %d lines, total %.2f", order_id, user["_id"], len(lines), total)
    created = db["order"].find_one({"_id": oid(order_id)})
    return populate_items(db, [created])[0]


def list_user_orders(db: Database, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    cursor = db["order"].find({"user": str(user["_id"]), "deleted_at": None}).sort("created_at", DESCENDING)
    return populate_items(db, list(cursor))


def _find_order(db: Database, order_id: str) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": oid(order_id, "Order"), "deleted_at": None})
    if not order:
        raise NotFound("Order not found")
    return order


def get_order(db: Database, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    order = _find_order(db, order_id)
    if order["user"] != str(user["_id"]) and not is_admin(user):
        raise PermissionDenied("Not authorized to view this order")
    return _attach_users(db, populate_items(db, [order]))[0]


def update_status(db: Database, order_id: str, req: OrderStatusRequest) -> Dict[str, Any]:
    """Move an order along its lifecycle. Stock is not touched here.

    Re-sending the current status only updates tracking number and notes.
    """
    if req.status not in ORDER_STATUSES:
        raise ValidationError("Invalid status")
    order = _find_order(db, order_id)
    current = order["status"]
    if req.status != current and req.status not in STATUS_TRANSITIONS.get(current, ()):
        raise StateError(f"Cannot change order status from {current} to {req.status}")

    updates: Dict[str, Any] = {"status": req.status, "updated_at": now_utc()}
    if req.tracking_number is not None:
        updates["tracking_number"] = req.tracking_number
    if req.notes is not None:
        updates["notes"] = req.notes
    # a concurrent cancel or status change must not be overwritten
    result = db["order"].update_one({"_id": order["_id"], "status": current}, {"$set": updates})
    if result.matched_count == 0:
        raise StateError("Order status changed; reload and try again")
    logger.info("Order %s status %s -> %s", order_id, current, req.status)
    return populate_items(db, [db["order"].find_one({"_id": order["_id"]})])[0]


def cancel_order(db: Database, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    order = _find_order(db, order_id)
    if order["user"] != str(user["_id"]) and not is_admin(user):
        raise PermissionDenied("Not authorized to cancel this order")
    if order["status"] not in CANCELLABLE_STATUSES:
        raise StateError("Order cannot be cancelled at this stage")

    # the conditional write makes sure stock is restored only once
    result = db["order"].update_one(
        {"_id": order["_id"], "status": {"$in": list(CANCELLABLE_STATUSES)}},
        {"$set": {"status": "cancelled", "updated_at": now_utc()}},
    )
    if result.matched_count == 0:
        raise StateError("Order cannot be cancelled at this stage")
    release_stock(db, order["items"])
    logger.info("Order %s cancelled by %s", order_id, user["_id"])
    return populate_items(db, [db["order"].find_one({"_id": order["_id"]})])[0]


def list_orders(
    db: Database, page: int = 1, limit: int = 10, status: Optional[str] = None, search: Optional[str] = None
) -> Dict[str, Any]:
    query: Dict[str, Any] = {"deleted_at": None}
    if status:
        query["status"] = status
    if search:
        pattern = re.escape(search)
        user_ids = [
            str(u["_id"])
            for u in db["user"].find(
                {"$or": [{"name": {"$regex": pattern, "$options": "i"}}, {"email": {"$regex": pattern, "$options": "i"}}]},
                {"_id": 1},
            )
        ]
        conditions: List[Dict[str, Any]] = []
        if re.fullmatch(r"[0-9a-fA-F]{24}", search):
            conditions.append({"_id": oid(search)})
        if user_ids:
            conditions.append({"user": {"$in": user_ids}})
        if not conditions:
            return {"orders": [], "total_pages": 0, "current_page": page, "total_orders": 0}
        query["$or"] = conditions

    cursor = db["order"].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    orders = _attach_users(db, populate_items(db, list(cursor)))
    total = db["order"].count_documents(query)
    return {
        "orders": orders,
        "total_pages": math.ceil(total / limit) if limit else 0,
        "current_page": page,
        "total_orders": total,
    }
