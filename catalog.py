"""
Product catalog: listing and search, admin product management, per-size
stock bookkeeping and product reviews.

Stock lives at ``color_variants.<i>.sizes.<j>.quantity``. Every stock change
goes through `adjust_stock`, which targets that one counter and, for
decrements, refuses to let it drop below zero.
"""
import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from database import now_utc, oid, serialize_doc
from errors import InsufficientStock, NotFound, ValidationError
from schemas import (
    BulkProductUpdateRequest,
    InventoryUpdateRequest,
    Product,
    ProductCreateRequest,
    ProductUpdateRequest,
    ReviewRequest,
    effective_price,
)

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = ("name", "base_price", "sale_price", "created_at", "average_rating", "total_reviews")
RELATED_LIMIT = 6


def get_product(db: Database, product_id: str) -> Dict[str, Any]:
    product = db["product"].find_one({"_id": oid(product_id, "Product")})
    if not product:
        raise NotFound(f"Product {product_id} not found")
    return product


def require_price(product: Dict[str, Any]) -> float:
    price = effective_price(product)
    if price is None:
        raise ValidationError(f"Product {product.get('name', product['_id'])} has no valid price")
    return price


def locate_variant(product: Dict[str, Any], color_name: str) -> Tuple[int, Dict[str, Any]]:
    variants = product.get("color_variants") or []
    if not variants:
        raise ValidationError(
            f"Product {product.get('name') or product['_id']} has incomplete data (missing color variants)"
        )
    for index, variant in enumerate(variants):
        if (variant.get("color") or {}).get("name") == color_name:
            return index, variant
    raise ValidationError(f'Color "{color_name}" not found for product {product.get("name")}')


def locate_size(product: Dict[str, Any], variant: Dict[str, Any], size_name: str) -> Tuple[int, Dict[str, Any]]:
    for index, size in enumerate(variant.get("sizes") or []):
        if size.get("name") == size_name:
            return index, size
    color_name = variant["color"]["name"]
    raise ValidationError(
        f'Size "{size_name}" not found for color "{color_name}" for product {product.get("name")}'
    )


def check_stock(product: Dict[str, Any], color_name: str, size_name: str, wanted: int) -> Dict[str, Any]:
    """Return the color variant after checking ``wanted`` units of the size are on hand."""
    _, variant = locate_variant(product, color_name)
    _, size = locate_size(product, variant, size_name)
    if size.get("quantity", 0) < wanted:
        raise InsufficientStock(
            f'Insufficient stock for product {product.get("name")} '
            f'(size "{size_name}", color "{color_name}"): {size.get("quantity", 0)} available'
        )
    return variant


def adjust_stock(db: Database, product_id: str, color_name: str, size_name: str, delta: int) -> bool:
    """Add ``delta`` to one color/size counter.

    Returns False when the product, color or size no longer exists, or when
    a decrement would take the counter below zero. Nothing is written then.
    """
    product = db["product"].find_one({"_id": oid(product_id, "Product")}, {"color_variants": 1})
    if not product:
        return False
    for i, variant in enumerate(product.get("color_variants") or []):
        if (variant.get("color") or {}).get("name") != color_name:
            continue
        for j, size in enumerate(variant.get("sizes") or []):
            if size.get("name") != size_name:
                continue
            path = f"color_variants.{i}.sizes.{j}"
            query: Dict[str, Any] = {
                "_id": product["_id"],
                f"color_variants.{i}.color.name": color_name,
                f"{path}.name": size_name,
            }
            if delta < 0:
                query[f"{path}.quantity"] = {"$gte": -delta}
            result = db["product"].update_one(
                query,
                {"$inc": {f"{path}.quantity": delta}, "$set": {"updated_at": now_utc()}},
            )
            return result.matched_count == 1
    return False


def product_summaries(db: Database, product_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """Minimal display fields (id, name, category) keyed by product id."""
    ids = {oid(pid) for pid in product_ids if isinstance(pid, str) and pid}
    if not ids:
        return {}
    cursor = db["product"].find({"_id": {"$in": list(ids)}}, {"name": 1, "category": 1})
    return {
        str(p["_id"]): {"id": str(p["_id"]), "name": p.get("name"), "category": p.get("category")}
        for p in cursor
    }


def populate_items(db: Database, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Serialize carts/orders, swapping each line's product id for its summary."""
    ids = [item.get("product") for doc in docs for item in doc.get("items", [])]
    summaries = product_summaries(db, ids)
    out = []
    for doc in docs:
        data = serialize_doc(doc)
        for item in data.get("items", []):
            pid = item.get("product")
            item["product"] = summaries.get(pid, {"id": pid, "name": None, "category": None})
        out.append(data)
    return out


# Listing
def _sort_spec(sort: Optional[str]) -> List[Tuple[str, int]]:
    if not sort:
        return [("created_at", DESCENDING)]
    direction = DESCENDING if sort.startswith("-") else ASCENDING
    field = sort.lstrip("-")
    if field not in SORTABLE_FIELDS:
        raise ValidationError(f"Cannot sort by {field}; use one of: {', '.join(SORTABLE_FIELDS)}")
    return [(field, direction)]


def list_products(
    db: Database, page: int = 1, limit: int = 10, sort: Optional[str] = None, category: Optional[str] = None
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if category:
        query["category"] = category
    cursor = db["product"].find(query).sort(_sort_spec(sort)).skip((page - 1) * limit).limit(limit)
    count = db["product"].count_documents(query)
    return {
        "products": [serialize_doc(p) for p in cursor],
        "total_pages": math.ceil(count / limit) if limit else 0,
        "current_page": page,
    }


def search_products(
    db: Database,
    q: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if q:
        pattern = re.escape(q)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"tags": {"$regex": pattern, "$options": "i"}},
        ]
    if category:
        query["category"] = category
    if min_price is not None or max_price is not None:
        bounds: Dict[str, float] = {}
        if min_price is not None:
            bounds["$gte"] = min_price
        if max_price is not None:
            bounds["$lte"] = max_price
        query["base_price"] = bounds
    return [serialize_doc(p) for p in db["product"].find(query).limit(100)]


def products_by_category(db: Database, category: str) -> List[Dict[str, Any]]:
    return [serialize_doc(p) for p in db["product"].find({"category": category})]


def products_by_tag(db: Database, tag: str) -> List[Dict[str, Any]]:
    query = {"tags": {"$regex": re.escape(tag), "$options": "i"}}
    return [serialize_doc(p) for p in db["product"].find(query)]


def _first_image(product: Dict[str, Any]) -> Optional[str]:
    for variant in product.get("color_variants") or []:
        for image in variant.get("images") or []:
            if image.get("url"):
                return image["url"]
    return None


def related_products(db: Database, product_id: str) -> Dict[str, Any]:
    product = get_product(db, product_id)
    query: Dict[str, Any] = {"_id": {"$ne": product["_id"]}}
    if product.get("category"):
        query["category"] = product["category"]
    if product.get("sub_category"):
        query["sub_category"] = product["sub_category"]
    if product.get("tags"):
        query["tags"] = {"$in": product["tags"]}
    related = [
        {
            "id": str(p["_id"]),
            "name": p.get("name"),
            "description": p.get("description"),
            "category": p.get("category"),
            "sub_category": p.get("sub_category"),
            "base_price": p.get("base_price"),
            "sale_price": p.get("sale_price"),
            "price": effective_price(p),
            "image": _first_image(p),
            "average_rating": p.get("average_rating", 0),
            "total_reviews": p.get("total_reviews", 0),
        }
        for p in db["product"].find(query).limit(RELATED_LIMIT)
    ]
    return {"related_products": related, "count": len(related)}


# Admin product management
def create_product(db: Database, req: ProductCreateRequest, user: Dict[str, Any]) -> Dict[str, Any]:
    doc = Product(**req.model_dump(), created_by=str(user["_id"])).model_dump()
    stamp = now_utc()
    doc["created_at"] = stamp
    doc["updated_at"] = stamp
    inserted = db["product"].insert_one(doc).inserted_id
    logger.info("Product %s created by %s", inserted, user["_id"])
    return db["product"].find_one({"_id": inserted})


def update_product(db: Database, product_id: str, req: ProductUpdateRequest, user: Dict[str, Any]) -> Dict[str, Any]:
    updates = req.model_dump(exclude_unset=True)
    updates = {k: v for k, v in updates.items() if v is not None or k in ("sale_price", "display_page")}
    if not updates:
        raise ValidationError("No updates provided")
    updates["updated_at"] = now_utc()
    updates["updated_by"] = str(user["_id"])
    _id = oid(product_id, "Product")
    result = db["product"].update_one({"_id": _id}, {"$set": updates})
    if result.matched_count == 0:
        raise NotFound(f"Product {product_id} not found")
    return db["product"].find_one({"_id": _id})


def bulk_update_products(db: Database, req: BulkProductUpdateRequest, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Apply each update on its own; one bad entry does not stop the rest.

    Every entry yields either the updated product or ``{"error": ..., "id": ...}``.
    """
    results: List[Dict[str, Any]] = []
    for entry in req.products:
        if not entry.id:
            results.append({"error": "Product ID is required"})
            continue
        changes = ProductUpdateRequest(**entry.model_dump(exclude={"id"}, exclude_unset=True))
        try:
            results.append(serialize_doc(update_product(db, entry.id, changes, user)))
        except NotFound:
            results.append({"error": "Product not found", "id": entry.id})
        except ValidationError as e:
            results.append({"error": e.message, "id": entry.id})
    updated = sum(1 for r in results if "error" not in r)
    logger.info("Bulk update by %s: %d of %d products updated", user["_id"], updated, len(results))
    return results


def delete_product(db: Database, product_id: str) -> None:
    result = db["product"].delete_one({"_id": oid(product_id, "Product")})
    if result.deleted_count == 0:
        raise NotFound(f"Product {product_id} not found")
    logger.info("Product %s deleted", product_id)


def set_stock(db: Database, product_id: str, req: InventoryUpdateRequest) -> Dict[str, Any]:
    product = get_product(db, product_id)
    i, variant = locate_variant(product, req.color)
    j, _ = locate_size(product, variant, req.size)
    db["product"].update_one(
        {"_id": product["_id"]},
        {"$set": {f"color_variants.{i}.sizes.{j}.quantity": req.quantity, "updated_at": now_utc()}},
    )
    return db["product"].find_one({"_id": product["_id"]})


def low_stock(db: Database, threshold: int = 10) -> List[Dict[str, Any]]:
    entries = []
    for product in db["product"].find({"color_variants.sizes.quantity": {"$lte": threshold}}):
        for variant in product.get("color_variants") or []:
            for size in variant.get("sizes") or []:
                if size.get("quantity", 0) <= threshold:
                    entries.append({
                        "product_id": str(product["_id"]),
                        "name": product.get("name"),
                        "color": variant["color"]["name"],
                        "size": size["name"],
                        "quantity": size.get("quantity", 0),
                    })
    entries.sort(key=lambda e: e["quantity"])
    return entries


# Reviews
def _rating_stats(ratings: List[Dict[str, Any]]) -> Tuple[float, int]:
    if not ratings:
        return 0, 0
    return sum(r["rating"] for r in ratings) / len(ratings), len(ratings)


def list_reviews(db: Database, product_id: str) -> Dict[str, Any]:
    product = get_product(db, product_id)
    ratings = sorted(product.get("ratings") or [], key=lambda r: r["created_at"], reverse=True)
    authors = {}
    user_ids = [oid(r["user"]) for r in ratings if isinstance(r.get("user"), str)]
    if user_ids:
        for u in db["user"].find({"_id": {"$in": user_ids}}, {"name": 1, "email": 1}):
            authors[str(u["_id"])] = {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")}
    reviews = []
    for r in ratings:
        data = serialize_doc(r)
        data["user"] = authors.get(r["user"], {"id": r["user"]})
        reviews.append(data)
    return {
        "reviews": reviews,
        "total_reviews": len(ratings),
        "average_rating": product.get("average_rating", 0),
    }


def upsert_review(db: Database, product_id: str, req: ReviewRequest, user: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """Add the user's review or replace their earlier one. Returns (review, replaced)."""
    product = get_product(db, product_id)
    user_id = str(user["_id"])
    review = {
        "user": user_id,
        "rating": req.rating,
        "review": req.review,
        "images": req.images,
        "created_at": now_utc(),
    }
    ratings = [r for r in product.get("ratings") or [] if r.get("user") != user_id]
    replaced = len(ratings) != len(product.get("ratings") or [])
    ratings.append(review)
    average, total = _rating_stats(ratings)
    db["product"].update_one(
        {"_id": product["_id"]},
        {"$set": {"ratings": ratings, "average_rating": average, "total_reviews": total}},
    )
    return review, replaced


def delete_review(db: Database, product_id: str, user: Dict[str, Any]) -> None:
    product = get_product(db, product_id)
    user_id = str(user["_id"])
    ratings = [r for r in product.get("ratings") or [] if r.get("user") != user_id]
    if len(ratings) == len(product.get("ratings") or []):
        raise NotFound("Review not found")
    average, total = _rating_stats(ratings)
    db["product"].update_one(
        {"_id": product["_id"]},
        {"$set": {"ratings": ratings, "average_rating": average, "total_reviews": total}},
    )
