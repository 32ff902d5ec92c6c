import logging
import os
import time
import traceback
import uuid
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError

import accounts
import activity
import cart
import catalog
import messages
import orders
from config import Settings, configure_logging
from database import Store, get_db, now_utc, serialize_doc
from errors import ShopError
from schemas import (
    AdminUserUpdateRequest,
    BulkProductUpdateRequest,
    CartItemKey,
    CartItemRequest,
    ChangePasswordRequest,
    InventoryUpdateRequest,
    LoginRequest,
    MessageCreateRequest,
    MessageReplyRequest,
    OrderCreateRequest,
    OrderStatusRequest,
    Product,
    ProductCreateRequest,
    ProductUpdateRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    ReviewRequest,
    User,
)
from security import get_current_user, hash_password, require_admin

logger = logging.getLogger("store.api")

# App init
settings = Settings.from_env()
app = FastAPI(title="Apparel Store API")
app.state.settings = settings
app.state.store = Store(settings.database_url, settings.database_name)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _audit(
    request: Request,
    db: Database,
    admin: Dict[str, Any],
    action: str,
    entity_type: str,
    entity_id: Any,
    changes: Optional[Dict[str, Any]] = None,
) -> None:
    activity.record(
        db, admin, action, entity_type, entity_id,
        changes=changes,
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


# Middleware / error handlers
@app.middleware("http")
async def log_requests(request: Request, call_next):
    if request.app.state.settings.is_production:
        return await call_next(request)
    request_id = uuid.uuid4().hex[:8]
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "[%s] %s %s -> %d (%.1f ms)",
        request_id, request.method, request.url.path, response.status_code, elapsed_ms,
    )
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(ShopError)
def shop_error_handler(request: Request, exc: ShopError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse(status_code=400, content={"error": "; ".join(problems) or "Invalid request"})


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content: Dict[str, Any] = {"error": str(exc) or exc.__class__.__name__}
    if not request.app.state.settings.is_production:
        content["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse(status_code=500, content=content)


# Routes
@app.get("/")
def root():
    return {"message": "Apparel Store API running"}


@app.get("/api/health")
def health(request: Request):
    cfg = request.app.state.settings
    response = {
        "status": "OK",
        "timestamp": now_utc().isoformat(),
        "environment": cfg.app_env,
        "database": "Not Connected",
        "collections": [],
    }
    store: Store = request.app.state.store
    if store.connected:
        try:
            response["collections"] = store.db.list_collection_names()[:10]
            response["database"] = "Connected"
        except PyMongoError as e:
            response["database"] = f"Error: {str(e)[:80]}"
    return response


# Users
@app.post("/api/users/register", status_code=201)
def register(req: RegisterRequest, db: Database = Depends(get_db), cfg: Settings = Depends(get_settings)):
    return accounts.register(db, req, cfg)


@app.post("/api/users/login")
def login(req: LoginRequest, db: Database = Depends(get_db), cfg: Settings = Depends(get_settings)):
    return accounts.login(db, req, cfg)


@app.get("/api/users/profile")
def get_profile(user=Depends(get_current_user), db: Database = Depends(get_db)):
    return accounts.profile(db, user)


@app.patch("/api/users/profile")
def update_profile(req: ProfileUpdateRequest, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return accounts.update_profile(db, user, req)


@app.post("/api/users/change-password")
def change_password(req: ChangePasswordRequest, user=Depends(get_current_user), db: Database = Depends(get_db)):
    accounts.change_password(db, user, req)
    return {"message": "Password changed successfully"}


@app.get("/api/users/orders")
def my_orders(user=Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.list_user_orders(db, user)


@app.post("/api/users/wishlist/{product_id}")
def add_to_wishlist(product_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return accounts.add_to_wishlist(db, user, product_id)


@app.delete("/api/users/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return accounts.remove_from_wishlist(db, user, product_id)


@app.post("/api/users/messages", status_code=201)
def send_message(req: MessageCreateRequest, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return messages.send_message(db, user, req)


@app.get("/api/users/messages")
def my_messages(user=Depends(get_current_user), db: Database = Depends(get_db)):
    return messages.list_user_messages(db, user)


# Products
@app.get("/api/products")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort: Optional[str] = None,
    category: Optional[str] = None,
    db: Database = Depends(get_db),
):
    return catalog.list_products(db, page=page, limit=limit, sort=sort, category=category)


@app.get("/api/products/search")
def search_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    db: Database = Depends(get_db),
):
    return catalog.search_products(db, q=q, category=category, min_price=min_price, max_price=max_price)


@app.get("/api/products/category/{category}")
def products_by_category(category: str, db: Database = Depends(get_db)):
    return catalog.products_by_category(db, category)


@app.get("/api/products/banner/{tag}")
def products_by_tag(tag: str, db: Database = Depends(get_db)):
    return catalog.products_by_tag(db, tag)


@app.get("/api/products/related/{product_id}")
def related_products(product_id: str, db: Database = Depends(get_db)):
    return catalog.related_products(db, product_id)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return serialize_doc(catalog.get_product(db, product_id))


@app.post("/api/products", status_code=201)
def create_product(
    req: ProductCreateRequest, request: Request, admin=Depends(require_admin), db: Database = Depends(get_db)
):
    product = catalog.create_product(db, req, admin)
    _audit(request, db, admin, "create", "product", product["_id"])
    return serialize_doc(product)


@app.patch("/api/products/{product_id}")
def update_product(
    product_id: str,
    req: ProductUpdateRequest,
    request: Request,
    admin=Depends(require_admin),
    db: Database = Depends(get_db),
):
    product = catalog.update_product(db, product_id, req, admin)
    _audit(request, db, admin, "update", "product", product_id, req.model_dump(mode="json", exclude_unset=True))
    return serialize_doc(product)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, request: Request, admin=Depends(require_admin), db: Database = Depends(get_db)):
    catalog.delete_product(db, product_id)
    _audit(request, db, admin, "delete", "product", product_id)
    return {"message": "Product deleted successfully"}


# Reviews
@app.get("/api/products/{product_id}/reviews")
def list_reviews(product_id: str, db: Database = Depends(get_db)):
    return catalog.list_reviews(db, product_id)


@app.post("/api/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, req: ReviewRequest, user=Depends(get_current_user), db: Database = Depends(get_db)):
    review, replaced = catalog.upsert_review(db, product_id, req, user)
    return {
        "message": "Review updated successfully" if replaced else "Review added successfully",
        "review": serialize_doc(review),
    }


@app.delete("/api/products/{product_id}/reviews")
def delete_review(product_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    catalog.delete_review(db, product_id, user)
    return {"message": "Review deleted successfully"}


# Cart
@app.get("/api/cart")
def get_cart(user=Depends(get_current_user), db: Database = Depends(get_db)):
    return cart.get_cart(db, user)


@app.post("/api/cart/add")
def add_to_cart(req: CartItemRequest, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return cart.add_item(db, user, req)


@app.put("/api/cart/update")
def update_cart_item(req: CartItemRequest, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return cart.update_item(db, user, req)


@app.delete("/api/cart/remove")
def remove_from_cart(req: CartItemKey, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return cart.remove_item(db, user, req)


@app.delete("/api/cart/clear")
def clear_cart(user=Depends(get_current_user), db: Database = Depends(get_db)):
    cart.clear_cart(db, user)
    return {"message": "Cart cleared successfully"}


# Orders
@app.post("/api/orders", status_code=201)
def create_order(req: OrderCreateRequest, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.place_order(db, user, req)


@app.get("/api/orders")
def list_my_orders(user=Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.list_user_orders(db, user)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.get_order(db, order_id, user)


@app.patch("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    req: OrderStatusRequest,
    request: Request,
    admin=Depends(require_admin),
    db: Database = Depends(get_db),
):
    order = orders.update_status(db, order_id, req)
    _audit(request, db, admin, "update", "order", order_id, req.model_dump(exclude_none=True))
    return order


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.cancel_order(db, order_id, user)


# Admin
@app.get("/api/admin/dashboard")
def admin_dashboard(admin=Depends(require_admin), db: Database = Depends(get_db)):
    recent = orders.list_orders(db, page=1, limit=10)["orders"]
    return {
        "total_users": db["user"].count_documents({"role": "user"}),
        "total_orders": db["order"].count_documents({}),
        "total_products": db["product"].count_documents({}),
        "recent_orders": recent,
    }


@app.get("/api/admin/users")
def admin_list_users(admin=Depends(require_admin), db: Database = Depends(get_db)):
    return accounts.list_users(db)


@app.get("/api/admin/users/{user_id}")
def admin_get_user(user_id: str, admin=Depends(require_admin), db: Database = Depends(get_db)):
    return accounts.get_user(db, user_id)


@app.patch("/api/admin/users/{user_id}")
def admin_update_user(
    user_id: str,
    req: AdminUserUpdateRequest,
    request: Request,
    admin=Depends(require_admin),
    db: Database = Depends(get_db),
):
    user = accounts.admin_update_user(db, user_id, req)
    _audit(request, db, admin, "update", "user", user_id, req.model_dump(mode="json", exclude_none=True))
    return {"message": "User updated successfully", "user": user}


@app.get("/api/admin/orders")
def admin_list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    search: Optional[str] = None,
    admin=Depends(require_admin),
    db: Database = Depends(get_db),
):
    return orders.list_orders(db, page=page, limit=limit, status=status, search=search)


@app.patch("/api/admin/orders/{order_id}/status")
def admin_update_order_status(
    order_id: str,
    req: OrderStatusRequest,
    request: Request,
    admin=Depends(require_admin),
    db: Database = Depends(get_db),
):
    return update_order_status(order_id, req, request, admin, db)


@app.post("/api/admin/products/bulk-update")
def admin_bulk_update_products(
    req: BulkProductUpdateRequest, request: Request, admin=Depends(require_admin), db: Database = Depends(get_db)
):
    results = catalog.bulk_update_products(db, req, admin)
    for result in results:
        if "error" not in result:
            _audit(request, db, admin, "update", "product", result["id"], {"bulk": True})
    return results


@app.get("/api/admin/products/low-stock")
def admin_low_stock(
    threshold: int = Query(10, ge=0), admin=Depends(require_admin), db: Database = Depends(get_db)
):
    return catalog.low_stock(db, threshold)


@app.patch("/api/admin/products/{product_id}/inventory")
def admin_update_inventory(
    product_id: str,
    req: InventoryUpdateRequest,
    request: Request,
    admin=Depends(require_admin),
    db: Database = Depends(get_db),
):
    product = catalog.set_stock(db, product_id, req)
    _audit(request, db, admin, "update", "product", product_id, req.model_dump())
    return serialize_doc(product)


@app.get("/api/admin/messages")
def admin_list_messages(
    status: Optional[str] = None, admin=Depends(require_admin), db: Database = Depends(get_db)
):
    return messages.list_messages(db, status=status)


@app.post("/api/admin/messages/{message_id}/reply")
def admin_reply_to_message(
    message_id: str,
    req: MessageReplyRequest,
    request: Request,
    admin=Depends(require_admin),
    db: Database = Depends(get_db),
):
    message = messages.reply_to_message(db, message_id, req, admin)
    _audit(request, db, admin, "update", "message", message_id)
    return message


@app.get("/api/admin/activity-logs")
def admin_activity_logs(
    entity_type: Optional[str] = None,
    limit: int = Query(activity.DEFAULT_LOG_LIMIT, ge=1, le=500),
    admin=Depends(require_admin),
    db: Database = Depends(get_db),
):
    return activity.list_activity(db, entity_type=entity_type, limit=limit)


# Seed demo products on startup
def _variant(name: str, hex_code: str, image: str, sizes: Dict[str, int]) -> Dict[str, Any]:
    return {
        "color": {"name": name, "hex_code": hex_code},
        "images": [{"url": image, "alt": name}],
        "sizes": [{"name": size, "quantity": qty} for size, qty in sizes.items()],
    }


DEMO_PRODUCTS: List[dict] = [
    {
        "name": "Essential Crew Tee",
        "description": "Soft combed-cotton t-shirt with a relaxed fit.",
        "category": "men",
        "sub_category": "t-shirts",
        "brand": "Northline",
        "base_price": 24.0,
        "material": "100% cotton",
        "tags": ["basics", "new"],
        "color_variants": [
            _variant("Black", "#000000", "https://images.unsplash.com/photo-1521572163474-6864f9cf17ab",
                     {"S": 20, "M": 30, "L": 25, "XL": 10}),
            _variant("White", "#FFFFFF", "https://images.unsplash.com/photo-1523381210434-271e8be1f52b",
                     {"S": 15, "M": 25, "L": 20}),
        ],
    },
    {
        "name": "Slim Selvedge Jeans",
        "description": "Raw denim jeans with a tapered leg.",
        "category": "men",
        "sub_category": "jeans",
        "brand": "Northline",
        "base_price": 89.0,
        "sale_price": 69.0,
        "material": "98% cotton, 2% elastane",
        "tags": ["denim", "sale"],
        "color_variants": [
            _variant("Indigo", "#3F51B5", "https://images.unsplash.com/photo-1542272604-787c3835535d",
                     {"M": 12, "L": 10, "XL": 6}),
        ],
    },
    {
        "name": "Wrap Midi Dress",
        "description": "Flowing viscose midi dress with a tie waist.",
        "category": "women",
        "sub_category": "dresses",
        "brand": "Aurelle",
        "base_price": 110.0,
        "material": "Viscose",
        "tags": ["seasonal"],
        "color_variants": [
            _variant("Emerald", "#1B8A5A", "https://images.unsplash.com/photo-1539008835657-9e8e9680c956",
                     {"XS": 5, "S": 8, "M": 8, "L": 4}),
            _variant("Rose", "#E8A0A8", "https://images.unsplash.com/photo-1515372039744-b8f02a3ae446",
                     {"S": 6, "M": 6}),
        ],
    },
    {
        "name": "Kids Zip Hoodie",
        "description": "Brushed fleece hoodie for everyday play.",
        "category": "kids",
        "sub_category": "hoodies",
        "brand": "Little Pine",
        "base_price": 35.0,
        "material": "Cotton fleece",
        "tags": ["basics"],
        "color_variants": [
            _variant("Red", "#D32F2F", "https://images.unsplash.com/photo-1519238263530-99bdd11df2ea",
                     {"XS": 10, "S": 10, "M": 8}),
        ],
    },
]


def seed_products(db: Database) -> int:
    if db["product"].count_documents({}) > 0:
        return 0
    for data in DEMO_PRODUCTS:
        product = Product(**data).model_dump()
        product.update(created_at=now_utc(), updated_at=now_utc())
        db["product"].insert_one(product)
    logger.info("Seeded %d demo products", len(DEMO_PRODUCTS))
    return len(DEMO_PRODUCTS)


def ensure_admin(db: Database, email: str, password: str) -> bool:
    if db["user"].count_documents({"role": "admin"}) > 0:
        return False
    admin = User(name="Admin", email=email, password_hash=hash_password(password), role="admin")
    db["user"].insert_one({**admin.model_dump(), "created_at": now_utc(), "updated_at": now_utc()})
    logger.info("Created admin user %s", admin.email)
    return True


@app.on_event("startup")
def on_startup():
    cfg: Settings = app.state.settings
    configure_logging(cfg.log_level)
    store: Store = app.state.store
    store.connect()
    try:
        store.ensure_indexes()
        if cfg.seed_demo_data:
            seed_products(store.db)
        if cfg.admin_email and cfg.admin_password:
            ensure_admin(store.db, cfg.admin_email, cfg.admin_password)
    except PyMongoError as e:
        logger.error("Database setup failed: %s", e)


@app.on_event("shutdown")
def on_shutdown():
    app.state.store.close()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
