import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database

import database
from accounts import Accounts, bearer_token, current_user, require_admin
from carts import CartService
from catalog import ProductCatalog
from config import settings
from database import ensure_indexes, get_db
from errors import NotFoundError, ShopError, ValidationError
from logging_config import configure_logging, get_logger
from orders import OrderStore, OrderWorkflow
from schemas import (
    AddToCartRequest,
    AdminUserUpdate,
    AuthResponse,
    CartOut,
    LoginRequest,
    OrderOut,
    OrderStatus,
    Page,
    ProfileUpdate,
    ProductCreate,
    ProductOut,
    ProductUpdate,
    Role,
    SetQuantityRequest,
    SignupRequest,
    UpdateStatusRequest,
    UserOut,
)

configure_logging()
logger = get_logger(__name__)

STARTED_AT = time.monotonic()


def prepare_database():
    if database.db is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; running without a store")
        return
    try:
        ensure_indexes(database.db)
    except ShopError as e:
        logger.error("could not ensure indexes", error=e.message)


@asynccontextmanager
async def lifespan(app: FastAPI):
    prepare_database()
    yield


app = FastAPI(title="Store API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    logger.info("request", method=request.method, path=request.url.path, status=response.status_code)
    return response


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    if exc.status_code >= 500:
        logger.error("request failed", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Dependencies

def purchase_workflow(db: Database = Depends(get_db)) -> OrderWorkflow:
    return OrderWorkflow(db, client=database.client)


def cart_version(if_match: Optional[str] = Header(None)) -> Optional[int]:
    """Cart version the caller last saw, from an If-Match header."""
    if if_match is None:
        return None
    try:
        return int(if_match.strip().strip('"'))
    except ValueError:
        raise ValidationError("If-Match must carry a cart version number")


def cart_response(cart: dict, response: Response) -> dict:
    response.headers["ETag"] = f'"{cart["version"]}"'
    return cart


@app.get("/")
def read_root():
    return {"message": "Store API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:80]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


@app.get("/health")
def health():
    return {
        "status": "ok",
        "uptime": round(time.monotonic() - STARTED_AT, 3),
        "message": "Application is healthy and running",
    }


@app.get("/ready")
def ready(db: Database = Depends(get_db)):
    try:
        db.command("ping")
    except Exception as e:
        logger.warning("readiness check failed", error=str(e))
        return JSONResponse(
            status_code=503,
            content={"status": "not ready", "database": "disconnected", "message": "Application not ready, database connection issues."},
        )
    return {"status": "ready", "database": "connected", "message": "Application is ready to serve traffic."}


# Auth endpoints
@app.post("/auth/signup", response_model=AuthResponse, status_code=201)
def signup(payload: SignupRequest, db: Database = Depends(get_db)):
    accounts = Accounts(db)
    user = accounts.signup(payload.name, payload.email, payload.password)
    token = accounts.open_session(user["id"])
    return AuthResponse(user_id=user["id"], name=user["name"], email=user["email"], role=user["role"], token=token)


@app.post("/auth/login", response_model=AuthResponse)
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user, token = Accounts(db).login(payload.email, payload.password)
    return AuthResponse(user_id=user["id"], name=user["name"], email=user["email"], role=user["role"], token=token)


@app.post("/auth/logout", status_code=204)
def logout(token: str = Depends(bearer_token), db: Database = Depends(get_db)):
    Accounts(db).logout(token)
    return Response(status_code=204)


@app.get("/auth/me", response_model=UserOut)
def me(user: dict = Depends(current_user)):
    return user


# Users
@app.get("/api/users/profile", response_model=UserOut)
def get_profile(user: dict = Depends(current_user)):
    return user


@app.put("/api/users/profile", response_model=UserOut)
def update_profile(payload: ProfileUpdate, user: dict = Depends(current_user), db: Database = Depends(get_db)):
    return Accounts(db).update_profile(user["id"], payload)


@app.get("/api/users", response_model=Page[UserOut])
def list_users(
    page: int = 1,
    limit: Optional[int] = None,
    role: Optional[Role] = None,
    email: Optional[str] = None,
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
):
    return Accounts(db).list_users(role=role.value if role else None, email=email, page=page, limit=limit)


@app.get("/api/users/{uid}", response_model=UserOut)
def get_user(uid: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return Accounts(db).get_user(uid)


@app.put("/api/users/{uid}", response_model=UserOut)
def update_user(uid: str, payload: AdminUserUpdate, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return Accounts(db).admin_update(uid, payload)


@app.delete("/api/users/{uid}", response_model=UserOut)
def deactivate_user(uid: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return Accounts(db).deactivate(uid)


# Products
@app.get("/api/products", response_model=Page[ProductOut])
def list_products(
    page: int = 1,
    limit: Optional[int] = None,
    category: Optional[str] = None,
    name: Optional[str] = None,
    sort: Optional[str] = None,
    db: Database = Depends(get_db),
):
    return ProductCatalog(db).list(category=category, name=name, sort=sort, page=page, limit=limit)


@app.get("/api/products/{pid}", response_model=ProductOut)
def get_product(pid: str, db: Database = Depends(get_db)):
    return ProductCatalog(db).get(pid)


@app.post("/api/products", response_model=ProductOut, status_code=201)
def create_product(payload: ProductCreate, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return ProductCatalog(db).create(payload)


@app.put("/api/products/{pid}", response_model=ProductOut)
def update_product(pid: str, payload: ProductUpdate, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return ProductCatalog(db).update(pid, payload)


@app.delete("/api/products/{pid}", response_model=ProductOut)
def delete_product(pid: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return ProductCatalog(db).deactivate(pid)


# Cart
@app.get("/api/carts/my-cart", response_model=CartOut)
def get_cart(response: Response, user: dict = Depends(current_user), db: Database = Depends(get_db)):
    return cart_response(CartService(db).get(user["id"]), response)


@app.post("/api/carts/products/{pid}", response_model=CartOut)
def add_to_cart(
    pid: str,
    payload: AddToCartRequest,
    response: Response,
    version: Optional[int] = Depends(cart_version),
    user: dict = Depends(current_user),
    db: Database = Depends(get_db),
):
    cart = CartService(db).add(user["id"], pid, payload.quantity, if_version=version)
    return cart_response(cart, response)


@app.put("/api/carts/products/{pid}", response_model=CartOut)
def set_cart_quantity(
    pid: str,
    payload: SetQuantityRequest,
    response: Response,
    version: Optional[int] = Depends(cart_version),
    user: dict = Depends(current_user),
    db: Database = Depends(get_db),
):
    cart = CartService(db).set_quantity(user["id"], pid, payload.quantity, if_version=version)
    return cart_response(cart, response)


@app.delete("/api/carts/products/{pid}", response_model=CartOut)
def remove_from_cart(
    pid: str,
    response: Response,
    version: Optional[int] = Depends(cart_version),
    user: dict = Depends(current_user),
    db: Database = Depends(get_db),
):
    cart = CartService(db).remove(user["id"], pid, if_version=version)
    return cart_response(cart, response)


@app.delete("/api/carts/empty", response_model=CartOut)
def empty_cart(
    response: Response,
    version: Optional[int] = Depends(cart_version),
    user: dict = Depends(current_user),
    db: Database = Depends(get_db),
):
    return cart_response(CartService(db).empty(user["id"], if_version=version), response)


# Orders
@app.post("/api/orders/purchase", response_model=OrderOut, status_code=201)
def purchase(user: dict = Depends(current_user), workflow: OrderWorkflow = Depends(purchase_workflow)):
    return workflow.purchase(user["id"])


@app.get("/api/orders/my-orders", response_model=Page[OrderOut])
def my_orders(
    page: int = 1,
    limit: Optional[int] = None,
    user: dict = Depends(current_user),
    db: Database = Depends(get_db),
):
    return OrderStore(db).list_for_owner(user["id"], page=page, limit=limit)


@app.get("/api/orders", response_model=Page[OrderOut])
def list_orders(
    page: int = 1,
    limit: Optional[int] = None,
    status: Optional[OrderStatus] = None,
    user: Optional[str] = None,
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
):
    return OrderStore(db).list(status=status.value if status else None, owner_id=user, page=page, limit=limit)


@app.get("/api/orders/{oid}", response_model=OrderOut)
def get_order(oid: str, user: dict = Depends(current_user), db: Database = Depends(get_db)):
    order = OrderStore(db).find_by_id(oid)
    # Orders owned by someone else read as missing
    if not order or (order["owner_id"] != user["id"] and user.get("role") != Role.ADMIN.value):
        raise NotFoundError("order", oid)
    return order


@app.put("/api/orders/{oid}", response_model=OrderOut)
def update_order_status(
    oid: str,
    payload: UpdateStatusRequest,
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
):
    order = OrderStore(db).update_status(oid, payload.status)
    if not order:
        raise NotFoundError("order", oid)
    logger.info("order status updated", order_id=oid, status=order["status"])
    return order


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
