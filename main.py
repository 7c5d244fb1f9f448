import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import structlog
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import AuthService, sanitize_user
from cache import build_cache
from cart import CartService
from chatbot import ChatbotService
from config import Settings, configure_logging, settings
from coupons import CouponsService
from database import db, ensure_indexes, to_public_doc, utcnow
from events import EventBus
from gamification import GamificationService
from gateway import NotificationGateway
from loyalty import LoyaltyService
from mail import MailService
from notifications import NotificationsService
from orders import OrdersService, register_listeners
from products import ProductsService
from schemas import ProductSpecification, ProductVariant, ShippingAddress
from users import UsersService
from wishlist import WishlistService

configure_logging(settings)
logger = structlog.get_logger(__name__)


class Services:
    """Every service the routes use, wired over one database handle."""

    def __init__(self, database, cfg: Settings, cache, gateway, mail, http=None, sleep=time.sleep, rng=None):
        self.db = database
        self.settings = cfg
        self.cache = cache
        self.gateway = gateway
        self.mail = mail
        self.events = EventBus()

        self.auth = AuthService(database, mail, cfg.jwt_secret, cfg.jwt_expires_minutes, cfg.bcrypt_rounds)
        self.users = UsersService(database)
        self.notifications = NotificationsService(database, gateway)
        self.products = ProductsService(database, cache, cfg.cache_ttl_seconds)
        self.cart = CartService(database, cache, cfg.cache_ttl_seconds)
        self.coupons = CouponsService(database, self.notifications, self.users)
        self.loyalty = LoyaltyService(database, self.notifications)
        self.orders = OrdersService(
            database, self.notifications, self.coupons, self.users, self.events, cache, mail, self.products
        )
        self.wishlist = WishlistService(database)
        self.gamification = GamificationService(database, self.loyalty, rng=rng)
        self.chatbot = ChatbotService(
            self.orders, self.products, self.cart, self.wishlist, self.coupons, self.users,
            api_key=cfg.gemini_api_key, models=cfg.gemini_models, http=http, sleep=sleep,
        )
        register_listeners(self.events, self.users, gateway, self.loyalty)


def build_services(database, cfg: Settings = settings, cache=None, gateway=None, mail=None, **kwargs) -> Services:
    if cache is None:
        cache = build_cache(cfg.redis_url, cfg.cache_ttl_seconds)
    if mail is None:
        mail = MailService(cfg.resend_api_key, cfg.mail_from, enabled=cfg.is_production)
    return Services(database, cfg, cache, gateway or NotificationGateway(), mail, **kwargs)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes(app.state.services.db)
    logger.info("app_started", env=app.state.services.settings.app_env)
    yield


app = FastAPI(title="Storefront API", version="1.0.0", lifespan=lifespan)
app.state.services = build_services(db, settings)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "request",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.perf_counter() - start) * 1000, 1),
    )
    return response


# Errors
def error_response(request: Request, status_code: int, detail: Any, headers=None) -> JSONResponse:
    body = {
        "detail": detail,
        "status_code": status_code,
        "path": request.url.path,
        "method": request.method,
        "timestamp": utcnow().isoformat() + "Z",
        "success": False,
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("http_error", method=request.method, path=request.url.path, status=exc.status_code, detail=exc.detail)
    return error_response(request, exc.status_code, exc.detail, getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    logger.warning("validation_error", method=request.method, path=request.url.path)
    return error_response(request, 422, exc.errors())


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("unhandled_error", method=request.method, path=request.url.path)
    return error_response(request, 500, "Internal server error")


# Helpers
def public(value: Any) -> Any:
    return to_public_doc(value)


def get_services(request: Request) -> Services:
    services = request.app.state.services
    if services.db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return services


bearer = HTTPBearer(auto_error=False)


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return services.auth.decode_token(credentials.credentials)


def require_roles(*roles: str):
    def guard(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
        if user["role"] not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return guard


@app.get("/")
def root():
    return {"name": "Storefront", "status": "ok"}


@app.get("/test")
def test_database(request: Request):
    database = request.app.state.services.db
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if database is not None:
            response["database"] = "✅ Connected & Working"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = database.name if hasattr(database, "name") else "❌ Unknown"
            response["connection_status"] = "Connected"
            try:
                response["collections"] = database.list_collection_names()[:10]
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ============ Auth ============
class Register(BaseModel):
    name: str = Field(..., min_length=1)
    email: str
    password: str = Field(..., min_length=6)


class Login(BaseModel):
    email: str
    password: str
    two_factor_code: Optional[str] = None


class ForgotPassword(BaseModel):
    email: str


class VerifyOtp(BaseModel):
    email: str
    otp: str


class ResetPassword(BaseModel):
    email: str
    otp: str
    new_password: str = Field(..., min_length=6)


@app.post("/api/auth/register", status_code=201)
def register(payload: Register, services: Services = Depends(get_services)):
    return services.auth.register(payload.name, payload.email, payload.password)


@app.post("/api/auth/login")
def login(payload: Login, services: Services = Depends(get_services)):
    return services.auth.login(payload.email, payload.password, payload.two_factor_code)


@app.post("/api/auth/forgot-password")
def forgot_password(payload: ForgotPassword, services: Services = Depends(get_services)):
    return services.auth.forgot_password(payload.email)


@app.post("/api/auth/verify-otp")
def verify_otp(payload: VerifyOtp, services: Services = Depends(get_services)):
    services.auth.verify_otp(payload.email, payload.otp)
    return {"success": True, "message": "OTP verified successfully"}


@app.post("/api/auth/reset-password")
def reset_password(payload: ResetPassword, services: Services = Depends(get_services)):
    services.auth.reset_password(payload.email, payload.otp, payload.new_password)
    return {"success": True, "message": "Password has been reset successfully"}


@app.get("/api/auth/profile")
def profile(user=Depends(current_user), services: Services = Depends(get_services)):
    return sanitize_user(services.users.find_one(user["id"]))


class TwoFactorCode(BaseModel):
    code: str = Field(..., min_length=6, max_length=8)


@app.post("/api/auth/2fa/generate")
def generate_two_factor(user=Depends(current_user), services: Services = Depends(get_services)):
    return services.auth.generate_2fa_secret(user["id"])


@app.post("/api/auth/2fa/turn-on")
def turn_on_two_factor(payload: TwoFactorCode, user=Depends(current_user), services: Services = Depends(get_services)):
    services.auth.enable_2fa(user["id"], payload.code)
    return {"success": True, "message": "Two-factor authentication enabled"}


@app.post("/api/auth/2fa/turn-off")
def turn_off_two_factor(payload: TwoFactorCode, user=Depends(current_user), services: Services = Depends(get_services)):
    services.auth.disable_2fa(user["id"], payload.code)
    return {"success": True, "message": "Two-factor authentication disabled"}


# ============ Users ============
class UpdateUser(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    avatar: Optional[str] = None
    role: Optional[str] = Field(None, pattern="^(user|seller|admin)$")


@app.get("/api/users", response_model=List[dict])
def list_users(role: Optional[str] = None, user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return public(services.users.find_all(role))


@app.get("/api/users/me")
def get_me(user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.users.find_one(user["id"]))


@app.get("/api/users/{user_id}")
def get_user(user_id: str, user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return public(services.users.find_one(user_id))


@app.patch("/api/users/{user_id}")
def update_user(user_id: str, payload: UpdateUser, user=Depends(current_user), services: Services = Depends(get_services)):
    if user["role"] != "admin" and user["id"] != user_id:
        raise HTTPException(status_code=403, detail="You can only update your own profile")
    updates = payload.model_dump(exclude_none=True)
    if user["role"] != "admin":
        updates.pop("role", None)
    return public(services.users.update(user_id, updates))


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    services.users.remove(user_id)
    return {"id": user_id, "deleted": True}


# ============ Product Endpoints ============
class CreateProduct(BaseModel):
    title: str = Field(..., min_length=1)
    description: str
    long_description: Optional[str] = None
    price: float = Field(..., ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    category_id: str
    images: List[str] = Field(default_factory=list)
    thumbnail: Optional[str] = None
    brand: Optional[str] = None
    stock: int = Field(0, ge=0)
    sku: Optional[str] = None
    weight: Optional[float] = Field(None, ge=0)
    variants: List[ProductVariant] = Field(default_factory=list)
    specifications: List[ProductSpecification] = Field(default_factory=list)
    tags: Union[List[str], str, None] = None
    is_featured: bool = False
    is_active: bool = True
    stock_status: Optional[str] = Field(None, pattern="^(in-stock|out-of-stock|pre-order)$")


class UpdateProduct(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    long_description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    category_id: Optional[str] = None
    images: Optional[List[str]] = None
    thumbnail: Optional[str] = None
    brand: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    weight: Optional[float] = Field(None, ge=0)
    tags: Union[List[str], str, None] = None
    is_featured: Optional[bool] = None
    is_active: Optional[bool] = None
    stock_status: Optional[str] = Field(None, pattern="^(in-stock|out-of-stock|pre-order)$")


@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    search: Optional[str] = None,
    brand: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    min_rating: Optional[float] = Query(None, ge=0, le=5),
    is_featured: Optional[bool] = None,
    is_active: Optional[bool] = None,
    tags: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    services: Services = Depends(get_services),
):
    return public(services.products.find_all({
        "category": category,
        "search": search,
        "brand": brand,
        "min_price": min_price,
        "max_price": max_price,
        "min_rating": min_rating,
        "is_featured": is_featured,
        "is_active": is_active,
        "tags": tags,
        "sort_by": sort_by,
        "sort_order": sort_order,
        "page": page,
        "limit": limit,
    }))


@app.get("/api/products/featured", response_model=List[dict])
def featured_products(limit: int = Query(8, ge=1, le=50), services: Services = Depends(get_services)):
    return public(services.products.featured(limit))


@app.get("/api/products/{product_id}")
def get_product(product_id: str, services: Services = Depends(get_services)):
    return public(services.products.find_one(product_id))


@app.get("/api/products/{product_id}/related", response_model=List[dict])
def related_products(product_id: str, limit: int = Query(4, ge=1, le=20), services: Services = Depends(get_services)):
    return public(services.products.related(product_id, limit))


@app.post("/api/products", status_code=201)
def add_product(payload: CreateProduct, user=Depends(require_roles("admin", "seller")), services: Services = Depends(get_services)):
    return public(services.products.create(payload.model_dump(), user["id"]))


@app.patch("/api/products/{product_id}")
def update_product(product_id: str, payload: UpdateProduct, user=Depends(require_roles("admin", "seller")), services: Services = Depends(get_services)):
    services.products.ensure_can_edit(product_id, user)
    return public(services.products.update(product_id, payload.model_dump(exclude_none=True)))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user=Depends(require_roles("admin", "seller")), services: Services = Depends(get_services)):
    services.products.ensure_can_edit(product_id, user)
    return {"id": services.products.remove(product_id), "deleted": True}


# ============ Cart ============
class AddToCart(BaseModel):
    product_id: str
    quantity: int = 1


class UpdateCartItem(BaseModel):
    quantity: int


shopper = require_roles("user", "admin")


@app.get("/api/cart")
def get_cart(user=Depends(shopper), services: Services = Depends(get_services)):
    return public(services.cart.find_one(user["id"], user["role"]))


@app.post("/api/cart/add")
def add_to_cart(payload: AddToCart, user=Depends(shopper), services: Services = Depends(get_services)):
    return public(services.cart.add(user["id"], user["role"], payload.product_id, payload.quantity))


@app.patch("/api/cart/update/{item_id}")
def update_cart_item(item_id: str, payload: UpdateCartItem, user=Depends(shopper), services: Services = Depends(get_services)):
    return public(services.cart.update(user["id"], user["role"], item_id, payload.quantity))


@app.delete("/api/cart/remove/{item_id}")
def remove_cart_item(item_id: str, user=Depends(shopper), services: Services = Depends(get_services)):
    return public(services.cart.remove(user["id"], user["role"], item_id))


@app.delete("/api/cart/clear")
def clear_cart(user=Depends(shopper), services: Services = Depends(get_services)):
    services.cart.clear(user["id"])
    return {"success": True, "message": "Cart cleared"}


@app.get("/api/cart/admin/{user_id}")
def get_user_cart(user_id: str, user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return public(services.cart.find_one(user_id))


@app.delete("/api/cart/admin/{user_id}")
def clear_user_cart(user_id: str, user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    services.cart.clear(user_id)
    return {"success": True, "message": "Cart cleared"}


# ============ Orders Endpoints ============
class CreateOrderItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CreateOrder(BaseModel):
    items: List[CreateOrderItem]
    shipping_address: ShippingAddress
    billing_address: Optional[dict] = None
    payment_method: Optional[str] = None
    applied_coupon: Optional[str] = Field(None, description="Coupon id")
    coupon_code: Optional[str] = None
    shipping_cost: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    customer_notes: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None


class UpdateOrderStatus(BaseModel):
    order_status: str
    tracking_number: Optional[str] = None
    courier_service: Optional[str] = None
    note: Optional[str] = None


class MarkPaid(BaseModel):
    payment_id: Optional[str] = None


@app.post("/api/orders", status_code=201)
def create_order(payload: CreateOrder, background_tasks: BackgroundTasks, user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.orders.create(payload.model_dump(), user["id"], background_tasks))


@app.get("/api/orders/my", response_model=List[dict])
def my_orders(user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.orders.find_my(user["id"]))


@app.get("/api/orders", response_model=List[dict])
def list_orders(user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return public(services.orders.find_all())


@app.get("/api/orders/seller", response_model=List[dict])
def seller_orders(user=Depends(require_roles("seller")), services: Services = Depends(get_services)):
    return public(services.orders.find_by_seller(user["id"]))


@app.get("/api/orders/stats")
def order_stats(user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return services.orders.stats()


@app.get("/api/orders/product/{product_id}", response_model=List[dict])
def product_orders(product_id: str, user=Depends(require_roles("admin", "seller")), services: Services = Depends(get_services)):
    seller_id = user["id"] if user["role"] == "seller" else None
    return public(services.orders.find_by_product(product_id, seller_id))


@app.patch("/api/orders/{order_id}/accept")
def accept_order(order_id: str, user=Depends(require_roles("seller")), services: Services = Depends(get_services)):
    return public(services.orders.accept_by_seller(order_id, user["id"]))


@app.patch("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.orders.cancel(order_id, user["id"]))


@app.patch("/api/orders/{order_id}/status")
def update_order_status(order_id: str, payload: UpdateOrderStatus, user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return public(services.orders.update_status(order_id, payload.model_dump(), user["id"]))


@app.patch("/api/orders/{order_id}/pay")
def mark_order_paid(order_id: str, payload: MarkPaid, user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return public(services.orders.mark_paid(order_id, payload.payment_id))


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.orders.find_one(order_id, viewer=user))


# ============ Coupons ============
class CreateCoupon(BaseModel):
    code: str = Field(..., min_length=3)
    description: str
    discount_type: str = Field(..., pattern="^(percentage|fixed|bogo|free_shipping)$")
    discount_value: float = Field(..., ge=0)
    cost_in_points: Optional[int] = Field(None, ge=0)
    min_purchase_amount: float = Field(0, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    valid_from: datetime
    valid_until: datetime
    usage_limit: int = Field(0, ge=0)
    usage_limit_per_user: int = Field(1, ge=1)
    status: str = Field("active", pattern="^(active|inactive|expired)$")
    is_active: bool = True
    applicable_categories: List[str] = Field(default_factory=list)
    applicable_products: List[str] = Field(default_factory=list)
    applicable_users: List[str] = Field(default_factory=list)
    first_time_user_only: bool = False
    notes: Optional[str] = None


class UpdateCoupon(BaseModel):
    code: Optional[str] = None
    description: Optional[str] = None
    discount_value: Optional[float] = Field(None, ge=0)
    cost_in_points: Optional[int] = Field(None, ge=0)
    min_purchase_amount: Optional[float] = Field(None, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=0)
    usage_limit_per_user: Optional[int] = Field(None, ge=1)
    status: Optional[str] = Field(None, pattern="^(active|inactive|expired)$")
    is_active: Optional[bool] = None
    applicable_categories: Optional[List[str]] = None
    applicable_products: Optional[List[str]] = None
    applicable_users: Optional[List[str]] = None
    notes: Optional[str] = None


class ValidateCoupon(BaseModel):
    code: str
    cart_total: float = Field(..., ge=0)
    product_ids: Optional[List[str]] = None
    category_ids: Optional[List[str]] = None


@app.post("/api/coupons", status_code=201)
def create_coupon(payload: CreateCoupon, user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return public(services.coupons.create(payload.model_dump(), user["id"]))


@app.get("/api/coupons", response_model=List[dict])
def list_coupons(
    status: Optional[str] = None,
    is_active: Optional[bool] = None,
    discount_type: Optional[str] = None,
    user=Depends(require_roles("admin")),
    services: Services = Depends(get_services),
):
    return public(services.coupons.find_all(status, is_active, discount_type))


@app.get("/api/coupons/active", response_model=List[dict])
def active_coupons(services: Services = Depends(get_services)):
    return public(services.coupons.active())


@app.get("/api/coupons/my-coupons", response_model=List[dict])
def my_coupons(user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.coupons.my_coupons(user["id"]))


@app.get("/api/coupons/code/{code}")
def coupon_by_code(code: str, user=Depends(current_user), services: Services = Depends(get_services)):
    coupon = services.coupons.find_by_code(code)
    coupon.pop("used_by", None)
    return public(coupon)


@app.post("/api/coupons/validate")
def validate_coupon(payload: ValidateCoupon, user=Depends(current_user), services: Services = Depends(get_services)):
    result = services.coupons.validate(payload.code, payload.cart_total, user["id"], payload.product_ids, payload.category_ids)
    if "coupon" in result:
        result["coupon"].pop("used_by", None)
    return public(result)


@app.get("/api/coupons/{coupon_id}")
def get_coupon(coupon_id: str, user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return public(services.coupons.find_one(coupon_id))


@app.get("/api/coupons/{coupon_id}/stats")
def coupon_stats(coupon_id: str, user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return services.coupons.stats(coupon_id)


@app.patch("/api/coupons/{coupon_id}")
def update_coupon(coupon_id: str, payload: UpdateCoupon, user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    return public(services.coupons.update(coupon_id, payload.model_dump(exclude_none=True)))


@app.delete("/api/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, user=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    services.coupons.remove(coupon_id)
    return {"id": coupon_id, "deleted": True}


# ============ Loyalty ============
@app.get("/api/loyalty/status")
def loyalty_status(user=Depends(current_user), services: Services = Depends(get_services)):
    return services.loyalty.status(user["id"])


@app.post("/api/loyalty/redeem/{coupon_id}")
def redeem_points(coupon_id: str, user=Depends(current_user), services: Services = Depends(get_services)):
    result = services.loyalty.redeem(user["id"], coupon_id)
    return {"user": public(result["user"]), "coupon": public(result["coupon"])}


# ============ Notifications ============
class TestNotification(BaseModel):
    message: str = "This is a test notification"
    type: str = Field("system", pattern="^(order|promotion|system)$")


@app.get("/api/notifications", response_model=List[dict])
def list_notifications(user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.notifications.find_all(user["id"]))


@app.post("/api/notifications/test", status_code=201)
def test_notification(payload: TestNotification, user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.notifications.create(user["id"], payload.message, payload.type))


@app.patch("/api/notifications/read-all")
def read_all_notifications(user=Depends(current_user), services: Services = Depends(get_services)):
    return {"modified": services.notifications.mark_all_as_read(user["id"])}


@app.patch("/api/notifications/{notification_id}/read")
def read_notification(notification_id: str, user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.notifications.mark_as_read(notification_id, user["id"]))


# ============ Wishlist ============
class CreateWishlist(BaseModel):
    name: str = "My Wishlist"


class RenameWishlist(BaseModel):
    name: str


class WishlistPrivacy(BaseModel):
    privacy: str = Field(..., pattern="^(private|public)$")


class ToggleBought(BaseModel):
    token: str
    product_id: str
    bought_by: Optional[str] = None


@app.get("/api/wishlist", response_model=List[dict])
def list_wishlists(user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.wishlist.find_all(user["id"]))


@app.post("/api/wishlist", status_code=201)
def create_wishlist(payload: CreateWishlist, user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.wishlist.create(user["id"], payload.name))


@app.get("/api/wishlist/share/{token}")
def shared_wishlist(token: str, services: Services = Depends(get_services)):
    return public(services.wishlist.find_by_token(token))


@app.post("/api/wishlist/shared/toggle-bought")
def toggle_bought(payload: ToggleBought, services: Services = Depends(get_services)):
    return public(services.wishlist.toggle_bought(payload.token, payload.product_id, payload.bought_by))


@app.post("/api/wishlist/add/{product_id}")
def add_to_wishlist(product_id: str, wishlist_id: Optional[str] = None, user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.wishlist.add(user["id"], product_id, wishlist_id))


@app.delete("/api/wishlist/remove/{product_id}")
def remove_from_wishlist(product_id: str, wishlist_id: Optional[str] = None, user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.wishlist.remove(user["id"], product_id, wishlist_id))


@app.get("/api/wishlist/{wishlist_id}")
def get_wishlist(wishlist_id: str, user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.wishlist.find_one(wishlist_id, user["id"]))


@app.patch("/api/wishlist/{wishlist_id}/privacy")
def wishlist_privacy(wishlist_id: str, payload: WishlistPrivacy, user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.wishlist.update_privacy(wishlist_id, user["id"], payload.privacy))


@app.patch("/api/wishlist/{wishlist_id}")
def rename_wishlist(wishlist_id: str, payload: RenameWishlist, user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.wishlist.rename(wishlist_id, user["id"], payload.name))


@app.delete("/api/wishlist/{wishlist_id}")
def delete_wishlist(wishlist_id: str, user=Depends(current_user), services: Services = Depends(get_services)):
    services.wishlist.delete(wishlist_id, user["id"])
    return {"id": wishlist_id, "deleted": True}


# ============ Gamification ============
@app.get("/api/gamification/profile")
def gamification_profile(user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.gamification.get_profile(user["id"]))


@app.post("/api/gamification/check-in")
def check_in(user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.gamification.check_in(user["id"]))


@app.post("/api/gamification/spin")
def spin_wheel(user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.gamification.spin_wheel(user["id"]))


@app.post("/api/gamification/scratch")
def scratch_card(user=Depends(current_user), services: Services = Depends(get_services)):
    return public(services.gamification.scratch_card(user["id"]))


@app.get("/api/gamification/leaderboard", response_model=List[dict])
def leaderboard(services: Services = Depends(get_services)):
    return public(services.gamification.leaderboard())


@app.get("/api/gamification/activities", response_model=List[dict])
def recent_activities(services: Services = Depends(get_services)):
    return public(services.gamification.recent_activities())


# ============ Chatbot ============
class ChatMessage(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)
    history: List[dict] = Field(default_factory=list)


@app.post("/api/chatbot/message")
def chatbot_message(payload: ChatMessage, user=Depends(current_user), services: Services = Depends(get_services)):
    return services.chatbot.process_message(user["id"], payload.message, payload.history)


# ============ Realtime ============
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    services = websocket.app.state.services
    user = None
    if token:
        try:
            user = services.auth.decode_token(token)
        except HTTPException:
            await websocket.close(code=1008)
            return

    gateway = services.gateway
    await gateway.connect(websocket, user["id"] if user else None, user["role"] if user else None)
    try:
        while True:
            message = await websocket.receive_json()
            if message.get("event") != "join" or not isinstance(message.get("data"), str):
                continue
            room = message["data"]
            # a socket may only join its own user and role rooms
            if user is None or room not in (user["id"], f"role:{user['role']}"):
                continue
            gateway.join(websocket, room)
    except WebSocketDisconnect:
        pass
    finally:
        gateway.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", settings.port))
    uvicorn.run(app, host="0.0.0.0", port=port)
