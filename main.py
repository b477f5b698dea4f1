import logging
import os
import threading
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from pymongo.database import Database

import admin
import catalog
import checkout
import listings
import orders
from auth_provider import AuthProvider, Session
from database import db, ensure_indexes, get_db
from errors import MarketplaceError, NotFoundError, PermissionDeniedError
from profiles import CurrentUser, ProfileManager, profile_stats, require_role
from schemas import Role
from storage import ObjectStorage

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
        catalog.seed_categories(db)
    yield


app = FastAPI(title="Second-hand Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

storage = ObjectStorage()
app.mount("/storage", StaticFiles(directory=str(storage.root), check_dir=False), name="storage")


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.payload()))


# ---------------------------- Dependencies ---------------------------------
bearer = HTTPBearer(auto_error=False)

_profiles: Optional[ProfileManager] = None
_profiles_lock = threading.Lock()


def get_storage() -> ObjectStorage:
    return storage


def get_profiles(database: Database = Depends(get_db)) -> ProfileManager:
    global _profiles
    with _profiles_lock:
        if _profiles is None or _profiles.db is not database:
            if _profiles is not None:
                _profiles.close()
            _profiles = ProfileManager(database, AuthProvider(database))
        return _profiles


def get_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Optional[str]:
    return credentials.credentials if credentials else None


def current_user(token: Optional[str] = Depends(get_token),
                 profiles: ProfileManager = Depends(get_profiles)) -> CurrentUser:
    return profiles.current(token)


def seller_user(user: CurrentUser = Depends(current_user)) -> CurrentUser:
    return require_role(user, Role.seller)


def admin_user(user: CurrentUser = Depends(current_user)) -> CurrentUser:
    return require_role(user, Role.admin)


# --------------------------- Schemas (DTOs) ---------------------------------
class SignUpRequest(BaseModel):
    email: str
    password: str
    full_name: str
    role: str = Role.buyer.value


class LoginRequest(BaseModel):
    email: str
    password: str


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class PasswordChange(BaseModel):
    new_password: str
    confirm_password: str


class EmailChange(BaseModel):
    email: str


class CartAdd(BaseModel):
    product_id: str
    quantity: int = 1
    size: Optional[str] = None


class CartQuantity(BaseModel):
    quantity: int


class VoucherRequest(BaseModel):
    code: str


class PlaceOrderRequest(BaseModel):
    shipping: checkout.ShippingInfo
    payment: checkout.PaymentInfo = Field(default_factory=checkout.PaymentInfo)
    voucher_code: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str


class RoleUpdate(BaseModel):
    role: str


class UpdateSettings(BaseModel):
    commission_percent: Optional[float] = None
    payments: Optional[Dict[str, bool]] = None


def _session_payload(session: Session, user: CurrentUser) -> Dict[str, Any]:
    return {
        "access_token": session.access_token,
        "token_type": "bearer",
        "expires_at": session.expires_at,
        "user": user.profile,
        "capabilities": user.capabilities,
    }


def _images(files: Optional[List[UploadFile]]) -> List[listings.ImageUpload]:
    return [
        listings.ImageUpload(filename=f.filename or "image", content_type=f.content_type or "", data=f.file.read())
        for f in files or []
        if f.filename
    ]


# ---------------------------- Root & Health --------------------------------
@app.get("/")
def read_root():
    return {"message": "Marketplace backend running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    if db is not None:
        response["database"] = "✅ Available"
        try:
            collections = db.list_collection_names()
            response["collections"] = collections[:10]
            response["connection_status"] = "Connected"
            response["database"] = "✅ Connected & Working"
            response["database_url"] = "✅ Set"
            response["database_name"] = getattr(db, "name", "✅ Set")
        except Exception as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


# -------------------------------- Auth -------------------------------------
@app.post("/api/auth/signup")
def sign_up(body: SignUpRequest, profiles: ProfileManager = Depends(get_profiles)):
    session, _ = profiles.sign_up(body.email, body.password, body.full_name, body.role)
    return _session_payload(session, profiles.current(session.access_token))


@app.post("/api/auth/login")
def login(body: LoginRequest, profiles: ProfileManager = Depends(get_profiles)):
    session = profiles.sign_in(body.email, body.password)
    return _session_payload(session, profiles.current(session.access_token))


@app.post("/api/auth/logout")
def logout(token: Optional[str] = Depends(get_token), profiles: ProfileManager = Depends(get_profiles)):
    if token:
        profiles.sign_out(token)
    return {"signed_out": True}


@app.get("/api/auth/me")
def me(user: CurrentUser = Depends(current_user)):
    return {"user": user.profile, "capabilities": user.capabilities}


# ------------------------------- Profile -----------------------------------
@app.get("/api/profile")
def get_profile(user: CurrentUser = Depends(current_user)):
    if user.profile is None:
        raise NotFoundError("Profile not found")
    return user.profile


@app.put("/api/profile")
def update_profile(body: ProfileUpdate, token: Optional[str] = Depends(get_token),
                   profiles: ProfileManager = Depends(get_profiles)):
    return profiles.update_profile(token, body.model_dump(exclude_none=True))


@app.get("/api/profile/stats")
def get_profile_stats(user: CurrentUser = Depends(current_user), database: Database = Depends(get_db)):
    return profile_stats(database, user.id, user.role)


@app.post("/api/profile/password")
def change_password(body: PasswordChange, user: CurrentUser = Depends(current_user),
                    profiles: ProfileManager = Depends(get_profiles)):
    profiles.change_password(user.session.access_token, body.new_password, body.confirm_password)
    return {"updated": True, "message": "Password updated successfully"}


@app.post("/api/profile/email")
def change_email(body: EmailChange, user: CurrentUser = Depends(current_user),
                 profiles: ProfileManager = Depends(get_profiles)):
    return profiles.change_email(user.session.access_token, body.email)


# ---------------------------- Public Catalog -------------------------------
@app.get("/api/categories")
def list_categories(database: Database = Depends(get_db)):
    return {"categories": catalog.list_categories(database)}


@app.get("/api/products")
def browse_products(search: Optional[str] = None, category_id: Optional[str] = None, price_range: str = "all",
                    limit: Optional[int] = None, database: Database = Depends(get_db)):
    return {"products": catalog.browse(database, search, category_id, price_range, limit)}


@app.get("/api/products/{product_id}")
def get_product(product_id: str, database: Database = Depends(get_db)):
    return catalog.get_product(database, product_id)


# -------------------------------- Cart -------------------------------------
def _cart_payload(lines: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"items": lines, "total": catalog.cart_total(lines)}


@app.get("/api/cart")
def get_cart(user: CurrentUser = Depends(current_user), database: Database = Depends(get_db)):
    return _cart_payload(catalog.get_cart(database, user.id))


@app.post("/api/cart")
def add_to_cart(body: CartAdd, user: CurrentUser = Depends(current_user), database: Database = Depends(get_db)):
    return catalog.add_to_cart(database, user.id, body.product_id, body.quantity, body.size)


@app.post("/api/cart/buy-now")
def buy_now(body: CartAdd, user: CurrentUser = Depends(current_user), database: Database = Depends(get_db)):
    return catalog.buy_now(database, user.id, body.product_id, body.quantity, body.size)


@app.put("/api/cart/{item_id}")
def update_cart_quantity(item_id: str, body: CartQuantity, user: CurrentUser = Depends(current_user),
                         database: Database = Depends(get_db)):
    return _cart_payload(catalog.update_cart_quantity(database, user.id, item_id, body.quantity))


@app.delete("/api/cart/{item_id}")
def remove_cart_item(item_id: str, user: CurrentUser = Depends(current_user), database: Database = Depends(get_db)):
    return _cart_payload(catalog.remove_cart_item(database, user.id, item_id))


# ------------------------------ Checkout -----------------------------------
@app.get("/api/checkout/summary")
def checkout_summary(voucher: Optional[str] = None, user: CurrentUser = Depends(current_user),
                     database: Database = Depends(get_db)):
    return checkout.checkout_summary(database, user.id, voucher)


@app.post("/api/checkout/voucher")
def apply_voucher(body: VoucherRequest, user: CurrentUser = Depends(current_user),
                  database: Database = Depends(get_db)):
    subtotal = catalog.cart_total(catalog.get_cart(database, user.id))
    return checkout.apply_voucher(body.code, subtotal)


@app.post("/api/checkout")
def place_order(body: PlaceOrderRequest, user: CurrentUser = Depends(current_user),
                database: Database = Depends(get_db)):
    return checkout.place_order(database, user.id, body.shipping, body.payment, body.voucher_code)


# ------------------------------- Orders ------------------------------------
def _viewer_role(user: CurrentUser, view: Optional[str]) -> Role:
    """Sellers and admins may look at their purchases instead of their sales."""
    if view == "buyer":
        return Role.buyer
    if view == "seller":
        if not user.capabilities.is_seller:
            raise PermissionDeniedError("seller access required")
        return Role.seller
    return user.role


@app.get("/api/orders")
def list_orders(status: str = "all", view: Optional[str] = None, user: CurrentUser = Depends(current_user),
                database: Database = Depends(get_db)):
    return {"orders": orders.list_orders(database, user.id, _viewer_role(user, view), status)}


@app.get("/api/orders/counts")
def order_counts(view: Optional[str] = None, user: CurrentUser = Depends(current_user),
                 database: Database = Depends(get_db)):
    return orders.order_counts(database, user.id, _viewer_role(user, view))


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: CurrentUser = Depends(current_user), database: Database = Depends(get_db)):
    return orders.get_order(database, order_id, user.id, user.role)


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusUpdate, user: CurrentUser = Depends(current_user),
                        database: Database = Depends(get_db)):
    return orders.advance_status(database, order_id, body.status, user.id, user.role)


# ---------------------------- Seller endpoints -----------------------------
@app.get("/api/seller/products")
def seller_products(category_id: Optional[str] = None, status: str = "all", search: Optional[str] = None,
                    user: CurrentUser = Depends(seller_user), database: Database = Depends(get_db)):
    return {"products": listings.list_seller_listings(database, user.id, category_id, status, search)}


@app.get("/api/seller/stats")
def seller_stats(user: CurrentUser = Depends(seller_user), database: Database = Depends(get_db)):
    return listings.seller_dashboard_stats(database, user.id)


@app.post("/api/seller/products")
def create_product(
    title: str = Form(""),
    description: str = Form(""),
    price: Optional[float] = Form(None),
    quantity: int = Form(1),
    category_id: Optional[str] = Form(None),
    condition: Optional[str] = Form("good"),
    brand: Optional[str] = Form(None),
    size: Optional[str] = Form(None),
    status: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    user: CurrentUser = Depends(seller_user),
    database: Database = Depends(get_db),
    object_storage: ObjectStorage = Depends(get_storage),
    profiles: ProfileManager = Depends(get_profiles),
):
    form = listings.ListingForm(title=title, description=description, price=price, quantity=quantity,
                                category_id=category_id, condition=condition, brand=brand, size=size, status=status)
    product = listings.create_listing(database, object_storage, user.id, form, _images(images))
    profiles.store_for(user.session.access_token).clear_draft("new_listing")
    return product


@app.put("/api/seller/products/{product_id}")
def update_product(
    product_id: str,
    title: str = Form(""),
    description: str = Form(""),
    price: Optional[float] = Form(None),
    quantity: int = Form(1),
    category_id: Optional[str] = Form(None),
    condition: Optional[str] = Form("good"),
    brand: Optional[str] = Form(None),
    size: Optional[str] = Form(None),
    status: Optional[str] = Form(None),
    keep_images: Optional[List[str]] = Form(None),
    replace_images: bool = Form(False),
    images: Optional[List[UploadFile]] = File(None),
    user: CurrentUser = Depends(seller_user),
    database: Database = Depends(get_db),
    object_storage: ObjectStorage = Depends(get_storage),
):
    form = listings.ListingForm(title=title, description=description, price=price, quantity=quantity,
                                category_id=category_id, condition=condition, brand=brand, size=size, status=status)
    if keep_images is None and replace_images:
        keep_images = []
    return listings.update_listing(database, object_storage, product_id, user.id, user.role, form,
                                   keep_images, _images(images))


@app.delete("/api/seller/products/{product_id}")
def delete_product(product_id: str, user: CurrentUser = Depends(seller_user), database: Database = Depends(get_db),
                   object_storage: ObjectStorage = Depends(get_storage)):
    listings.delete_listing(database, object_storage, product_id, user.id, user.role)
    return {"deleted": True}


# form drafts live in the session store and disappear on sign out
@app.put("/api/seller/drafts/{name}")
def save_draft(name: str, draft: Dict[str, Any], user: CurrentUser = Depends(seller_user),
               profiles: ProfileManager = Depends(get_profiles)):
    profiles.store_for(user.session.access_token).save_draft(name, draft)
    return {"saved": True}


@app.get("/api/seller/drafts/{name}")
def load_draft(name: str, user: CurrentUser = Depends(seller_user),
               profiles: ProfileManager = Depends(get_profiles)):
    return {"draft": profiles.store_for(user.session.access_token).load_draft(name)}


@app.delete("/api/seller/drafts/{name}")
def clear_draft(name: str, user: CurrentUser = Depends(seller_user),
                profiles: ProfileManager = Depends(get_profiles)):
    profiles.store_for(user.session.access_token).clear_draft(name)
    return {"cleared": True}


# ------------------------------- Admin -------------------------------------
@app.get("/api/admin/stats")
def admin_stats(user: CurrentUser = Depends(admin_user), database: Database = Depends(get_db)):
    return admin.platform_stats(database)


@app.get("/api/admin/analytics")
def admin_analytics(user: CurrentUser = Depends(admin_user), database: Database = Depends(get_db)):
    return admin.analytics(database)


@app.get("/api/admin/users")
def list_users(user: CurrentUser = Depends(admin_user), database: Database = Depends(get_db)):
    return {"users": admin.list_users(database)}


@app.put("/api/admin/users/{user_id}/role")
def set_user_role(user_id: str, body: RoleUpdate, user: CurrentUser = Depends(admin_user),
                  database: Database = Depends(get_db), profiles: ProfileManager = Depends(get_profiles)):
    updated = admin.update_user_role(database, user_id, body.role, actor_id=user.id)
    profiles.invalidate(user_id)
    return updated


@app.get("/api/admin/products")
def list_all_products(user: CurrentUser = Depends(admin_user), database: Database = Depends(get_db)):
    return {"products": catalog.embed_related(database, admin.list_all_products(database))}


@app.delete("/api/admin/products/{product_id}")
def admin_delete_product(product_id: str, user: CurrentUser = Depends(admin_user),
                         database: Database = Depends(get_db), object_storage: ObjectStorage = Depends(get_storage)):
    listings.delete_listing(database, object_storage, product_id, user.id, user.role)
    return {"deleted": True}


@app.get("/api/admin/settings")
def get_settings(user: CurrentUser = Depends(admin_user), database: Database = Depends(get_db)):
    return admin.get_settings(database)


@app.put("/api/admin/settings")
def update_settings(body: UpdateSettings, user: CurrentUser = Depends(admin_user),
                    database: Database = Depends(get_db)):
    return admin.update_settings(database, body.commission_percent, body.payments, actor_id=user.id)


@app.get("/api/admin/logs")
def get_logs(limit: int = 50, user: CurrentUser = Depends(admin_user), database: Database = Depends(get_db)):
    return {"logs": admin.list_audit_logs(database, limit)}


@app.post("/api/admin/categories/seed")
def seed_categories(user: CurrentUser = Depends(admin_user), database: Database = Depends(get_db)):
    return {"created": catalog.seed_categories(database)}


@app.post("/api/admin/reconcile")
def reconcile(older_than_minutes: int = 5, user: CurrentUser = Depends(admin_user),
              database: Database = Depends(get_db)):
    return checkout.reconcile_checkouts(database, timedelta(minutes=older_than_minutes))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
