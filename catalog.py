"""
Catalog browsing and the shopping cart.
"""
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo.database import Database

from database import create_document, get_documents, now, oid, to_dict, translate_errors
from errors import ConflictError, NotFoundError, ValidationError
from schemas import CartItem, Category, ProductStatus

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = ["Accessories", "Bags", "Bottoms", "Dresses", "Outerwear", "Shoes", "Tops"]

PRICE_RANGES: Dict[str, Dict[str, Any]] = {
    "all": {},
    "under25": {"$lt": 25},
    "25to50": {"$gte": 25, "$lte": 50},
    "50to100": {"$gt": 50, "$lte": 100},
    "over100": {"$gt": 100},
}


class AddToCartResult(BaseModel):
    added: bool
    already_in_cart: bool = False
    item_id: Optional[str] = None
    message: str


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------
def list_categories(db: Database) -> List[Dict[str, Any]]:
    return [to_dict(c) for c in get_documents(db, "category", sort=[("name", 1)])]


def seed_categories(db: Database, names: Iterable[str] = DEFAULT_CATEGORIES) -> int:
    created = 0
    for name in names:
        with translate_errors("seed categories"):
            exists = db["category"].find_one({"name": name})
        if not exists:
            create_document(db, "category", Category(name=name))
            created += 1
    return created


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------
def object_ids(ids: Iterable[Optional[str]]) -> List[ObjectId]:
    return [ObjectId(i) for i in set(ids) if i and ObjectId.is_valid(i)]


def embed_related(db: Database, products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Attach `seller: {full_name}` and `category: {name}` to each product."""
    if not products:
        return products
    seller_ids = list({p.get("seller_id") for p in products if p.get("seller_id")})
    with translate_errors("read sellers"):
        sellers = {u["_id"]: u.get("full_name") for u in db["user"].find({"_id": {"$in": seller_ids}}, {"full_name": 1})}
        categories = {
            str(c["_id"]): c.get("name")
            for c in db["category"].find({"_id": {"$in": object_ids(p.get("category_id") for p in products)}})
        }
    for p in products:
        p["seller"] = {"full_name": sellers.get(p.get("seller_id"))}
        p["category"] = {"name": categories.get(p.get("category_id"))} if p.get("category_id") else None
    return products


def browse(db: Database, search: Optional[str] = None, category_id: Optional[str] = None,
           price_range: str = "all", limit: Optional[int] = None) -> List[Dict[str, Any]]:
    if price_range not in PRICE_RANGES:
        raise ValidationError(f"Unknown price range: {price_range}", field="price_range")

    flt: Dict[str, Any] = {"status": ProductStatus.available.value}
    if category_id:
        flt["category_id"] = category_id
    if PRICE_RANGES[price_range]:
        flt["price"] = PRICE_RANGES[price_range]
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        flt["$or"] = [{"title": pattern}, {"description": pattern}]

    docs = get_documents(db, "product", flt, limit=limit, sort=[("created_at", -1), ("_id", -1)])
    return embed_related(db, [to_dict(d) for d in docs])


def get_product(db: Database, product_id: str) -> Dict[str, Any]:
    with translate_errors("read product"):
        doc = db["product"].find_one({"_id": oid(product_id)})
    if not doc:
        raise NotFoundError("Product not found")
    return embed_related(db, [to_dict(doc)])[0]


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------
def add_to_cart(db: Database, user_id: str, product_id: str, quantity: int = 1, size: Optional[str] = None) -> AddToCartResult:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1", field="quantity")
    product = get_product(db, product_id)
    if product.get("status") != ProductStatus.available.value:
        raise ValidationError("This item is no longer available", field="product_id")

    item = CartItem(user_id=user_id, product_id=product["id"], quantity=quantity, size=size or "N/A")
    try:
        item_id = create_document(db, "cartitem", item)
    except ConflictError:
        return AddToCartResult(added=False, already_in_cart=True, message="Item already in cart")
    logger.info("User %s added %s to cart", user_id, product_id)
    return AddToCartResult(added=True, item_id=item_id, message="Added to cart!")


def buy_now(db: Database, user_id: str, product_id: str, quantity: int = 1, size: Optional[str] = None) -> Dict[str, Any]:
    result = add_to_cart(db, user_id, product_id, quantity, size)
    return {**result.model_dump(), "next": "checkout"}


def get_cart(db: Database, user_id: str) -> List[Dict[str, Any]]:
    lines = [to_dict(c) for c in get_documents(db, "cartitem", {"user_id": user_id}, sort=[("created_at", 1), ("_id", 1)])]
    if not lines:
        return lines
    with translate_errors("read cart products"):
        products = [to_dict(p) for p in db["product"].find({"_id": {"$in": object_ids(l["product_id"] for l in lines)}})]
    by_id = {p["id"]: p for p in embed_related(db, products)}
    for line in lines:
        line["product"] = by_id.get(line["product_id"])
    return lines


def cart_total(lines: List[Dict[str, Any]]) -> float:
    return round(sum(float(l["product"]["price"]) * l["quantity"] for l in lines if l.get("product")), 2)


def update_cart_quantity(db: Database, user_id: str, item_id: str, quantity: int) -> List[Dict[str, Any]]:
    if quantity < 1:
        return get_cart(db, user_id)
    with translate_errors("update cart"):
        res = db["cartitem"].update_one({"_id": oid(item_id), "user_id": user_id},
                                        {"$set": {"quantity": quantity, "updated_at": now()}})
    if res.matched_count == 0:
        raise NotFoundError("Cart item not found")
    return get_cart(db, user_id)


def remove_cart_item(db: Database, user_id: str, item_id: str) -> List[Dict[str, Any]]:
    with translate_errors("remove cart item"):
        res = db["cartitem"].delete_one({"_id": oid(item_id), "user_id": user_id})
    if res.deleted_count == 0:
        raise NotFoundError("Cart item not found")
    return get_cart(db, user_id)
