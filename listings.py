"""
Seller listings: create, edit and delete products with their images.

The first image of a listing is its primary image (`image_url`); the rest form
the gallery (`additional_images`).
"""
import logging
import secrets
import time
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel
from pymongo.database import Database

from admin import audit
from catalog import embed_related
from database import create_document, get_documents, now, oid, to_dict, translate_errors
from errors import MarketplaceError, NotFoundError, PermissionDeniedError, ValidationError
from profiles import capabilities
from schemas import Product, ProductStatus, normalize_condition
from storage import ObjectStorage

logger = logging.getLogger(__name__)

BUCKET = "product-images"
MAX_IMAGES = 5
MAX_IMAGE_BYTES = 5 * 1024 * 1024

STATUS_FILTERS = ("all", "available", "pending", "sold", "draft")


class ImageUpload(BaseModel):
    filename: str
    content_type: str
    data: bytes


class ListingForm(BaseModel):
    title: str = ""
    description: str = ""
    price: Optional[float] = None
    quantity: int = 1
    category_id: Optional[str] = None
    condition: Optional[str] = "good"
    brand: Optional[str] = None
    size: Optional[str] = None
    status: Optional[str] = None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def validate_form(db: Database, form: ListingForm) -> Dict[str, Any]:
    if not form.title.strip() or not form.description.strip() or form.price is None:
        raise ValidationError("Please fill in all required fields")
    if form.price < 0:
        raise ValidationError("Price cannot be negative", field="price")
    if form.quantity < 0:
        raise ValidationError("Quantity cannot be negative", field="quantity")
    try:
        condition = normalize_condition(form.condition)
    except ValueError:
        raise ValidationError(f"Unknown condition: {form.condition}", field="condition")
    if form.category_id:
        with translate_errors("read category"):
            found = db["category"].find_one({"_id": oid(form.category_id)})
        if not found:
            raise ValidationError("Unknown category", field="category_id")

    fields = {
        "title": form.title.strip(),
        "description": form.description.strip(),
        "price": round(float(form.price), 2),
        "quantity": int(form.quantity),
        "category_id": form.category_id or None,
        "condition": condition.value,
        "brand": form.brand or None,
        "size": form.size or None,
    }
    if form.status:
        try:
            fields["status"] = ProductStatus(form.status).value
        except ValueError:
            raise ValidationError(f"Unknown status: {form.status}", field="status")
    return fields


def validate_images(images: List[ImageUpload], existing: int = 0) -> None:
    if existing + len(images) == 0:
        raise ValidationError("Please add at least one product image", field="images")
    if existing + len(images) > MAX_IMAGES:
        raise ValidationError(f"Maximum {MAX_IMAGES} images allowed", field="images")
    for image in images:
        if not (image.content_type or "").startswith("image/"):
            raise ValidationError(f"{image.filename} is not an image", field="images")
        if len(image.data) > MAX_IMAGE_BYTES:
            raise ValidationError(f"{image.filename} exceeds 5MB limit", field="images")


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------
def _storage_path(seller_id: str, filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "jpg"
    return f"{seller_id}/{int(time.time() * 1000)}-{secrets.token_hex(4)}.{ext}"


def upload_images(storage: ObjectStorage, seller_id: str, images: List[ImageUpload]) -> List[str]:
    """Upload in order and return the public URLs; on failure the already stored files are removed."""
    stored: List[str] = []
    try:
        for image in images:
            path = _storage_path(seller_id, image.filename)
            storage.upload(BUCKET, path, image.data)
            stored.append(path)
    except MarketplaceError:
        logger.error("Error uploading images for %s", seller_id, exc_info=True)
        for path in stored:
            storage.remove(BUCKET, path)
        raise
    return [storage.get_public_url(BUCKET, path) for path in stored]


def split_images(urls: List[str]) -> Tuple[Optional[str], List[str]]:
    if not urls:
        return None, []
    return urls[0], list(urls[1:])


def _images_of(product: Dict[str, Any]) -> List[str]:
    urls = [product["image_url"]] if product.get("image_url") else []
    return urls + list(product.get("additional_images") or [])


def remove_images(storage: ObjectStorage, urls: List[str]) -> None:
    """Remove stored files behind listing image URLs; URLs outside the bucket are left alone."""
    prefix = f"{storage.public_url}/{BUCKET}/"
    for url in urls:
        if not url or not url.startswith(prefix):
            continue
        try:
            storage.remove(BUCKET, url[len(prefix):])
        except MarketplaceError as e:
            logger.warning("Could not remove image %s: %s", url, e)


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------
def _owned(db: Database, product_id: str, actor_id: str, actor_role: Any) -> Dict[str, Any]:
    with translate_errors("read product"):
        product = db["product"].find_one({"_id": oid(product_id)})
    if not product:
        raise NotFoundError("Product not found")
    if product.get("seller_id") != actor_id and not capabilities(actor_role).can_manage_products:
        raise PermissionDeniedError("You can only manage your own listings")
    return product


def create_listing(db: Database, storage: ObjectStorage, seller_id: str, form: ListingForm,
                   images: List[ImageUpload]) -> Dict[str, Any]:
    fields = validate_form(db, form)
    validate_images(images)

    main_image, gallery = split_images(upload_images(storage, seller_id, images))
    product = Product(seller_id=seller_id, image_url=main_image, additional_images=gallery,
                      **{"status": ProductStatus.available.value, **fields})
    product_id = create_document(db, "product", product)
    audit(db, "create_product", "product", resource_id=product_id, actor_id=seller_id,
          metadata={"seller_id": seller_id})
    logger.info("Seller %s listed product %s", seller_id, product_id)
    with translate_errors("read product"):
        return to_dict(db["product"].find_one({"_id": oid(product_id)}))


def update_listing(db: Database, storage: ObjectStorage, product_id: str, actor_id: str, actor_role: Any,
                   form: ListingForm, keep_images: Optional[List[str]] = None,
                   new_images: Optional[List[ImageUpload]] = None) -> Dict[str, Any]:
    product = _owned(db, product_id, actor_id, actor_role)
    fields = validate_form(db, form)

    current = _images_of(product)
    kept = current if keep_images is None else list(keep_images)
    if any(url not in current for url in kept):
        raise ValidationError("Unknown image in listing", field="images")
    new_images = new_images or []
    validate_images(new_images, existing=len(kept))

    uploaded = upload_images(storage, product["seller_id"], new_images) if new_images else []
    main_image, gallery = split_images(kept + uploaded)
    fields.update({"image_url": main_image, "additional_images": gallery, "updated_at": now()})

    with translate_errors("update product"):
        db["product"].update_one({"_id": product["_id"]}, {"$set": fields})
    remove_images(storage, [url for url in current if url not in kept])
    audit(db, "update_product", "product", resource_id=product_id, actor_id=actor_id)
    with translate_errors("read product"):
        return to_dict(db["product"].find_one({"_id": product["_id"]}))


def delete_listing(db: Database, storage: ObjectStorage, product_id: str, actor_id: str, actor_role: Any) -> None:
    product = _owned(db, product_id, actor_id, actor_role)
    with translate_errors("delete product"):
        db["product"].delete_one({"_id": product["_id"]})
    remove_images(storage, _images_of(product))
    audit(db, "delete_product", "product", resource_id=product_id, actor_id=actor_id)
    logger.info("Product %s deleted by %s", product_id, actor_id)


def list_seller_listings(db: Database, seller_id: str, category_id: Optional[str] = None,
                         status: str = "all", search: Optional[str] = None) -> List[Dict[str, Any]]:
    if status not in STATUS_FILTERS:
        raise ValidationError(f"Unknown status: {status}", field="status")
    flt: Dict[str, Any] = {"seller_id": seller_id}
    if category_id:
        flt["category_id"] = category_id
    if status != "all":
        flt["status"] = status
    products = [to_dict(p) for p in get_documents(db, "product", flt, sort=[("created_at", -1), ("_id", -1)])]
    if search:
        term = search.lower()
        products = [p for p in products
                    if term in p.get("title", "").lower() or term in (p.get("description") or "").lower()]
    return embed_related(db, products)


def seller_dashboard_stats(db: Database, seller_id: str) -> Dict[str, int]:
    with translate_errors("seller stats"):
        statuses = [p.get("status") for p in db["product"].find({"seller_id": seller_id}, {"status": 1})]
    return {
        "total_products": len(statuses),
        "available_products": statuses.count(ProductStatus.available.value),
        "sold_products": statuses.count(ProductStatus.sold.value),
        "draft_products": statuses.count(ProductStatus.draft.value),
    }
