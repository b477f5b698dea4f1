"""
Order lifecycle.

    pending -> processing -> shipped -> delivered
    pending -> cancelled

delivered and cancelled are terminal. Cancelling releases the ordered products
back to `available`; that release is best-effort and reported as warnings.
"""
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pymongo.database import Database

from catalog import object_ids
from database import get_documents, now, oid, to_dict, translate_errors
from errors import InvalidTransitionError, MarketplaceError, NotFoundError, PermissionDeniedError, ValidationError
from profiles import capabilities, to_role
from schemas import OrderStatus, ProductStatus, Role

logger = logging.getLogger(__name__)

TRANSITIONS = {
    OrderStatus.pending: {OrderStatus.processing, OrderStatus.cancelled},
    OrderStatus.processing: {OrderStatus.shipped},
    OrderStatus.shipped: {OrderStatus.delivered},
    OrderStatus.delivered: set(),
    OrderStatus.cancelled: set(),
}


class StatusChange(BaseModel):
    order: Dict[str, Any]
    previous_status: OrderStatus
    warnings: List[str] = Field(default_factory=list)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS.get(current, set())


def _load(db: Database, order_id: str) -> Dict[str, Any]:
    with translate_errors("read order"):
        doc = db["order"].find_one({"_id": oid(order_id)})
    if not doc:
        raise NotFoundError("Order not found")
    return doc


def _check_actor(order: Dict[str, Any], target: OrderStatus, actor_id: str, actor_role: Any) -> None:
    if capabilities(actor_role).is_admin:
        return
    is_seller = order.get("seller_id") == actor_id
    if target == OrderStatus.cancelled:
        if is_seller or order.get("buyer_id") == actor_id:
            return
    elif is_seller:
        return
    raise PermissionDeniedError("You cannot change the status of this order")


def release_inventory(db: Database, order_id: str) -> List[str]:
    """Set every product of the order back to available. Returns warnings instead of raising."""
    warnings: List[str] = []
    try:
        with translate_errors("read order items"):
            product_ids = [i["product_id"] for i in db["orderitem"].find({"order_id": order_id}, {"product_id": 1})]
        if product_ids:
            with translate_errors("release products"):
                db["product"].update_many(
                    {"_id": {"$in": object_ids(product_ids)}},
                    {"$set": {"status": ProductStatus.available.value, "updated_at": now()}},
                )
    except MarketplaceError as e:
        logger.error("Error updating product status for order %s: %s", order_id, e)
        warnings.append(f"Products of order {order_id} could not be released: {e.message}")
    return warnings


def advance_status(db: Database, order_id: str, new_status: Any, actor_id: str, actor_role: Any) -> StatusChange:
    try:
        target = OrderStatus(new_status)
    except ValueError:
        raise ValidationError(f"Unknown order status: {new_status}", field="status")

    order = _load(db, order_id)
    current = OrderStatus(order.get("status", OrderStatus.pending.value))
    if not can_transition(current, target):
        logger.warning("Rejected order %s transition %s -> %s", order_id, current.value, target.value)
        raise InvalidTransitionError(f"Cannot change order from {current.value} to {target.value}")
    _check_actor(order, target, actor_id, actor_role)

    with translate_errors("update order status"):
        db["order"].update_one({"_id": order["_id"]}, {"$set": {"status": target.value, "updated_at": now()}})

    warnings: List[str] = []
    if target == OrderStatus.cancelled:
        warnings = release_inventory(db, order_id)

    logger.info("Order %s %s -> %s by %s", order_id, current.value, target.value, actor_id)
    return StatusChange(order=to_dict(_load(db, order_id)), previous_status=current, warnings=warnings)


def _viewer_filter(viewer_id: str, viewer_role: Any) -> Dict[str, Any]:
    if to_role(viewer_role) in (Role.seller, Role.admin):
        return {"seller_id": viewer_id}
    return {"buyer_id": viewer_id}


def list_orders(db: Database, viewer_id: str, viewer_role: Any, status: Optional[str] = "all") -> List[Dict[str, Any]]:
    flt = _viewer_filter(viewer_id, viewer_role)
    if status and status != "all":
        try:
            flt["status"] = OrderStatus(status).value
        except ValueError:
            raise ValidationError(f"Unknown order status: {status}", field="status")
    return [to_dict(o) for o in get_documents(db, "order", flt, sort=[("created_at", -1), ("_id", -1)])]


def order_counts(db: Database, viewer_id: str, viewer_role: Any) -> Dict[str, int]:
    with translate_errors("count orders"):
        statuses = [o.get("status") for o in db["order"].find(_viewer_filter(viewer_id, viewer_role), {"status": 1})]
    counts = {"all": len(statuses)}
    for s in OrderStatus:
        counts[s.value] = statuses.count(s.value)
    return counts


def get_order(db: Database, order_id: str, viewer_id: str, viewer_role: Any) -> Dict[str, Any]:
    order = _load(db, order_id)
    if not capabilities(viewer_role).is_admin and viewer_id not in (order.get("buyer_id"), order.get("seller_id")):
        raise NotFoundError("Order not found")
    result = to_dict(order)
    result["items"] = get_order_items(db, order_id)
    return result


def get_order_items(db: Database, order_id: str) -> List[Dict[str, Any]]:
    items = [to_dict(i) for i in get_documents(db, "orderitem", {"order_id": order_id}, sort=[("_id", 1)])]
    if not items:
        return items
    with translate_errors("read order products"):
        products = {
            str(p["_id"]): {"id": str(p["_id"]), "title": p.get("title"), "image_url": p.get("image_url"), "brand": p.get("brand")}
            for p in db["product"].find({"_id": {"$in": object_ids(i["product_id"] for i in items)}})
        }
    for item in items:
        item["product"] = products.get(item["product_id"])
    return items
