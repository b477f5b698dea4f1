"""
Platform administration: settings, dashboard numbers, roles and the audit log.
"""
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database

from database import create_document, get_documents, now, to_dict, translate_errors
from errors import NotFoundError, ValidationError
from schemas import AuditLog, ProductStatus, Role, Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
def get_settings(db: Database) -> Dict[str, Any]:
    with translate_errors("read settings"):
        s = db["settings"].find_one({})
    if not s:
        create_document(db, "settings", Settings())
        with translate_errors("read settings"):
            s = db["settings"].find_one({})
    return to_dict(s)


def update_settings(db: Database, commission_percent: Optional[float] = None,
                    payments: Optional[Dict[str, bool]] = None, actor_id: Optional[str] = None) -> Dict[str, Any]:
    current = get_settings(db)
    updates: Dict[str, Any] = {}
    if commission_percent is not None:
        updates["commission_percent"] = commission_percent
    if payments is not None:
        updates["payments"] = {**current.get("payments", {}), **payments}
    unknown = set((payments or {}).keys()) - set(Settings().payments.keys())
    if unknown:
        raise ValidationError(f"Unknown payment method: {', '.join(sorted(unknown))}", field="payments")
    try:
        Settings(**{**{k: v for k, v in current.items() if k in Settings.model_fields}, **updates})
    except PydanticValidationError as e:
        raise ValidationError("Invalid settings", field="commission_percent") from e
    if updates:
        updates["updated_at"] = now()
        with translate_errors("update settings"):
            db["settings"].update_one({}, {"$set": updates}, upsert=True)
        audit(db, "update_settings", "settings", actor_id=actor_id,
              metadata={k: v for k, v in updates.items() if k != "updated_at"})
    return get_settings(db)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
def audit(db: Database, action: str, resource_type: str, resource_id: Optional[str] = None,
          actor_id: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> str:
    entry = AuditLog(actor_id=actor_id, action=action, resource_type=resource_type,
                     resource_id=resource_id, metadata=metadata or {})
    return create_document(db, "auditlog", entry)


def list_audit_logs(db: Database, limit: int = 50) -> List[Dict[str, Any]]:
    return [to_dict(l) for l in get_documents(db, "auditlog", limit=limit, sort=[("created_at", -1), ("_id", -1)])]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
def list_users(db: Database) -> List[Dict[str, Any]]:
    return [to_dict(u) for u in get_documents(db, "user", sort=[("created_at", -1)])]


def update_user_role(db: Database, user_id: str, role: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    try:
        role = Role(role)
    except ValueError:
        raise ValidationError(f"Invalid role: {role}", field="role")
    with translate_errors("update user role"):
        res = db["user"].update_one({"_id": user_id}, {"$set": {"role": role.value, "updated_at": now()}})
    if res.matched_count == 0:
        raise NotFoundError("User not found")
    audit(db, "update_user_role", "user", resource_id=user_id, actor_id=actor_id, metadata={"role": role.value})
    logger.info("User %s role set to %s by %s", user_id, role.value, actor_id)
    with translate_errors("read user"):
        return to_dict(db["user"].find_one({"_id": user_id}))


def list_all_products(db: Database) -> List[Dict[str, Any]]:
    return [to_dict(p) for p in get_documents(db, "product", sort=[("created_at", -1)])]


# ---------------------------------------------------------------------------
# Dashboard numbers
# ---------------------------------------------------------------------------
def platform_stats(db: Database) -> Dict[str, Any]:
    with translate_errors("platform stats"):
        roles = [u.get("role") for u in db["user"].find({}, {"role": 1})]
        total_products = db["product"].count_documents({})
        orders = list(db["order"].find({}, {"total_amount": 1}))
    sellers = roles.count(Role.seller.value)
    buyers = roles.count(Role.buyer.value)
    total_sales = round(sum(float(o.get("total_amount", 0)) for o in orders), 2)
    return {
        "total_users": len(roles),
        "total_sellers": sellers,
        "total_buyers": buyers,
        "total_products": total_products,
        "total_orders": len(orders),
        "total_sales": total_sales,
        "average_order_value": round(total_sales / len(orders), 2) if orders else 0.0,
        "products_per_seller": round(total_products / sellers, 1) if sellers else 0.0,
        "buyers_per_seller": round(buyers / sellers, 1) if sellers else 0.0,
    }


def analytics(db: Database) -> Dict[str, List[Dict[str, Any]]]:
    with translate_errors("analytics"):
        users = list(db["user"].find({}, {"role": 1}))
        products = list(db["product"].find({}, {"category_id": 1, "status": 1}))
        categories = {str(c["_id"]): c.get("name") for c in db["category"].find({})}
        orders = list(db["order"].find({}, {"total_amount": 1, "created_at": 1}).sort("created_at", 1))

    sales: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for o in orders:
        created = o.get("created_at")
        if created is None:
            continue
        month = created.strftime("%b %Y")
        bucket = sales.setdefault(month, {"name": month, "sales": 0.0, "orders": 0})
        bucket["sales"] = round(bucket["sales"] + float(o.get("total_amount", 0)), 2)
        bucket["orders"] += 1

    roles = [u.get("role") for u in users]
    user_data = [
        {"name": "Sellers", "value": roles.count(Role.seller.value)},
        {"name": "Buyers", "value": roles.count(Role.buyer.value)},
        {"name": "Admins", "value": roles.count(Role.admin.value)},
    ]

    by_category: "OrderedDict[Optional[str], Dict[str, int]]" = OrderedDict()
    for p in products:
        stats = by_category.setdefault(p.get("category_id"), {"available": 0, "sold": 0})
        if p.get("status") == ProductStatus.available.value:
            stats["available"] += 1
        elif p.get("status") == ProductStatus.sold.value:
            stats["sold"] += 1
    product_data = [
        {"name": categories.get(cid) or "Unknown", **stats}
        for cid, stats in by_category.items()
    ]

    return {"sales_data": list(sales.values()), "user_data": user_data, "product_data": product_data}
