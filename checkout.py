"""
Cart-to-order conversion.

A checkout turns the buyer's cart into one order per seller. MongoDB gives no
multi-document transaction here, so every seller group is written under a
`checkoutlog` journal: if a step fails the group's earlier steps are undone,
while groups that already committed stay placed. reconcile_checkouts() finishes
or undoes journals that a crashed process left in progress.
"""
import logging
import uuid
from collections import OrderedDict
from datetime import timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from pymongo.database import Database

from admin import get_settings
from catalog import cart_total, get_cart
from database import create_document, now, oid, to_dict, translate_errors
from errors import CheckoutFailedError, ConflictError, EmptyCartError, MarketplaceError, ValidationError
from schemas import CheckoutLog, Order, OrderItem, OrderStatus, PaymentMethod, ProductStatus

logger = logging.getLogger(__name__)

VOUCHERS = {
    "SAVE10": 0.10,
    "SAVE20": 0.20,
}

SHIPPING_FEE_NOTE = "to be calculated"

# checked in this order; the first missing one is reported
SHIPPING_FIELDS: List[Tuple[str, str]] = [
    ("province", "Please select a province"),
    ("city", "Please enter your city/municipality"),
    ("barangay", "Please enter your barangay"),
    ("street", "Please enter your street address"),
    ("phone", "Please enter your contact phone number"),
]

PAYMENT_FIELDS: Dict[PaymentMethod, List[Tuple[str, str]]] = {
    PaymentMethod.cash_on_delivery: [],
    PaymentMethod.gcash: [
        ("gcash_number", "Please enter your GCash number"),
        ("gcash_name", "Please enter your GCash account name"),
    ],
    PaymentMethod.card: [
        ("card_number", "Please enter your card number"),
        ("card_name", "Please enter the cardholder name"),
        ("card_expiry", "Please enter the card expiry"),
        ("card_cvv", "Please enter the card CVV"),
    ],
    PaymentMethod.bank_transfer: [
        ("bank_name", "Please enter your bank name"),
        ("bank_account_number", "Please enter your account number"),
        ("bank_account_name", "Please enter the account holder name"),
    ],
}


# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------
class ShippingInfo(BaseModel):
    province: str = ""
    city: str = ""
    barangay: str = ""
    street: str = ""
    phone: str = ""
    delivery_instructions: Optional[str] = None
    notes: Optional[str] = None

    def full_address(self) -> str:
        address = f"{self.street.strip()}, {self.barangay.strip()}, {self.city.strip()}, {self.province.strip()}"
        if self.delivery_instructions:
            address += f" - {self.delivery_instructions}"
        return address


class PaymentInfo(BaseModel):
    method: PaymentMethod = PaymentMethod.cash_on_delivery
    gcash_number: str = ""
    gcash_name: str = ""
    card_number: str = ""
    card_name: str = ""
    card_expiry: str = ""
    card_cvv: str = ""
    bank_name: str = ""
    bank_account_number: str = ""
    bank_account_name: str = ""

    def recorded_details(self) -> Dict[str, str]:
        """Fields kept on the order. Card and account numbers are cut to their last 4 digits; the CVV is dropped."""
        if self.method == PaymentMethod.gcash:
            return {"gcash_number": self.gcash_number.strip(), "gcash_name": self.gcash_name.strip()}
        if self.method == PaymentMethod.card:
            return {
                "card_last4": self.card_number.replace(" ", "")[-4:],
                "card_name": self.card_name.strip(),
                "card_expiry": self.card_expiry.strip(),
            }
        if self.method == PaymentMethod.bank_transfer:
            return {
                "bank_name": self.bank_name.strip(),
                "bank_account_last4": self.bank_account_number.replace(" ", "")[-4:],
                "bank_account_name": self.bank_account_name.strip(),
            }
        return {}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------
class VoucherResult(BaseModel):
    code: Optional[str] = None
    applied: bool = False
    discount: float = 0.0
    message: Optional[str] = None


class CheckoutSummary(BaseModel):
    items: List[Dict[str, Any]]
    subtotal: float
    discount: float
    shipping: str = SHIPPING_FEE_NOTE
    total: float
    voucher: VoucherResult


class CheckoutResult(BaseModel):
    checkout_id: str
    subtotal: float
    discount: float
    shipping: str = SHIPPING_FEE_NOTE
    total: float
    voucher: VoucherResult
    orders: List[Dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Validation and pricing
# ---------------------------------------------------------------------------
def validate_shipping(shipping: ShippingInfo) -> None:
    for field, message in SHIPPING_FIELDS:
        if not (getattr(shipping, field) or "").strip():
            raise ValidationError(message, field=field)


def validate_payment(payment: PaymentInfo, enabled: Optional[Dict[str, bool]] = None) -> None:
    if enabled is not None and not enabled.get(payment.method.value, False):
        raise ValidationError("This payment method is currently unavailable", field="method")
    for field, message in PAYMENT_FIELDS[payment.method]:
        if not (getattr(payment, field) or "").strip():
            raise ValidationError(message, field=field)


def apply_voucher(code: Optional[str], subtotal: float) -> VoucherResult:
    code = (code or "").strip().upper()
    if not code:
        return VoucherResult()
    rate = VOUCHERS.get(code)
    if rate is None:
        return VoucherResult(code=code, message="Invalid voucher code")
    discount = round(subtotal * rate, 2)
    return VoucherResult(code=code, applied=True, discount=discount,
                         message=f"Voucher applied! You saved {discount:.2f}")


def partition_by_seller(lines: List[Dict[str, Any]]) -> "OrderedDict[str, List[Dict[str, Any]]]":
    groups: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
    for line in lines:
        groups.setdefault(line["product"]["seller_id"], []).append(line)
    return groups


def _line_total(lines: List[Dict[str, Any]]) -> float:
    return round(sum(float(l["product"]["price"]) * l["quantity"] for l in lines), 2)


def _load_cart(db: Database, buyer_id: str) -> List[Dict[str, Any]]:
    lines = get_cart(db, buyer_id)
    if not lines:
        raise EmptyCartError()
    if any(l.get("product") is None for l in lines):
        raise ValidationError("An item in your cart is no longer available. Please remove it and try again.",
                              field="cart")
    return lines


def checkout_summary(db: Database, buyer_id: str, voucher_code: Optional[str] = None) -> CheckoutSummary:
    lines = _load_cart(db, buyer_id)
    subtotal = cart_total(lines)
    voucher = apply_voucher(voucher_code, subtotal)
    return CheckoutSummary(items=lines, subtotal=subtotal, discount=voucher.discount,
                           total=round(subtotal - voucher.discount, 2), voucher=voucher)


# ---------------------------------------------------------------------------
# Seller group journal
# ---------------------------------------------------------------------------
def _journal(db: Database, journal_id: str, patch: Dict[str, Any]) -> None:
    patch["updated_at"] = now()
    with translate_errors("update checkout journal"):
        db["checkoutlog"].update_one({"_id": oid(journal_id)}, {"$set": patch})


def _commit_group(db: Database, checkout_id: str, buyer_id: str, seller_id: str, lines: List[Dict[str, Any]],
                  shipping: ShippingInfo, payment: PaymentInfo) -> Dict[str, Any]:
    product_ids = [l["product_id"] for l in lines]
    journal = CheckoutLog(
        checkout_id=checkout_id,
        buyer_id=buyer_id,
        seller_id=seller_id,
        product_ids=product_ids,
        previous_status={l["product_id"]: l["product"].get("status", ProductStatus.available.value) for l in lines},
        cart_item_ids=[l["id"] for l in lines],
    )
    journal_id = create_document(db, "checkoutlog", {
        **journal.model_dump(),
        "cart_lines": [
            {"user_id": buyer_id, "product_id": l["product_id"], "quantity": l["quantity"], "size": l.get("size", "N/A")}
            for l in lines
        ],
    })

    try:
        order = Order(
            buyer_id=buyer_id,
            seller_id=seller_id,
            total_amount=_line_total(lines),
            payment_method=payment.method,
            payment_details=payment.recorded_details(),
            shipping_address=shipping.full_address(),
            shipping_phone=shipping.phone.strip(),
            notes=shipping.notes or None,
            status=OrderStatus.pending,
        )
        order_id = create_document(db, "order", order)
        _journal(db, journal_id, {"order_id": order_id})

        stamp = now()
        items = [
            {
                **OrderItem(order_id=order_id, product_id=l["product_id"], quantity=l["quantity"],
                            price_at_purchase=float(l["product"]["price"])).model_dump(),
                "created_at": stamp,
                "updated_at": stamp,
            }
            for l in lines
        ]
        with translate_errors("insert order items"):
            inserted = db["orderitem"].insert_many(items)
        _journal(db, journal_id, {"order_item_ids": [str(i) for i in inserted.inserted_ids]})

        with translate_errors("reserve products"):
            db["product"].update_many({"_id": {"$in": [oid(p) for p in product_ids]}},
                                      {"$set": {"status": ProductStatus.pending.value, "updated_at": stamp}})
        _journal(db, journal_id, {"products_reserved": True})

        with translate_errors("clear cart"):
            db["cartitem"].delete_many({"_id": {"$in": [oid(l["id"]) for l in lines]}, "user_id": buyer_id})
        _journal(db, journal_id, {"cart_cleared": True, "state": "committed"})
    except MarketplaceError as e:
        logger.error("Checkout %s: seller group %s failed: %s", checkout_id, seller_id, e)
        try:
            compensate_group(db, journal_id, str(e))
        except MarketplaceError:
            logger.error("Checkout %s: compensation for seller %s failed", checkout_id, seller_id, exc_info=True)
        raise

    with translate_errors("read order"):
        placed = to_dict(db["order"].find_one({"_id": oid(order_id)}))
    placed["items"] = [to_dict(i) for i in items]
    return placed


def compensate_group(db: Database, journal_id: str, error: Optional[str] = None) -> bool:
    """Undo what a seller group wrote. Returns True when every undo step succeeded."""
    with translate_errors("read checkout journal"):
        journal = db["checkoutlog"].find_one({"_id": oid(journal_id)})
    if not journal:
        return False

    ok = True
    order_id = journal.get("order_id")
    try:
        with translate_errors("release products"):
            for product_id, status in (journal.get("previous_status") or {}).items():
                db["product"].update_one(
                    {"_id": oid(product_id), "status": ProductStatus.pending.value},
                    {"$set": {"status": status, "updated_at": now()}},
                )
    except MarketplaceError as e:
        logger.warning("Checkout compensation: could not release products: %s", e)
        ok = False

    if order_id:
        try:
            with translate_errors("remove order"):
                db["orderitem"].delete_many({"order_id": order_id})
                db["order"].delete_one({"_id": oid(order_id)})
        except MarketplaceError as e:
            logger.warning("Checkout compensation: could not remove order %s: %s", order_id, e)
            ok = False

    for line in journal.get("cart_lines") or []:
        try:
            create_document(db, "cartitem", dict(line))
        except ConflictError:
            # still in the cart
            pass
        except MarketplaceError as e:
            logger.warning("Checkout compensation: could not restore cart line %s: %s", line.get("product_id"), e)
            ok = False

    if ok:
        _journal(db, journal_id, {"state": "compensated", "error": error})
    return ok


def _finish_group(db: Database, journal: Dict[str, Any]) -> None:
    """Complete a group whose order, items and reservation were all written."""
    cart_ids = [oid(i) for i in journal.get("cart_item_ids") or []]
    if cart_ids:
        with translate_errors("clear cart"):
            db["cartitem"].delete_many({"_id": {"$in": cart_ids}, "user_id": journal["buyer_id"]})
    _journal(db, str(journal["_id"]), {"cart_cleared": True, "state": "committed"})


def _order_status(db: Database, order_id: Optional[str]) -> Optional[str]:
    if not order_id:
        return None
    with translate_errors("read order"):
        order = db["order"].find_one({"_id": oid(order_id)}, {"status": 1})
    return order.get("status") if order else None


def reconcile_checkouts(db: Database, older_than: timedelta = timedelta(minutes=5)) -> Dict[str, int]:
    """
    Resolve journals a crashed checkout left in progress.

    A group whose order, items and reservation were written is finished.
    Anything earlier is undone, unless its order has already moved past
    pending; such journals are marked failed and left for an admin.
    """
    cutoff = now() - older_than
    counts = {"committed": 0, "compensated": 0, "failed": 0}
    with translate_errors("read checkout journals"):
        stale = list(db["checkoutlog"].find({"state": "in_progress"}))
    for journal in stale:
        created = journal.get("created_at")
        if created is not None and created.replace(tzinfo=created.tzinfo or timezone.utc) > cutoff:
            continue
        journal_id = str(journal["_id"])
        if journal.get("cart_cleared"):
            _journal(db, journal_id, {"state": "committed"})
            counts["committed"] += 1
            continue
        if journal.get("products_reserved") and journal.get("order_item_ids"):
            _finish_group(db, journal)
            counts["committed"] += 1
            continue
        status = _order_status(db, journal.get("order_id"))
        if status not in (None, OrderStatus.pending.value):
            logger.error("Checkout journal %s: order %s is already %s, not undoing",
                         journal_id, journal.get("order_id"), status)
            _journal(db, journal_id, {"state": "failed", "error": f"order already {status}"})
            counts["failed"] += 1
        elif compensate_group(db, journal_id, journal.get("error") or "reconciled"):
            counts["compensated"] += 1
        else:
            counts["failed"] += 1
    if stale:
        logger.info("Reconciled checkout journals: %s", counts)
    return counts


# ---------------------------------------------------------------------------
# Place order
# ---------------------------------------------------------------------------
def place_order(db: Database, buyer_id: str, shipping: ShippingInfo, payment: PaymentInfo,
                voucher_code: Optional[str] = None) -> CheckoutResult:
    lines = _load_cart(db, buyer_id)
    validate_shipping(shipping)
    validate_payment(payment, get_settings(db).get("payments"))

    subtotal = cart_total(lines)
    voucher = apply_voucher(voucher_code, subtotal)
    total = round(subtotal - voucher.discount, 2)

    checkout_id = uuid.uuid4().hex
    placed: List[Dict[str, Any]] = []
    failed: List[Dict[str, Any]] = []
    for seller_id, group in partition_by_seller(lines).items():
        try:
            placed.append(_commit_group(db, checkout_id, buyer_id, seller_id, group, shipping, payment))
        except MarketplaceError as e:
            failed.append({"seller_id": seller_id, "error": e.message})

    if failed:
        raise CheckoutFailedError(placed_orders=placed, failed_sellers=failed)

    logger.info("Checkout %s by %s placed %d order(s), total %.2f", checkout_id, buyer_id, len(placed), total)
    return CheckoutResult(checkout_id=checkout_id, subtotal=subtotal, discount=voucher.discount,
                          total=total, voucher=voucher, orders=placed)
