from typing import List, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field
from pymongo import ReturnDocument

import notifications
from auth import ensure_self_or_admin, get_current_user, require_admin
from database import collection, create_document, parse_object_id, serialize_doc, utcnow
from discounts import active_discounts_by_product, discounted_price
from errors import EmptyCart, NotFound, ValidationError
from products import present, products_by_id
from schemas import ORDER_STATUSES, Checkout, OrderItem, PaymentType

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/checkout", tags=["checkout"])


class CheckoutBody(BaseModel):
    user_id: str
    address: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    payment_type: PaymentType


class StatusBody(BaseModel):
    status: str


def _users_by_id(user_ids) -> dict:
    oids = [parse_object_id(uid, "userId") for uid in set(user_ids)]
    users = collection("user").find({"_id": {"$in": oids}}, {"name": 1, "email": 1})
    return {str(u["_id"]): serialize_doc(u) for u in users}


def populate_orders(orders: List[dict], with_user: bool = False) -> List[dict]:
    product_ids = [i["product_id"] for o in orders for i in o.get("items", [])]
    products = {p["id"]: p for p in present(list(products_by_id(product_ids).values()))}
    users = _users_by_id([o["user_id"] for o in orders]) if with_user else {}
    result = []
    for order in orders:
        out = serialize_doc(order)
        out["items"] = [dict(i, product=products.get(i["product_id"])) for i in order.get("items", [])]
        if with_user:
            out["user"] = users.get(order["user_id"])
        result.append(out)
    return result


# ----------------------- Service -----------------------
def create_order(user_id: str, address: str, phone: str, payment_type: str) -> dict:
    parse_object_id(user_id, "userId")
    cart = collection("cart").find_one({"user_id": user_id})
    if not cart or not cart.get("items"):
        raise EmptyCart()

    lines = cart["items"]
    products = products_by_id([i["product_id"] for i in lines])
    discounts = active_discounts_by_product(products.keys())

    items = []
    for line in lines:
        product = products.get(line["product_id"])
        if product is None:
            raise NotFound(f"Product {line['product_id']} not found")
        price = float(product["price"])
        discount = discounts.get(line["product_id"])
        pct = float(discount["discount_percentage"]) if discount else 0.0
        items.append(OrderItem(
            product_id=line["product_id"],
            name=product["name"],
            quantity=line["quantity"],
            unit_price=price,
            discount_percentage=pct,
            unit_price_at_purchase=discounted_price(price, pct) if pct else price,
        ))

    # total_amount stays at list price; discounted_total records what was actually charged
    total_amount = round(sum(i.unit_price * i.quantity for i in items), 2)
    discounted_total = round(sum(i.unit_price_at_purchase * i.quantity for i in items), 2)

    order = Checkout(
        user_id=user_id,
        items=items,
        total_amount=total_amount,
        discounted_total=discounted_total,
        address=address,
        phone=phone,
        payment_type=payment_type,
        status="Pending",
    )
    order_id = create_document("checkout", order)
    try:
        collection("cart").delete_one({"_id": cart["_id"]})
    except Exception:
        logger.error("checkout.compensated", order_id=order_id, user_id=user_id)
        collection("checkout").delete_one({"_id": parse_object_id(order_id)})
        raise

    logger.info("checkout.created", order_id=order_id, user_id=user_id, total_amount=total_amount, lines=len(items))
    notifications.notify(
        user_id,
        "Order placed",
        f"Your order of {sum(i.quantity for i in items)} item(s) has been placed.",
        {"type": "order", "order_id": order_id},
    )
    return get_order(order_id)


def order_history(user_id: str) -> list:
    parse_object_id(user_id, "userId")
    orders = list(collection("checkout").find({"user_id": user_id}).sort("created_at", -1))
    return populate_orders(orders)


def list_orders() -> list:
    orders = list(collection("checkout").find().sort("created_at", -1))
    return populate_orders(orders, with_user=True)


def find_order(order_id: str, owner_id: Optional[str] = None) -> dict:
    query = {"_id": parse_object_id(order_id, "checkout ID")}
    if owner_id is not None:
        query["user_id"] = owner_id
    order = collection("checkout").find_one(query)
    if not order:
        raise NotFound("Checkout not found")
    return order


def get_order(order_id: str) -> dict:
    return populate_orders([find_order(order_id)], with_user=True)[0]


def update_status(order_id: str, status: Optional[str], notify_owner: bool = True) -> dict:
    oid = parse_object_id(order_id, "checkout ID")
    if status not in ORDER_STATUSES:
        raise ValidationError("Invalid status")
    order = collection("checkout").find_one_and_update(
        {"_id": oid}, {"$set": {"status": status, "updated_at": utcnow()}}, return_document=ReturnDocument.AFTER
    )
    if not order:
        raise NotFound("Checkout not found")
    logger.info("checkout.status_updated", order_id=order_id, status=status)
    if notify_owner:
        notifications.notify(
            order["user_id"],
            "Order update",
            f"Your order is now {status}.",
            {"type": "order", "order_id": order_id, "status": status},
        )
    return populate_orders([order], with_user=True)[0]


# ----------------------- Routes -----------------------
@router.post("/checkout", status_code=201)
def checkout(body: CheckoutBody, background_tasks: BackgroundTasks, user=Depends(get_current_user)):
    ensure_self_or_admin(user, body.user_id)
    order = create_order(body.user_id, body.address, body.phone, body.payment_type)
    background_tasks.add_task(notifications.run_dispatch)
    return {"success": True, "message": "Checkout successful!", "data": order}


@router.get("/history/{user_id}")
def history(user_id: str, user=Depends(get_current_user)):
    ensure_self_or_admin(user, user_id)
    return {"success": True, "data": order_history(user_id)}


@router.get("/all")
def all_orders(user=Depends(require_admin)):
    return {"success": True, "data": list_orders()}


@router.get("/{order_id}")
def get_one(order_id: str, user=Depends(get_current_user)):
    # other users' orders look the same as missing ones
    owner_id = None if user.get("role") == "admin" else user["id"]
    order = populate_orders([find_order(order_id, owner_id)], with_user=True)[0]
    return {"success": True, "data": order}


@router.put("/{order_id}")
def set_status(order_id: str, body: StatusBody, background_tasks: BackgroundTasks, user=Depends(require_admin)):
    order = update_status(order_id, body.status)
    background_tasks.add_task(notifications.run_dispatch)
    return {"success": True, "message": "Checkout status updated successfully", "data": order}
