"""
Cart service.

Every cart mutation moves units between the cart and Product.stock. Stock
changes are single-document conditional updates; the cart write that follows
is compensated (stock given back) if it fails.
"""
from typing import Optional

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from auth import ensure_self_or_admin, get_current_user
from database import collection, parse_object_id, serialize_doc, utcnow
from errors import NotFound, ValidationError
from products import present, products_by_id, release_stock, reserve_stock
from schemas import Cart, CartItem

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/cart", tags=["cart"])


class AddItemBody(BaseModel):
    user_id: str
    product_id: str
    quantity: int = Field(..., description="Units to add, at least 1")


class UpdateQuantityBody(BaseModel):
    quantity: Optional[int] = None


def _validate_ids(user_id: str, product_id: Optional[str] = None):
    label = "userId or productId" if product_id is not None else "userId"
    parse_object_id(user_id, label)
    if product_id is not None:
        parse_object_id(product_id, label)


def _find_line(cart: dict, product_id: str) -> Optional[dict]:
    for item in cart.get("items", []):
        if item["product_id"] == product_id:
            return item
    return None


def populate(cart: dict) -> dict:
    """Cart with product details inlined on every line."""
    out = serialize_doc(cart)
    items = cart.get("items", [])
    found = products_by_id([i["product_id"] for i in items])
    by_id = {p["id"]: p for p in present(list(found.values()))}
    out["items"] = [
        {"product_id": i["product_id"], "quantity": i["quantity"], "product": by_id.get(i["product_id"])}
        for i in items
    ]
    return out


def _get_cart(user_id: str) -> dict:
    cart = collection("cart").find_one({"user_id": user_id})
    if not cart:
        raise NotFound("Cart not found")
    return cart


# ----------------------- Service -----------------------
def add_item(user_id: str, product_id: str, quantity: int) -> dict:
    _validate_ids(user_id, product_id)
    if quantity is None or quantity < 1:
        raise ValidationError("Quantity must be at least 1")

    reserve_stock(product_id, quantity)
    try:
        now = utcnow()
        res = collection("cart").update_one(
            {"user_id": user_id, "items.product_id": product_id},
            {"$inc": {"items.$.quantity": quantity}, "$set": {"updated_at": now}},
        )
        if res.matched_count == 0:
            cart = collection("cart").find_one({"user_id": user_id}, {"_id": 1})
            line = CartItem(product_id=product_id, quantity=quantity).model_dump()
            if cart is None:
                doc = Cart(user_id=user_id, items=[line]).model_dump()
                doc["created_at"] = now
                doc["updated_at"] = now
                collection("cart").insert_one(doc)
            else:
                collection("cart").update_one(
                    {"_id": cart["_id"]}, {"$push": {"items": line}, "$set": {"updated_at": now}}
                )
    except Exception:
        logger.error("cart.add_compensated", user_id=user_id, product_id=product_id, quantity=quantity)
        release_stock(product_id, quantity)
        raise

    logger.info("cart.item_added", user_id=user_id, product_id=product_id, quantity=quantity)
    return populate(_get_cart(user_id))


def remove_item(user_id: str, product_id: str) -> dict:
    _validate_ids(user_id, product_id)
    cart = _get_cart(user_id)
    line = _find_line(cart, product_id)
    if line is None:
        raise NotFound("Item not found in cart")

    collection("cart").update_one(
        {"_id": cart["_id"]},
        {"$pull": {"items": {"product_id": product_id}}, "$set": {"updated_at": utcnow()}},
    )
    release_stock(product_id, line["quantity"])
    logger.info("cart.item_removed", user_id=user_id, product_id=product_id, quantity=line["quantity"])
    return populate(_get_cart(user_id))


def update_quantity(user_id: str, product_id: str, quantity: Optional[int]) -> dict:
    if quantity is None or quantity < 1:
        raise ValidationError("Invalid quantity")
    _validate_ids(user_id, product_id)
    cart = _get_cart(user_id)
    line = _find_line(cart, product_id)
    if line is None:
        raise NotFound("Item not found in cart")

    delta = quantity - line["quantity"]
    if delta > 0:
        reserve_stock(product_id, delta)
    elif delta < 0:
        if release_stock(product_id, -delta) is None:
            raise NotFound("Product not found")

    try:
        collection("cart").update_one(
            {"_id": cart["_id"], "items.product_id": product_id},
            {"$set": {"items.$.quantity": quantity, "updated_at": utcnow()}},
        )
    except Exception:
        logger.error("cart.update_compensated", user_id=user_id, product_id=product_id, delta=delta)
        if delta > 0:
            release_stock(product_id, delta)
        elif delta < 0:
            reserve_stock(product_id, -delta)
        raise

    logger.info("cart.quantity_updated", user_id=user_id, product_id=product_id, quantity=quantity, delta=delta)
    return populate(_get_cart(user_id))


def clear(user_id: str):
    # Stock stays where it is: an abandoned cart does not return its units.
    _validate_ids(user_id)
    cart = collection("cart").find_one_and_delete({"user_id": user_id})
    if not cart:
        raise NotFound("Cart not found")
    logger.info("cart.cleared", user_id=user_id, lines=len(cart.get("items", [])))


def history(user_id: str) -> list:
    _validate_ids(user_id)
    return populate(_get_cart(user_id))["items"]


# ----------------------- Routes -----------------------
@router.post("/add", status_code=201)
def add(body: AddItemBody, user=Depends(get_current_user)):
    ensure_self_or_admin(user, body.user_id)
    cart = add_item(body.user_id, body.product_id, body.quantity)
    return {"success": True, "message": "Item successfully added to cart", "data": cart}


@router.delete("/remove/{user_id}/{product_id}")
def remove(user_id: str, product_id: str, user=Depends(get_current_user)):
    ensure_self_or_admin(user, user_id)
    cart = remove_item(user_id, product_id)
    return {"success": True, "message": "Item successfully removed from cart", "data": cart}


@router.delete("/clear/{user_id}")
def clear_cart(user_id: str, user=Depends(get_current_user)):
    ensure_self_or_admin(user, user_id)
    clear(user_id)
    return {"success": True, "message": "Cart cleared successfully"}


@router.get("/history/{user_id}")
def cart_history(user_id: str, user=Depends(get_current_user)):
    ensure_self_or_admin(user, user_id)
    return {"success": True, "data": history(user_id)}


@router.put("/update/{user_id}/{product_id}")
def update(user_id: str, product_id: str, body: UpdateQuantityBody, user=Depends(get_current_user)):
    ensure_self_or_admin(user, user_id)
    cart = update_quantity(user_id, product_id, body.quantity)
    return {"success": True, "message": "Quantity updated successfully", "data": cart}
