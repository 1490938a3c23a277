from datetime import datetime
from typing import Dict, Iterable, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field
from pymongo import ReturnDocument

import notifications
from auth import require_admin
from database import (
    collection,
    create_document,
    parse_object_id,
    parse_object_id_or_none,
    serialize_doc,
    to_utc_naive,
    utcnow,
)
from errors import DuplicateDiscount, ExpiredDiscountReactivation, NotFound, ValidationError
from schemas import ProductDiscount

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/discounts", tags=["discounts"])


class DiscountCreateBody(BaseModel):
    product_id: str
    discount_percentage: float = Field(..., allow_inf_nan=False)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True


class DiscountUpdateBody(BaseModel):
    discount_percentage: Optional[float] = Field(None, allow_inf_nan=False)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None


def discounted_price(price: float, percentage: float) -> float:
    return round(price * (1 - percentage / 100), 2)


def _not_expired(now: datetime) -> list:
    return [{"end_date": {"$gte": now}}, {"end_date": None}]


def _validate_percentage(percentage: float):
    if not 0 < percentage < 100:
        raise ValidationError("Discount percentage must be between 0 and 100")


def _validate_dates(start_date: datetime, end_date: Optional[datetime]):
    if end_date is not None and end_date <= start_date:
        raise ValidationError("End date must be after start date")


def _blocking_discount(product_id: str, exclude_id=None) -> Optional[dict]:
    # Any active discount that has not ended blocks a new one, even if it starts later.
    filt = {"product_id": product_id, "is_active": True, "$or": _not_expired(utcnow())}
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    return collection("productdiscount").find_one(filt)


def active_discounts_by_product(product_ids: Optional[Iterable[str]] = None) -> Dict[str, dict]:
    """Currently applicable discount per product id (newest wins if several slipped in)."""
    now = utcnow()
    filt = {"is_active": True, "start_date": {"$lte": now}, "$or": _not_expired(now)}
    if product_ids is not None:
        filt["product_id"] = {"$in": list(product_ids)}
    result: Dict[str, dict] = {}
    for d in collection("productdiscount").find(filt).sort("created_at", 1):
        result[d["product_id"]] = d
    return result


def with_discount(product: dict, discount: Optional[dict]) -> dict:
    """Attach read-time discount fields to a serialized product."""
    product = dict(product)
    if discount:
        pct = float(discount["discount_percentage"])
        product["discount_percentage"] = pct
        product["discounted_price"] = discounted_price(float(product["price"]), pct)
        product["is_on_discount"] = True
    else:
        product["discount_percentage"] = 0
        product["discounted_price"] = float(product["price"])
        product["is_on_discount"] = False
    return product


def _populate(discount: dict, fields=("name", "price")) -> dict:
    out = serialize_doc(discount)
    pid = parse_object_id_or_none(discount.get("product_id"))
    product = collection("product").find_one({"_id": pid}, {f: 1 for f in fields}) if pid else None
    out["product"] = serialize_doc(product) if product else None
    return out


# ----------------------- Service -----------------------
def create_discount(body: DiscountCreateBody) -> dict:
    pid = parse_object_id(body.product_id, "productId")
    product = collection("product").find_one({"_id": pid})
    if not product:
        raise NotFound("Product not found")

    _validate_percentage(body.discount_percentage)
    start_date = to_utc_naive(body.start_date) or utcnow()
    end_date = to_utc_naive(body.end_date)
    _validate_dates(start_date, end_date)

    if _blocking_discount(body.product_id):
        raise DuplicateDiscount()

    discount = ProductDiscount(
        product_id=body.product_id,
        discount_percentage=body.discount_percentage,
        start_date=start_date,
        end_date=end_date,
        is_active=body.is_active,
    )
    discount_id = create_document("productdiscount", discount)
    collection("product").update_one({"_id": pid}, {"$set": {"discount_id": discount_id, "updated_at": utcnow()}})
    logger.info(
        "discount.created",
        discount_id=discount_id,
        product_id=body.product_id,
        percentage=body.discount_percentage,
    )

    if body.is_active:
        notifications.broadcast(
            "New Discount Available!",
            f"Get {body.discount_percentage:g}% off on {product['name']}",
            {"type": "discount", "screen": "Cart", "product_id": body.product_id},
        )
    return serialize_doc(collection("productdiscount").find_one({"_id": parse_object_id(discount_id)}))


def update_discount(discount_id: str, body: DiscountUpdateBody) -> dict:
    oid = parse_object_id(discount_id, "discount id")
    discount = collection("productdiscount").find_one({"_id": oid})
    if not discount:
        raise NotFound("Discount not found")

    update = body.model_dump(exclude_unset=True)
    for key in ("start_date", "end_date"):
        if key in update:
            update[key] = to_utc_naive(update[key])
    if update.get("start_date") is None:
        update.pop("start_date", None)

    if "discount_percentage" in update:
        if update["discount_percentage"] is None:
            raise ValidationError("Discount percentage must be between 0 and 100")
        _validate_percentage(update["discount_percentage"])

    start_date = update.get("start_date", discount["start_date"])
    end_date = update["end_date"] if "end_date" in update else discount.get("end_date")
    _validate_dates(start_date, end_date)

    if update.get("is_active"):
        if end_date is not None and end_date < utcnow():
            raise ExpiredDiscountReactivation()
        if _blocking_discount(discount["product_id"], exclude_id=oid):
            raise DuplicateDiscount()
    if update.get("is_active") is None:
        update.pop("is_active", None)

    update["updated_at"] = utcnow()
    updated = collection("productdiscount").find_one_and_update(
        {"_id": oid}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    logger.info("discount.updated", discount_id=discount_id, fields=sorted(update))
    return serialize_doc(updated)


def delete_discount(discount_id: str):
    oid = parse_object_id(discount_id, "discount id")
    discount = collection("productdiscount").find_one_and_delete({"_id": oid})
    if not discount:
        raise NotFound("Discount not found")
    pid = parse_object_id_or_none(discount.get("product_id"))
    if pid is not None:
        collection("product").update_one(
            {"_id": pid, "discount_id": discount_id}, {"$unset": {"discount_id": ""}}
        )
    logger.info("discount.deleted", discount_id=discount_id, product_id=discount.get("product_id"))


def list_discounts() -> list:
    docs = collection("productdiscount").find().sort("created_at", -1)
    return [_populate(d) for d in docs]


def get_discount(discount_id: str) -> dict:
    discount = collection("productdiscount").find_one({"_id": parse_object_id(discount_id, "discount id")})
    if not discount:
        raise NotFound("Discount not found")
    return _populate(discount, fields=("name", "price", "image"))


def active_now() -> list:
    now = utcnow()
    docs = collection("productdiscount").find(
        {"is_active": True, "start_date": {"$lte": now}, "$or": _not_expired(now)}
    )
    return [_populate(d, fields=("name", "price", "image")) for d in docs]


# ----------------------- Routes -----------------------
@router.post("/create", status_code=201)
def create(body: DiscountCreateBody, background_tasks: BackgroundTasks, user=Depends(require_admin)):
    discount = create_discount(body)
    background_tasks.add_task(notifications.run_dispatch)
    return {"success": True, "data": discount}


@router.get("/")
def list_all():
    return {"success": True, "data": list_discounts()}


@router.get("/active/now")
def list_active():
    return {"success": True, "data": active_now()}


@router.get("/{discount_id}")
def get_one(discount_id: str):
    return {"success": True, "data": get_discount(discount_id)}


@router.patch("/{discount_id}")
def update(discount_id: str, body: DiscountUpdateBody, user=Depends(require_admin)):
    return {"success": True, "data": update_discount(discount_id, body)}


@router.delete("/{discount_id}")
def delete(discount_id: str, user=Depends(require_admin)):
    delete_discount(discount_id)
    return {"success": True, "message": "Discount deleted successfully"}
