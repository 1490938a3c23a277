from typing import Optional

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo import ReturnDocument

from auth import require_admin
from database import collection, create_document, parse_object_id, serialize_doc, utcnow
from discounts import active_discounts_by_product, with_discount
from errors import InsufficientStock, NotFound
from media import upload_image
from schemas import Product as ProductSchema

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])


class ProductCreateBody(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    image: str = Field(..., description="base64 data URI")
    stock: int = Field(..., ge=0)


class ProductUpdateBody(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    stock: int = Field(..., ge=0)
    image: Optional[str] = None


class StockAdjustBody(BaseModel):
    quantity: int = Field(..., description="Signed delta applied to stock")


# ----------------------- Stock -----------------------
def reserve_stock(product_id: str, quantity: int) -> dict:
    """Atomically take `quantity` units, refusing to drop stock below zero."""
    oid = parse_object_id(product_id, "productId")
    product = collection("product").find_one_and_update(
        {"_id": oid, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if product is None:
        if collection("product").find_one({"_id": oid}, {"_id": 1}) is None:
            raise NotFound("Product not found")
        raise InsufficientStock()
    logger.debug("stock.reserved", product_id=product_id, quantity=quantity, stock=product["stock"])
    return product


def release_stock(product_id: str, quantity: int) -> Optional[dict]:
    """Put units back. Returns None if the product no longer exists."""
    product = collection("product").find_one_and_update(
        {"_id": parse_object_id(product_id, "productId")},
        {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if product is None:
        logger.warning("stock.release_orphaned", product_id=product_id, quantity=quantity)
    else:
        logger.debug("stock.released", product_id=product_id, quantity=quantity, stock=product["stock"])
    return product


def adjust_stock(product_id: str, quantity: int) -> dict:
    if quantity < 0:
        return reserve_stock(product_id, -quantity)
    product = release_stock(product_id, quantity)
    if product is None:
        raise NotFound("Product not found")
    return product


# ----------------------- Reads -----------------------
def present(products: list) -> list:
    """Serialize products and attach their current discount."""
    discounts = active_discounts_by_product([str(p["_id"]) for p in products])
    return [with_discount(serialize_doc(p), discounts.get(str(p["_id"]))) for p in products]


def get_product(product_id: str) -> dict:
    product = collection("product").find_one({"_id": parse_object_id(product_id, "productId")})
    if not product:
        raise NotFound("Product not found")
    return product


def products_by_id(product_ids) -> dict:
    oids = [parse_object_id(pid, "productId") for pid in set(product_ids)]
    return {str(p["_id"]): p for p in collection("product").find({"_id": {"$in": oids}})}


# ----------------------- Routes -----------------------
@router.get("")
def list_products():
    docs = list(collection("product").find().sort("created_at", -1))
    return {"success": True, "data": present(docs)}


@router.get("/{product_id}")
def get_one(product_id: str):
    return {"success": True, "data": present([get_product(product_id)])[0]}


@router.post("/add", status_code=201)
def create_product(body: ProductCreateBody, user=Depends(require_admin)):
    image_url = upload_image(body.image, folder="products")
    product = ProductSchema(
        name=body.name,
        description=body.description,
        price=body.price,
        image=image_url,
        stock=body.stock,
    )
    pid = create_document("product", product)
    logger.info("product.created", product_id=pid, stock=body.stock)
    return {"success": True, "data": present([get_product(pid)])[0]}


@router.put("/update/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, user=Depends(require_admin)):
    oid = parse_object_id(product_id, "productId")
    update = body.model_dump(exclude={"image"})
    if body.image:
        update["image"] = upload_image(body.image, folder="products")
    update["updated_at"] = utcnow()
    product = collection("product").find_one_and_update(
        {"_id": oid}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    if not product:
        raise NotFound("Product not found")
    logger.info("product.updated", product_id=product_id)
    return {"success": True, "data": present([product])[0]}


@router.delete("/delete/{product_id}")
def delete_product(product_id: str, user=Depends(require_admin)):
    res = collection("product").delete_one({"_id": parse_object_id(product_id, "productId")})
    if res.deleted_count == 0:
        raise NotFound("Product not found")
    logger.info("product.deleted", product_id=product_id)
    return {"success": True, "message": "Product deleted successfully"}


@router.put("/update-stock/{product_id}")
def update_stock(product_id: str, body: StockAdjustBody, user=Depends(require_admin)):
    product = adjust_stock(product_id, body.quantity)
    logger.info("product.stock_adjusted", product_id=product_id, delta=body.quantity, stock=product["stock"])
    return {"success": True, "data": present([product])[0]}
