from typing import Optional

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from auth import ensure_self_or_admin, get_current_user, require_admin
from checkout import find_order, update_status
from database import collection, create_document, parse_object_id, serialize_doc, utcnow
from errors import DuplicateReview, NotFound, ValidationError
from products import get_product, products_by_id
from schemas import Review

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/reviews", tags=["reviews"])

MAX_REVIEW_LENGTH = 500


class ReviewCreateBody(BaseModel):
    order_id: str
    user_id: str
    product_id: str
    review: str
    rating: int


class ReviewUpdateBody(BaseModel):
    review: Optional[str] = None
    rating: Optional[int] = None


def _clean_text(text: Optional[str]) -> str:
    text = (text or "").strip()
    if not text:
        raise ValidationError("Review text is required")
    if len(text) > MAX_REVIEW_LENGTH:
        raise ValidationError(f"Review must be at most {MAX_REVIEW_LENGTH} characters")
    return text


def _check_rating(rating: Optional[int]) -> int:
    if rating is None or not 1 <= rating <= 5:
        raise ValidationError("Rating must be an integer between 1 and 5")
    return rating


def recompute_rating(product_id: str):
    """Full rescan of a product's reviews; writes the mean and count."""
    ratings = [r["rating"] for r in collection("review").find({"product_id": product_id}, {"rating": 1})]
    count = len(ratings)
    mean = sum(ratings) / count if count else 0
    collection("product").update_one(
        {"_id": parse_object_id(product_id, "productId")},
        {"$set": {"rating": mean, "rating_count": count, "updated_at": utcnow()}},
    )
    logger.debug("review.rating_recomputed", product_id=product_id, rating=mean, count=count)


def _with_products(reviews: list) -> list:
    products = products_by_id([r["product_id"] for r in reviews])
    out = []
    for r in reviews:
        doc = serialize_doc(r)
        p = products.get(r["product_id"])
        doc["product"] = {"id": str(p["_id"]), "name": p["name"], "image": p.get("image")} if p else None
        out.append(doc)
    return out


# ----------------------- Service -----------------------
def submit_review(order_id: str, user_id: str, product_id: str, text: str, rating: int) -> dict:
    parse_object_id(user_id, "userId")
    rating = _check_rating(rating)
    text = _clean_text(text)
    get_product(product_id)

    order = find_order(order_id)
    if order["user_id"] != user_id:
        raise ValidationError("Order does not belong to this user")
    if not any(i["product_id"] == product_id for i in order.get("items", [])):
        raise ValidationError("Product is not part of this order")

    if collection("review").find_one({"order_id": order_id, "product_id": product_id, "user_id": user_id}):
        raise DuplicateReview()

    review = Review(order_id=order_id, user_id=user_id, product_id=product_id, review=text, rating=rating)
    review_id = create_document("review", review)
    recompute_rating(product_id)
    if order.get("status") != "Reviewed":
        update_status(order_id, "Reviewed", notify_owner=False)

    logger.info("review.submitted", review_id=review_id, product_id=product_id, rating=rating)
    return serialize_doc(collection("review").find_one({"_id": parse_object_id(review_id)}))


def find_review(review_id: str) -> dict:
    review = collection("review").find_one({"_id": parse_object_id(review_id, "reviewId")})
    if not review:
        raise NotFound("Review not found")
    return review


def update_review(review_id: str, text: Optional[str], rating: Optional[int]) -> dict:
    review = find_review(review_id)
    update = {}
    if text is not None:
        update["review"] = _clean_text(text)
    if rating is not None:
        update["rating"] = _check_rating(rating)
    if not update:
        raise ValidationError("Review or rating is required")
    update["updated_at"] = utcnow()
    collection("review").update_one({"_id": review["_id"]}, {"$set": update})
    recompute_rating(review["product_id"])
    logger.info("review.updated", review_id=review_id)
    return serialize_doc(find_review(review_id))


def delete_review(review_id: str):
    review = find_review(review_id)
    collection("review").delete_one({"_id": review["_id"]})
    recompute_rating(review["product_id"])
    logger.info("review.deleted", review_id=review_id, product_id=review["product_id"])


# ----------------------- Routes -----------------------
@router.get("/")
def list_reviews(user=Depends(require_admin)):
    reviews = list(collection("review").find().sort("created_at", -1))
    return {"success": True, "data": _with_products(reviews)}


@router.post("/", status_code=201)
def create(body: ReviewCreateBody, user=Depends(get_current_user)):
    ensure_self_or_admin(user, body.user_id)
    review = submit_review(body.order_id, body.user_id, body.product_id, body.review, body.rating)
    return {"success": True, "message": "Review submitted successfully!", "data": review}


@router.get("/user/{user_id}")
def user_reviews(user_id: str, user=Depends(get_current_user)):
    ensure_self_or_admin(user, user_id)
    parse_object_id(user_id, "userId")
    reviews = list(collection("review").find({"user_id": user_id}).sort("created_at", -1))
    return {"success": True, "data": _with_products(reviews)}


@router.get("/product/{product_id}")
def product_reviews(product_id: str):
    parse_object_id(product_id, "productId")
    reviews = collection("review").find({"product_id": product_id}).sort("created_at", -1)
    return {"success": True, "data": [serialize_doc(r) for r in reviews]}


@router.put("/{review_id}")
def update(review_id: str, body: ReviewUpdateBody, user=Depends(get_current_user)):
    ensure_self_or_admin(user, find_review(review_id)["user_id"])
    review = update_review(review_id, body.review, body.rating)
    return {"success": True, "message": "Review updated successfully!", "data": review}


@router.delete("/{review_id}")
def delete(review_id: str, user=Depends(get_current_user)):
    ensure_self_or_admin(user, find_review(review_id)["user_id"])
    delete_review(review_id)
    return {"success": True, "message": "Review deleted successfully"}
