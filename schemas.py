"""
Database Schemas for the MelodyMix store

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name (Checkout -> "checkout").
References between documents are stored as id strings.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, EmailStr

OrderStatus = Literal["Pending", "Shipped", "Delivered", "Cancelled", "Reviewed"]
PaymentType = Literal["Cash on Delivery", "Credit Card", "PayPal"]

ORDER_STATUSES = ("Pending", "Shipped", "Delivered", "Cancelled", "Reviewed")


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr
    password_hash: str = Field(..., description="bcrypt hash")
    dob: datetime
    gender: str
    phone: str
    address: str
    image: str = ""
    push_token: str = ""
    role: Literal["user", "admin"] = "user"


class Product(BaseModel):
    name: str
    description: str
    price: float = Field(..., gt=0)
    image: str
    stock: int = Field(0, ge=0)
    rating: float = Field(0, ge=0, le=5)
    rating_count: int = Field(0, ge=0)
    discount_id: Optional[str] = None


class ProductDiscount(BaseModel):
    product_id: str
    discount_percentage: float = Field(..., gt=0, lt=100)
    start_date: datetime
    end_date: Optional[datetime] = None
    is_active: bool = True


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    unit_price: float
    discount_percentage: float = 0
    unit_price_at_purchase: float


class Checkout(BaseModel):
    user_id: str
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0, description="List-price total")
    discounted_total: float = Field(..., ge=0, description="Total after discounts applied at purchase")
    address: str
    phone: str
    payment_type: PaymentType
    status: OrderStatus = "Pending"


class Review(BaseModel):
    order_id: str
    user_id: str
    product_id: str
    review: str = Field(..., min_length=1, max_length=500)
    rating: int = Field(..., ge=1, le=5)


class Notification(BaseModel):
    user_id: str
    to: str = Field(..., description="Expo push token")
    title: str
    body: str
    data: Dict[str, Any] = {}
    status: Literal["pending", "sent", "failed"] = "pending"
    attempts: int = 0
    error: Optional[str] = None
    sent_at: Optional[datetime] = None
