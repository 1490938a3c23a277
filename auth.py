from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
import structlog
from bson import ObjectId
from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument

import config
from database import collection, create_document, parse_object_id, serialize_doc, utcnow
from errors import AuthError, Forbidden, NotFound, ValidationError
from media import upload_image
from schemas import User as UserSchema

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])
security = HTTPBearer(auto_error=False)


# ----------------------- Utils -----------------------
def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=config.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode(), salt).decode()


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        # not a bcrypt hash
        return False


def create_token(payload: dict) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=config.JWT_EXPIRES_MINUTES)
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")


def public_user(doc: dict) -> dict:
    user = serialize_doc(doc)
    user.pop("password_hash", None)
    return user


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    if credentials is None:
        raise AuthError("Not authenticated")
    payload = decode_token(credentials.credentials)
    user_id = payload.get("id")
    if not user_id or not ObjectId.is_valid(str(user_id)):
        raise AuthError("Invalid token payload")
    user = collection("user").find_one({"_id": parse_object_id(user_id)})
    if not user:
        raise AuthError("User not found")
    return public_user(user)


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise Forbidden("Admin only")
    return user


def ensure_self_or_admin(user: dict, user_id: str):
    if user.get("role") != "admin" and user["id"] != str(user_id):
        raise Forbidden("Not allowed")


# ----------------------- Models -----------------------
class RegisterBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    dob: datetime
    gender: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    image: Optional[str] = Field(None, description="base64 data URI")


class LoginBody(BaseModel):
    email: EmailStr
    password: str
    push_token: Optional[str] = None


class SaveTokenBody(BaseModel):
    user_id: str
    token: str = Field(..., min_length=1)


class ProfileUpdateBody(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    dob: Optional[datetime] = None
    gender: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    image: Optional[str] = None
    current_password: Optional[str] = None
    new_password: Optional[str] = Field(None, min_length=6)


# ----------------------- Service -----------------------
def register_user(body: RegisterBody) -> dict:
    email = body.email.lower()
    if collection("user").find_one({"email": email}):
        raise ValidationError("Email already registered")
    image = upload_image(body.image, folder="users") if body.image else ""
    user = UserSchema(
        name=body.name,
        email=email,
        password_hash=hash_password(body.password),
        dob=body.dob,
        gender=body.gender,
        phone=body.phone,
        address=body.address,
        image=image,
    )
    user_id = create_document("user", user)
    logger.info("auth.registered", user_id=user_id)
    return public_user(collection("user").find_one({"_id": parse_object_id(user_id)}))


def authenticate(email: str, password: str, push_token: Optional[str] = None) -> dict:
    user = collection("user").find_one({"email": email.lower()})
    if not user or not verify_password(password, user.get("password_hash", "")):
        logger.info("auth.login_failed", email=email.lower())
        raise AuthError("Invalid credentials")

    if push_token and push_token != user.get("push_token"):
        collection("user").update_one(
            {"_id": user["_id"]}, {"$set": {"push_token": push_token, "updated_at": utcnow()}}
        )
        user["push_token"] = push_token

    token = create_token({"id": str(user["_id"]), "role": user.get("role", "user")})
    logger.info("auth.login", user_id=str(user["_id"]))
    return {"token": token, "user": public_user(user)}


def save_push_token(user_id: str, token: str) -> dict:
    oid = parse_object_id(user_id, "userId")
    user = collection("user").find_one_and_update(
        {"_id": oid},
        {"$set": {"push_token": token, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise NotFound("User not found")
    return public_user(user)


def update_profile(user_id: str, body: ProfileUpdateBody) -> dict:
    oid = parse_object_id(user_id, "userId")
    user = collection("user").find_one({"_id": oid})
    if not user:
        raise NotFound("User not found")

    update = body.model_dump(
        exclude_none=True, exclude={"image", "current_password", "new_password"}
    )
    update = {k: v for k, v in update.items() if v != ""}
    if "email" in update:
        update["email"] = update["email"].lower()
        if collection("user").find_one({"email": update["email"], "_id": {"$ne": oid}}):
            raise ValidationError("Email already registered")

    if body.new_password:
        if not body.current_password:
            raise ValidationError("Current password is required to set a new password")
        if not verify_password(body.current_password, user.get("password_hash", "")):
            raise ValidationError("Current password is incorrect")
        update["password_hash"] = hash_password(body.new_password)

    if body.image:
        update["image"] = upload_image(body.image, folder="users")

    update["updated_at"] = utcnow()
    collection("user").update_one({"_id": oid}, {"$set": update})
    logger.info("auth.profile_updated", user_id=user_id, fields=sorted(update))
    return public_user(collection("user").find_one({"_id": oid}))


# ----------------------- Routes -----------------------
@router.post("/register", status_code=201)
def register(body: RegisterBody):
    user = register_user(body)
    return {"success": True, "message": "User registered successfully", "data": user}


@router.post("/login")
def login(body: LoginBody):
    result = authenticate(body.email, body.password, body.push_token)
    return {"success": True, "data": result}


@router.post("/savetoken")
def save_token(body: SaveTokenBody, user=Depends(get_current_user)):
    ensure_self_or_admin(user, body.user_id)
    updated = save_push_token(body.user_id, body.token)
    return {"success": True, "message": "Push token saved successfully", "data": updated}


@router.put("/profile/{user_id}")
def profile(user_id: str, body: ProfileUpdateBody, user=Depends(get_current_user)):
    ensure_self_or_admin(user, user_id)
    updated = update_profile(user_id, body)
    return {"success": True, "message": "Profile updated successfully", "data": updated}
