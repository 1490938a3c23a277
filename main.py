import os

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import cart
import checkout
import config
import database
import discounts
import notifications
import products
import reviews
from database import collection, create_document
from errors import ServiceError
from schemas import Product as ProductSchema, User as UserSchema

config.configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="MelodyMix Store API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (auth, products, cart, checkout, reviews, discounts):
    app.include_router(module.router)


# ----------------------- Errors -----------------------
def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("request.service_error", path=request.url.path, error=exc.message)
    return error_response(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
    else:
        message = "Invalid request"
    return error_response(400, message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("request.unhandled_error", path=request.url.path)
    return error_response(500, "Something went wrong!")


@app.on_event("startup")
def flush_outbox():
    # pick up notifications queued before the last shutdown
    if database.db is not None:
        notifications.run_dispatch()


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "Welcome to the MelodyMix"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Seed Demo Data -----------------------
DEMO_PRODUCTS = [
    {
        "name": "Studio Monitor Headphones",
        "description": "Closed-back headphones with a flat response for mixing.",
        "price": 149.0,
        "image": "https://images.unsplash.com/photo-1518443248587-30bdc8f94f04",
        "stock": 25,
    },
    {
        "name": "Acoustic Guitar",
        "description": "Solid spruce top dreadnought with a warm low end.",
        "price": 329.0,
        "image": "https://images.unsplash.com/photo-1510915361894-db8b60106cb1",
        "stock": 10,
    },
    {
        "name": "USB Condenser Microphone",
        "description": "Cardioid mic for vocals and podcasts, plug and play.",
        "price": 89.0,
        "image": "https://images.unsplash.com/photo-1590602847861-f357a9332bbc",
        "stock": 40,
    },
    {
        "name": "Bluetooth Speaker",
        "description": "Waterproof portable speaker with 20h battery.",
        "price": 59.0,
        "image": "https://images.unsplash.com/photo-1608043152269-423dbba4e7e1",
        "stock": 50,
    },
    {
        "name": "Vinyl Turntable",
        "description": "Belt-drive turntable with built-in preamp.",
        "price": 199.0,
        "image": "https://images.unsplash.com/photo-1461360228754-6e81c478b882",
        "stock": 8,
    },
]


@app.post("/seed", tags=["dev"])
def seed():
    seeded_products = 0
    if collection("product").count_documents({}) == 0:
        for p in DEMO_PRODUCTS:
            create_document("product", ProductSchema(**p))
            seeded_products += 1
    admin_created = False
    if collection("user").count_documents({"role": "admin"}) == 0:
        admin = UserSchema(
            name="Admin",
            email=config.ADMIN_EMAIL.lower(),
            password_hash=auth.hash_password(config.ADMIN_PASSWORD),
            dob="1990-01-01T00:00:00",
            gender="other",
            phone="0000000000",
            address="MelodyMix HQ",
            role="admin",
        )
        create_document("user", admin)
        admin_created = True
    logger.info("seed.done", products=seeded_products, admin_created=admin_created)
    return {
        "success": True,
        "data": {
            "products_inserted": seeded_products,
            "admin_created": admin_created,
            "products": collection("product").count_documents({}),
        },
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
