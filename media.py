import hashlib
import time
from typing import Optional

import httpx
import structlog

import config
from errors import ServiceError, ValidationError

logger = structlog.get_logger(__name__)

CLOUDINARY_UPLOAD_URL = "https://api.cloudinary.com/v1_1/{cloud}/image/upload"


def _signature(params: dict) -> str:
    to_sign = "&".join(f"{k}={params[k]}" for k in sorted(params))
    return hashlib.sha1((to_sign + config.CLOUDINARY_API_SECRET).encode()).hexdigest()


def upload_image(image: str, folder: str = "products", client: Optional[httpx.Client] = None) -> str:
    """Upload a base64 ``data:image/...`` URI and return the hosted URL.

    Without Cloudinary credentials the data URI itself is returned, which keeps
    local development working without an image host.
    """
    if not isinstance(image, str) or not image.startswith("data:image/"):
        raise ValidationError("Invalid image format. Please provide a valid base64 image.")

    if not config.cloudinary_configured():
        logger.warning("media.upload_skipped", reason="cloudinary not configured", folder=folder)
        return image

    params = {"folder": folder, "timestamp": int(time.time())}
    payload = {
        **params,
        "file": image,
        "api_key": config.CLOUDINARY_API_KEY,
        "signature": _signature(params),
    }
    url = CLOUDINARY_UPLOAD_URL.format(cloud=config.CLOUDINARY_CLOUD_NAME)
    owns_client = client is None
    client = client or httpx.Client(timeout=config.HTTP_TIMEOUT_SECONDS)
    try:
        resp = client.post(url, data=payload)
        resp.raise_for_status()
        secure_url = resp.json()["secure_url"]
    except (httpx.HTTPError, KeyError, ValueError) as e:
        logger.error("media.upload_failed", folder=folder, error=str(e))
        raise ServiceError("Image upload failed")
    finally:
        if owns_client:
            client.close()

    logger.info("media.uploaded", folder=folder, url=secure_url)
    return secure_url
