"""
Push notification outbox.

Business handlers only insert rows into the "notification" collection; a
background task (and startup) drains pending rows to the Expo push service.
Delivery failures are recorded on the row and never touch the write that
queued them.
"""
from typing import Any, Dict, List, Optional

import httpx
import structlog

import config
from database import collection, create_document, parse_object_id, utcnow
from schemas import Notification

logger = structlog.get_logger(__name__)


def enqueue(user_id: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """Queue a notification for a user. Returns None if the user has no push token."""
    user = collection("user").find_one({"_id": parse_object_id(user_id, "userId")}, {"push_token": 1})
    token = (user or {}).get("push_token")
    if not token:
        return None
    note = Notification(user_id=str(user_id), to=token, title=title, body=body, data=data or {})
    note_id = create_document("notification", note)
    logger.debug("notification.queued", notification_id=note_id, user_id=str(user_id), title=title)
    return note_id


def notify(user_id: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """enqueue() for callers that have already committed their own write; failures are logged."""
    try:
        return enqueue(user_id, title, body, data)
    except Exception:
        logger.exception("notification.enqueue_error", user_id=str(user_id), title=title)
        return None


def broadcast(title: str, body: str, data: Optional[Dict[str, Any]] = None, role: str = "user") -> List[str]:
    ids = []
    try:
        recipients = list(collection("user").find({"role": role, "push_token": {"$nin": ["", None]}}, {"_id": 1}))
    except Exception:
        logger.exception("notification.broadcast_error", title=title, role=role)
        return ids
    for user in recipients:
        note_id = notify(str(user["_id"]), title, body, data)
        if note_id:
            ids.append(note_id)
    return ids


def dispatch_pending(client: Optional[httpx.Client] = None, limit: int = 100) -> Dict[str, int]:
    result = {"sent": 0, "failed": 0}
    if not config.PUSH_ENABLED and client is None:
        return result

    pending = list(collection("notification").find({"status": "pending"}).sort("created_at", 1).limit(limit))
    if not pending:
        return result

    owns_client = client is None
    client = client or httpx.Client(timeout=config.HTTP_TIMEOUT_SECONDS)
    try:
        for note in pending:
            message = {
                "to": note["to"],
                "sound": "default",
                "title": note["title"],
                "body": note["body"],
                "data": note.get("data") or {},
            }
            try:
                resp = client.post(config.EXPO_PUSH_URL, json=message)
                resp.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning("notification.failed", notification_id=str(note["_id"]), error=str(e))
                collection("notification").update_one(
                    {"_id": note["_id"]},
                    {"$set": {"status": "failed", "error": str(e)[:200], "updated_at": utcnow()}, "$inc": {"attempts": 1}},
                )
                result["failed"] += 1
                continue
            collection("notification").update_one(
                {"_id": note["_id"]},
                {"$set": {"status": "sent", "sent_at": utcnow(), "updated_at": utcnow()}, "$inc": {"attempts": 1}},
            )
            result["sent"] += 1
    finally:
        if owns_client:
            client.close()

    logger.info("notification.dispatched", **result)
    return result


def run_dispatch():
    """Background-task entry point; errors are logged, not raised."""
    try:
        dispatch_pending()
    except Exception:
        logger.exception("notification.dispatch_error")
