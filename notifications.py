from typing import Any, List

import structlog
from bson import ObjectId
from fastapi import HTTPException
from pymongo import ReturnDocument

from database import create_document, oid, utcnow
from schemas import Notification

logger = structlog.get_logger(__name__)


class NotificationsService:
    """Persists user notifications and mirrors them to the websocket gateway."""

    def __init__(self, db, gateway):
        self.db = db
        self.gateway = gateway

    def create(self, user_id: str, message: str, type: str = "order") -> dict:
        doc = Notification(user_id=str(user_id), message=message, type=type).model_dump()
        doc["user_id"] = oid(user_id, "user ID")
        create_document(self.db, "notification", doc)
        self.gateway.send_notification_to_user(str(user_id), doc)
        return doc

    def notify_many(self, user_ids, message: str, type: str = "order") -> int:
        """Best-effort fan-out; a failure for one recipient does not stop the rest."""
        sent = 0
        for user_id in user_ids:
            try:
                self.create(user_id, message, type)
                sent += 1
            except Exception as e:
                logger.warning("notification_failed", user_id=str(user_id), error=str(e))
        return sent

    def find_all(self, user_id: str) -> List[dict]:
        return list(
            self.db["notification"].find({"user_id": oid(user_id, "user ID")}).sort("created_at", -1)
        )

    def mark_as_read(self, notification_id: str, user_id: str) -> dict:
        if not ObjectId.is_valid(str(notification_id)):
            raise HTTPException(status_code=400, detail="Invalid notification ID")
        doc = self.db["notification"].find_one_and_update(
            {"_id": ObjectId(notification_id), "user_id": oid(user_id, "user ID")},
            {"$set": {"read": True, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise HTTPException(status_code=404, detail="Notification not found")
        return doc

    def mark_all_as_read(self, user_id: str) -> int:
        res = self.db["notification"].update_many(
            {"user_id": oid(user_id, "user ID"), "read": False},
            {"$set": {"read": True, "updated_at": utcnow()}},
        )
        return res.modified_count

    def send_realtime(self, user_id: str, event: str, payload: Any) -> int:
        return self.gateway.emit(str(user_id), event, payload)

    def send_to_role(self, role: str, event: str, payload: Any) -> int:
        return self.gateway.emit(f"role:{role}", event, payload)
