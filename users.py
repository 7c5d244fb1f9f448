from typing import Any, Dict, List

from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import oid, utcnow

# never leave the service
PRIVATE_FIELDS = {"password": 0, "reset_password_otp": 0, "reset_password_expires": 0, "two_factor_secret": 0}


class UsersService:
    def __init__(self, db):
        self.db = db

    def find_all(self, role: str = None) -> List[dict]:
        flt = {"role": role} if role else {}
        return list(self.db["user"].find(flt, PRIVATE_FIELDS).sort("created_at", -1))

    def find_one(self, user_id: str) -> dict:
        user = self.db["user"].find_one({"_id": oid(user_id, "user ID")}, PRIVATE_FIELDS)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        return user

    def admin_ids(self) -> List[str]:
        return [str(u["_id"]) for u in self.db["user"].find({"role": "admin"}, {"_id": 1})]

    def update(self, user_id: str, updates: Dict[str, Any]) -> dict:
        updates = {k: v for k, v in updates.items() if v is not None}
        if "email" in updates:
            updates["email"] = updates["email"].strip().lower()
            clash = self.db["user"].find_one({"email": updates["email"], "_id": {"$ne": oid(user_id, "user ID")}})
            if clash:
                raise HTTPException(status_code=409, detail="Email already in use")
        updates["updated_at"] = utcnow()
        try:
            user = self.db["user"].find_one_and_update(
                {"_id": oid(user_id, "user ID")},
                {"$set": updates},
                projection=PRIVATE_FIELDS,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise HTTPException(status_code=409, detail="Email already in use")
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        return user

    def remove(self, user_id: str) -> None:
        res = self.db["user"].delete_one({"_id": oid(user_id, "user ID")})
        if res.deleted_count == 0:
            raise HTTPException(status_code=404, detail="User not found")
