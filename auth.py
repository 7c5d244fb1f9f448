import random
import re
from datetime import timedelta
from typing import Any, Dict, Optional

import bcrypt
import jwt
import pyotp
import structlog
from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError

from database import create_document, oid, utcnow
from schemas import User

logger = structlog.get_logger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_LOGIN_ATTEMPTS = 5
LOCK_TIME = timedelta(minutes=15)
OTP_TTL = timedelta(minutes=10)
MAX_OTP_ATTEMPTS = 5
TOTP_ISSUER = "Storefront"


def hash_password(pw: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(pw.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def check_password(pw: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(pw.encode("utf-8"), hashed.encode("utf-8"))


def verify_totp(secret: Optional[str], code: Optional[str]) -> bool:
    if not secret or not code:
        return False
    return pyotp.TOTP(secret).verify(str(code).strip(), valid_window=1)


def sanitize_user(user: dict) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "email": user.get("email"),
        "name": user.get("name"),
        "role": user.get("role", "user"),
        "two_factor_enabled": bool(user.get("two_factor_enabled")),
    }


class AuthService:
    def __init__(self, db, mail, secret: str, expires_minutes: int = 60 * 24 * 7, bcrypt_rounds: int = 12):
        self.db = db
        self.mail = mail
        self.secret = secret
        self.expires_minutes = expires_minutes
        self.bcrypt_rounds = bcrypt_rounds

    # ---- tokens ----
    def make_token(self, user_id: str, email: str, role: str) -> str:
        now = utcnow()
        payload = {
            "sub": user_id,
            "email": email,
            "role": role,
            "iat": now,
            "exp": now + timedelta(minutes=self.expires_minutes),
        }
        return jwt.encode(payload, self.secret, algorithm="HS256")

    def decode_token(self, token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, self.secret, algorithms=["HS256"])
        except jwt.ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except jwt.InvalidTokenError:
            raise HTTPException(status_code=401, detail="Invalid token")
        return {"id": payload["sub"], "email": payload.get("email"), "role": payload.get("role", "user")}

    # ---- register / login ----
    def register(self, name: str, email: str, password: str) -> Dict[str, Any]:
        email = email.strip().lower()
        if not EMAIL_RE.match(email):
            raise HTTPException(status_code=400, detail="Invalid email format")
        if self.db["user"].find_one({"email": email}):
            logger.warning("register_duplicate_email", email=email)
            raise HTTPException(status_code=409, detail="Email already registered")

        doc = User(
            name=name.strip(),
            email=email,
            password=hash_password(password, self.bcrypt_rounds),
        )
        try:
            user_id = create_document(self.db, "user", doc)
        except DuplicateKeyError:
            raise HTTPException(status_code=409, detail="Email already registered")
        user = self.db["user"].find_one({"_id": oid(user_id)})
        logger.info("user_registered", email=email)
        return {"user": sanitize_user(user), "token": self.make_token(user_id, email, user["role"])}

    def login(self, email: str, password: str, two_factor_code: Optional[str] = None) -> Dict[str, Any]:
        email = email.strip().lower()
        user = self.db["user"].find_one({"email": email})
        if not user:
            logger.warning("login_unknown_email", email=email)
            raise HTTPException(status_code=401, detail="Invalid credentials")

        now = utcnow()
        if user.get("lock_until") and user["lock_until"] > now:
            raise HTTPException(status_code=401, detail="Account temporarily locked. Try again later.")

        if not check_password(password, user.get("password")):
            attempts = int(user.get("login_attempts", 0)) + 1
            updates: Dict[str, Any] = {"login_attempts": attempts, "updated_at": now}
            if attempts >= MAX_LOGIN_ATTEMPTS:
                updates["lock_until"] = now + LOCK_TIME
                logger.warning("account_locked", email=email)
            self.db["user"].update_one({"_id": user["_id"]}, {"$set": updates})
            raise HTTPException(status_code=401, detail="Invalid credentials")

        if user.get("login_attempts", 0) > 0 or user.get("lock_until"):
            self.db["user"].update_one(
                {"_id": user["_id"]},
                {"$set": {"login_attempts": 0, "lock_until": None, "updated_at": now}},
            )

        if user.get("two_factor_enabled"):
            if not two_factor_code:
                self.mail.send_2fa_code_email(user["email"], pyotp.TOTP(user["two_factor_secret"]).now())
                logger.info("login_2fa_required", email=email)
                return {"user": sanitize_user(user), "two_factor_required": True}
            if not verify_totp(user.get("two_factor_secret"), two_factor_code):
                logger.warning("login_2fa_failed", email=email)
                raise HTTPException(status_code=401, detail="Wrong authentication code")

        logger.info("user_logged_in", email=email)
        token = self.make_token(str(user["_id"]), user["email"], user.get("role", "user"))
        return {"user": sanitize_user(user), "token": token}

    # ---- password reset ----
    def forgot_password(self, email: str) -> Dict[str, Any]:
        email = email.strip().lower()
        user = self.db["user"].find_one({"email": email})
        if not user:
            raise HTTPException(status_code=404, detail="User with this email does not exist")

        otp = f"{random.randint(100000, 999999)}"
        self.db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {
                "reset_password_otp": otp,
                "reset_password_expires": utcnow() + OTP_TTL,
                "reset_password_attempts": 0,
            }},
        )
        self.mail.send_otp_email(email, otp, int(OTP_TTL.total_seconds() // 60))
        logger.info("otp_sent", email=email)
        return {"success": True, "message": "If your email is registered, you will receive an OTP shortly."}

    def verify_otp(self, email: str, otp: str) -> bool:
        email = email.strip().lower()
        user = self.db["user"].find_one({"email": email})
        if not user:
            raise HTTPException(status_code=400, detail="Invalid or expired OTP")

        if not user.get("reset_password_otp") or user["reset_password_otp"] != otp:
            attempts = int(user.get("reset_password_attempts", 0)) + 1
            if attempts >= MAX_OTP_ATTEMPTS:
                self.db["user"].update_one(
                    {"_id": user["_id"]},
                    {"$set": {"reset_password_otp": None, "reset_password_expires": None, "reset_password_attempts": 0}},
                )
                logger.warning("otp_too_many_attempts", email=email)
                raise HTTPException(status_code=400, detail="Too many failed attempts. Please request a new OTP.")
            self.db["user"].update_one({"_id": user["_id"]}, {"$set": {"reset_password_attempts": attempts}})
            raise HTTPException(status_code=400, detail="Invalid or expired OTP")

        if not user.get("reset_password_expires") or user["reset_password_expires"] < utcnow():
            raise HTTPException(status_code=400, detail="Invalid or expired OTP")

        self.db["user"].update_one({"_id": user["_id"]}, {"$set": {"reset_password_attempts": 0}})
        return True

    def reset_password(self, email: str, otp: str, new_password: str) -> None:
        email = email.strip().lower()
        user = self.db["user"].find_one({
            "email": email,
            "reset_password_otp": otp,
            "reset_password_expires": {"$gt": utcnow()},
        })
        if not user:
            raise HTTPException(status_code=400, detail="Invalid or expired OTP")
        self.db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {
                "password": hash_password(new_password, self.bcrypt_rounds),
                "reset_password_otp": None,
                "reset_password_expires": None,
                "login_attempts": 0,
                "lock_until": None,
                "updated_at": utcnow(),
            }},
        )
        logger.info("password_reset", email=email)

    # ---- two-factor ----
    def _user(self, user_id: str) -> dict:
        user = self.db["user"].find_one({"_id": oid(user_id, "user ID")})
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        return user

    def generate_2fa_secret(self, user_id: str) -> Dict[str, str]:
        """Store a fresh TOTP secret; 2FA stays off until a code from it is confirmed."""
        user = self._user(user_id)
        secret = pyotp.random_base32()
        self.db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {"two_factor_secret": secret, "updated_at": utcnow()}},
        )
        totp = pyotp.TOTP(secret)
        self.mail.send_2fa_code_email(user["email"], totp.now())
        logger.info("2fa_secret_generated", user_id=str(user_id))
        return {
            "secret": secret,
            "otpauth_url": totp.provisioning_uri(name=user["email"], issuer_name=TOTP_ISSUER),
        }

    def enable_2fa(self, user_id: str, code: str) -> None:
        user = self._user(user_id)
        if not user.get("two_factor_secret"):
            raise HTTPException(status_code=400, detail="Generate a 2FA secret first")
        if not verify_totp(user["two_factor_secret"], code):
            raise HTTPException(status_code=401, detail="Wrong authentication code")
        self.db["user"].update_one({"_id": user["_id"]}, {"$set": {"two_factor_enabled": True, "updated_at": utcnow()}})
        logger.info("2fa_enabled", user_id=str(user_id))

    def disable_2fa(self, user_id: str, code: str) -> None:
        user = self._user(user_id)
        if user.get("two_factor_enabled") and not verify_totp(user.get("two_factor_secret"), code):
            raise HTTPException(status_code=401, detail="Wrong authentication code")
        self.db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {"two_factor_enabled": False, "two_factor_secret": None, "updated_at": utcnow()}},
        )
        logger.info("2fa_disabled", user_id=str(user_id))
