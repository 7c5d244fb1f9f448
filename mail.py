"""
Transactional email through Resend.

Outside production, or without RESEND_API_KEY, messages are only logged.
Senders never raise: callers get {"success": bool, ...} back.
"""

from typing import Any, Dict, Optional

import resend
import structlog

logger = structlog.get_logger(__name__)


class MailService:
    def __init__(self, api_key: Optional[str] = None, sender: str = "Storefront <no-reply@storefront.local>", enabled: bool = False):
        self.api_key = (api_key or "").strip()
        self.sender = sender
        self.enabled = enabled and bool(self.api_key)
        if self.enabled:
            resend.api_key = self.api_key

    def _send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.enabled:
            logger.info("mail_dev_mode", to=payload.get("to"), subject=payload.get("subject"))
            return {"success": True}

        try:
            response = resend.Emails.send(payload)
        except Exception as e:
            logger.error("mail_send_failed", to=payload.get("to"), error=str(e))
            return {"success": False, "error": str(e)}

        if not isinstance(response, dict) or not response.get("id"):
            return {"success": False, "error": str(response)}
        logger.info("mail_sent", to=payload.get("to"), subject=payload.get("subject"))
        return {"success": True, "message_id": response["id"]}

    def send_order_confirmation(self, email: Optional[str], order: Dict[str, Any], customer_name: str = "") -> Dict[str, Any]:
        if not email:
            logger.warning("mail_no_recipient", kind="order_confirmation")
            return {"success": False, "error": "No email provided"}

        order_id = str(order.get("_id") or order.get("id") or "")
        lines = ", ".join(
            f"{item.get('product_name') or 'Item'} x{item.get('quantity', 1)} (${float(item.get('price', 0)):.2f})"
            for item in order.get("items", [])
        )
        total = float(order.get("total_amount", 0))
        text = (
            f"Hi {customer_name or 'there'}, thank you for your order #{order_id}.\n"
            f"Items: {lines}.\n"
            f"Total: ${total:.2f}."
        )
        return self._send({
            "from": self.sender,
            "to": [email],
            "subject": f"Order Confirmation - #{order_id}",
            "text": text,
        })

    def send_order_status_update(self, email: Optional[str], order_id: str, status: str, tracking_number: Optional[str] = None) -> Dict[str, Any]:
        if not email:
            return {"success": False, "error": "No email provided"}
        text = f"Your order #{order_id} is now {status}."
        if tracking_number:
            text += f" Tracking number: {tracking_number}."
        return self._send({
            "from": self.sender,
            "to": [email],
            "subject": f"Order #{order_id} {status}",
            "text": text,
        })

    def send_otp_email(self, email: str, otp: str, expires_minutes: int = 10) -> Dict[str, Any]:
        return self._send({
            "from": self.sender,
            "to": [email],
            "subject": "Your password reset code",
            "text": f"Use this code {otp} to reset your password within {expires_minutes} minutes.",
        })

    def send_2fa_code_email(self, email: str, code: str) -> Dict[str, Any]:
        return self._send({
            "from": self.sender,
            "to": [email],
            "subject": "Your sign-in code",
            "text": f"Your two-factor authentication code is {code}. It is valid for 30 seconds.",
        })
