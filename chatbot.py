"""
Shopping assistant backed by the Gemini REST API.

The user's message is scanned for intents (orders, cart, wishlist, coupons,
profile, recommendations) and matching store data is folded into the prompt
as context. Rate-limited calls are retried with exponential backoff, then the
next configured model is tried. Without GEMINI_API_KEY the assistant answers
in mock mode.
"""

import time
from typing import Any, Callable, Dict, List, Optional

import requests
import structlog

from database import utcnow

logger = structlog.get_logger(__name__)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
MAX_RETRIES = 3
INITIAL_DELAY = 1.0
MAX_OUTPUT_TOKENS = 500

ORDER_WORDS = ("order", "status", "tracking")
CART_WORDS = ("cart", "basket", "bag")
WISHLIST_WORDS = ("wishlist", "saved")
COUPON_WORDS = ("coupon", "discount", "promo")
PROFILE_WORDS = ("profile", "account", "who am i", "my details")
RECOMMEND_WORDS = ("recommend", "suggest", "buy", "looking for")

PROMPT = """You are a friendly and knowledgeable AI Shopping Assistant for this E-commerce store.
Your goal is to help users find products, track orders, manage their account, and save money.

Use the following context to answer the user's question accurately:
{context}

Guidelines:
- If the user asks about their cart, wishlist, or orders, use the provided context.
- If the user asks for coupons, list the active codes.
- If suggesting products, mention their rating and price.
- Be concise, professional, and helpful.
- If you don't know something, suggest they check the specific page (e.g., "Please check the Orders page").

User: {message}
"""


class GeminiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def is_rate_limited(error: Exception) -> bool:
    if getattr(error, "status_code", None) == 429:
        return True
    text = str(error).lower()
    return "429" in text or "too many requests" in text or "quota" in text


def _has(text: str, words) -> bool:
    return any(w in text for w in words)


def map_history(history: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    contents = [
        {"role": "user" if h.get("sender") == "user" else "model", "parts": [{"text": h.get("text", "")}]}
        for h in history or []
    ]
    # the conversation must open with a user turn
    while contents and contents[0]["role"] == "model":
        contents.pop(0)
    return contents


class ChatbotService:
    def __init__(self, orders, products, cart, wishlist, coupons, users,
                 api_key: Optional[str] = None, models: Optional[List[str]] = None,
                 http=None, sleep: Callable[[float], None] = time.sleep, timeout: int = 30):
        self.orders = orders
        self.products = products
        self.cart = cart
        self.wishlist = wishlist
        self.coupons = coupons
        self.users = users
        self.api_key = api_key
        self.models = list(models or [])
        self.http = http or requests.Session()
        self.sleep = sleep
        self.timeout = timeout
        if not api_key:
            logger.warning("gemini_api_key_missing", mode="mock")

    def process_message(self, user_id: str, message: str, history: Optional[List[Dict[str, Any]]] = None) -> Dict[str, str]:
        logger.debug("chatbot_message", user_id=str(user_id))
        try:
            context = self.gather_context(user_id, message)
        except Exception as e:
            logger.error("chatbot_error", error=str(e))
            return {"text": "I'm having trouble connecting to my brain right now. Please try again later."}

        if not self.api_key:
            return {
                "text": f'(Mock AI) I see you\'re asking about "{message}". \n\nContext found: {context or "None"}. '
                        "\n\nTo get real AI responses, please add GEMINI_API_KEY to your .env file."
            }

        contents = map_history(history)
        contents.append({"role": "user", "parts": [{"text": PROMPT.format(context=context, message=message)}]})
        for model in self.models:
            try:
                text = self.retry_with_backoff(lambda: self.generate(model, contents))
                return {"text": text}
            except Exception as e:
                logger.warning("gemini_model_failed", model=model, error=str(e))

        logger.error("gemini_all_models_failed", models=self.models)
        if context:
            return {"text": f"I'm currently overloaded with requests, but here is some information I found:\n{context}"}
        return {"text": "I'm currently overloaded with requests and couldn't process your specific question. Please try again later."}

    def retry_with_backoff(self, operation: Callable[[], str], retries: int = MAX_RETRIES, delay: float = INITIAL_DELAY) -> str:
        while True:
            try:
                return operation()
            except Exception as e:
                if retries <= 0 or not is_rate_limited(e):
                    raise
                logger.warning("gemini_rate_limited", delay=delay, retries_left=retries)
                self.sleep(delay)
                retries -= 1
                delay *= 2

    def generate(self, model: str, contents: List[Dict[str, Any]]) -> str:
        response = self.http.post(
            GEMINI_URL.format(model=model),
            params={"key": self.api_key},
            json={"contents": contents, "generationConfig": {"maxOutputTokens": MAX_OUTPUT_TOKENS}},
            timeout=self.timeout,
        )
        if response.status_code != 200:
            raise GeminiError(f"{response.status_code} {response.text[:200]}", response.status_code)
        data = response.json()
        try:
            return "".join(p.get("text", "") for p in data["candidates"][0]["content"]["parts"])
        except (KeyError, IndexError, TypeError):
            raise GeminiError(f"Unexpected response from {model}")

    # ---- context ----
    def gather_context(self, user_id: str, message: str) -> str:
        lower = message.lower()
        context = f"Current Date and Time: {utcnow():%Y-%m-%d %H:%M} UTC\n"

        if _has(lower, ORDER_WORDS):
            orders = self.orders.find_my(user_id)
            if orders:
                o = orders[0]
                context += (
                    f"\nUser's most recent order: Order #{o['_id']} is currently {o['order_status']}. "
                    f"Total: ${o['total_amount']}. Placed on {o.get('created_at')}."
                )
            else:
                context += "\nUser has no recent orders."

        try:
            found = self.products.find_all({"search": message, "limit": 3})["products"]
            if found:
                details = "\n".join(
                    f"- {p['title']}: ${p['price']} ({p.get('stock_status')}, {p.get('stock', 0)} left) - "
                    f"Rating: {p.get('rating', 0)}/5\n  Description: {p.get('description', '')[:150]}..."
                    for p in found
                )
                context += f"\n\nRelevant Products found for your query:\n{details}\n"
        except Exception as e:
            logger.warning("chatbot_product_search_failed", error=str(e))

        if _has(lower, CART_WORDS):
            context += self._section("cart", self._cart_context, user_id)
        if _has(lower, WISHLIST_WORDS):
            context += self._section("wishlist", self._wishlist_context, user_id)
        if _has(lower, COUPON_WORDS):
            context += self._section("coupons", self._coupon_context, user_id)
        if _has(lower, PROFILE_WORDS):
            context += self._section("profile", self._profile_context, user_id)

        if _has(lower, RECOMMEND_WORDS):
            featured = self.products.featured(5)
            listing = "\n".join(f"- {p['title']}: ${p['price']} (Rating: {p.get('rating', 0)})" for p in featured)
            context += f"\nAvailable Featured Products:\n{listing}"
        return context

    def _section(self, name: str, build: Callable[[str], str], user_id: str) -> str:
        try:
            return build(user_id)
        except Exception as e:
            logger.error("chatbot_context_failed", section=name, error=str(e))
            return ""

    def _cart_context(self, user_id: str) -> str:
        cart = self.cart.find_one(user_id)
        if not cart.get("items"):
            return "\nUser's Cart is empty."
        titles = self.products.find_many([i["product_id"] for i in cart["items"]])
        lines = "\n".join(
            f"- {(titles.get(str(i['product_id'])) or {}).get('title', 'Item')}: ${i['price']} (Qty: {i['quantity']})"
            for i in cart["items"]
        )
        return f"\nUser's Cart ({len(cart['items'])} items, Total: ${cart.get('total_price', 0)}):\n{lines}"

    def _wishlist_context(self, user_id: str) -> str:
        titles = [
            (item.get("product") or {}).get("title", "Item")
            for wl in self.wishlist.find_all(user_id)
            for item in wl.get("items", [])
        ]
        if not titles:
            return "\nUser's Wishlist is empty."
        return "\nUser's Wishlist:\n" + "\n".join(f"- {t}" for t in titles)

    def _coupon_context(self, user_id: str) -> str:
        coupons = self.coupons.find_all(status="active", is_active=True)
        if not coupons:
            return "\nNo active coupons available right now."
        lines = "\n".join(
            f"- Code: {c['code']} "
            f"({str(c['discount_value']) + '%' if c['discount_type'] == 'percentage' else '$' + str(c['discount_value'])} OFF)"
            f" - Min Purchase: ${c.get('min_purchase_amount', 0)}"
            for c in coupons
        )
        return f"\nActive Coupons:\n{lines}"

    def _profile_context(self, user_id: str) -> str:
        user = self.users.find_one(user_id)
        text = f"\nUser Profile: Name: {user.get('name')}, Email: {user.get('email')}."
        if user.get("created_at"):
            text += f" Joined: {user['created_at']:%Y-%m-%d}"
        return text
