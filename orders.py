"""
Order lifecycle.

Creating an order prices the items from the catalogue, applies the coupon,
stores a denormalized copy of every line and then fans out: buyer, sellers
and admins are notified, admins get a realtime push and `order.created` is
emitted. Status changes only move forward:

    pending -> confirmed -> processing -> shipped -> delivered

and `cancelled` is reachable until the order ships. Every change appends to
`status_history`.

Notifications, mail and coupon usage are side effects: their failures are
logged and never undo the order write.
"""

from typing import Any, Dict, Iterable, List, Optional

import structlog
from bson import ObjectId
from fastapi import HTTPException
from pymongo import ReturnDocument

from database import create_document, oid, utcnow
from schemas import ORDER_STATUSES, Order

logger = structlog.get_logger(__name__)

ORDERS_TTL = 300

TRANSITIONS = {
    "pending": {"confirmed", "processing", "shipped", "delivered", "cancelled"},
    "confirmed": {"processing", "shipped", "delivered", "cancelled"},
    "processing": {"shipped", "delivered", "cancelled"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
}


def can_transition(current: str, new: str) -> bool:
    if current == new:
        return bool(TRANSITIONS.get(current))
    return new in TRANSITIONS.get(current, set())


def history_entry(status: str, note: str, updated_by: Any = None) -> Dict[str, Any]:
    return {"status": status, "timestamp": utcnow(), "note": note, "updated_by": updated_by}


class OrdersService:
    def __init__(self, db, notifications, coupons, users, events, cache=None, mail=None, products=None):
        self.db = db
        self.notifications = notifications
        self.coupons = coupons
        self.users = users
        self.events = events
        self.cache = cache
        self.mail = mail
        self.products = products

    # ---- create ----
    def create(self, data: Dict[str, Any], user_id: str, background_tasks=None) -> dict:
        user_oid = oid(user_id, "user ID")
        if not data.get("items"):
            raise HTTPException(status_code=400, detail="Order must contain at least one item")

        wanted = []
        totals: Dict[ObjectId, int] = {}
        for item in data["items"]:
            product_oid = oid(item["product_id"], "product ID")
            qty = int(item.get("quantity", 1))
            wanted.append((product_oid, qty))
            totals[product_oid] = totals.get(product_oid, 0) + qty
        catalogue = {p["_id"]: p for p in self.db["product"].find({"_id": {"$in": list(totals)}})}

        items = []
        subtotal = 0.0
        for product_oid, qty in wanted:
            product = catalogue.get(product_oid)
            if not product:
                raise HTTPException(status_code=404, detail=f"Product not found: {product_oid}")
            if qty <= 0:
                raise HTTPException(status_code=400, detail="Quantity must be at least 1")
            if int(product.get("stock", 0)) < totals[product_oid]:
                raise HTTPException(status_code=400, detail=f"Insufficient stock for {product.get('title')}")
            price = float(product.get("discount_price") or product.get("price", 0))
            subtotal += price * qty
            images = product.get("images") or []
            items.append({
                "product_id": str(product_oid),
                "quantity": qty,
                "price": price,
                "product_name": product.get("title"),
                "product_image": product.get("thumbnail") or (images[0] if images else None),
            })
        subtotal = round(subtotal, 2)
        self._reserve_stock(totals, catalogue)

        try:
            shipping_cost = float(data.get("shipping_cost") or 0)
            tax = float(data.get("tax") or 0)
            coupon = self._use_coupon(data, subtotal, user_id, catalogue.values())
            discount = 0.0
            if coupon:
                discount = coupon["discount"]
                if coupon["discount_type"] == "free_shipping":
                    shipping_cost = 0.0

            customer_email = data.get("customer_email")
            buyer = self.db["user"].find_one({"_id": user_oid}, {"email": 1, "name": 1})
            if not customer_email and buyer:
                customer_email = buyer.get("email")

            order = Order(
                user_id=str(user_oid),
                items=items,
                subtotal=subtotal,
                discount=discount,
                shipping_cost=shipping_cost,
                tax=tax,
                total_amount=round(max(0.0, subtotal - discount + shipping_cost + tax), 2),
                coupon_code=coupon["code"] if coupon else None,
                shipping_address=data["shipping_address"],
                billing_address=data.get("billing_address"),
                payment_method=data.get("payment_method"),
                customer_notes=data.get("customer_notes"),
                customer_phone=data.get("customer_phone"),
                customer_email=customer_email,
            )
            doc = order.model_dump()
            doc["user_id"] = user_oid
            doc["applied_coupon"] = coupon["_id"] if coupon else None
            for line in doc["items"]:
                line["product_id"] = oid(line["product_id"])
            doc["status_history"] = [history_entry("pending", "Order placed", user_oid)]
            order_id = create_document(self.db, "order", doc)
        except Exception:
            self._release_stock(totals.items())
            raise
        logger.info("order_created", order_id=order_id, user_id=str(user_id), total=doc["total_amount"])

        if self.products is not None:
            self.products.invalidate_cache()

        self.events.emit("order.created", {"order_id": order_id, "user_id": str(user_id), "order": doc})

        self.notifications.notify_many([user_id], f"Order #{order_id} created successfully", "order")
        self.notifications.notify_many(
            self._seller_ids(catalogue.values()),
            f"New order received! Order #{order_id} contains your products.",
            "order",
        )
        self.notifications.notify_many(self.users.admin_ids(), f"New order #{order_id} placed by user.", "order")
        self._push_to_admins("order.created", {"order_id": order_id, "order": doc})

        if self.mail is not None:
            name = (buyer or {}).get("name", "")
            if background_tasks is not None:
                background_tasks.add_task(self.mail.send_order_confirmation, customer_email, doc, name)
            else:
                self.mail.send_order_confirmation(customer_email, doc, name)

        self.invalidate_cache(user_id)
        return doc

    def _use_coupon(self, data: Dict[str, Any], subtotal: float, user_id: str, products: Iterable[dict]) -> Optional[Dict[str, Any]]:
        """Validate and record the coupon; None when the order goes ahead without it."""
        ref = data.get("applied_coupon") or data.get("coupon_code")
        if not ref:
            return None
        products = list(products)
        try:
            if data.get("applied_coupon"):
                code = self.coupons.find_one(data["applied_coupon"])["code"]
            else:
                code = data["coupon_code"]
            result = self.coupons.validate(
                code,
                subtotal,
                user_id,
                product_ids=[str(p["_id"]) for p in products],
                category_ids=[str(p["category_id"]) for p in products if p.get("category_id")],
            )
            if not result["valid"]:
                logger.warning("coupon_not_applied", coupon=str(ref), reason=result["message"])
                return None
            coupon = self.coupons.apply(str(result["coupon"]["_id"]), user_id)
        except Exception as e:
            logger.warning("coupon_apply_failed", coupon=str(ref), error=str(getattr(e, "detail", e)))
            return None
        return {
            "_id": coupon["_id"],
            "code": coupon["code"],
            "discount_type": coupon["discount_type"],
            "discount": result["discount"],
        }

    # ---- queries ----
    def find_my(self, user_id: str) -> List[dict]:
        cache_key = f"user_orders:{oid(user_id, 'user ID')}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            logger.debug("orders_cache_hit", key=cache_key)
            return cached
        orders = self._populate(self.db["order"].find({"user_id": oid(user_id)}).sort("created_at", -1))
        self._cache_set(cache_key, orders)
        return orders

    def find_all(self) -> List[dict]:
        cached = self._cache_get("all_orders")
        if cached is not None:
            logger.debug("orders_cache_hit", key="all_orders")
            return cached
        orders = self._populate(self.db["order"].find().sort("created_at", -1), with_user=True)
        self._cache_set("all_orders", orders)
        return orders

    def find_by_seller(self, seller_id: str) -> List[dict]:
        product_ids = self._seller_product_ids(seller_id)
        if not product_ids:
            return []
        cursor = self.db["order"].find({"items.product_id": {"$in": product_ids}}).sort("created_at", -1)
        return self._populate(cursor, with_user=True)

    def find_by_product(self, product_id: str, seller_id: Optional[str] = None) -> List[dict]:
        product_oid = oid(product_id, "product ID")
        if seller_id and product_oid not in self._seller_product_ids(seller_id):
            return []
        cursor = self.db["order"].find({"items.product_id": product_oid}).sort("created_at", -1)
        return self._populate(cursor, with_user=True)

    def find_one(self, order_id: str, viewer: Optional[Dict[str, Any]] = None) -> dict:
        order = self._get(order_id)
        if viewer and viewer.get("role") == "user" and str(order["user_id"]) != viewer["id"]:
            raise HTTPException(status_code=403, detail="You do not have permission to view this order")
        if viewer and viewer.get("role") == "seller" and not self._owns_item(order, viewer["id"]):
            raise HTTPException(status_code=403, detail="You do not have permission to view this order")
        return self._populate([order], with_user=True)[0]

    def stats(self) -> Dict[str, Any]:
        pipeline = [
            {"$group": {"_id": "$order_status", "count": {"$sum": 1}, "revenue": {"$sum": "$total_amount"}}},
        ]
        by_status = {s: {"count": 0, "revenue": 0.0} for s in ORDER_STATUSES}
        for row in self.db["order"].aggregate(pipeline):
            by_status[row["_id"]] = {"count": row["count"], "revenue": round(float(row["revenue"]), 2)}
        return {
            "total_orders": sum(v["count"] for v in by_status.values()),
            "total_revenue": round(sum(v["revenue"] for k, v in by_status.items() if k != "cancelled"), 2),
            "by_status": by_status,
        }

    # ---- transitions ----
    def accept_by_seller(self, order_id: str, seller_id: str) -> dict:
        seller_oid = oid(seller_id, "seller ID")
        order = self._get(order_id)
        if not self._owns_item(order, seller_id):
            raise HTTPException(status_code=403, detail="You do not have permission to accept this order")
        if order["order_status"] not in ("pending", "confirmed"):
            raise HTTPException(status_code=400, detail="Order cannot be accepted in its current status")

        updated = self._transition(order, "processing", history_entry("processing", "Accepted by seller", seller_oid))
        logger.info("order_accepted", order_id=order_id, seller_id=seller_id)

        self.notifications.notify_many(
            [str(updated["user_id"])], f"Your Order #{updated['_id']} has been accepted by seller", "order"
        )
        self._emit_status(updated)
        self.invalidate_cache(updated["user_id"])
        return updated

    def cancel(self, order_id: str, user_id: str) -> dict:
        order = self._get(order_id)
        if str(order["user_id"]) != str(user_id):
            raise HTTPException(status_code=403, detail="You can only cancel your own orders")
        if order["order_status"] != "pending":
            raise HTTPException(status_code=400, detail="Only pending orders can be cancelled")

        updated = self._transition(order, "cancelled", history_entry("cancelled", "Cancelled by user", oid(user_id)))
        self._restock(updated)
        logger.info("order_cancelled", order_id=order_id, user_id=str(user_id))

        self._emit_status(updated)
        self.notifications.notify_many([user_id], f"Order #{order_id} has been cancelled successfully", "order")
        self.notifications.notify_many(
            self._order_seller_ids(updated), f"Order #{order_id} has been cancelled by the buyer.", "order"
        )
        self.invalidate_cache(user_id)
        return updated

    def update_status(self, order_id: str, data: Dict[str, Any], actor_id: str = "admin") -> dict:
        status = data.get("order_status")
        if status not in ORDER_STATUSES:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid order status. Must be one of: {', '.join(ORDER_STATUSES)}",
            )
        order = self._get(order_id)
        if not can_transition(order["order_status"], status):
            raise HTTPException(
                status_code=400,
                detail=f"Cannot change order status from {order['order_status']} to {status}",
            )

        extra = {}
        if data.get("tracking_number"):
            extra["tracking_number"] = data["tracking_number"]
        if data.get("courier_service"):
            extra["courier_service"] = data["courier_service"]
        actor = oid(actor_id) if ObjectId.is_valid(str(actor_id)) else actor_id
        entry = history_entry(status, data.get("note") or "Status updated by admin", actor)
        updated = self._transition(order, status, entry, extra)
        if status == "cancelled":
            self._restock(updated)
        logger.info("order_status_updated", order_id=order_id, status=status)

        self._emit_status(updated)
        payload = {"order_id": order_id, "status": status, "order": updated}
        self.notifications.send_realtime(str(updated["user_id"]), "order_update", payload)
        self._push_to_admins("order.status.updated", payload)

        self.notifications.notify_many(
            [str(updated["user_id"])], f"Order #{order_id} status updated to {status}", "order"
        )
        self.notifications.notify_many(
            self._order_seller_ids(updated), f"Order #{order_id} status updated to {status} by Admin", "order"
        )
        if self.mail is not None:
            self.mail.send_order_status_update(
                updated.get("customer_email"), order_id, status, updated.get("tracking_number")
            )

        self.invalidate_cache(updated["user_id"])
        return updated

    def mark_paid(self, order_id: str, payment_id: Optional[str] = None) -> dict:
        order = self._get(order_id)
        if order.get("payment_status") == "paid":
            raise HTTPException(status_code=400, detail="Order is already paid")
        if order["order_status"] == "cancelled":
            raise HTTPException(status_code=400, detail="Cannot pay for a cancelled order")

        updates: Dict[str, Any] = {"payment_status": "paid", "updated_at": utcnow()}
        if payment_id:
            updates["payment_transaction_id"] = payment_id
        updated = self.db["order"].find_one_and_update(
            {"_id": order["_id"], "payment_status": {"$ne": "paid"}},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise HTTPException(status_code=400, detail="Order is already paid")
        logger.info("order_paid", order_id=order_id, payment_id=payment_id)

        self.events.emit("order.paid", {"order_id": order_id, "payment_id": payment_id, "user_id": str(updated["user_id"])})
        self.invalidate_cache(updated["user_id"])
        return updated

    # ---- helpers ----
    def _get(self, order_id: str) -> dict:
        order = self.db["order"].find_one({"_id": oid(order_id, "order ID")})
        if not order:
            raise HTTPException(status_code=404, detail="Order not found")
        return order

    def _transition(self, order: dict, status: str, entry: Dict[str, Any], extra: Optional[Dict[str, Any]] = None) -> dict:
        # guarded on the status we validated against
        updated = self.db["order"].find_one_and_update(
            {"_id": order["_id"], "order_status": order["order_status"]},
            {
                "$set": {"order_status": status, "updated_at": utcnow(), **(extra or {})},
                "$push": {"status_history": entry},
            },
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise HTTPException(status_code=409, detail="Order was modified concurrently, please retry")
        return updated

    def _reserve_stock(self, totals: Dict[ObjectId, int], catalogue: Dict[ObjectId, dict]) -> None:
        """Take stock for every product or for none of them."""
        reserved = []
        for product_oid, qty in totals.items():
            result = self.db["product"].update_one(
                {"_id": product_oid, "stock": {"$gte": qty}},
                {"$inc": {"stock": -qty, "sold_count": qty}},
            )
            if result.modified_count == 0:
                self._release_stock(reserved)
                title = catalogue[product_oid].get("title")
                raise HTTPException(status_code=400, detail=f"Insufficient stock for {title}")
            reserved.append((product_oid, qty))

    def _release_stock(self, lines: Iterable) -> None:
        for product_oid, qty in lines:
            self.db["product"].update_one({"_id": product_oid}, {"$inc": {"stock": qty, "sold_count": -qty}})

    def _restock(self, order: dict) -> None:
        self._release_stock((item["product_id"], int(item["quantity"])) for item in order.get("items", []))
        if self.products is not None:
            self.products.invalidate_cache()

    def _emit_status(self, order: dict) -> None:
        self.events.emit("order.status.updated", {
            "order_id": str(order["_id"]),
            "user_id": str(order["user_id"]),
            "status": order["order_status"],
            "order": order,
        })

    def _push_to_admins(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            self.notifications.send_to_role("admin", event, payload)
        except Exception as e:
            logger.warning("realtime_push_failed", event=event, error=str(e))

    def _seller_product_ids(self, seller_id: str) -> List:
        return [p["_id"] for p in self.db["product"].find({"seller_id": oid(seller_id, "seller ID")}, {"_id": 1})]

    @staticmethod
    def _seller_ids(products: Iterable[dict]) -> List[str]:
        return sorted({str(p["seller_id"]) for p in products if p.get("seller_id")})

    def _order_seller_ids(self, order: dict) -> List[str]:
        ids = [item["product_id"] for item in order.get("items", [])]
        return self._seller_ids(self.db["product"].find({"_id": {"$in": ids}}, {"seller_id": 1}))

    def _owns_item(self, order: dict, seller_id: str) -> bool:
        return str(seller_id) in self._order_seller_ids(order)

    def _populate(self, orders: Iterable[dict], with_user: bool = False) -> List[dict]:
        """Attach the current product (and buyer) documents to each order."""
        orders = list(orders)
        product_ids = {item["product_id"] for o in orders for item in o.get("items", [])}
        products = {
            p["_id"]: p
            for p in self.db["product"].find(
                {"_id": {"$in": list(product_ids)}},
                {"title": 1, "price": 1, "images": 1, "thumbnail": 1, "seller_id": 1},
            )
        }
        users = {}
        if with_user:
            user_ids = list({o["user_id"] for o in orders})
            users = {u["_id"]: u for u in self.db["user"].find({"_id": {"$in": user_ids}}, {"name": 1, "email": 1})}

        for order in orders:
            for item in order.get("items", []):
                item["product"] = products.get(item["product_id"])
            if with_user:
                order["user"] = users.get(order["user_id"])
        return orders

    # ---- cache ----
    def _cache_get(self, key: str):
        if self.cache is None:
            return None
        try:
            return self.cache.get(key)
        except Exception as e:
            logger.warning("cache_read_failed", key=key, error=str(e))
            return None

    def _cache_set(self, key: str, value: Any) -> None:
        if self.cache is None:
            return
        try:
            self.cache.set(key, value, ORDERS_TTL)
        except Exception as e:
            logger.warning("cache_write_failed", key=key, error=str(e))

    def invalidate_cache(self, user_id: Any) -> None:
        if self.cache is None:
            return
        for key in (f"user_orders:{user_id}", "all_orders"):
            try:
                self.cache.delete(key)
            except Exception as e:
                logger.warning("cache_invalidate_failed", key=key, error=str(e))


def register_listeners(events, users, gateway, loyalty=None) -> None:
    """Wire the order event handlers onto the bus."""

    @events.on("order.paid")
    def notify_admins_paid(payload: Dict[str, Any]) -> None:
        admin_ids = users.admin_ids()
        message = {"type": "ORDER_PAID", "payload": payload}
        for admin_id in admin_ids:
            gateway.send_notification_to_user(admin_id, message)
        logger.info("order_paid_admins_notified", order_id=payload.get("order_id"), admins=len(admin_ids))

    @events.on("order.status.updated")
    def award_points_on_delivery(payload: Dict[str, Any]) -> None:
        if loyalty is None or payload.get("status") != "delivered":
            return
        order = payload.get("order") or {}
        try:
            loyalty.award_points(payload["user_id"], float(order.get("total_amount", 0)))
        except Exception as e:
            logger.warning("loyalty_award_failed", order_id=payload.get("order_id"), error=str(e))
