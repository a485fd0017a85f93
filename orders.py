"""
Order engine

An order is written in three independent steps: the order document, the
owning user's payment summary (``users.orders``) and the stock of every
ordered book. Stock is validated for the whole order before the first write.
Nothing is rolled back when a later step fails; ``OrderService.reconcile``
repairs a user's summary from the orders collection.

Payments touch the user's summary item first and then mirror the resulting
status onto the order. The summary update is guarded by the item's current
``dueAmount`` so two concurrent payments cannot both apply to a stale
balance. Partial and Completed are reached only through payments; a plain
update may only cancel an order, which writes off its unpaid balance and
returns its books to stock.
"""
import io
import logging
import math
from typing import Dict, List, Optional, Tuple

import pandas as pd
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pymongo.errors import PyMongoError

from catalog import name_filter
from crud import CrudService
from database import create_document, get_db, match_id, match_ids, oid, stamped, to_object_id
from responses import fail, ok, respond
from schemas import CurrentUser, OrderCreate, OrderUpdate, ProcessPayment, load_json_field, parse_payload
from security import get_current_user, require_admin
from uploads import form_or_json, pop_file, with_uploads

logger = logging.getLogger(__name__)

# manual transitions; payment-driven ones go through process_payment
ORDER_TRANSITIONS = {
    "Pending": {"Cancelled"},
    "Partial": {"Cancelled"},
    "Completed": set(),
    "Cancelled": set(),
}
ORDER_STATUS_FOR_PAYMENT = {"Pending": "Pending", "Partial": "Partial", "Paid": "Completed"}
ORDER_STATUS_RANK = {"Pending": 0, "Partial": 1, "Completed": 2}
TERMINAL_STATUSES = ("Completed", "Cancelled")

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def money(value) -> float:
    return round(float(value or 0), 2)


def find_summary_item(user: Optional[dict], order_id) -> Tuple[Optional[int], Optional[dict]]:
    if not user:
        return None, None
    for idx, item in enumerate(user.get("orders", {}).get("items", [])):
        if str(item.get("orderId")) == str(order_id):
            return idx, item
    return None, None


def stored_order_items(order_items: List[dict]) -> List[dict]:
    return [
        {
            "categoryId": oid(group["categoryId"]),
            "books": [{**line, "bookId": oid(line["bookId"])} for line in group["books"]],
        }
        for group in order_items
    ]


class OrderService(CrudService):
    collection = "orders"
    label = "Order"
    populates = [
        ("userId", "users", "username email"),
        ("schoolId", "schools", "schoolName address"),
        ("orderItems.categoryId", "categories", "name"),
        ("orderItems.books.bookId", "books", "name price"),
    ]

    @property
    def users(self):
        return self.db["users"]

    @property
    def books(self):
        return self.db["books"]

    # -----------------------------
    # Creation
    # -----------------------------

    def check_stock(self, order_items: List[dict]) -> Optional[dict]:
        """Return a failed envelope if any ordered book is missing or short on stock."""
        requested: Dict[str, int] = {}
        for group in order_items:
            for line in group["books"]:
                key = str(line["bookId"])
                requested[key] = requested.get(key, 0) + int(line["quantity"])

        found = {
            str(book["_id"]): book
            for book in self.books.find({"_id": {"$in": [oid(k) for k in requested]}}, {"name": 1, "stock": 1})
        }
        for book_id, quantity in requested.items():
            book = found.get(book_id)
            if not book:
                return fail(f"Book with ID {book_id} not found")
            available = int(book.get("stock") or 0)
            if available < quantity:
                return fail(
                    f"Insufficient stock for book '{book.get('name')}': available {available}, requested {quantity}"
                )
        return None

    def create(self, payload: OrderCreate, image_path: Optional[str] = None) -> dict:
        user = self.users.find_one({"_id": oid(payload.user_id)}, {"_id": 1})
        if not user:
            return fail(f"User with ID {payload.user_id} not found")
        if not self.db["schools"].find_one({"_id": oid(payload.school_id)}, {"_id": 1}):
            return fail(f"School with ID {payload.school_id} not found")

        doc = payload.model_dump(by_alias=True)
        shortage = self.check_stock(doc["orderItems"])
        if shortage:
            return shortage

        doc["userId"] = oid(payload.user_id)
        doc["schoolId"] = oid(payload.school_id)
        doc["orderItems"] = stored_order_items(doc["orderItems"])
        doc["image"] = image_path or payload.image
        doc["status"] = "Pending"
        doc["totalPayment"] = money(payload.total_payment)
        new_id = create_document(self.db, self.collection, doc)
        order = self.get(new_id)
        logger.info("Order %s created for user %s (total %s)", new_id, payload.user_id, doc["totalPayment"])

        try:
            self.users.update_one(
                {"_id": doc["userId"]},
                stamped({
                    "$inc": {"orders.totalPayment": doc["totalPayment"], "orders.totalDuePayment": doc["totalPayment"]},
                    "$push": {"orders.items": {
                        "orderId": order["_id"],
                        "paymentStatus": "Pending",
                        "paymentAmount": doc["totalPayment"],
                        "paidAmount": 0,
                        "dueAmount": doc["totalPayment"],
                        "remarks": None,
                    }},
                }),
            )
            for group in doc["orderItems"]:
                for line in group["books"]:
                    self.books.update_one({"_id": line["bookId"]}, stamped({"$inc": {"stock": -line["quantity"]}}))
        except PyMongoError as e:
            logger.error("Order %s saved but summary/stock update failed: %s", new_id, e)
            return fail(f"Order {new_id} was saved but updating the payment summary or stock failed: {e}",
                        {"orderId": new_id})

        return ok("Order created successfully", order)

    # -----------------------------
    # Queries
    # -----------------------------

    def search_filter(self, search: Optional[str]) -> dict:
        if not search:
            return {}
        school_ids = [s["_id"] for s in self.db["schools"].find({"schoolName": name_filter(search)}, {"_id": 1})]
        user_ids = [u["_id"] for u in self.users.find({"username": name_filter(search)}, {"_id": 1})]
        clauses = []
        if school_ids:
            clauses.append({"schoolId": match_ids(school_ids)})
        if user_ids:
            clauses.append({"userId": match_ids(user_ids)})
        if not clauses:
            return {"_id": {"$in": []}}
        return {"$or": clauses}

    def status_counts(self, query: dict) -> dict:
        stats = {"total": 0, "pending": 0, "partial": 0, "completed": 0, "cancelled": 0}
        pipeline = [{"$match": query}, {"$group": {"_id": "$status", "count": {"$sum": 1}}}]
        for row in self.coll.aggregate(pipeline):
            key = str(row["_id"] or "Pending").lower()
            stats[key] = stats.get(key, 0) + row["count"]
            stats["total"] += row["count"]
        return stats

    def find_all(self, search: Optional[str] = None, status: Optional[str] = None, page: int = 1,
                 limit: int = 20) -> dict:
        base = self.search_filter(search)
        query = {**base, "status": status} if status else base
        total = self.coll.count_documents(query)
        docs = list(self.coll.find(query).sort("createdAt", -1).skip((page - 1) * limit).limit(limit))
        pagination = {"page": page, "limit": limit, "total": total, "totalPages": math.ceil(total / limit)}
        return ok("Orders fetched successfully", self.populate(docs),
                  stats=self.status_counts(base), pagination=pagination)

    def user_orders(self, user_id: str, search: Optional[str] = None, status: Optional[str] = None) -> List[dict]:
        query = {"userId": match_id(user_id)}
        if search:
            school_ids = [s["_id"] for s in self.db["schools"].find({"schoolName": name_filter(search)}, {"_id": 1})]
            query["schoolId"] = match_ids(school_ids)
        if status:
            query["status"] = status
        docs = self.populate(list(self.coll.find(query).sort("createdAt", -1)))

        user = self.users.find_one({"_id": to_object_id(user_id)}, {"orders": 1})
        for doc in docs:
            _, item = find_summary_item(user, doc["_id"])
            doc["payment"] = item
        return docs

    def find_user_orders(self, user_id: str, search: Optional[str] = None, status: Optional[str] = None) -> dict:
        return ok("User orders fetched successfully", self.user_orders(user_id, search, status))

    def find_user_orders_with_stats(self, user_id: str, search: Optional[str] = None) -> dict:
        docs = self.user_orders(user_id, search)
        user = self.users.find_one({"_id": to_object_id(user_id)}, {"orders": 1}) or {}
        summary = user.get("orders", {})
        total_payment = money(summary.get("totalPayment"))
        total_due = money(summary.get("totalDuePayment"))
        stats = {
            "totalOrders": len(docs),
            "pending": sum(1 for d in docs if d.get("status") == "Pending"),
            "partial": sum(1 for d in docs if d.get("status") == "Partial"),
            "completed": sum(1 for d in docs if d.get("status") == "Completed"),
            "totalPayment": total_payment,
            "totalDuePayment": total_due,
            "totalPaid": money(total_payment - total_due),
        }
        return ok("User orders with stats fetched successfully", docs, stats=stats)

    def export_to_excel(self, user_id: str) -> bytes:
        rows = []
        for order in self.user_orders(user_id):
            school = order.get("schoolId") or {}
            payment = order.get("payment") or {}
            for group in order.get("orderItems", []):
                category = group.get("categoryId") or {}
                for line in group.get("books", []):
                    book = line.get("bookId") or {}
                    rows.append({
                        "Order ID": str(order["_id"]),
                        "Order Date": order.get("createdAt"),
                        "School": school.get("schoolName"),
                        "Order Type": order.get("orderType"),
                        "Category": category.get("name"),
                        "Book": book.get("name"),
                        "Quantity": line.get("quantity"),
                        "Price": line.get("price"),
                        "Line Total": money((line.get("quantity") or 0) * (line.get("price") or 0)),
                        "Order Total": order.get("totalPayment"),
                        "Status": order.get("status"),
                        "Paid": payment.get("paidAmount", 0),
                        "Due": payment.get("dueAmount", order.get("totalPayment")),
                    })
        columns = ["Order ID", "Order Date", "School", "Order Type", "Category", "Book", "Quantity", "Price",
                   "Line Total", "Order Total", "Status", "Paid", "Due"]
        buffer = io.BytesIO()
        with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
            pd.DataFrame(rows, columns=columns).to_excel(writer, index=False, sheet_name="Orders")
        return buffer.getvalue()

    # -----------------------------
    # Changes
    # -----------------------------

    def update(self, id: str, payload: OrderUpdate, image_path: Optional[str] = None) -> dict:
        order = self.get(id)
        if not order:
            return self.not_found(id)
        fields = payload.model_dump(by_alias=True, exclude_unset=True)

        new_status = fields.get("status")
        current_status = order.get("status", "Pending")
        if new_status and new_status != current_status and new_status not in ORDER_TRANSITIONS.get(current_status, ()):
            return fail(f"Cannot change order status from {current_status} to {new_status}")

        if "schoolId" in fields:
            fields["schoolId"] = oid(fields["schoolId"])
        if fields.get("orderItems") is not None:
            fields["orderItems"] = stored_order_items(fields["orderItems"])
        if image_path:
            fields["image"] = image_path

        if "totalPayment" in fields:
            fields["totalPayment"] = money(fields["totalPayment"])
            delta = money(fields["totalPayment"] - money(order.get("totalPayment")))
            if delta:
                changed = self._reprice_summary(order, fields["totalPayment"], delta)
                if changed is not None:
                    return changed

        cancelling = new_status == "Cancelled" and current_status != "Cancelled"
        if cancelling:
            claimed = self.coll.update_one(
                {"_id": order["_id"], "status": order.get("status")},
                stamped({"$set": {"status": "Cancelled"}}),
            )
            if claimed.matched_count == 0:
                return fail("Order status changed while cancelling, please retry")

        result = self.update_fields(id, fields)
        if result["success"] and cancelling:
            self._write_off_summary(order)
            self._restock(order)
            logger.info("Order %s cancelled", order["_id"])
        return result

    def _reprice_summary(self, order: dict, new_total: float, delta: float) -> Optional[dict]:
        user = self.users.find_one({"_id": to_object_id(order.get("userId"))}, {"orders": 1})
        idx, item = find_summary_item(user, order["_id"])
        if item is None:
            return None
        if money(item.get("paidAmount")) > 0:
            return fail("Total payment cannot change after payments were recorded")
        self.users.update_one(
            {"_id": user["_id"]},
            stamped({
                "$set": {f"orders.items.{idx}.paymentAmount": new_total, f"orders.items.{idx}.dueAmount": new_total},
                "$inc": {"orders.totalPayment": delta, "orders.totalDuePayment": delta},
            }),
        )
        return None

    def _write_off_summary(self, order: dict):
        """Drop the unpaid balance of a cancelled order; what was paid stays recorded."""
        user = self.users.find_one({"_id": to_object_id(order.get("userId"))}, {"orders": 1})
        idx, item = find_summary_item(user, order["_id"])
        if item is None:
            return
        due = money(item.get("dueAmount"))
        prefix = f"orders.items.{idx}"
        result = self.users.update_one(
            {"_id": user["_id"], f"{prefix}.orderId": item["orderId"], f"{prefix}.dueAmount": item.get("dueAmount")},
            stamped({
                "$set": {f"{prefix}.paymentAmount": money(item.get("paidAmount")), f"{prefix}.dueAmount": 0},
                "$inc": {"orders.totalPayment": -due, "orders.totalDuePayment": -due},
            }),
        )
        if result.matched_count == 0:
            logger.warning("Order %s cancelled but its summary item changed concurrently; run reconcile", order["_id"])

    def _restock(self, order: dict):
        for group in order.get("orderItems", []):
            for line in group.get("books", []):
                self.books.update_one(
                    {"_id": to_object_id(line["bookId"])},
                    stamped({"$inc": {"stock": int(line.get("quantity") or 0)}}),
                )

    def remove(self, id: str) -> dict:
        result = super().remove(id)
        if not result["success"]:
            return result
        order = result["data"]
        user = self.users.find_one({"_id": to_object_id(order.get("userId"))}, {"orders": 1})
        _, item = find_summary_item(user, order["_id"])
        if item is not None:
            self.users.update_one(
                {"_id": user["_id"]},
                stamped({
                    "$pull": {"orders.items": {"orderId": match_id(order["_id"])}},
                    "$inc": {
                        "orders.totalPayment": -money(item.get("paymentAmount")),
                        "orders.totalDuePayment": -money(item.get("dueAmount")),
                    },
                }),
            )
        return result

    # -----------------------------
    # Payments
    # -----------------------------

    def process_payment(self, payload: ProcessPayment) -> dict:
        order = self.get(payload.order_id)
        if not order:
            return self.not_found(payload.order_id)
        status = order.get("status", "Pending")
        if status in TERMINAL_STATUSES:
            return fail(f"Order is already {status.lower()}; no further payments can be recorded")

        user = self.users.find_one({"_id": to_object_id(order.get("userId"))}, {"orders": 1})
        idx, item = find_summary_item(user, order["_id"])
        if item is None:
            return fail("Order link missing from user profile")

        received = money(payload.received_amount)
        due = money(item.get("dueAmount"))
        applied = min(received, due)
        remaining = money(max(due - received, 0))
        payment_status = "Paid" if remaining <= 0 else "Partial"
        if payload.remaining_amount is not None and money(payload.remaining_amount) != remaining:
            logger.warning("Order %s: client reported remaining %s, computed %s",
                           payload.order_id, payload.remaining_amount, remaining)

        prefix = f"orders.items.{idx}"
        result = self.users.update_one(
            {"_id": user["_id"], f"{prefix}.orderId": item["orderId"], f"{prefix}.dueAmount": item.get("dueAmount")},
            stamped({
                "$set": {
                    f"{prefix}.paymentStatus": payment_status,
                    f"{prefix}.dueAmount": remaining,
                    f"{prefix}.remarks": payload.remarks if payload.remarks is not None else item.get("remarks"),
                },
                "$inc": {f"{prefix}.paidAmount": applied, "orders.totalDuePayment": -applied},
            }),
        )
        if result.matched_count == 0:
            return fail("Payment conflict: the order balance changed while recording this payment, please retry")

        order_status = ORDER_STATUS_FOR_PAYMENT[payment_status]
        self.coll.update_one(
            {"_id": order["_id"], "status": {"$nin": list(TERMINAL_STATUSES)}},
            stamped({"$set": {"status": order_status}}),
        )
        logger.info("Payment of %s recorded on order %s (%s, due %s)", applied, payload.order_id,
                    payment_status, remaining)

        return ok("Payment recorded successfully", {
            "orderId": order["_id"],
            "paymentStatus": payment_status,
            "orderStatus": order_status,
            "paymentAmount": money(item.get("paymentAmount")),
            "paidAmount": money(money(item.get("paidAmount")) + applied),
            "dueAmount": remaining,
            "receivedAmount": received,
            "unappliedAmount": money(received - applied),
            "remarks": payload.remarks,
        })

    def reconcile(self, user_id: str) -> dict:
        """Rebuild a user's payment summary from the orders collection."""
        user = self.users.find_one({"_id": oid(user_id)}, {"orders": 1})
        if not user:
            return fail(f"User with ID {user_id} not found")
        summary = user.get("orders") or {}
        orders = {str(o["_id"]): o for o in self.coll.find({"userId": match_id(user_id)})}
        fixes = 0
        items = []
        seen = set()

        for item in summary.get("items", []):
            order = orders.get(str(item.get("orderId")))
            if order is None:
                fixes += 1
                continue
            seen.add(str(order["_id"]))
            item = dict(item)
            paid = money(item.get("paidAmount"))
            if order.get("status") == "Cancelled":
                if money(item.get("dueAmount")) or money(item.get("paymentAmount")) != paid:
                    item["paymentAmount"] = paid
                    item["dueAmount"] = 0
                    fixes += 1
                items.append(item)
                continue

            amount = money(item.get("paymentAmount"))
            if money(paid + money(item.get("dueAmount"))) != amount:
                item["dueAmount"] = money(max(amount - paid, 0))
                fixes += 1
            items.append(item)

            expected = ORDER_STATUS_FOR_PAYMENT.get(item.get("paymentStatus"), "Pending")
            current = order.get("status", "Pending")
            if current in ORDER_STATUS_RANK and ORDER_STATUS_RANK[expected] > ORDER_STATUS_RANK[current]:
                self.coll.update_one({"_id": order["_id"]}, stamped({"$set": {"status": expected}}))
                fixes += 1

        for key, order in orders.items():
            if key in seen:
                continue
            # no payment history survives for these, so a cancelled one owes nothing
            total = 0 if order.get("status") == "Cancelled" else money(order.get("totalPayment"))
            paid_in_full = order.get("status") == "Completed"
            items.append({
                "orderId": order["_id"],
                "paymentStatus": "Paid" if paid_in_full else "Pending",
                "paymentAmount": total,
                "paidAmount": total if paid_in_full else 0,
                "dueAmount": 0 if paid_in_full else total,
                "remarks": None,
            })
            fixes += 1

        total_payment = money(sum(money(i.get("paymentAmount")) for i in items))
        total_due = money(sum(money(i.get("dueAmount")) for i in items))
        if total_payment != money(summary.get("totalPayment")) or total_due != money(summary.get("totalDuePayment")):
            fixes += 1
        rebuilt = {"totalPayment": total_payment, "totalDuePayment": total_due, "items": items}
        self.users.update_one({"_id": user["_id"]}, stamped({"$set": {"orders": rebuilt}}))
        logger.info("Reconciled payment summary of user %s: %d fixes", user_id, fixes)
        return ok(f"Payment summary reconciled with {fixes} fixes", {"fixes": fixes, "orders": rebuilt})


# -----------------------------
# Routes
# -----------------------------

router = APIRouter(prefix="/order", tags=["order"])


@router.post("")
def create_order(data: dict = Depends(form_or_json), user: CurrentUser = Depends(get_current_user),
                 db=Depends(get_db)):
    image = pop_file(data, "image")
    data["orderItems"] = load_json_field(data.get("orderItems"), "orderItems")
    data.setdefault("userId", user.user_id)
    payload = parse_payload(OrderCreate, data)
    return respond(with_uploads(OrderService(db).create, payload, files=[image]), 201)


@router.get("", dependencies=[Depends(get_current_user)])
def list_orders(search: Optional[str] = None, status: Optional[str] = None, page: int = Query(1, ge=1),
                limit: int = Query(20, ge=1, le=200), db=Depends(get_db)):
    return respond(OrderService(db).find_all(search, status, page, limit))


@router.get("/my-orders")
def list_my_orders(search: Optional[str] = None, status: Optional[str] = None,
                   user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    return respond(OrderService(db).find_user_orders(user.user_id, search, status))


@router.get("/user-stats/me")
def my_order_stats(search: Optional[str] = None, user: CurrentUser = Depends(get_current_user),
                   db=Depends(get_db)):
    return respond(OrderService(db).find_user_orders_with_stats(user.user_id, search))


@router.get("/export-my-orders")
def export_my_orders(user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    content = OrderService(db).export_to_excel(user.user_id)
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="my-orders.xlsx"'},
    )


@router.post("/record-payment", dependencies=[Depends(get_current_user)])
def record_payment(payload: ProcessPayment, db=Depends(get_db)):
    return respond(OrderService(db).process_payment(payload))


@router.post("/reconcile/{user_id}", dependencies=[Depends(require_admin)])
def reconcile_user_orders(user_id: str, db=Depends(get_db)):
    return respond(OrderService(db).reconcile(user_id))


@router.get("/{order_id}", dependencies=[Depends(get_current_user)])
def get_order(order_id: str, db=Depends(get_db)):
    return respond(OrderService(db).find_one(order_id))


@router.put("/{order_id}", dependencies=[Depends(get_current_user)])
def update_order(order_id: str, data: dict = Depends(form_or_json), db=Depends(get_db)):
    image = pop_file(data, "image")
    if "orderItems" in data:
        data["orderItems"] = load_json_field(data["orderItems"], "orderItems")
    payload = parse_payload(OrderUpdate, data)
    return respond(with_uploads(OrderService(db).update, order_id, payload, files=[image]))


@router.delete("/{order_id}", dependencies=[Depends(get_current_user)])
def delete_order(order_id: str, db=Depends(get_db)):
    return respond(OrderService(db).remove(order_id))
