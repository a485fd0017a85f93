"""
Push notifications

Messages go out through Firebase Cloud Messaging. The Firebase app is built
once at startup from the service-account file and handed to
``NotificationService``; every attempt is stored in the ``notifications``
collection as ``sent`` or ``failed``.
"""
import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Optional

import firebase_admin
from fastapi import APIRouter, Depends, Request
from firebase_admin import credentials, messaging
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

import config
from crud import CrudService
from database import create_document, get_db, match_id, match_ids, oid, stamped, to_object_id, utcnow
from responses import ok, respond
from schemas import CurrentUser
from security import get_current_user, require_admin
from users import ensure_self_or_admin

logger = logging.getLogger(__name__)


class FirebaseMessenger:
    """Sends FCM messages through a named (non-default) Firebase app."""

    def __init__(self, service_account_path: str, name: str = "school-sales"):
        cred = credentials.Certificate(service_account_path)
        self.app = firebase_admin.initialize_app(cred, name=name)

    def send(self, token: str, title: str, body: str, data: Optional[dict] = None) -> str:
        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data={k: str(v) for k, v in (data or {}).items()},
            token=token,
        )
        return messaging.send(message, app=self.app)

    def close(self):
        firebase_admin.delete_app(self.app)


def build_messenger() -> Optional[FirebaseMessenger]:
    path = config.FIREBASE_SERVICE_ACCOUNT_PATH
    if not path:
        logger.warning("FIREBASE_SERVICE_ACCOUNT_PATH not set, push notifications are disabled")
        return None
    try:
        messenger = FirebaseMessenger(path)
    except (ValueError, OSError) as e:
        logger.error("Failed to initialize Firebase from %s: %s", path, e)
        return None
    logger.info("Firebase messaging initialized")
    return messenger


def get_messenger(request: Request):
    return getattr(request.app.state, "messenger", None)


class NotificationService(CrudService):
    collection = "notifications"
    label = "Notification"

    def __init__(self, db, messenger=None):
        super().__init__(db)
        self.messenger = messenger

    def send_notification(self, user_id, token: str, title: str, body: str,
                          data: Optional[dict] = None) -> Optional[dict]:
        """Send one push message and record the outcome.

        Returns the stored record, or None when no messenger is configured.
        Send failures are recorded as ``failed`` and re-raised.
        """
        if self.messenger is None:
            logger.warning("Push messenger not configured, skipping notification to user %s", user_id)
            return None
        record = {
            "userId": to_object_id(user_id) or user_id,
            "title": title,
            "body": body,
            "data": data or {},
            "isRead": False,
        }
        try:
            record["messageId"] = self.messenger.send(token, title, body, data)
        except Exception as e:
            record.update(status="failed", errorMessage=str(e))
            create_document(self.db, self.collection, record)
            logger.error("Push notification to user %s failed: %s", user_id, e)
            raise
        record["status"] = "sent"
        record["_id"] = oid(create_document(self.db, self.collection, record))
        return record

    def find_for_user(self, user_id: str) -> dict:
        query = {"userId": match_id(user_id)}
        data = list(self.coll.find(query).sort("createdAt", -1))
        unread = self.coll.count_documents({**query, "isRead": False})
        return ok("Notifications fetched successfully", data, count=unread)

    def mark_read(self, id: str, user_id: str) -> dict:
        result = self.coll.update_one({"_id": oid(id), "userId": match_id(user_id)},
                                      stamped({"$set": {"isRead": True}}))
        if result.matched_count == 0:
            return self.not_found(id)
        return ok("Notification marked as read", self.get(id))

    def mark_all_read(self, user_id: str) -> dict:
        result = self.coll.update_many({"userId": match_id(user_id), "isRead": False},
                                       stamped({"$set": {"isRead": True}}))
        return ok(f"{result.modified_count} notifications marked as read", {"modified": result.modified_count})


# -----------------------------
# Visit reminders
# -----------------------------

def send_visit_reminders(db, service: NotificationService, today: date) -> dict:
    """Notify agents about visits whose next visit date is ``today``."""
    start = datetime(today.year, today.month, today.day)
    end = start + timedelta(days=1)
    visits = list(db["visits"].find(
        {"visitDetails": {"$elemMatch": {"nextVisitDate": {"$gte": start, "$lt": end}}}}
    ))
    counts = {"found": len(visits), "sent": 0, "failed": 0, "skipped": 0}
    if not visits:
        return counts

    users = {str(u["_id"]): u for u in db["users"].find(
        {"_id": match_ids(v.get("userId") for v in visits)}, {"username": 1, "fcmToken": 1}
    )}
    schools = {str(s["_id"]): s for s in db["schools"].find(
        {"_id": match_ids(v.get("schoolId") for v in visits)}, {"schoolName": 1}
    )}

    for visit in visits:
        user = users.get(str(visit.get("userId")))
        if not user or not user.get("fcmToken"):
            counts["skipped"] += 1
            continue
        school_name = schools.get(str(visit.get("schoolId")), {}).get("schoolName", "a school")
        try:
            record = service.send_notification(
                user["_id"], user["fcmToken"], "Visit reminder",
                f"You have a visit scheduled today at {school_name}.",
                {"visitId": str(visit["_id"]), "schoolId": str(visit.get("schoolId")), "type": "visit_reminder"},
            )
        except Exception:
            counts["failed"] += 1
            continue
        counts["sent" if record is not None else "skipped"] += 1

    logger.info("Visit reminders for %s: %s", today.isoformat(), counts)
    return counts


def seconds_until(hour: int, now: Optional[datetime] = None) -> float:
    now = now or utcnow()
    run_at = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if run_at <= now:
        run_at += timedelta(days=1)
    return (run_at - now).total_seconds()


async def reminder_loop(db, service: NotificationService):
    while True:
        await asyncio.sleep(seconds_until(config.REMINDER_HOUR))
        try:
            await run_in_threadpool(send_visit_reminders, db, service, utcnow().date())
        except PyMongoError as e:
            logger.error("Visit reminder job failed: %s", e)


# -----------------------------
# Routes
# -----------------------------

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/my-notifications")
def list_my_notifications(user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    return respond(NotificationService(db).find_for_user(user.user_id))


@router.get("/user/{user_id}")
def list_user_notifications(user_id: str, user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    ensure_self_or_admin(user, user_id)
    return respond(NotificationService(db).find_for_user(user_id))


@router.put("/read-all")
def mark_all_notifications_read(user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    return respond(NotificationService(db).mark_all_read(user.user_id))


@router.put("/{notification_id}/read")
def mark_notification_read(notification_id: str, user: CurrentUser = Depends(get_current_user),
                           db=Depends(get_db)):
    return respond(NotificationService(db).mark_read(notification_id, user.user_id))


@router.post("/run-reminders", dependencies=[Depends(require_admin)])
def run_visit_reminders(db=Depends(get_db), messenger=Depends(get_messenger)):
    counts = send_visit_reminders(db, NotificationService(db, messenger), utcnow().date())
    return respond(ok("Visit reminders processed", counts))
