import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from catalog import name_filter, zone_filter
from crud import CrudService
from database import create_document, get_db, match_id, oid, stamped, utcnow
from responses import fail, ok, respond
from schemas import CurrentUser, FcmTokenUpdate, LoginRequest, Role, UserCreate, UserUpdate, parse_payload
from security import (create_access_token, get_current_user, get_optional_user, hash_password, require_admin,
                      verify_password)
from uploads import form_or_json, pop_file, with_uploads

logger = logging.getLogger(__name__)


def empty_order_summary() -> dict:
    return {"totalPayment": 0, "totalDuePayment": 0, "items": []}


class UserService(CrudService):
    collection = "users"
    label = "User"
    projection = {"password": 0}

    def _duplicate(self, username: Optional[str], email: Optional[str], exclude_id=None) -> Optional[dict]:
        for field, value in (("username", username), ("email", email)):
            if value is None:
                continue
            query = {field: value}
            if exclude_id is not None:
                query["_id"] = {"$ne": exclude_id}
            if self.coll.find_one(query):
                return fail(f"{field.capitalize()} already exists")
        return None

    def create(self, payload: UserCreate, profile_photo_path: Optional[str] = None) -> dict:
        duplicate = self._duplicate(payload.username, payload.email)
        if duplicate:
            return duplicate
        doc = payload.model_dump(by_alias=True)
        doc["password"] = hash_password(payload.password)
        doc["role"] = Role(payload.role).value
        doc["assignedZone"] = payload.assigned_zone or ""
        doc["profilePhoto"] = profile_photo_path
        doc["status"] = "active"
        doc["orders"] = empty_order_summary()
        new_id = create_document(self.db, self.collection, doc)
        logger.info("User %s created with role %s", payload.username, doc["role"])
        return ok("User created successfully", self.get(new_id))

    def find_all(self, search: Optional[str] = None, role: Optional[str] = None, status: Optional[str] = None,
                 zone: Optional[str] = None) -> dict:
        query = {}
        if search:
            query["$or"] = [{"username": name_filter(search)}, {"email": name_filter(search)}]
        if role:
            query["role"] = role
        if status:
            query["status"] = status
        if zone:
            query["assignedZone"] = zone_filter(zone)
        data = list(self.coll.find(query, self.projection).sort("createdAt", -1))
        return ok("Users fetched successfully", data)

    def find_by_username(self, username: str) -> Optional[dict]:
        return self.coll.find_one({"username": username})

    def update(self, id: str, payload: UserUpdate, profile_photo_path: Optional[str] = None) -> dict:
        fields = payload.model_dump(by_alias=True, exclude_unset=True)
        duplicate = self._duplicate(fields.get("username"), fields.get("email"), exclude_id=oid(id))
        if duplicate:
            return duplicate
        if fields.get("password"):
            fields["password"] = hash_password(fields["password"])
        if profile_photo_path:
            fields["profilePhoto"] = profile_photo_path
        return self.update_fields(id, fields)

    def update_fcm_token(self, id: str, fcm_token: str) -> dict:
        return self.update_fields(id, {"fcmToken": fcm_token})

    def update_last_login(self, id) -> None:
        self.coll.update_one({"_id": id}, stamped({"$set": {"lastLogin": utcnow()}}))

    def toggle_status(self, id: str) -> dict:
        user = self.get(id)
        if not user:
            return self.not_found(id)
        new_status = "deactive" if user.get("status", "active") == "active" else "active"
        result = self.update_fields(id, {"status": new_status})
        result["message"] = f"User status changed to {new_status}"
        return result

    def activity(self, user_id: str) -> dict:
        user = self.get(user_id)
        if not user:
            return self.not_found(user_id)
        visits = self.db["visits"]
        orders = self.db["orders"]
        user_match = match_id(user_id)
        now = utcnow()
        month_start = datetime(now.year, now.month, 1)
        data = {
            "lastLogin": user.get("lastLogin"),
            "totalVisits": visits.count_documents({"userId": user_match}),
            "completedVisits": visits.count_documents({"userId": user_match, "status": "completed"}),
            "totalOrders": orders.count_documents({"userId": user_match}),
            "completedOrders": orders.count_documents({"userId": user_match, "status": "Completed"}),
            "attendanceThisMonth": self.db["attendances"].count_documents(
                {"userId": user_match, "date": {"$gte": month_start}, "status": "present"}
            ),
            "totalPayment": user.get("orders", {}).get("totalPayment", 0),
            "totalDuePayment": user.get("orders", {}).get("totalDuePayment", 0),
            "recentVisits": list(visits.find({"userId": user_match}).sort("updatedAt", -1).limit(5)),
            "recentOrders": list(orders.find({"userId": user_match}).sort("createdAt", -1).limit(5)),
        }
        return ok("User activity fetched successfully", data)

    def list_for_dropdown(self) -> dict:
        data = list(self.coll.find({"status": {"$ne": "deactive"}}, {"username": 1, "assignedZone": 1})
                    .sort("username", 1))
        return ok("User list fetched successfully", data)

    def login(self, username: str, password: str) -> dict:
        user = self.find_by_username(username)
        if user and user.get("status") == "deactive":
            return fail("Unauthorized: account is deactivated. Please contact admin.")
        if not user or not verify_password(password, user.get("password", "")):
            return fail("Invalid credentials")
        self.update_last_login(user["_id"])
        claims = {
            "username": user["username"],
            "sub": str(user["_id"]),
            "role": user.get("role", Role.USER.value),
            "assignedZone": user.get("assignedZone", ""),
        }
        logger.info("User %s logged in", username)
        return ok("Login successful", {
            "id": user["_id"],
            "username": user["username"],
            "email": user.get("email"),
            "role": claims["role"],
            "assignedZone": claims["assignedZone"],
            "token": create_access_token(claims),
        })


def ensure_self_or_admin(user: CurrentUser, user_id: str):
    if user.role != Role.ADMIN.value and user.user_id != user_id:
        raise HTTPException(status_code=403, detail="Forbidden: you can only access your own account")


# -----------------------------
# Routes
# -----------------------------

router = APIRouter(prefix="/users", tags=["users"])


@router.post("/login")
def login(payload: LoginRequest, db=Depends(get_db)):
    return respond(UserService(db).login(payload.username, payload.password))


@router.post("")
def register_user(data: dict = Depends(form_or_json), current: Optional[CurrentUser] = Depends(get_optional_user),
                  db=Depends(get_db)):
    photo = pop_file(data, "profilePhoto")
    payload = parse_payload(UserCreate, data)
    if payload.role == Role.ADMIN.value and (current is None or current.role != Role.ADMIN.value):
        raise HTTPException(status_code=403, detail="Forbidden: only admins can create admin accounts")
    return respond(with_uploads(UserService(db).create, payload, files=[photo]), 201)


@router.get("", dependencies=[Depends(require_admin)])
def list_users(search: Optional[str] = None, role: Optional[str] = None, status: Optional[str] = None,
               zone: Optional[str] = None, db=Depends(get_db)):
    return respond(UserService(db).find_all(search, role, status, zone))


@router.get("/profile")
def get_profile(user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    return respond(UserService(db).find_one(user.user_id))


@router.get("/activity")
def get_activity(user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    return respond(UserService(db).activity(user.user_id))


@router.get("/dropdown/list", dependencies=[Depends(get_current_user)])
def list_users_for_dropdown(db=Depends(get_db)):
    return respond(UserService(db).list_for_dropdown())


@router.get("/{user_id}/stats", dependencies=[Depends(require_admin)])
def get_user_stats(user_id: str, db=Depends(get_db)):
    return respond(UserService(db).activity(user_id))


@router.put("/{user_id}")
def update_user(user_id: str, data: dict = Depends(form_or_json), user: CurrentUser = Depends(get_current_user),
                db=Depends(get_db)):
    ensure_self_or_admin(user, user_id)
    photo = pop_file(data, "profilePhoto")
    payload = parse_payload(UserUpdate, data)
    if user.role != Role.ADMIN.value and (payload.role is not None or payload.status is not None):
        raise HTTPException(status_code=403, detail="Forbidden: only admins can change role or status")
    return respond(with_uploads(UserService(db).update, user_id, payload, files=[photo]))


@router.delete("/{user_id}", dependencies=[Depends(require_admin)])
def delete_user(user_id: str, db=Depends(get_db)):
    return respond(UserService(db).remove(user_id))


@router.put("/{user_id}/fcm-token")
def update_fcm_token(user_id: str, payload: FcmTokenUpdate, user: CurrentUser = Depends(get_current_user),
                     db=Depends(get_db)):
    ensure_self_or_admin(user, user_id)
    return respond(UserService(db).update_fcm_token(user_id, payload.fcm_token))


@router.put("/{user_id}/toggle-status", dependencies=[Depends(require_admin)])
def toggle_user_status(user_id: str, db=Depends(get_db)):
    return respond(UserService(db).toggle_status(user_id))
