"""
Visit engine

A visit is one agent's campaign at one school: a growing log of dated
``visitDetails`` entries. Each (user, school) pair has at most one open
(non-completed) visit; new details are appended to it instead of opening a
second one.
"""
import logging
from datetime import MAXYEAR, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from catalog import name_filter, zone_filter
from crud import CrudService
from database import create_document, get_db, match_id, match_ids, oid, populate, stamped, utcnow
from responses import fail, ok, respond
from schemas import CurrentUser, Role, VisitCreate, VisitUpdate, load_json_field, parse_payload
from security import get_current_user
from uploads import form_or_json, pop_file, with_uploads

logger = logging.getLogger(__name__)


def derive_status(details: List[dict]) -> str:
    """Status implied by the last detail of a visit log."""
    if not details:
        return "pending"
    last = details[-1]
    if (last.get("remarks") or "").strip():
        return "pending"
    if last.get("nextVisitDate"):
        return "rescheduled"
    return "completed"


def resolve_status(details: List[dict], explicit: Optional[str] = None) -> str:
    return explicit or derive_status(details)


def month_range(year: int, month: int):
    """``[start, end)`` of a calendar month; December 9999 ends at ``datetime.max``."""
    start = datetime(year, month, 1)
    if month < 12:
        end = datetime(year, month + 1, 1)
    elif year < MAXYEAR:
        end = datetime(year + 1, 1, 1)
    else:
        end = datetime.max
    return start, end


class VisitService(CrudService):
    collection = "visits"
    label = "Visit"
    populates = [
        ("userId", "users", "username email"),
        ("schoolId", "schools", "schoolName address zone"),
    ]

    def _school_ids_by_name(self, school_name: str) -> list:
        return [s["_id"] for s in self.db["schools"].find({"schoolName": name_filter(school_name)}, {"_id": 1})]

    def _list(self, query: dict) -> List[dict]:
        return self.populate(list(self.coll.find(query).sort("updatedAt", -1)))

    def create(self, payload: VisitCreate, photo_path: Optional[str] = None) -> dict:
        if not payload.user_id:
            return fail("userId is required")
        details = [d.model_dump(by_alias=True) for d in payload.visit_details]
        if photo_path and details:
            details[0]["photo"] = photo_path

        existing = self.coll.find_one(
            {
                "userId": match_id(payload.user_id),
                "schoolId": match_id(payload.school_id),
                "status": {"$ne": "completed"},
            },
            sort=[("updatedAt", -1)],
        )
        if existing:
            merged = existing.get("visitDetails", []) + details
            update = {"$set": {"scheduleDate": payload.schedule_date, "status": resolve_status(merged, payload.status)}}
            if details:
                update["$push"] = {"visitDetails": {"$each": details}}
            self.coll.update_one({"_id": existing["_id"]}, stamped(update))
            logger.info("Appended %d details to visit %s", len(details), existing["_id"])
            return ok("Visit updated with new details", self.populate_one(self.coll.find_one({"_id": existing["_id"]})))

        if not self.db["schools"].find_one({"_id": oid(payload.school_id)}, {"_id": 1}):
            return fail(f"School with ID {payload.school_id} not found")
        doc = {
            "userId": oid(payload.user_id),
            "schoolId": oid(payload.school_id),
            "scheduleDate": payload.schedule_date,
            "status": resolve_status(details, payload.status),
            "visitDetails": details,
        }
        new_id = create_document(self.db, self.collection, doc)
        logger.info("Visit %s opened for user %s at school %s", new_id, payload.user_id, payload.school_id)
        return ok("Visit created successfully", self.populate_one(self.get(new_id)))

    def find_all(self, school_name: Optional[str] = None, status: Optional[str] = None) -> dict:
        query = {}
        if school_name:
            query["schoolId"] = match_ids(self._school_ids_by_name(school_name))
        if status:
            query["status"] = status
        return ok("Visits fetched successfully", self._list(query))

    def update(self, id: str, payload: VisitUpdate) -> dict:
        fields = payload.model_dump(by_alias=True, exclude_unset=True)
        if fields.get("visitDetails") is not None and not fields.get("status"):
            fields["status"] = derive_status(fields["visitDetails"])
        return self.update_fields(id, fields)

    def find_by_user(self, user_id: str, school_name: Optional[str] = None, status: Optional[str] = None) -> dict:
        query = {"userId": match_id(user_id)}
        if school_name:
            query["schoolId"] = match_ids(self._school_ids_by_name(school_name))
        if status:
            query["status"] = status
        return ok("User visits fetched successfully", self._list(query))

    def find_by_school(self, school_id: str) -> dict:
        return ok("School visits fetched successfully", self._list({"schoolId": match_id(school_id)}))

    def find_by_user_and_school(self, user_id: str, school_id: str) -> dict:
        query = {"userId": match_id(user_id), "schoolId": match_id(school_id)}
        return ok("Visits fetched successfully", self._list(query))

    def find_user_visits_by_month(self, user_id: str, year: int, month: int) -> dict:
        start, end = month_range(year, month)
        query = {
            "userId": match_id(user_id),
            "visitDetails": {"$elemMatch": {"date": {"$gte": start, "$lt": end}}},
        }
        visits = self._list(query)
        count = 0
        for visit in visits:
            visit["visitDetails"] = [
                d for d in visit.get("visitDetails", [])
                if isinstance(d.get("date"), datetime) and start <= d["date"] < end
            ]
            count += len(visit["visitDetails"])
        return ok("Monthly visits fetched successfully", visits, count=count)

    def find_by_assigned_zone(self, zone: str, school_name: Optional[str] = None,
                              status: Optional[str] = None) -> dict:
        query = {"zone": zone_filter(zone)}
        if school_name:
            query["schoolName"] = name_filter(school_name)
        schools = list(self.db["schools"].find(query).sort("schoolName", 1))

        by_school = {}
        if schools:
            visits = self.coll.find({"schoolId": match_ids(s["_id"] for s in schools)})
            for visit in populate(self.db, list(visits), "userId", "users", "username email"):
                by_school.setdefault(str(visit["schoolId"]), []).append(visit)

        data = []
        for school in schools:
            visits = sorted(by_school.get(str(school["_id"]), []),
                            key=lambda v: v.get("updatedAt") or datetime.min, reverse=True)
            current = visits[0].get("status", "pending") if visits else "pending"
            data.append({**school, "visits": visits, "visitCount": len(visits), "currentStatus": current})

        if status:
            data = [s for s in data if s["currentStatus"] == status]
        return ok("Zone visits fetched successfully", data, count=len(data))

    def get_visit_summary_with_stats(self, school_id: str, visit_id: Optional[str], user_id: str,
                                     is_admin: bool = False) -> dict:
        school = self.db["schools"].find_one({"_id": oid(school_id)})
        if not school:
            return fail(f"School with ID {school_id} not found")

        if visit_id:
            visit = self.get(visit_id)
        else:
            visit = self.coll.find_one(
                {"userId": match_id(user_id), "schoolId": match_id(school_id)}, sort=[("updatedAt", -1)]
            )
        if not visit:
            return fail("Visit not found for this school")
        if str(visit.get("schoolId")) != str(school["_id"]):
            return fail("Visit does not belong to this school")
        if not is_admin and str(visit.get("userId")) != user_id:
            return fail("Forbidden: this visit belongs to another user")

        details = visit.get("visitDetails", [])
        dates = [d["date"] for d in details if d.get("date")]
        next_dates = [d["nextVisitDate"] for d in details if d.get("nextVisitDate")]
        visit_stats = {
            "totalVisitDetails": len(details),
            "lastVisitDate": max(dates) if dates else None,
            "nextVisitDate": next_dates[-1] if next_dates else None,
            "remarks": [d["remarks"] for d in details if d.get("remarks")],
        }

        return ok("Visit summary fetched successfully", {
            "visit": self.populate_one(visit),
            "school": school,
            "orderStats": self.order_stats(school_id),
            "visitStats": visit_stats,
        })

    def order_stats(self, school_id: str) -> dict:
        orders = self.db["orders"]
        pipeline = [
            {"$match": {"schoolId": match_id(school_id)}},
            {"$unwind": "$orderItems"},
            {"$unwind": "$orderItems.books"},
            {"$group": {
                "_id": None,
                "totalBookQuantity": {"$sum": "$orderItems.books.quantity"},
                "books": {"$addToSet": "$orderItems.books.bookId"},
                "categories": {"$addToSet": "$orderItems.categoryId"},
            }},
        ]
        row = next(iter(orders.aggregate(pipeline)), None) or {}
        return {
            "totalOrders": orders.count_documents({"schoolId": match_id(school_id)}),
            "totalBookQuantity": row.get("totalBookQuantity", 0),
            # ids may be mixed str/ObjectId
            "uniqueBooks": len({str(b) for b in row.get("books", [])}),
            "uniqueCategories": len({str(c) for c in row.get("categories", [])}),
        }


# -----------------------------
# Routes
# -----------------------------

router = APIRouter(prefix="/visit", tags=["visit"])


@router.post("")
def create_visit(data: dict = Depends(form_or_json), user: CurrentUser = Depends(get_current_user),
                 db=Depends(get_db)):
    photo = pop_file(data, "photo")
    data["visitDetails"] = load_json_field(data.get("visitDetails"), "visitDetails") or []
    data.setdefault("userId", user.user_id)
    payload = parse_payload(VisitCreate, data)
    return respond(with_uploads(VisitService(db).create, payload, files=[photo]), 201)


@router.get("", dependencies=[Depends(get_current_user)])
def list_visits(schoolName: Optional[str] = None, status: Optional[str] = None, db=Depends(get_db)):
    return respond(VisitService(db).find_all(schoolName, status))


@router.get("/my-zone-visits")
def list_my_zone_visits(zone: Optional[str] = None, schoolName: Optional[str] = None, status: Optional[str] = None,
                        user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    if user.role != Role.ADMIN.value or not zone:
        zone = user.assigned_zone
    if not zone:
        return respond(fail("No zone assigned to this user"))
    return respond(VisitService(db).find_by_assigned_zone(zone, schoolName, status))


@router.get("/user")
def list_my_visits(schoolName: Optional[str] = None, status: Optional[str] = None,
                   user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    return respond(VisitService(db).find_by_user(user.user_id, schoolName, status))


@router.get("/user/monthly")
def list_my_monthly_visits(year: Optional[int] = Query(None, ge=2000, le=9999),
                           month: Optional[int] = Query(None, ge=1, le=12),
                           user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    now = utcnow()
    return respond(VisitService(db).find_user_visits_by_month(user.user_id, year or now.year, month or now.month))


@router.get("/school/{school_id}", dependencies=[Depends(get_current_user)])
def list_school_visits(school_id: str, db=Depends(get_db)):
    return respond(VisitService(db).find_by_school(school_id))


@router.get("/user/school/{school_id}")
def list_my_school_visits(school_id: str, user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    return respond(VisitService(db).find_by_user_and_school(user.user_id, school_id))


@router.get("/summary/details")
def get_visit_summary(schoolId: str, visitId: Optional[str] = None, user: CurrentUser = Depends(get_current_user),
                      db=Depends(get_db)):
    service = VisitService(db)
    result = service.get_visit_summary_with_stats(schoolId, visitId, user.user_id,
                                                  is_admin=user.role == Role.ADMIN.value)
    return respond(result)


@router.get("/{visit_id}", dependencies=[Depends(get_current_user)])
def get_visit(visit_id: str, db=Depends(get_db)):
    return respond(VisitService(db).find_one(visit_id))


@router.put("/{visit_id}", dependencies=[Depends(get_current_user)])
def update_visit(visit_id: str, payload: VisitUpdate, db=Depends(get_db)):
    return respond(VisitService(db).update(visit_id, payload))


@router.delete("/{visit_id}", dependencies=[Depends(get_current_user)])
def delete_visit(visit_id: str, db=Depends(get_db)):
    return respond(VisitService(db).remove(visit_id))
