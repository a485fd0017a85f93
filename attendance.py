import calendar
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from crud import CrudService
from database import create_document, get_db, match_id, oid, utcnow
from responses import fail, ok, respond
from schemas import AttendanceMark, CurrentUser
from security import get_current_user
from visits import month_range

logger = logging.getLogger(__name__)


class AttendanceService(CrudService):
    collection = "attendances"
    label = "Attendance"

    def mark(self, user_id: str, payload: AttendanceMark) -> dict:
        now = utcnow()
        today = datetime(now.year, now.month, now.day)
        if self.coll.find_one({"userId": match_id(user_id), "date": today}):
            return fail("Attendance for today already exists")
        doc = {
            "userId": oid(user_id),
            "date": today,
            "status": payload.status,
            "loginTime": now,
            "remarks": payload.remarks,
        }
        new_id = create_document(self.db, self.collection, doc)
        logger.info("Attendance marked %s for user %s", payload.status, user_id)
        return ok("Attendance marked successfully", self.get(new_id))

    def monthly(self, user_id: str, year: int, month: int) -> dict:
        start, end = month_range(year, month)
        records = list(self.coll.find({"userId": match_id(user_id), "date": {"$gte": start, "$lt": end}})
                       .sort("date", 1))
        summary = {status: sum(1 for r in records if r.get("status") == status)
                   for status in ("present", "absent", "holiday")}
        summary["daysInMonth"] = calendar.monthrange(year, month)[1]
        return ok("Monthly attendance fetched successfully", {"records": records, "summary": summary})


router = APIRouter(prefix="/attendance", tags=["attendance"])


@router.post("/mark")
def mark_attendance(payload: Optional[AttendanceMark] = Body(None), user: CurrentUser = Depends(get_current_user),
                    db=Depends(get_db)):
    return respond(AttendanceService(db).mark(user.user_id, payload or AttendanceMark()), 201)


@router.get("/my-monthly")
def my_monthly_attendance(year: Optional[int] = Query(None, ge=2000, le=9999),
                          month: Optional[int] = Query(None, ge=1, le=12),
                          user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    now = utcnow()
    return respond(AttendanceService(db).monthly(user.user_id, year or now.year, month or now.month))
