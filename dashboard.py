from datetime import datetime

from fastapi import APIRouter, Depends

from database import get_db, match_id, populate, utcnow
from responses import ok, respond
from schemas import CurrentUser
from security import get_current_user, require_admin


def completed_revenue(db) -> float:
    pipeline = [
        {"$match": {"status": "Completed"}},
        {"$group": {"_id": None, "total": {"$sum": "$totalPayment"}}},
    ]
    row = next(iter(db["orders"].aggregate(pipeline)), None)
    return round(float(row["total"]), 2) if row else 0


def admin_stats(db) -> dict:
    visits = db["visits"]
    orders = db["orders"]
    return ok("Dashboard stats fetched successfully", {
        "userCount": db["users"].count_documents({}),
        "schoolCount": db["schools"].count_documents({}),
        "totalVisit": visits.count_documents({}),
        "completeVisit": visits.count_documents({"status": "completed"}),
        "rescheduledVisit": visits.count_documents({"status": "rescheduled"}),
        "totalOrder": orders.count_documents({}),
        "totalRevenue": completed_revenue(db),
        "pendingOrder": orders.count_documents({"status": "Pending"}),
        "completeOrder": orders.count_documents({"status": "Completed"}),
    })


def user_stats(db, user_id: str) -> dict:
    now = utcnow()
    today = datetime(now.year, now.month, now.day)
    query = {"userId": match_id(user_id)}
    orders = list(db["orders"].find(query, {"schoolId": 1, "orderType": 1, "totalPayment": 1, "status": 1,
                                            "createdAt": 1}).sort("createdAt", -1))
    populate(db, orders, "schoolId", "schools", "schoolName")
    return ok("User dashboard stats fetched successfully", {
        "todayOrders": db["orders"].count_documents({**query, "createdAt": {"$gte": today}}),
        "totalOrders": len(orders),
        "completedOrders": sum(1 for o in orders if o.get("status") == "Completed"),
        "orders": orders,
    })


router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/stats", dependencies=[Depends(require_admin)])
def get_dashboard_stats(db=Depends(get_db)):
    return respond(admin_stats(db))


@router.get("/user-stats")
def get_user_dashboard_stats(user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    return respond(user_stats(db, user.user_id))
