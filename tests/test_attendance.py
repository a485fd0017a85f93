from datetime import datetime


def test_mark_attendance_once_per_day(client, db, agent):
    res = client.post("/attendance/mark", headers=agent["headers"])

    assert res.status_code == 201
    assert res.json()["data"]["status"] == "present"
    stored = db.attendances.find_one()
    assert stored["date"].hour == 0 and stored["date"].minute == 0
    assert stored["loginTime"] >= stored["date"]

    res = client.post("/attendance/mark", json={"status": "absent"}, headers=agent["headers"])
    assert res.status_code == 409
    assert res.json()["message"] == "Attendance for today already exists"


def test_mark_rejects_unknown_status(client, agent):
    res = client.post("/attendance/mark", json={"status": "vacation"}, headers=agent["headers"])

    assert res.status_code == 400


def test_monthly_summary(client, db, agent, other_agent):
    db.attendances.insert_many([
        {"userId": agent["id"], "date": datetime(2026, 2, 2), "status": "present"},
        {"userId": agent["id"], "date": datetime(2026, 2, 3), "status": "absent"},
        {"userId": str(agent["id"]), "date": datetime(2026, 2, 4), "status": "present"},
        {"userId": agent["id"], "date": datetime(2026, 2, 5), "status": "holiday"},
        {"userId": agent["id"], "date": datetime(2026, 3, 1), "status": "present"},
        {"userId": other_agent["id"], "date": datetime(2026, 2, 2), "status": "present"},
    ])

    data = client.get("/attendance/my-monthly", params={"year": 2026, "month": 2}, headers=agent["headers"]).json()["data"]

    assert len(data["records"]) == 4
    assert data["summary"] == {"present": 2, "absent": 1, "holiday": 1, "daysInMonth": 28}


def test_monthly_summary_for_december_9999(client, agent):
    res = client.get("/attendance/my-monthly", params={"year": 9999, "month": 12}, headers=agent["headers"])

    assert res.status_code == 200
    assert res.json()["data"]["summary"]["daysInMonth"] == 31
