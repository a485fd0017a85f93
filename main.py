import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pymongo.errors import PyMongoError

import config
from attendance import router as attendance_router
from catalog import books_router, categories_router, schools_router, zones_router
from dashboard import router as dashboard_router
from database import db, ensure_indexes, get_db
from notifications import NotificationService, build_messenger, reminder_loop
from notifications import router as notifications_router
from orders import router as orders_router
from responses import envelope_response, fail, register_exception_handlers
from users import router as users_router
from visits import router as visits_router

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    try:
        ensure_indexes(db)
    except PyMongoError as e:
        logger.error("Startup DB Error: %s", e)

    app.state.messenger = build_messenger()
    reminder_task = None
    if config.REMINDER_SCHEDULER_ENABLED:
        service = NotificationService(db, app.state.messenger)
        reminder_task = asyncio.create_task(reminder_loop(db, service))
        logger.info("Visit reminder scheduler started (daily at %02d:00)", config.REMINDER_HOUR)

    yield
    # Shutdown
    if reminder_task is not None:
        reminder_task.cancel()
    if app.state.messenger is not None:
        app.state.messenger.close()
    logger.info("Shutting down...")


app = FastAPI(title="School Sales API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def limit_body_size(request: Request, call_next):
    length = request.headers.get("content-length")
    if length and length.isdigit() and int(length) > config.MAX_BODY_SIZE:
        return envelope_response(413, fail("Request body is too large"))
    return await call_next(request)


register_exception_handlers(app)

os.makedirs(config.UPLOAD_DIR, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=config.UPLOAD_DIR), name="uploads")

app.include_router(users_router)
app.include_router(schools_router)
app.include_router(zones_router)
app.include_router(categories_router)
app.include_router(books_router)
app.include_router(orders_router)
app.include_router(visits_router)
app.include_router(dashboard_router)
app.include_router(notifications_router)
app.include_router(attendance_router)


# -----------------------------
# Root & health
# -----------------------------
@app.get("/")
def read_root():
    return {"message": "School Sales Backend Running"}


@app.get("/test")
def test_database(database=Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    if database is not None:
        response["database"] = "✅ Available"
        response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
        response["database_name"] = database.name
        try:
            response["collections"] = database.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
        except PyMongoError as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"

    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
