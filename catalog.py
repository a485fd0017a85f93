"""
Catalog endpoints: schools, zones, categories and books.

Schools and users store their zone as a normalised string (``NORTHZONE``),
not as a reference to the zones collection; ``zone_filter`` matches every
stored spelling of a zone so older, un-normalised rows are still found.
"""
import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends
from pymongo import ReturnDocument

from crud import CrudService
from database import create_document, get_db, match_id, oid, stamped, to_object_id
from responses import NotFoundError, fail, ok, respond
from schemas import (BookCreate, BookUpdate, CategoryCreate, CategoryUpdate, SchoolCreate, SchoolUpdate,
                     ZoneCreate, ZoneUpdate, normalize_zone, parse_payload)
from security import get_current_user, require_admin
from uploads import form_or_json, pop_file, with_uploads

logger = logging.getLogger(__name__)


def zone_filter(zone: Optional[str]) -> dict:
    normalized = normalize_zone(zone)
    pattern = r"\s*".join(re.escape(ch) for ch in normalized)
    return {"$regex": f"^\\s*{pattern}\\s*$", "$options": "i"}


def name_filter(search: Optional[str]) -> dict:
    return {"$regex": re.escape(search), "$options": "i"}


# -----------------------------
# Schools
# -----------------------------

class SchoolService(CrudService):
    collection = "schools"
    label = "School"

    def create(self, payload: SchoolCreate) -> dict:
        new_id = create_document(self.db, self.collection, payload)
        return ok("School created successfully", self.get(new_id))

    def find_all(self, search: Optional[str] = None) -> dict:
        query = {"schoolName": name_filter(search)} if search else {}
        data = list(self.coll.find(query).sort("schoolName", 1))
        return ok("Schools fetched successfully", data)

    def find_by_zone(self, zone: str, school_name: Optional[str] = None) -> dict:
        if not normalize_zone(zone):
            return ok("No zone given", [])
        query = {"zone": zone_filter(zone)}
        if school_name:
            query["schoolName"] = name_filter(school_name)
        data = list(self.coll.find(query).sort("schoolName", 1))
        return ok(f"Schools for zone {normalize_zone(zone)} fetched successfully", data)

    def update(self, id: str, payload: SchoolUpdate) -> dict:
        return self.update_fields(id, payload.model_dump(by_alias=True, exclude_unset=True))


# -----------------------------
# Zones
# -----------------------------

class ZoneService(CrudService):
    """Zones raise ``NotFoundError`` instead of returning a failed envelope."""

    collection = "zones"
    label = "Zone"

    def create(self, payload: ZoneCreate) -> dict:
        if self.coll.find_one({"name": payload.name}):
            return fail(f"Zone {payload.name} already exists")
        new_id = create_document(self.db, self.collection, payload)
        return ok("Zone created successfully", self.get(new_id))

    def find_all(self) -> list:
        return list(self.coll.find().sort("name", 1))

    def find_all_with_details(self, search: Optional[str] = None) -> list:
        query = {"name": name_filter(search)} if search else {}
        result = []
        for zone in self.coll.find(query).sort("name", 1):
            users = list(self.db["users"].find(
                {"assignedZone": zone_filter(zone["name"])},
                {"username": 1, "email": 1, "phoneNumber": 1, "status": 1},
            ))
            schools = list(self.db["schools"].find(
                {"zone": zone_filter(zone["name"])},
                {"schoolName": 1, "address": 1, "contactPersonName": 1, "contactNumber": 1},
            ))
            result.append({
                "id": zone["_id"],
                "name": zone["name"],
                "userCount": len(users),
                "userList": users,
                "schoolCount": len(schools),
                "schoolList": schools,
            })
        return result

    def find_zone(self, id: str) -> dict:
        zone = self.get(id)
        if not zone:
            raise NotFoundError(f"Zone with ID {id} not found")
        return zone

    def update(self, id: str, payload: ZoneUpdate) -> dict:
        clash = self.coll.find_one({"name": payload.name, "_id": {"$ne": oid(id)}})
        if clash:
            return fail(f"Zone {payload.name} already exists")
        zone = self.coll.find_one_and_update(
            {"_id": oid(id)}, stamped({"$set": {"name": payload.name}}), return_document=ReturnDocument.AFTER
        )
        if not zone:
            raise NotFoundError(f"Zone with ID {id} not found")
        return ok("Zone updated successfully", zone)

    def delete(self, id: str) -> dict:
        if not self.coll.find_one_and_delete({"_id": oid(id)}):
            raise NotFoundError(f"Zone with ID {id} not found")
        return ok("Zone deleted successfully")


# -----------------------------
# Categories
# -----------------------------

class CategoryService(CrudService):
    collection = "categories"
    label = "Category"

    def create(self, payload: CategoryCreate, image_path: Optional[str] = None) -> dict:
        doc = payload.model_dump(by_alias=True)
        doc["image"] = image_path or payload.image
        new_id = create_document(self.db, self.collection, doc)
        return ok("Category created successfully", self.get(new_id))

    def find_all(self, search: Optional[str] = None) -> dict:
        query = {"name": name_filter(search)} if search else {}
        return ok("Categories fetched successfully", list(self.coll.find(query).sort("name", 1)))

    def find_all_with_stats(self, search: Optional[str] = None) -> dict:
        query = {"name": name_filter(search)} if search else {}
        counts = {}
        # book.category holds either form of the id
        for row in self.db["books"].aggregate([{"$group": {"_id": "$category", "count": {"$sum": 1}}}]):
            key = str(row["_id"])
            counts[key] = counts.get(key, 0) + row["count"]
        data = []
        for category in self.coll.find(query).sort("name", 1):
            data.append({
                "_id": category["_id"],
                "name": category.get("name"),
                "image": category.get("image"),
                "description": category.get("description"),
                "totalBooks": counts.get(str(category["_id"]), 0),
            })
        return ok("Categories with stats fetched successfully", data)

    def list_for_dropdown(self) -> dict:
        data = list(self.coll.find({}, {"name": 1}).sort("name", 1))
        return ok("Category list fetched successfully", data)

    def update(self, id: str, payload: CategoryUpdate, image_path: Optional[str] = None) -> dict:
        fields = payload.model_dump(by_alias=True, exclude_unset=True)
        if image_path:
            fields["image"] = image_path
        return self.update_fields(id, fields)


# -----------------------------
# Books
# -----------------------------

class BookService(CrudService):
    collection = "books"
    label = "Book"
    populates = [("category", "categories", "name")]

    def _category_missing(self, category_id: str) -> Optional[dict]:
        if not self.db["categories"].find_one({"_id": to_object_id(category_id)}):
            return fail(f"Category with ID {category_id} not found")
        return None

    def create(self, payload: BookCreate, cover_image_path: Optional[str] = None,
               pdf_path: Optional[str] = None) -> dict:
        missing = self._category_missing(payload.category)
        if missing:
            return missing
        doc = payload.model_dump(by_alias=True)
        doc["category"] = oid(payload.category)
        doc["coverImage"] = cover_image_path or payload.cover_image
        doc["pdf"] = pdf_path or payload.pdf
        new_id = create_document(self.db, self.collection, doc)
        return ok("Book created successfully", self.populate_one(self.get(new_id)))

    def find_all(self, search: Optional[str] = None) -> dict:
        query = {"name": name_filter(search)} if search else {}
        data = self.populate(list(self.coll.find(query).sort("name", 1)))
        return ok("Books fetched successfully", data)

    def find_by_category(self, category_id: str, search: Optional[str] = None) -> dict:
        query = {"category": match_id(category_id)}
        if search:
            query["name"] = name_filter(search)
        data = self.populate(list(self.coll.find(query).sort("name", 1)))
        return ok("Books fetched by category successfully", data)

    def update(self, id: str, payload: BookUpdate, cover_image_path: Optional[str] = None,
               pdf_path: Optional[str] = None) -> dict:
        fields = payload.model_dump(by_alias=True, exclude_unset=True)
        if payload.category:
            missing = self._category_missing(payload.category)
            if missing:
                return missing
            fields["category"] = oid(payload.category)
        if cover_image_path:
            fields["coverImage"] = cover_image_path
        if pdf_path:
            fields["pdf"] = pdf_path
        return self.update_fields(id, fields)


# -----------------------------
# Routes
# -----------------------------

schools_router = APIRouter(prefix="/school", tags=["school"], dependencies=[Depends(get_current_user)])
zones_router = APIRouter(prefix="/zone", tags=["zone"], dependencies=[Depends(get_current_user)])
categories_router = APIRouter(prefix="/category", tags=["category"], dependencies=[Depends(get_current_user)])
books_router = APIRouter(prefix="/book", tags=["book"], dependencies=[Depends(get_current_user)])


@schools_router.post("")
def create_school(payload: SchoolCreate, db=Depends(get_db)):
    return respond(SchoolService(db).create(payload), 201)


@schools_router.get("")
def list_schools(search: Optional[str] = None, db=Depends(get_db)):
    return respond(SchoolService(db).find_all(search))


@schools_router.get("/zone/{zone}")
def list_schools_by_zone(zone: str, schoolName: Optional[str] = None, db=Depends(get_db)):
    return respond(SchoolService(db).find_by_zone(zone, schoolName))


@schools_router.get("/{school_id}")
def get_school(school_id: str, db=Depends(get_db)):
    return respond(SchoolService(db).find_one(school_id))


@schools_router.put("/{school_id}")
def update_school(school_id: str, payload: SchoolUpdate, db=Depends(get_db)):
    return respond(SchoolService(db).update(school_id, payload))


@schools_router.delete("/{school_id}")
def delete_school(school_id: str, db=Depends(get_db)):
    return respond(SchoolService(db).remove(school_id))


@zones_router.post("", dependencies=[Depends(require_admin)])
def create_zone(payload: ZoneCreate, db=Depends(get_db)):
    return respond(ZoneService(db).create(payload), 201)


@zones_router.get("")
def list_zones(db=Depends(get_db)):
    return respond(ok("Zones fetched successfully", ZoneService(db).find_all()))


@zones_router.get("/details")
def list_zones_with_details(search: Optional[str] = None, db=Depends(get_db)):
    data = ZoneService(db).find_all_with_details(search)
    return respond(ok("Zones with details fetched successfully", data))


@zones_router.get("/{zone_id}")
def get_zone(zone_id: str, db=Depends(get_db)):
    return respond(ok("Zone fetched successfully", ZoneService(db).find_zone(zone_id)))


@zones_router.put("/{zone_id}", dependencies=[Depends(require_admin)])
def update_zone(zone_id: str, payload: ZoneUpdate, db=Depends(get_db)):
    return respond(ZoneService(db).update(zone_id, payload))


@zones_router.delete("/{zone_id}", dependencies=[Depends(require_admin)])
def delete_zone(zone_id: str, db=Depends(get_db)):
    return respond(ZoneService(db).delete(zone_id))


@categories_router.get("/stats")
def list_categories_with_stats(search: Optional[str] = None, db=Depends(get_db)):
    return respond(CategoryService(db).find_all_with_stats(search))


@categories_router.get("/dropdown/list")
def list_categories_for_dropdown(db=Depends(get_db)):
    return respond(CategoryService(db).list_for_dropdown())


@categories_router.post("")
def create_category(data: dict = Depends(form_or_json), db=Depends(get_db)):
    image = pop_file(data, "image")
    payload = parse_payload(CategoryCreate, data)
    return respond(with_uploads(CategoryService(db).create, payload, files=[image]), 201)


@categories_router.get("")
def list_categories(search: Optional[str] = None, db=Depends(get_db)):
    return respond(CategoryService(db).find_all(search))


@categories_router.get("/{category_id}")
def get_category(category_id: str, db=Depends(get_db)):
    return respond(CategoryService(db).find_one(category_id))


@categories_router.put("/{category_id}")
def update_category(category_id: str, data: dict = Depends(form_or_json), db=Depends(get_db)):
    image = pop_file(data, "image")
    payload = parse_payload(CategoryUpdate, data)
    return respond(with_uploads(CategoryService(db).update, category_id, payload, files=[image]))


@categories_router.delete("/{category_id}")
def delete_category(category_id: str, db=Depends(get_db)):
    return respond(CategoryService(db).remove(category_id))


@books_router.post("")
def create_book(data: dict = Depends(form_or_json), db=Depends(get_db)):
    cover_image = pop_file(data, "coverImage")
    pdf = pop_file(data, "pdf")
    payload = parse_payload(BookCreate, data)
    return respond(with_uploads(BookService(db).create, payload, files=[cover_image, pdf]), 201)


@books_router.get("")
def list_books(search: Optional[str] = None, db=Depends(get_db)):
    return respond(BookService(db).find_all(search))


@books_router.get("/category/{category_id}")
def list_books_by_category(category_id: str, search: Optional[str] = None, db=Depends(get_db)):
    return respond(BookService(db).find_by_category(category_id, search))


@books_router.get("/{book_id}")
def get_book(book_id: str, db=Depends(get_db)):
    return respond(BookService(db).find_one(book_id))


@books_router.put("/{book_id}")
def update_book(book_id: str, data: dict = Depends(form_or_json), db=Depends(get_db)):
    cover_image = pop_file(data, "coverImage")
    pdf = pop_file(data, "pdf")
    payload = parse_payload(BookUpdate, data)
    return respond(with_uploads(BookService(db).update, book_id, payload, files=[cover_image, pdf]))


@books_router.delete("/{book_id}")
def delete_book(book_id: str, db=Depends(get_db)):
    return respond(BookService(db).remove(book_id))
