import logging
from typing import List, Optional, Tuple

from pymongo import ReturnDocument

from database import oid, populate, stamped
from responses import fail, ok

logger = logging.getLogger(__name__)


class CrudService:
    """Single-collection lookups shared by the entity services.

    Subclasses set ``collection`` and ``label`` and may list references to
    populate as ``(path, collection, fields)`` tuples.
    """

    collection: str = ""
    label: str = ""
    populates: List[Tuple[str, str, str]] = []
    projection: Optional[dict] = None

    def __init__(self, db):
        self.db = db

    @property
    def coll(self):
        return self.db[self.collection]

    def populate(self, docs: List[dict]) -> List[dict]:
        for path, collection_name, fields in self.populates:
            populate(self.db, docs, path, collection_name, fields)
        return docs

    def populate_one(self, doc: Optional[dict]) -> Optional[dict]:
        if doc is None:
            return None
        return self.populate([doc])[0]

    def not_found(self, id: str) -> dict:
        return fail(f"{self.label} with ID {id} not found")

    def get(self, id: str) -> Optional[dict]:
        return self.coll.find_one({"_id": oid(id)}, self.projection)

    def find_one(self, id: str) -> dict:
        doc = self.get(id)
        if not doc:
            return self.not_found(id)
        return ok(f"{self.label} fetched successfully", self.populate_one(doc))

    def update_fields(self, id: str, fields: dict) -> dict:
        doc = self.coll.find_one_and_update(
            {"_id": oid(id)}, stamped({"$set": fields}), projection=self.projection, return_document=ReturnDocument.AFTER
        )
        if not doc:
            return self.not_found(id)
        return ok(f"{self.label} updated successfully", self.populate_one(doc))

    def remove(self, id: str) -> dict:
        doc = self.coll.find_one_and_delete({"_id": oid(id)}, projection=self.projection)
        if not doc:
            return self.not_found(id)
        logger.info("%s %s deleted", self.label, id)
        return ok(f"{self.label} deleted successfully", doc)
