"""Single-document live broadcast state collection."""
import logging

from pymongo.collection import Collection
from pymongo.database import Database

logger = logging.getLogger(__name__)

COLLECTION = "livestates"
DOC_ID = "current"


class LiveStateRepository:
    """Reads and writes the one live-state document. Blocking; call via a thread."""

    def __init__(self, db: Database):
        self.collection: Collection = db[COLLECTION]

    def load(self) -> dict | None:
        doc = self.collection.find_one({"_id": DOC_ID})
        if doc is None:
            # Documents written by other tools may carry a generated _id.
            doc = self.collection.find_one({})
        if doc is not None:
            doc.pop("_id", None)
        return doc

    def save(self, doc: dict) -> None:
        body = {k: v for k, v in doc.items() if k != "_id"}
        self.collection.replace_one({"_id": DOC_ID}, body, upsert=True)
        logger.debug("Saved live state: isLive=%s isMuted=%s", body.get("isLive"), body.get("isMuted"))
