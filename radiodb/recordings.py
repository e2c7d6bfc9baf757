"""Audio recording documents: only the conversion-related fields are touched here."""
import logging

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.collection import Collection
from pymongo.database import Database

logger = logging.getLogger(__name__)

COLLECTION = "audiorecordings"


def _id_filter(recording_id: str) -> dict:
    try:
        return {"_id": ObjectId(recording_id)}
    except (InvalidId, TypeError):
        return {"_id": recording_id}


class RecordingRepository:
    def __init__(self, db: Database):
        self.collection: Collection = db[COLLECTION]

    def get(self, recording_id: str) -> dict | None:
        doc = self.collection.find_one(_id_filter(recording_id))
        if doc is not None:
            doc["_id"] = str(doc["_id"])
        return doc

    def update(self, recording_id: str, fields: dict) -> bool:
        """Set fields on the recording. Returns False when the recording does not exist."""
        result = self.collection.update_one(_id_filter(recording_id), {"$set": fields})
        if result.matched_count == 0:
            logger.warning("Recording %s not found for update", recording_id)
            return False
        return True
