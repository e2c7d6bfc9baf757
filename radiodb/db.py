import os
from functools import lru_cache

from pymongo import MongoClient
from pymongo.database import Database

DEFAULT_DB = "online-radio"


def get_client(uri: str | None = None) -> MongoClient:
    uri = uri or os.environ.get("MONGO_URI", "mongodb://localhost:27017")
    return MongoClient(uri, serverSelectionTimeoutMS=8000)


@lru_cache(maxsize=None)
def get_database(uri: str, name: str = DEFAULT_DB) -> Database:
    """One client per (uri, db) pair for the lifetime of the process."""
    return get_client(uri)[name]
