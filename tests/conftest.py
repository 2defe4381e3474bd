import io
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-secret")

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from gridfs.errors import NoFile

import main
from database import USERS, get_db

PASSWORD = "secret123"


class StoredImage(io.BytesIO):
    def __init__(self, data: bytes, metadata: dict):
        super().__init__(data)
        self.metadata = metadata
        self.length = len(data)


class MemoryBucket:
    """Stands in for the GridFS bucket: same upload/download/delete calls."""

    def __init__(self):
        self.files = {}
        self.opened = []

    def upload_from_stream(self, filename, source, metadata=None):
        file_id = ObjectId()
        self.files[file_id] = (filename, bytes(source), metadata or {})
        return file_id

    def open_download_stream(self, file_id):
        if file_id not in self.files:
            raise NoFile(f"no file with id {file_id}")
        _, data, metadata = self.files[file_id]
        stream = StoredImage(data, metadata)
        self.opened.append(stream)
        return stream

    def delete(self, file_id):
        self.files.pop(file_id, None)


def now():
    return datetime.now(timezone.utc)


@pytest.fixture
def db():
    return mongomock.MongoClient(tz_aware=True)["tut_marketplace_test"]


@pytest.fixture
def bucket():
    return MemoryBucket()


@pytest.fixture
def client(db, bucket):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[main.get_image_bucket] = lambda: bucket
    for limiter in main.RATE_LIMITERS.values():
        limiter.reset()
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def factory(type="customer", subscribed=False, end_date=None, verified=False, campus="soshanguve", **fields):
        counter["n"] += 1
        doc = {
            "name": f"Student {counter['n']}",
            "email": f"student{counter['n']}@tut.ac.za",
            "password": main.hash_password(PASSWORD),
            "type": type,
            "campus": campus,
            "whatsapp": "0712345678",
            "subscribed": subscribed,
            "subscriptionStatus": "active" if subscribed else None,
            "subscriptionStartDate": None,
            "subscriptionEndDate": end_date,
            "verified": verified,
            "verifiedAt": None,
            "isActive": True,
            "createdAt": now(),
            "updatedAt": now(),
        }
        doc.update(fields)
        doc["_id"] = db[USERS].insert_one(doc).inserted_id
        return doc

    return factory


@pytest.fixture
def seller(make_user):
    return make_user(type="seller", subscribed=True, end_date=now() + timedelta(days=10))


@pytest.fixture
def admin(make_user):
    return make_user(type="admin", name="Admin")


def auth(user):
    return {"Authorization": f"Bearer {main.create_access_token(user)}"}
