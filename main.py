import html
import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from gridfs import GridFSBucket
from gridfs.errors import NoFile
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import policy
from database import (
    ANALYTICS_EVENTS,
    MESSAGES,
    PRODUCTS,
    REACTIVATION_REQUESTS,
    USERS,
    VERIFICATION_BUCKET,
    VERIFICATION_REQUESTS,
    close,
    connect,
    create_document,
    ensure_indexes,
    get_db,
)
from rate_limit import InMemoryRateLimiter, RateLimiter
from schemas import Message as MessageSchema
from schemas import Product as ProductSchema
from schemas import ReactivationRequest as ReactivationSchema
from schemas import SubscriptionType
from schemas import User as UserSchema
from schemas import VerificationRequest as VerificationSchema

load_dotenv()

# Environment / Security
JWT_SECRET = os.getenv("JWT_SECRET", "tut_marketplace_secret")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
JWT_EXPIRES_IN = os.getenv("JWT_EXPIRES_IN", "7d")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
ALLOWED_EMAIL_DOMAIN = os.getenv("ALLOWED_EMAIL_DOMAIN", "@tut.ac.za")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
MAX_IMAGE_BYTES = 5 * 1024 * 1024

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)
security = HTTPBearer(auto_error=False)

RATE_LIMITERS: Dict[str, RateLimiter] = {
    "login": InMemoryRateLimiter(5, 15 * 60),
    "register": InMemoryRateLimiter(3, 60 * 60),
    "message": InMemoryRateLimiter(10, 60),
}

CAMPUSES = [
    {"id": "pretoria-main", "name": "Pretoria Main Campus"},
    {"id": "soshanguve", "name": "Soshanguve Campus"},
    {"id": "ga-rankuwa", "name": "Ga-Rankuwa Campus"},
    {"id": "pretoria-west", "name": "Pretoria West Campus"},
    {"id": "arts", "name": "Arts Campus"},
    {"id": "emalahleni", "name": "eMalahleni Campus"},
    {"id": "mbombela", "name": "Mbombela Campus"},
    {"id": "polokwane", "name": "Polokwane Campus"},
]
CATEGORIES = [
    {"id": "books", "name": "Books"},
    {"id": "electronics", "name": "Electronics"},
    {"id": "services", "name": "Services"},
    {"id": "clothing", "name": "Clothing"},
    {"id": "food", "name": "Food"},
    {"id": "transport", "name": "Transport"},
    {"id": "accommodation", "name": "Accommodation"},
    {"id": "other", "name": "Other"},
]
CAMPUS_IDS = {c["id"] for c in CAMPUSES}
CATEGORY_IDS = {c["id"] for c in CATEGORIES}

REQUEST_COLLECTIONS = {
    policy.REACTIVATION: REACTIVATION_REQUESTS,
    policy.VERIFICATION: VERIFICATION_REQUESTS,
}
SUBSCRIPTION_FIELDS = ("subscriptionType", "subscriptionStatus", "subscriptionStartDate", "subscriptionEndDate")


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes(connect())
    yield
    close()


app = FastAPI(title="Campus Marketplace API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------- Errors ----------------------
DEFAULT_CODES = {
    400: "VALIDATION_ERROR",
    401: "TOKEN_REQUIRED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMIT_EXCEEDED",
}


class ApiError(HTTPException):
    def __init__(self, status_code: int, detail: str, code: Optional[str] = None, **extra: Any):
        super().__init__(status_code=status_code, detail=detail)
        self.code = code or DEFAULT_CODES.get(status_code, "SERVER_ERROR")
        self.extra = extra


def error_response(status_code: int, message: str, code: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"success": False, "error": message, "code": code, **extra}, status_code=status_code)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = getattr(exc, "code", None) or DEFAULT_CODES.get(exc.status_code, "SERVER_ERROR")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == 404 and not isinstance(exc, ApiError):
        message = "Route not found"
    response = error_response(exc.status_code, message, code, **getattr(exc, "extra", {}))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = first.get("msg", "Invalid request")
    return error_response(400, f"{field}: {message}" if field else message, "VALIDATION_ERROR")


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return error_response(500, "Database error, please try again", "SERVER_ERROR")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Something went wrong", "SERVER_ERROR")

# ---------------------- Models ----------------------
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    userType: Literal["customer", "buyer", "seller"] = "customer"
    campus: str
    whatsapp: Optional[str] = Field(None, max_length=20)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    email: Optional[EmailStr] = None
    campus: Optional[str] = None
    whatsapp: Optional[str] = Field(None, max_length=20)


class AdminUserUpdate(BaseModel):
    type: Optional[Literal["customer", "seller", "admin"]] = None
    subscribed: Optional[bool] = None
    subscriptionType: Optional[SubscriptionType] = None
    subscriptionStatus: Optional[Literal["active", "expired"]] = None
    subscriptionEndDate: Optional[datetime] = None
    verified: Optional[bool] = None
    isActive: Optional[bool] = None


class UpgradeRequest(BaseModel):
    subscriptionType: SubscriptionType = "monthly"


class ReactivationCreate(BaseModel):
    note: str = Field("", max_length=1000)


class ProcessRequestBody(BaseModel):
    action: str
    adminNote: str = Field("", max_length=1000)
    subscriptionType: SubscriptionType = "monthly"


class ProductCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=140)
    description: str = Field(..., min_length=1, max_length=5000)
    price: float = Field(..., gt=0)
    category: str
    type: Literal["product", "service"] = "product"


class ProductUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=140)
    description: Optional[str] = Field(None, min_length=1, max_length=5000)
    price: Optional[float] = Field(None, gt=0)
    category: Optional[str] = None
    type: Optional[Literal["product", "service"]] = None
    status: Optional[Literal["active", "inactive", "sold"]] = None


class MessageCreate(BaseModel):
    receiverId: str
    text: str = Field(..., min_length=1, max_length=5000)
    conversationId: Optional[str] = None

# ---------------------- Utils ----------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def parse_duration(value: str) -> timedelta:
    """'7d', '12h', '30m', '45s' or a plain number of seconds."""
    match = re.fullmatch(r"\s*(\d+)\s*([dhms]?)\s*", value or "")
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = int(match.group(1)), match.group(2) or "s"
    units = {"d": "days", "h": "hours", "m": "minutes", "s": "seconds"}
    return timedelta(**{units[unit]: amount})


def create_access_token(user: dict, expires_delta: Optional[timedelta] = None) -> str:
    user_id = str(user["_id"])
    expire = utcnow() + (expires_delta or parse_duration(JWT_EXPIRES_IN))
    to_encode = {
        "sub": user_id,
        "id": user_id,
        "email": user.get("email"),
        "type": user.get("type"),
        "campus": user.get("campus"),
        "exp": expire,
    }
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def parse_object_id(value: str, label: str = "ID") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise ApiError(400, f"Invalid {label}", "VALIDATION_ERROR")
    return ObjectId(value)


def serialize(value: Any) -> Any:
    """Make Mongo documents JSON friendly: ObjectIds become strings."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value


def public_user(user_doc: Optional[dict], include_subscription: bool = True) -> Optional[dict]:
    if not user_doc:
        return None
    doc = {k: v for k, v in user_doc.items() if k != "password"}
    if not include_subscription:
        for field in SUBSCRIPTION_FIELDS:
            doc.pop(field, None)
    doc = serialize(doc)
    if "_id" in doc:
        doc["id"] = doc["_id"]
    return doc


def pagination(page: int, limit: int, total: int) -> dict:
    return {
        "currentPage": page,
        "totalPages": (total + limit - 1) // limit,
        "totalProducts": total,
        "hasNext": page * limit < total,
        "hasPrev": page > 1,
    }


def find_user(db: Database, user_id: ObjectId, active_only: bool = False) -> dict:
    query: Dict[str, Any] = {"_id": user_id}
    if active_only:
        query["isActive"] = {"$ne": False}
    user = db[USERS].find_one(query)
    if not user:
        raise ApiError(404, "User not found", "NOT_FOUND")
    return user


def require_self_or_admin(subject_id: ObjectId, user: dict, message: str):
    if not policy.can_act_for(subject_id, user):
        logger.warning("User %s denied access to %s", user.get("_id"), subject_id)
        raise ApiError(403, message, "FORBIDDEN")

# ---------------------- Dependencies ----------------------

def get_token_payload(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "Access token required", "TOKEN_REQUIRED")
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise ApiError(status.HTTP_403_FORBIDDEN, "Invalid or expired token", "TOKEN_INVALID")
    if not ObjectId.is_valid(payload.get("id") or ""):
        raise ApiError(status.HTTP_403_FORBIDDEN, "Invalid or expired token", "TOKEN_INVALID")
    return payload


def get_current_user(payload: dict = Depends(get_token_payload), db: Database = Depends(get_db)) -> dict:
    user = find_user(db, ObjectId(payload["id"]))
    if not user.get("isActive", True):
        raise ApiError(status.HTTP_403_FORBIDDEN, "Account has been deactivated. Please contact support.", "ACCOUNT_DEACTIVATED")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not policy.is_admin(user):
        logger.warning("Non-admin %s attempted an admin action", user.get("_id"))
        raise ApiError(status.HTTP_403_FORBIDDEN, "Admin privileges required", "ADMIN_REQUIRED")
    return user


def require_active_subscription(user: dict = Depends(get_current_user), db: Database = Depends(get_db)) -> dict:
    check = policy.check_subscription(user, utcnow())
    if check.outcome is policy.SubscriptionOutcome.EXPIRED:
        db[USERS].update_one({"_id": user["_id"]}, {"$set": check.demotion})
        logger.info("Seller %s subscription expired, demoted to customer", user["_id"])
        raise ApiError(403, "Subscription has expired. Please renew to continue selling.", check.outcome.value)
    if not check.allowed:
        raise ApiError(403, "Active seller subscription required", check.outcome.value)
    return user


def get_image_bucket(db: Database = Depends(get_db)) -> GridFSBucket:
    return GridFSBucket(db, bucket_name=VERIFICATION_BUCKET)


def optional_user_id(credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials is None:
        return None
    try:
        return jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALG]).get("id")
    except JWTError:
        return None


def rate_limited(name: str, message: str):
    def dep(request: Request, credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
        limiter = RATE_LIMITERS[name]
        client_ip = request.client.host if request.client else "unknown"
        key = f"{client_ip}:{optional_user_id(credentials) or ''}"
        if not limiter.try_acquire(key):
            logger.warning("Rate limit %s exceeded for %s", name, key)
            raise ApiError(429, message, "RATE_LIMIT_EXCEEDED", retryAfter=limiter.window_seconds)
    return dep

# ---------------------- Request workflows ----------------------

def list_requests(db: Database, kind: str, status_filter: str) -> dict:
    if status_filter != "all" and status_filter not in policy.REQUEST_STATUSES:
        raise ApiError(400, "Invalid status filter", "VALIDATION_ERROR")
    collection = db[REQUEST_COLLECTIONS[kind]]
    query = {} if status_filter == "all" else {"status": status_filter}
    requests = list(collection.find(query).sort("requestedAt", DESCENDING))

    user_ids = list({r["userId"] for r in requests})
    users = {u["_id"]: u for u in db[USERS].find({"_id": {"$in": user_ids}}, {"password": 0})}
    admin_ids = list({r["adminId"] for r in requests if isinstance(r.get("adminId"), ObjectId)})
    admins = {}
    if admin_ids:
        admins = {a["_id"]: a for a in db[USERS].find({"_id": {"$in": admin_ids}}, {"name": 1, "email": 1})}

    counts = {s: 0 for s in policy.REQUEST_STATUSES}
    for row in collection.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
        counts[row["_id"]] = row["count"]

    payload = []
    for r in requests:
        entry = serialize(r)
        entry["user"] = public_user(users.get(r["userId"]))
        entry["admin"] = serialize(admins.get(r.get("adminId")))
        if kind == policy.VERIFICATION:
            entry["imageUrl"] = f"/api/verification/image/{r['imageId']}"
        payload.append(entry)
    return {"success": True, "requests": payload, "counts": counts}


def process_request(db: Database, kind: str, request_id: ObjectId, params: dict, admin: dict) -> dict:
    """Approve or reject a pending request.

    The request document is claimed with a compare-and-swap on status, so
    only one admin decision can ever be applied. If the user update then
    fails, the claim is released by putting the request back to pending.
    """
    collection = db[REQUEST_COLLECTIONS[kind]]
    request_doc = collection.find_one({"_id": request_id})
    if not request_doc:
        raise ApiError(404, f"{kind.capitalize()} request not found", "NOT_FOUND")
    if not policy.can_process_request(request_doc):
        raise ApiError(409, "Request has already been processed", "CONFLICT")

    try:
        decision = policy.apply_approval(kind, request_doc, params, admin["_id"], utcnow())
    except ValueError as e:
        raise ApiError(400, str(e), "VALIDATION_ERROR")

    updated = collection.find_one_and_update(
        {"_id": request_id, "status": policy.PENDING},
        {"$set": decision.request_update},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ApiError(409, "Request has already been processed", "CONFLICT")

    if decision.user_update:
        release = {
            "$set": {"status": policy.PENDING, "processedAt": None, "adminId": None, "adminNote": None},
            "$unset": {"subscriptionType": ""},
        }
        try:
            result = db[USERS].update_one({"_id": request_doc["userId"]}, {"$set": decision.user_update})
        except PyMongoError:
            collection.update_one({"_id": request_id, "status": decision.status}, release)
            logger.exception("User update failed for %s request %s, request released", kind, request_id)
            raise
        if result.matched_count == 0:
            collection.update_one({"_id": request_id, "status": decision.status}, release)
            raise ApiError(404, "User not found", "NOT_FOUND")

    logger.info("%s request %s %s by admin %s", kind.capitalize(), request_id, decision.status, admin["_id"])
    return updated


def insert_pending_request(db: Database, kind: str, document: dict) -> str:
    try:
        return create_document(db, REQUEST_COLLECTIONS[kind], document)
    except DuplicateKeyError:
        raise ApiError(409, f"A {kind} request is already pending", "CONFLICT")

# ---------------------- Routes ----------------------
@app.get("/")
def read_root():
    return {"message": "Campus Marketplace API running"}


@app.get("/api/health")
def health():
    return {"success": True, "status": "OK", "timestamp": utcnow().isoformat()}


@app.get("/api/test-db")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("MONGODB_URI") else "❌ Not Set",
        "database_name": db.name,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["connection_status"] = "Connected"
        response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = "⚠️ Connected but Error"
    return response


@app.get("/api/campuses")
def get_campuses():
    return {"success": True, "campuses": CAMPUSES}


@app.get("/api/categories")
def get_categories():
    return {"success": True, "categories": CATEGORIES}

# Auth
@app.post("/api/auth/register", status_code=201,
          dependencies=[Depends(rate_limited("register", "Too many registration attempts, please try again in 1 hour"))])
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    email = str(payload.email).strip().lower()
    if not email.endswith(ALLOWED_EMAIL_DOMAIN):
        raise ApiError(400, f"Please use a valid TUT email address ({ALLOWED_EMAIL_DOMAIN})", "VALIDATION_ERROR")
    if payload.campus not in CAMPUS_IDS:
        raise ApiError(400, "Please select a valid campus", "VALIDATION_ERROR")
    if db[USERS].find_one({"email": email}):
        raise ApiError(409, "A user with this email address already exists", "CONFLICT")

    user = UserSchema(
        name=payload.name.strip(),
        email=email,
        password=hash_password(payload.password),
        type="seller" if payload.userType == "seller" else "customer",
        campus=payload.campus,
        whatsapp=payload.whatsapp,
    )
    try:
        user_id = create_document(db, USERS, user)
    except DuplicateKeyError:
        raise ApiError(409, "A user with this email address already exists", "CONFLICT")

    user_doc = db[USERS].find_one({"_id": ObjectId(user_id)})
    logger.info("New user registered: %s (%s) campus=%s", email, user.type, user.campus)
    return {
        "success": True,
        "message": "Account created successfully",
        "user": public_user(user_doc),
        "token": create_access_token(user_doc),
        "expiresIn": JWT_EXPIRES_IN,
    }


@app.post("/api/auth/login",
          dependencies=[Depends(rate_limited("login", "Too many login attempts, please try again in 15 minutes"))])
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    email = str(payload.email).strip().lower()
    user = db[USERS].find_one({"email": email})
    if not user or not verify_password(payload.password, user.get("password", "")):
        raise ApiError(400, "Invalid email or password", "INVALID_CREDENTIALS")
    if not user.get("isActive", True):
        raise ApiError(403, "Account has been deactivated. Please contact support.", "ACCOUNT_DEACTIVATED")

    now = utcnow()
    updates = {"lastLoginAt": now, "updatedAt": now}
    if policy.needs_demotion(user, now):
        updates.update(policy.demotion_update(now))
        logger.info("Seller %s subscription expired at login, demoted to customer", user["_id"])
    db[USERS].update_one({"_id": user["_id"]}, {"$set": updates})
    user.update(updates)

    logger.info("User logged in: %s", email)
    return {
        "success": True,
        "message": "Login successful",
        "user": public_user(user),
        "token": create_access_token(user),
        "expiresIn": JWT_EXPIRES_IN,
    }


@app.post("/api/auth/refresh")
def refresh_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security), db: Database = Depends(get_db)):
    if credentials is None:
        raise ApiError(401, "Refresh token required", "TOKEN_REQUIRED")
    try:
        # Expired tokens may still be refreshed
        decoded = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALG], options={"verify_exp": False})
    except JWTError:
        raise ApiError(403, "Invalid token", "TOKEN_INVALID")
    user = db[USERS].find_one({"_id": parse_object_id(decoded.get("id") or "", "token")})
    if not user or not user.get("isActive", True):
        raise ApiError(404, "User not found or account deactivated", "NOT_FOUND")
    return {
        "success": True,
        "message": "Token refreshed successfully",
        "user": public_user(user),
        "token": create_access_token(user),
        "expiresIn": JWT_EXPIRES_IN,
    }


@app.get("/api/auth/verify-token")
def verify_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security), db: Database = Depends(get_db)):
    user_id = optional_user_id(credentials)
    user = db[USERS].find_one({"_id": ObjectId(user_id)}) if user_id and ObjectId.is_valid(user_id) else None
    if not user or not user.get("isActive", True):
        return JSONResponse({"valid": False, "error": "Invalid token"}, status_code=401)
    return {
        "valid": True,
        "user": {
            "id": str(user["_id"]),
            "email": user.get("email"),
            "name": user.get("name"),
            "type": user.get("type"),
            "campus": user.get("campus"),
            "subscribed": user.get("subscribed", False),
        },
    }


@app.post("/api/auth/logout")
def logout():
    # Tokens are stateless; the client discards its copy
    return {"success": True, "message": "Logged out successfully"}

# Users
@app.get("/api/users/me")
def me(user: dict = Depends(get_current_user)):
    return {"success": True, "user": public_user(user)}


@app.get("/api/user/subscription-status")
def my_subscription_status(user: dict = Depends(get_current_user)):
    active = policy.has_active_subscription(user, utcnow())
    return {
        "success": True,
        "hasActiveSubscription": active,
        "subscriptionStatus": user.get("subscriptionStatus"),
        "subscriptionEndDate": user.get("subscriptionEndDate"),
        "canSell": active and user.get("type") == "seller",
    }


@app.get("/api/users")
def list_users(
    search: Optional[str] = None,
    campus: Optional[str] = None,
    type: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _: dict = Depends(require_admin),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"email": pattern}]
    if campus and campus != "all":
        query["campus"] = campus
    if type and type != "all":
        query["type"] = type
    total = db[USERS].count_documents(query)
    docs = db[USERS].find(query, {"password": 0}).sort("createdAt", DESCENDING).skip((page - 1) * limit).limit(limit)
    return {
        "success": True,
        "users": [public_user(u) for u in docs],
        "pagination": {
            "currentPage": page,
            "totalPages": (total + limit - 1) // limit,
            "totalUsers": total,
            "hasNext": page * limit < total,
            "hasPrev": page > 1,
        },
    }


@app.get("/api/users/{user_id}")
def get_user(user_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    oid = parse_object_id(user_id, "user ID")
    target = find_user(db, oid, active_only=True)
    doc = public_user(target, include_subscription=policy.can_act_for(oid, user))
    if target.get("type") == "seller":
        doc["activeProducts"] = db[PRODUCTS].count_documents({"sellerId": oid, "status": "active"})
    return {"success": True, "user": doc}


@app.put("/api/users/{user_id}")
def update_user(user_id: str, payload: ProfileUpdate, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    oid = parse_object_id(user_id, "user ID")
    require_self_or_admin(oid, user, "You can only modify your own profile")

    update: Dict[str, Any] = {"updatedAt": utcnow()}
    if payload.name:
        update["name"] = payload.name.strip()
    if payload.campus:
        if payload.campus not in CAMPUS_IDS:
            raise ApiError(400, "Please select a valid campus", "VALIDATION_ERROR")
        update["campus"] = payload.campus
    if payload.whatsapp is not None:
        update["whatsapp"] = payload.whatsapp.strip()
    if payload.email:
        email = str(payload.email).strip().lower()
        if db[USERS].find_one({"email": email, "_id": {"$ne": oid}}):
            raise ApiError(409, "Email already exists. Please use a different email.", "CONFLICT")
        update["email"] = email

    try:
        result = db[USERS].update_one({"_id": oid}, {"$set": update})
    except DuplicateKeyError:
        raise ApiError(409, "Email already exists. Please use a different email.", "CONFLICT")
    if result.matched_count == 0:
        raise ApiError(404, "User not found", "NOT_FOUND")
    return {"success": True, "message": "Profile updated successfully", "user": public_user(db[USERS].find_one({"_id": oid}))}


@app.delete("/api/users/{user_id}")
def deactivate_user(user_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    oid = parse_object_id(user_id, "user ID")
    require_self_or_admin(oid, user, "You can only deactivate your own account")
    now = utcnow()
    result = db[USERS].update_one({"_id": oid}, {"$set": {"isActive": False, "deactivatedAt": now, "updatedAt": now}})
    if result.matched_count == 0:
        raise ApiError(404, "User not found", "NOT_FOUND")
    db[PRODUCTS].update_many({"sellerId": oid}, {"$set": {"status": "inactive", "updatedAt": now}})
    logger.info("User %s deactivated by %s", oid, user["_id"])
    return {"success": True, "message": "Account deactivated successfully"}


@app.get("/api/users/{user_id}/products")
def get_user_products(
    user_id: str,
    status_filter: str = Query("active", alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    oid = parse_object_id(user_id, "user ID")
    query: Dict[str, Any] = {"sellerId": oid}
    if not policy.can_act_for(oid, user):
        query["status"] = "active"
    elif status_filter != "all":
        query["status"] = status_filter
    total = db[PRODUCTS].count_documents(query)
    docs = db[PRODUCTS].find(query).sort("createdAt", DESCENDING).skip((page - 1) * limit).limit(limit)
    return {"success": True, "products": serialize(list(docs)), "pagination": pagination(page, limit, total)}


@app.post("/api/users/{user_id}/upgrade")
def upgrade_user(user_id: str, payload: UpgradeRequest, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    oid = parse_object_id(user_id, "user ID")
    require_self_or_admin(oid, user, "You can only upgrade your own account")
    target = find_user(db, oid, active_only=True)
    now = utcnow()
    if target.get("type") == "seller" and policy.has_active_subscription(target, now):
        raise ApiError(409, "User already has an active seller subscription", "ALREADY_ACTIVE")

    db[USERS].update_one({"_id": oid}, {"$set": policy.seller_activation(payload.subscriptionType, now)})
    logger.info("User %s upgraded to seller (%s)", oid, payload.subscriptionType)
    return {
        "success": True,
        "message": "Account upgraded to seller successfully",
        "user": public_user(db[USERS].find_one({"_id": oid})),
    }


@app.get("/api/users/{user_id}/subscription-status")
def subscription_status(user_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    oid = parse_object_id(user_id, "user ID")
    require_self_or_admin(oid, user, "You can only check your own subscription status")
    target = find_user(db, oid, active_only=True)
    active = target.get("type") == "seller" and policy.has_active_subscription(target, utcnow())
    return {
        "success": True,
        "hasActiveSubscription": active,
        "subscriptionStatus": target.get("subscriptionStatus"),
        "subscriptionStartDate": target.get("subscriptionStartDate"),
        "subscriptionEndDate": target.get("subscriptionEndDate"),
        "canSell": active,
        "userType": target.get("type"),
    }


@app.post("/api/users/{user_id}/reactivate-request", status_code=201)
def create_reactivation_request(user_id: str, payload: ReactivationCreate, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    oid = parse_object_id(user_id, "user ID")
    require_self_or_admin(oid, user, "You can only request reactivation for your own account")
    target = find_user(db, oid, active_only=True)
    if policy.has_active_subscription(target, utcnow()):
        raise ApiError(409, "Subscription is already active", "ALREADY_ACTIVE")
    if db[REACTIVATION_REQUESTS].find_one({"userId": oid, "status": policy.PENDING}):
        raise ApiError(409, "A reactivation request is already pending", "CONFLICT")

    request = ReactivationSchema(userId=oid, note=payload.note.strip(), requestedAt=utcnow())
    request_id = insert_pending_request(db, policy.REACTIVATION, request.model_dump())
    logger.info("Reactivation request %s created for user %s", request_id, oid)
    created = db[REACTIVATION_REQUESTS].find_one({"_id": ObjectId(request_id)})
    return {"success": True, "message": "Reactivation request submitted", "request": serialize(created)}

# Admin
@app.put("/api/admin/users/{user_id}")
def admin_update_user(user_id: str, payload: AdminUserUpdate, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    oid = parse_object_id(user_id, "user ID")
    update = payload.model_dump(exclude_none=True)
    if not update:
        raise ApiError(400, "No fields to update", "VALIDATION_ERROR")
    update["updatedAt"] = utcnow()
    if update.get("verified") is True:
        update["verifiedAt"] = update["updatedAt"]
    result = db[USERS].update_one({"_id": oid}, {"$set": update})
    if result.matched_count == 0:
        raise ApiError(404, "User not found", "NOT_FOUND")
    logger.info("Admin %s edited user %s: %s", admin["_id"], oid, sorted(update))
    return {"success": True, "message": "User updated successfully", "user": public_user(db[USERS].find_one({"_id": oid}))}


@app.get("/api/admin/reactivation-requests")
def get_reactivation_requests(status_filter: str = Query("all", alias="status"), _: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return list_requests(db, policy.REACTIVATION, status_filter)


@app.post("/api/admin/reactivation-requests/{request_id}/process")
def process_reactivation_request(request_id: str, payload: ProcessRequestBody, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    oid = parse_object_id(request_id, "request ID")
    try:
        policy.resolve_action(payload.action)
    except ValueError as e:
        raise ApiError(400, str(e), "VALIDATION_ERROR")
    updated = process_request(db, policy.REACTIVATION, oid, payload.model_dump(), admin)
    return {"success": True, "message": f"Reactivation request {updated['status']} successfully", "request": serialize(updated)}


@app.get("/api/admin/verification-requests")
def get_verification_requests(status_filter: str = Query("pending", alias="status"), _: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return list_requests(db, policy.VERIFICATION, status_filter)


@app.post("/api/admin/verification-requests/{request_id}/process")
def process_verification_request(request_id: str, payload: ProcessRequestBody, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    oid = parse_object_id(request_id, "request ID")
    try:
        policy.resolve_action(payload.action)
    except ValueError as e:
        raise ApiError(400, str(e), "VALIDATION_ERROR")
    params = {"action": payload.action, "adminNote": payload.adminNote}
    updated = process_request(db, policy.VERIFICATION, oid, params, admin)
    return {"success": True, "message": f"Verification request {updated['status']} successfully", "request": serialize(updated)}

# Verification
@app.post("/api/verification/{user_id}", status_code=201)
def submit_verification_request(
    user_id: str,
    image: UploadFile = File(...),
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
    bucket: GridFSBucket = Depends(get_image_bucket),
):
    oid = parse_object_id(user_id, "user ID")
    require_self_or_admin(oid, user, "You can only request verification for your own account")
    target = find_user(db, oid, active_only=True)
    if target.get("type") not in ("seller", "admin"):
        raise ApiError(403, "Only sellers can request verification", "FORBIDDEN")
    if target.get("verified"):
        raise ApiError(409, "User is already verified", "CONFLICT")
    if db[VERIFICATION_REQUESTS].find_one({"userId": oid, "status": policy.PENDING}):
        raise ApiError(409, "A verification request is already pending", "CONFLICT")

    content_type = image.content_type or ""
    if not content_type.startswith("image/"):
        raise ApiError(400, "Only image files are allowed", "VALIDATION_ERROR")
    data = image.file.read(MAX_IMAGE_BYTES + 1)
    if not data:
        raise ApiError(400, "ID photo is required", "VALIDATION_ERROR")
    if len(data) > MAX_IMAGE_BYTES:
        raise ApiError(400, "Image must be 5MB or smaller", "VALIDATION_ERROR")

    image_id = bucket.upload_from_stream(
        image.filename or "verification",
        data,
        metadata={"userId": oid, "type": "verification", "contentType": content_type},
    )
    request = VerificationSchema(userId=oid, imageId=image_id, requestedAt=utcnow())
    try:
        request_id = insert_pending_request(db, policy.VERIFICATION, request.model_dump())
    except ApiError:
        bucket.delete(image_id)
        raise
    logger.info("Verification request %s created for user %s with image %s", request_id, oid, image_id)
    return {
        "success": True,
        "message": "Verification request submitted successfully",
        "requestId": request_id,
        "imageId": str(image_id),
    }


@app.get("/api/verification/image/{image_id}")
def get_verification_image(image_id: str, bucket: GridFSBucket = Depends(get_image_bucket)):
    oid = parse_object_id(image_id, "image ID format")
    try:
        grid_out = bucket.open_download_stream(oid)
    except NoFile:
        raise ApiError(404, "Image not found", "NOT_FOUND")
    metadata = grid_out.metadata or {}

    def chunks():
        try:
            yield from iter(lambda: grid_out.read(256 * 1024), b"")
        finally:
            grid_out.close()

    return StreamingResponse(
        chunks(),
        media_type=metadata.get("contentType") or "image/jpeg",
        headers={"Content-Length": str(grid_out.length), "Cache-Control": "public, max-age=31536000"},
    )


@app.get("/api/verification/{user_id}/status")
def get_verification_status(user_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    oid = parse_object_id(user_id, "user ID")
    require_self_or_admin(oid, user, "You can only view your own verification status")
    target = find_user(db, oid)
    pending = db[VERIFICATION_REQUESTS].find_one({"userId": oid, "status": policy.PENDING})
    return {
        "success": True,
        "verified": target.get("verified", False),
        "verifiedAt": target.get("verifiedAt"),
        "hasPendingRequest": pending is not None,
    }

# Products
def visible_products_pipeline(match: dict, now: datetime) -> List[dict]:
    """Products whose seller currently holds a live subscription."""
    return [
        {"$match": match},
        {"$lookup": {"from": USERS, "localField": "sellerId", "foreignField": "_id", "as": "seller"}},
        {"$unwind": "$seller"},
        {"$match": {
            "seller.subscribed": True,
            "seller.isActive": {"$ne": False},
            "$or": [
                {"seller.subscriptionEndDate": None},
                {"seller.subscriptionEndDate": {"$gte": now}},
            ],
        }},
    ]


def flatten_seller(product: dict) -> dict:
    seller = product.pop("seller", None) or {}
    product["sellerVerified"] = seller.get("verified", False)
    product["sellerWhatsApp"] = seller.get("whatsapp")
    product.setdefault("whatsappRedirects", 0)
    return serialize(product)


def find_visible_product(db: Database, product_id: ObjectId) -> Optional[dict]:
    pipeline = visible_products_pipeline({"_id": product_id, "status": "active"}, utcnow())
    results = list(db[PRODUCTS].aggregate(pipeline))
    return flatten_seller(results[0]) if results else None


def get_owned_product(db: Database, product_id: str, user: dict, verb: str) -> dict:
    oid = parse_object_id(product_id, "product ID")
    product = db[PRODUCTS].find_one({"_id": oid})
    if not product:
        raise ApiError(404, "Product not found", "NOT_FOUND")
    if not (policy.is_owner(product, user["_id"]) or policy.is_admin(user)):
        logger.warning("User %s tried to %s product %s", user["_id"], verb, oid)
        raise ApiError(403, f"You can only {verb} your own products", "FORBIDDEN")
    return product


@app.get("/api/products")
def get_products(
    category: Optional[str] = None,
    campus: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    db: Database = Depends(get_db),
):
    match: Dict[str, Any] = {"status": "active"}
    if category and category != "all":
        match["category"] = category
    if campus and campus != "all":
        match["sellerCampus"] = campus
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        match["$or"] = [{"title": pattern}, {"description": pattern}]

    base = visible_products_pipeline(match, utcnow())
    counted = list(db[PRODUCTS].aggregate(base + [{"$count": "count"}]))
    total = counted[0]["count"] if counted else 0
    docs = db[PRODUCTS].aggregate(base + [
        {"$sort": {"createdAt": -1}},
        {"$skip": (page - 1) * limit},
        {"$limit": limit},
    ])
    products = [flatten_seller(d) for d in docs]
    logger.debug("Returning %d of %d visible products", len(products), total)
    return {"success": True, "products": products, "pagination": pagination(page, limit, total)}


@app.get("/api/products/seller/{seller_id}")
def get_products_by_seller(seller_id: str, db: Database = Depends(get_db)):
    oid = parse_object_id(seller_id, "seller ID")
    seller = db[USERS].find_one({"_id": oid})
    if not seller:
        raise ApiError(404, "Seller not found", "NOT_FOUND")
    if not policy.has_active_subscription(seller, utcnow()):
        raise ApiError(404, "Seller account not active", "NOT_FOUND")
    docs = db[PRODUCTS].find({"sellerId": oid, "status": "active"}).sort("createdAt", DESCENDING)
    return {"success": True, "products": serialize(list(docs))}


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    oid = parse_object_id(product_id, "product ID")
    product = find_visible_product(db, oid)
    if not product:
        raise ApiError(404, "Product not found", "NOT_FOUND")
    db[PRODUCTS].update_one({"_id": oid}, {"$inc": {"views": 1}})
    return {"success": True, "product": product}


@app.post("/api/products", status_code=201)
def create_product(payload: ProductCreate, seller: dict = Depends(require_active_subscription), db: Database = Depends(get_db)):
    if payload.category not in CATEGORY_IDS:
        raise ApiError(400, "Invalid category", "VALIDATION_ERROR")
    product = ProductSchema(
        title=payload.title.strip(),
        description=payload.description.strip(),
        price=payload.price,
        category=payload.category,
        type=payload.type,
        sellerId=seller["_id"],
        sellerName=seller.get("name", ""),
        sellerCampus=seller.get("campus", ""),
    )
    product_id = create_document(db, PRODUCTS, product)
    created = db[PRODUCTS].find_one({"_id": ObjectId(product_id)})
    logger.info("Product %s created by seller %s", product_id, seller["_id"])
    return {"success": True, "message": "Product created successfully", "productId": product_id, "product": serialize(created)}


@app.put("/api/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    product = get_owned_product(db, product_id, user, "update")
    update = payload.model_dump(exclude_none=True)
    if "category" in update and update["category"] not in CATEGORY_IDS:
        raise ApiError(400, "Invalid category", "VALIDATION_ERROR")
    for field in ("title", "description"):
        if field in update:
            update[field] = update[field].strip()
    update["updatedAt"] = utcnow()
    updated = db[PRODUCTS].find_one_and_update(
        {"_id": product["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    return {"success": True, "message": "Product updated successfully", "product": serialize(updated)}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    product = get_owned_product(db, product_id, user, "delete")
    db[PRODUCTS].delete_one({"_id": product["_id"]})
    logger.info("Product %s deleted by %s", product["_id"], user["_id"])
    return {"success": True, "message": "Product deleted successfully"}


@app.post("/api/products/{product_id}/whatsapp")
def track_whatsapp_click(
    product_id: str,
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Database = Depends(get_db),
):
    oid = parse_object_id(product_id, "product ID")
    now = utcnow()
    result = db[PRODUCTS].update_one({"_id": oid}, {"$inc": {"whatsappRedirects": 1}, "$set": {"lastRedirectAt": now}})
    if result.matched_count == 0:
        raise ApiError(404, "Product not found", "NOT_FOUND")
    user_id = optional_user_id(credentials)
    db[ANALYTICS_EVENTS].insert_one({
        "eventType": "whatsapp_redirect",
        "productId": oid,
        "timestamp": now,
        "userAgent": request.headers.get("user-agent", "unknown"),
        "userId": ObjectId(user_id) if user_id and ObjectId.is_valid(user_id) else None,
    })
    return {"success": True, "message": "Redirect tracked successfully"}


@app.get("/api/products/{product_id}/analytics")
def get_product_analytics(product_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    product = get_owned_product(db, product_id, user, "view analytics for")
    since = utcnow() - timedelta(days=30)
    recent = db[ANALYTICS_EVENTS].find(
        {"eventType": "whatsapp_redirect", "productId": product["_id"], "timestamp": {"$gte": since}}
    ).sort("timestamp", DESCENDING).limit(100)
    return {
        "success": True,
        "analytics": {
            "totalWhatsAppClicks": product.get("whatsappRedirects", 0),
            "totalViews": product.get("views", 0),
            "lastRedirectAt": product.get("lastRedirectAt"),
            "createdAt": product.get("createdAt"),
            "recentRedirects": [{"timestamp": r["timestamp"], "userAgent": r.get("userAgent")} for r in recent],
        },
    }


@app.get("/p/{product_id}", response_class=HTMLResponse)
def product_share_page(product_id: str, request: Request, db: Database = Depends(get_db)):
    product = find_visible_product(db, ObjectId(product_id)) if ObjectId.is_valid(product_id) else None
    if not product:
        return HTMLResponse("Product not found or seller subscription expired", status_code=404)

    redirect_url = html.escape(f"{FRONTEND_URL}/?product={product_id}")
    share_url = html.escape(str(request.url))
    title = html.escape(product.get("title", ""))
    description = html.escape(product.get("description", ""))
    price = html.escape(f"R{product.get('price')}")
    return HTMLResponse(f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <meta http-equiv="refresh" content="0; url={redirect_url}">
  <meta property="og:title" content="{title} - {price}" />
  <meta property="og:description" content="{description}" />
  <meta property="og:url" content="{share_url}" />
  <meta property="og:type" content="product" />
  <meta property="og:site_name" content="FYC Marketplace" />
  <meta property="og:locale" content="en_ZA" />
  <meta property="product:price:amount" content="{html.escape(str(product.get('price')))}" />
  <meta property="product:price:currency" content="ZAR" />
  <meta name="twitter:card" content="summary" />
  <meta name="twitter:title" content="{title} - {price}" />
  <meta name="twitter:description" content="{description}" />
  <title>{title} | FYC Marketplace</title>
</head>
<body>
  <h2>{title}</h2>
  <p>{price}</p>
  <p>Redirecting to marketplace... <a href="{redirect_url}">Click here</a> if nothing happens.</p>
</body>
</html>""")

# Messages
@app.post("/api/messages", status_code=201,
          dependencies=[Depends(rate_limited("message", "You are sending messages too quickly, please slow down"))])
def send_message(payload: MessageCreate, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    receiver_id = parse_object_id(payload.receiverId, "receiver ID")
    if receiver_id == user["_id"]:
        raise ApiError(400, "You cannot message yourself", "VALIDATION_ERROR")
    find_user(db, receiver_id, active_only=True)
    conversation = policy.conversation_id(user["_id"], receiver_id)
    if payload.conversationId and payload.conversationId != conversation:
        raise ApiError(400, "Conversation does not match sender and receiver", "VALIDATION_ERROR")

    message = MessageSchema(
        senderId=user["_id"],
        receiverId=receiver_id,
        conversationId=conversation,
        text=payload.text.strip(),
    )
    message_id = create_document(db, MESSAGES, message)
    return {"success": True, "message": "Message sent successfully", "messageId": message_id, "conversationId": conversation}


@app.get("/api/messages")
def get_conversations(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    me_id = user["_id"]
    docs = db[MESSAGES].find({"$or": [{"senderId": me_id}, {"receiverId": me_id}]}).sort("createdAt", DESCENDING)
    conversations: Dict[str, dict] = {}
    for msg in docs:
        entry = conversations.get(msg["conversationId"])
        if entry is None:
            partner = msg["receiverId"] if msg["senderId"] == me_id else msg["senderId"]
            entry = conversations[msg["conversationId"]] = {
                "conversationId": msg["conversationId"],
                "userId": str(partner),
                "lastMessage": serialize(msg),
                "unreadCount": 0,
            }
        if msg["receiverId"] == me_id and not msg.get("read"):
            entry["unreadCount"] += 1
    return {"success": True, "conversations": list(conversations.values())}


@app.get("/api/messages/unread/count")
def unread_count(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    count = db[MESSAGES].count_documents({"receiverId": user["_id"], "read": False})
    return {"success": True, "count": count}


def require_participant(conversation: str, user: dict):
    if str(user["_id"]) not in conversation.split("-") and not policy.is_admin(user):
        raise ApiError(403, "You are not part of this conversation", "FORBIDDEN")


@app.get("/api/messages/{conversation_id}")
def get_messages(conversation_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    require_participant(conversation_id, user)
    docs = db[MESSAGES].find({"conversationId": conversation_id}).sort("createdAt", 1)
    return {"success": True, "messages": serialize(list(docs))}


@app.put("/api/messages/{conversation_id}/read")
def mark_read(conversation_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    require_participant(conversation_id, user)
    result = db[MESSAGES].update_many(
        {"conversationId": conversation_id, "receiverId": user["_id"], "read": False},
        {"$set": {"read": True}},
    )
    return {"success": True, "updated": result.modified_count}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
