# Civic Grievance Tracker
# FastAPI + MongoDB

import os
import uuid
import asyncio
import logging
from pathlib import Path
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import List, Optional, Dict, Any, NamedTuple
from enum import Enum
from contextlib import asynccontextmanager
from concurrent.futures import ThreadPoolExecutor

import bcrypt
import uvicorn
from fastapi import FastAPI, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordBearer
from starlette.requests import Request
from starlette.middleware.base import BaseHTTPMiddleware
from pydantic import BaseModel, Field, ValidationError, model_validator
from pymongo import MongoClient, ASCENDING, DESCENDING, GEOSPHERE
from pymongo.errors import DuplicateKeyError
from jose import JWTError, jwt
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
from dotenv import load_dotenv
# Try multiple .env locations: next to this file, one level up, then cwd
_script_dir = Path(__file__).resolve().parent
_env_candidates = [
    _script_dir / ".env",
    _script_dir.parent / ".env",
    Path.cwd() / ".env",
]
for _env_path in _env_candidates:
    if _env_path.is_file():
        load_dotenv(_env_path)
        break
else:
    load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB = os.getenv("MONGODB_DB", "civic_grievances")
JWT_SECRET = os.getenv("JWT_SECRET", "")
if not JWT_SECRET or len(JWT_SECRET) < 32:
    raise RuntimeError(
        "FATAL: JWT_SECRET must be set in the environment and be at least 32 characters. "
        "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
    )
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "720"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

DEFAULT_LONGITUDE = 77.2090
DEFAULT_LATITUDE = 28.6139
DEFAULT_ADDRESS = "Location not provided"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class UserRole(str, Enum):
    CITIZEN = "citizen"
    OFFICIAL = "official"

class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

class ComplaintStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"

class NotificationType(str, Enum):
    COMMENT = "comment"
    REVIEW = "review"

# ---------------------------------------------------------------------------
# Triage Tables
# ---------------------------------------------------------------------------
DEFAULT_CATEGORY = "General"
ALL_DEPARTMENTS = "All"

# Insertion order decides ties between categories with equal scores
CATEGORY_KEYWORDS = MappingProxyType({
    "Electricity": ("power", "dark", "light", "wire", "shock", "pole", "transformer", "blackout"),
    "Water": ("leak", "pipe", "water", "flood", "drain", "sewer", "smell", "blockage"),
    "Roads": ("pothole", "crack", "road", "sidewalk", "pavement", "asphalt", "traffic"),
    "Waste": ("garbage", "trash", "dump", "bin", "litter", "waste"),
})

# Checked in this order; the first level with any match wins
SEVERITY_KEYWORDS = (
    (Severity.CRITICAL, ("immediate", "danger", "fire", "burst", "accident", "spark", "huge")),
    (Severity.HIGH, ("blocked", "broken", "no water", "outage", "deep")),
    (Severity.MEDIUM, ("smell", "slow", "dirty", "crack")),
    (Severity.LOW, ("litter", "small", "paint")),
)

SLA_HOURS = MappingProxyType({
    Severity.CRITICAL: 4,
    Severity.HIGH: 24,
    Severity.MEDIUM: 48,
    Severity.LOW: 72,
})
DEFAULT_SLA_HOURS = 72

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class NotFound(HTTPException):
    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=404, detail=detail)

class Unauthorized(HTTPException):
    def __init__(self, detail: str = "Not authenticated"):
        super().__init__(status_code=401, detail=detail)

class Forbidden(HTTPException):
    def __init__(self, detail: str = "Access denied"):
        super().__init__(status_code=403, detail=detail)

class InvalidRequest(HTTPException):
    def __init__(self, detail: str = "Invalid request"):
        super().__init__(status_code=400, detail=detail)

class PreconditionFailed(HTTPException):
    def __init__(self, detail: str = "Precondition failed"):
        super().__init__(status_code=409, detail=detail)

# ---------------------------------------------------------------------------
# Pydantic Models
# ---------------------------------------------------------------------------
class Identity(BaseModel):
    id: str = Field(..., min_length=1)
    role: UserRole

class LocationInput(BaseModel):
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    address: Optional[str] = Field(None, max_length=500)

class Location(BaseModel):
    longitude: float
    latitude: float
    address: str

class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=6, max_length=72)
    phone: Optional[str] = Field(None, max_length=20)
    role: UserRole = UserRole.CITIZEN
    department: Optional[str] = Field(None, max_length=100)

class UserLogin(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    password: str
    role: Optional[UserRole] = None

    @model_validator(mode="after")
    def check_identifier(self):
        if not self.email and not self.phone:
            raise ValueError("Either email or phone is required")
        return self

class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    phone: Optional[str] = Field(None, max_length=20)
    current_password: Optional[str] = None
    new_password: Optional[str] = Field(None, min_length=6, max_length=72)

class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    role: UserRole
    department: Optional[str] = None
    created_at: datetime

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse

class ComplaintCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=5000)
    category: Optional[str] = Field(None, max_length=100)
    severity: Optional[Severity] = None
    department: Optional[str] = Field(None, max_length=100)
    location: Optional[LocationInput] = None
    evidence: List[str] = Field(default_factory=list, max_length=10)

class StatusUpdate(BaseModel):
    status: Optional[ComplaintStatus] = None

class CommentCreate(BaseModel):
    text: str = Field(..., min_length=1, max_length=2000)

class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=2000)

class CommentResponse(BaseModel):
    id: str
    text: str
    user_id: str
    name: str
    role: UserRole
    created_at: datetime

class ReviewResponse(BaseModel):
    rating: int
    feedback: Optional[str] = None
    created_at: datetime

class CitizenSnapshot(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

class ComplaintResponse(BaseModel):
    id: str
    citizen_id: str
    title: str
    description: str
    category: str
    severity: Severity
    status: ComplaintStatus
    department_assigned: str
    sla_deadline: datetime
    resolved_at: Optional[datetime] = None
    location: Location
    evidence: List[str] = Field(default_factory=list)
    upvotes: List[str] = Field(default_factory=list)
    comments: List[CommentResponse] = Field(default_factory=list)
    review: Optional[ReviewResponse] = None
    created_at: datetime
    updated_at: datetime
    citizen: Optional[CitizenSnapshot] = None

class PublicComplaintResponse(BaseModel):
    id: str
    title: str
    category: str
    status: ComplaintStatus
    severity: Severity
    location: Location
    department_assigned: str
    created_at: datetime
    upvotes: int = 0

class UpvoteResponse(BaseModel):
    upvotes: int

class ChartSeries(BaseModel):
    labels: List[str] = Field(default_factory=list)
    data: List[int] = Field(default_factory=list)

class AnalyticsResponse(BaseModel):
    categories: ChartSeries
    statuses: ChartSeries

class NotificationResponse(BaseModel):
    id: str
    complaint_id: str
    type: NotificationType
    message: str
    from_name: Optional[str] = None
    complaint_title: Optional[str] = None
    created_at: datetime

# ---------------------------------------------------------------------------
# App & Globals
# ---------------------------------------------------------------------------
app = FastAPI(title="Civic Grievance Tracker")
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ---------------------------------------------------------------------------
# Security Headers Middleware
# ---------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(self), camera=(self), microphone=()"
        return response

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
db_client = None
db = None
executor = ThreadPoolExecutor(max_workers=10)

# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup_db()
    yield
    if db_client:
        db_client.close()

app.router.lifespan_context = lifespan

def ensure_indexes(database):
    database.complaints.create_index("created_at")
    database.complaints.create_index([("status", ASCENDING), ("sla_deadline", ASCENDING)])
    database.complaints.create_index("department_assigned")
    database.complaints.create_index("citizen_id")
    database.complaints.create_index([("location", GEOSPHERE)])
    database.users.create_index([("email", ASCENDING)], unique=True)
    database.notifications.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

async def startup_db():
    global db_client, db
    db_client = MongoClient(MONGODB_URL, tz_aware=True)
    db = db_client[MONGODB_DB]
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(executor, ensure_indexes, db)
    logger.info("Database initialized: %s", MONGODB_DB)

# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
async def get_db():
    return db

# ---------------------------------------------------------------------------
# Auth Helpers
# ---------------------------------------------------------------------------
def hash_password(password: str) -> str:
    if len(password.encode("utf-8")) > 72:
        raise ValueError("Password cannot exceed 72 bytes")
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")

def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False

def create_access_token(user: dict) -> str:
    to_encode = {"sub": str(user["_id"]), "role": user["role"]}
    to_encode["exp"] = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)

_token_blacklist: set = set()

async def get_current_identity(token: Optional[str] = Depends(oauth2_scheme)) -> Identity:
    """Decode the bearer token into an Identity. The payload is trusted as-is."""
    if token is None:
        raise Unauthorized("Not authorized, no token")
    if token in _token_blacklist:
        raise Unauthorized("Token has been revoked")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return Identity(id=payload.get("sub"), role=payload.get("role"))
    except (JWTError, ValidationError):
        raise Unauthorized("Not authorized, token failed")

def require_role(*roles):
    async def role_checker(identity: Identity = Depends(get_current_identity)):
        if identity.role.value not in roles:
            if roles == (UserRole.OFFICIAL.value,):
                raise Forbidden("Not authorized as an official")
            raise Forbidden("Insufficient permissions")
        return identity
    return role_checker

def user_to_response(user: dict) -> UserResponse:
    return UserResponse(
        id=str(user["_id"]), name=user["name"], email=user["email"],
        phone=user.get("phone"), role=user["role"],
        department=user.get("department"), created_at=user["created_at"])

# ---------------------------------------------------------------------------
# User Lookup
# ---------------------------------------------------------------------------
def lookup_user(database, user_id: str) -> Optional[dict]:
    return database.users.find_one({"_id": user_id}, {"hashed_password": 0})

async def get_current_official(identity: Identity = Depends(require_role(UserRole.OFFICIAL.value)),
                               db=Depends(get_db)) -> dict:
    loop = asyncio.get_event_loop()
    user = await loop.run_in_executor(executor, lookup_user, db, identity.id)
    if user is None:
        raise NotFound("User not found")
    return user

async def lookup_caller(db, identity: Identity) -> Optional[dict]:
    """Caller's user record. An official without one cannot be scoped, so that is a 404."""
    loop = asyncio.get_event_loop()
    user = await loop.run_in_executor(executor, lookup_user, db, identity.id)
    if user is None and identity.role == UserRole.OFFICIAL:
        raise NotFound("User not found")
    return user

# ---------------------------------------------------------------------------
# Triage: Classification & SLA
# ---------------------------------------------------------------------------
class Classification(NamedTuple):
    category: str
    severity: Severity
    department_assigned: str

def classify_text(text: str) -> Classification:
    """Infer category and severity from free text by keyword matching.

    A category wins only with a strictly higher count of matching trigger
    words than the best so far, so ties go to the earlier table entry and a
    text with no matches stays in the default category. Severity levels are
    tried from CRITICAL down; the first level with any match is used.
    """
    normalized = text.lower()

    category = DEFAULT_CATEGORY
    best_score = 0
    for name, words in CATEGORY_KEYWORDS.items():
        score = sum(1 for w in words if w in normalized)
        if score > best_score:
            best_score = score
            category = name

    severity = Severity.LOW
    for level, words in SEVERITY_KEYWORDS:
        if any(w in normalized for w in words):
            severity = level
            break

    return Classification(category=category, severity=severity, department_assigned=category)

def triage(title: str, description: str, category: Optional[str] = None,
           severity: Optional[Severity] = None, department: Optional[str] = None) -> Classification:
    """Classify a new complaint; explicit values always beat inferred ones."""
    analysis = classify_text(f"{title} {description}")
    final_category = category or analysis.category
    return Classification(
        category=final_category,
        severity=Severity(severity) if severity else analysis.severity,
        department_assigned=department or category or analysis.department_assigned)

def sla_hours(severity) -> int:
    return SLA_HOURS.get(severity, DEFAULT_SLA_HOURS)

def calculate_sla_deadline(severity, created_at: datetime) -> datetime:
    return created_at + timedelta(hours=sla_hours(severity))

# ---------------------------------------------------------------------------
# Lifecycle & Access Policy
# ---------------------------------------------------------------------------
def status_transition_update(complaint: dict, new_status: ComplaintStatus, now: datetime) -> Dict[str, Any]:
    """Fields to $set when an official moves a complaint to new_status."""
    update: Dict[str, Any] = {"status": new_status.value}
    if new_status == ComplaintStatus.RESOLVED:
        # re-resolving keeps the original timestamp
        if not complaint.get("resolved_at"):
            update["resolved_at"] = now
    else:
        update["resolved_at"] = None
    return update

def is_unscoped(department: Optional[str]) -> bool:
    return not department or department == ALL_DEPARTMENTS

def department_filter(department: Optional[str]) -> Dict[str, Any]:
    if is_unscoped(department):
        return {}
    return {"department_assigned": department}

def in_department_scope(department: Optional[str], complaint: dict) -> bool:
    return is_unscoped(department) or complaint.get("department_assigned") == department

def can_access_complaint(identity: Identity, user: Optional[dict], complaint: dict) -> bool:
    if identity.role == UserRole.CITIZEN:
        return complaint.get("citizen_id") == identity.id
    return user is not None and in_department_scope(user.get("department"), complaint)

def check_review_allowed(identity: Identity, complaint: dict):
    if complaint.get("citizen_id") != identity.id:
        raise Forbidden("Not authorized to review this complaint")
    if complaint.get("status") != ComplaintStatus.RESOLVED.value:
        raise PreconditionFailed("Complaint must be resolved before reviewing")

# ---------------------------------------------------------------------------
# Store Helpers
# ---------------------------------------------------------------------------
PUBLIC_FIELDS = {"title": 1, "category": 1, "status": 1, "severity": 1, "location": 1,
                 "department_assigned": 1, "created_at": 1, "upvotes": 1}

def sanitize_str(value: str) -> str:
    """Ensure a value is a plain string, not a dict/list that could be a NoSQL operator."""
    if not isinstance(value, str):
        raise InvalidRequest("Invalid parameter type")
    return str(value)

def validate_uuid(value: str, param_name: str = "id") -> str:
    value = sanitize_str(value)
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError):
        raise InvalidRequest(f"Invalid {param_name} format")
    return value

def build_location(data: Optional[LocationInput]) -> dict:
    data = data or LocationInput()
    longitude = data.longitude if data.longitude is not None else DEFAULT_LONGITUDE
    latitude = data.latitude if data.latitude is not None else DEFAULT_LATITUDE
    return {"type": "Point", "coordinates": [longitude, latitude],
            "address": data.address or DEFAULT_ADDRESS}

def convert_location(location: Optional[dict]) -> dict:
    coords = (location or {}).get("coordinates") or [DEFAULT_LONGITUDE, DEFAULT_LATITUDE]
    return {"longitude": coords[0], "latitude": coords[1],
            "address": (location or {}).get("address") or DEFAULT_ADDRESS}

def convert_db_complaint(c: dict) -> dict:
    c["location"] = convert_location(c.get("location"))
    return c

def complaint_response(c: dict) -> ComplaintResponse:
    return ComplaintResponse(**convert_db_complaint(c), id=c["_id"])

def public_response(c: dict) -> PublicComplaintResponse:
    return PublicComplaintResponse(
        id=c["_id"], title=c["title"], category=c["category"], status=c["status"],
        severity=c["severity"], location=convert_location(c.get("location")),
        department_assigned=c["department_assigned"], created_at=c["created_at"],
        upvotes=len(c.get("upvotes") or []))

def toggle_upvote(database, complaint_id: str, user_id: str) -> Optional[int]:
    """Add or remove user_id from the upvote set. Returns the new count, None if absent."""
    added = database.complaints.update_one(
        {"_id": complaint_id, "upvotes": {"$ne": user_id}},
        {"$push": {"upvotes": user_id}})
    if added.matched_count == 0:
        database.complaints.update_one(
            {"_id": complaint_id, "upvotes": user_id},
            {"$pull": {"upvotes": user_id}})
    doc = database.complaints.find_one({"_id": complaint_id}, {"upvotes": 1})
    if doc is None:
        return None
    return len(doc.get("upvotes") or [])

def group_counts(database, field: str, match: Dict[str, Any]) -> ChartSeries:
    rows = list(database.complaints.aggregate([
        {"$match": match},
        {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
        {"$sort": {"_id": 1}}]))
    return ChartSeries(labels=[str(r["_id"]) for r in rows], data=[r["count"] for r in rows])

async def fetch_complaint(db, complaint_id: str) -> dict:
    loop = asyncio.get_event_loop()
    c = await loop.run_in_executor(executor, db.complaints.find_one, {"_id": complaint_id})
    if not c:
        raise NotFound("Complaint not found")
    return c

# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
def insert_notifications(database, recipients: List[str], complaint: dict,
                         kind: NotificationType, message: str, from_name: Optional[str]):
    now = datetime.now(timezone.utc)
    docs = [{"_id": str(uuid.uuid4()), "user_id": r, "complaint_id": complaint["_id"],
             "type": kind.value, "message": message, "from_name": from_name,
             "complaint_title": complaint.get("title"), "created_at": now}
            for r in recipients]
    if docs:
        database.notifications.insert_many(docs)
    return len(docs)

def officials_in_scope(database, complaint: dict) -> List[str]:
    departments = [None, "", ALL_DEPARTMENTS, complaint.get("department_assigned")]
    return [u["_id"] for u in database.users.find(
        {"role": UserRole.OFFICIAL.value, "department": {"$in": departments}}, {"_id": 1})]

async def notify(db, recipients: List[str], complaint: dict, kind: NotificationType,
                 message: str, from_name: Optional[str] = None):
    loop = asyncio.get_event_loop()
    try:
        await loop.run_in_executor(
            executor, insert_notifications, db, recipients, complaint, kind, message, from_name)
    except Exception as e:
        logger.error("Failed to write %s notifications for complaint %s: %s",
                     kind.value, complaint.get("_id"), e)

# ---------------------------------------------------------------------------
# Core Complaint Processing
# ---------------------------------------------------------------------------
async def process_complaint(data: ComplaintCreate, db, identity: Identity) -> ComplaintResponse:
    result = triage(data.title, data.description, data.category, data.severity, data.department)
    now = datetime.now(timezone.utc)
    doc = {
        "_id": str(uuid.uuid4()), "citizen_id": identity.id,
        "title": data.title, "description": data.description,
        "category": result.category, "severity": result.severity.value,
        "status": ComplaintStatus.PENDING.value,
        "department_assigned": result.department_assigned,
        "sla_deadline": calculate_sla_deadline(result.severity, now),
        "resolved_at": None,
        "location": build_location(data.location),
        "evidence": list(data.evidence),
        "upvotes": [], "comments": [], "review": None,
        "created_at": now, "updated_at": now,
    }
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(executor, db.complaints.insert_one, doc)
    logger.info("Complaint %s created: category=%s severity=%s department=%s",
                doc["_id"], doc["category"], doc["severity"], doc["department_assigned"])
    return complaint_response(doc)

# ---------------------------------------------------------------------------
# AUTH ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/auth/register", response_model=TokenResponse, status_code=201)
@limiter.limit("3/minute")
async def register(request: Request, user_data: UserCreate, db=Depends(get_db)):
    # Public registration is citizen-only; officials are provisioned by the importer
    if user_data.role != UserRole.CITIZEN:
        raise Forbidden("Public registration is for citizens only. Official accounts must be provisioned by an administrator.")
    loop = asyncio.get_event_loop()
    existing = await loop.run_in_executor(executor, db.users.find_one, {"email": user_data.email})
    if existing:
        raise InvalidRequest("User already exists")
    try:
        hashed = hash_password(user_data.password)
    except ValueError as e:
        raise InvalidRequest(str(e))
    user_doc = {
        "_id": str(uuid.uuid4()), "name": user_data.name, "email": user_data.email,
        "phone": user_data.phone, "hashed_password": hashed,
        "role": user_data.role.value, "department": None,
        "created_at": datetime.now(timezone.utc),
    }
    try:
        await loop.run_in_executor(executor, db.users.insert_one, user_doc)
    except DuplicateKeyError:
        raise InvalidRequest("User already exists")
    logger.info("Registered citizen %s", user_doc["_id"])
    return TokenResponse(access_token=create_access_token(user_doc), user=user_to_response(user_doc))

@app.post("/auth/login", response_model=TokenResponse)
@limiter.limit("5/minute")
async def login(request: Request, form: UserLogin, db=Depends(get_db)):
    query = {"email": form.email} if form.email else {"phone": form.phone}
    loop = asyncio.get_event_loop()
    user = await loop.run_in_executor(executor, db.users.find_one, query)
    if not user:
        raise Unauthorized("Invalid credentials")
    if form.role and user["role"] != form.role.value:
        raise Forbidden(f"Access denied. Please login via the {user['role']} portal.")
    if not verify_password(form.password, user["hashed_password"]):
        raise Unauthorized("Invalid email or password")
    return TokenResponse(access_token=create_access_token(user), user=user_to_response(user))

@app.get("/auth/me", response_model=UserResponse)
async def get_me(identity: Identity = Depends(get_current_identity), db=Depends(get_db)):
    loop = asyncio.get_event_loop()
    user = await loop.run_in_executor(executor, lookup_user, db, identity.id)
    if user is None:
        raise NotFound("User not found")
    return user_to_response(user)

@app.put("/auth/me", response_model=TokenResponse)
async def update_me(update: UserUpdate, identity: Identity = Depends(get_current_identity),
                    db=Depends(get_db)):
    loop = asyncio.get_event_loop()
    user = await loop.run_in_executor(executor, db.users.find_one, {"_id": identity.id})
    if user is None:
        raise NotFound("User not found")
    set_fields: Dict[str, Any] = {}
    if update.name is not None:
        set_fields["name"] = update.name
    if update.phone is not None:
        set_fields["phone"] = update.phone
    if update.new_password:
        if not update.current_password:
            raise InvalidRequest("Current password is required")
        if not verify_password(update.current_password, user["hashed_password"]):
            raise Unauthorized("Current password is incorrect")
        try:
            set_fields["hashed_password"] = hash_password(update.new_password)
        except ValueError as e:
            raise InvalidRequest(str(e))
    if not set_fields:
        raise InvalidRequest("No fields to update")
    await loop.run_in_executor(
        executor, lambda: db.users.update_one({"_id": identity.id}, {"$set": set_fields}))
    user.update(set_fields)
    return TokenResponse(access_token=create_access_token(user), user=user_to_response(user))

@app.post("/auth/logout")
async def logout(token: Optional[str] = Depends(oauth2_scheme)):
    if token:
        _token_blacklist.add(token)
        # Expired tokens are rejected by jwt.decode anyway
        if len(_token_blacklist) > 10000:
            _token_blacklist.clear()
    return {"detail": "Logged out successfully"}

# ---------------------------------------------------------------------------
# COMPLAINT ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/complaints", response_model=ComplaintResponse, status_code=201)
async def create_complaint(data: ComplaintCreate,
                           identity: Identity = Depends(require_role(UserRole.CITIZEN.value)),
                           db=Depends(get_db)):
    try:
        return await process_complaint(data, db, identity)
    except Exception as e:
        logger.exception("Error creating complaint: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")

@app.get("/complaints/public", response_model=List[PublicComplaintResponse])
async def get_public_complaints(db=Depends(get_db)):
    try:
        def fetch():
            return list(db.complaints.find({}, PUBLIC_FIELDS).sort("created_at", DESCENDING))
        loop = asyncio.get_event_loop()
        complaints = await loop.run_in_executor(executor, fetch)
        return [public_response(c) for c in complaints]
    except Exception as e:
        logger.exception("Error getting public complaints: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")

@app.get("/complaints/me", response_model=List[ComplaintResponse])
async def get_my_complaints(identity: Identity = Depends(require_role(UserRole.CITIZEN.value)),
                            db=Depends(get_db)):
    try:
        def fetch():
            return list(db.complaints.find({"citizen_id": identity.id}).sort("created_at", DESCENDING))
        loop = asyncio.get_event_loop()
        complaints = await loop.run_in_executor(executor, fetch)
        return [complaint_response(c) for c in complaints]
    except Exception as e:
        logger.exception("Error getting complaints for %s: %s", identity.id, e)
        raise HTTPException(status_code=500, detail="Internal server error")

@app.get("/complaints/department", response_model=List[ComplaintResponse])
async def get_department_complaints(official: dict = Depends(get_current_official),
                                    db=Depends(get_db)):
    query = department_filter(official.get("department"))
    try:
        def fetch():
            complaints = list(db.complaints.find(query).sort(
                [("status", ASCENDING), ("sla_deadline", ASCENDING)]))
            citizen_ids = list({c["citizen_id"] for c in complaints})
            citizens = {u["_id"]: u for u in db.users.find(
                {"_id": {"$in": citizen_ids}}, {"name": 1, "email": 1, "phone": 1})}
            return complaints, citizens
        loop = asyncio.get_event_loop()
        complaints, citizens = await loop.run_in_executor(executor, fetch)
        results = []
        for c in complaints:
            citizen = citizens.get(c["citizen_id"])
            c["citizen"] = CitizenSnapshot(
                id=c["citizen_id"], name=citizen.get("name"), email=citizen.get("email"),
                phone=citizen.get("phone")) if citizen else None
            results.append(complaint_response(c))
        return results
    except Exception as e:
        logger.exception("Error getting department complaints: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")

@app.get("/complaints/analytics", response_model=AnalyticsResponse)
async def get_analytics(official: dict = Depends(get_current_official), db=Depends(get_db)):
    match = department_filter(official.get("department"))
    def fetch():
        return group_counts(db, "category", match), group_counts(db, "status", match)
    try:
        loop = asyncio.get_event_loop()
        categories, statuses = await loop.run_in_executor(executor, fetch)
    except Exception as e:
        logger.exception("Error computing analytics: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")
    return AnalyticsResponse(categories=categories, statuses=statuses)

@app.get("/complaints/{complaint_id}", response_model=ComplaintResponse)
async def get_complaint(complaint_id: str, identity: Identity = Depends(get_current_identity),
                        db=Depends(get_db)):
    complaint_id = validate_uuid(complaint_id, "complaint_id")
    try:
        c = await fetch_complaint(db, complaint_id)
        user = await lookup_caller(db, identity)
        if not can_access_complaint(identity, user, c):
            raise Forbidden("Access denied")
        return complaint_response(c)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("Error getting complaint %s: %s", complaint_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")

@app.patch("/complaints/{complaint_id}", response_model=ComplaintResponse)
async def update_status(complaint_id: str, update: StatusUpdate,
                        official: dict = Depends(get_current_official), db=Depends(get_db)):
    complaint_id = validate_uuid(complaint_id, "complaint_id")
    try:
        c = await fetch_complaint(db, complaint_id)
        if not in_department_scope(official.get("department"), c):
            raise Forbidden("Complaint is outside your department")
        if update.status is None:
            raise InvalidRequest("Status is required")
        now = datetime.now(timezone.utc)
        set_fields = status_transition_update(c, update.status, now)
        set_fields["updated_at"] = now
        def write():
            return db.complaints.update_one({"_id": complaint_id}, {"$set": set_fields})
        loop = asyncio.get_event_loop()
        result = await loop.run_in_executor(executor, write)
        if result.matched_count == 0:
            raise NotFound("Complaint not found")
        logger.info("Complaint %s status %s -> %s by official %s",
                    complaint_id, c["status"], update.status.value, official["_id"])
        return complaint_response(await fetch_complaint(db, complaint_id))
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("Error updating status of complaint %s: %s", complaint_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")

@app.post("/complaints/{complaint_id}/comments", response_model=List[CommentResponse], status_code=201)
async def add_comment(complaint_id: str, comment: CommentCreate,
                      identity: Identity = Depends(get_current_identity), db=Depends(get_db)):
    complaint_id = validate_uuid(complaint_id, "complaint_id")
    try:
        c = await fetch_complaint(db, complaint_id)
        author = await lookup_caller(db, identity)
        if not can_access_complaint(identity, author, c):
            raise Forbidden("Access denied")
        author_name = author["name"] if author else "Unknown"
        new_comment = {"id": str(uuid.uuid4()), "text": comment.text, "user_id": identity.id,
                       "name": author_name, "role": identity.role.value,
                       "created_at": datetime.now(timezone.utc)}
        def write():
            return db.complaints.update_one({"_id": complaint_id},
                {"$push": {"comments": new_comment}, "$set": {"updated_at": datetime.now(timezone.utc)}})
        loop = asyncio.get_event_loop()
        result = await loop.run_in_executor(executor, write)
        if result.matched_count == 0:
            raise NotFound("Complaint not found")
        if identity.id != c["citizen_id"]:
            await notify(db, [c["citizen_id"]], c, NotificationType.COMMENT,
                         f"{author_name} commented on your complaint \"{c['title']}\"", author_name)
        updated = await fetch_complaint(db, complaint_id)
        return updated.get("comments", [])
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("Error adding comment to complaint %s: %s", complaint_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")

@app.post("/complaints/{complaint_id}/upvote", response_model=UpvoteResponse)
async def upvote_complaint(complaint_id: str, identity: Identity = Depends(get_current_identity),
                           db=Depends(get_db)):
    complaint_id = validate_uuid(complaint_id, "complaint_id")
    try:
        loop = asyncio.get_event_loop()
        count = await loop.run_in_executor(executor, toggle_upvote, db, complaint_id, identity.id)
    except Exception as e:
        logger.exception("Error toggling upvote on complaint %s: %s", complaint_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")
    if count is None:
        raise NotFound("Complaint not found")
    return UpvoteResponse(upvotes=count)

@app.post("/complaints/{complaint_id}/review", response_model=ReviewResponse)
async def add_review(complaint_id: str, review: ReviewCreate,
                     identity: Identity = Depends(get_current_identity), db=Depends(get_db)):
    complaint_id = validate_uuid(complaint_id, "complaint_id")
    try:
        c = await fetch_complaint(db, complaint_id)
        check_review_allowed(identity, c)
        # Overwrites any earlier review
        new_review = {"rating": review.rating, "feedback": review.feedback,
                      "created_at": datetime.now(timezone.utc)}
        def write():
            return db.complaints.update_one({"_id": complaint_id},
                {"$set": {"review": new_review, "updated_at": datetime.now(timezone.utc)}})
        loop = asyncio.get_event_loop()
        result = await loop.run_in_executor(executor, write)
        if result.matched_count == 0:
            raise NotFound("Complaint not found")
        logger.info("Complaint %s reviewed: rating=%d", complaint_id, review.rating)
        recipients = await loop.run_in_executor(executor, officials_in_scope, db, c)
        author = await loop.run_in_executor(executor, lookup_user, db, identity.id)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("Error reviewing complaint %s: %s", complaint_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")
    author_name = author["name"] if author else None
    await notify(db, recipients, c, NotificationType.REVIEW,
                 f"Complaint \"{c['title']}\" received a {review.rating}-star review", author_name)
    return ReviewResponse(**new_review)

# ---------------------------------------------------------------------------
# NOTIFICATION ENDPOINTS
# ---------------------------------------------------------------------------
@app.get("/notifications", response_model=List[NotificationResponse])
async def get_notifications(identity: Identity = Depends(get_current_identity), db=Depends(get_db)):
    try:
        def fetch():
            return list(db.notifications.find({"user_id": identity.id})
                        .sort("created_at", DESCENDING).limit(50))
        loop = asyncio.get_event_loop()
        notifications = await loop.run_in_executor(executor, fetch)
        return [NotificationResponse(**n, id=n["_id"]) for n in notifications]
    except Exception as e:
        logger.exception("Error getting notifications for %s: %s", identity.id, e)
        raise HTTPException(status_code=500, detail="Internal server error")

@app.delete("/notifications/{notification_id}")
async def dismiss_notification(notification_id: str,
                               identity: Identity = Depends(get_current_identity),
                               db=Depends(get_db)):
    notification_id = validate_uuid(notification_id, "notification_id")
    try:
        loop = asyncio.get_event_loop()
        result = await loop.run_in_executor(
            executor, db.notifications.delete_one, {"_id": notification_id, "user_id": identity.id})
    except Exception as e:
        logger.exception("Error dismissing notification %s: %s", notification_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")
    if result.deleted_count == 0:
        raise NotFound("Notification not found")
    return {"detail": "Notification dismissed"}

# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "healthy", "system": "Civic Grievance Tracker",
            "timestamp": datetime.now(timezone.utc)}

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
