import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import jwt
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from google.auth.exceptions import GoogleAuthError
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.concurrency import run_in_threadpool
from starlette.middleware.cors import CORSMiddleware

from . import settings
from .period import DAILY, Frequency, period_start
from .stats import LeaderboardEntry, LeaderboardError, aggregate_leaderboard, compute_streak, group_by, habit_stats
from .storage import connect_database

logger = logging.getLogger(__name__)

# Database handle is initialized on startup.
client = None
db: Any = None

# Create the main app without a prefix
app = FastAPI(title="habitcircle")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

security = HTTPBearer()

_PUBLIC_USER_FIELDS = {"_id": 0, "google_id": 0}

# ============== MODELS ==============

class GoogleAuthRequest(BaseModel):
    id_token: str = Field(..., min_length=10)

class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    avatar_url: Optional[str] = None
    created_at: str

class UserSummary(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse

class HabitCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=80)
    frequency: Frequency = DAILY
    category: Optional[str] = Field(default=None, max_length=50)

    @field_validator("category")
    @classmethod
    def blank_category_is_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None

class HabitUpdate(HabitCreate):
    # Full replacement: frequency must be sent so a rename never resets it.
    frequency: Frequency

class HabitResponse(BaseModel):
    id: str
    user_id: str
    name: str
    frequency: str
    category: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None
    streak: int = 0
    completion_rate: int = 0

class CheckInResponse(BaseModel):
    id: str
    user_id: str
    habit_id: str
    frequency: str
    period_start: str
    completed_at: str

class FollowResponse(BaseModel):
    id: str
    follower_id: str
    followee_id: str
    created_at: str

class FeedHabit(BaseModel):
    id: str
    name: str
    frequency: str
    category: Optional[str] = None

class FeedItem(BaseModel):
    id: str
    completed_at: str
    user: Optional[UserSummary] = None
    habit: Optional[FeedHabit] = None
    streak: int = 0

class LeaderboardResponse(BaseModel):
    generated_at: str
    entries: List[LeaderboardEntry]

# ============== AUTH HELPERS ==============

def _now() -> datetime:
    return datetime.now(timezone.utc)

def create_access_token(user_id: str) -> str:
    payload = {
        "sub": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRATION_HOURS)
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

def verify_google_id_token(token: str) -> Dict[str, Any]:
    # Blocking: fetches Google's signing certs. Call from a worker thread.
    return google_id_token.verify_oauth2_token(token, google_requests.Request(), settings.GOOGLE_CLIENT_ID)

def get_identity_verifier() -> Callable[[str], Dict[str, Any]]:
    return verify_google_id_token

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    try:
        payload = jwt.decode(credentials.credentials, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = await db.users.find_one({"id": user_id}, _PUBLIC_USER_FIELDS)
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user

async def _upsert_google_user(email: str, google_id: str, name: str, avatar_url: Optional[str]) -> Dict[str, Any]:
    now = _now().isoformat()
    update = {"name": name, "avatar_url": avatar_url, "google_id": google_id, "provider": "google", "updated_at": now}

    existing = await db.users.find_one({"email": email})
    if not existing:
        user_doc = {"id": str(uuid.uuid4()), "email": email, "created_at": now, **update}
        try:
            await db.users.insert_one(user_doc)
            user_doc.pop("_id", None)
            return user_doc
        except DuplicateKeyError:
            # Concurrent first sign-in for the same email; fall through to update.
            pass

    await db.users.update_one({"email": email}, {"$set": update})
    return await db.users.find_one({"email": email}, {"_id": 0})

# ============== AUTH ROUTES ==============

@api_router.post("/auth/google", response_model=TokenResponse)
async def google_sign_in(
    body: GoogleAuthRequest,
    verify: Callable[[str], Dict[str, Any]] = Depends(get_identity_verifier),
):
    try:
        payload = await run_in_threadpool(verify, body.id_token)
    except (ValueError, GoogleAuthError) as e:
        logger.warning("Google token verification failed: %s", str(e))
        raise HTTPException(status_code=401, detail="Google token verification failed")

    email = (payload.get("email") or "").strip().lower()
    google_id = payload.get("sub")
    if not email or not google_id:
        raise HTTPException(status_code=400, detail="Google token missing required fields")

    user = await _upsert_google_user(
        email=email,
        google_id=google_id,
        name=payload.get("name") or email.split("@")[0],
        avatar_url=payload.get("picture"),
    )
    logger.info("User signed in: %s", user["id"])

    return TokenResponse(
        access_token=create_access_token(user["id"]),
        user=UserResponse(**user),
    )

@api_router.get("/auth/me", response_model=UserResponse)
async def get_me(current_user: dict = Depends(get_current_user)):
    return UserResponse(**current_user)

# ============== HABIT ROUTES ==============

async def _get_own_habit(habit_id: str, user_id: str) -> Dict[str, Any]:
    habit = await db.habits.find_one({"id": habit_id, "user_id": user_id}, {"_id": 0})
    if not habit:
        raise HTTPException(status_code=404, detail="Habit not found")
    return habit

async def _with_stats(habit: Dict[str, Any]) -> Dict[str, Any]:
    check_ins = await db.check_ins.find({"habit_id": habit["id"]}, {"_id": 0}).to_list(None)
    return {**habit, **habit_stats(habit, check_ins, now=_now())}

@api_router.get("/habits", response_model=List[HabitResponse])
async def list_habits(current_user: dict = Depends(get_current_user)):
    habits = await db.habits.find({"user_id": current_user["id"]}, {"_id": 0}).sort("created_at", -1).to_list(None)
    if not habits:
        return []

    check_ins = await db.check_ins.find(
        {"habit_id": {"$in": [h["id"] for h in habits]}},
        {"_id": 0}
    ).to_list(None)
    by_habit = group_by(check_ins, "habit_id")
    now = _now()

    return [{**habit, **habit_stats(habit, by_habit.get(habit["id"], []), now=now)} for habit in habits]

@api_router.post("/habits", response_model=HabitResponse, status_code=status.HTTP_201_CREATED)
async def create_habit(habit_data: HabitCreate, current_user: dict = Depends(get_current_user)):
    now = _now().isoformat()
    habit_doc = {
        "id": str(uuid.uuid4()),
        "user_id": current_user["id"],
        **habit_data.model_dump(),
        "created_at": now,
        "updated_at": now,
    }

    try:
        await db.habits.insert_one(habit_doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Habit name already exists")

    logger.info("Habit created: %s for user %s", habit_doc["id"], current_user["id"])
    habit_doc.pop("_id", None)
    return {**habit_doc, "streak": 0, "completion_rate": 0}

@api_router.put("/habits/{habit_id}", response_model=HabitResponse)
async def update_habit(habit_id: str, habit_data: HabitUpdate, current_user: dict = Depends(get_current_user)):
    update_data = {**habit_data.model_dump(), "updated_at": _now().isoformat()}

    try:
        result = await db.habits.update_one(
            {"id": habit_id, "user_id": current_user["id"]},
            {"$set": update_data}
        )
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Habit name already exists")

    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Habit not found")

    habit = await db.habits.find_one({"id": habit_id}, {"_id": 0})
    return await _with_stats(habit)

@api_router.delete("/habits/{habit_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_habit(habit_id: str, current_user: dict = Depends(get_current_user)):
    result = await db.habits.delete_one({"id": habit_id, "user_id": current_user["id"]})

    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Habit not found")

    # Delete associated check-ins
    removed = await db.check_ins.delete_many({"habit_id": habit_id, "user_id": current_user["id"]})
    logger.info("Habit %s deleted with %s check-ins", habit_id, removed.deleted_count)

    return Response(status_code=status.HTTP_204_NO_CONTENT)

# ============== CHECK-IN ROUTES ==============

@api_router.post("/habits/{habit_id}/checkin", response_model=CheckInResponse, status_code=status.HTTP_201_CREATED)
async def check_in_habit(habit_id: str, current_user: dict = Depends(get_current_user)):
    habit = await _get_own_habit(habit_id, current_user["id"])
    now = _now()

    check_in_doc = {
        "id": str(uuid.uuid4()),
        "user_id": current_user["id"],
        "habit_id": habit["id"],
        "frequency": habit["frequency"],
        "period_start": period_start(now, habit["frequency"]).isoformat(),
        "completed_at": now.isoformat(),
        "created_at": now.isoformat(),
    }

    # The unique (habit_id, period_start) index is the only guard against
    # concurrent double check-ins.
    try:
        await db.check_ins.insert_one(check_in_doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Already checked in for this period")

    check_in_doc.pop("_id", None)
    return check_in_doc

@api_router.delete("/habits/{habit_id}/checkin", status_code=status.HTTP_204_NO_CONTENT)
async def undo_check_in(habit_id: str, current_user: dict = Depends(get_current_user)):
    habit = await _get_own_habit(habit_id, current_user["id"])
    current_period = period_start(_now(), habit["frequency"]).isoformat()

    await db.check_ins.delete_one({
        "habit_id": habit["id"],
        "user_id": current_user["id"],
        "period_start": current_period,
    })
    return Response(status_code=status.HTTP_204_NO_CONTENT)

# ============== SOCIAL ROUTES ==============

@api_router.get("/users/search", response_model=List[UserSummary])
async def search_users(q: str = "", current_user: dict = Depends(get_current_user)):
    query = q.strip()
    if not query:
        return []

    pattern = {"$regex": re.escape(query), "$options": "i"}
    users = await db.users.find(
        {"id": {"$ne": current_user["id"]}, "$or": [{"name": pattern}, {"email": pattern}]},
        _PUBLIC_USER_FIELDS
    ).limit(settings.SEARCH_LIMIT).to_list(settings.SEARCH_LIMIT)
    return users

@api_router.get("/users/following", response_model=List[UserSummary])
async def list_following(current_user: dict = Depends(get_current_user)):
    follows = await db.follows.find({"follower_id": current_user["id"]}, {"_id": 0}).to_list(None)
    if not follows:
        return []

    followee_ids = [f["followee_id"] for f in follows]
    users = await db.users.find({"id": {"$in": followee_ids}}, _PUBLIC_USER_FIELDS).to_list(None)
    by_id = {u["id"]: u for u in users}
    return [by_id[uid] for uid in followee_ids if uid in by_id]

@api_router.post("/users/{user_id}/follow", response_model=FollowResponse, status_code=status.HTTP_201_CREATED)
async def follow_user(user_id: str, current_user: dict = Depends(get_current_user)):
    if user_id == current_user["id"]:
        raise HTTPException(status_code=400, detail="Cannot follow yourself")

    target = await db.users.find_one({"id": user_id}, {"_id": 0})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")

    edge = {"follower_id": current_user["id"], "followee_id": user_id}
    existing = await db.follows.find_one(edge, {"_id": 0})
    if existing:
        return existing

    follow_doc = {"id": str(uuid.uuid4()), **edge, "created_at": _now().isoformat()}
    try:
        await db.follows.insert_one(follow_doc)
    except DuplicateKeyError:
        return await db.follows.find_one(edge, {"_id": 0})

    follow_doc.pop("_id", None)
    return follow_doc

@api_router.delete("/users/{user_id}/follow", status_code=status.HTTP_204_NO_CONTENT)
async def unfollow_user(user_id: str, current_user: dict = Depends(get_current_user)):
    await db.follows.delete_one({"follower_id": current_user["id"], "followee_id": user_id})
    return Response(status_code=status.HTTP_204_NO_CONTENT)

@api_router.get("/feed", response_model=List[FeedItem])
async def get_feed(current_user: dict = Depends(get_current_user)):
    follows = await db.follows.find({"follower_id": current_user["id"]}, {"_id": 0}).to_list(None)
    followee_ids = [f["followee_id"] for f in follows]
    if not followee_ids:
        return []

    recent = await db.check_ins.find(
        {"user_id": {"$in": followee_ids}},
        {"_id": 0}
    ).sort("completed_at", -1).limit(settings.FEED_LIMIT).to_list(settings.FEED_LIMIT)

    habit_ids = list({ci["habit_id"] for ci in recent})
    habits = await db.habits.find({"id": {"$in": habit_ids}}, {"_id": 0}).to_list(None)
    users = await db.users.find({"id": {"$in": followee_ids}}, _PUBLIC_USER_FIELDS).to_list(None)
    habit_check_ins = group_by(
        await db.check_ins.find({"habit_id": {"$in": habit_ids}}, {"_id": 0}).to_list(None),
        "habit_id"
    )

    now = _now()
    habits_by_id = {h["id"]: h for h in habits}
    users_by_id = {u["id"]: u for u in users}
    streaks = {
        hid: compute_streak(habit_check_ins.get(hid, []), habit.get("frequency", DAILY), now=now)
        for hid, habit in habits_by_id.items()
    }

    return [
        {
            "id": ci["id"],
            "completed_at": ci["completed_at"],
            "user": users_by_id.get(ci["user_id"]),
            "habit": habits_by_id.get(ci["habit_id"]),
            "streak": streaks.get(ci["habit_id"], 0),
        }
        for ci in recent
    ]

# ============== LEADERBOARD ROUTES ==============

@api_router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(current_user: dict = Depends(get_current_user)):
    try:
        users = await db.users.find({}, _PUBLIC_USER_FIELDS).to_list(None)
        habits = await db.habits.find({}, {"_id": 0}).to_list(None)
        check_ins = await db.check_ins.find({}, {"_id": 0}).to_list(None)
        entries = aggregate_leaderboard(users, habits, check_ins, now=_now())
    except (LeaderboardError, PyMongoError):
        logger.exception("Leaderboard aggregation failed")
        raise HTTPException(status_code=500, detail="Failed to fetch leaderboard")

    return LeaderboardResponse(
        generated_at=_now().isoformat(),
        entries=entries,
    )

# ============== BASIC ROUTES ==============

@api_router.get("/")
async def root():
    return {"message": "habitcircle API"}

@api_router.get("/health")
async def health_check():
    return {"status": "healthy"}

# Include the router in the main app
app.include_router(api_router)

cors_origins = settings.cors_origins()
cors_allow_all = len(cors_origins) == 1 and cors_origins[0] == '*'

app.add_middleware(
    CORSMiddleware,
    # Avoid using '*' with credentials. In production, set CORS_ORIGINS to your frontend URL(s).
    allow_credentials=not cors_allow_all,
    allow_origins=cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@app.on_event("startup")
async def startup_db_client():
    global client, db

    if settings.IS_PROD and settings.JWT_SECRET_SOURCE == "default":
        raise RuntimeError("JWT_SECRET must be set in production (refusing to start with default secret).")
    if settings.JWT_SECRET_SOURCE == "default":
        logger.warning("JWT_SECRET not set; using insecure default. Set JWT_SECRET for persistent logins and security.")
    if settings.IS_PROD and not settings.GOOGLE_CLIENT_ID:
        raise RuntimeError("GOOGLE_CLIENT_ID must be set in production (refusing to accept Google tokens for any audience).")
    if not settings.GOOGLE_CLIENT_ID:
        logger.warning("GOOGLE_CLIENT_ID not set; Google sign-in will not check the token audience.")

    client, db = await connect_database()

@app.on_event("shutdown")
async def shutdown_db_client():
    global client, db
    if client is not None:
        client.close()
    client = None
    db = None
