import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import DuplicateKeyError

from . import settings

logger = logging.getLogger(__name__)

COLLECTIONS = ("users", "habits", "check_ins", "follows")

# (collection, fields) pairs that must be unique. Check-ins are unique per
# habit and period, which is what keeps one check-in per period.
UNIQUE_INDEXES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("users", ("email",)),
    ("habits", ("user_id", "name")),
    ("check_ins", ("habit_id", "period_start")),
    ("follows", ("follower_id", "followee_id")),
)


class _InMemoryResult:
    def __init__(self, *, matched_count: int = 0, deleted_count: int = 0, inserted_id: Any = None):
        self.matched_count = matched_count
        self.deleted_count = deleted_count
        self.inserted_id = inserted_id


def _apply_projection(doc: Dict[str, Any], projection: Optional[Dict[str, int]]) -> Dict[str, Any]:
    if not projection:
        return dict(doc)
    # Only exclusion projections like {"_id": 0} are used.
    excluded_keys = {k for k, v in projection.items() if v == 0}
    return {k: v for k, v in doc.items() if k not in excluded_keys}


def _match_condition(value: Any, expected: Dict[str, Any]) -> bool:
    for op, operand in expected.items():
        if op == "$gte":
            if value is None or value < operand:
                return False
        elif op == "$lte":
            if value is None or value > operand:
                return False
        elif op == "$in":
            if value not in operand:
                return False
        elif op == "$ne":
            if value == operand:
                return False
        elif op == "$regex":
            flags = re.IGNORECASE if "i" in expected.get("$options", "") else 0
            if not isinstance(value, str) or not re.search(operand, value, flags):
                return False
        elif op == "$options":
            continue
        else:
            raise ValueError(f"Unsupported query operator: {op}")
    return True


def _match_filter(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, expected in query.items():
        if key == "$or":
            if not any(_match_filter(doc, sub) for sub in expected):
                return False
            continue

        value = doc.get(key)
        if isinstance(expected, dict):
            if not _match_condition(value, expected):
                return False
            continue

        if value != expected:
            return False
    return True


def _sort_key(field: str):
    def key(doc: Dict[str, Any]):
        value = doc.get(field)
        return (value is not None, value)
    return key


class _InMemoryCursor:
    def __init__(self, docs: List[Dict[str, Any]], projection: Optional[Dict[str, int]]):
        self._docs = docs
        self._projection = projection
        self._sort: Optional[Tuple[str, int]] = None
        self._limit: Optional[int] = None

    def sort(self, field: str, direction: int):
        self._sort = (field, direction)
        return self

    def limit(self, count: int):
        self._limit = count or None
        return self

    async def to_list(self, length: Optional[int]) -> List[Dict[str, Any]]:
        docs = list(self._docs)
        if self._sort is not None:
            field, direction = self._sort
            docs.sort(key=_sort_key(field), reverse=direction == -1)

        caps = [n for n in (self._limit, length) if n]
        if caps:
            docs = docs[:min(caps)]
        return [_apply_projection(d, self._projection) for d in docs]


class _InMemoryCollection:
    def __init__(self, docs: Optional[List[Dict[str, Any]]] = None):
        self._data: List[Dict[str, Any]] = docs if docs is not None else []
        self._unique: List[Tuple[str, ...]] = []

    def _docs(self) -> List[Dict[str, Any]]:
        return self._data

    def _set_docs(self, docs: List[Dict[str, Any]]) -> None:
        self._data = docs

    async def _persist(self) -> None:
        return None

    def _check_unique(self, candidate: Dict[str, Any], ignore: Optional[Dict[str, Any]] = None) -> None:
        for fields in self._unique:
            key = tuple(candidate.get(f) for f in fields)
            for doc in self._docs():
                if doc is ignore:
                    continue
                if tuple(doc.get(f) for f in fields) == key:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error: {dict(zip(fields, key))}",
                        code=11000,
                    )

    async def create_index(self, keys: Union[str, Sequence[Tuple[str, int]]], unique: bool = False, **_: Any) -> str:
        fields = (keys,) if isinstance(keys, str) else tuple(k for k, _direction in keys)
        if unique and fields not in self._unique:
            self._unique.append(fields)
        return "_".join(fields)

    async def find_one(self, query: Dict[str, Any], projection: Optional[Dict[str, int]] = None):
        for doc in self._docs():
            if _match_filter(doc, query):
                return _apply_projection(doc, projection)
        return None

    def find(self, query: Optional[Dict[str, Any]] = None, projection: Optional[Dict[str, int]] = None) -> _InMemoryCursor:
        # Cursor is consumed later; keep it independent of future mutations.
        matched = [dict(d) for d in self._docs() if _match_filter(d, query or {})]
        return _InMemoryCursor(matched, projection)

    async def insert_one(self, doc: Dict[str, Any]):
        self._check_unique(doc)
        self._docs().append(dict(doc))
        await self._persist()
        return _InMemoryResult(matched_count=1, inserted_id=doc.get("id"))

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any]):
        update_set = update.get("$set")
        if not isinstance(update_set, dict):
            return _InMemoryResult(matched_count=0)

        for doc in self._docs():
            if _match_filter(doc, query):
                self._check_unique({**doc, **update_set}, ignore=doc)
                doc.update(update_set)
                await self._persist()
                return _InMemoryResult(matched_count=1)
        return _InMemoryResult(matched_count=0)

    async def delete_one(self, query: Dict[str, Any]):
        for i, doc in enumerate(self._docs()):
            if _match_filter(doc, query):
                del self._docs()[i]
                await self._persist()
                return _InMemoryResult(deleted_count=1)
        return _InMemoryResult(deleted_count=0)

    async def delete_many(self, query: Dict[str, Any]):
        before = len(self._docs())
        self._set_docs([d for d in self._docs() if not _match_filter(d, query)])
        deleted = before - len(self._docs())
        if deleted:
            await self._persist()
        return _InMemoryResult(deleted_count=deleted)


class InMemoryDB:
    def __init__(self):
        self.users = _InMemoryCollection()
        self.habits = _InMemoryCollection()
        self.check_ins = _InMemoryCollection()
        self.follows = _InMemoryCollection()


class _FileBackedCollection(_InMemoryCollection):
    def __init__(self, db: "FileBackedDB", key: str):
        super().__init__()
        self._db = db
        self._key = key

    def _docs(self) -> List[Dict[str, Any]]:
        return self._db._data[self._key]

    def _set_docs(self, docs: List[Dict[str, Any]]) -> None:
        self._db._data[self._key] = docs

    async def _persist(self) -> None:
        await self._db._save_to_disk()

    async def insert_one(self, doc: Dict[str, Any]):
        async with self._db._lock:
            return await super().insert_one(doc)

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any]):
        async with self._db._lock:
            return await super().update_one(query, update)

    async def delete_one(self, query: Dict[str, Any]):
        async with self._db._lock:
            return await super().delete_one(query)

    async def delete_many(self, query: Dict[str, Any]):
        async with self._db._lock:
            return await super().delete_many(query)


class FileBackedDB:
    def __init__(self, path: Path):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._data: Dict[str, List[Dict[str, Any]]] = {key: [] for key in COLLECTIONS}
        self._load_from_disk()

        self.users = _FileBackedCollection(self, "users")
        self.habits = _FileBackedCollection(self, "habits")
        self.check_ins = _FileBackedCollection(self, "check_ins")
        self.follows = _FileBackedCollection(self, "follows")

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            loaded = json.loads(raw) if raw.strip() else {}
        except (OSError, ValueError) as e:
            logger.warning("Failed to load file-backed DB (%s). Starting empty.", str(e))
            return
        if isinstance(loaded, dict):
            for key in COLLECTIONS:
                value = loaded.get(key)
                if isinstance(value, list):
                    self._data[key] = value

    async def _save_to_disk(self) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        payload = json.dumps(self._data, ensure_ascii=False, separators=(",", ":"))
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, self._path)


async def ensure_indexes(db: Any) -> None:
    for collection, fields in UNIQUE_INDEXES:
        await getattr(db, collection).create_index([(f, 1) for f in fields], unique=True)


async def connect_database() -> Tuple[Optional[AsyncIOMotorClient], Any]:
    """Open the configured store. Returns ``(mongo_client_or_None, db)``."""
    client = None
    db: Any = None

    if settings.MONGO_URL:
        try:
            client = AsyncIOMotorClient(settings.MONGO_URL, serverSelectionTimeoutMS=2000)
            await client.admin.command("ping")
            db = client[settings.DB_NAME]
            logger.info("Connected to MongoDB: %s", settings.DB_NAME)
        except Exception as e:
            logger.warning("MongoDB not available (%s). Falling back to local store.", str(e))
            if client is not None:
                client.close()
            client = None

    if db is None:
        if settings.DATA_FILE == ":memory:":
            db = InMemoryDB()
            logger.warning("Using in-memory DB (data is lost on restart).")
        else:
            path = Path(settings.DATA_FILE) if settings.DATA_FILE else settings.DEFAULT_DATA_FILE
            db = FileBackedDB(path)
            logger.warning("Using file-backed DB at %s (data persists between restarts).", str(path))

    await ensure_indexes(db)
    return client, db
