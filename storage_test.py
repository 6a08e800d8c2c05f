import asyncio

import pytest
from pymongo.errors import DuplicateKeyError

from habitcircle import settings
from habitcircle.storage import FileBackedDB, InMemoryDB, connect_database, ensure_indexes


def run(coro):
    return asyncio.run(coro)


def test_check_in_period_is_unique_per_habit():
    async def scenario():
        db = InMemoryDB()
        await ensure_indexes(db)
        await db.check_ins.insert_one({"id": "1", "habit_id": "h1", "period_start": "2026-10-19T00:00:00+00:00"})
        # Same period, other habit is fine.
        await db.check_ins.insert_one({"id": "2", "habit_id": "h2", "period_start": "2026-10-19T00:00:00+00:00"})
        with pytest.raises(DuplicateKeyError):
            await db.check_ins.insert_one({"id": "3", "habit_id": "h1", "period_start": "2026-10-19T00:00:00+00:00"})
        return await db.check_ins.find({}).to_list(None)

    assert [d["id"] for d in run(scenario())] == ["1", "2"]


def test_update_cannot_collide_with_another_document():
    async def scenario():
        db = InMemoryDB()
        await ensure_indexes(db)
        await db.habits.insert_one({"id": "a", "user_id": "u", "name": "Read"})
        await db.habits.insert_one({"id": "b", "user_id": "u", "name": "Run"})
        # Rewriting a document with its own values is not a conflict.
        await db.habits.update_one({"id": "a"}, {"$set": {"name": "Read"}})
        with pytest.raises(DuplicateKeyError):
            await db.habits.update_one({"id": "b"}, {"$set": {"name": "Read"}})
        return await db.habits.find_one({"id": "b"})

    assert run(scenario())["name"] == "Run"


def test_query_operators():
    async def scenario():
        db = InMemoryDB()
        for i, name in enumerate(["Ada Lovelace", "Grace Hopper", "Alan Turing"]):
            await db.users.insert_one({"id": str(i), "name": name, "email": f"user{i}@example.org"})

        pattern = {"$regex": "a", "$options": "i"}
        some = await db.users.find({"id": {"$ne": "0"}, "$or": [{"name": pattern}, {"email": pattern}]}).to_list(None)
        picked = await db.users.find({"id": {"$in": ["0", "2"]}}).sort("name", -1).to_list(None)
        limited = await db.users.find({}).sort("id", 1).limit(2).to_list(10)
        return some, picked, limited

    some, picked, limited = run(scenario())
    assert {u["id"] for u in some} == {"1", "2"}
    assert [u["name"] for u in picked] == ["Alan Turing", "Ada Lovelace"]
    assert [u["id"] for u in limited] == ["0", "1"]


def test_delete_many_and_projection():
    async def scenario():
        db = InMemoryDB()
        for i in range(3):
            await db.check_ins.insert_one({"_id": i, "id": str(i), "habit_id": "h" if i < 2 else "other"})
        result = await db.check_ins.delete_many({"habit_id": "h"})
        remaining = await db.check_ins.find({}, {"_id": 0}).to_list(None)
        return result.deleted_count, remaining

    deleted, remaining = run(scenario())
    assert deleted == 2
    assert remaining == [{"id": "2", "habit_id": "other"}]


def test_file_backed_db_persists(tmp_path):
    path = tmp_path / "db.json"

    async def write():
        db = FileBackedDB(path)
        await ensure_indexes(db)
        await db.habits.insert_one({"id": "h", "user_id": "u", "name": "Stretch"})

    async def read():
        db = FileBackedDB(path)
        return await db.habits.find_one({"id": "h"})

    run(write())
    assert run(read())["name"] == "Stretch"


def test_connect_database_falls_back_to_memory(monkeypatch):
    monkeypatch.setattr(settings, "MONGO_URL", None)
    monkeypatch.setattr(settings, "DATA_FILE", ":memory:")

    client, db = run(connect_database())

    assert client is None
    assert isinstance(db, InMemoryDB)
