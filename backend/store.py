import uuid
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional, Tuple
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import DuplicateKeyError, OperationFailure
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

logger = logging.getLogger(__name__)

APPLICATIONS = "applications"
LISTENERS = "listeners"
EARNINGS = "earnings"
ADMIN_EARNINGS = "admin_earnings"
CALLS = "calls"
CHATS = "chats"
CHAT_MESSAGES = "chat_messages"
TRIGGER_STATE = "trigger_state"

CHANGE_STREAM_HISTORY_LOST = 286


def now():
    return datetime.now(timezone.utc).isoformat()


def uid():
    return str(uuid.uuid4())


class DocumentExists(Exception):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} already exists")
        self.collection = collection
        self.doc_id = doc_id


class ResumeTokenExpired(Exception):
    """The saved position has already rolled off the oplog."""

    def __init__(self, collection: str):
        super().__init__(f"Resume token for {collection} is no longer in the oplog")
        self.collection = collection


def _doc(raw: Optional[dict]) -> Optional[dict]:
    """Mongo keeps the key in ``_id``; callers see it as ``id``."""
    if raw is None:
        return None
    doc = dict(raw)
    doc["id"] = doc.pop("_id")
    return doc


def _query(query: Optional[dict]) -> dict:
    query = dict(query or {})
    if "id" in query:
        query["_id"] = query.pop("id")
    return query


# ─── TRANSACTION ───────────────────────────────────────
class MongoTransaction:
    """Reads and writes bound to one multi-document transaction."""

    def __init__(self, db, session):
        self._db = db
        self._session = session

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        raw = await self._db[collection].find_one({"_id": doc_id}, session=self._session)
        return _doc(raw)

    async def create(self, collection: str, doc_id: str, data: dict):
        try:
            await self._db[collection].insert_one({**data, "_id": doc_id}, session=self._session)
        except DuplicateKeyError:
            raise DocumentExists(collection, doc_id)

    async def update(self, collection: str, doc_id: str, fields: Optional[dict] = None,
                     increments: Optional[dict] = None) -> bool:
        ops = {}
        if fields:
            ops["$set"] = fields
        if increments:
            ops["$inc"] = increments
        if not ops:
            return True
        result = await self._db[collection].update_one({"_id": doc_id}, ops, session=self._session)
        return result.matched_count > 0


# ─── DOCUMENT STORE ────────────────────────────────────
class MongoDocumentStore:
    """Keyed documents in MongoDB with transactions and change streams.

    Transactions need a replica set (or Atlas); so do change streams.
    """

    def __init__(self, mongo_url: str, db_name: str, client=None):
        self._client = client or AsyncIOMotorClient(mongo_url)
        self._db = self._client[db_name]

    async def ensure_indexes(self):
        await self._db[APPLICATIONS].create_index("phone")
        await self._db[APPLICATIONS].create_index("status")
        await self._db[LISTENERS].create_index("phone")
        await self._db[EARNINGS].create_index([("listenerId", 1), ("timestamp", -1)])

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return _doc(await self._db[collection].find_one({"_id": doc_id}))

    async def find(self, collection: str, query: Optional[dict] = None, limit: int = 100,
                   sort: Optional[Tuple[str, int]] = None) -> list:
        cursor = self._db[collection].find(_query(query))
        if sort:
            cursor = cursor.sort(sort[0], sort[1])
        return [_doc(d) for d in await cursor.to_list(limit)]

    async def count(self, collection: str, query: Optional[dict] = None) -> int:
        return await self._db[collection].count_documents(_query(query))

    async def insert(self, collection: str, data: dict, doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or uid()
        try:
            await self._db[collection].insert_one({**data, "_id": doc_id})
        except DuplicateKeyError:
            raise DocumentExists(collection, doc_id)
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: dict,
                     expected: Optional[dict] = None) -> bool:
        """Set ``fields``; with ``expected`` only when those fields still match."""
        query = {"_id": doc_id, **(expected or {})}
        result = await self._db[collection].update_one(query, {"$set": fields})
        return result.matched_count > 0

    async def run_transaction(self, fn: Callable[[MongoTransaction], Awaitable[Any]]) -> Any:
        """Run ``fn`` atomically; write conflicts re-run it from the start."""
        async with await self._client.start_session() as session:
            return await session.with_transaction(
                lambda s: fn(MongoTransaction(self._db, s)),
                read_concern=ReadConcern("snapshot"),
                write_concern=WriteConcern("majority"),
            )

    async def watch(self, collection: str, operations: Iterable[str],
                    resume_after: Optional[dict] = None) -> AsyncIterator[tuple]:
        """Yield (operation, before, after, resume_token) for changes to ``collection``.

        With ``resume_after`` the stream continues right after that event
        instead of starting at the current oplog position.
        """
        pipeline = [{"$match": {"operationType": {"$in": list(operations)}}}]
        try:
            async with self._db[collection].watch(
                pipeline,
                full_document="updateLookup",
                full_document_before_change="whenAvailable",
                resume_after=resume_after,
            ) as stream:
                async for change in stream:
                    yield (
                        change["operationType"],
                        _doc(change.get("fullDocumentBeforeChange")),
                        _doc(change.get("fullDocument")),
                        change["_id"],
                    )
        except OperationFailure as e:
            if resume_after is not None and e.code == CHANGE_STREAM_HISTORY_LOST:
                raise ResumeTokenExpired(collection) from e
            raise

    async def load_resume_token(self, name: str) -> Optional[dict]:
        state = await self._db[TRIGGER_STATE].find_one({"_id": name})
        return state.get("resumeToken") if state else None

    async def save_resume_token(self, name: str, token: Optional[dict]):
        await self._db[TRIGGER_STATE].update_one(
            {"_id": name},
            {"$set": {"resumeToken": token, "updatedAt": now()}},
            upsert=True,
        )

    def close(self):
        self._client.close()
