import asyncio
import copy
from collections import defaultdict

import pytest

from identity import Identity, IdentityNotFound, IdentityServiceError, PhoneAlreadyRegistered
from store import DocumentExists, uid


class TransactionConflict(Exception):
    pass


def _matches(doc: dict, query: dict) -> bool:
    for field, expected in query.items():
        value = doc.get(field)
        if isinstance(expected, dict) and "$in" in expected:
            if value not in expected["$in"]:
                return False
        elif value != expected:
            return False
    return True


# ─── DOCUMENT STORE ────────────────────────────────────
class FakeTransaction:
    """Buffers writes and remembers the version of every document it read."""

    def __init__(self, store):
        self._store = store
        self.reads = {}
        self.writes = {}

    async def get(self, collection, doc_id):
        await asyncio.sleep(0)
        key = (collection, doc_id)
        if key in self.writes:
            return {**copy.deepcopy(self.writes[key]), "id": doc_id}
        version, doc = self._store._entry(key)
        self.reads.setdefault(key, version)
        return None if doc is None else {**doc, "id": doc_id}

    async def create(self, collection, doc_id, data):
        if await self.get(collection, doc_id) is not None:
            raise DocumentExists(collection, doc_id)
        self.writes[(collection, doc_id)] = copy.deepcopy(data)

    async def update(self, collection, doc_id, fields=None, increments=None):
        current = await self.get(collection, doc_id)
        if current is None:
            return False
        current.pop("id")
        current.update(fields or {})
        for field, amount in (increments or {}).items():
            current[field] = current.get(field, 0) + amount
        self.writes[(collection, doc_id)] = current
        return True

    def commit(self) -> bool:
        for key, version in self.reads.items():
            if self._store._entry(key)[0] != version:
                return False
        for key, doc in self.writes.items():
            self._store._put(key, doc)
        return True


class FakeStore:
    """In-memory document store with optimistic, commit-time conflict checks."""

    def __init__(self):
        self._docs = {}
        self._versions = defaultdict(int)
        self.fail_commits = 0
        self.commit_error = RuntimeError("transaction aborted")
        self.transaction_delay = 0
        self.max_attempts = 5
        self.conflicts = 0

    def _entry(self, key):
        doc = self._docs.get(key)
        return self._versions[key], (copy.deepcopy(doc) if doc is not None else None)

    def _put(self, key, doc):
        self._docs[key] = copy.deepcopy(doc)
        self._versions[key] += 1

    def seed(self, collection, doc_id, data):
        self._put((collection, doc_id), data)
        return doc_id

    def doc(self, collection, doc_id):
        doc = self._docs.get((collection, doc_id))
        return None if doc is None else {**copy.deepcopy(doc), "id": doc_id}

    def all(self, collection):
        return [{**copy.deepcopy(d), "id": k[1]} for k, d in self._docs.items() if k[0] == collection]

    async def get(self, collection, doc_id):
        await asyncio.sleep(0)
        return self.doc(collection, doc_id)

    async def find(self, collection, query=None, limit=100, sort=None):
        await asyncio.sleep(0)
        rows = [d for d in self.all(collection) if _matches(d, query or {})]
        if sort:
            field, direction = sort
            rows.sort(key=lambda d: str(d.get(field, "")), reverse=direction < 0)
        return rows if limit is None else rows[:limit]

    async def count(self, collection, query=None):
        return len(await self.find(collection, query, limit=None))

    async def insert(self, collection, data, doc_id=None):
        await asyncio.sleep(0)
        doc_id = doc_id or uid()
        if (collection, doc_id) in self._docs:
            raise DocumentExists(collection, doc_id)
        self._put((collection, doc_id), data)
        return doc_id

    async def update(self, collection, doc_id, fields, expected=None):
        await asyncio.sleep(0)
        key = (collection, doc_id)
        doc = self._docs.get(key)
        if doc is None or not _matches(doc, expected or {}):
            return False
        self._put(key, {**doc, **fields})
        return True

    async def run_transaction(self, fn):
        for _ in range(self.max_attempts):
            txn = FakeTransaction(self)
            result = await fn(txn)
            if self.transaction_delay:
                await asyncio.sleep(self.transaction_delay)
            if self.fail_commits:
                self.fail_commits -= 1
                raise self.commit_error
            if txn.commit():
                return result
            self.conflicts += 1
        raise TransactionConflict("too much contention")


# ─── IDENTITY SERVICE ──────────────────────────────────
class FakeIdentity:
    """Records every create and delete so tests can check compensation."""

    def __init__(self, admins=("admin-1",)):
        self.users = {}
        self.admins = set(admins)
        self.created = []
        self.deleted = []
        self.lookup_error = None
        self.create_error = None
        self.delete_error = None
        self.registered_elsewhere = None
        self.tokens = {}

    def add_user(self, uid, phone, display_name=None):
        self.users[uid] = Identity(uid=uid, phone=phone, display_name=display_name)
        return self.users[uid]

    async def lookup_by_phone(self, phone):
        await asyncio.sleep(0)
        if self.lookup_error:
            raise self.lookup_error
        for identity in self.users.values():
            if identity.phone == phone:
                return identity
        raise IdentityNotFound(phone)

    async def create_identity(self, phone, display_name):
        await asyncio.sleep(0)
        if self.registered_elsewhere:
            # Someone else registers the phone between lookup and create
            self.users[self.registered_elsewhere.uid] = self.registered_elsewhere
            self.registered_elsewhere = None
            raise PhoneAlreadyRegistered(phone)
        if self.create_error:
            raise self.create_error
        if any(i.phone == phone for i in self.users.values()):
            raise PhoneAlreadyRegistered(phone)
        identity = self.add_user(f"uid-{len(self.created) + 1}", phone, display_name)
        self.created.append(identity.uid)
        return identity

    async def delete_identity(self, uid):
        self.deleted.append(uid)
        if self.delete_error:
            raise self.delete_error
        self.users.pop(uid, None)

    async def is_admin(self, uid):
        return uid in self.admins

    async def grant_admin(self, uid):
        if uid not in self.users:
            raise IdentityNotFound(uid)
        self.admins.add(uid)

    async def verify_token(self, id_token):
        if id_token not in self.tokens:
            raise IdentityServiceError("invalid token")
        return self.tokens[id_token]


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def identity():
    return FakeIdentity()


ASHA = {
    "fullName": "Asha Devi",
    "displayName": "Asha",
    "phone": "9876543210",
    "profession": "counselor",
    "languages": ["hi"],
    "upiId": "asha@upi",
}


@pytest.fixture
def asha_application():
    return dict(ASHA)
