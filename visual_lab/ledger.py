"""
ledger.py — Users, credit balances, generation logs and image history.

  MemoryLedgerStore  — in-process, used by tests and one-off CLI runs
  JsonLedgerStore    — one JSON document on disk (db.json) + PNG files for history

Balances are written as absolute values (set_balance / set_credits), never
as deltas. Every read-modify-write holds the store lock, so a single
set_balance is atomic. Serialising concurrent renders for one user is the
credit gate's job (see credits.py).
"""

from __future__ import annotations

import contextlib
import copy
import json
import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterator, List, Optional

from .errors import UserNotFound
from .images import ImagePart, save_png, to_data_url

logger = logging.getLogger(__name__)

DEFAULT_CREDITS = 10
DEFAULT_HISTORY_LIMIT = 60


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


# ── Records ───────────────────────────────────────────────────────────────────

@dataclass
class User:
    id: str
    username: str
    role: str = "user"           # "admin" | "user"
    credits: int = DEFAULT_CREDITS

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class RechargeLog:
    id: str
    userId: str
    username: str
    amount: int
    previousCredits: int
    newCredits: int
    timestamp: int
    adminId: str
    adminName: str


@dataclass
class GenerationRecord:
    id: str
    userId: str
    username: str
    timestamp: int


@dataclass
class HistoryRecord:
    id: str
    userId: str
    username: str
    imageUrl: str                # file path (JsonLedgerStore) or data URL (MemoryLedgerStore)
    prompt: str
    timestamp: int


def _empty_db() -> dict:
    return {"users": [], "rechargeLogs": [], "generationLogs": [], "imageHistory": []}


# ── Store ─────────────────────────────────────────────────────────────────────

class MemoryLedgerStore:
    """Store contract backed by a dict. Subclasses persist it."""

    def __init__(
        self,
        default_credits: int = DEFAULT_CREDITS,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self.default_credits = default_credits
        self.history_limit = history_limit
        self._lock = threading.Lock()
        self._db = _empty_db()

    # ── Persistence hooks ─────────────────────────────────────────────────────

    def _commit(self) -> None:
        pass

    def _store_image(self, record_id: str, image: ImagePart) -> str:
        return to_data_url(image)

    def _discard_image(self, image_url: str) -> None:
        pass

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[dict]:
        """
        Hold the store lock for one mutation and commit it. If the body or the
        commit raises, the in-memory document is restored to its prior state.
        """
        with self._lock:
            snapshot = copy.deepcopy(self._db)
            try:
                yield self._db
                self._commit()
            except BaseException:
                self._db = snapshot
                raise

    # ── Users ─────────────────────────────────────────────────────────────────

    def _find_user(self, user_id: str) -> dict:
        for row in self._db["users"]:
            if row["id"] == user_id:
                return row
        raise UserNotFound(f"用户不存在: {user_id}")

    def get_user(self, user_id: str) -> User:
        with self._lock:
            return User(**self._find_user(user_id))

    def find_user_by_name(self, username: str) -> Optional[User]:
        with self._lock:
            for row in self._db["users"]:
                if row["username"] == username:
                    return User(**row)
        return None

    def list_users(self) -> List[User]:
        with self._lock:
            return [User(**row) for row in self._db["users"]]

    def create_user(
        self,
        username: str,
        role: str = "user",
        credits: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> User:
        if role not in ("admin", "user"):
            raise ValueError(f"unknown role {role!r}")
        with self._transaction() as db:
            if any(row["username"] == username for row in db["users"]):
                raise ValueError(f"用户名已存在: {username}")
            user = User(
                id=user_id or _new_id(),
                username=username,
                role=role,
                credits=self.default_credits if credits is None else credits,
            )
            db["users"].append(asdict(user))
        logger.info("created user %s (%s) with %d credits", user.username, user.role, user.credits)
        return user

    # ── Credits ───────────────────────────────────────────────────────────────

    def get_balance(self, user_id: str) -> int:
        with self._lock:
            return int(self._find_user(user_id)["credits"])

    def set_balance(self, user_id: str, balance: int) -> int:
        if balance < 0:
            raise ValueError(f"balance cannot be negative ({balance})")
        with self._transaction():
            self._find_user(user_id)["credits"] = balance
        return balance

    def set_credits(self, user_id: str, credits: int, admin: User) -> User:
        """Admin recharge: set an absolute balance and log the change."""
        if credits < 0:
            raise ValueError(f"credits cannot be negative ({credits})")
        with self._transaction() as db:
            row = self._find_user(user_id)
            previous = int(row["credits"])
            row["credits"] = credits
            db["rechargeLogs"].append(asdict(RechargeLog(
                id=_new_id(),
                userId=row["id"],
                username=row["username"],
                amount=credits - previous,
                previousCredits=previous,
                newCredits=credits,
                timestamp=_now_ms(),
                adminId=admin.id,
                adminName=admin.username,
            )))
            user = User(**row)
        logger.info("credits for %s set %d → %d by %s", user.username, previous, credits, admin.username)
        return user

    def list_recharge_logs(self, user_id: Optional[str] = None) -> List[RechargeLog]:
        with self._lock:
            rows = [r for r in self._db["rechargeLogs"] if user_id is None or r["userId"] == user_id]
        return sorted((RechargeLog(**r) for r in rows), key=lambda r: r.timestamp, reverse=True)

    # ── Generation log ────────────────────────────────────────────────────────

    def append_generation_record(self, user_id: str, timestamp: Optional[int] = None) -> GenerationRecord:
        with self._transaction() as db:
            row = self._find_user(user_id)
            record = GenerationRecord(
                id=_new_id(),
                userId=row["id"],
                username=row["username"],
                timestamp=timestamp or _now_ms(),
            )
            db["generationLogs"].append(asdict(record))
        return record

    def list_generation_records(self, user_id: Optional[str] = None) -> List[GenerationRecord]:
        with self._lock:
            rows = [r for r in self._db["generationLogs"] if user_id is None or r["userId"] == user_id]
        return sorted((GenerationRecord(**r) for r in rows), key=lambda r: r.timestamp, reverse=True)

    # ── Image history ─────────────────────────────────────────────────────────

    def append_history_record(
        self,
        user_id: str,
        image: ImagePart,
        prompt: str,
        timestamp: Optional[int] = None,
    ) -> HistoryRecord:
        image_url: Optional[str] = None
        try:
            with self._transaction() as db:
                row = self._find_user(user_id)
                record_id = _new_id()
                image_url = self._store_image(record_id, image)
                record = HistoryRecord(
                    id=record_id,
                    userId=row["id"],
                    username=row["username"],
                    imageUrl=image_url,
                    prompt=prompt,
                    timestamp=timestamp or _now_ms(),
                )
                db["imageHistory"].append(asdict(record))
                stale = self._prune_history(db, user_id)
        except BaseException:
            if image_url is not None:
                self._discard_image(image_url)
            raise
        for url in stale:
            self._discard_image(url)
        return record

    def _prune_history(self, db: dict, user_id: str) -> List[str]:
        """Drop this user's oldest records beyond the limit. Returns their image URLs."""
        mine = [h for h in db["imageHistory"] if h["userId"] == user_id]
        if len(mine) <= self.history_limit:
            return []
        mine.sort(key=lambda h: h["timestamp"], reverse=True)
        stale = mine[self.history_limit:]
        stale_ids = {h["id"] for h in stale}
        db["imageHistory"] = [h for h in db["imageHistory"] if h["id"] not in stale_ids]
        return [h["imageUrl"] for h in stale]

    def list_history(self, user_id: Optional[str] = None) -> List[HistoryRecord]:
        with self._lock:
            rows = [h for h in self._db["imageHistory"] if user_id is None or h["userId"] == user_id]
        return sorted((HistoryRecord(**h) for h in rows), key=lambda h: h.timestamp, reverse=True)

    def delete_history(self, record_id: str, user_id: str, is_admin: bool = False) -> bool:
        removed: Optional[dict] = None
        with self._transaction() as db:
            for index, h in enumerate(db["imageHistory"]):
                if h["id"] == record_id and (h["userId"] == user_id or is_admin):
                    removed = db["imageHistory"].pop(index)
                    break
        if removed is None:
            return False
        self._discard_image(removed["imageUrl"])
        return True


class JsonLedgerStore(MemoryLedgerStore):
    """
    Persists the store as one JSON document. History images are written as
    PNG files under <db dir>/history/ and referenced by path.

    A fresh database is seeded with an admin account (9999 credits).
    """

    def __init__(
        self,
        path: Path,
        default_credits: int = DEFAULT_CREDITS,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        super().__init__(default_credits=default_credits, history_limit=history_limit)
        self.path = Path(path)
        self.image_dir = self.path.parent / "history"
        self._db = self._load()

    def _load(self) -> dict:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            db = _empty_db()
            db["users"].append(asdict(User(id="admin-1", username="admin", role="admin", credits=9999)))
            self.path.write_text(json.dumps(db, ensure_ascii=False, indent=2), encoding="utf-8")
            logger.info("initialised database at %s", self.path)
            return db
        db = json.loads(self.path.read_text(encoding="utf-8"))
        for key, value in _empty_db().items():
            db.setdefault(key, value)
        return db

    def _commit(self) -> None:
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._db, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def _store_image(self, record_id: str, image: ImagePart) -> str:
        return str(save_png(image, self.image_dir / f"{record_id}.png"))

    def _discard_image(self, image_url: str) -> None:
        path = Path(image_url)
        if path.parent == self.image_dir and path.exists():
            path.unlink()


