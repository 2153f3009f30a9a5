"""Message history: store backends and the bridge the hub talks to.

Stores raise PersistenceUnavailable when they cannot serve a request. The
bridge runs every store call on one worker thread, so reads observe earlier
appends, and turns failures into result values or empty answers. Message
embeddings are computed on a separate thread before the append is queued.
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Protocol, Sequence

import cbor2
from pymongo import DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from .codec import encode, iter_decode
from .constants import STORE_LOGFILE, STORE_MEMORY, STORE_MONGODB
from .errors import EmbeddingUnavailable, PersistenceUnavailable
from .paths import ensure_parent_dir
from .util import cosine_similarity, expand_path

if TYPE_CHECKING:
    from .config import RelayRuntimeConfig
    from .stats import StatsManager


@dataclass(frozen=True)
class HistoryRecord:
    sender: str
    body: str
    timestamp: float
    embedding: list[float] | None = None

    def to_map(self) -> dict[str, Any]:
        m: dict[str, Any] = {"sender": self.sender, "body": self.body, "ts": self.timestamp}
        if self.embedding:
            m["embedding"] = list(self.embedding)
        return m

    @classmethod
    def from_map(cls, m: dict[str, Any]) -> HistoryRecord:
        emb = m.get("embedding")
        return cls(
            sender=str(m.get("sender", "")),
            body=str(m.get("body", "")),
            timestamp=float(m.get("ts", 0.0)),
            embedding=[float(x) for x in emb] if isinstance(emb, list) and emb else None,
        )


@dataclass(frozen=True)
class StoreResult:
    ok: bool
    error: str | None = None


class HistoryStore(Protocol):
    """Append-only message history."""

    def append(self, record: HistoryRecord) -> None: ...

    def recent(self, limit: int) -> list[HistoryRecord]:
        """Most recent `limit` records, oldest first."""
        ...

    def similar(self, vector: Sequence[float], k: int) -> list[HistoryRecord]:
        """Up to `k` records nearest to `vector`, most similar first."""
        ...

    def close(self) -> None: ...


class MemoryHistoryStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[HistoryRecord] = []

    def append(self, record: HistoryRecord) -> None:
        with self._lock:
            self._records.append(record)

    def recent(self, limit: int) -> list[HistoryRecord]:
        if limit <= 0:
            return []
        with self._lock:
            return list(self._records[-int(limit):])

    def similar(self, vector: Sequence[float], k: int) -> list[HistoryRecord]:
        if k <= 0 or not vector:
            return []
        with self._lock:
            candidates = [
                r for r in self._records if r.embedding and len(r.embedding) == len(vector)
            ]
        scored = [(cosine_similarity(vector, r.embedding or ()), i, r) for i, r in enumerate(candidates)]
        # Ties go to the newer record.
        scored.sort(key=lambda t: (t[0], t[1]), reverse=True)
        return [r for _, _, r in scored[: int(k)]]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def close(self) -> None:
        pass


class LogFileHistoryStore(MemoryHistoryStore):
    """History kept in memory and appended to a CBOR sequence file."""

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = Path(expand_path(path))
        self.log = logging.getLogger("chatrelay.persistence")
        self._write_lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        loaded = 0
        try:
            with open(self.path, "rb") as f:
                for item in iter_decode(f):
                    if isinstance(item, dict):
                        super().append(HistoryRecord.from_map(item))
                        loaded += 1
        except cbor2.CBORDecodeError as e:
            # A torn final write; keep what decoded cleanly.
            self.log.warning(
                "History log %s is truncated after %s records: %s", self.path, loaded, e
            )
        except OSError as e:
            raise PersistenceUnavailable(f"cannot read history log {self.path}: {e}") from e
        self.log.info("Loaded %s history records from %s", loaded, self.path)

    def append(self, record: HistoryRecord) -> None:
        payload = encode(record.to_map())
        with self._write_lock:
            try:
                ensure_parent_dir(self.path)
                with open(self.path, "ab") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise PersistenceUnavailable(
                    f"cannot append to history log {self.path}: {e}"
                ) from e
        super().append(record)


class MongoHistoryStore:
    """History in a MongoDB collection, with Atlas vector search for `similar`."""

    def __init__(
        self,
        *,
        mongo_uri: str,
        mongo_db: str,
        mongo_collection: str,
        vector_index: str = "message_vector_index",
        num_candidates: int = 50,
        timeout_ms: int = 5000,
    ) -> None:
        if not mongo_uri or not mongo_db or not mongo_collection:
            raise ValueError("MongoDB URI, database, and collection are required")
        self.vector_index = vector_index
        self.num_candidates = int(num_candidates)
        self._client = MongoClient(mongo_uri, serverSelectionTimeoutMS=int(timeout_ms))
        self._coll = self._client[mongo_db][mongo_collection]

    @staticmethod
    def _to_doc(record: HistoryRecord) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "username": record.sender,
            "message": record.body,
            "timestamp": record.timestamp,
        }
        if record.embedding:
            doc["embedding"] = list(record.embedding)
        return doc

    @staticmethod
    def _from_doc(doc: dict[str, Any]) -> HistoryRecord:
        emb = doc.get("embedding")
        return HistoryRecord(
            sender=str(doc.get("username", "")),
            body=str(doc.get("message", "")),
            timestamp=float(doc.get("timestamp") or 0.0),
            embedding=list(emb) if isinstance(emb, list) and emb else None,
        )

    def append(self, record: HistoryRecord) -> None:
        try:
            self._coll.insert_one(self._to_doc(record))
        except PyMongoError as e:
            raise PersistenceUnavailable(f"MongoDB insert failed: {e}") from e

    def recent(self, limit: int) -> list[HistoryRecord]:
        if limit <= 0:
            return []
        try:
            docs = list(
                self._coll.find({}, {"_id": 0}).sort("timestamp", DESCENDING).limit(int(limit))
            )
        except PyMongoError as e:
            raise PersistenceUnavailable(f"MongoDB query failed: {e}") from e
        return [self._from_doc(d) for d in reversed(docs)]

    def similar(self, vector: Sequence[float], k: int) -> list[HistoryRecord]:
        if k <= 0 or not vector:
            return []
        pipeline = [
            {
                "$vectorSearch": {
                    "index": self.vector_index,
                    "path": "embedding",
                    "queryVector": list(vector),
                    "numCandidates": max(self.num_candidates, int(k)),
                    "limit": int(k),
                }
            },
            {"$project": {"_id": 0, "username": 1, "message": 1, "timestamp": 1}},
        ]
        try:
            docs = list(self._coll.aggregate(pipeline))
        except PyMongoError as e:
            raise PersistenceUnavailable(f"MongoDB vector search failed: {e}") from e
        return [self._from_doc(d) for d in docs]

    def close(self) -> None:
        self._client.close()


def build_store(cfg: RelayRuntimeConfig) -> HistoryStore:
    backend = cfg.store_backend
    if backend == STORE_MEMORY:
        return MemoryHistoryStore()
    if backend == STORE_LOGFILE:
        if not cfg.history_log_path:
            raise ValueError("history_log_path is required for the logfile store")
        return LogFileHistoryStore(cfg.history_log_path)
    if backend == STORE_MONGODB:
        uri = cfg.mongo_uri or os.environ.get("MONGODB_URI")
        if not uri:
            raise ValueError("mongo_uri (or MONGODB_URI) is required for the mongodb store")
        return MongoHistoryStore(
            mongo_uri=uri,
            mongo_db=cfg.mongo_db,
            mongo_collection=cfg.mongo_collection,
            vector_index=cfg.mongo_vector_index,
            num_candidates=cfg.mongo_num_candidates,
            timeout_ms=cfg.mongo_timeout_ms,
        )
    raise ValueError(f"unknown store backend {backend!r}")


class PersistenceBridge:
    """
    The hub's side of the history store.

    Appends are fire-and-forget from the router's point of view, but each one
    resolves to a StoreResult. At most `max_pending` appends are outstanding;
    past that, appends fail immediately. Queries never raise; an unreachable
    or busy store answers with an empty list after `query_timeout_s`.
    """

    def __init__(
        self,
        store: HistoryStore,
        *,
        embedder: Callable[[str], list[float]] | None = None,
        stats: StatsManager | None = None,
        query_timeout_s: float | None = 10.0,
        max_pending: int = 1000,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.stats = stats
        self.query_timeout_s = query_timeout_s
        self.max_pending = int(max_pending)
        self.log = logging.getLogger("chatrelay.persistence")
        self._worker = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="chatrelay-persist"
        )
        self._embed_worker: ThreadPoolExecutor | None = None
        if embedder is not None:
            self._embed_worker = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="chatrelay-embed"
            )
        self._pending_lock = threading.Lock()
        self._pending = 0

    def pending(self) -> int:
        with self._pending_lock:
            return self._pending

    def append(
        self,
        sender: str,
        body: str,
        timestamp: float,
        embedding: list[float] | None = None,
    ) -> Future[StoreResult]:
        with self._pending_lock:
            full = self._pending >= self.max_pending
            if not full:
                self._pending += 1

        if full:
            self._failed()
            self.log.warning(
                "History queue full, dropping record sender=%r pending=%s",
                sender,
                self.max_pending,
            )
            rejected: Future[StoreResult] = Future()
            rejected.set_result(StoreResult(False, "history queue full"))
            return rejected

        if embedding is None and self._embed_worker is not None:
            result: Future[StoreResult] = Future()
            self._embed_worker.submit(self._embed_then_store, sender, body, timestamp, result)
        else:
            result = self._worker.submit(self._store, sender, body, timestamp, embedding)
        result.add_done_callback(self._settled)
        return result

    def _settled(self, fut: Future) -> None:
        with self._pending_lock:
            self._pending -= 1

    def _embed(self, sender: str, body: str) -> list[float] | None:
        if self.embedder is None:
            return None
        try:
            return self.embedder(body)
        except EmbeddingUnavailable as e:
            self.log.warning("Storing without embedding sender=%r err=%s", sender, e)
        except Exception:
            self.log.exception("Storing without embedding sender=%r", sender)
        return None

    def _embed_then_store(
        self, sender: str, body: str, timestamp: float, result: Future[StoreResult]
    ) -> None:
        embedding = self._embed(sender, body)
        try:
            stored = self._worker.submit(self._store, sender, body, timestamp, embedding)
        except RuntimeError as e:
            # Store worker already shut down.
            self._failed()
            result.set_result(StoreResult(False, str(e)))
            return
        stored.add_done_callback(lambda f: _copy_result(f, result))

    def _store(
        self,
        sender: str,
        body: str,
        timestamp: float,
        embedding: list[float] | None,
    ) -> StoreResult:
        record = HistoryRecord(
            sender=sender, body=body, timestamp=timestamp, embedding=embedding or None
        )
        try:
            self.store.append(record)
        except PersistenceUnavailable as e:
            self._failed()
            self.log.warning("History append failed sender=%r err=%s", sender, e)
            return StoreResult(False, str(e))
        except Exception as e:
            self._failed()
            self.log.exception("History append failed sender=%r", sender)
            return StoreResult(False, str(e))
        return StoreResult(True)

    def _failed(self) -> None:
        if self.stats is not None:
            self.stats.inc("persist_failures")

    def _query(self, what: str, fn: Callable[[], list[HistoryRecord]]) -> list[HistoryRecord]:
        try:
            return self._worker.submit(fn).result(timeout=self.query_timeout_s)
        except PersistenceUnavailable as e:
            self._failed()
            self.log.warning("History %s failed err=%s", what, e)
        except TimeoutError:
            self._failed()
            self.log.warning("History %s timed out after %ss", what, self.query_timeout_s)
        except Exception:
            self._failed()
            self.log.exception("History %s failed", what)
        return []

    def recent(self, limit: int) -> list[HistoryRecord]:
        return self._query("recent", lambda: self.store.recent(int(limit)))

    def similar(self, vector: Sequence[float], k: int) -> list[HistoryRecord]:
        return self._query("similar", lambda: self.store.similar(vector, int(k)))

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until every append queued so far has been handled."""
        try:
            if self._embed_worker is not None:
                self._embed_worker.submit(lambda: None).result(timeout=timeout)
            self._worker.submit(lambda: None).result(timeout=timeout)
        except TimeoutError:
            return False
        return True

    def shutdown(self) -> None:
        if self._embed_worker is not None:
            self._embed_worker.shutdown(wait=True)
        self._worker.shutdown(wait=True)
        try:
            self.store.close()
        except Exception:
            self.log.debug("History store close failed", exc_info=True)


def _copy_result(src: Future, dst: Future) -> None:
    if src.cancelled():
        dst.set_result(StoreResult(False, "cancelled"))
    else:
        dst.set_result(src.result())
