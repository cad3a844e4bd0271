# transcript_store.py
"""
Conversation transcript persistence.

Provides:
- Turn
- FirebaseTranscriptStore (Firebase Realtime Database over REST)
- DynamoTranscriptStore (table: transcripts by default)
- KeyedLocks

A transcript is stored wholesale under "<namespace>/<user_id>" as
{"messages": [{"role": ..., "content": ...}, ...]}. Saves overwrite; there is
no merge and no optimistic concurrency, so writers serialise through KeyedLocks.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterator, List, Optional

import boto3
import requests

logger = logging.getLogger("transcript_store")

USER_ROLE = "user"
SYSTEM_ROLE = "system"


@dataclass
class Turn:
    role: str
    content: str

    def to_item(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "Turn":
        return cls(role=str(item.get("role", "")), content=str(item.get("content", "")))


def serialize_transcript(transcript: List[Turn]) -> Dict[str, Any]:
    return {"messages": [turn.to_item() for turn in transcript]}


def deserialize_transcript(record: Optional[Dict[str, Any]]) -> List[Turn]:
    if not record:
        return []
    return [Turn.from_item(item) for item in record.get("messages") or []]


class FirebaseTranscriptStore:
    """Realtime Database REST access; GET returns JSON null for an absent path."""

    def __init__(self, database_url: Optional[str], namespace: str = "links/test", auth: Optional[str] = None, http: Optional[requests.Session] = None, timeout: float = 10.0):
        self.database_url = database_url.rstrip("/") if database_url else None
        self.namespace = namespace.strip("/")
        self.auth = auth
        self.timeout = timeout
        self._http = http or requests.Session()

    @property
    def backend(self) -> str:
        return "firebase"

    def _url(self, user_id: str) -> str:
        if not self.database_url:
            raise RuntimeError("DATABASE_URL is required to access the Firebase transcript store.")
        if not user_id:
            raise ValueError("user_id must not be empty")
        return f"{self.database_url}/{self.namespace}/{user_id}.json"

    def _params(self) -> Dict[str, str]:
        return {"auth": self.auth} if self.auth else {}

    def load(self, user_id: str) -> List[Turn]:
        url = self._url(user_id)
        try:
            response = self._http.get(url, params=self._params(), timeout=self.timeout)
            response.raise_for_status()
            return deserialize_transcript(response.json())
        except Exception:
            logger.exception("Firebase get failed for %s", user_id)
            raise

    def save(self, user_id: str, transcript: List[Turn]) -> None:
        url = self._url(user_id)
        try:
            response = self._http.put(url, params=self._params(), json=serialize_transcript(transcript), timeout=self.timeout)
            response.raise_for_status()
        except Exception:
            logger.exception("Firebase put failed for %s", user_id)
            raise


class DynamoTranscriptStore:
    """Persist transcripts to DynamoDB using table name from env or default 'transcripts'."""

    def __init__(self, table_name: Optional[str], region: str, namespace: str = "links/test", table: Any = None):
        self.table_name = table_name or "transcripts"
        self.region = region
        self.namespace = namespace.strip("/")
        if table is None:
            resource = boto3.resource("dynamodb", region_name=region)
            table = resource.Table(self.table_name)
        self._table = table

    @property
    def backend(self) -> str:
        return "dynamodb"

    def _key(self, user_id: str) -> Dict[str, str]:
        if not user_id:
            raise ValueError("user_id must not be empty")
        return {"user_id": f"{self.namespace}/{user_id}"}

    def load(self, user_id: str) -> List[Turn]:
        try:
            response = self._table.get_item(Key=self._key(user_id))
            return deserialize_transcript(response.get("Item"))
        except Exception:
            logger.exception("Dynamo get failed for %s", user_id)
            raise

    def save(self, user_id: str, transcript: List[Turn]) -> None:
        item = {**self._key(user_id), **serialize_transcript(transcript)}
        try:
            self._table.put_item(Item=item)
        except Exception:
            logger.exception("Dynamo put failed for %s", user_id)
            raise


class KeyedLocks:
    """One mutex per identifier, kept only while someone holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List[Any]] = {}  # key -> [lock, users]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _acquire_entry(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _release_entry(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._acquire_entry(key)
        try:
            with lock:
                yield
        finally:
            self._release_entry(key)


def build_store(settings) -> Any:
    if settings.store_backend == "dynamodb":
        return DynamoTranscriptStore(settings.dynamo_table_name, settings.aws_region, settings.store_namespace)
    if settings.store_backend != "firebase":
        raise ValueError(f"Unknown STORE_BACKEND {settings.store_backend!r}; expected 'firebase' or 'dynamodb'")
    return FirebaseTranscriptStore(settings.firebase.database_url, settings.store_namespace, auth=settings.firebase.auth)
