"""Keyed document store with atomic read-modify-write.

Every durable record in the concierge (sessions, profiles, handoffs, tenant
configuration) is a JSON document addressed by ``(collection, key)``.  The
only write primitive is ``atomic_update``: the caller passes a pure
*mutator* that receives the current document (or ``None``) and returns the
new one.  Backends guarantee that concurrent updates on the same address
never lose writes.

Backends
────────
• ``InMemoryDocumentStore`` — per-key ``asyncio.Lock``; used locally, in
  tests, and as the fallback when the durable store is unreachable.
• ``DynamoDBDocumentStore`` — single table, partition key ``pk`` =
  ``"<collection>#<key>"``, body stored as a JSON string next to an integer
  ``version``.  Writes are conditional on the version read (optimistic
  locking) and retried on conflict, so the mutator may run more than once.
• ``FallbackDocumentStore`` — wraps another backend and switches to process
  memory, once and for good, when that backend raises ``DocumentStoreError``.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Document = dict[str, Any]
Mutator = Callable[[Document | None], Document]

MAX_CONFLICT_RETRIES = 5


class DocumentStoreError(Exception):
    """Raised when the backing store cannot serve a request."""


class DocumentStore:
    """Abstract async document store."""

    async def get(self, collection: str, key: str) -> Document | None:
        raise NotImplementedError

    async def atomic_update(self, collection: str, key: str, mutator: Mutator) -> Document:
        raise NotImplementedError

    async def delete(self, collection: str, key: str) -> None:
        raise NotImplementedError

    async def scan(self, collection: str) -> list[Document]:
        """Return every document in *collection* (small collections only)."""
        raise NotImplementedError

    async def atomic_merge(self, collection: str, key: str, partial: Document) -> Document:
        """Shallow-merge *partial* into the stored document atomically."""

        def _merge(current: Document | None) -> Document:
            return {**(current or {}), **partial}

        return await self.atomic_update(collection, key, _merge)


# ── In-memory backend ────────────────────────────────────────────────


class InMemoryDocumentStore(DocumentStore):
    """Process-local store.  Documents are deep-copied in and out so callers
    can never mutate stored state by accident."""

    def __init__(self) -> None:
        self._docs: dict[tuple[str, str], Document] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, address: tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(address)
        if lock is None:
            lock = self._locks[address] = asyncio.Lock()
        return lock

    async def get(self, collection: str, key: str) -> Document | None:
        doc = self._docs.get((collection, key))
        return copy.deepcopy(doc) if doc is not None else None

    async def atomic_update(self, collection: str, key: str, mutator: Mutator) -> Document:
        address = (collection, key)
        async with self._lock_for(address):
            current = self._docs.get(address)
            updated = mutator(copy.deepcopy(current) if current is not None else None)
            self._docs[address] = copy.deepcopy(updated)
            return copy.deepcopy(updated)

    async def delete(self, collection: str, key: str) -> None:
        address = (collection, key)
        async with self._lock_for(address):
            self._docs.pop(address, None)

    async def scan(self, collection: str) -> list[Document]:
        return [
            copy.deepcopy(doc)
            for (coll, _), doc in self._docs.items()
            if coll == collection
        ]


class FallbackDocumentStore(DocumentStore):
    """Serves from *primary* until it raises ``DocumentStoreError``, then
    from process memory for the rest of the process lifetime."""

    def __init__(self, primary: DocumentStore, *, name: str) -> None:
        self._active = primary
        self._name = name
        self._degraded = False

    @property
    def degraded(self) -> bool:
        return self._degraded

    async def _run(self, operation: str, *args: Any) -> Any:
        try:
            return await getattr(self._active, operation)(*args)
        except DocumentStoreError as exc:
            if self._degraded:
                raise
            logger.error(
                "%s store unavailable (%s); using process memory from now on", self._name, exc,
            )
            self._active = InMemoryDocumentStore()
            self._degraded = True
            return await getattr(self._active, operation)(*args)

    async def get(self, collection: str, key: str) -> Document | None:
        return await self._run("get", collection, key)

    async def atomic_update(self, collection: str, key: str, mutator: Mutator) -> Document:
        return await self._run("atomic_update", collection, key, mutator)

    async def delete(self, collection: str, key: str) -> None:
        await self._run("delete", collection, key)

    async def scan(self, collection: str) -> list[Document]:
        return await self._run("scan", collection)


# ── DynamoDB backend ─────────────────────────────────────────────────


class DynamoDBDocumentStore(DocumentStore):
    """DynamoDB-backed store with optimistic locking.

    Blocking boto3 calls are pushed to a worker thread with
    ``asyncio.to_thread`` so the event loop is never blocked.  Items may
    carry an ``expires_at`` epoch attribute (set via *ttl_seconds*) for
    DynamoDB's native TTL sweeper; the application still checks expiry
    itself because the sweeper is lazy.
    """

    def __init__(
        self,
        table_name: str,
        *,
        ttl_seconds: dict[str, int] | None = None,
        client=None,
    ) -> None:
        self._table_name = table_name
        self._ttl_seconds = ttl_seconds or {}
        self._client = client

    def _get_client(self):
        if self._client is None:
            import boto3

            self._client = boto3.client("dynamodb")
        return self._client

    @staticmethod
    def _pk(collection: str, key: str) -> str:
        return f"{collection}#{key}"

    async def _call(self, operation: str, **kwargs) -> dict[str, Any]:
        from botocore.exceptions import BotoCoreError, ClientError

        client = self._get_client()
        try:
            return await asyncio.to_thread(getattr(client, operation), **kwargs)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise
            raise DocumentStoreError(f"DynamoDB {operation} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise DocumentStoreError(f"DynamoDB {operation} failed: {exc}") from exc

    async def _read(self, collection: str, key: str) -> tuple[Document | None, int]:
        resp = await self._call(
            "get_item",
            TableName=self._table_name,
            Key={"pk": {"S": self._pk(collection, key)}},
            ConsistentRead=True,
        )
        item = resp.get("Item")
        if not item:
            return None, 0
        return json.loads(item["body"]["S"]), int(item["version"]["N"])

    async def get(self, collection: str, key: str) -> Document | None:
        doc, _ = await self._read(collection, key)
        return doc

    async def atomic_update(self, collection: str, key: str, mutator: Mutator) -> Document:
        from botocore.exceptions import ClientError

        pk = self._pk(collection, key)
        for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
            current, version = await self._read(collection, key)
            updated = mutator(current)
            item: dict[str, Any] = {
                "pk": {"S": pk},
                "collection": {"S": collection},
                "body": {"S": json.dumps(updated, default=str)},
                "version": {"N": str(version + 1)},
            }
            ttl = self._ttl_seconds.get(collection)
            if ttl:
                item["expires_at"] = {"N": str(int(time.time()) + ttl)}

            if version:
                condition = {
                    "ConditionExpression": "version = :v",
                    "ExpressionAttributeValues": {":v": {"N": str(version)}},
                }
            else:
                condition = {"ConditionExpression": "attribute_not_exists(pk)"}

            try:
                await self._call(
                    "put_item", TableName=self._table_name, Item=item, **condition,
                )
                return updated
            except ClientError:
                logger.debug(
                    "DynamoDB: version conflict on %s (attempt %d/%d)",
                    pk, attempt, MAX_CONFLICT_RETRIES,
                )

        raise DocumentStoreError(
            f"DynamoDB update of {pk} kept conflicting after {MAX_CONFLICT_RETRIES} attempts"
        )

    async def delete(self, collection: str, key: str) -> None:
        await self._call(
            "delete_item",
            TableName=self._table_name,
            Key={"pk": {"S": self._pk(collection, key)}},
        )

    async def scan(self, collection: str) -> list[Document]:
        docs: list[Document] = []
        kwargs: dict[str, Any] = {
            "TableName": self._table_name,
            "FilterExpression": "#c = :c",
            "ExpressionAttributeNames": {"#c": "collection"},
            "ExpressionAttributeValues": {":c": {"S": collection}},
        }
        while True:
            resp = await self._call("scan", **kwargs)
            docs.extend(json.loads(item["body"]["S"]) for item in resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return docs
            kwargs["ExclusiveStartKey"] = last_key
