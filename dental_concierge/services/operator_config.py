"""Who the human operator is, read from the tenant config document.

The ``config/tenant`` document holds ``operator_phone_number`` (and room for
future settings).  Reads are cached for five minutes; ``invalidate()``
forces the next read to hit the store, e.g. after the dashboard changes
the operator.  When the document has no operator, ``OPERATOR_PHONE_NUMBER``
from the environment is used.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from dental_concierge.config import OPERATOR_PHONE_NUMBER
from dental_concierge.services.document_store import DocumentStore, DocumentStoreError

logger = logging.getLogger(__name__)

COLLECTION = "config"
TENANT_KEY = "tenant"
CACHE_TTL_SECONDS = 5 * 60


def normalize_identity(phone: str | None) -> str:
    """WhatsApp ids are bare digits; strip ``+``, spaces and dashes."""
    return "".join(ch for ch in (phone or "") if ch.isdigit())


class OperatorDirectory:
    def __init__(
        self,
        store: DocumentStore,
        *,
        fallback_identity: str = OPERATOR_PHONE_NUMBER,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._fallback = normalize_identity(fallback_identity)
        self._ttl = ttl_seconds
        self._clock = clock
        self._cached: dict[str, Any] | None = None
        self._cached_at = 0.0

    async def _config(self) -> dict[str, Any]:
        now = self._clock()
        if self._cached is not None and now - self._cached_at < self._ttl:
            return self._cached
        try:
            doc = await self._store.get(COLLECTION, TENANT_KEY) or {}
        except DocumentStoreError:
            logger.warning("Could not read tenant config; using the environment fallback")
            doc = {}
        self._cached, self._cached_at = doc, now
        return doc

    async def get_operator_identity(self) -> str | None:
        config = await self._config()
        identity = normalize_identity(config.get("operator_phone_number")) or self._fallback
        return identity or None

    async def is_operator(self, identity: str) -> bool:
        operator = await self.get_operator_identity()
        return operator is not None and normalize_identity(identity) == operator

    async def update(self, **settings: Any) -> dict[str, Any]:
        """Merge *settings* into the tenant config and drop the cache."""
        if "operator_phone_number" in settings:
            settings["operator_phone_number"] = normalize_identity(
                settings["operator_phone_number"],
            )
        doc = await self._store.atomic_merge(COLLECTION, TENANT_KEY, settings)
        self.invalidate()
        logger.info("Tenant config updated: %s", sorted(settings))
        return doc

    def invalidate(self) -> None:
        self._cached = None
