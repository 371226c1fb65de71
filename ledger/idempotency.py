import hashlib
import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional, Union
from uuid import UUID

import structlog

from core.errors import IdempotencyConflict
from core.money import AmountLike, MoneyContext
from core.storage import InMemoryStorage, utc_now

from .models import IdempotencyRecord

logger = structlog.get_logger(__name__)

TABLE = "idempotency_keys"


@dataclass(frozen=True)
class Fresh:
    key: str


@dataclass(frozen=True)
class Cached:
    key: str
    response: dict


class IdempotencyGuard:
    """At-most-once effect for retried credit requests.

    Callers run check_or_reserve and store inside the same storage
    transaction as the work they protect; the storage serializes those
    transactions and the unique key column rejects a second record.
    Expired records keep answering retries until an external sweeper
    removes them; expired() lists what is due.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        money: Optional[MoneyContext] = None,
        ttl: timedelta = timedelta(hours=24),
        clock: Callable = utc_now,
    ):
        self.storage = storage
        self.money = money or MoneyContext()
        self.ttl = ttl
        self.clock = clock

    def fingerprint(self, referrer_id: UUID, referred_id: UUID, amount: AmountLike, currency: str) -> str:
        normalized = json.dumps(
            {
                "referrer_id": str(referrer_id),
                "referred_id": str(referred_id),
                "amount": str(self.money.parse(amount)),
                "currency": currency,
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()

    def check_or_reserve(self, key: str, fingerprint: str) -> Union[Fresh, Cached]:
        row = self.storage.get(TABLE, key)
        if row is None:
            return Fresh(key)
        if row["request_hash"] != fingerprint:
            logger.warning("idempotency_key_conflict", idempotency_key=key)
            raise IdempotencyConflict("Idempotency key already used with different request data")
        return Cached(key, row["response"])

    def store(self, key: str, fingerprint: str, response: dict) -> IdempotencyRecord:
        now = self.clock()
        stored = self.storage.insert(
            TABLE,
            {
                "key": key,
                "request_hash": fingerprint,
                "response": response,
                "created_at": now,
                "expires_at": now + self.ttl,
            },
        )
        return IdempotencyRecord(**stored)

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        row = self.storage.get(TABLE, key)
        return IdempotencyRecord(**row) if row is not None else None

    def expired(self, now=None) -> list[IdempotencyRecord]:
        now = now or self.clock()
        return [
            IdempotencyRecord(**r)
            for r in self.storage.select(TABLE, lambda r: now >= r["expires_at"])
        ]
