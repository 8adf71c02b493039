# src/infrastructure/hold_store.py

import logging

from redis import Redis

from src.domain.hold import HOLD_KEY_PREFIX, Hold, hold_key_pattern

logger = logging.getLogger(__name__)

CLAIM_KEY_PREFIX = "hold-claim"
SCAN_BATCH_SIZE = 200


class RedisHoldStore:
    """
    Ephemeral hold storage. One key per hold, expiring with the hold TTL.

    Keys are the hold ids themselves (hold:{event}:{user}:{ms}:{suffix}),
    so all holds of an event can be found with a single SCAN pattern.
    Claim keys live under a different prefix and never match that pattern.
    """

    def __init__(self, client: Redis):
        self.client = client

    def save(self, hold: Hold, ttl_seconds: int) -> bool:
        created = self.client.set(hold.hold_id, hold.to_json(), ex=ttl_seconds, nx=True)
        return bool(created)

    def get(self, hold_id: str) -> Hold | None:
        if not _is_hold_key(hold_id):
            return None
        raw = self.client.get(hold_id)
        if raw is None:
            return None
        return Hold.from_json(raw)

    def delete(self, hold_id: str) -> bool:
        """Returns True only for the caller that actually removed the key."""
        if not _is_hold_key(hold_id):
            return False
        return self.client.delete(hold_id) == 1

    def active_holds(self, event_id: str) -> list[Hold]:
        keys = list(self.client.scan_iter(match=hold_key_pattern(event_id), count=SCAN_BATCH_SIZE))
        if not keys:
            return []

        holds = []
        # Keys can expire between SCAN and MGET; those come back as None.
        for raw in self.client.mget(keys):
            if raw is None:
                continue
            holds.append(Hold.from_json(raw))
        return holds

    # -----------------------------
    # Fulfillment claims
    # -----------------------------
    def claim(self, hold_id: str, ttl_seconds: int) -> bool:
        """
        SET NX on a claim key: exactly one concurrent fulfillment
        of the same hold gets True.
        """
        claimed = self.client.set(_claim_key(hold_id), "1", ex=ttl_seconds, nx=True)
        return bool(claimed)

    def release_claim(self, hold_id: str) -> None:
        self.client.delete(_claim_key(hold_id))


def _claim_key(hold_id: str) -> str:
    return f"{CLAIM_KEY_PREFIX}:{hold_id}"


def _is_hold_key(hold_id: str) -> bool:
    # Caller-supplied ids must never reach claim keys or other namespaces.
    return hold_id.startswith(f"{HOLD_KEY_PREFIX}:")
