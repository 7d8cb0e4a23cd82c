from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis

from ...helpers import now_ts
from . import PENDING, PaymentSession


# ---- keys
def k_ps(psid: str) -> str: return f"ps:{psid}"
def k_claim(psid: str, frm: str) -> str: return f"claim:{psid}:{frm}"
def k_idemp(evt: str) -> str: return f"idemp:{evt}"


PENDING_INDEX = "pendings"

# sessions outlive the reservation TTL so a late webhook can still be
# matched to its cart
_RETAIN_SECONDS = 24 * 3600


class PaymentSessionStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def create_schema(self) -> None:
        return None

    async def save(self, ps: PaymentSession) -> None:
        mapping = {k: str(v) for k, v in ps.to_mapping().items()}
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_ps(ps.psid), mapping=mapping)
        pipe.expire(k_ps(ps.psid), self.ttl + _RETAIN_SECONDS)
        pipe.zadd(PENDING_INDEX, {ps.psid: float(ps.created_at)})
        await pipe.execute()

    async def get(self, psid: str) -> Optional[PaymentSession]:
        h = await self.r.hgetall(k_ps(psid))
        if not h:
            return None
        return PaymentSession.from_mapping(h)

    async def claim(self, psid: str, state: str, *,
                    expect: str = PENDING) -> bool:
        # NX gate per source state: first claimer wins
        if expect != PENDING:
            h = await self.r.hget(k_ps(psid), "state")
            if h != expect:
                return False
        ok = await self.r.set(
            k_claim(psid, expect), state, nx=True,
            ex=self.ttl + _RETAIN_SECONDS,
        )
        if not ok:
            return False
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_ps(psid), "state", state)
        pipe.zrem(PENDING_INDEX, psid)
        await pipe.execute()
        return True

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return True
        ok = await self.r.set(k_idemp(evt_id), "1", nx=True, ex=24 * 3600)
        return bool(ok)

    async def list_expired(self, now: float, limit: int = 500) -> List[str]:
        psids = await self.r.zrangebyscore(
            PENDING_INDEX, "-inf", now - self.ttl, start=0, num=limit
        )
        return list(psids)

    async def get_recent(
        self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        total = await self.r.zcard(PENDING_INDEX)
        psids = await self.r.zrevrange(PENDING_INDEX, 0, max(0, limit - 1))

        pipe = self.r.pipeline()
        for psid in psids:
            pipe.hgetall(k_ps(psid))
        rows = await pipe.execute()

        now = now_ts()
        items = []
        dangling = []
        for psid, h in zip(psids, rows):
            # house-keeping: index entry whose hash expired
            if not h:
                dangling.append(psid)
                continue
            ps = PaymentSession.from_mapping(h)
            if ps.state != PENDING:
                dangling.append(psid)
                continue
            items.append(ps.summary(now))
        if dangling:
            await self.r.zrem(PENDING_INDEX, *dangling)
        return int(total) - len(dangling), items

    async def remove(self, psid: str) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.zrem(PENDING_INDEX, psid)
        pipe.delete(k_ps(psid))
        await pipe.execute()

    async def clear(self) -> None:
        psids = await self.r.zrange(PENDING_INDEX, 0, -1)
        pipe = self.r.pipeline(transaction=True)
        for psid in psids:
            pipe.delete(k_ps(psid))
        pipe.delete(PENDING_INDEX)
        await pipe.execute()
