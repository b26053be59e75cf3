"""In-memory artifact store keyed by opaque download tokens.

Entries are written once by the harvester and never mutated. Without a TTL
they live until the process exits, so memory grows with every extraction;
``stats()`` exposes the footprint so operators can watch it.
"""
import asyncio
import heapq
import time
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from .settings import settings


class BlobStore:
    def __init__(self, ttl: Optional[int] = None):
        self._data: Dict[str, Tuple[bytes, float]] = {}
        self._expiry: List[Tuple[float, str]] = []  # heap, soonest first
        self._ttl = ttl
        self._lock = asyncio.Lock()

    def _expired(self, expires: float, now: float) -> bool:
        return now >= expires

    async def put(self, data: bytes) -> str:
        payload = bytes(data)
        expires = time.time() + self._ttl if self._ttl else float("inf")
        async with self._lock:
            if self._ttl:
                self._purge(time.time())
            token = str(uuid4())
            while token in self._data:
                token = str(uuid4())
            self._data[token] = (payload, expires)
            if self._ttl:
                heapq.heappush(self._expiry, (expires, token))
        return token

    async def get(self, token: str) -> Optional[bytes]:
        async with self._lock:
            entry = self._data.get(token)
        if entry is None:
            return None
        payload, expires = entry
        if self._expired(expires, time.time()):
            return None
        return payload

    async def stats(self) -> Dict[str, int]:
        async with self._lock:
            sizes = [len(payload) for payload, _ in self._data.values()]
        return {"artifacts": len(sizes), "artifact_bytes": sum(sizes)}

    def _purge(self, now: float) -> None:
        # caller holds the lock; only pops entries that are already due
        while self._expiry and self._expired(self._expiry[0][0], now):
            _, token = heapq.heappop(self._expiry)
            self._data.pop(token, None)


store = BlobStore(ttl=settings.artifact_ttl)
