from __future__ import annotations

import itertools
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from acp_gateway.config import ModelCatalog
from acp_gateway.gateway.errors import ErrorKind, GatewayError
from acp_gateway.upstream.credentials import CredentialStore
from acp_gateway.upstream.protocol import AgentClient, AgentClientFactory

logger = logging.getLogger("uvicorn.error")

_handle_ids = itertools.count(1)


@dataclass(eq=False, slots=True)
class PooledHandle:
    client: AgentClient
    pool_key: str
    upstream_model: str
    workspace_root: str
    temporary: bool = False
    closed: bool = False
    handle_id: int = field(default_factory=lambda: next(_handle_ids))


@dataclass(slots=True)
class _PoolEntry:
    available: list[PooledHandle] = field(default_factory=list)
    in_use: set[PooledHandle] = field(default_factory=set)
    creating: int = 0

    def occupied(self) -> int:
        return len(self.in_use) + self.creating


class ClientPool:
    """Bounded pools of agent clients keyed by upstream model and workspace.

    Counters are read and written without an intervening ``await``; the only
    suspension inside ``acquire`` happens after a creation slot is reserved.
    """

    def __init__(
        self,
        *,
        catalog: ModelCatalog,
        factory: AgentClientFactory,
        credentials: CredentialStore,
        capacity: int = 5,
        default_workspace: str,
    ) -> None:
        if capacity < 1:
            raise ValueError("pool capacity must be >= 1")
        self._catalog = catalog
        self._factory = factory
        self._credentials = credentials
        self.capacity = capacity
        self.default_workspace = default_workspace
        self._entries: dict[str, _PoolEntry] = {}
        self._closed = False
        self.acquisitions: Counter[str] = Counter()
        self.overflow_created = 0
        self.evicted = 0

    def resolve_upstream_model(self, model_id: str | None, *, request_id: str = "-") -> str:
        config, used_default = self._catalog.resolve(model_id)
        if used_default and model_id:
            logger.warning(
                "pool_model_fallback request_id=%s requested=%s fallback=%s",
                request_id,
                model_id,
                self._catalog.default_model,
            )
        return config.upstream_id

    def pool_key(self, upstream_model: str, workspace_root: str | None = None) -> str:
        return f"{upstream_model}:{workspace_root or self.default_workspace}"

    async def _create_client(self, upstream_model: str, workspace_root: str) -> AgentClient:
        credentials = await self._credentials.load()
        return await self._factory.create(
            model=upstream_model,
            api_key=credentials.access_token,
            api_url=credentials.endpoint_url,
            workspace_root=workspace_root,
        )

    def _ensure_open(self) -> None:
        if self._closed:
            raise GatewayError(
                ErrorKind.SERVICE_UNAVAILABLE,
                "Client pool is shut down; the gateway is not accepting requests.",
            )

    async def acquire(
        self,
        model_id: str | None,
        workspace_root: str | None = None,
        *,
        request_id: str = "-",
    ) -> PooledHandle:
        self._ensure_open()
        upstream_model = self.resolve_upstream_model(model_id, request_id=request_id)
        workspace = workspace_root or self.default_workspace
        key = self.pool_key(upstream_model, workspace)
        entry = self._entries.setdefault(key, _PoolEntry())
        self.acquisitions[key] += 1

        while entry.available:
            handle = entry.available.pop()
            if handle.closed:
                continue
            entry.in_use.add(handle)
            logger.info(
                "pool_handle_reused request_id=%s pool_key=%s handle=%d in_use=%d available=%d",
                request_id,
                key,
                handle.handle_id,
                len(entry.in_use),
                len(entry.available),
            )
            return handle

        temporary = entry.occupied() >= self.capacity
        if not temporary:
            entry.creating += 1
        try:
            client = await self._create_client(upstream_model, workspace)
        finally:
            if not temporary:
                entry.creating -= 1

        handle = PooledHandle(
            client=client,
            pool_key=key,
            upstream_model=upstream_model,
            workspace_root=workspace,
            temporary=temporary,
        )
        if self._closed:
            await self._close_handle(handle, reason="pool_shutdown")
            self._ensure_open()
        if temporary:
            self.overflow_created += 1
            logger.warning(
                "pool_overflow_handle request_id=%s pool_key=%s handle=%d capacity=%d",
                request_id,
                key,
                handle.handle_id,
                self.capacity,
            )
            return handle

        entry.in_use.add(handle)
        logger.info(
            "pool_handle_created request_id=%s pool_key=%s handle=%d in_use=%d creating=%d",
            request_id,
            key,
            handle.handle_id,
            len(entry.in_use),
            entry.creating,
        )
        return handle

    async def release(self, handle: PooledHandle) -> None:
        entry = self._entries.get(handle.pool_key)
        if handle.temporary or entry is None or handle not in entry.in_use:
            await self._close_handle(handle, reason="not_pooled")
            return
        entry.in_use.discard(handle)
        if handle.closed:
            return
        if len(entry.available) >= self.capacity:
            await self._close_handle(handle, reason="pool_full")
            return
        entry.available.append(handle)

    async def discard(self, handle: PooledHandle, reason: str) -> None:
        entry = self._entries.get(handle.pool_key)
        if entry is not None:
            entry.in_use.discard(handle)
            if handle in entry.available:
                entry.available.remove(handle)
        self.evicted += 1
        logger.warning(
            "pool_handle_discarded pool_key=%s handle=%d reason=%s temporary=%s",
            handle.pool_key,
            handle.handle_id,
            reason,
            handle.temporary,
        )
        await self._close_handle(handle, reason=reason)

    async def _close_handle(self, handle: PooledHandle, *, reason: str) -> None:
        if handle.closed:
            return
        handle.closed = True
        try:
            await handle.client.close()
        except Exception as exc:
            logger.warning(
                "pool_handle_close_failed pool_key=%s handle=%d reason=%s error=%s",
                handle.pool_key,
                handle.handle_id,
                reason,
                exc,
            )
            return
        logger.debug(
            "pool_handle_closed pool_key=%s handle=%d reason=%s",
            handle.pool_key,
            handle.handle_id,
            reason,
        )

    async def shutdown(self) -> None:
        self._closed = True
        entries = list(self._entries.items())
        self._entries.clear()
        closed = 0
        for _key, entry in entries:
            handles = [*entry.available, *entry.in_use]
            entry.available.clear()
            entry.in_use.clear()
            for handle in handles:
                await self._close_handle(handle, reason="pool_shutdown")
                closed += 1
        logger.info("pool_shutdown pool_keys=%d handles_closed=%d", len(entries), closed)

    def entry_counts(self, key: str) -> dict[str, int]:
        entry = self._entries.get(key)
        if entry is None:
            return {"available": 0, "in_use": 0, "creating": 0}
        return {
            "available": len(entry.available),
            "in_use": len(entry.in_use),
            "creating": entry.creating,
        }

    def stats(self) -> dict[str, Any]:
        pools = {key: self.entry_counts(key) for key in self._entries}
        return {
            "capacity": self.capacity,
            "pool_keys": len(pools),
            "available": sum(item["available"] for item in pools.values()),
            "in_use": sum(item["in_use"] for item in pools.values()),
            "creating": sum(item["creating"] for item in pools.values()),
            "acquisitions": sum(self.acquisitions.values()),
            "overflow_created": self.overflow_created,
            "evicted": self.evicted,
            "pools": pools,
        }
