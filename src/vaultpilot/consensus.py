"""Consensus/storage backend clients.

vaultpilot never coordinates leadership itself.  It only reads the health
signal (how many raft peers a node can see), writes small non-secret
bookkeeping records, and takes a named lock so that two operators cannot
initialize the same cluster at once.
"""

import contextlib
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable

import httpx
from pydantic import BaseModel

from vaultpilot.errors import ConsensusError, LockUnavailable

logger = logging.getLogger(__name__)


class ConsensusStatus(BaseModel):
    """Cluster health as seen by one node.

    Attributes:
        peer_count: Raft peers visible besides the answering node.
        leader: Address of the current leader, if any.
    """

    peer_count: int
    leader: str | None = None


class ConsensusBackend(ABC):
    """Contract consumed from the consensus store."""

    @abstractmethod
    async def status(self) -> ConsensusStatus:
        """Current raft status."""

    @abstractmethod
    async def write(self, key: str, value: str) -> None:
        """Write a KV record."""

    @abstractmethod
    async def acquire_lock(self, name: str) -> str:
        """Acquire the named lock.

        Returns:
            Opaque handle for :meth:`release_lock`

        Raises:
            LockUnavailable: If someone else holds it
        """

    @abstractmethod
    async def release_lock(self, name: str, handle: str) -> None:
        """Release a lock taken with :meth:`acquire_lock`."""

    @contextlib.asynccontextmanager
    async def lock(self, name: str) -> AsyncIterator[str]:
        """Hold the named lock for the duration of the block.

        A failed release is raised only when the block itself succeeded;
        otherwise it is logged and the block's error propagates.
        """
        handle = await self.acquire_lock(name)
        try:
            yield handle
        except BaseException:
            try:
                await self.release_lock(name, handle)
            except ConsensusError as e:
                logger.warning("Failed to release lock %s: %s", name, e)
            raise
        await self.release_lock(name, handle)

    async def close(self) -> None:
        """Release client resources."""


class ConsulBackend(ConsensusBackend):
    """Consul HTTP API client."""

    def __init__(
        self,
        consul_addr: str = "http://127.0.0.1:8500",
        timeout: float = 10.0,
        lock_ttl: str = "60s",
    ):
        self.consul_addr = consul_addr
        self.lock_ttl = lock_ttl
        self.client = httpx.AsyncClient(base_url=consul_addr, timeout=timeout)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise ConsensusError(f"Failed to connect to Consul at {self.consul_addr}: {e}") from e
        if response.status_code != 200:
            raise ConsensusError(
                f"Consul error on {method} {path}: {response.status_code} - {response.text}"
            )
        return response

    async def status(self) -> ConsensusStatus:
        peers = (await self._request("GET", "/v1/status/peers")).json() or []
        leader = (await self._request("GET", "/v1/status/leader")).json() or None
        return ConsensusStatus(peer_count=max(len(peers) - 1, 0), leader=leader)

    async def write(self, key: str, value: str) -> None:
        response = await self._request("PUT", f"/v1/kv/{key}", content=value.encode("utf-8"))
        if response.json() is not True:
            raise ConsensusError(f"Consul refused write to {key}")

    async def acquire_lock(self, name: str) -> str:
        session = await self._request(
            "PUT",
            "/v1/session/create",
            json={"Name": name, "TTL": self.lock_ttl, "Behavior": "release"},
        )
        session_id = session.json()["ID"]

        acquired = await self._request(
            "PUT", f"/v1/kv/{name}", params={"acquire": session_id}, content=b""
        )
        if acquired.json() is not True:
            await self._request("PUT", f"/v1/session/destroy/{session_id}")
            raise LockUnavailable(f"Lock {name} is held by another session", step="lock")

        logger.info("Acquired Consul lock %s", name)
        return session_id

    async def release_lock(self, name: str, handle: str) -> None:
        await self._request("PUT", f"/v1/kv/{name}", params={"release": handle}, content=b"")
        await self._request("PUT", f"/v1/session/destroy/{handle}")
        logger.info("Released Consul lock %s", name)

    async def close(self) -> None:
        await self.client.aclose()


class LocalConsensus(ConsensusBackend):
    """In-process stand-in for simulation mode.

    Args:
        member_count: Callable returning how many members are up; the
            answering member is not counted as a peer.
    """

    def __init__(self, member_count: Callable[[], int]):
        self._member_count = member_count
        self.kv: dict[str, str] = {}
        self._locks: dict[str, str] = {}
        self._next_handle = 0

    async def status(self) -> ConsensusStatus:
        members = self._member_count()
        return ConsensusStatus(peer_count=max(members - 1, 0), leader="local" if members else None)

    async def write(self, key: str, value: str) -> None:
        self.kv[key] = value

    async def acquire_lock(self, name: str) -> str:
        if name in self._locks:
            raise LockUnavailable(f"Lock {name} is held by another session", step="lock")
        self._next_handle += 1
        handle = f"local-{self._next_handle}"
        self._locks[name] = handle
        return handle

    async def release_lock(self, name: str, handle: str) -> None:
        if self._locks.get(name) == handle:
            del self._locks[name]
