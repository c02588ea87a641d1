from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from phasegate.errors import LockTimeoutError
from phasegate.models import LockMode, normalize_scope, scopes_overlap, utcnow_iso

logger = logging.getLogger(__name__)

LockEntry = tuple[str, LockMode]


@dataclass(frozen=True, slots=True)
class LockOwner:
    work_item_id: str
    phase: str

    def __str__(self) -> str:
        return f"{self.work_item_id}/{self.phase}"


@dataclass(frozen=True, slots=True, eq=False)
class Lock:
    scope: str
    mode: LockMode
    owner: LockOwner
    acquired_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True, eq=False)
class _Request:
    entries: tuple[LockEntry, ...]
    owner: LockOwner
    future: asyncio.Future[list[Lock]]


def _entries_conflict(
    left: Iterable[LockEntry], right: Iterable[LockEntry]
) -> bool:
    right = list(right)
    for left_scope, left_mode in left:
        for right_scope, right_mode in right:
            if LockMode.EXCLUSIVE not in (left_mode, right_mode):
                continue
            if scopes_overlap(left_scope, right_scope):
                return True
    return False


def normalize_requests(requests: Iterable[LockEntry]) -> tuple[LockEntry, ...]:
    """Collapse duplicate scopes (EXCLUSIVE wins) and sort into the global order."""
    modes: dict[str, LockMode] = {}
    for scope, mode in requests:
        key = normalize_scope(scope)
        mode = LockMode(mode)
        if modes.get(key) is LockMode.EXCLUSIVE:
            continue
        modes[key] = mode
    return tuple(sorted(modes.items()))


class ArtifactLockManager:
    """Grants SHARED/EXCLUSIVE locks on artifact scopes in arrival order.

    Each caller asks for all of its scopes in a single batch which is granted
    atomically, so there is no hold-and-wait between batches and no circular
    wait. A waiting request is only granted when it conflicts neither with a
    held lock nor with any request that arrived before it; continuous SHARED
    traffic therefore cannot starve a queued EXCLUSIVE request.
    """

    def __init__(self) -> None:
        self._held: list[Lock] = []
        self._waiting: list[_Request] = []

    def held(self) -> tuple[Lock, ...]:
        return tuple(self._held)

    @property
    def waiting(self) -> int:
        return sum(1 for request in self._waiting if not request.future.done())

    def _held_entries(self) -> list[LockEntry]:
        return [(lock.scope, lock.mode) for lock in self._held]

    def _grantable(self, request: _Request, ahead: list[_Request]) -> bool:
        if _entries_conflict(request.entries, self._held_entries()):
            return False
        return not any(_entries_conflict(request.entries, other.entries) for other in ahead)

    def _dispatch(self) -> None:
        still_waiting: list[_Request] = []
        for request in self._waiting:
            if request.future.done():
                continue
            if self._grantable(request, still_waiting):
                granted = [
                    Lock(scope=scope, mode=mode, owner=request.owner)
                    for scope, mode in request.entries
                ]
                self._held.extend(granted)
                request.future.set_result(granted)
                logger.debug(
                    "Granted %s to %s",
                    ", ".join(f"{scope}:{mode}" for scope, mode in request.entries),
                    request.owner,
                )
            else:
                still_waiting.append(request)
        self._waiting = still_waiting

    def _abandon(self, request: _Request) -> None:
        if request.future.done() and not request.future.cancelled():
            # Granted while the waiter was being torn down.
            self.release_all(request.future.result())
            return
        request.future.cancel()
        if request in self._waiting:
            self._waiting.remove(request)
        self._dispatch()

    async def acquire_batch(
        self,
        requests: Iterable[LockEntry],
        owner: LockOwner,
        timeout: float | None = None,
    ) -> list[Lock]:
        entries = normalize_requests(requests)
        if not entries:
            return []
        loop = asyncio.get_running_loop()
        request = _Request(entries=entries, owner=owner, future=loop.create_future())
        self._waiting.append(request)
        self._dispatch()
        try:
            if timeout is None:
                return await asyncio.shield(request.future)
            return await asyncio.wait_for(asyncio.shield(request.future), timeout=timeout)
        except TimeoutError as exc:
            self._abandon(request)
            raise LockTimeoutError(
                f"Timed out after {timeout:.1f}s waiting for locks on "
                + ", ".join(scope for scope, _ in entries),
            ) from exc
        except asyncio.CancelledError:
            self._abandon(request)
            raise

    async def acquire(
        self,
        scope: str,
        mode: LockMode,
        owner: LockOwner,
        timeout: float | None = None,
    ) -> Lock:
        locks = await self.acquire_batch([(scope, mode)], owner, timeout=timeout)
        return locks[0]

    def release(self, lock: Lock) -> None:
        if lock not in self._held:
            return
        self._held.remove(lock)
        self._dispatch()

    def release_all(self, locks: Iterable[Lock]) -> None:
        for lock in locks:
            if lock in self._held:
                self._held.remove(lock)
        self._dispatch()

    @asynccontextmanager
    async def hold(
        self,
        requests: Iterable[LockEntry],
        owner: LockOwner,
        timeout: float | None = None,
    ) -> AsyncIterator[list[Lock]]:
        locks = await self.acquire_batch(requests, owner, timeout=timeout)
        try:
            yield locks
        finally:
            self.release_all(locks)
