from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from src.app.domain.exceptions import (
    ExpiredError,
    RevokedError,
    TaskNotFoundError,
    TaskStateError,
    UnauthorizedError,
)
from src.app.domain.models.credential import Credential
from src.app.domain.repositories import StorageRepository
from src.setup.credential_config import CredentialSettings, get_credential_settings
from src.setup.logging_config import mask_token

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class CredentialIssuer:
    """Mints, validates and revokes task-scoped internal tokens.

    The active-token table is guarded by a single ``asyncio.Lock``. Task state
    is read from the storage repository outside that lock, so the two
    structures are never locked together.

    Callers that dispatch work on behalf of a token hold a *lease* through
    :meth:`authorize`. :meth:`revoke` marks the task's tokens revoked at once
    and then waits for outstanding leases to drain, so a call either commits
    before revocation returns or is rejected.
    """

    def __init__(
        self,
        storage: StorageRepository,
        settings: CredentialSettings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._storage = storage
        self._settings = settings or get_credential_settings()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._tokens: dict[str, Credential] = {}
        self._by_task: dict[str, set[str]] = {}
        self._leases: dict[str, int] = {}
        self._drained: dict[str, asyncio.Event] = {}

    async def issue(self, task_id: str, ttl: float | None = None) -> Credential:
        state = await self._storage.get_state(task_id)
        if state is None:
            raise TaskNotFoundError(task_id)
        if state.is_terminal:
            raise TaskStateError(task_id, state.value, "credentialed")

        ttl = self._settings.CREDENTIAL_DEFAULT_TTL_SECONDS if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        ttl = min(ttl, self._settings.CREDENTIAL_MAX_TTL_SECONDS)

        now = self._clock()
        credential = Credential(
            token=secrets.token_urlsafe(32),
            task_id=task_id,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        async with self._lock:
            self._purge_expired_locked(now)
            # One active credential per task.
            for token in self._by_task.get(task_id, set()):
                self._mark_revoked(self._tokens[token], now)
            self._tokens[credential.token] = credential
            self._by_task.setdefault(task_id, set()).add(credential.token)

        logger.info(
            "Issued credential",
            extra={"task_id": task_id, "token": mask_token(credential.token), "ttl": ttl},
        )
        return credential

    async def validate(self, token: str | None) -> str:
        """Return the owning task id or raise a ``CredentialError``."""
        async with self._lock:
            task_id = self._check_locked(token)
        await self._ensure_task_live(task_id)
        return task_id

    @asynccontextmanager
    async def authorize(self, token: str | None) -> AsyncIterator[str]:
        """Validate ``token`` and hold a use lease until the block exits."""
        async with self._lock:
            task_id = self._check_locked(token)
            self._leases[task_id] = self._leases.get(task_id, 0) + 1
        try:
            await self._ensure_task_live(task_id)
            yield task_id
        finally:
            async with self._lock:
                remaining = self._leases.get(task_id, 1) - 1
                if remaining <= 0:
                    self._leases.pop(task_id, None)
                    event = self._drained.pop(task_id, None)
                    if event is not None:
                        event.set()
                else:
                    self._leases[task_id] = remaining

    async def revoke(self, task_id: str) -> int:
        """Invalidate every credential of ``task_id``; return how many."""
        waiter: asyncio.Event | None = None
        now = self._clock()
        async with self._lock:
            count = 0
            for token in self._by_task.get(task_id, set()):
                if self._mark_revoked(self._tokens[token], now):
                    count += 1
            if self._leases.get(task_id):
                waiter = self._drained.setdefault(task_id, asyncio.Event())

        logger.info("Revoked credentials", extra={"task_id": task_id, "count": count})
        if waiter is not None:
            try:
                await asyncio.wait_for(
                    waiter.wait(), timeout=self._settings.CREDENTIAL_REVOKE_DRAIN_SECONDS
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Revocation did not drain in-flight calls in time",
                    extra={"task_id": task_id},
                )
        return count

    async def active_count(self) -> int:
        now = self._clock()
        async with self._lock:
            return sum(
                1 for c in self._tokens.values() if not c.revoked and not c.is_expired(now)
            )

    async def purge_expired(self) -> int:
        async with self._lock:
            return self._purge_expired_locked(self._clock())

    def _check_locked(self, token: str | None) -> str:
        credential = self._tokens.get(token) if token else None
        if credential is None:
            raise UnauthorizedError("Unknown credential.")
        if credential.revoked:
            raise RevokedError("Credential has been revoked.")
        if credential.is_expired(self._clock()):
            raise ExpiredError("Credential has expired.")
        return credential.task_id

    async def _ensure_task_live(self, task_id: str) -> None:
        state = await self._storage.get_state(task_id)
        if state is None or state.is_terminal:
            raise RevokedError("Owning task is no longer running.")

    @staticmethod
    def _mark_revoked(credential: Credential, now: datetime) -> bool:
        if credential.revoked:
            return False
        credential.revoked = True
        credential.revoked_at = now
        return True

    def _purge_expired_locked(self, now: datetime) -> int:
        # Dead entries stay for one max-TTL so late callers still see Expired or Revoked.
        retention = timedelta(seconds=self._settings.CREDENTIAL_MAX_TTL_SECONDS)
        stale = [
            token
            for token, credential in self._tokens.items()
            if now >= credential.expires_at + retention
            or (credential.revoked_at is not None and now >= credential.revoked_at + retention)
        ]
        for token in stale:
            credential = self._tokens.pop(token)
            owned = self._by_task.get(credential.task_id)
            if owned is not None:
                owned.discard(token)
                if not owned:
                    self._by_task.pop(credential.task_id, None)
        return len(stale)
