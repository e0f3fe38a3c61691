import asyncio

import pytest

from conftest import running_task
from src.app.domain.exceptions import (
    ExpiredError,
    RevokedError,
    TaskNotFoundError,
    TaskStateError,
    UnauthorizedError,
)
from src.app.domain.models.task_state import TaskState


@pytest.mark.asyncio
async def test_issued_token_validates_to_its_task(storage, issuer) -> None:
    task_id = await running_task(storage)

    credential = await issuer.issue(task_id)

    assert await issuer.validate(credential.token) == task_id
    assert credential.expires_at > credential.issued_at
    assert len(credential.token) >= 32


@pytest.mark.asyncio
async def test_unknown_and_missing_tokens_are_unauthorized(issuer) -> None:
    with pytest.raises(UnauthorizedError):
        await issuer.validate("not-a-token")
    with pytest.raises(UnauthorizedError):
        await issuer.validate(None)


@pytest.mark.asyncio
async def test_token_expires_after_ttl(storage, issuer, clock) -> None:
    task_id = await running_task(storage)
    credential = await issuer.issue(task_id, ttl=10)

    clock.advance(9)
    assert await issuer.validate(credential.token) == task_id

    clock.advance(1)
    with pytest.raises(ExpiredError):
        await issuer.validate(credential.token)


@pytest.mark.asyncio
async def test_ttl_is_clamped_to_maximum(storage, issuer, credential_settings) -> None:
    task_id = await running_task(storage)

    credential = await issuer.issue(task_id, ttl=10_000)

    lifetime = (credential.expires_at - credential.issued_at).total_seconds()
    assert lifetime == credential_settings.CREDENTIAL_MAX_TTL_SECONDS


@pytest.mark.asyncio
async def test_non_positive_ttl_is_rejected(storage, issuer) -> None:
    task_id = await running_task(storage)

    with pytest.raises(ValueError):
        await issuer.issue(task_id, ttl=0)


@pytest.mark.asyncio
async def test_issue_requires_a_live_task(storage, issuer) -> None:
    with pytest.raises(TaskNotFoundError):
        await issuer.issue("missing")

    task_id = await running_task(storage)
    await storage.transition(task_id, TaskState.SUCCEEDED, result="done")

    with pytest.raises(TaskStateError):
        await issuer.issue(task_id)


@pytest.mark.asyncio
async def test_revoke_invalidates_every_token_of_the_task(storage, issuer) -> None:
    task_id = await running_task(storage)
    credential = await issuer.issue(task_id)

    assert await issuer.revoke(task_id) == 1
    with pytest.raises(RevokedError):
        await issuer.validate(credential.token)
    assert await issuer.revoke(task_id) == 0


@pytest.mark.asyncio
async def test_reissue_replaces_previous_token(storage, issuer) -> None:
    task_id = await running_task(storage)
    first = await issuer.issue(task_id)

    second = await issuer.issue(task_id)

    with pytest.raises(RevokedError):
        await issuer.validate(first.token)
    assert await issuer.validate(second.token) == task_id
    assert await issuer.active_count() == 1


@pytest.mark.asyncio
async def test_token_of_finished_task_is_rejected(storage, issuer) -> None:
    task_id = await running_task(storage)
    credential = await issuer.issue(task_id)

    await storage.transition(task_id, TaskState.FAILED)

    with pytest.raises(RevokedError):
        await issuer.validate(credential.token)


@pytest.mark.asyncio
async def test_revoke_waits_for_outstanding_leases(storage, issuer) -> None:
    task_id = await running_task(storage)
    credential = await issuer.issue(task_id)
    release = asyncio.Event()
    order: list[str] = []

    async def hold_lease() -> None:
        async with issuer.authorize(credential.token):
            await release.wait()
            order.append("call finished")

    holder = asyncio.create_task(hold_lease())
    await asyncio.sleep(0)
    revoker = asyncio.create_task(issuer.revoke(task_id))
    await asyncio.sleep(0.01)

    assert not revoker.done()
    with pytest.raises(RevokedError):
        await issuer.validate(credential.token)

    release.set()
    await revoker
    order.append("revoked")
    await holder

    assert order == ["call finished", "revoked"]


@pytest.mark.asyncio
async def test_concurrent_issue_and_revoke_leave_consistent_tokens(storage, issuer) -> None:
    task_ids = [await running_task(storage, f"task-{n}") for n in range(10)]
    credentials = await asyncio.gather(*(issuer.issue(task_id) for task_id in task_ids))
    revoked = set(task_ids[::2])

    await asyncio.gather(
        *(issuer.revoke(task_id) for task_id in revoked),
        *(issuer.validate(c.token) for c in credentials if c.task_id not in revoked),
    )

    for credential in credentials:
        if credential.task_id in revoked:
            with pytest.raises(RevokedError):
                await issuer.validate(credential.token)
        else:
            assert await issuer.validate(credential.token) == credential.task_id
    assert await issuer.active_count() == len(task_ids) - len(revoked)


@pytest.mark.asyncio
async def test_purge_drops_long_expired_tokens(storage, issuer, clock, credential_settings) -> None:
    task_id = await running_task(storage)
    credential = await issuer.issue(task_id, ttl=5)

    clock.advance(5 + credential_settings.CREDENTIAL_MAX_TTL_SECONDS)

    assert await issuer.purge_expired() == 1
    with pytest.raises(UnauthorizedError):
        await issuer.validate(credential.token)


@pytest.mark.asyncio
async def test_purge_drops_revoked_tokens_after_retention(
    storage, issuer, clock, credential_settings
) -> None:
    task_id = await running_task(storage)
    credential = await issuer.issue(task_id)
    await issuer.revoke(task_id)

    assert await issuer.purge_expired() == 0
    with pytest.raises(RevokedError):
        await issuer.validate(credential.token)

    clock.advance(credential_settings.CREDENTIAL_MAX_TTL_SECONDS)

    assert await issuer.purge_expired() == 1
    with pytest.raises(UnauthorizedError):
        await issuer.validate(credential.token)
