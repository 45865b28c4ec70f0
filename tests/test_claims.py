import asyncio
from datetime import datetime, timedelta

import pytest

from elastic_document.processing import ClaimCoordinator, ClaimOutcome, ExtractionState

from fakes import make_job


@pytest.mark.anyio
async def test_concurrent_handlers_get_one_claim(repo):
    repo.save_job(make_job())
    claims = ClaimCoordinator(repo)

    results = await asyncio.gather(*(claims.try_claim("job-1") for _ in range(10)))

    outcomes = [r.outcome for r in results]
    assert outcomes.count(ClaimOutcome.CLAIMED) == 1
    assert outcomes.count(ClaimOutcome.ALREADY_IN_PROGRESS) == 9


@pytest.mark.anyio
async def test_release_without_token_is_a_no_op(repo):
    repo.save_job(make_job())
    claims = ClaimCoordinator(repo)
    claim = await claims.try_claim("job-1")

    assert not await claims.release("job-1", None)
    assert repo.get_job("job-1").extraction_state == ExtractionState.IN_PROGRESS
    assert await claims.release("job-1", claim.token)
    assert repo.get_job("job-1").extraction_state == ExtractionState.NOT_STARTED


@pytest.mark.anyio
async def test_stale_claim_is_reaped_after_ttl(repo):
    repo.save_job(make_job())
    claims = ClaimCoordinator(repo, claim_ttl_seconds=60)
    await claims.try_claim("job-1")

    assert claims.reap_stale_claims() == 0
    assert claims.reap_stale_claims(now=datetime.utcnow() + timedelta(seconds=120)) == 1
    assert (await claims.try_claim("job-1")).outcome == ClaimOutcome.CLAIMED
