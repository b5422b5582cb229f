"""Tests for cascading revocation and its retry behavior."""

import asyncio
from datetime import timedelta

import pytest

from sluice.core.models import ExchangeState, Token
from sluice.exceptions import StorageError, TokenNotFoundError
from sluice.exchange.revocation import RevocationPropagator


def insert_chain(repo, clock, length, root_id="root"):
    """root -> d1 -> ... -> d<length>; returns ids in order."""
    now = clock.now()
    ids = [root_id]
    repo.insert_token(Token(id=root_id, client_id="issuer-app", issued_at=now, expires_at=now + timedelta(hours=1)))
    for depth in range(1, length + 1):
        token_id = f"d{depth}"
        repo.insert_token(
            Token(
                id=token_id,
                client_id="svc-a",
                issued_at=now,
                expires_at=now + timedelta(hours=1),
                source_token_id=ids[-1],
                chain_depth=depth,
            )
        )
        ids.append(token_id)
    return ids


class FlakyStore:
    """Delegates to a real store but fails chosen ``mark_revoked`` calls."""

    def __init__(self, inner, fail_on=(), always=False):
        self.inner = inner
        self.fail_on = set(fail_on)
        self.always = always
        self.calls = 0

    def get_token(self, token_id):
        return self.inner.get_token(token_id)

    def children_of(self, token_id):
        return self.inner.children_of(token_id)

    def mark_revoked(self, token_id, revoked_at):
        self.calls += 1
        if self.always or self.calls in self.fail_on:
            raise StorageError("mark_revoked", "connection reset")
        return self.inner.mark_revoked(token_id, revoked_at)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


# ─── Cascade ────────────────────────────────────────────────


class TestCascade:
    async def test_revoking_root_revokes_chain(self, service, svc_a, allow_svc_a, root_token, make_request):
        d1 = (await service.exchange(svc_a, make_request(root_token, scope="read"))).issued
        d2 = (await service.exchange(svc_a, make_request(d1, scope="read"))).issued
        d3 = (await service.exchange(svc_a, make_request(d2, scope="read"))).issued

        result = await service.revoke(root_token.token.id)

        assert not result.already_revoked
        assert set(result.newly_revoked) == {root_token.token.id, d1.token.id, d2.token.id, d3.token.id}
        for issued in (root_token, d1, d2, d3):
            assert service.store.get_token(issued.token.id).revoked

    async def test_descendants_unusable(self, service, svc_a, allow_svc_a, root_token, make_request):
        d1 = (await service.exchange(svc_a, make_request(root_token, scope="read"))).issued
        await service.revoke(root_token.token.id)

        result = await service.exchange(svc_a, make_request(d1))
        assert result.state == ExchangeState.FAILED
        assert result.reason == "TokenRevoked"

    async def test_branches(self, repo, clock):
        insert_chain(repo, clock, 2)
        now = clock.now()
        repo.insert_token(
            Token(
                id="sibling",
                client_id="svc-b",
                issued_at=now,
                expires_at=now + timedelta(hours=1),
                source_token_id="root",
                chain_depth=1,
            )
        )
        result = await RevocationPropagator(repo, clock=clock).revoke("root")
        assert sorted(result.newly_revoked) == ["d1", "d2", "root", "sibling"]
        assert result.visited == 4

    async def test_subtree_only(self, repo, clock):
        insert_chain(repo, clock, 3)
        result = await RevocationPropagator(repo, clock=clock).revoke("d2")
        assert result.newly_revoked == ["d2", "d3"]
        assert not repo.get_token("d1").revoked
        assert not repo.get_token("root").revoked

    async def test_revoked_at_recorded(self, repo, clock):
        insert_chain(repo, clock, 1)
        await RevocationPropagator(repo, clock=clock).revoke("root")
        assert repo.get_token("d1").revoked_at == clock.now()

    async def test_unknown_token(self, repo, clock):
        with pytest.raises(TokenNotFoundError):
            await RevocationPropagator(repo, clock=clock).revoke("missing")

    async def test_depth_bound(self, repo, clock):
        insert_chain(repo, clock, 3)
        result = await RevocationPropagator(repo, clock=clock, max_depth=2).revoke("root")
        assert result.newly_revoked == ["root", "d1", "d2"]
        assert not repo.get_token("d3").revoked


class TestIdempotence:
    async def test_second_revoke_is_noop(self, repo, clock):
        insert_chain(repo, clock, 2)
        propagator = RevocationPropagator(repo, clock=clock)
        await propagator.revoke("root")

        again = await propagator.revoke("root")
        assert again.already_revoked
        assert again.newly_revoked == []

    async def test_finishes_incomplete_cascade(self, repo, clock):
        insert_chain(repo, clock, 2)
        repo.mark_revoked("root", clock.now())

        result = await RevocationPropagator(repo, clock=clock).revoke("root")
        assert result.already_revoked
        assert result.newly_revoked == ["d1", "d2"]

    async def test_concurrent_revokers_split_the_work(self, repo, clock):
        insert_chain(repo, clock, 4)
        propagator = RevocationPropagator(repo, clock=clock)
        first, second = await asyncio.gather(propagator.revoke("root"), propagator.revoke("root"))

        flipped = first.newly_revoked + second.newly_revoked
        assert sorted(flipped) == ["d1", "d2", "d3", "d4", "root"]
        assert first.already_revoked != second.already_revoked


# ─── Retry ──────────────────────────────────────────────────


class TestRetry:
    async def test_transient_failure_retried_from_root(self, repo, clock):
        insert_chain(repo, clock, 3)
        sleep = RecordingSleep()
        store = FlakyStore(repo, fail_on={3})
        propagator = RevocationPropagator(store, clock=clock, sleep=sleep, backoff_base=0.01)

        result = await propagator.revoke("root")

        assert result.attempts == 2
        assert len(sleep.delays) == 1
        assert not result.already_revoked
        assert sorted(result.newly_revoked) == ["d1", "d2", "d3", "root"]
        assert all(repo.get_token(i).revoked for i in ("root", "d1", "d2", "d3"))

    async def test_gives_up_after_budget(self, repo, clock):
        insert_chain(repo, clock, 1)
        sleep = RecordingSleep()
        store = FlakyStore(repo, always=True)
        propagator = RevocationPropagator(store, clock=clock, max_attempts=3, sleep=sleep)

        with pytest.raises(StorageError):
            await propagator.revoke("root")
        assert store.calls == 3
        assert len(sleep.delays) == 2

    async def test_backoff_grows(self, repo, clock):
        insert_chain(repo, clock, 1)
        sleep = RecordingSleep()
        store = FlakyStore(repo, fail_on={1, 2, 3})
        propagator = RevocationPropagator(store, clock=clock, backoff_base=0.1, sleep=sleep)

        await propagator.revoke("root")
        assert len(sleep.delays) == 3
        assert 0.1 <= sleep.delays[0] < sleep.delays[1] < sleep.delays[2]

    def test_rejects_zero_attempts(self, repo):
        with pytest.raises(ValueError):
            RevocationPropagator(repo, max_attempts=0)

    def test_from_settings(self, repo, settings):
        propagator = RevocationPropagator.from_settings(repo, settings)
        assert propagator._max_attempts == settings.revocation_max_attempts
