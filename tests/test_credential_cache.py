"""
Tests for the gateway access token cache.

Covers single-flight refresh, shared failure, expiry margin and
invalidation.
"""
import asyncio
from typing import Any, AsyncGenerator, List

import httpx
import pytest
import pytest_asyncio

from paymentservice.core.credential_cache import CredentialCache
from paymentservice.core.exceptions import AuthExchangeFailed, CredentialError
from paymentservice.integrations.mpesa_client import MpesaClient

from .fakes import FakeDaraja, make_settings


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest_asyncio.fixture
async def mpesa_client(fake_daraja: FakeDaraja) -> AsyncGenerator[MpesaClient, Any]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_daraja))
    yield MpesaClient(make_settings(), http_client=http_client)
    await http_client.aclose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(mpesa_client: MpesaClient, clock: FakeClock) -> CredentialCache:
    return CredentialCache(mpesa_client, expiry_margin_seconds=60, clock=clock)


class TestSingleFlight:
    """One exchange per cache-miss episode."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_exchange(
        self, cache: CredentialCache, fake_daraja: FakeDaraja
    ) -> None:
        """Twenty callers on a cold cache trigger exactly one exchange."""
        fake_daraja.token_delay = 0.05

        tokens = await asyncio.gather(*(cache.get_token() for _ in range(20)))

        assert fake_daraja.token_calls == 1
        assert set(tokens) == {"token-1"}

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_failure_is_shared_by_every_waiter(
        self, cache: CredentialCache, fake_daraja: FakeDaraja
    ) -> None:
        """All waiters of a failed episode get the error; none retries it."""
        fake_daraja.token_delay = 0.05
        fake_daraja.token_status = 500
        fake_daraja.token_body = {"errorMessage": "Internal error"}

        results: List[Any] = await asyncio.gather(
            *(cache.get_token() for _ in range(5)), return_exceptions=True
        )

        assert fake_daraja.token_calls == 1
        assert all(isinstance(r, AuthExchangeFailed) for r in results)
        assert cache.token is None

    @pytest.mark.asyncio
    async def test_next_call_after_failure_starts_new_episode(
        self, cache: CredentialCache, fake_daraja: FakeDaraja
    ) -> None:
        fake_daraja.token_status = 503

        with pytest.raises(AuthExchangeFailed):
            await cache.get_token()

        fake_daraja.token_status = 200
        assert await cache.get_token() == "token-2"
        assert fake_daraja.token_calls == 2

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_refresh(
        self, cache: CredentialCache, fake_daraja: FakeDaraja
    ) -> None:
        """The caller that started the exchange leaving does not strand the others."""
        fake_daraja.token_delay = 0.05

        first = asyncio.create_task(cache.get_token())
        second = asyncio.create_task(cache.get_token())
        await asyncio.sleep(0.01)
        first.cancel()

        assert await second == "token-1"
        assert first.cancelled()
        assert fake_daraja.token_calls == 1


class TestExpiry:
    """Cached tokens and the safety margin."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_token_reused_until_margin(
        self, cache: CredentialCache, fake_daraja: FakeDaraja, clock: FakeClock
    ) -> None:
        """A 120 s token with a 60 s margin is reused for 60 s, then refreshed."""
        fake_daraja.token_body = {"access_token": "short-lived", "expires_in": 120}

        assert await cache.get_token() == "short-lived"
        clock.now = 59.9
        assert await cache.get_token() == "short-lived"
        assert fake_daraja.token_calls == 1

        clock.now = 60.0
        await cache.get_token()
        assert fake_daraja.token_calls == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unparsable_lifetime_uses_default(
        self, cache: CredentialCache, fake_daraja: FakeDaraja
    ) -> None:
        fake_daraja.token_body = {"access_token": "abc", "expires_in": "soon"}

        await cache.get_token()

        assert cache.token is not None
        assert cache.token.expires_at == 3599.0


class TestExchangeFailures:
    """Non-200 and malformed exchange answers."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_credentials(
        self, cache: CredentialCache, fake_daraja: FakeDaraja
    ) -> None:
        fake_daraja.token_status = 400
        fake_daraja.token_body = {"errorMessage": "Invalid Authentication passed"}

        with pytest.raises(CredentialError) as exc_info:
            await cache.get_token()

        assert "Invalid Authentication passed" in exc_info.value.message

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_body_without_access_token(
        self, cache: CredentialCache, fake_daraja: FakeDaraja
    ) -> None:
        fake_daraja.token_body = {"expires_in": "3599"}

        with pytest.raises(AuthExchangeFailed):
            await cache.get_token()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error(self, clock: FakeClock) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as http_client:
            cache = CredentialCache(
                MpesaClient(make_settings(), http_client=http_client), clock=clock
            )
            with pytest.raises(AuthExchangeFailed):
                await cache.get_token()


class TestInvalidate:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalidate_forces_new_exchange(
        self, cache: CredentialCache, fake_daraja: FakeDaraja
    ) -> None:
        token = await cache.get_token()

        cache.invalidate(token)

        assert cache.token is None
        assert await cache.get_token() == "token-2"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalidate_ignores_stale_value(
        self, cache: CredentialCache, fake_daraja: FakeDaraja
    ) -> None:
        """Invalidating an old token must not discard its replacement."""
        await cache.get_token()

        cache.invalidate("token-0")

        assert cache.token is not None
        assert cache.token.value == "token-1"
