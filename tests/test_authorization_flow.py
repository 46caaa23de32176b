"""Tests for the authorization code flow.

Covers:
- StartFlow validation (client, redirect allow-list, PKCE method and format)
- CompleteApproval / DenyApproval and single-use state
- RedeemCode bindings, PKCE verification and replay revocation
"""

import asyncio

import pytest

from authcore.config import Settings
from authcore.service.authorization import AuthorizationFlowCoordinator
from authcore.service.errors import (
    InvalidClient,
    InvalidGrant,
    InvalidRedirect,
    InvalidRequest,
    InvalidScope,
    UnknownOrExpiredState,
)
from authcore.service.primitives import SecretPrimitives
from authcore.service.tokens import TokenLifecycleManager
from authcore.storage.models import ChallengeMethod

VERIFIER = "raw-verifier-1-" + "x" * 40
REDIRECT = "https://app.test/cb"


def s256(verifier: str = VERIFIER) -> str:
    return SecretPrimitives.derive_challenge(verifier, ChallengeMethod.S256)


async def approved_code(coordinator, *, method="S256", challenge=None, scope="read"):
    request = await coordinator.start_flow(
        "app1", REDIRECT, challenge or s256(), method, scope
    )
    issued = await coordinator.complete_approval(request.state, "u42", scope)
    return issued.code


class TestStartFlow:
    async def test_start_flow_persists_request(self, coordinator, memory_store):
        """A valid request is stored under a fresh, unguessable state."""
        request = await coordinator.start_flow("app1", REDIRECT, s256(), "S256", "read")

        assert len(request.state) >= 32
        assert request.code_challenge_method == ChallengeMethod.S256
        assert request.scope == "read"
        assert request.state in memory_store.authorization_requests

    async def test_request_ttl_is_ten_minutes(self, coordinator, clock):
        request = await coordinator.start_flow("app1", REDIRECT, s256(), "S256")
        assert (request.expires_at - clock()).total_seconds() == 600

    async def test_unknown_client_rejected(self, coordinator, memory_store):
        with pytest.raises(InvalidClient):
            await coordinator.start_flow("nope", REDIRECT, s256(), "S256")
        assert memory_store.authorization_requests == {}

    @pytest.mark.parametrize(
        "redirect_uri",
        [
            "https://app.test/cb/",
            "http://app.test/cb",
            "https://app.test:8443/cb",
            "https://app.test/cb?x=1",
            "https://app.test/",
            "https://evil.test/cb",
        ],
    )
    async def test_redirect_must_match_exactly(self, coordinator, redirect_uri):
        with pytest.raises(InvalidRedirect):
            await coordinator.start_flow("app1", redirect_uri, s256(), "S256")

    async def test_missing_challenge_rejected(self, coordinator):
        with pytest.raises(InvalidRequest):
            await coordinator.start_flow("app1", REDIRECT, None, "S256")

    async def test_short_challenge_rejected(self, coordinator):
        with pytest.raises(InvalidRequest):
            await coordinator.start_flow("app1", REDIRECT, "too-short", "S256")

    async def test_unknown_method_rejected(self, coordinator):
        with pytest.raises(InvalidRequest):
            await coordinator.start_flow("app1", REDIRECT, s256(), "S512")

    async def test_plain_rejected_in_production(self, memory_store, clock):
        settings = Settings(
            environment="production",
            jwt_secret="x" * 40,
            allow_plain_pkce=True,
            clients={"app1": {"redirect_uris": [REDIRECT]}},
        )
        tokens = TokenLifecycleManager(memory_store, settings, now=clock)
        coordinator = AuthorizationFlowCoordinator(memory_store, settings, tokens, now=clock)

        with pytest.raises(InvalidRequest):
            await coordinator.start_flow("app1", REDIRECT, VERIFIER, "plain")
        # an absent method means plain
        with pytest.raises(InvalidRequest):
            await coordinator.start_flow("app1", REDIRECT, VERIFIER, None)
        request = await coordinator.start_flow("app1", REDIRECT, s256(), "S256")
        assert request.code_challenge_method == ChallengeMethod.S256

    async def test_plain_rejected_when_not_enabled(self, memory_store, clock):
        settings = Settings(
            environment="development",
            jwt_secret="x" * 40,
            clients={"app1": {"redirect_uris": [REDIRECT]}},
        )
        tokens = TokenLifecycleManager(memory_store, settings, now=clock)
        coordinator = AuthorizationFlowCoordinator(memory_store, settings, tokens, now=clock)

        with pytest.raises(InvalidRequest):
            await coordinator.start_flow("app1", REDIRECT, VERIFIER, "plain")

    async def test_scope_outside_client_allowance_rejected(self, coordinator):
        with pytest.raises(InvalidScope):
            await coordinator.start_flow("app1", REDIRECT, s256(), "S256", "read admin")


class TestApproval:
    async def test_complete_approval_consumes_state(self, coordinator, memory_store):
        request = await coordinator.start_flow("app1", REDIRECT, s256(), "S256", "read")
        issued = await coordinator.complete_approval(request.state, "u42")

        assert request.state not in memory_store.authorization_requests
        assert issued.record.subject_id == "u42"
        assert issued.record.redirect_uri == REDIRECT
        assert issued.record.code_challenge == request.code_challenge
        # only the hash of the code is stored
        assert issued.code not in memory_store.authorization_codes
        assert issued.record.code_hash in memory_store.authorization_codes

        with pytest.raises(UnknownOrExpiredState):
            await coordinator.complete_approval(request.state, "u42")

    async def test_code_ttl_is_sixty_seconds(self, coordinator, clock):
        request = await coordinator.start_flow("app1", REDIRECT, s256(), "S256")
        issued = await coordinator.complete_approval(request.state, "u42")
        assert (issued.record.expires_at - clock()).total_seconds() == 60

    async def test_expired_state_rejected(self, coordinator, clock):
        request = await coordinator.start_flow("app1", REDIRECT, s256(), "S256")
        clock.advance(seconds=601)
        with pytest.raises(UnknownOrExpiredState):
            await coordinator.complete_approval(request.state, "u42")

    async def test_unknown_state_rejected(self, coordinator):
        with pytest.raises(UnknownOrExpiredState):
            await coordinator.complete_approval("s_missing", "u42")

    async def test_approved_scope_must_be_subset(self, coordinator):
        request = await coordinator.start_flow("app1", REDIRECT, s256(), "S256", "read")
        with pytest.raises(InvalidScope):
            await coordinator.complete_approval(request.state, "u42", "read write")

    async def test_approved_scope_may_narrow(self, coordinator):
        request = await coordinator.start_flow(
            "app1", REDIRECT, s256(), "S256", "read write"
        )
        issued = await coordinator.complete_approval(request.state, "u42", "read")
        assert issued.record.scope == "read"

    async def test_client_state_echoed_on_redirect(self, coordinator):
        request = await coordinator.start_flow(
            "app1", REDIRECT, s256(), "S256", client_state="csrf-123"
        )
        issued = await coordinator.complete_approval(request.state, "u42")

        redirect = issued.redirect
        assert redirect.redirect_uri == REDIRECT
        assert redirect.params == {"code": issued.code, "state": "csrf-123"}

    async def test_deny_approval_builds_access_denied(self, coordinator, memory_store):
        request = await coordinator.start_flow(
            "app1", REDIRECT, s256(), "S256", client_state="csrf-123"
        )
        redirect = await coordinator.deny_approval(request.state)

        assert redirect.params == {"error": "access_denied", "state": "csrf-123"}
        assert memory_store.authorization_requests == {}
        with pytest.raises(UnknownOrExpiredState):
            await coordinator.complete_approval(request.state, "u42")


class TestRedeemCode:
    async def test_redeem_returns_generation_zero(self, coordinator):
        code = await approved_code(coordinator)
        grant = await coordinator.redeem_code(code, REDIRECT, VERIFIER, "app1")

        assert grant.pair.generation == 0
        assert grant.family.generation == 0
        assert grant.family.subject_id == "u42"
        assert grant.family.client_id == "app1"
        assert grant.pair.scope == "read"
        assert grant.pair.token_type == "Bearer"
        assert grant.pair.expires_in == 600

    async def test_replay_revokes_family(self, coordinator, tokens, memory_store):
        """Second redemption fails and revokes what the first one minted."""
        code = await approved_code(coordinator)
        grant = await coordinator.redeem_code(code, REDIRECT, VERIFIER, "app1")

        with pytest.raises(InvalidGrant):
            await coordinator.redeem_code(code, REDIRECT, VERIFIER, "app1")

        assert memory_store.families[grant.family.family_id].revoked is True
        with pytest.raises(InvalidGrant):
            await tokens.rotate_refresh_token(grant.pair.refresh_token)

    async def test_replay_after_code_expiry_still_revokes(self, coordinator, memory_store, clock):
        code = await approved_code(coordinator)
        grant = await coordinator.redeem_code(code, REDIRECT, VERIFIER, "app1")
        clock.advance(minutes=5)

        with pytest.raises(InvalidGrant):
            await coordinator.redeem_code(code, REDIRECT, VERIFIER, "app1")
        assert memory_store.families[grant.family.family_id].revoked is True

    async def test_concurrent_redeem_single_winner(self, coordinator, memory_store):
        code = await approved_code(coordinator)

        results = await asyncio.gather(
            coordinator.redeem_code(code, REDIRECT, VERIFIER, "app1"),
            coordinator.redeem_code(code, REDIRECT, VERIFIER, "app1"),
            return_exceptions=True,
        )

        grants = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(grants) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidGrant)
        assert memory_store.families[grants[0].family.family_id].revoked is True

    async def test_unknown_code(self, coordinator):
        with pytest.raises(InvalidGrant):
            await coordinator.redeem_code("c_missing", REDIRECT, VERIFIER, "app1")

    async def test_expired_code(self, coordinator, clock):
        code = await approved_code(coordinator)
        clock.advance(seconds=61)
        with pytest.raises(InvalidGrant):
            await coordinator.redeem_code(code, REDIRECT, VERIFIER, "app1")

    async def test_wrong_verifier_s256(self, coordinator):
        code = await approved_code(coordinator)
        with pytest.raises(InvalidGrant):
            await coordinator.redeem_code(code, REDIRECT, VERIFIER + "y", "app1")

    async def test_wrong_verifier_plain(self, coordinator):
        code = await approved_code(coordinator, method="plain", challenge=VERIFIER)
        with pytest.raises(InvalidGrant):
            await coordinator.redeem_code(code, REDIRECT, VERIFIER[:-1] + "z", "app1")

    async def test_plain_method_round_trip(self, coordinator):
        code = await approved_code(coordinator, method="plain", challenge=VERIFIER)
        grant = await coordinator.redeem_code(code, REDIRECT, VERIFIER, "app1")
        assert grant.pair.generation == 0

    async def test_s256_verifier_sent_as_challenge_fails(self, coordinator):
        code = await approved_code(coordinator)
        with pytest.raises(InvalidGrant):
            await coordinator.redeem_code(code, REDIRECT, s256(), "app1")

    @pytest.mark.parametrize(
        "verifier",
        ["vérifier-" + "x" * 40, "short", "x" * 129, "bad verifier " + "x" * 40],
    )
    async def test_malformed_verifier_is_invalid_grant(self, coordinator, verifier):
        code = await approved_code(coordinator)
        with pytest.raises(InvalidGrant):
            await coordinator.redeem_code(code, REDIRECT, verifier, "app1")

        grant = await coordinator.redeem_code(code, REDIRECT, VERIFIER, "app1")
        assert grant.pair.generation == 0

    @pytest.mark.parametrize(
        "redirect_uri",
        ["https://app.test/cb/", "http://app.test/cb", "https://app.test:443/cb"],
    )
    async def test_redirect_mismatch(self, coordinator, redirect_uri):
        code = await approved_code(coordinator)
        with pytest.raises(InvalidGrant):
            await coordinator.redeem_code(code, redirect_uri, VERIFIER, "app1")

    async def test_client_mismatch(self, coordinator):
        code = await approved_code(coordinator)
        with pytest.raises(InvalidGrant):
            await coordinator.redeem_code(code, REDIRECT, VERIFIER, "app2")

    async def test_unknown_client_on_redeem(self, coordinator):
        code = await approved_code(coordinator)
        with pytest.raises(InvalidClient):
            await coordinator.redeem_code(code, REDIRECT, VERIFIER, "nope")

    async def test_binding_failure_does_not_burn_code(self, coordinator):
        """A mismatched verifier is rejected without consuming the code."""
        code = await approved_code(coordinator)
        with pytest.raises(InvalidGrant):
            await coordinator.redeem_code(code, REDIRECT, "wrong" * 10, "app1")

        grant = await coordinator.redeem_code(code, REDIRECT, VERIFIER, "app1")
        assert grant.pair.generation == 0

    async def test_missing_parameters(self, coordinator):
        with pytest.raises(InvalidRequest):
            await coordinator.redeem_code("", REDIRECT, VERIFIER, "app1")
        with pytest.raises(InvalidRequest):
            await coordinator.redeem_code("c", REDIRECT, "", "app1")


class TestSweep:
    async def test_sweep_removes_expired_requests_and_codes(
        self, coordinator, memory_store, clock, settings
    ):
        await coordinator.start_flow("app1", REDIRECT, s256(), "S256")
        await approved_code(coordinator)
        clock.advance(seconds=601)

        swept = await coordinator.sweep_expired()
        assert swept["authorization_requests"] == 1
        # redeemable window is over but the code is kept for replay detection
        assert swept["authorization_codes"] == 0

        clock.advance(seconds=settings.code_replay_retention_seconds)
        swept = await coordinator.sweep_expired()
        assert swept["authorization_codes"] == 1
        assert memory_store.authorization_codes == {}

    async def test_opportunistic_sweep_runs_once_per_interval(
        self, memory_store, settings, tokens, clock
    ):
        coordinator = AuthorizationFlowCoordinator(
            memory_store, settings, tokens, now=clock, sweep_interval_seconds=300
        )
        first = await coordinator.start_flow("app1", REDIRECT, s256(), "S256")
        clock.advance(seconds=601)
        await coordinator.start_flow("app1", REDIRECT, s256(), "S256")

        assert first.state not in memory_store.authorization_requests
        assert len(memory_store.authorization_requests) == 1
