"""Tests for tracking-link token minting and rotation."""

from __future__ import annotations

import string
from datetime import timedelta

from lifeline.models.session import EmergencySession, SharedProfile
from lifeline.services.token_minter import TokenMinter


def _session(token: str, clock) -> EmergencySession:
    return EmergencySession(
        id="s1",
        user_id="user-1",
        access_token=token,
        token_created_at=clock(),
        start_time=clock(),
        shared_profile=SharedProfile(name="Maya Okafor"),
    )


class TestMint:
    def test_token_is_16_alphanumeric_chars(self) -> None:
        token = TokenMinter().mint()
        assert len(token) == 16, "default token length should be 16"
        assert set(token) <= set(string.ascii_letters + string.digits), "token should be alphanumeric"

    def test_custom_length(self) -> None:
        assert len(TokenMinter(length=32).mint()) == 32

    def test_tokens_are_unique(self) -> None:
        minter = TokenMinter()
        tokens = {minter.mint("same-seed") for _ in range(200)}
        assert len(tokens) == 200, "the seed must not make tokens deterministic"


class TestEnsureFresh:
    def test_same_token_within_12_hours(self, clock) -> None:
        minter = TokenMinter(clock=clock)
        session = _session("tokenAAAAAAAAAAA", clock)

        clock.advance(hours=11, minutes=59)
        first = minter.ensure_fresh(session)
        second = minter.ensure_fresh(session)

        assert first.token == "tokenAAAAAAAAAAA", "token younger than 12h should be reused"
        assert second.token == first.token, "repeated calls inside the window should agree"
        assert not first.rotated, "reused token needs no write"

    def test_new_token_after_12_hours(self, clock) -> None:
        minter = TokenMinter(clock=clock)
        session = _session("tokenAAAAAAAAAAA", clock)

        clock.advance(hours=12)
        grant = minter.ensure_fresh(session)

        assert grant.rotated, "a 12h-old token should be rotated"
        assert grant.token != "tokenAAAAAAAAAAA", "rotation should produce a different token"
        assert grant.created_at == clock(), "rotated token should be stamped with the current time"

    def test_empty_token_is_replaced(self, clock) -> None:
        minter = TokenMinter(clock=clock)
        grant = minter.ensure_fresh(_session("", clock))
        assert grant.rotated
        assert len(grant.token) == 16

    def test_custom_reuse_window(self, clock) -> None:
        minter = TokenMinter(reuse_window=timedelta(minutes=5), clock=clock)
        session = _session("tokenAAAAAAAAAAA", clock)
        clock.advance(minutes=6)
        assert minter.ensure_fresh(session).rotated
