import time

import pytest

from app.core.errors import InvalidState, ServerMisconfigured
from app.services import state as state_mod
from app.services.state import create_state, verify_state


def test_state_round_trip_carries_website_id():
    token = create_state("site-42", secret="k1")
    payload = verify_state(token, secret="k1")
    assert payload["website_id"] == "site-42"
    assert payload["exp"] - payload["iat"] == 300


def test_state_signed_with_other_secret_is_rejected():
    token = create_state("site-42", secret="k1")
    with pytest.raises(InvalidState):
        verify_state(token, secret="k2")


def test_tampered_payload_is_rejected():
    token = create_state("site-42", secret="k1")
    other = create_state("site-99", secret="k1")
    h, _, s = token.split(".")
    forged = ".".join([h, other.split(".")[1], s])
    with pytest.raises(InvalidState, match="signature"):
        verify_state(forged, secret="k1")


@pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d"])
def test_malformed_state_is_rejected(garbage):
    with pytest.raises(InvalidState):
        verify_state(garbage, secret="k1")


def test_expired_state_is_rejected(monkeypatch):
    token = create_state("site-42", secret="k1", ttl_seconds=300)
    real_now = time.time()
    monkeypatch.setattr(state_mod.time, "time", lambda: real_now + 400)
    with pytest.raises(InvalidState, match="expired"):
        verify_state(token, secret="k1")


def test_state_needs_a_secret():
    with pytest.raises(ServerMisconfigured):
        create_state("site-42", secret="")


@pytest.mark.parametrize("sig", ["é", "sig☃", "ÿ" * 43])
def test_non_ascii_signature_is_rejected(sig):
    h, p, _ = create_state("site-42", secret="k1").split(".")
    with pytest.raises(InvalidState, match="signature"):
        verify_state(f"{h}.{p}.{sig}", secret="k1")
