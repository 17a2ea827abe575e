import asyncio

import httpx
import pytest

from booking.config import IdentitySettings
from booking.errors import Forbidden, Unauthorized, UpstreamFailure
from booking.models import User
from booking.repositories import users_repo
from booking.services.identity import IdentityVerifier, identity_verifier


def _run(coro):
    return asyncio.run(coro)


def test_stub_token_resolves_role_from_directory() -> None:
    users_repo.upsert(User(uid="client-1", role="client"))
    identity_verifier.register_token("tok-client", "client-1")
    identity = _run(identity_verifier.verify("tok-client"))
    assert identity.uid == "client-1"
    assert identity.role == "client"


def test_missing_or_unknown_token_is_unauthorized() -> None:
    with pytest.raises(Unauthorized):
        _run(identity_verifier.verify(None))
    with pytest.raises(Unauthorized):
        _run(identity_verifier.verify("nope"))


def test_missing_profile_or_role_is_forbidden() -> None:
    identity_verifier.register_token("tok-ghost", "ghost")
    with pytest.raises(Forbidden):
        _run(identity_verifier.verify("tok-ghost"))

    users_repo.upsert(User(uid="odd", role="superuser"))
    identity_verifier.register_token("tok-odd", "odd")
    with pytest.raises(Forbidden):
        _run(identity_verifier.verify("tok-odd"))


def _remote_verifier(monkeypatch, handler) -> IdentityVerifier:
    verifier = IdentityVerifier()
    monkeypatch.setattr(
        verifier,
        "_settings",
        IdentitySettings(provider="remote", verify_url="https://id.test/verify"),
    )
    transport = httpx.MockTransport(handler)
    real_client = httpx.AsyncClient

    def _client(*args, **kwargs):
        kwargs["transport"] = transport
        return real_client(*args, **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", _client)
    return verifier


def test_remote_verification(monkeypatch) -> None:
    users_repo.upsert(User(uid="prov-1", role="provider"))

    def handler(request: httpx.Request) -> httpx.Response:
        if b"good" in request.content:
            return httpx.Response(200, json={"uid": "prov-1"})
        return httpx.Response(401, json={"error": "expired"})

    verifier = _remote_verifier(monkeypatch, handler)
    assert _run(verifier.verify("good-token")).role == "provider"
    with pytest.raises(Unauthorized):
        _run(verifier.verify("stale-token"))


def test_remote_outage_is_upstream_failure(monkeypatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    verifier = _remote_verifier(monkeypatch, handler)
    with pytest.raises(UpstreamFailure):
        _run(verifier.verify("any"))
