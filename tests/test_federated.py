"""
tests/test_federated.py -- ID-token verification against a local key set.

Tokens are signed with an RSA key generated by authlib in conftest; the
verifier's fetcher returns the matching public key set, so nothing touches
the network.

Coverage:
  - Valid token -> FederatedIdentity (subject, email, name, picture, issuer)
  - Both Google issuer spellings accepted
  - Wrong audience, wrong issuer, expired, unverified email, missing email,
    foreign signing key, garbage input, and an empty audience are rejected
  - Key set is cached; an unknown kid forces exactly one refetch
  - Key set download failure -> InvalidAssertion
"""

from __future__ import annotations

import time

import pytest
import requests
from authlib.jose import JsonWebKey

from auth.errors import InvalidAssertion
from auth.federated import FederatedVerifier
from conftest import CLIENT_ID


class _CountingFetcher:
    def __init__(self, *key_sets: dict) -> None:
        self._key_sets = list(key_sets)
        self.calls = 0

    def __call__(self, url: str) -> dict:
        key_set = self._key_sets[min(self.calls, len(self._key_sets) - 1)]
        self.calls += 1
        return key_set


class TestVerifyFederated:
    def test_valid_token(self, federated_verifier: FederatedVerifier, make_id_token) -> None:
        identity = federated_verifier.verify_federated(make_id_token(), CLIENT_ID)
        assert identity.subject == "1234567890"
        assert identity.email == "carol@example.com"
        assert identity.full_name == "Carol Danvers"
        assert identity.avatar == "https://example.com/carol.png"
        assert identity.issuer == "https://accounts.google.com"

    def test_bare_issuer_accepted(self, federated_verifier: FederatedVerifier, make_id_token) -> None:
        identity = federated_verifier.verify_federated(make_id_token(iss="accounts.google.com"), CLIENT_ID)
        assert identity.issuer == "accounts.google.com"

    def test_name_falls_back_to_email(self, federated_verifier: FederatedVerifier, make_id_token) -> None:
        identity = federated_verifier.verify_federated(make_id_token(name=None, picture=None), CLIENT_ID)
        assert identity.full_name == "carol@example.com"
        assert identity.avatar is None

    @pytest.mark.parametrize(
        "overrides",
        [
            {"aud": "someone-else.apps.example.com"},
            {"iss": "https://evil.example.com"},
            {"exp": int(time.time()) - 60},
            {"email_verified": False},
            {"email_verified": None},
            {"email_verified": "true"},
            {"email": None},
            {"sub": None},
        ],
        ids=[
            "audience", "issuer", "expired", "unverified", "no-verified-claim", "string-verified", "no-email", "no-sub"
        ],
    )
    def test_rejected_claims(self, federated_verifier: FederatedVerifier, make_id_token, overrides: dict) -> None:
        with pytest.raises(InvalidAssertion):
            federated_verifier.verify_federated(make_id_token(**overrides), CLIENT_ID)

    def test_foreign_key_rejected(self, federated_verifier: FederatedVerifier, make_id_token) -> None:
        foreign = JsonWebKey.generate_key("RSA", 2048, is_private=True)
        with pytest.raises(InvalidAssertion):
            federated_verifier.verify_federated(make_id_token(key=foreign), CLIENT_ID)

    @pytest.mark.parametrize("assertion", ["", "not-a-jwt", "a.b.c"])
    def test_garbage_rejected(self, federated_verifier: FederatedVerifier, assertion: str) -> None:
        with pytest.raises(InvalidAssertion):
            federated_verifier.verify_federated(assertion, CLIENT_ID)

    def test_unconfigured_audience_rejects_everything(
        self, federated_verifier: FederatedVerifier, make_id_token
    ) -> None:
        with pytest.raises(InvalidAssertion):
            federated_verifier.verify_federated(make_id_token(aud=""), "")


class TestKeySet:
    def test_key_set_is_cached(self, key_set: dict, make_id_token) -> None:
        fetcher = _CountingFetcher(key_set)
        verifier = FederatedVerifier("https://jwks.test/certs", ["https://accounts.google.com"], fetcher=fetcher)
        verifier.verify_federated(make_id_token(), CLIENT_ID)
        verifier.verify_federated(make_id_token(), CLIENT_ID)
        assert fetcher.calls == 1

    def test_unknown_kid_forces_refetch(self, rsa_key, key_set: dict, make_id_token) -> None:
        rotated = JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": "rotated-key"})
        new_set = {"keys": key_set["keys"] + [rotated.as_dict(is_private=False, kid="rotated-key")]}
        fetcher = _CountingFetcher(key_set, new_set)
        verifier = FederatedVerifier("https://jwks.test/certs", ["https://accounts.google.com"], fetcher=fetcher)

        verifier.verify_federated(make_id_token(), CLIENT_ID)
        identity = verifier.verify_federated(make_id_token(key=rotated, kid="rotated-key"), CLIENT_ID)
        assert identity.email == "carol@example.com"
        assert fetcher.calls == 2

    def test_expired_cache_is_refreshed(self, key_set: dict, make_id_token) -> None:
        fetcher = _CountingFetcher(key_set)
        verifier = FederatedVerifier(
            "https://jwks.test/certs", ["https://accounts.google.com"], key_set_ttl=-1, fetcher=fetcher
        )
        verifier.verify_federated(make_id_token(), CLIENT_ID)
        verifier.verify_federated(make_id_token(), CLIENT_ID)
        assert fetcher.calls == 2

    def test_download_failure_is_invalid_assertion(self, make_id_token) -> None:
        def failing(url: str) -> dict:
            raise requests.ConnectionError("unreachable")

        verifier = FederatedVerifier("https://jwks.test/certs", ["https://accounts.google.com"], fetcher=failing)
        with pytest.raises(InvalidAssertion):
            verifier.verify_federated(make_id_token(), CLIENT_ID)
