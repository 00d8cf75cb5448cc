"""
auth/federated.py -- Verification of federated identity assertions (OIDC ID tokens).

A client that signed in with the identity provider (Google by default) posts
the provider's ID token. We verify it ourselves, offline except for the key
set download:

  1. Signature -- RS256 only, against the provider's JSON Web Key Set. The key
     set is fetched with requests and cached for key_set_ttl seconds; an
     unknown key id forces one refetch (providers rotate keys).
  2. Claims -- authlib.jose JWTClaims validation: iss must be a trusted
     issuer, aud must contain our client ID, exp must be present and in the
     future, sub and email must be present.
  3. [H1] email_verified must be true. An unverified address could belong to
     someone who never proved ownership of it, and we match accounts by email.

Every failure raises the same InvalidAssertion. The reason is logged at
warning level and never returned to the caller.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import threading
import time

import requests
from authlib.jose import JsonWebKey, JsonWebToken, KeySet
from authlib.jose.errors import JoseError

from auth.errors import InvalidAssertion
from auth.models import FederatedIdentity

logger = logging.getLogger("identity.auth.federated")

# RS256 only -- never accept "none" or a symmetric algorithm for a provider token.
_jwt = JsonWebToken(["RS256"])

# Module-level session for connection pooling; the key set endpoint is a
# known public URL, so a short redirect chain is enough.
_session = requests.Session()
_session.max_redirects = 3


def fetch_key_set(url: str) -> dict:
    """Download a JSON Web Key Set document. Raises requests.RequestException on failure."""
    resp = _session.get(url, timeout=10)
    resp.raise_for_status()
    return resp.json()


class FederatedVerifier:
    """Verifies ID tokens issued by one trusted identity provider.

    Args:
        jwks_url:     The provider's key set endpoint.
        issuers:      Accepted values of the iss claim.
        key_set_ttl:  Seconds a downloaded key set is reused.
        fetcher:      Callable(url) -> key set dict. Defaults to fetch_key_set;
                      tests pass a local key set instead.
    """

    def __init__(
        self,
        jwks_url: str,
        issuers: list[str],
        key_set_ttl: int = 3600,
        fetcher=fetch_key_set,
    ) -> None:
        self._jwks_url = jwks_url
        self._issuers = list(issuers)
        self._ttl = key_set_ttl
        self._fetcher = fetcher
        self._key_set: KeySet | None = None
        self._fetched_at = 0.0
        self._lock = threading.Lock()

    def verify_federated(self, assertion: str, expected_audience: str) -> FederatedIdentity:
        """Return the verified identity or raise InvalidAssertion."""
        if not expected_audience:
            logger.warning("Federated login attempted but no client ID is configured")
            raise InvalidAssertion()
        if not assertion:
            raise InvalidAssertion()

        try:
            claims = self._decode(assertion, expected_audience)
        except (JoseError, ValueError, requests.RequestException) as exc:
            logger.warning("ID token rejected: %s", exc)
            raise InvalidAssertion() from exc

        if claims.get("email_verified") is not True:
            logger.warning("ID token rejected: email not verified (sub=%s)", claims.get("sub"))
            raise InvalidAssertion()

        email = claims["email"]
        return FederatedIdentity(
            subject=str(claims["sub"]),
            email=email,
            full_name=claims.get("name") or email,
            issuer=claims["iss"],
            avatar=claims.get("picture"),
        )

    def _decode(self, assertion: str, audience: str):
        options = {
            "iss": {"essential": True, "values": self._issuers},
            "aud": {"essential": True, "value": audience},
            "exp": {"essential": True},
            "sub": {"essential": True},
            "email": {"essential": True},
        }
        try:
            claims = _jwt.decode(assertion, self._keys(), claims_options=options)
        except ValueError:
            # Unknown key id: the provider may have rotated keys since our last fetch.
            claims = _jwt.decode(assertion, self._keys(force=True), claims_options=options)
        claims.validate()
        return claims

    def _keys(self, force: bool = False) -> KeySet:
        with self._lock:
            stale = time.monotonic() - self._fetched_at > self._ttl
            if force or self._key_set is None or stale:
                self._key_set = JsonWebKey.import_key_set(self._fetcher(self._jwks_url))
                self._fetched_at = time.monotonic()
                logger.info("Loaded %d signing keys from %s", len(self._key_set.keys), self._jwks_url)
            return self._key_set
