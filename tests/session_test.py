import json

import acme.jws
import josepy
import pytest
from multidict import CIMultiDict

from certpilot.client import crypto
from certpilot.client.directory import PRODUCTION_DIRECTORY, STAGING_DIRECTORY, DirectoryResolver
from certpilot.client.exceptions import DirectoryError, NonceError
from certpilot.client.nonce import NonceProvider
from certpilot.client.polling import Deadline, RetryPolicy
from certpilot.client.session import AcmeResponse, AcmeSession
from certpilot.client.signing import JWSSigner, encode_payload
from certpilot.models import KeyAlgorithm, messages
from .clients import FakeClock

DIRECTORY = {
    "newAccount": "https://ca.test/new-account",
    "newOrder": "https://ca.test/new-order",
    "newNonce": "https://ca.test/new-nonce",
    "keyChange": "https://ca.test/key-change",
    "revokeCert": "https://ca.test/revoke-cert",
}


class ScriptedSession:
    """Answers requests with the given responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    async def _next(self, method, url):
        self.requests.append((method, url))
        resp = self.responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp

    async def get(self, url):
        return await self._next("GET", url)

    async def head(self, url):
        return await self._next("HEAD", url)


def nonce_response(nonce="bm9uY2U"):
    return AcmeResponse(200, CIMultiDict({"Replay-Nonce": nonce}))


class StaticNonces:
    async def fetch_nonce(self, new_nonce_url):
        return josepy.b64.b64encode(b"nonce").decode()


@pytest.fixture(scope="module")
def account_key():
    return crypto.jwk_of(crypto.generate_key_pair(KeyAlgorithm.RSA, 2048))


@pytest.mark.asyncio
async def test_fetch_nonce():
    session = ScriptedSession(nonce_response(" abc "))
    assert await NonceProvider(session).fetch_nonce(DIRECTORY["newNonce"]) == "abc"
    assert session.requests == [("HEAD", DIRECTORY["newNonce"])]


@pytest.mark.parametrize(
    "response",
    [
        AcmeResponse(503),
        AcmeResponse(200),
        AcmeResponse(200, CIMultiDict({"Replay-Nonce": "  "})),
    ],
)
@pytest.mark.asyncio
async def test_fetch_nonce_fails(response):
    with pytest.raises(NonceError):
        await NonceProvider(ScriptedSession(response)).fetch_nonce(DIRECTORY["newNonce"])


@pytest.mark.asyncio
async def test_resolve_directory():
    session = ScriptedSession(AcmeResponse(200, content_type="application/json", body=dict(DIRECTORY, meta={})))
    directory = await DirectoryResolver(session, "https://ca.test/directory").resolve(False)

    assert directory.new_nonce == DIRECTORY["newNonce"]
    assert directory.revoke_cert == DIRECTORY["revokeCert"]
    assert session.requests == [("GET", "https://ca.test/directory")]


def test_directory_url():
    assert DirectoryResolver(None).directory_url(True) == STAGING_DIRECTORY
    assert DirectoryResolver(None).directory_url(False) == PRODUCTION_DIRECTORY
    assert DirectoryResolver(None, "https://ca.test/directory").directory_url(True) == "https://ca.test/directory"


@pytest.mark.parametrize(
    "response",
    [
        AcmeResponse(500, content_type="application/json", body=DIRECTORY),
        AcmeResponse(200, content_type="text/html", body="<html/>"),
        AcmeResponse(200, content_type="application/json", body={"newNonce": DIRECTORY["newNonce"]}),
    ],
)
@pytest.mark.asyncio
async def test_resolve_directory_fails(response):
    with pytest.raises(DirectoryError):
        await DirectoryResolver(ScriptedSession(response), "https://ca.test/directory").resolve(False)


@pytest.mark.asyncio
async def test_retry_policy_recovers():
    clock = FakeClock()
    session = ScriptedSession(AcmeResponse(500), AcmeResponse(500), nonce_response("abc"))
    policy = RetryPolicy(delay=60, max_attempts=10)

    nonce = await policy.call(NonceProvider(session).fetch_nonce, "u", retry_on=(NonceError,), clock=clock)

    assert nonce == "abc"
    assert clock.sleeps == [60, 60]


@pytest.mark.asyncio
async def test_retry_policy_exhausted():
    clock = FakeClock()
    session = ScriptedSession(*[AcmeResponse(500)] * 3)

    with pytest.raises(NonceError):
        await RetryPolicy(delay=1, max_attempts=3).call(
            NonceProvider(session).fetch_nonce, "u", retry_on=(NonceError,), clock=clock
        )
    assert len(session.requests) == 3
    assert clock.sleeps == [1, 1]


@pytest.mark.asyncio
async def test_retry_policy_unbounded():
    clock = FakeClock()
    session = ScriptedSession(*[AcmeResponse(500)] * 25, nonce_response("abc"))

    nonce = await RetryPolicy(delay=2, max_attempts=None).call(
        NonceProvider(session).fetch_nonce, "u", retry_on=(NonceError,), clock=clock
    )
    assert nonce == "abc"
    assert clock.now == 50


def test_deadline():
    clock = FakeClock()
    deadline = Deadline(5, clock)
    forever = Deadline(0, clock)

    clock.now = 5
    assert not deadline.expired()
    clock.now = 5.5
    assert deadline.expired()
    assert not forever.expired()
    assert not Deadline(None, clock).expired()


def test_encode_payload():
    assert encode_payload(None) == b""
    assert encode_payload(b"raw") == b"raw"
    assert json.loads(encode_payload({"a": 1})) == {"a": 1}
    assert json.loads(encode_payload(messages.AccountUpdate(only_return_existing=True))) == {
        "onlyReturnExisting": True
    }


@pytest.mark.asyncio
async def test_sign_jwk(account_key):
    signer = JWSSigner(StaticNonces(), DIRECTORY["newNonce"], RetryPolicy(), FakeClock())
    jws = acme.jws.JWS.json_loads(await signer.sign_jwk(DIRECTORY["newAccount"], {"a": 1}, account_key))
    header = jws.signature.combined

    assert header.url == DIRECTORY["newAccount"]
    assert header.nonce == b"nonce"
    assert header.alg == josepy.RS256
    assert header.kid is None
    assert header.jwk == account_key.public_key()
    assert jws.verify(account_key.public_key())
    assert json.loads(jws.payload) == {"a": 1}


@pytest.mark.asyncio
async def test_sign_kid(account_key):
    signer = JWSSigner(StaticNonces(), DIRECTORY["newNonce"], RetryPolicy(), FakeClock())
    jws = acme.jws.JWS.json_loads(
        await signer.sign_kid("https://ca.test/order/1", "https://ca.test/account/1", None, account_key)
    )
    header = jws.signature.combined

    assert header.kid == "https://ca.test/account/1"
    assert header.jwk is None
    assert jws.payload == b""
    assert jws.verify(account_key.public_key())


@pytest.mark.asyncio
async def test_tampered_url_fails_verification(account_key):
    signer = JWSSigner(StaticNonces(), DIRECTORY["newNonce"], RetryPolicy(), FakeClock())
    data = json.loads(await signer.sign_jwk(DIRECTORY["newOrder"], {"a": 1}, account_key))

    protected = json.loads(josepy.b64.b64decode(data["protected"]))
    protected["url"] = DIRECTORY["revokeCert"]
    data["protected"] = josepy.b64.b64encode(json.dumps(protected).encode()).decode()

    assert not acme.jws.JWS.json_loads(json.dumps(data)).verify(account_key.public_key())


def test_bad_nonce_response():
    body = {"type": "urn:ietf:params:acme:error:badNonce", "detail": "stale"}

    assert AcmeResponse(400, body=body).is_bad_nonce
    assert not AcmeResponse(403, body=body).is_bad_nonce
    assert not AcmeResponse(400, body="badNonce").is_bad_nonce
    assert AcmeResponse(201, CIMultiDict({"location": "https://ca.test/x"})).location == "https://ca.test/x"


@pytest.mark.asyncio
async def test_request_before_start():
    with pytest.raises(RuntimeError):
        await AcmeSession().get("https://ca.test/directory")
