import asyncio
import json
import logging
import types

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from certpilot import util
from certpilot.client import (
    AcmeClient,
    AuthorizationError,
    CAVerificationTimeout,
    ChallengeFailed,
    LocalVerificationTimeout,
    OrderError,
    OrderManager,
    PreconditionError,
)
from certpilot.client.challenge import Dns01Credential, Http01Credential
from certpilot.client.crypto import dns01_txt_value, key_authorization
from certpilot.client.order import TIME_FORMAT
from certpilot.models import AuthorizationStatus, ChallengeType, KeyAlgorithm, OrderStatus
from certpilot.models.messages import RevocationReason

log = logging.getLogger(__name__)

DOMAINS = {
    ChallengeType.HTTP_01: ["www.example.org", "example.org"],
    ChallengeType.DNS_01: ["*.example.org"],
}
ALL_DOMAINS = ["*.example.org", "example.org", "www.example.org"]


@pytest.mark.parametrize("algorithm", [KeyAlgorithm.RSA, KeyAlgorithm.EC])
@pytest.mark.asyncio
async def test_obtain_certificate(ca, client, client_config, solver, algorithm):
    files = await client.obtain_certificate(DOMAINS, algorithm)

    path = client_config.storage_path / util.fingerprint(ALL_DOMAINS) / algorithm.value
    assert files.certificate == (path / "certificate.crt").resolve()
    assert files.private_key.stat().st_mode & 0o777 == 0o600
    assert (path.parent / "DOMAIN").read_text() == "\r\n".join(ALL_DOMAINS)

    cert = x509.load_pem_x509_certificate(files.certificate.read_bytes())
    key_type = rsa.RSAPublicKey if algorithm == KeyAlgorithm.RSA else ec.EllipticCurvePublicKey
    assert isinstance(cert.public_key(), key_type)
    assert files.certificate_full_chained.read_text().count("BEGIN CERTIFICATE") == 2
    assert files.valid_from_timestamp == int(cert.not_valid_before_utc.timestamp())
    assert files.valid_to_timestamp == int(cert.not_valid_after_utc.timestamp())

    csr = x509.load_pem_x509_csr((path / "certificate.csr").read_bytes())
    assert util.names_of(csr) == set(ALL_DOMAINS)

    info = json.loads((path / "ORDER").read_text())
    assert info["orderUrl"].startswith(f"{ca.base}/order/")
    assert info["validToTimestamp"] == files.valid_to_timestamp
    assert info["validToTime"] == cert.not_valid_after_utc.strftime(TIME_FORMAT)

    assert len(solver.completed) == 3
    assert solver.cleaned == solver.completed

    credentials = {challenge.domain: challenge.credential for challenge in solver.completed}
    assert isinstance(credentials["example.org"], Http01Credential)
    assert isinstance(credentials["*.example.org"], Dns01Credential)
    assert credentials["*.example.org"].identifier == "example.org"


@pytest.mark.asyncio
async def test_challenge_credentials(ca, client):
    order = await client.order(DOMAINS)
    challenges = {challenge.domain: challenge for challenge in order.get_pending_challenge_list()}

    http = challenges["www.example.org"]
    token = http.authorization.get_challenge(ChallengeType.HTTP_01).token
    assert http.type == ChallengeType.HTTP_01
    assert http.credential.file_name == token
    assert http.credential.file_content == key_authorization(token, client.account.thumbprint)

    dns = challenges["*.example.org"]
    token = dns.authorization.get_challenge(ChallengeType.DNS_01).token
    assert dns.credential.dns_content == dns01_txt_value(key_authorization(token, client.account.thumbprint))


@pytest.mark.asyncio
async def test_resume_order(ca, client):
    await client.obtain_certificate(DOMAINS)
    order_url = json.loads(
        (client.config.storage_path / util.fingerprint(ALL_DOMAINS) / "rsa" / "ORDER").read_text()
    )["orderUrl"]

    order = await client.order(DOMAINS, generate_new_order=False)

    assert order.order_url == order_url
    assert order.status == OrderStatus.VALID
    assert order.get_pending_challenge_list() == []
    assert ca.requests.count(("POST", "/new-order")) == 1

    files = await order.get_certificate_file()
    assert files.certificate.is_file()
    assert ca.requests.count(("POST", f"/finalize/{order_url.rsplit('/', 1)[-1]}")) == 1


@pytest.mark.asyncio
async def test_resume_without_cached_order(ca, client):
    order = await client.order({ChallengeType.HTTP_01: ["example.org"]}, generate_new_order=False)

    assert order.status == OrderStatus.PENDING
    assert ca.requests.count(("POST", "/new-order")) == 1


@pytest.mark.asyncio
async def test_new_order_discards_cache(ca, client):
    domains = {ChallengeType.HTTP_01: ["example.org"]}
    await client.obtain_certificate(domains, KeyAlgorithm.EC)

    order = await client.order(domains, KeyAlgorithm.EC)

    assert order.status == OrderStatus.PENDING
    assert not order.storage.certificate_path.exists()
    assert not order.storage.private_key_path.exists()


@pytest.mark.asyncio
async def test_orders_per_algorithm_are_separate(client):
    rsa_order = await client.order(DOMAINS, KeyAlgorithm.RSA)
    ec_order = await client.order(DOMAINS, KeyAlgorithm.EC)

    assert rsa_order.fingerprint == ec_order.fingerprint
    assert rsa_order.storage.path != ec_order.storage.path
    assert rsa_order.order_url != ec_order.order_url


@pytest.mark.parametrize("algorithm", [KeyAlgorithm.RSA, KeyAlgorithm.EC])
@pytest.mark.asyncio
async def test_revoke_certificate(ca, client, algorithm):
    await client.obtain_certificate(DOMAINS, algorithm)

    assert await client.revoke_certificate(DOMAINS, algorithm, RevocationReason.keyCompromise)

    (issued,) = ca.certificates.values()
    assert issued.revoked == RevocationReason.keyCompromise.value

    with pytest.raises(OrderError) as excinfo:
        await client.revoke_certificate(DOMAINS, algorithm)
    assert excinfo.value.problem.typ == "urn:ietf:params:acme:error:alreadyRevoked"


@pytest.mark.asyncio
async def test_revoke_pending_order(ca, client):
    order = await client.order(DOMAINS)
    requests = len(ca.requests)

    with pytest.raises(PreconditionError):
        await order.revoke_certificate()
    assert len(ca.requests) == requests


@pytest.mark.asyncio
async def test_certificate_before_validation(ca, client):
    order = await client.order(DOMAINS)

    with pytest.raises(PreconditionError):
        await order.get_certificate_file()
    assert ca.requests.count(("POST", f"/finalize/{order.order_url.rsplit('/', 1)[-1]}")) == 0


@pytest.mark.asyncio
async def test_get_order_without_url(client):
    order = OrderManager(client.session, client.account, client.config.storage_path, DOMAINS)

    with pytest.raises(PreconditionError):
        await order.get_order()


def test_order_needs_domains(tmp_path):
    with pytest.raises(ValueError):
        OrderManager(None, None, tmp_path, {ChallengeType.HTTP_01: [" "]})


@pytest.mark.parametrize(
    "status",
    [
        AuthorizationStatus.PENDING,
        AuthorizationStatus.EXPIRED,
        AuthorizationStatus.INVALID,
        AuthorizationStatus.DEACTIVATED,
        AuthorizationStatus.REVOKED,
        "processing",
    ],
)
def test_is_all_authorization_valid(tmp_path, status):
    order = OrderManager(None, None, tmp_path, DOMAINS)
    order.authorizations = [
        types.SimpleNamespace(status=AuthorizationStatus.VALID),
        types.SimpleNamespace(status=status),
    ]
    assert not order.is_all_authorization_valid()

    order.authorizations[1].status = AuthorizationStatus.VALID
    assert order.is_all_authorization_valid()
    assert order.get_pending_challenge_list() == []


@pytest.mark.asyncio
async def test_verify_skips_when_all_valid(ca, client):
    order = await client.order({ChallengeType.HTTP_01: ["example.org"]})
    (challenge,) = order.get_pending_challenge_list()
    assert await challenge.verify()

    requests = len(ca.requests)
    assert await challenge.verify()
    assert len(ca.requests) == requests


@pytest.mark.asyncio
async def test_ca_verification_timeout(ca, client, clock):
    ca.auto_validate = False
    order = await client.order({ChallengeType.HTTP_01: ["example.org"]})
    (challenge,) = order.get_pending_challenge_list()

    with pytest.raises(CAVerificationTimeout) as excinfo:
        await challenge.verify(ca_timeout=2)
    assert excinfo.value.retryable
    assert 2 <= clock.now <= 5


@pytest.mark.asyncio
async def test_local_verification_timeout(ca, client, clock, local_checks):
    local_checks[ChallengeType.HTTP_01].published = False
    order = await client.order({ChallengeType.HTTP_01: ["example.org"]})
    (challenge,) = order.get_pending_challenge_list()

    with pytest.raises(LocalVerificationTimeout):
        await challenge.verify(local_timeout=5)
    assert clock.now == 6
    assert len(local_checks[ChallengeType.HTTP_01].lookups) == 2
    assert not any(path.startswith("/challenge/") for _, path in ca.requests)


@pytest.mark.asyncio
async def test_local_check_polls_until_published(ca, client, clock, local_checks):
    local_checks[ChallengeType.HTTP_01].delay_polls = 2
    await client.obtain_certificate({ChallengeType.HTTP_01: ["example.org"]})

    assert len(local_checks[ChallengeType.HTTP_01].lookups) == 3
    assert clock.sleeps[:2] == [3.0, 3.0]


@pytest.mark.asyncio
async def test_challenge_failed(ca, client, solver):
    ca.fail_validation = True

    with pytest.raises(ChallengeFailed) as excinfo:
        await client.obtain_certificate({ChallengeType.HTTP_01: ["example.org"]})
    assert not excinfo.value.retryable
    assert len(solver.cleaned) == 1


@pytest.mark.asyncio
async def test_order_timeout(ca, client):
    ca.processing_polls = 100

    with pytest.raises(OrderError):
        await client.obtain_certificate({ChallengeType.HTTP_01: ["example.org"]}, timeout=10)


@pytest.mark.asyncio
async def test_unsupported_challenge_type(ca, client):
    order = await client.order({ChallengeType.HTTP_01: ["*.example.org"]})

    with pytest.raises(AuthorizationError):
        order.get_pending_challenge_list()

    with pytest.raises(AuthorizationError):
        await order.authorizations[0].verify(ChallengeType.HTTP_01)


@pytest.mark.asyncio
async def test_missing_solver(ca, client_config, clock, local_checks):
    async with AcmeClient(client_config, clock=clock, local_checks=local_checks) as client:
        with pytest.raises(ValueError):
            await client.obtain_certificate(DOMAINS)


@pytest.mark.asyncio
async def test_post_as_get(ca, client_config, clock, local_checks, solver):
    cfg = client_config.model_copy(update={"post_as_get": True})

    async with AcmeClient(cfg, clock=clock, local_checks=local_checks) as client:
        client.register_challenge_solver(solver)
        files = await client.obtain_certificate(DOMAINS, KeyAlgorithm.EC)

    assert files.certificate.is_file()
    assert not any(method == "GET" and path != "/directory" for method, path in ca.requests)
    assert any(method == "POST" and path.startswith("/authz/") for method, path in ca.requests)
    assert any(method == "POST" and path.startswith("/cert/") for method, path in ca.requests)


@pytest.mark.asyncio
async def test_failed_challenge_cancels_the_others(ca, client, solver, local_checks):
    ca.fail_validation = True
    dns_check = local_checks[ChallengeType.DNS_01]
    dns_check.delay_polls = 1000

    with pytest.raises(ChallengeFailed):
        await client.obtain_certificate(
            {ChallengeType.HTTP_01: ["example.org"], ChallengeType.DNS_01: ["*.example.org"]}
        )
    assert len(solver.cleaned) == 2

    lookups = len(dns_check.lookups)
    for _ in range(20):
        await asyncio.sleep(0)
    assert len(dns_check.lookups) == lookups


@pytest.mark.asyncio
async def test_cleanup_failure_keeps_the_verification_error(ca, client, solver, caplog):
    ca.fail_validation = True
    solver.fail_cleanup = True

    with caplog.at_level(logging.ERROR):
        with pytest.raises(ChallengeFailed):
            await client.obtain_certificate({ChallengeType.HTTP_01: ["example.org"]})

    assert len(solver.cleaned) == 1
    assert "Could not clean up" in caplog.text


@pytest.mark.asyncio
async def test_revoke_without_cached_order(ca, client):
    with pytest.raises(PreconditionError):
        await client.revoke_certificate({ChallengeType.HTTP_01: ["never-issued.example.org"]})

    assert ("POST", "/new-order") not in ca.requests
    assert not any(path.startswith("/order/") for _, path in ca.requests)
