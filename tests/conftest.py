import pytest
import pytest_asyncio

from certpilot.client import AcmeClient
from certpilot.models import ChallengeType
from .clients import FakeClock, PublishedCheck, RecordingSolver
from .services import FakeCA


@pytest_asyncio.fixture
async def ca(unused_tcp_port_factory):
    s = FakeCA(unused_tcp_port_factory())
    await s.run()
    yield s
    await s.stop()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def local_checks():
    return {ChallengeType.HTTP_01: PublishedCheck(), ChallengeType.DNS_01: PublishedCheck()}


@pytest.fixture
def client_config(ca, tmp_path):
    return AcmeClient.Config(
        directory=ca.directory_url,
        storage_path=tmp_path / "storage",
        contact=["ops@example.org", "admin@example.org", "ops@example.org", ""],
        rsa_key_size=2048,
        nonce_retry_delay=1,
        nonce_retry_attempts=3,
    )


@pytest.fixture
def solver():
    return RecordingSolver()


@pytest_asyncio.fixture
async def client(client_config, clock, local_checks, solver):
    c = AcmeClient(client_config, clock=clock, local_checks=local_checks)
    c.register_challenge_solver(solver)
    await c.start()
    yield c
    await c.close()
