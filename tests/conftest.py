import pytest

from mpcecdsa.config import Settings
from mpcecdsa.local import run_keygen
from mpcecdsa.session import SessionCoordinator

# 1024 bit Paillier keeps key generation fast enough for a test run.
FAST = dict(paillier_bits=1024)


@pytest.fixture
def settings():
    return Settings(**FAST)


@pytest.fixture
def coordinator(settings):
    return SessionCoordinator(settings)


@pytest.fixture(scope="session")
def keygen_2_of_3():
    """One 2-of-3 key shared by every test that only needs to sign with it."""
    coordinator = SessionCoordinator(Settings(**FAST))
    return run_keygen(coordinator, ["alice", "bob", "carol"], 2)
