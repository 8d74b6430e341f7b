import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import poseguard`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "concurrency: thread-safety and race tests",
    )


# =============================================================================
# SHARED FIXTURES
# =============================================================================

CHALLENGE_ID = "0x" + "11" * 32
NODE_ID = "0x" + "22" * 32
RAND_SEED = "0x" + "33" * 32
CHALLENGER_ID = "0x" + "44" * 32
NONCE = "0x" + "aa" * 32


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, now_ms: int = 1_000_000):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    """Every test starts from default configuration and no POSE_* overrides."""
    from poseguard.config import get_config_manager

    for name in list(os.environ):
        if name.startswith("POSE_"):
            monkeypatch.delenv(name, raising=False)
    get_config_manager().reset()
    yield
    get_config_manager().reset()


def make_challenge(**overrides):
    from poseguard.messages import ChallengeMessage, ChallengeType

    fields = dict(
        challenge_id=CHALLENGE_ID,
        epoch_id=1,
        node_id=NODE_ID,
        challenge_type=ChallengeType.RELAY,
        nonce=NONCE,
        rand_seed=RAND_SEED,
        issued_at_ms=1000,
        deadline_ms=5000,
        query_spec={"method": "eth_getBlockByNumber", "params": ["latest", False]},
        challenger_id=CHALLENGER_ID,
        challenger_sig="0xabc",
    )
    fields.update(overrides)
    return ChallengeMessage(**fields)


def make_receipt(**overrides):
    from poseguard.messages import ReceiptMessage

    fields = dict(
        challenge_id=CHALLENGE_ID,
        node_id=NODE_ID,
        response_at_ms=1200,
        response_body={
            "relayTarget": "http://peer-node:18780",
            "relayMethod": "eth_getBlockByNumber",
            "relayResult": {"number": "0xa", "hash": "0xdeadbeef"},
            "relayLatencyMs": 45,
        },
        node_sig="0xdef",
    )
    fields.update(overrides)
    return ReceiptMessage(**fields)


def make_envelope(**overrides):
    from poseguard.messages import CrossLayerEnvelope

    fields = dict(
        src_chain_id=1,
        dst_chain_id=2,
        channel_id="0x" + "ab" * 32,
        nonce=1,
        payload_hash="0x" + "cd" * 32,
    )
    fields.update(overrides)
    return CrossLayerEnvelope(**fields)
