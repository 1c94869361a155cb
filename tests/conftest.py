import os
import pathlib
import sys
from types import SimpleNamespace

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import tools`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from eth_account import Account  # noqa: E402
from web3 import Web3  # noqa: E402

from tools.paychannel.config import get_config_manager  # noqa: E402
from tools.paychannel.exchange import SwapPool  # noqa: E402
from tools.paychannel.ledger import Ledger, ManualClock  # noqa: E402
from tools.paychannel.registry import Registry, deploy_implementations  # noqa: E402
from tools.paychannel.signatures import create_promise, sign_identity_registration  # noqa: E402


ACCOUNT_NAMES = (
    "deployer",
    "operator",
    "owner",
    "tx_maker",
    "liquidity",
    "consumer",
    "provider",
    "provider_b",
    "provider_c",
    "beneficiary",
    "beneficiary_b",
    "outsider",
)

POOL_TOKEN_RESERVE = 10_000_000
POOL_NATIVE_RESERVE = 5_000_000


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless PAYCHANNEL_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('PAYCHANNEL_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set PAYCHANNEL_RUN_SLOW=1 to enable'))


def _account(name: str):
    return Account.from_key(Web3.keccak(text=f"paychannel-test-{name}"))


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config():
    """Every test starts from default configuration."""
    manager = get_config_manager()
    manager.reset()
    yield manager
    manager.reset()


@pytest.fixture
def accounts():
    return SimpleNamespace(**{name: _account(name) for name in ACCOUNT_NAMES})


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def ledger(clock):
    return Ledger(clock)


@pytest.fixture
def pool(ledger, accounts):
    """Swap pool seeded with 10,000,000 tokens against 5,000,000 native."""
    pool = SwapPool(ledger)
    provider = accounts.liquidity.address
    ledger.mint(provider, POOL_TOKEN_RESERVE)
    ledger.mint_native(provider, POOL_NATIVE_RESERVE)
    pool.add_liquidity(provider, POOL_TOKEN_RESERVE, POOL_NATIVE_RESERVE)
    return pool


@pytest.fixture
def registry(ledger, pool, accounts):
    channel_implementation, hub_implementation = deploy_implementations(ledger)
    registry = Registry(ledger)
    registry.initialize(accounts.deployer.address, pool, channel_implementation, hub_implementation)
    return registry


@pytest.fixture
def make_hub(registry, ledger, accounts):
    """Factory registering a hub funded and approved by its operator."""
    def _make_hub(
        operator=None,
        stake=100_000,
        fee_bps=0,
        min_stake=0,
        max_stake=100_000,
        url="https://hub.example.com",
    ):
        operator = operator or accounts.operator
        if stake:
            ledger.mint(operator.address, stake)
            ledger.approve(operator.address, registry.address, stake)
        return registry.register_hub(
            operator.address,
            operator.address,
            stake,
            fee_bps,
            min_stake,
            max_stake,
            url,
        )
    return _make_hub


@pytest.fixture
def hub(make_hub):
    return make_hub()


@pytest.fixture
def register_identity(registry, ledger, accounts):
    """Factory funding an identity's channel address and registering it with a hub."""
    def _register(identity, hub, stake=0, fee=0, beneficiary=None, funding=None):
        beneficiary = beneficiary or accounts.beneficiary.address
        channel_address = registry.get_channel_address(identity.address, hub.address)
        funding = stake + fee if funding is None else funding
        if funding:
            ledger.mint(channel_address, funding)
        signature = sign_identity_registration(
            registry.chain_id,
            registry.address,
            hub.address,
            stake,
            fee,
            beneficiary,
            identity.key,
        )
        return registry.register_identity(accounts.tx_maker.address, hub.address, stake, fee, beneficiary, signature)
    return _register


@pytest.fixture
def issue_promise(registry, accounts):
    """Factory for operator-signed hub promises to an identity."""
    def _issue(hub, identity, amount, fee=0, tag="", signer=None):
        channel_id = hub.get_channel_id(identity.address, tag)
        signer = signer or accounts.operator
        return create_promise(registry.chain_id, channel_id, amount, fee, signer.key)
    return _issue


@pytest.fixture
def top_up_hub(ledger):
    """Send tokens straight to a hub, growing its available balance."""
    def _top_up(hub, amount):
        ledger.mint(hub.address, amount)
    return _top_up
