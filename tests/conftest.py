import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import govkit`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from govkit.pipeline.config import ConfigManager  # noqa: E402
from govkit.pipeline.encoding import InterfaceRegistry  # noqa: E402
from govkit.pipeline.ports import (  # noqa: E402
    InMemoryOracle,
    InMemoryProvisioner,
    InMemoryRelay,
    Ports,
)


COMET = "0x46e6b214b524310239732D51387075E0e70970bf"
CONFIGURATOR = "0x45939657d1CA34A8FA39A924B71D28Fe8431e581"
COMET_ADMIN = "0xbdE8F31D2DdDA895264e27DD990faB3DC87b372d"
WETH = "0x4200000000000000000000000000000000000006"
CBETH = "0x2Ae3F1Ec7F1F5012CFEab0185bfc7aa3cf0DEc22"


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless GOVKIT_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('GOVKIT_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set GOVKIT_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def reset_config():
    """Every test starts from default configuration."""
    ConfigManager().reset()
    yield
    ConfigManager().reset()


@pytest.fixture
def registry() -> InterfaceRegistry:
    reg = InterfaceRegistry()
    reg.declare(
        "Comet",
        "setSupplyCap(address,uint128)",
        "pause(bool,bool,bool,bool,bool)",
    )
    reg.declare(
        "Configurator",
        "updateAssetPriceFeed(address,address,address)",
        "setBaseTrackingSupplySpeed(address,uint64)",
    )
    reg.declare("CometProxyAdmin", "deployAndUpgradeTo(address,address)")
    reg.bind(COMET, "Comet")
    reg.bind(CONFIGURATOR, "Configurator")
    reg.bind(COMET_ADMIN, "CometProxyAdmin")
    return reg


@pytest.fixture
def provisioner() -> InMemoryProvisioner:
    prov = InMemoryProvisioner(domain="base")
    prov.register_existing("comet", COMET, "contract")
    prov.register_existing("configurator", CONFIGURATOR, "contract")
    prov.register_existing("cometAdmin", COMET_ADMIN, "contract")
    return prov


@pytest.fixture
def oracle() -> InMemoryOracle:
    return InMemoryOracle()


@pytest.fixture
def relay(oracle) -> InMemoryRelay:
    return InMemoryRelay(on_execute=oracle.apply)


@pytest.fixture
def ports(provisioner, relay, oracle) -> Ports:
    return Ports(provisioner=provisioner, relay=relay, oracle=oracle)


@pytest.fixture
def sleeps() -> list:
    """Records requested sleeps instead of sleeping."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
