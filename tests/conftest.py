"""Shared fixtures: a fresh marketplace per test on a tmp SQLite file."""

import pytest
import pytest_asyncio

from datamarket import AccountSigner, Marketplace


MAM_ROOT = "DVZAPMBOOJHQKFQUUYCXKA9DMOLQABGKHSZCAPYLPQSQK9BGNGMOY9JHHNRRGNHGBUUPWYWJM9QNEISFI"
MAM_ROOT_2 = "PRMLL9QRDZAYUBFDIZHLHSER99OCFZLBPHHSOZMALTWDCCZUFKQFQMQDDVYLQTRPHKLFSUPWMECMIETIU"
PRICE = 50
RATE = 2
TIMEOUT = 3600


class FakeClock:
    """Ledger time under test control."""

    def __init__(self, start: int = 1_700_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def supervisor():
    return AccountSigner()


@pytest.fixture
def seller():
    return AccountSigner()


@pytest.fixture
def buyer():
    return AccountSigner()


@pytest.fixture
def stranger():
    return AccountSigner()


@pytest_asyncio.fixture
async def market(tmp_path, supervisor, clock):
    m = Marketplace(
        owner=supervisor.address,
        db_path=str(tmp_path / "market.db"),
        clock=clock,
        subscription_time_unit=1,
        settlement_timeout=TIMEOUT
    )
    await m.start()
    yield m
    await m.close()


@pytest_asyncio.fixture
async def shop(market, supervisor, seller):
    """A registered seller with one priced item, open for purchases."""
    await market.register_user(seller.address, "EICWPMAUVDMMARJKZYORXJPRLC", caller=supervisor.address)
    handle = await market.register_shop(seller.address, "some info", caller=supervisor.address)

    await market.set_price(handle.address, PRICE, caller=seller.address)
    await market.set_subscription_rate(handle.address, RATE, caller=seller.address)
    await market.update_data(handle.address, MAM_ROOT, '{"app": "PM25"}', caller=seller.address)
    await market.set_purchase_open(handle.address, caller=seller.address)
    return handle


@pytest_asyncio.fixture
async def funded_buyer(market, supervisor, buyer):
    """A registered buyer holding 1000 units."""
    await market.register_user(buyer.address, "QMPNK9BOFK9REOHADHFYJIJZQ9", caller=supervisor.address)
    await market.deposit(buyer.address, 1000, caller=supervisor.address)
    return buyer
