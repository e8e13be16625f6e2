"""Full purchase flows as a client library would drive them."""

import pytest

from datamarket import EscrowState, EventName, InvalidState, Marketplace, Unauthorized

from conftest import MAM_ROOT, PRICE, RATE


@pytest.mark.asyncio
async def test_escrowed_purchase_flow(market, shop, seller, funded_buyer):
    record = await market.purchase_data(seller.address, MAM_ROOT, caller=funded_buyer.address, value=PRICE)
    assert record.escrow_state is EscrowState.FUNDED
    assert await market.get_balance(funded_buyer.address) == 950

    seller_sig = seller.sign_settlement(market.address, record.script_hash, seller.address, PRICE)
    await market.finalize(record.script_hash, seller_sig, caller=seller.address)

    buyer_sig = funded_buyer.sign_settlement(market.address, record.script_hash, seller.address, PRICE)
    done = await market.execute(record.script_hash, buyer_sig, caller=funded_buyer.address)

    assert done.escrow_state is EscrowState.EXECUTED
    assert await market.get_balance(funded_buyer.address) == 950
    assert await market.get_balance(seller.address) == 50
    assert await market.get_balance(market.address) == 0

    with pytest.raises(InvalidState):
        await market.execute(record.script_hash, buyer_sig, caller=funded_buyer.address)
    assert await market.get_balance(seller.address) == 50

    names = [e.name for e in await market.get_events(script_hash=record.script_hash)]
    assert names == ["Funded", "Fulfilled", "Executed"]


@pytest.mark.asyncio
async def test_subscription_flow(market, shop, seller, funded_buyer, clock):
    await market.subscribe(seller.address, 10, caller=funded_buyer.address, value=10 * RATE)

    item = await market.purchase_by_subscription(seller.address, MAM_ROOT, caller=funded_buyer.address)
    assert item.metadata == '{"app": "PM25"}'

    clock.advance(10)
    assert not await market.is_subscription_valid(funded_buyer.address, seller.address)


@pytest.mark.asyncio
async def test_discovery_then_purchase(market, shop, seller, funded_buyer):
    sellers = [address async for address in market.iter_sellers()]
    assert sellers == [seller.address]

    node = await market.get_seller(sellers[0])
    items = await market.list_data(node.shop)
    assert [i.pointer for i in items] == [MAM_ROOT]

    shop_state = await market.get_shop(node.shop)
    record = await market.purchase_data(
        node.address, items[0].pointer,
        caller=funded_buyer.address, value=shop_state.single_price
    )
    assert record.shop == shop.address


@pytest.mark.asyncio
async def test_agent_executes_on_fulfilled_event(market, shop, seller, funded_buyer):
    """A buyer-side agent confirms delivery as soon as the seller finalizes."""
    executed = []

    async def on_fulfilled(event):
        sig = funded_buyer.sign_settlement(market.address, event.script_hash, event.seller, PRICE)
        record = await market.execute(event.script_hash, sig, caller=funded_buyer.address)
        executed.append(record.script_hash)

    market.events.subscribe(EventName.FULFILLED.value, on_fulfilled, {"buyer": funded_buyer.address})

    record = await market.purchase_data(seller.address, MAM_ROOT, caller=funded_buyer.address, value=PRICE)
    sig = seller.sign_settlement(market.address, record.script_hash, seller.address, PRICE)
    await market.finalize(record.script_hash, sig, caller=seller.address)

    assert executed == [record.script_hash]
    assert (await market.get_escrow(record.script_hash)).escrow_state is EscrowState.EXECUTED
    assert await market.get_balance(seller.address) == PRICE


@pytest.mark.asyncio
async def test_state_survives_restart(tmp_path, supervisor, seller, clock):
    path = str(tmp_path / "persist.db")

    first = Marketplace(owner=supervisor.address, db_path=path, clock=clock)
    await first.start()
    await first.register_user(seller.address, "SELLER", caller=supervisor.address)
    await first.register_shop(seller.address, caller=supervisor.address)
    await first.close()

    second = Marketplace(owner=supervisor.address, db_path=path, clock=clock)
    await second.start()
    assert second.address == first.address
    assert await second.list_sellers() == [seller.address]
    await second.close()

    intruder = Marketplace(owner=seller.address, db_path=path, clock=clock)
    with pytest.raises(Unauthorized):
        await intruder.start()
