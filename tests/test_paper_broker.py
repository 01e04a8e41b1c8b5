import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from strategy.simulators.paper import PaperBrokerRouter


def test_paper_order_lifecycle():
    async def _run():
        broker = PaperBrokerRouter()
        broker.set_price('eurusd', 1.1002)
        placed = await broker.place_order({
            'pair': 'EURUSD', 'side': 'buy', 'volume': 10000, 'price': 1.1000,
            'stop_loss': 1.0950, 'take_profit': 1.1100, 'trade_id': 'TRADE_1',
        })
        assert placed['success'] is True
        ticket = placed['order']['id']
        assert placed['order']['fill_price'] == 1.1002

        modified = await broker.modify_position({'ticket': ticket, 'stop_loss': 1.1000})
        assert modified['result']['stop_loss'] == 1.1000
        assert broker.positions[ticket].history == [{'stop_loss': 1.0950, 'take_profit': 1.1100}]

        fills = await broker.run_reconciliation()
        assert fills[0]['client_id'] == 'TRADE_1'
        assert await broker.run_reconciliation() == []

        closed = await broker.close_position({'ticket': ticket, 'price': 1.1050})
        assert closed['result'] == {'ticket': ticket, 'close_price': 1.1050}
        again = await broker.close_position({'ticket': ticket})
        assert again['success'] is False

        status = await broker.get_status()
        assert status['open_positions'] == 0

    asyncio.run(_run())


def test_paper_rejects_bad_orders_and_unknown_prices():
    async def _run():
        broker = PaperBrokerRouter()
        assert (await broker.place_order({'pair': 'EURUSD', 'volume': 0}))['success'] is False
        assert (await broker.place_order({'pair': 'EURUSD', 'volume': 1}))['success'] is False
        with pytest.raises(LookupError):
            await broker.get_current_price_for_pair('GBPUSD')
        assert (await broker.get_health_snapshots())[0]['mode'] == 'paper'

    asyncio.run(_run())


def test_paper_equity_tracks_realised_pnl():
    broker = PaperBrokerRouter(initial_equity=5000.0)
    broker.record_pnl(125.5)
    broker.record_pnl(None)
    broker.record_pnl(-25.5)
    assert broker.equity == pytest.approx(5100.0)
