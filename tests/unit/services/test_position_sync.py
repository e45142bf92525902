"""Tests for PositionSync — cyclic reconciliation with broker snapshots.

Uses FakeBroker through an injected broker factory and a fixed clock.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from tests.fixtures.brokers import (
    OWNER_ID,
    FakeBroker,
    blocking_sleep,
    make_position,
    make_snapshot,
    settle,
)
from tradewatch.config.connections import BrokerConnection, ConnectionRegistry
from tradewatch.config.settings import PositionSyncConfig
from tradewatch.exceptions import (
    BrokerConnectionError,
    ExternalAPIError,
    PositionNotFoundError,
)
from tradewatch.infra.broker import create_broker_client
from tradewatch.schemas.enums import (
    ExitTrigger,
    NoteType,
    PositionDirection as D,
    PositionStatus,
)
from tradewatch.services.position_sync import (
    EXTERNAL_CLOSE_REASON,
    PositionSync,
    SyncOutcome,
    compute_unrealized_pnl,
    evaluate_exit_trigger,
)


def _syncer(store, connections, clock, broker, **kwargs) -> PositionSync:
    return PositionSync(
        store,
        connections,
        kwargs.pop("config", None),
        broker_factory=kwargs.pop("broker_factory", lambda kind, creds: broker),
        clock=clock.now,
        sleep=kwargs.pop("sleep", clock.sleep),
    )


def _stale(clock, seconds: float):
    return clock.now() - timedelta(seconds=seconds)


# ===========================================================================
# Pure helpers
# ===========================================================================


class TestUnrealizedPnl:
    @pytest.mark.parametrize(
        "direction,entry,price,qty,expected",
        [
            (D.LONG, "100", "104.5", "10", "45.0"),
            (D.LONG, "100", "94", "10", "-60"),
            (D.SHORT, "200", "190", "5", "50"),
            (D.SHORT, "200", "210", "5", "-50"),
        ],
    )
    def test_pnl(self, direction, entry, price, qty, expected):
        pnl = compute_unrealized_pnl(direction, Decimal(entry), Decimal(price), Decimal(qty))
        assert pnl == Decimal(expected)


class TestExitTriggerEvaluation:
    @pytest.mark.parametrize(
        "direction,price,stop_loss,take_profit,expected",
        [
            (D.LONG, "94", "95", None, ExitTrigger.STOP_LOSS),
            (D.LONG, "95", "95", None, ExitTrigger.STOP_LOSS),
            (D.LONG, "96", "95", None, None),
            (D.LONG, "110", None, "110", ExitTrigger.TAKE_PROFIT),
            (D.LONG, "109", None, "110", None),
            (D.SHORT, "106", "105", None, ExitTrigger.STOP_LOSS),
            (D.SHORT, "104", "105", None, None),
            (D.SHORT, "90", None, "90", ExitTrigger.TAKE_PROFIT),
            (D.SHORT, "91", None, "90", None),
            (D.LONG, "100", None, None, None),
        ],
    )
    def test_predicates(self, direction, price, stop_loss, take_profit, expected):
        result = evaluate_exit_trigger(
            direction,
            Decimal(price),
            Decimal(stop_loss) if stop_loss else None,
            Decimal(take_profit) if take_profit else None,
        )
        assert result == expected

    def test_stop_loss_takes_precedence(self):
        # Inverted levels: both predicates hold at 94
        result = evaluate_exit_trigger(D.LONG, Decimal("94"), Decimal("95"), Decimal("90"))
        assert result == ExitTrigger.STOP_LOSS


# ===========================================================================
# Single-position outcomes
# ===========================================================================


class TestSyncOutcomes:
    @pytest.mark.asyncio
    async def test_updates_quantity_and_pnl(self, store, connections, clock):
        position = store.create_position(make_position())
        broker = FakeBroker(positions={"AAPL": make_snapshot(price="104.5", quantity="12")})
        syncer = _syncer(store, connections, clock, broker)

        summary = await syncer.run_cycle()

        assert summary["synced"] == 1
        updated = store.get_position(position.position_id)
        assert updated.quantity == Decimal("12")
        assert updated.unrealized_pnl == Decimal("54.0")
        assert updated.last_synced_at == clock.now()
        assert updated.status == PositionStatus.OPEN
        assert store.notes_for(position.position_id) == []
        assert broker.connect_calls == 1
        assert broker.close_calls == 1

    @pytest.mark.asyncio
    async def test_short_pnl(self, store, connections, clock):
        position = store.create_position(
            make_position(symbol="TSLA", direction=D.SHORT, quantity="5", avg_entry_price="200")
        )
        broker = FakeBroker(positions={"TSLA": make_snapshot("TSLA", "190", "5", D.SHORT)})
        syncer = _syncer(store, connections, clock, broker)

        await syncer.run_cycle()

        assert store.get_position(position.position_id).unrealized_pnl == Decimal("50")

    @pytest.mark.asyncio
    async def test_externally_closed_position(self, store, connections, clock):
        position = store.create_position(make_position())
        broker = FakeBroker(positions={})
        syncer = _syncer(store, connections, clock, broker)

        summary = await syncer.run_cycle()

        assert summary["closed"] == 1
        closed = store.get_position(position.position_id)
        assert closed.status == PositionStatus.CLOSED
        assert closed.closed_at == clock.now()
        (note,) = store.notes_for(position.position_id)
        assert note.note_type == NoteType.SYSTEM
        assert note.content == EXTERNAL_CLOSE_REASON

    @pytest.mark.asyncio
    async def test_stop_loss_writes_note_and_keeps_position_open(
        self, store, connections, clock
    ):
        position = store.create_position(make_position(stop_loss="95"))
        broker = FakeBroker(positions={"AAPL": make_snapshot(price="94")})
        syncer = _syncer(store, connections, clock, broker)

        await syncer.run_cycle()

        (note,) = store.notes_for(position.position_id)
        assert note.content == "Stop loss triggered detected at 94. Manual close required."
        assert store.get_position(position.position_id).status == PositionStatus.OPEN

    @pytest.mark.asyncio
    async def test_only_stop_loss_note_when_both_match(self, store, connections, clock):
        position = store.create_position(make_position(stop_loss="95", take_profit="90"))
        broker = FakeBroker(positions={"AAPL": make_snapshot(price="94")})
        syncer = _syncer(store, connections, clock, broker)

        await syncer.run_cycle()

        notes = store.notes_for(position.position_id)
        assert len(notes) == 1
        assert notes[0].content.startswith(ExitTrigger.STOP_LOSS.value)

    @pytest.mark.asyncio
    async def test_take_profit_on_short(self, store, connections, clock):
        position = store.create_position(
            make_position(direction=D.SHORT, avg_entry_price="200", take_profit="180")
        )
        broker = FakeBroker(positions={"AAPL": make_snapshot(price="179", side=D.SHORT)})
        syncer = _syncer(store, connections, clock, broker)

        await syncer.run_cycle()

        (note,) = store.notes_for(position.position_id)
        assert note.content == "Take profit triggered detected at 179. Manual close required."

    @pytest.mark.asyncio
    async def test_broker_error_leaves_position_untouched(self, store, connections, clock):
        position = store.create_position(make_position())
        broker = FakeBroker(positions={"AAPL": ExternalAPIError("boom", status_code=500)})
        syncer = _syncer(store, connections, clock, broker)

        summary = await syncer.run_cycle()

        assert summary["failed"] == 1
        current = store.get_position(position.position_id)
        assert current.status == PositionStatus.OPEN
        assert current.last_synced_at is None
        assert broker.close_calls == 1

    @pytest.mark.asyncio
    async def test_refused_connection_fails(self, store, connections, clock):
        class RefusingBroker(FakeBroker):
            async def connect(self) -> bool:
                return False

        store.create_position(make_position())
        broker = RefusingBroker(positions={"AAPL": make_snapshot()})
        syncer = _syncer(store, connections, clock, broker)

        summary = await syncer.run_cycle()

        assert summary["failed"] == 1
        assert broker.position_calls == []


# ===========================================================================
# Failure isolation
# ===========================================================================


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_missing_connection_fails_only_that_position(self, store, connections, clock):
        orphan = store.create_position(make_position(symbol="MSFT", owner_id="stranger"))
        healthy = store.create_position(make_position(symbol="AAPL"))
        broker = FakeBroker(positions={"AAPL": make_snapshot(), "MSFT": make_snapshot("MSFT")})
        syncer = _syncer(store, connections, clock, broker)

        summary = await syncer.run_cycle()

        assert summary["failed"] == 1
        assert summary["synced"] == 1
        assert store.get_position(orphan.position_id).last_synced_at is None
        assert store.get_position(healthy.position_id).last_synced_at == clock.now()

    @pytest.mark.asyncio
    async def test_unsupported_broker_fails_only_that_position(self, store, clock):
        registry = ConnectionRegistry(
            connections=(
                BrokerConnection(OWNER_ID, "alpaca_paper", {"api_key": "k", "secret_key": "s"}),
                BrokerConnection(OWNER_ID, "robinhood", {"token": "t"}),
            )
        )
        broker = FakeBroker(positions={"AAPL": make_snapshot()})

        def factory(kind, credentials):
            if kind == "alpaca_paper":
                return broker
            return create_broker_client(kind, credentials)

        store.create_position(make_position(symbol="GME", broker="robinhood"))
        healthy = store.create_position(make_position(symbol="AAPL"))
        syncer = _syncer(store, registry, clock, broker, broker_factory=factory)

        summary = await syncer.run_cycle()

        assert summary["failed"] == 1
        assert summary["synced"] == 1
        assert store.get_position(healthy.position_id).last_synced_at == clock.now()


# ===========================================================================
# Cycle selection and concurrency
# ===========================================================================


class TestCycle:
    @pytest.mark.asyncio
    async def test_stale_first_fairness_across_cycles(self, store, connections, clock):
        symbols = ["A", "B", "C", "D", "E"]
        ids = [
            store.create_position(
                make_position(symbol=s, last_synced_at=_stale(clock, 1000 + 100 * i))
            ).position_id
            for i, s in enumerate(symbols)
        ]
        broker = FakeBroker(positions={s: make_snapshot(s) for s in symbols})
        syncer = _syncer(store, connections, clock, broker)

        first = await syncer.run_cycle()
        second = await syncer.run_cycle()

        # Oldest sync first: E, D, C then B, A
        assert first["position_ids"] == [ids[4], ids[3], ids[2]]
        assert sorted(second["position_ids"]) == sorted([ids[0], ids[1]])
        assert (await syncer.run_cycle())["selected"] == 0

    @pytest.mark.asyncio
    async def test_never_synced_selected_first(self, store, connections, clock):
        old = store.create_position(make_position(symbol="OLD", last_synced_at=_stale(clock, 5000)))
        fresh = store.create_position(make_position(symbol="NEW"))
        broker = FakeBroker(positions={"OLD": make_snapshot("OLD"), "NEW": make_snapshot("NEW")})
        syncer = _syncer(
            store, connections, clock, broker, config=PositionSyncConfig(max_concurrent_syncs=1)
        )

        summary = await syncer.run_cycle()

        assert summary["position_ids"] == [fresh.position_id]
        assert store.get_position(old.position_id).last_synced_at == _stale(clock, 5000)

    @pytest.mark.asyncio
    async def test_recently_synced_positions_skipped(self, store, connections, clock):
        store.create_position(make_position(last_synced_at=_stale(clock, 60)))
        broker = FakeBroker(positions={"AAPL": make_snapshot()})
        syncer = _syncer(store, connections, clock, broker)

        summary = await syncer.run_cycle()

        assert summary["selected"] == 0
        assert broker.position_calls == []

    @pytest.mark.asyncio
    async def test_concurrency_capped_at_batch_size(self, store, connections, clock):
        symbols = ["A", "B", "C", "D", "E"]
        for s in symbols:
            store.create_position(make_position(symbol=s))
        broker = FakeBroker(positions={s: make_snapshot(s) for s in symbols})
        broker.position_gate = asyncio.Event()
        syncer = _syncer(store, connections, clock, broker)

        cycle = asyncio.ensure_future(syncer.run_cycle())
        await settle()
        assert broker.in_flight == 3
        assert syncer.get_status()["active_syncs"] == 3

        broker.position_gate.set()
        summary = await cycle

        assert summary["synced"] == 3
        assert broker.max_in_flight == 3
        assert syncer.get_status()["active_syncs"] == 0

    @pytest.mark.asyncio
    async def test_cycle_skipped_at_capacity(self, store, connections, clock):
        for s in ["A", "B", "C", "D"]:
            store.create_position(make_position(symbol=s))
        broker = FakeBroker(positions={s: make_snapshot(s) for s in "ABCD"})
        broker.position_gate = asyncio.Event()
        syncer = _syncer(store, connections, clock, broker)

        cycle = asyncio.ensure_future(syncer.run_cycle())
        await settle()

        overlapping = await syncer.run_cycle()
        assert overlapping["selected"] == 0
        assert len(broker.position_calls) == 3

        broker.position_gate.set()
        await cycle

    @pytest.mark.asyncio
    async def test_sync_now_skipped_while_cycle_in_flight(self, store, connections, clock):
        position = store.create_position(make_position())
        broker = FakeBroker(positions={"AAPL": make_snapshot()})
        broker.position_gate = asyncio.Event()
        syncer = _syncer(store, connections, clock, broker)

        cycle = asyncio.ensure_future(syncer.run_cycle())
        await settle()

        assert await syncer.sync_position_now(position.position_id) == SyncOutcome.SKIPPED
        assert len(broker.position_calls) == 1

        broker.position_gate.set()
        summary = await cycle
        assert summary["synced"] == 1


# ===========================================================================
# On-demand sync
# ===========================================================================


class TestSyncPositionNow:
    @pytest.mark.asyncio
    async def test_ignores_staleness(self, store, connections, clock):
        position = store.create_position(make_position(last_synced_at=clock.now()))
        broker = FakeBroker(positions={"AAPL": make_snapshot(price="110")})
        syncer = _syncer(store, connections, clock, broker)

        assert await syncer.sync_position_now(position.position_id) == SyncOutcome.SYNCED
        assert store.get_position(position.position_id).unrealized_pnl == Decimal("100")

    @pytest.mark.asyncio
    async def test_unknown_position_raises(self, store, connections, clock):
        syncer = _syncer(store, connections, clock, FakeBroker())
        with pytest.raises(PositionNotFoundError):
            await syncer.sync_position_now("missing")

    @pytest.mark.asyncio
    async def test_position_without_broker_raises(self, store, connections, clock):
        position = store.create_position(make_position(broker=None))
        syncer = _syncer(store, connections, clock, FakeBroker())
        with pytest.raises(BrokerConnectionError):
            await syncer.sync_position_now(position.position_id)


# ===========================================================================
# Lifecycle
# ===========================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_cycle_and_stop_halts(self, store, connections, clock):
        position = store.create_position(make_position())
        broker = FakeBroker(positions={"AAPL": make_snapshot()})
        syncer = _syncer(store, connections, clock, broker, sleep=blocking_sleep)

        syncer.start()
        syncer.start()  # second start is a no-op
        await settle()
        assert syncer.get_status()["is_running"] is True

        syncer.stop()
        await syncer.drain()

        assert syncer.get_status()["is_running"] is False
        assert store.get_position(position.position_id).last_synced_at == clock.now()
        assert broker.position_calls == ["AAPL"]

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_cycle_finish(self, store, connections, clock):
        position = store.create_position(make_position())
        broker = FakeBroker(positions={"AAPL": make_snapshot()})
        broker.position_gate = asyncio.Event()
        syncer = _syncer(store, connections, clock, broker, sleep=blocking_sleep)

        syncer.start()
        await settle()
        syncer.stop()
        broker.position_gate.set()
        await syncer.drain()

        assert store.get_position(position.position_id).last_synced_at == clock.now()

    def test_start_outside_loop_leaves_syncer_stopped(self, store, connections, clock):
        syncer = _syncer(store, connections, clock, FakeBroker())

        with pytest.raises(RuntimeError):
            syncer.start()

        assert syncer.get_status()["is_running"] is False

    def test_status_reports_config(self, store, connections, clock):
        syncer = _syncer(store, connections, clock, FakeBroker())
        status = syncer.get_status()
        assert status["is_running"] is False
        assert status["active_syncs"] == 0
        assert status["config"]["max_concurrent_syncs"] == 3
