"""Tests for the heartbeat-driven connection state machine."""

import asyncio

import pytest

from quicktab_sync.core.config import OutboxConfig
from quicktab_sync.core.connection_monitor import TRANSITIONS, ConnectionHealthMonitor
from quicktab_sync.core.errors import ChannelDeadError, ChannelTimeoutError
from quicktab_sync.core.message_channel import LoopbackChannel
from quicktab_sync.core.models import ConnectionState, ContextIdentity

C = ConnectionState


class Responder:
    """Minimal coordinator end: acks heartbeats and records everything else."""

    def __init__(self, channel):
        self.channel = channel
        self.received = []
        channel.on_message(self._on_message)

    async def _on_message(self, message):
        self.received.append(message)
        if message.get("type") == "heartbeat":
            await self.channel.send({
                "type": "heartbeat_ack",
                "correlationId": message["correlationId"],
                "liveContexts": ["coordinator"],
            })

    def of_type(self, kind):
        return [m for m in self.received if m.get("type") == kind]


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _monitor(heartbeat_config, clock=None, **kwargs):
    client, server = LoopbackChannel.pair("monitor")
    responder = Responder(server)
    monitor = ConnectionHealthMonitor(
        client,
        ContextIdentity("7", "firefox-default"),
        heartbeat_config,
        OutboxConfig(max_size=3, ttl_seconds=5.0),
        clock=clock or FakeClock(),
        **kwargs,
    )
    return monitor, client, responder


def test_transition_table_never_skips_degraded():
    assert C.CIRCUIT_OPEN not in TRANSITIONS[C.CONNECTED]
    assert TRANSITIONS[C.CIRCUIT_OPEN] == {C.CONNECTING, C.DISCONNECTED}


@pytest.mark.asyncio
class TestConnect:
    async def test_connect_announces_and_answers_first_heartbeat(self, heartbeat_config):
        monitor, client, responder = _monitor(heartbeat_config)

        assert await monitor.start(run_heartbeat=False)

        assert monitor.state == C.CONNECTED
        assert monitor.history == [C.DISCONNECTED, C.CONNECTING, C.CONNECTED]
        hello = responder.of_type("hello")[0]
        assert hello["context"]["contextId"] == "7"
        assert len(responder.of_type("heartbeat")) == 1
        await monitor.stop()
        assert monitor.state == C.DISCONNECTED

    async def test_concurrent_connects_share_one_attempt(self, heartbeat_config):
        monitor, client, _ = _monitor(heartbeat_config)

        results = await asyncio.gather(monitor.connect(), monitor.connect(), monitor.connect())

        assert results == [True, True, True]
        assert monitor.total_connect_attempts == 1
        assert monitor.total_joined_connects == 2
        assert client.connect_attempts == 1
        await monitor.stop()

    async def test_failed_connect_opens_circuit_then_probes_back(self, heartbeat_config, eventually):
        monitor, client, _ = _monitor(heartbeat_config)
        client.refuse_connect = True

        assert not await monitor.connect()
        assert monitor.state == C.CIRCUIT_OPEN

        client.refuse_connect = False
        assert await eventually(lambda: monitor.state == C.CONNECTED)
        assert monitor.total_probes >= 1
        assert monitor.history[-3:] == [C.CIRCUIT_OPEN, C.CONNECTING, C.CONNECTED]
        await monitor.stop()

    async def test_unanswered_first_heartbeat_opens_circuit(self, heartbeat_config):
        monitor, client, _ = _monitor(heartbeat_config)
        client.blackhole = True

        assert not await monitor.connect()

        assert monitor.state == C.CIRCUIT_OPEN
        await monitor.stop()


@pytest.mark.asyncio
class TestHeartbeats:
    async def test_single_miss_only_degrades_then_recovers(self, heartbeat_config):
        clock = FakeClock()
        monitor, client, _ = _monitor(heartbeat_config, clock)
        await monitor.start(run_heartbeat=False)

        client.blackhole = True
        assert not await monitor.check_heartbeat()
        assert monitor.state == C.DEGRADED

        clock.now = 15.0
        client.blackhole = False
        assert await monitor.check_heartbeat()

        assert monitor.state == C.CONNECTED
        assert C.CIRCUIT_OPEN not in monitor.history
        assert monitor.history[-3:] == [C.CONNECTED, C.DEGRADED, C.CONNECTED]
        await monitor.stop()

    async def test_two_misses_in_window_open_circuit(self, heartbeat_config):
        monitor, client, _ = _monitor(heartbeat_config)
        await monitor.start(run_heartbeat=False)
        client.blackhole = True

        await monitor.check_heartbeat()
        assert monitor.state == C.DEGRADED
        await monitor.check_heartbeat()

        assert monitor.state == C.CIRCUIT_OPEN
        await monitor.stop()

    async def test_misses_outside_window_do_not_accumulate(self, heartbeat_config):
        clock = FakeClock()
        monitor, client, _ = _monitor(heartbeat_config, clock)
        await monitor.start(run_heartbeat=False)
        client.blackhole = True

        await monitor.check_heartbeat()
        clock.now = heartbeat_config.failure_window + 1.0
        await monitor.check_heartbeat()

        assert monitor.state == C.DEGRADED
        await monitor.stop()

    async def test_circuit_recovers_when_probe_succeeds(self, heartbeat_config, eventually):
        monitor, client, _ = _monitor(heartbeat_config)
        await monitor.start(run_heartbeat=False)
        client.blackhole = True
        await monitor.check_heartbeat()
        await monitor.check_heartbeat()
        assert monitor.state == C.CIRCUIT_OPEN

        client.blackhole = False

        assert await eventually(lambda: monitor.state == C.CONNECTED)
        assert monitor.history[-2:] == [C.CONNECTING, C.CONNECTED]
        await monitor.stop()

    async def test_heartbeat_loop_runs_periodically(self, heartbeat_config, eventually):
        monitor, _, responder = _monitor(heartbeat_config)
        await monitor.start()

        assert await eventually(lambda: len(responder.of_type("heartbeat")) >= 3)
        assert monitor.state == C.CONNECTED
        await monitor.stop()

    async def test_request_times_out(self, heartbeat_config):
        monitor, client, _ = _monitor(heartbeat_config)
        await monitor.start(run_heartbeat=False)
        client.blackhole = True

        with pytest.raises(ChannelTimeoutError):
            await monitor._heartbeat_roundtrip()
        await monitor.stop()


@pytest.mark.asyncio
class TestOutbox:
    async def test_messages_buffer_while_circuit_open_and_flush_on_reconnect(
        self, heartbeat_config, eventually
    ):
        monitor, client, responder = _monitor(heartbeat_config)
        client.refuse_connect = True
        await monitor.connect()
        assert monitor.state == C.CIRCUIT_OPEN

        for i in range(5):
            assert await monitor.send({"type": "context_closed", "contextId": str(i)}) is False
        assert len(monitor.outbox) == 3
        assert monitor.outbox.dropped_count == 2

        with pytest.raises(ChannelDeadError):
            await monitor.send({"type": "context_closed", "contextId": "x"}, critical=True)

        client.refuse_connect = False
        assert await eventually(lambda: len(responder.of_type("context_closed")) == 3)
        assert [m["contextId"] for m in responder.of_type("context_closed")] == ["2", "3", "4"]
        assert len(monitor.outbox) == 0
        await monitor.stop()

    async def test_send_goes_out_directly_when_connected(self, heartbeat_config, eventually):
        monitor, _, responder = _monitor(heartbeat_config)
        await monitor.start(run_heartbeat=False)

        assert await monitor.send({"type": "context_closed", "contextId": "9"})
        assert await eventually(lambda: len(responder.of_type("context_closed")) == 1)
        await monitor.stop()


@pytest.mark.asyncio
class TestDisconnects:
    async def test_peer_hangup_reconnects(self, heartbeat_config, eventually):
        monitor, client, responder = _monitor(heartbeat_config)
        await monitor.start(run_heartbeat=False)

        await client.peer.disconnect()

        assert await eventually(lambda: monitor.state == C.CONNECTED and len(monitor.history) > 3)
        assert C.DISCONNECTED in monitor.history[3:]
        assert len(responder.of_type("hello")) == 2
        await monitor.stop()

    async def test_reconnect_after_hangup_is_a_tracked_task(self, heartbeat_config, eventually):
        monitor, client, _ = _monitor(heartbeat_config)
        tracked = []
        monitor.on_state_change(
            lambda old, new: tracked.append(monitor.get_stats()["background_tasks"])
            if new == C.CONNECTING else None
        )
        await monitor.start(run_heartbeat=False)

        await client.peer.disconnect()

        assert await eventually(lambda: monitor.state == C.CONNECTED and len(tracked) == 2)
        assert tracked == [0, 1]
        assert await eventually(lambda: monitor.get_stats()["background_tasks"] == 0)
        await monitor.stop()

    async def test_stop_cancels_pending_background_tasks(self, heartbeat_config, eventually):
        monitor, client, _ = _monitor(heartbeat_config)
        await monitor.start(run_heartbeat=False)
        client.refuse_connect = True

        await client.peer.disconnect()
        assert await eventually(lambda: monitor.state == C.CIRCUIT_OPEN)

        await monitor.stop()

        assert monitor.get_stats()["background_tasks"] == 0
        assert monitor.state == C.DISCONNECTED

    async def test_state_listeners_fire_and_errors_are_isolated(self, heartbeat_config):
        monitor, _, _ = _monitor(heartbeat_config)
        seen = []

        def broken(old, new):
            raise RuntimeError("listener failure")

        monitor.on_state_change(broken)
        monitor.on_state_change(lambda old, new: seen.append((old, new)))
        await monitor.start(run_heartbeat=False)

        assert seen == [(C.DISCONNECTED, C.CONNECTING), (C.CONNECTING, C.CONNECTED)]
        await monitor.stop()
