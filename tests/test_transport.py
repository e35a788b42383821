import asyncio
from collections import defaultdict

import pytest

from shared_libs.hardware_core.compiler import CommandPayload
from shared_libs.hardware_core.errors import TransportError, TransportTimeout

from control.transport import HANG, Fault, TransportManager


def _payload(controller_id="c1", command="DHT_READ", timeout_ms=1000, **parameters):
    return CommandPayload(
        device_id="dev",
        controller_id=controller_id,
        command=command,
        parameters=parameters or {"pin": 4},
        timeout_ms=timeout_ms,
    )


async def test_execute_returns_response_data(transport):
    transport.respond("DHT_READ", {"temperature": 21.0})
    data = await TransportManager(transport).execute(_payload())
    assert data == {"temperature": 21.0}
    controller_id, packet = transport.sent[0]
    assert controller_id == "c1"
    assert packet["cmd"] == "DHT_READ"
    assert packet["pin"] == 4
    assert packet["id"]


async def test_controller_fault_is_a_transport_error(transport):
    transport.respond("DHT_READ", Fault("sensor not found"))
    with pytest.raises(TransportError, match="sensor not found"):
        await TransportManager(transport).execute(_payload())


async def test_silent_controller_times_out(transport):
    transport.respond("DHT_READ", HANG)
    with pytest.raises(TransportTimeout, match="20 ms"):
        await TransportManager(transport).execute(_payload(timeout_ms=20))


async def test_scripted_results_are_consumed_in_order(transport):
    transport.script("DHT_READ", 1, 2)
    transport.respond("DHT_READ", 9)
    manager = TransportManager(transport)
    results = [await manager.execute(_payload()) for _ in range(3)]
    assert results == [1, 2, 9]


async def test_per_controller_script_takes_precedence(transport):
    transport.respond("DHT_READ", 1)
    transport.respond("DHT_READ", 2, controller_id="c2")
    manager = TransportManager(transport)
    assert await manager.execute(_payload("c1")) == 1
    assert await manager.execute(_payload("c2")) == 2


class _RawTransport:
    def __init__(self, response):
        self.response = response

    async def send(self, controller_id, packet):
        return self.response


@pytest.mark.parametrize("response, message", [
    ("garbage", "malformed"),
    ({"data": 1}, "malformed"),
    ({"id": "someone-else", "status": "ok", "data": 1}, "does not match"),
    ({"status": "error"}, "unknown error"),
])
async def test_bad_responses_are_transport_errors(response, message):
    with pytest.raises(TransportError, match=message):
        await TransportManager(_RawTransport(response)).execute(_payload())


class _TrackingTransport:
    """Counts how many commands each controller has in flight at once."""

    def __init__(self):
        self.in_flight = defaultdict(int)
        self.max_per_controller = defaultdict(int)
        self.max_total = 0

    async def send(self, controller_id, packet):
        self.in_flight[controller_id] += 1
        self.max_per_controller[controller_id] = max(self.max_per_controller[controller_id], self.in_flight[controller_id])
        self.max_total = max(self.max_total, sum(self.in_flight.values()))
        await asyncio.sleep(0.01)
        self.in_flight[controller_id] -= 1
        return {"id": packet["id"], "status": "ok", "data": None}


async def test_dispatch_is_serialised_per_controller_only():
    tracking = _TrackingTransport()
    manager = TransportManager(tracking)
    await asyncio.gather(*(manager.execute(_payload(cid)) for cid in ("c1", "c2") * 3))
    assert tracking.max_per_controller == {"c1": 1, "c2": 1}
    assert tracking.max_total == 2
