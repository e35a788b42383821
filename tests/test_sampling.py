import math

import pytest

from shared_libs.config_models.catalog_models import ResponseMapping
from shared_libs.config_models.topology_models import ValidationConfig
from shared_libs.hardware_core.compiler import CommandCompiler
from shared_libs.hardware_core.errors import TransportError, ValidationFailure

from control.sampling import SamplingPipeline, effective_range, extract_value
from control.transport import Fault, TransportManager


@pytest.fixture
def pipeline(catalog, transport, clock, sleep):
    return SamplingPipeline(CommandCompiler(catalog), TransportManager(transport), clock, sleep)


@pytest.fixture
def read_ph(pipeline, catalog, bound_topology, device):
    template = catalog.get_template("ph_probe")

    async def _read(validation=None, **kwargs):
        ph = device("ph")
        if validation is not None:
            ph = ph.model_copy(update={"validation": ValidationConfig(**validation)})
        return await pipeline.read(ph, template, bound_topology.resolve(ph, template), **kwargs)

    return _read


async def test_single_sample_is_measured(read_ph, transport):
    transport.respond("ANALOG", 6.4)
    reading = await read_ph()
    assert reading.value == 6.4
    assert reading.source == "measured"
    assert transport.commands_sent("ANALOG")[0]["pin"] == "A0"


async def test_median_of_samples_with_delay(read_ph, transport, sleep):
    transport.script("ANALOG", 7.0, 6.0, 9.0)
    reading = await read_ph({"sample_count": 3, "sample_delay_ms": 200, "retry_count": 0})
    assert reading.value == 7.0
    assert reading.samples == (7.0, 6.0, 9.0)
    assert sleep.calls == [0.2, 0.2]


async def test_block_override_of_sample_count(read_ph, transport):
    transport.script("ANALOG", 5.0, 6.0)
    reading = await read_ph(sample_count=2, sample_delay_ms=0)
    assert reading.value == pytest.approx(5.5)


async def test_failed_samples_are_dropped_when_others_succeed(read_ph, transport):
    transport.script("ANALOG", 6.5, Fault("adc busy"), 6.7)
    reading = await read_ph({"sample_count": 3, "retry_count": 0})
    assert reading.value == pytest.approx(6.6)
    assert reading.samples == (6.5, 6.7)


async def test_retry_recovers_from_transient_fault(read_ph, transport, sleep):
    transport.script("ANALOG", Fault(), 6.2)
    reading = await read_ph({"retry_count": 2, "retry_delay_ms": 50})
    assert reading.value == 6.2
    assert reading.attempts == 2
    assert sleep.calls == [0.05]


async def test_out_of_range_exhausts_retries_then_errors(read_ph, transport):
    transport.respond("ANALOG", 15.0)
    with pytest.raises(ValidationFailure, match="after 3 attempts"):
        await read_ph({"retry_count": 2, "retry_delay_ms": 0})
    assert len(transport.commands_sent("ANALOG")) == 3


async def test_device_range_tightens_template_limits(read_ph, transport):
    transport.respond("ANALOG", 11.0)
    with pytest.raises(ValidationFailure, match="above 10"):
        await read_ph({"retry_count": 0, "range": {"min_value": 3, "max_value": 10}})


async def test_nan_is_rejected(read_ph, transport):
    transport.respond("ANALOG", math.nan)
    with pytest.raises(ValidationFailure, match="NaN"):
        await read_ph({"retry_count": 0})


async def test_use_last_valid_within_stale_limit(read_ph, pipeline, transport):
    policy = {"retry_count": 0, "fallback_action": "useLastValid", "stale_limit": 1}
    transport.script("ANALOG", 6.1)
    await read_ph(policy)

    transport.respond("ANALOG", Fault())
    reading = await read_ph(policy)
    assert reading.value == 6.1
    assert reading.source == "last_valid"
    assert pipeline.health("ph").consecutive_failures == 1

    # second consecutive failure exceeds stale_limit=1
    with pytest.raises(ValidationFailure, match="stale_limit"):
        await read_ph(policy)


async def test_success_resets_failure_count(read_ph, pipeline, transport):
    policy = {"retry_count": 0, "fallback_action": "useLastValid", "stale_limit": 1}
    transport.script("ANALOG", 6.1, Fault(), 6.3, Fault())
    await read_ph(policy)
    await read_ph(policy)
    await read_ph(policy)
    reading = await read_ph(policy)
    assert reading.value == 6.3
    assert pipeline.health("ph").consecutive_failures == 1


async def test_use_last_valid_refused_after_stale_timeout(read_ph, transport, clock):
    policy = {"retry_count": 0, "fallback_action": "useLastValid", "stale_limit": 5, "stale_timeout_ms": 30000}
    transport.script("ANALOG", 6.1)
    await read_ph(policy)
    clock.advance(31)
    transport.respond("ANALOG", Fault())
    with pytest.raises(ValidationFailure, match="ms old"):
        await read_ph(policy)


async def test_use_default_needs_a_fresh_reading(read_ph, transport):
    policy = {"retry_count": 0, "fallback_action": "useDefault", "default_value": 6.5}
    transport.respond("ANALOG", Fault())
    with pytest.raises(ValidationFailure, match="no previous valid reading"):
        await read_ph(policy)


async def test_use_default_returns_configured_value(read_ph, transport):
    policy = {"retry_count": 0, "fallback_action": "useDefault", "default_value": 6.5, "stale_limit": 3}
    transport.script("ANALOG", 5.9)
    await read_ph(policy)
    transport.respond("ANALOG", Fault())
    reading = await read_ph(policy)
    assert reading.value == 6.5
    assert reading.source == "default"


async def test_skip_fallback(read_ph, transport):
    transport.respond("ANALOG", Fault())
    reading = await read_ph({"retry_count": 0, "fallback_action": "skip", "stale_limit": 3})
    assert reading.skipped
    assert reading.value is None


async def test_multi_step_read_uses_last_responding_step(pipeline, catalog, bound_topology, device, transport, sleep):
    template = catalog.get_template("ds18b20")
    sensor = device("water_temp")
    transport.respond("ONEWIRE_READ_TEMP", {"value": 21.25})
    reading = await pipeline.read(sensor, template, bound_topology.resolve(sensor, template))
    assert reading.value == 21.25
    assert [p["cmd"] for p in transport.commands_sent()] == ["ONEWIRE_CONVERT", "ONEWIRE_READ_TEMP"]
    assert sleep.calls == [0.75]


@pytest.mark.parametrize("data, mapping, expected", [
    (23.5, None, 23.5),
    ("23.5", None, 23.5),
    ([12.0, 40.0], None, 12.0),
    ({"val": 3}, None, 3.0),
    ({"temperature": 21.5, "humidity": 40}, ResponseMapping(value_path="humidity"), 40.0),
    ({"values": [1, 2, 3]}, ResponseMapping(value_path="values.2"), 3.0),
    (512, ResponseMapping(scale=0.5, offset=1.0), 257.0),
])
def test_extract_value(data, mapping, expected):
    assert extract_value(data, mapping, "c1") == expected


@pytest.mark.parametrize("data", [None, "n/a", {"other": 1}, []])
def test_extract_value_rejects_non_numeric(data):
    with pytest.raises(TransportError, match="no numeric reading"):
        extract_value(data, None, "c1")


def test_effective_range_intersects_limits(catalog, device):
    ph = device("ph").model_copy(update={"validation": ValidationConfig(range={"min_value": 3, "max_value": 20})})
    assert effective_range(ph, catalog.get_template("ph_probe")) == (3, 14)
