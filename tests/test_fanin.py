import asyncio

import pytest

from elastic_document.processing import (
    CancellationToken,
    DualGenerationFanIn,
    EventType,
    GenerationRequest,
    OutputVariant,
)

from fakes import FakeGenerator, collect

REQUEST = GenerationRequest(extracted_text="source", images=[], reading_minutes=1, complexity="simple", language="English")


def _texts(events, event_type):
    return [e.text for e in events if e.type == event_type]


@pytest.mark.anyio
@pytest.mark.parametrize("seed", range(5))
async def test_each_stream_keeps_its_own_order(seed):
    formatted = [f"f{i} " for i in range(20)]
    breadtext = [f"b{i} " for i in range(20)]
    generator = FakeGenerator(
        outputs={OutputVariant.FORMATTED: formatted, OutputVariant.BREADTEXT: breadtext},
        seed=seed,
        max_delay=0.002,
    )
    fan_in = DualGenerationFanIn(generator, REQUEST, CancellationToken())

    events = await collect(fan_in.events())

    assert _texts(events, EventType.FORMATTED_CHUNK) == formatted
    assert _texts(events, EventType.BREADTEXT_CHUNK) == breadtext
    types = [e.type for e in events]
    assert types.index(EventType.FORMATTED_DONE) > max(i for i, t in enumerate(types) if t == EventType.FORMATTED_CHUNK)
    assert types.index(EventType.BREADTEXT_DONE) > max(i for i, t in enumerate(types) if t == EventType.BREADTEXT_CHUNK)
    assert fan_in.result.formatted_text == "".join(formatted)
    assert fan_in.result.breadtext_text == "".join(breadtext)


@pytest.mark.anyio
async def test_formatted_failure_is_reported():
    generator = FakeGenerator(
        outputs={OutputVariant.FORMATTED: ["partial"], OutputVariant.BREADTEXT: ["plain"]},
        failures={OutputVariant.FORMATTED: RuntimeError("rate limited")},
    )
    fan_in = DualGenerationFanIn(generator, REQUEST, CancellationToken())

    events = await collect(fan_in.events())

    errors = [e.message for e in events if e.type == EventType.ERROR]
    assert errors == ["Summarization failed: rate limited"]
    assert EventType.FORMATTED_DONE in [e.type for e in events]
    assert fan_in.result.formatted_error == "rate limited"
    assert fan_in.result.breadtext_text == "plain"


@pytest.mark.anyio
async def test_breadtext_failure_is_silent():
    generator = FakeGenerator(
        outputs={OutputVariant.FORMATTED: ["# Title", " body"], OutputVariant.BREADTEXT: ["half"]},
        failures={OutputVariant.BREADTEXT: RuntimeError("overloaded")},
    )
    fan_in = DualGenerationFanIn(generator, REQUEST, CancellationToken())

    events = await collect(fan_in.events())

    assert not [e for e in events if e.type == EventType.ERROR]
    assert _texts(events, EventType.FORMATTED_CHUNK) == ["# Title", " body"]
    assert fan_in.result.formatted_text == "# Title body"
    assert fan_in.result.breadtext_error == "overloaded"


@pytest.mark.anyio
async def test_cancellation_stops_both_producers():
    generator = FakeGenerator(
        outputs={
            OutputVariant.FORMATTED: [f"f{i}" for i in range(50)],
            OutputVariant.BREADTEXT: [f"b{i}" for i in range(50)],
        },
        seed=1,
        max_delay=0.001,
    )
    cancel = CancellationToken()
    fan_in = DualGenerationFanIn(generator, REQUEST, cancel)

    events = []
    async for event in fan_in.events():
        events.append(event)
        if len(events) == 3:
            cancel.cancel("client disconnected")

    assert len(events) == 3
    assert fan_in.result is None


class StallingGenerator:
    """Yields one chunk per variant, then hangs as a stuck upstream call would."""

    async def stream(self, request, variant):
        yield f"{variant.value} start"
        await asyncio.sleep(30)
        yield "never"


@pytest.mark.anyio
async def test_cancel_wakes_consumer_while_producers_stall():
    cancel = CancellationToken()
    fan_in = DualGenerationFanIn(StallingGenerator(), REQUEST, cancel)

    async def cancel_soon():
        await asyncio.sleep(0.1)
        cancel.cancel("timeout")

    canceller = asyncio.create_task(cancel_soon())
    events = await asyncio.wait_for(collect(fan_in.events()), 1.0)
    await canceller

    assert sorted(e.text for e in events) == ["breadtext start", "formatted start"]
    assert fan_in.result is None
