"""Tests for debounced, last-submitted-wins live search."""
import asyncio

import pytest

from notecore.exceptions import QuerySyntaxError
from notecore.live_search import LiveSearch


@pytest.fixture
def live(coordinator):
    return LiveSearch(coordinator, debounce_ms=30)


@pytest.mark.anyio
async def test_single_query_returns_hits(coordinator, live):
    note = await coordinator.create_note("Milk", "buy milk")
    hits = await live.submit("milk")
    assert [h.note.id for h in hits] == [note.id]


@pytest.mark.anyio
async def test_newer_keystroke_wins(coordinator, live):
    await coordinator.create_note("Milk", "buy milk")
    eggs = await coordinator.create_note("Eggs", "buy eggs")
    first = asyncio.ensure_future(live.submit("mil"))
    await asyncio.sleep(0)
    second = await live.submit("eggs")
    assert await first is None
    assert [h.note.id for h in second] == [eggs.id]


@pytest.mark.anyio
async def test_results_dropped_after_cancel(coordinator, live):
    await coordinator.create_note("Milk", "buy milk")
    pending = asyncio.ensure_future(live.submit("milk"))
    await asyncio.sleep(0)
    live.cancel()
    assert await pending is None


@pytest.mark.anyio
async def test_stale_error_is_dropped(coordinator, live):
    stale = asyncio.ensure_future(live.submit("is:nope"))
    await asyncio.sleep(0)
    assert await live.submit("anything") == []
    assert await stale is None


@pytest.mark.anyio
async def test_current_syntax_error_is_raised(live):
    with pytest.raises(QuerySyntaxError):
        await live.submit("is:nope")
