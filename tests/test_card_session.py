"""
Tests for CardSession: caller-visible states, stale render discard and retry.
"""

import asyncio
from pathlib import Path
from typing import Dict

import pytest
from PIL import Image

from greeting_service.card_compositor import CardCompositor, CardStyle, FontRegistry, RenderResult
from greeting_service.card_session import CardSession, SessionStatus

from conftest import CARD_SIZE


class GatedCompositor:
    """Holds each render until the test releases that name."""

    def __init__(self) -> None:
        self.gates: Dict[str, asyncio.Event] = {}

    def gate(self, name: str) -> asyncio.Event:
        return self.gates.setdefault(name, asyncio.Event())

    async def render(self, name: str) -> RenderResult:
        await self.gate(name).wait()
        return RenderResult(ok=True, name=name, data_url=f"data:image/png;base64,{name}")


@pytest.mark.asyncio
async def test_newer_request_wins_over_slower_older_one() -> None:
    compositor = GatedCompositor()
    session = CardSession(compositor)

    older = asyncio.create_task(session.request("Alice"))
    await asyncio.sleep(0)
    newer = asyncio.create_task(session.request("Bob"))
    await asyncio.sleep(0)
    assert session.status is SessionStatus.LOADING

    compositor.gate("Bob").set()
    bob = await newer
    assert bob.stale is False
    assert session.status is SessionStatus.SUCCESS
    assert session.payload == "data:image/png;base64,Bob"

    compositor.gate("Alice").set()
    alice = await older
    assert alice.stale is True
    assert alice.name == "Alice"
    # The late result did not overwrite the newer one
    assert session.result.name == "Bob"
    assert session.payload == "data:image/png;base64,Bob"


@pytest.mark.asyncio
async def test_stale_failure_does_not_flip_state_to_error() -> None:
    class FlakyCompositor(GatedCompositor):
        async def render(self, name: str) -> RenderResult:
            await self.gate(name).wait()
            if name == "Alice":
                return RenderResult(ok=False, name=name, error_kind="image", message="gone")
            return RenderResult(ok=True, name=name, data_url="data:image/png;base64,ok")

    compositor = FlakyCompositor()
    session = CardSession(compositor)

    older = asyncio.create_task(session.request("Alice"))
    await asyncio.sleep(0)
    newer = asyncio.create_task(session.request("Bob"))
    await asyncio.sleep(0)

    compositor.gate("Bob").set()
    await newer
    compositor.gate("Alice").set()
    stale = await older

    assert stale.ok is False and stale.stale is True
    assert session.status is SessionStatus.SUCCESS
    assert session.message is None


@pytest.mark.asyncio
async def test_error_then_retry_succeeds(font_registry: FontRegistry, tmp_path: Path, card_style: CardStyle) -> None:
    background = tmp_path / "bg.png"
    compositor = CardCompositor(font_registry, str(background), size=CARD_SIZE, style=card_style)
    session = CardSession(compositor)

    failed = await session.request("Priya Sharma")
    assert failed.ok is False
    assert session.status is SessionStatus.ERROR
    assert "background" in session.message
    assert session.payload is None

    Image.new("RGB", (10, 10), (255, 200, 0)).save(background, format="PNG")
    retried = await session.retry()

    assert retried.ok is True
    assert session.status is SessionStatus.SUCCESS
    assert session.message is None
    assert session.payload.startswith("data:image/png;base64,")
    assert font_registry.fetch_count == 1


@pytest.mark.asyncio
async def test_retry_without_request_is_an_error() -> None:
    session = CardSession(GatedCompositor())
    assert session.status is SessionStatus.IDLE
    with pytest.raises(ValueError):
        await session.retry()


@pytest.mark.asyncio
async def test_cancelled_request_returns_to_idle() -> None:
    session = CardSession(GatedCompositor())

    pending = asyncio.create_task(session.request("Alice"))
    await asyncio.sleep(0)
    assert session.status is SessionStatus.LOADING

    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending
    assert session.status is SessionStatus.IDLE
    assert session.result is None


@pytest.mark.asyncio
async def test_cancelled_stale_request_leaves_newer_one_loading() -> None:
    compositor = GatedCompositor()
    session = CardSession(compositor)

    older = asyncio.create_task(session.request("Alice"))
    await asyncio.sleep(0)
    newer = asyncio.create_task(session.request("Bob"))
    await asyncio.sleep(0)

    older.cancel()
    with pytest.raises(asyncio.CancelledError):
        await older
    assert session.status is SessionStatus.LOADING

    compositor.gate("Bob").set()
    await newer
    assert session.status is SessionStatus.SUCCESS
