"""Shared fixtures for greeting card tests.

Fonts and backgrounds are real files written to a temp dir; the network font
source is served by an in-process httpx transport that counts requests.
"""

from pathlib import Path

import httpx
import pytest
from PIL import Image, ImageFont

from greeting_service.card_compositor import CardCompositor, CardStyle, FontRegistry

FONT_URL = "https://fonts.example.test/Card-Bold.ttf"
CARD_SIZE = (240, 240)


class CountingTransport(httpx.MockTransport):
    """MockTransport that serves fixed bytes and records how often it was hit."""

    def __init__(self, content: bytes, status_code: int = 200):
        self.content = content
        self.status_code = status_code
        self.calls = 0
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        return httpx.Response(self.status_code, content=self.content)


@pytest.fixture(scope="session")
def font_bytes() -> bytes:
    """Real TrueType data: the face Pillow bundles as its default font."""
    return ImageFont.load_default(size=24).font_bytes


@pytest.fixture
def font_file(tmp_path: Path, font_bytes: bytes) -> Path:
    path = tmp_path / "Card-Bold.ttf"
    path.write_bytes(font_bytes)
    return path


@pytest.fixture
def background_file(tmp_path: Path) -> Path:
    path = tmp_path / "background.png"
    Image.new("RGB", (64, 48), (98, 45, 160)).save(path, format="PNG")
    return path


@pytest.fixture
def card_style() -> CardStyle:
    return CardStyle(font_size=24, line_height=30, shadow_blur=2, shadow_offset=2)


@pytest.fixture
def font_registry(font_file: Path) -> FontRegistry:
    return FontRegistry("Test Sans", str(font_file))


@pytest.fixture
def compositor(font_registry: FontRegistry, background_file: Path, card_style: CardStyle) -> CardCompositor:
    return CardCompositor(font_registry, str(background_file), size=CARD_SIZE, style=card_style)
