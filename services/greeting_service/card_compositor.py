"""Greeting card compositing.

A render loads the card typeface (once per process, through `FontRegistry`),
reloads the background image, draws the name as word-wrapped, centred text
with a soft drop shadow, and encodes the surface as a PNG data URL.

Failures never escape `CardCompositor.render`: they come back as a failed
`RenderResult` tagged with the stage that broke (font, image, composition).
"""
import asyncio
import base64
import io
import logging
from enum import Enum
from time import perf_counter
from typing import Callable, Dict, List, Optional, Tuple

import aiofiles
import httpx
from PIL import Image, ImageDraw, ImageFilter, ImageFont
from pydantic import BaseModel, Field, field_validator

from . import settings
from .name_normalizer import download_filename

logger = logging.getLogger(__name__)


class RenderStage(str, Enum):
    LOADING_FONT = "loading_font"
    LOADING_IMAGE = "loading_image"
    COMPOSITING = "compositing"
    ENCODING = "encoding"
    DONE = "done"
    FAILED = "failed"


class CardRenderError(Exception):
    kind = "render"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class FontLoadError(CardRenderError):
    kind = "font"


class ImageLoadError(CardRenderError):
    kind = "image"


class CompositionError(CardRenderError):
    kind = "composition"


class LayoutLine(BaseModel):
    text: str
    width: float


class RenderResult(BaseModel):
    ok: bool
    name: str
    data_url: Optional[str] = None
    filename: Optional[str] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    stages: List[RenderStage] = Field(default_factory=list)
    stale: bool = False
    image_bytes: Optional[bytes] = Field(default=None, exclude=True, repr=False)

    model_config = {"use_enum_values": True}


def _normalize_hex_color(c: Optional[str]) -> Optional[str]:
    """Normalize a CSS hex color string to #rrggbb. Returns None if invalid.
    Accepts #rgb or #rrggbb (case-insensitive), with or without leading '#'."""
    if not isinstance(c, str):
        return None
    s = c.strip()
    if s.startswith('#'):
        s = s[1:]
    if len(s) == 3 and all(ch in '0123456789abcdefABCDEF' for ch in s):
        s = ''.join(ch * 2 for ch in s)
    if len(s) == 6 and all(ch in '0123456789abcdefABCDEF' for ch in s):
        return '#' + s.lower()
    return None


def _hex_to_rgb(c: str) -> Tuple[int, int, int]:
    h = _normalize_hex_color(c) or '#ffffff'
    return int(h[1:3], 16), int(h[3:5], 16), int(h[5:7], 16)


class CardStyle(BaseModel):
    """Fixed typography and placement for every card."""
    font_size: int = settings.CARD_FONT_SIZE
    line_height: int = settings.CARD_LINE_HEIGHT
    text_color: str = settings.CARD_TEXT_COLOR
    shadow_color: str = settings.CARD_SHADOW_COLOR
    shadow_opacity: float = Field(default=settings.CARD_SHADOW_OPACITY, ge=0.0, le=1.0)
    shadow_blur: float = Field(default=settings.CARD_SHADOW_BLUR, ge=0.0)
    shadow_offset: int = settings.CARD_SHADOW_OFFSET
    text_x_ratio: float = Field(default=settings.CARD_TEXT_X_RATIO, ge=0.0, le=1.0)
    text_y_ratio: float = Field(default=settings.CARD_TEXT_Y_RATIO, ge=0.0, le=1.0)
    max_width_ratio: float = Field(default=settings.CARD_MAX_TEXT_WIDTH_RATIO, gt=0.0, le=1.0)

    @field_validator("text_color", "shadow_color")
    @classmethod
    def _check_color(cls, v: str) -> str:
        normalized = _normalize_hex_color(v)
        if normalized is None:
            raise ValueError(f"expected a hex color like #rrggbb, got {v!r}")
        return normalized


def _is_remote(source: str) -> bool:
    return source.lower().startswith(("http://", "https://"))


async def fetch_source_bytes(source: str, *, timeout: float, transport: Optional[httpx.AsyncBaseTransport] = None) -> bytes:
    """Read an asset from an http(s) URL or a local path."""
    if _is_remote(source):
        async with httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True) as client:
            resp = await client.get(source)
            resp.raise_for_status()
            return resp.content
    async with aiofiles.open(source, 'rb') as f:
        return await f.read()


class FontRegistry:
    """Load-once cache for the card typeface.

    One instance per process, shared by every compositor. The first caller
    fetches and validates the font file; concurrent callers wait on the same
    lock and find it loaded. A failed load leaves the registry empty so the
    next render tries again. A loaded font is never dropped.
    """

    def __init__(
        self,
        family: str,
        source: str,
        *,
        timeout: float = settings.FONT_FETCH_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.family = family
        self.source = source
        self.timeout = timeout
        self._transport = transport
        self._font_bytes: Optional[bytes] = None
        self._fonts: Dict[int, ImageFont.FreeTypeFont] = {}
        self._lock = asyncio.Lock()
        self.fetch_count = 0

    @property
    def is_loaded(self) -> bool:
        return self._font_bytes is not None

    async def ensure_loaded(self) -> bool:
        """Load the font unless cached. Returns True if this call did the load."""
        if self._font_bytes is not None:
            return False
        async with self._lock:
            if self._font_bytes is not None:
                return False
            t0 = perf_counter()
            self.fetch_count += 1
            logger.info(f"font: loading '{self.family}' from {self.source}")
            try:
                data = await asyncio.wait_for(
                    fetch_source_bytes(self.source, timeout=self.timeout, transport=self._transport),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                raise FontLoadError(f"Timed out loading font '{self.family}' after {self.timeout:.0f}s")
            except Exception as e:
                raise FontLoadError(f"Failed to load font '{self.family}': {e}") from e
            if not data:
                raise FontLoadError(f"Font '{self.family}' source returned no data")
            try:
                ImageFont.truetype(io.BytesIO(data), 12)
            except Exception as e:
                raise FontLoadError(f"Font '{self.family}' could not be parsed: {e}") from e
            self._font_bytes = data
            logger.info(f"font: '{self.family}' loaded ({len(data)} bytes) in {perf_counter()-t0:.2f}s")
            return True

    def get_font(self, size: int) -> ImageFont.FreeTypeFont:
        if self._font_bytes is None:
            raise FontLoadError(f"Font '{self.family}' is not loaded")
        font = self._fonts.get(size)
        if font is None:
            font = ImageFont.truetype(io.BytesIO(self._font_bytes), size)
            self._fonts[size] = font
        return font


def wrap_text(text: str, measure: Callable[[str], float], max_width: float) -> List[LayoutLine]:
    """Greedy word wrap on single spaces.

    A token is moved to a new line only when the current line already holds
    something, so a token wider than ``max_width`` sits alone and overflows.
    """
    lines: List[LayoutLine] = []
    current: List[str] = []
    for token in text.split(" "):
        candidate = " ".join(current + [token])
        if current and measure(candidate) > max_width:
            closed = " ".join(current)
            lines.append(LayoutLine(text=closed, width=measure(closed)))
            current = [token]
        else:
            current.append(token)
    closed = " ".join(current)
    lines.append(LayoutLine(text=closed, width=measure(closed)))
    return lines


def line_positions(lines: List[LayoutLine], x: float, y: float, line_height: float) -> List[Tuple[LayoutLine, float, float]]:
    """Centre points for each line, the block vertically centred on (x, y)."""
    offset = -(len(lines) - 1) * line_height / 2
    return [(line, x, y + offset + i * line_height) for i, line in enumerate(lines)]


def compose_card(
    background: Image.Image,
    text: str,
    font: ImageFont.FreeTypeFont,
    size: Tuple[int, int],
    style: CardStyle,
) -> Tuple[Image.Image, List[LayoutLine]]:
    """Draw ``text`` over ``background`` on a fresh surface of ``size``.

    Takes ownership of ``background`` and closes it.
    """
    width, height = size
    try:
        with background.convert("RGBA") as rgba:
            surface = rgba.resize((width, height), Image.Resampling.LANCZOS)
    finally:
        background.close()

    lines = wrap_text(text, font.getlength, width * style.max_width_ratio)
    placed = line_positions(lines, width * style.text_x_ratio, height * style.text_y_ratio, style.line_height)

    # Soft shadow: draw offset text on its own layer, blur, then composite under the fill
    shadow_alpha = int(round(255 * style.shadow_opacity))
    if shadow_alpha > 0:
        shadow = Image.new("RGBA", (width, height), (0, 0, 0, 0))
        shadow_draw = ImageDraw.Draw(shadow)
        shadow_fill = _hex_to_rgb(style.shadow_color) + (shadow_alpha,)
        for line, lx, ly in placed:
            shadow_draw.text(
                (lx + style.shadow_offset, ly + style.shadow_offset),
                line.text,
                font=font,
                fill=shadow_fill,
                anchor="mm",
            )
        if style.shadow_blur > 0:
            shadow = shadow.filter(ImageFilter.GaussianBlur(radius=style.shadow_blur))
        surface.alpha_composite(shadow)
        shadow.close()

    draw = ImageDraw.Draw(surface)
    text_fill = _hex_to_rgb(style.text_color) + (255,)
    for line, lx, ly in placed:
        draw.text((lx, ly), line.text, font=font, fill=text_fill, anchor="mm")
    return surface, lines


def _close_late_surface(job: "asyncio.Future") -> None:
    """Release a surface that finished drawing after its render gave up."""
    if job.cancelled() or job.exception() is not None:
        return
    surface, _ = job.result()
    surface.close()
    logger.debug("render: closed surface from a timed out compose")


def encode_png(surface: Image.Image) -> bytes:
    buf = io.BytesIO()
    surface.save(buf, format='PNG')
    return buf.getvalue()


class CardCompositor:
    """Renders greeting cards for already-cleaned names.

    Each `render` runs font -> background -> compositing -> encoding in that
    order on its own surface. Only the font survives between renders.
    """

    def __init__(
        self,
        fonts: FontRegistry,
        background_source: str = settings.CARD_BACKGROUND_PATH,
        *,
        size: Tuple[int, int] = (settings.CARD_WIDTH, settings.CARD_HEIGHT),
        style: Optional[CardStyle] = None,
        image_timeout: float = settings.IMAGE_LOAD_TIMEOUT_S,
        render_timeout: float = settings.RENDER_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.fonts = fonts
        self.background_source = background_source
        self.size = (int(size[0]), int(size[1]))
        self.style = style or CardStyle()
        self.image_timeout = image_timeout
        self.render_timeout = render_timeout
        self._transport = transport

    async def _load_background(self) -> Image.Image:
        src = self.background_source
        try:
            data = await asyncio.wait_for(
                fetch_source_bytes(src, timeout=self.image_timeout, transport=self._transport),
                timeout=self.image_timeout,
            )
        except asyncio.TimeoutError:
            raise ImageLoadError(f"Timed out loading background image after {self.image_timeout:.0f}s")
        except Exception as e:
            raise ImageLoadError(f"Failed to load background image from {src}: {e}") from e
        if not data:
            raise ImageLoadError(f"Background image at {src} is empty")
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except Exception as e:
            raise ImageLoadError(f"Background image at {src} could not be decoded: {e}") from e
        return image

    async def render(self, name: str, on_stage: Optional[Callable[[RenderStage], None]] = None) -> RenderResult:
        """Render a card for ``name``. Never raises for pipeline failures."""
        t0 = perf_counter()
        stages: List[RenderStage] = []
        surface: Optional[Image.Image] = None

        def _enter(stage: RenderStage) -> None:
            stages.append(stage)
            if on_stage is not None:
                try:
                    on_stage(stage)
                except Exception as e:
                    logger.warning(f"render: on_stage callback failed at {stage.value}: {e}")

        try:
            if self.fonts.is_loaded:
                logger.debug(f"render: font '{self.fonts.family}' cached; skipping load")
            else:
                _enter(RenderStage.LOADING_FONT)
                await self.fonts.ensure_loaded()

            _enter(RenderStage.LOADING_IMAGE)
            background = await self._load_background()

            _enter(RenderStage.COMPOSITING)
            try:
                font = self.fonts.get_font(self.style.font_size)
            except CardRenderError:
                background.close()
                raise
            except Exception as e:
                background.close()
                raise CompositionError(f"Failed to draw the card: {e}") from e
            # The worker thread owns the background from here on
            job = asyncio.ensure_future(asyncio.to_thread(compose_card, background, name, font, self.size, self.style))
            try:
                surface, lines = await asyncio.wait_for(asyncio.shield(job), timeout=self.render_timeout)
            except asyncio.TimeoutError:
                job.add_done_callback(_close_late_surface)
                raise CompositionError(f"Timed out drawing the card after {self.render_timeout:.0f}s")
            except CardRenderError:
                raise
            except Exception as e:
                raise CompositionError(f"Failed to draw the card: {e}") from e

            _enter(RenderStage.ENCODING)
            try:
                png_bytes = await asyncio.wait_for(asyncio.to_thread(encode_png, surface), timeout=self.render_timeout)
            except asyncio.TimeoutError:
                raise CompositionError(f"Timed out encoding the card after {self.render_timeout:.0f}s")
            except Exception as e:
                raise CompositionError(f"Failed to encode the card: {e}") from e
            if not png_bytes:
                raise CompositionError("Encoder produced an empty image")

            _enter(RenderStage.DONE)
            b64 = base64.b64encode(png_bytes).decode('ascii')
            logger.info(f"render: ok name={name!r} lines={len(lines)} bytes={len(png_bytes)} elapsed={perf_counter()-t0:.2f}s")
            return RenderResult(
                ok=True,
                name=name,
                data_url=f"data:image/png;base64,{b64}",
                filename=download_filename(name),
                stages=stages,
                image_bytes=png_bytes,
            )
        except CardRenderError as e:
            _enter(RenderStage.FAILED)
            logger.warning(f"render: {e.kind} failure for name={name!r}: {e.message}")
            return RenderResult(ok=False, name=name, error_kind=e.kind, message=e.message, stages=stages)
        except Exception as e:
            _enter(RenderStage.FAILED)
            logger.error(f"render: unexpected failure for name={name!r}: {e}")
            return RenderResult(
                ok=False,
                name=name,
                error_kind=CompositionError.kind,
                message=str(e) or e.__class__.__name__,
                stages=stages,
            )
        finally:
            if surface is not None:
                surface.close()
