import logging
from typing import Optional
from urllib.parse import quote

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel

from . import settings
from .card_compositor import CardCompositor, FontRegistry, RenderResult
from .name_normalizer import (
    DEFAULT_FRIEND_NAME,
    name_rejection_message,
    normalize_name,
    share_slug,
)

# Configure logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL, logging.INFO))
logger = logging.getLogger(__name__)

# One font cache per process, injected into the compositor
font_registry = FontRegistry(settings.CARD_FONT_FAMILY, settings.CARD_FONT_URL)
compositor = CardCompositor(font_registry)

app = FastAPI(title="Friendship Greeting Card Service", version="1.0.0")

# CORS middleware: the greeting page calls this API directly from the browser.
# Configure via CORS_ALLOW_ORIGINS env (comma-separated). Defaults are dev-friendly.
if not settings.CORS_ALLOW_ORIGINS:
    allow_origins = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:8010",
        "*",
    ]
else:
    allow_origins = [o.strip() for o in settings.CORS_ALLOW_ORIGINS.split(",") if o.strip()]
# If wildcard is present, set credentials False and pass ["*"] per Starlette rules
use_wildcard = "*" in allow_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if use_wildcard else allow_origins,
    allow_credentials=False if use_wildcard else True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# Pydantic models
class NormalizeRequest(BaseModel):
    name: Optional[str] = None


class NormalizeResponse(BaseModel):
    ok: bool
    name: Optional[str] = None
    slug: Optional[str] = None
    share_url: Optional[str] = None
    error: Optional[str] = None


class GreetingResponse(BaseModel):
    name: str
    data_url: str
    filename: str
    share_url: str
    title: str
    description: str


def share_url(name: str) -> str:
    return f"{settings.PUBLIC_BASE_URL}/?name={quote(share_slug(name))}"


def greeting_title(name: str) -> str:
    return f"Happy Friendship Day, {name}"


def greeting_description(name: str) -> str:
    return f"A special Friendship Day greeting for {name}."


def _clean_name_or_422(raw: Optional[str]) -> str:
    clean = normalize_name(raw)
    if clean is None:
        raise HTTPException(status_code=422, detail=name_rejection_message(raw))
    return clean


async def _render_or_raise(name: str) -> RenderResult:
    result = await compositor.render(name)
    if result.ok:
        return result
    # Asset failures are upstream problems; drawing/encoding failures are ours
    status_code = 500 if result.error_kind == "composition" else 502
    raise HTTPException(status_code=status_code, detail={"error": result.error_kind, "message": result.message})


# API Endpoints
@app.post("/normalize")
async def normalize(payload: NormalizeRequest):
    """Clean a raw name and return its share link."""
    clean = normalize_name(payload.name)
    if clean is None:
        return NormalizeResponse(ok=False, error=name_rejection_message(payload.name)).model_dump()
    return NormalizeResponse(ok=True, name=clean, slug=share_slug(clean), share_url=share_url(clean)).model_dump()


@app.get("/greeting")
async def greeting(name: Optional[str] = Query(default=None)):
    """Render the greeting card for ``name`` and return it as a data URL."""
    try:
        clean = _clean_name_or_422(name or DEFAULT_FRIEND_NAME)
        result = await _render_or_raise(clean)
        return GreetingResponse(
            name=clean,
            data_url=result.data_url or "",
            filename=result.filename or "",
            share_url=share_url(clean),
            title=greeting_title(clean),
            description=greeting_description(clean),
        ).model_dump()
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error in greeting: {e}")
        raise HTTPException(status_code=500, detail=str(e) or e.__class__.__name__)


@app.get("/greeting.png")
async def greeting_png(name: Optional[str] = Query(default=None)):
    """Render the greeting card for ``name`` as a downloadable PNG."""
    try:
        clean = _clean_name_or_422(name or DEFAULT_FRIEND_NAME)
        result = await _render_or_raise(clean)
        return Response(
            content=result.image_bytes or b"",
            media_type="image/png",
            headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error in greeting_png: {e}")
        raise HTTPException(status_code=500, detail=str(e) or e.__class__.__name__)


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "friendship-greeting-card",
        "font_family": compositor.fonts.family,
        "font_loaded": compositor.fonts.is_loaded,
        "card_size": list(compositor.size),
        "name_bounds": [settings.NAME_MIN_LEN, settings.NAME_MAX_LEN],
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8010)
