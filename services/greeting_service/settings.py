import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

ASSETS_DIR = Path(__file__).resolve().parent / 'assets'


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

# Name bounds (inclusive)
NAME_MIN_LEN = int(os.getenv("NAME_MIN_LEN", "2"))
NAME_MAX_LEN = int(os.getenv("NAME_MAX_LEN", "36"))

# Card surface
CARD_WIDTH = int(os.getenv("CARD_WIDTH", "1080"))
CARD_HEIGHT = int(os.getenv("CARD_HEIGHT", "1080"))
CARD_BACKGROUND_PATH = (os.getenv("CARD_BACKGROUND_PATH", "").strip() or str(ASSETS_DIR / "background.png"))

# Text placement, as fractions of the surface
CARD_TEXT_X_RATIO = float(os.getenv("CARD_TEXT_X_RATIO", "0.5"))
CARD_TEXT_Y_RATIO = float(os.getenv("CARD_TEXT_Y_RATIO", "0.5"))
CARD_MAX_TEXT_WIDTH_RATIO = float(os.getenv("CARD_MAX_TEXT_WIDTH_RATIO", "0.8"))

# Typeface: one family, one weight, one size
CARD_FONT_FAMILY = os.getenv("CARD_FONT_FAMILY", "Poppins")
CARD_FONT_URL = os.getenv(
    "CARD_FONT_URL",
    "https://github.com/google/fonts/raw/main/ofl/poppins/Poppins-Bold.ttf",
).strip()
CARD_FONT_SIZE = int(os.getenv("CARD_FONT_SIZE", "80"))
CARD_LINE_HEIGHT = int(os.getenv("CARD_LINE_HEIGHT", "100"))

CARD_TEXT_COLOR = os.getenv("CARD_TEXT_COLOR", "#ffffff")
CARD_SHADOW_COLOR = os.getenv("CARD_SHADOW_COLOR", "#000000")
CARD_SHADOW_OPACITY = float(os.getenv("CARD_SHADOW_OPACITY", "0.6"))
CARD_SHADOW_BLUR = float(os.getenv("CARD_SHADOW_BLUR", "8"))
CARD_SHADOW_OFFSET = int(os.getenv("CARD_SHADOW_OFFSET", "4"))

# Asset loading bounds
FONT_FETCH_TIMEOUT_S = float(os.getenv("FONT_FETCH_TIMEOUT_S", "15"))
IMAGE_LOAD_TIMEOUT_S = float(os.getenv("IMAGE_LOAD_TIMEOUT_S", "10"))
RENDER_TIMEOUT_S = float(os.getenv("RENDER_TIMEOUT_S", "30"))  # compositing + encoding

# Share links
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8010").rstrip('/')

CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
