"""Display-name cleaning for greeting cards.

`normalize_name` turns untrusted text into a CleanName: markup-free,
single-spaced, and within the configured length bounds. It never raises;
anything unusable comes back as ``None``.

Slugs for share links and download filenames are a separate transformation
(`share_slug`, `download_filename`) and are never fed back into
`normalize_name`.
"""
import logging
import re
import unicodedata
import warnings
from typing import Any, Optional

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

from .settings import NAME_MAX_LEN, NAME_MIN_LEN

logger = logging.getLogger(__name__)

# Short names such as "index.html" are legitimate input, not file paths.
warnings.filterwarnings("ignore", category=MarkupResemblesLocatorWarning)

DEFAULT_FRIEND_NAME = "Friend Name"

# Elements whose content is executable or invisible; dropped with their text.
_ACTIVE_TAGS = ["script", "style", "iframe", "object", "embed", "template", "noscript"]

_DENYLIST_RE = re.compile(r"""[*+~.()'"!:@]""")
_TAG_DELIMITER_RE = re.compile(r"[<>]")
_PLUS_RUN_RE = re.compile(r"\++")
_ENCODED_SPACE_RUN_RE = re.compile(r"(?:%20)+", re.IGNORECASE)
_DASH_RUN_RE = re.compile(r"-+")
_WHITESPACE_RUN_RE = re.compile(r"\s+")

_SLUG_REMOVE_RE = re.compile(r"""[*+~.()'"!:@<>]""")
# Characters that alone never amount to a name
_NO_CONTENT_RE = re.compile(r"""[$%*_+~.()'"!\-:@\s]+""")


def strip_markup(text: str) -> str:
    """Return only the visible text of ``text`` parsed as HTML."""
    soup = BeautifulSoup(text, "html.parser")
    for tag in soup.find_all(_ACTIVE_TAGS):
        tag.decompose()
    plain = soup.get_text()
    # Entities such as &lt; decode to literal delimiters; those must not survive either.
    return _TAG_DELIMITER_RE.sub(" ", plain)


def name_length(name: str) -> int:
    """Length used for bounds checks: code points after NFC."""
    return len(unicodedata.normalize("NFC", name))


def normalize_name(raw: Any, min_len: int = NAME_MIN_LEN, max_len: int = NAME_MAX_LEN) -> Optional[str]:
    """Clean ``raw`` into a display-safe name, or return None if it is unusable."""
    if not isinstance(raw, str) or not raw:
        return None

    try:
        clean = strip_markup(raw)
    except Exception as e:
        # html.parser is lenient, but a parser fault must still mean "rejected"
        logger.warning(f"normalize_name: markup stripping failed: {e}")
        return None

    clean = clean.strip()
    clean = unicodedata.normalize("NFC", clean)
    clean = _DENYLIST_RE.sub(" ", clean)

    clean = _PLUS_RUN_RE.sub(" ", clean)
    clean = _ENCODED_SPACE_RUN_RE.sub(" ", clean)
    clean = _DASH_RUN_RE.sub(" ", clean)
    clean = _WHITESPACE_RUN_RE.sub(" ", clean)
    clean = clean.strip()

    length = name_length(clean)
    if length < min_len or length > max_len:
        logger.debug(f"normalize_name: rejected length={length} bounds=[{min_len}, {max_len}]")
        return None
    return clean


def share_slug(name: str) -> str:
    """URL-safe token for the ``name`` query value of a share link. Case is kept."""
    slug = _SLUG_REMOVE_RE.sub("", name or "")
    slug = _WHITESPACE_RUN_RE.sub("-", slug.strip())
    slug = _DASH_RUN_RE.sub("-", slug)
    return slug.strip("-")


def download_filename(name: str, suffix: str = ".png") -> str:
    """Lower-case ASCII filename derived from the slug of ``name``."""
    folded = unicodedata.normalize("NFKD", share_slug(name)).encode("ascii", "ignore").decode("ascii")
    folded = re.sub(r"[^a-z0-9-]+", "", folded.lower())
    folded = _DASH_RUN_RE.sub("-", folded).strip("-")
    if not folded:
        return f"greeting-card{suffix}"
    return f"{folded}-greeting-card{suffix}"


def invalid_name_message(min_len: int = NAME_MIN_LEN, max_len: int = NAME_MAX_LEN) -> str:
    return f"Invalid name provided. Please ensure it is between {min_len} to {max_len} characters."


NO_NAME_MESSAGE = "No name provided in the URL."


def has_name_content(raw: Optional[str]) -> bool:
    """False when ``raw`` is nothing but punctuation, separators and whitespace."""
    text = strip_markup(raw) if isinstance(raw, str) else ""
    return bool(_NO_CONTENT_RE.sub("", text))


def name_rejection_message(raw: Optional[str], min_len: int = NAME_MIN_LEN, max_len: int = NAME_MAX_LEN) -> str:
    """Message for a name that `normalize_name` rejected."""
    if not has_name_content(raw):
        return NO_NAME_MESSAGE
    return invalid_name_message(min_len, max_len)
