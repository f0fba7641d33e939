"""Pull a complete HTML game out of a model reply and recover cut-off answers."""

import logging
import re
from typing import Optional

from duoforge.llm_utils import ModelAdapter, UpstreamError
from duoforge.models import Role, Turn
from duoforge.prompts import CONTINUATION_SYSTEM_PROMPT, build_continuation_request

logger = logging.getLogger(__name__)

OPENING_MARKERS = ("<!DOCTYPE", "<html", "<script")
CLOSING_MARKER = "</html>"

TRUNCATED_MESSAGE = (
    "That game got really big! Let me try a simpler approach. "
    "Ask me to add one feature at a time! 🎮"
)
EMPTY_MESSAGE = "I made it! Check out your creation in the preview! 🎉"

_HTML_FENCE_RE = re.compile(r"```\s*html\s*\n(.*?)```", re.IGNORECASE | re.DOTALL)
_ANY_FENCE_RE = re.compile(r"```\s*\w*\s*\n(.*?)```", re.IGNORECASE | re.DOTALL)
_DOCUMENT_GREEDY_RE = re.compile(r"<!DOCTYPE\s+html>.*</html>", re.IGNORECASE | re.DOTALL)
_DOCUMENT_LAZY_RE = re.compile(r"<!DOCTYPE\s+html>.*?</html>", re.IGNORECASE | re.DOTALL)
_PARTIAL_DOCTYPE_RE = re.compile(r"<!DOCTYPE\s+html>.*", re.IGNORECASE | re.DOTALL)
_PARTIAL_HTML_RE = re.compile(r"<html.*", re.IGNORECASE | re.DOTALL)
_OPEN_HTML_FENCE_RE = re.compile(r"```\s*html\s*\n(.*)", re.IGNORECASE | re.DOTALL)

_MESSAGE_SCRUBBERS = [
    re.compile(r"```\w*\n.*?```", re.DOTALL),
    re.compile(r"```.*?```", re.DOTALL),
    re.compile(r"<!DOCTYPE.*?</html>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<html.*?</html>", re.IGNORECASE | re.DOTALL),
    # cut-off code runs to the end of the reply
    re.compile(r"<!DOCTYPE.*", re.IGNORECASE | re.DOTALL),
    re.compile(r"<html.*", re.IGNORECASE | re.DOTALL),
    re.compile(r"```\w*\n.*", re.DOTALL),
]


def extract_code(text: Optional[str]) -> Optional[str]:
    """Return the complete HTML document in ``text``, or None.

    Tries an ``html`` fence first, then any fence holding a full document,
    then a bare ``<!DOCTYPE html> ... </html>`` span.
    """
    if not text:
        return None

    match = _HTML_FENCE_RE.search(text)
    if match:
        inner = match.group(1).strip()
        if CLOSING_MARKER in inner:
            return inner

    for block in _ANY_FENCE_RE.finditer(text):
        inner = block.group(1).strip()
        if "<!DOCTYPE" in inner and CLOSING_MARKER in inner:
            document = _DOCUMENT_GREEDY_RE.search(inner)
            if document and len(document.group(0)) > 100:
                return document.group(0)

    document = _DOCUMENT_LAZY_RE.search(text)
    if document:
        return document.group(0)
    return None


def is_truncated(text: Optional[str]) -> bool:
    if not text:
        return False
    has_opening = any(marker in text for marker in OPENING_MARKERS)
    return has_opening and CLOSING_MARKER not in text


def extract_partial_code(text: Optional[str]) -> Optional[str]:
    """Return the cut-off fragment of a truncated reply, or None."""
    if not text:
        return None
    match = _PARTIAL_DOCTYPE_RE.search(text) or _PARTIAL_HTML_RE.search(text)
    if match:
        return match.group(0)
    fence = _OPEN_HTML_FENCE_RE.search(text)
    if fence:
        return fence.group(1)
    return None


def strip_fences(text: str) -> str:
    """Drop a leading code fence (with its language tag) and a trailing fence."""
    cleaned = re.sub(r"^```\s*\w*\s*\n?", "", text, flags=re.IGNORECASE)
    cleaned = re.sub(r"\n?```\s*$", "", cleaned)
    return cleaned.strip()


def clean_assistant_message(text: Optional[str], was_truncated: bool = False) -> str:
    """Turn a raw model reply into the short message shown next to the game."""
    if was_truncated:
        return TRUNCATED_MESSAGE

    cleaned = text or ""
    for pattern in _MESSAGE_SCRUBBERS:
        cleaned = pattern.sub("", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()

    if len(cleaned) < 5:
        return EMPTY_MESSAGE
    return cleaned


class ContinuationRecovery:
    """Ask the reliable backend to finish a cut-off document, once."""

    def __init__(
        self,
        adapter: ModelAdapter,
        max_output_tokens: int = 8192,
        tail_chars: int = 3000,
        min_length: int = 200,
    ) -> None:
        self.adapter = adapter
        self.max_output_tokens = max_output_tokens
        self.tail_chars = tail_chars
        self.min_length = min_length

    async def attempt(self, partial: Optional[str], accounting_id: Optional[str] = None) -> Optional[str]:
        if not partial:
            return None

        request = Turn(role=Role.USER, content=build_continuation_request(partial[-self.tail_chars:]))
        try:
            result = await self.adapter.send(
                [CONTINUATION_SYSTEM_PROMPT],
                [request],
                self.max_output_tokens,
                accounting_id=accounting_id,
            )
        except UpstreamError as exc:
            logger.warning("Continuation request failed: %s", exc)
            return None

        stitched = f"{partial}\n{strip_fences(result.text)}"
        if CLOSING_MARKER in stitched:
            document = _DOCUMENT_GREEDY_RE.search(stitched)
            if document and len(document.group(0)) > self.min_length:
                logger.info("Continuation stitched a complete document (%s chars)", len(document.group(0)))
                return document.group(0)

        logger.warning("Continuation did not produce a complete document")
        return None
