import logging
from typing import Optional

from duoforge.models import Backend, Mode

logger = logging.getLogger(__name__)

# Phrases that ask for a fun, surprising remix. Checked before DEBUG_TRIGGERS.
CREATIVE_TRIGGERS = [
    "make it more fun",
    "make it cooler",
    "make it crazier",
    "make it wilder",
    "add something silly",
    "add something crazy",
    "add something fun",
    "surprise me",
    "make it epic",
    "make it awesome",
    "remix",
    "go crazy",
    "go wild",
    "yolo",
    "add easter egg",
    "add memes",
    "make it bussin",
]

DEBUG_TRIGGERS = [
    "doesn't work",
    "doesnt work",
    "not working",
    "it broke",
    "it's broken",
    "its broken",
    "broken",
    "bug",
    "glitch",
    "won't load",
    "wont load",
    "can't play",
    "cant play",
    "nothing happens",
    "stuck",
    "crashed",
    "error",
    "help it's",
    "help its",
    "fix it",
    "fix this",
    "something's wrong",
    "somethings wrong",
]

MODE_TARGETS = {
    Mode.DEFAULT: Backend.GEMINI,
    Mode.GEMINI: Backend.GEMINI,
    Mode.DEBUG: Backend.GEMINI,
    Mode.CRITIC: Backend.GEMINI,
    Mode.OPENAI: Backend.OPENAI,
    Mode.CREATIVE: Backend.OPENAI,
}


def auto_detect_mode(prompt: Optional[str]) -> Optional[Mode]:
    """Guess a mode from the wording of ``prompt``; None keeps the default."""
    lower = (prompt or "").lower().strip()
    if any(trigger in lower for trigger in CREATIVE_TRIGGERS):
        return Mode.CREATIVE
    if any(trigger in lower for trigger in DEBUG_TRIGGERS):
        return Mode.DEBUG
    return None


def resolve_target_model(mode: Mode, last_model_used: Optional[Backend] = None) -> Backend:
    """Backend that handles the first call of ``mode``."""
    mode = Mode(mode)
    if mode == Mode.ASK_OTHER:
        if last_model_used is None:
            return Backend.GEMINI
        return Backend(last_model_used).other
    return MODE_TARGETS[mode]


def resolve_mode(
    requested_mode: Mode,
    prompt: Optional[str],
    last_model_used: Optional[Backend],
    secondary_available: bool,
) -> Mode:
    """Apply auto-detection to ``default`` and demote modes needing an unavailable backend."""
    mode = Mode(requested_mode)
    if mode == Mode.DEFAULT:
        detected = auto_detect_mode(prompt)
        if detected is not None:
            logger.info("Auto-detected mode %r from prompt", detected.value)
            mode = detected

    if secondary_available:
        return mode

    needs_secondary = mode in (Mode.OPENAI, Mode.CREATIVE, Mode.CRITIC) or (
        mode == Mode.ASK_OTHER and resolve_target_model(mode, last_model_used) == Backend.OPENAI
    )
    if needs_secondary:
        logger.warning("%s backend not configured, %r mode falls back to gemini", Backend.OPENAI.value, mode.value)
        return Mode.GEMINI
    return mode
