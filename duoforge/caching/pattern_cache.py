"""Approximate "what worked before" store keyed by request category.

The exact response cache keys on the artifact, so iterative edits always miss
it.  This cache ignores the artifact entirely: it remembers, per
(category, genre, model), a one-line description of the change that satisfied
the last similar request, which the orchestrator injects as a hint.
"""

import logging
import re
import threading
import time
from enum import Enum
from typing import Callable, Dict, NamedTuple, Optional, Tuple

from duoforge.models import Backend, PatternEntry

logger = logging.getLogger(__name__)


class IterationCategory(str, Enum):
    SPEED_UP = "speed-up"
    SLOW_DOWN = "slow-down"
    HARDER = "harder"
    EASIER = "easier"
    COLOR_CHANGE = "color-change"
    BIGGER = "bigger"
    SMALLER = "smaller"
    BACKGROUND = "background"
    ADD_SOUND = "add-sound"
    ADD_SCORE = "add-score"
    ADD_LIVES = "add-lives"
    ADD_POWERUP = "add-powerup"
    ADD_ENEMIES = "add-enemies"
    ADD_LEVELS = "add-levels"
    ADD_EFFECTS = "add-effects"
    MORE_FUN = "more-fun"
    FIX_BUG = "fix-bug"
    FIX_JUMP = "fix-jump"
    FIX_COLLISION = "fix-collision"
    FIX_MOVEMENT = "fix-movement"


# Ordered: the first matching rule wins.
ITERATION_PATTERNS = [
    (re.compile(r"\b(faster|quicker|speed up|too slow|more speed)\b", re.I), IterationCategory.SPEED_UP),
    (re.compile(r"\b(slower|slow down|too fast|less speed)\b", re.I), IterationCategory.SLOW_DOWN),
    (re.compile(r"\b(harder|more difficult|too easy|challenge)\b", re.I), IterationCategory.HARDER),
    (re.compile(r"\b(easier|too hard|simpler)\b", re.I), IterationCategory.EASIER),
    (re.compile(r"\b(change.*(color|colour)|different color|new color)\b", re.I), IterationCategory.COLOR_CHANGE),
    (re.compile(r"\b(bigger|larger|make it big|increase size)\b", re.I), IterationCategory.BIGGER),
    (re.compile(r"\b(smaller|tinier|shrink|decrease size)\b", re.I), IterationCategory.SMALLER),
    (re.compile(r"\b(background|backdrop|bg color)\b", re.I), IterationCategory.BACKGROUND),
    (re.compile(r"\b(add sound|sound effect|sfx|audio|music)\b", re.I), IterationCategory.ADD_SOUND),
    (re.compile(r"\b(add score|scoring|points|keep score)\b", re.I), IterationCategory.ADD_SCORE),
    (re.compile(r"\b(add lives|health|hearts|hp)\b", re.I), IterationCategory.ADD_LIVES),
    (re.compile(r"\b(add power.?up|powerup|boost)\b", re.I), IterationCategory.ADD_POWERUP),
    (re.compile(r"\b(add enemy|enemies|bad guys|monsters)\b", re.I), IterationCategory.ADD_ENEMIES),
    (re.compile(r"\b(add level|next level|levels|stage)\b", re.I), IterationCategory.ADD_LEVELS),
    (re.compile(r"\b(add particle|explosion|confetti|effects)\b", re.I), IterationCategory.ADD_EFFECTS),
    (re.compile(r"\b(more fun|cooler|awesome|epic|make it better)\b", re.I), IterationCategory.MORE_FUN),
    (re.compile(r"\b(fix|broken|doesn.?t work|not working|bug|glitch)\b", re.I), IterationCategory.FIX_BUG),
    (re.compile(r"\b(fix.*(jump|jumping)|can.?t jump|jump.*(broken|not))\b", re.I), IterationCategory.FIX_JUMP),
    (re.compile(r"\b(fix.*(collision|hit)|going through|pass through)\b", re.I), IterationCategory.FIX_COLLISION),
    (re.compile(r"\b(fix.*(move|movement|control)|can.?t move|stuck)\b", re.I), IterationCategory.FIX_MOVEMENT),
]

CHANGE_SUMMARIES = {
    IterationCategory.SPEED_UP: "Increased speed/velocity values, reduced delays, or increased game tick rate.",
    IterationCategory.SLOW_DOWN: "Decreased speed/velocity values, added delays, or reduced game tick rate.",
    IterationCategory.HARDER: "Increased enemy count/speed, reduced player lives/health, or narrowed hit windows.",
    IterationCategory.EASIER: "Decreased enemy count/speed, increased player lives/health, or widened hit windows.",
    IterationCategory.COLOR_CHANGE: "Modified fillStyle/backgroundColor/CSS color values to match the requested colors.",
    IterationCategory.BIGGER: "Increased width/height/radius/scale values for the target objects.",
    IterationCategory.SMALLER: "Decreased width/height/radius/scale values for the target objects.",
    IterationCategory.BACKGROUND: "Changed the canvas background color or CSS background of the game container.",
    IterationCategory.ADD_SOUND: (
        "Added Web Audio API sound effects (beeps, explosions, jumps) using oscillator and gain nodes."
    ),
    IterationCategory.ADD_SCORE: (
        "Added a score variable, increment logic on events, and HUD display with ctx.fillText or DOM element."
    ),
    IterationCategory.ADD_LIVES: "Added lives/health counter, damage logic, death/respawn, and HUD hearts or health bar.",
    IterationCategory.ADD_POWERUP: (
        "Added power-up objects with spawn logic, collection detection, and temporary buff effects."
    ),
    IterationCategory.ADD_ENEMIES: (
        "Added enemy array with spawn function, movement AI (patrol/chase), and collision with player."
    ),
    IterationCategory.ADD_LEVELS: "Added level counter, difficulty progression, and level-complete transition screen.",
    IterationCategory.ADD_EFFECTS: "Added particle system with spawn/update/draw functions for explosions or trails.",
    IterationCategory.MORE_FUN: "Added visual juice: screen shake, particles, combo counter, or surprise elements.",
    IterationCategory.FIX_JUMP: (
        "Fixed jump mechanics: ensured onGround check, proper gravity reset, and collision with platforms."
    ),
    IterationCategory.FIX_COLLISION: "Fixed collision detection: corrected AABB overlap check or boundary conditions.",
    IterationCategory.FIX_MOVEMENT: (
        "Fixed movement: ensured key listeners are attached, velocity is applied in game loop, "
        "and boundaries are checked."
    ),
}


def detect_iteration_pattern(prompt: Optional[str]) -> Optional[IterationCategory]:
    if not prompt:
        return None
    for pattern, category in ITERATION_PATTERNS:
        if pattern.search(prompt):
            return category
    return None


def summarize_change(prompt: str, category: IterationCategory) -> str:
    """One-line description of the kind of edit made for ``category``."""
    if category == IterationCategory.FIX_BUG:
        return (
            f'Fixed the bug described in: "{prompt[:100]}". '
            "Checked event listeners, game loop, and collision logic."
        )
    summary = CHANGE_SUMMARIES.get(category)
    if summary is None:
        return f'Applied "{IterationCategory(category).value}" changes as requested: "{prompt[:80]}"'
    return summary


class PatternHint(NamedTuple):
    hint: str
    success_count: int


PatternKey = Tuple[IterationCategory, str, Backend]


class PatternCache:
    def __init__(
        self,
        ttl_s: float = 4 * 3600.0,
        max_size: int = 200,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_s = ttl_s
        self.max_size = max_size
        self.clock = clock
        self._entries: Dict[PatternKey, PatternEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _key(category: IterationCategory, genre: Optional[str], model: Backend) -> PatternKey:
        return (IterationCategory(category), genre or "unknown", Backend(model))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_hint(
        self, category: Optional[IterationCategory], genre: Optional[str], model: Backend
    ) -> Optional[PatternHint]:
        if not category:
            return None
        key = self._key(category, genre, model)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if self.clock() - entry.last_updated >= self.ttl_s:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            hint = PatternHint(entry.hint, entry.success_count)

        logger.info("Pattern cache hit: %s (%s past successes)", key[0].value, hint.success_count)
        return hint

    def store_success(
        self,
        category: Optional[IterationCategory],
        genre: Optional[str],
        model: Backend,
        prompt: str,
        hint: str,
    ) -> None:
        if not category:
            return
        key = self._key(category, genre, model)
        with self._lock:
            now = self.clock()
            existing = self._entries.get(key)
            if existing is not None:
                existing.hint = hint
                existing.success_count += 1
                existing.last_updated = now
                existing.last_prompt = prompt
            else:
                if len(self._entries) >= self.max_size:
                    stalest = min(self._entries, key=lambda k: self._entries[k].last_updated)
                    del self._entries[stalest]
                self._entries[key] = PatternEntry(hint=hint, last_updated=now, last_prompt=prompt)

        logger.info("Pattern cached: %s for %s/%s", key[0].value, key[1], key[2].value)

    def stats(self) -> Dict[str, object]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "entries": len(self._entries),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": f"{self.hits / total * 100:.1f}%" if total else "0%",
            }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("Pattern cache cleared")
