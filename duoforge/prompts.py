"""Prompt text for both backends plus the pluggable prompt/reference seams."""

from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from duoforge.models import Backend, GameConfig

# ==================== BASE RULES (cacheable) ====================

SYSTEM_PROMPT = """You are a super friendly helper at a kids' game studio! You help kids create amazing games, websites, and apps just by chatting with you.

MOST IMPORTANT RULES:
1. Talk to kids like a fun, encouraging friend - NOT like a teacher or programmer
2. NEVER show code, programming terms, or technical language in your responses to kids
3. Keep your text responses SHORT and SIMPLE (2-3 sentences max)
4. Use emojis to be fun and friendly! 🎉✨🚀
5. Be SUPER encouraging - celebrate their ideas!
6. NEVER include blood, gore, or realistic violence - cartoon action games ARE allowed!

OUTPUT FORMAT - CRITICAL (the preview only updates when you do this):
- When you CREATE or MODIFY the project, you MUST include the COMPLETE full HTML in your response.
- Put your short friendly message first (1-2 sentences). Then on a new line, put exactly: ```html
- Then paste the ENTIRE HTML document from <!DOCTYPE html> through </html> (nothing less).
- Then close with ``` on its own line.
- If the kid asked for a change, output the FULL updated game with that change, every time.

GAME MECHANICS:
- ALWAYS connect keyboard input to ACTUAL visual movement, not just variable updates
- For racing games: move the SCENERY toward the camera to simulate driving
- For platformers: move the player sprite and check real collision with platforms
- ALWAYS provide visual feedback for collisions

CODE COMPLETENESS:
- ALWAYS write complete, working code - never leave placeholders or "..."
- Every function must have a proper closing brace
- Make sure requestAnimationFrame loops actually call themselves

BUILD INCREMENTALLY:
- For complex games, start with a SIMPLE working version first
- Then tell them: "Here's a great start! Ask me to add more features!"

USING REFERENCE CODE (when provided in the context):
- If you see a "REFERENCE CODE LIBRARY" section, use it as your STARTING POINT
- ADAPT it to what the kid asked for; never mention it to the kid
"""

MODIFICATION_SAFETY_RULES = """
MODIFYING AN EXISTING GAME - CRITICAL PRESERVATION RULES:
- Before writing code, inventory EVERY existing feature (objects, UI, mechanics, listeners, effects, audio)
- After writing, verify every item is still present; add back anything missing
- ADD by INSERTING new code sections; do NOT reorganize or restructure existing code
- NEVER remove an existing feature unless the kid EXPLICITLY asked to remove it
- Keep all existing variable names, function names and the existing game loop intact
"""

PLATFORMER_SAFETY_RULES = """
PLATFORMER GAME (Phaser) - CRITICAL RULES:
- The player sprite MUST exist and have arcade physics enabled
- Platforms MUST be in a staticGroup with a collider against the player
- Jumping MUST check player.body.touching.down or player.body.onFloor()
- DO NOT remove physics.add.collider() calls or setCollideWorldBounds(true)
"""

PHASER_GAME_RULES = """
PHASER 2D GAME - IMPORTANT RULES:
- Generate textures procedurally in preload(); NEVER reference external image files
- Use arcade physics for movement and collision
- Clean up off-screen objects by checking bounds and calling destroy()
"""

THREE_D_GAME_RULES = """
3D GAME - CONTROL AND CAMERA RULES:
- Use ARROW KEYS for movement and call e.preventDefault() for arrows and Space
- Movement MUST be relative to the camera yaw
- Horizontal look MUST allow a full 360 degrees; only pitch may be clamped
"""

# ==================== PERSONALITIES ====================

PROFESSOR_WRAPPER = """
YOU ARE "PROFESSOR PIXEL" 🎓

You are Professor Pixel, a super patient, encouraging coding teacher for kids ages 8-14.
You explain *why* things work in language a 10-year-old can understand.

YOUR PERSONALITY:
- Patient and warm, never frustrated
- You celebrate EVERY win, no matter how small
- You're structured: you build things in order, one feature at a time
- You're the "safe pair of hands": reliable, thorough, catches edge cases

WHEN GENERATING GAMES:
- Get the basics working FIRST, then add features
- Always include controls instructions in the game itself
- ALWAYS output the COMPLETE HTML code, never only a message
- When a kid asks for a change, your code MUST actually reflect that change
"""

VIBE_BUDDY_WRAPPER = """
YOU ARE "VIBE BUDDY" 🚀🔥😎

You are Vibe Buddy, the FUNNEST game-building buddy EVER. You're like a super cool
12-year-old who's OBSESSED with making games.

YOUR PERSONALITY:
- HYPE MACHINE: "YOOO that's SICK!" 🔥
- You add silly surprises: easter eggs, funny sound effects, secret messages
- You're the "creative chaos" friend: quick ideas, wild remixes, unexpected twists
- Keep it kid-safe: cartoon/arcade style, no blood or gore

CODE OUTPUT RULES (STRICT):
- You MUST output the COMPLETE, FULL HTML code with every response
- If a kid asks for a change, your code MUST be DIFFERENT from the current code
- Output the full HTML document from <!DOCTYPE html> to </html>, no partial snippets
"""

PERSONALITIES = {
    Backend.GEMINI: PROFESSOR_WRAPPER,
    Backend.OPENAI: VIBE_BUDDY_WRAPPER,
}

PERSONA_NAMES = {
    Backend.GEMINI: "Professor Pixel",
    Backend.OPENAI: "Vibe Buddy",
}


def get_personality(backend: Backend) -> str:
    return PERSONALITIES[Backend(backend)]


# ==================== CRITIC PIPELINE ====================

CRITIC_PROMPT = """
You are Vibe Buddy in CRITIC MODE 🔍🔥

Professor Pixel just generated a game for a kid. Your job:

1. BUG CHECK: look for things that would break the game 🐛
   (missing collision detection, game loop not starting, controls not working, score not updating)
2. FUN CHECK: suggest 2-3 improvements (visual feedback, juice, an easter egg) 🎮
3. SAFETY CHECK: make sure it's kid-appropriate ✅

OUTPUT FORMAT:
- List bugs found (if any) with fixes
- List 2-3 fun improvements with emojis
- If the game is solid, say "SHIP IT! 🚀" and suggest ONE cool addition
- Include the FULL corrected/improved HTML code if you made changes
"""

POLISH_PROMPT = """
You are Professor Pixel in POLISH MODE ✨

Vibe Buddy reviewed the game code and found some issues or suggested improvements.
Your job is to:

1. Fix any bugs Vibe Buddy identified
2. Incorporate the best fun suggestions (if they're safe and appropriate)
3. Make sure the code is clean and complete
4. Ensure the game works perfectly on first play

Keep the kid's original vision intact. Output the COMPLETE updated HTML code.
"""


def build_critique_request(prompt: str, code: str) -> str:
    return (
        f"{CRITIC_PROMPT}\n\nHere is the game code from Professor Pixel:\n```html\n{code}\n```\n\n"
        f'The kid originally asked: "{prompt}"\n\nReview it and provide your critique + improved version!'
    )


def build_polish_request(prompt: str, code: str, critique: str, critique_code: Optional[str] = None) -> str:
    suggested = f"Vibe Buddy's suggested code:\n```html\n{critique_code}\n```" if critique_code else ""
    return (
        f'{POLISH_PROMPT}\n\nOriginal kid request: "{prompt}"\n\n'
        f"Your original code:\n```html\n{code}\n```\n\n"
        f"Vibe Buddy's review:\n{critique}\n\n{suggested}\n\n"
        "Please produce the final polished version with improvements incorporated."
    )


# ==================== DEBUG AND HAND-OFF FRAMINGS ====================


def build_debug_prompt(prompt: str) -> str:
    return (
        f'The kid says something isn\'t working: "{prompt}"\n\n'
        "Please carefully debug the current code. Check for:\n"
        "1. Missing event listeners\n2. Broken collision detection\n3. Game loop issues\n"
        "4. Off-by-one errors\n5. Variables used before initialization\n\n"
        "Fix the issues and output the COMPLETE corrected HTML."
    )


def build_fresh_eyes_prompt(prompt: str) -> str:
    return (
        "YO a kid's game is broken and Professor Pixel couldn't fix it! 😤\n\n"
        f'The kid said: "{prompt}"\n\n'
        "Here's the code that's NOT working. Find the bugs, fix them, and make it work!\n"
        "Be thorough, check EVERYTHING. Then output the COMPLETE fixed HTML."
    )


def build_handoff_prompt(prompt: str, target: Backend) -> str:
    """Frame ``prompt`` as a second opinion from ``target`` on the other backend's work."""
    target = Backend(target)
    previous = PERSONA_NAMES[target.other]
    if target == Backend.GEMINI:
        return (
            f"Professor Pixel here! 🎓 {previous} was working on this game and the kid wants a second opinion.\n\n"
            f'The kid says: "{prompt}"\n\n'
            "Please review the current code carefully, fix any issues, and explain what you changed "
            "in a simple, encouraging way."
        )
    return (
        f"YOOO Vibe Buddy jumping in! 🚀🔥 {previous} was building this game and the kid wants MY take on it!\n\n"
        f'The kid says: "{prompt}"\n\n'
        "Let me check this out, fix anything that's off, and add some extra sauce! 😎"
    )


# ==================== CONTINUATION ====================

CONTINUATION_SYSTEM_PROMPT = (
    "You were generating an HTML game and your response was cut off. Continue EXACTLY where you left off. "
    "Do NOT repeat any code that was already written. Do NOT add any explanation text - ONLY output the "
    "remaining code to complete the HTML document. The code must end with </html>. Make sure ALL features "
    "from the original game are still present in the remaining code."
)


def build_continuation_request(tail: str) -> str:
    return (
        "Continue this HTML code. Pick up EXACTLY where it ends. "
        f"Make sure all existing game features are preserved:\n\n{tail}"
    )


# ==================== PATTERN HINTS ====================


def build_pattern_hint(category: str, hint: str, success_count: int) -> str:
    return (
        f'\nPATTERN HINT (a similar "{category}" request was successful before, here\'s what worked):\n'
        f"{hint}\nApply a similar approach to the current game code. "
        f"This hint has worked {success_count} time(s) before.\n"
    )


# ==================== GENRES ====================

# Ordered: the first genre with a matching keyword wins.
GENRE_KEYWORDS = {
    "racing": ["racing", "race", "car game", "driving", "dodge cars", "racing game", "car racing", "drive"],
    "street-racing": [
        "street rod", "street racing", "drag race", "drag racing", "muscle car", "hot rod",
        "garage racing", "car customization", "tuning", "nitro",
    ],
    "shooter": [
        "shooter", "shooting", "space invaders", "shoot", "laser", "zombie", "space shooter",
        "shoot em up", "shmup", "bullet",
    ],
    "platformer": [
        "platformer", "jumping", "mario", "jump game", "side scroller", "platform game",
        "jumping game", "collect coins",
    ],
    "endless-runner": [
        "endless runner", "infinite runner", "temple run", "subway surfer", "run game", "auto runner", "runner game",
    ],
    "frogger": ["frogger", "crossing", "cross the road", "dodge traffic", "crossy", "road crossing"],
    "puzzle": [
        "puzzle", "matching", "memory game", "match 3", "tile", "memory", "card matching", "match game",
        "jigsaw", "wordle", "sudoku",
    ],
    "clicker": ["clicker", "clicking", "idle", "tapper", "cookie clicker", "idle game", "tap game", "incremental"],
    "rpg": [
        "rpg", "adventure", "quest", "explore", "adventure game", "story game", "exploration", "rpg game",
        "role playing",
    ],
    "fighting": [
        "fighting game", "fighter", "street fighter", "beat em up", "brawler", "boxing", "wrestling",
        "mortal kombat", "punch", "kick fight",
    ],
    "tower-defense": [
        "tower defense", "td game", "defend the base", "tower game", "place towers", "defense game",
        "castle defense",
    ],
    "card": [
        "card game", "cards", "solitaire", "poker", "blackjack", "uno", "card battle", "deck building",
        "trading card",
    ],
    "sports": ["sports", "soccer", "football", "basketball", "baseball", "tennis", "golf", "hockey", "bowling"],
    "simulation": ["simulation", "simulator", "tycoon", "farm", "city builder", "restaurant", "life sim"],
    "snake": ["snake", "snake game", "grow longer", "worm game", "slither"],
    "brick-breaker": ["breakout", "brick breaker", "brick", "arkanoid", "paddle ball", "paddle game", "break bricks"],
    "flappy": ["flappy", "flappy bird", "tap to fly", "fly through pipes", "bird game"],
    "bubble-shooter": ["bubble shooter", "bubble pop", "bubble game", "pop bubbles", "aim and shoot bubbles"],
    "falling-blocks": ["tetris", "falling blocks", "block stacking", "stack blocks", "falling pieces", "clear lines"],
    "rhythm": ["rhythm", "music game", "dance game", "beat game", "tap to the beat", "rhythm game", "guitar hero"],
    "pet-sim": [
        "pet simulator", "virtual pet", "pet game", "tamagotchi", "take care of pet", "feed pet", "pet sim",
    ],
}


def detect_genre(prompt: Optional[str]) -> Optional[str]:
    lower = (prompt or "").lower()
    for genre, keywords in GENRE_KEYWORDS.items():
        if any(keyword in lower for keyword in keywords):
            return genre
    return None


NEW_GAME_PLACEHOLDER = "Tell me what you want to create"


def is_new_game(current_code: Optional[str]) -> bool:
    """No artifact yet, or only the empty starter page."""
    return not current_code or NEW_GAME_PLACEHOLDER in current_code


# ==================== PLUGGABLE SEAMS ====================


@dataclass
class ReferenceBundle:
    text: str = ""
    sources: List[str] = field(default_factory=list)


@dataclass
class AssembledPrompt:
    cacheable: str
    per_request: str


class ReferenceResolver(Protocol):
    async def resolve(
        self, prompt: str, genre: Optional[str], config: Optional[GameConfig], is_new: bool
    ) -> ReferenceBundle:
        ...


class PromptAssembler(Protocol):
    def assemble(
        self,
        current_code: Optional[str],
        config: Optional[GameConfig],
        genre: Optional[str],
        reference_text: str,
    ) -> AssembledPrompt:
        ...


class NullReferenceResolver:
    """Resolver used when no reference library is wired in."""

    async def resolve(
        self, prompt: str, genre: Optional[str], config: Optional[GameConfig], is_new: bool
    ) -> ReferenceBundle:
        return ReferenceBundle()


class DefaultPromptAssembler:
    """Base rules as the cacheable part; survey, genre rules, references and the current game per request."""

    def __init__(self, system_prompt: str = SYSTEM_PROMPT) -> None:
        self.system_prompt = system_prompt

    @staticmethod
    def _config_section(config: GameConfig) -> str:
        lines = [
            "GAME CONFIG (from the kid's survey answers - use these to personalize the game):",
            f"- Game Type: {config.game_type}",
            f"- Dimension: {config.dimension or '2d'}",
            f"- Theme/Setting: {config.theme}",
            f"- Player Character: {config.character}",
            f"- Obstacles/Enemies: {config.obstacles}",
            f"- Visual Style: {config.visual_style}",
        ]
        if config.custom_notes:
            lines.append(f"- Custom Notes: {config.custom_notes}")
        return "\n".join(lines)

    def assemble(
        self,
        current_code: Optional[str],
        config: Optional[GameConfig],
        genre: Optional[str],
        reference_text: str,
    ) -> AssembledPrompt:
        code = current_code or ""
        parts: List[str] = []

        if config is not None:
            parts.append(self._config_section(config))

        if any(marker in code for marker in ("Phaser.Game", "Phaser.AUTO", "phaser.min.js")):
            parts.append(PHASER_GAME_RULES)

        platformer_markers = ("generateInitialLevel", "createPlatform", "setGravityY", "touching.down")
        if genre == "platformer" or any(marker in code for marker in platformer_markers):
            parts.append(PLATFORMER_SAFETY_RULES)

        wants_3d = config is not None and (
            config.dimension == "3d" or "3d" in (config.game_type or "").lower()
        )
        if wants_3d or any(marker in code for marker in ("THREE.Scene", "WebGLRenderer", "three.min.js")):
            parts.append(THREE_D_GAME_RULES)

        if reference_text:
            parts.append(reference_text)

        if current_code:
            parts.append(MODIFICATION_SAFETY_RULES)
            parts.append(
                "CURRENT PROJECT (for your reference only - NEVER mention this to the kid):\n"
                f"{current_code}\n\n"
                "When they ask for changes, update this existing project. Keep what they already have and add to it!"
            )

        return AssembledPrompt(cacheable=self.system_prompt, per_request="\n".join(parts))
