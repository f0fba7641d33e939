import asyncio
from types import SimpleNamespace

import pytest

from duoforge.caching import IterationCategory, summarize_change
from duoforge.config import CacheConfig, EngineConfig
from duoforge.extraction import TRUNCATED_MESSAGE
from duoforge.llm_utils import UpstreamFailure
from duoforge.models import Backend, GameConfig, GenerationRequest, Mode, ModelResult, Role, Turn
from duoforge.orchestrator import build_orchestrator
from duoforge.prompts import CONTINUATION_SYSTEM_PROMPT, PROFESSOR_WRAPPER, ReferenceBundle, VIBE_BUDDY_WRAPPER
from duoforge.usage import GenerationEvent


class FakeAdapter:
    def __init__(self, backend, replies=(), available=True, log=None):
        self.backend = backend
        self.replies = list(replies)
        self.available = available
        self.log = log if log is not None else []
        self.calls = []

    def is_available(self):
        return self.available

    async def send(self, system_parts, messages, max_output_tokens, accounting_id=None):
        self.calls.append(
            SimpleNamespace(
                system_parts=list(system_parts),
                messages=list(messages),
                max_output_tokens=max_output_tokens,
                accounting_id=accounting_id,
            )
        )
        self.log.append(self.backend)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ModelResult(text=reply, backend=self.backend)


class StaticReferences:
    def __init__(self, bundle=None, error=None):
        self.bundle = bundle or ReferenceBundle()
        self.error = error
        self.calls = []

    async def resolve(self, prompt, genre, config, is_new):
        self.calls.append((prompt, genre, is_new))
        if self.error is not None:
            raise self.error
        return self.bundle


def with_code(message, game):
    return f"{message}\n\n```html\n{game}\n```"


@pytest.fixture
def engine():
    config = EngineConfig()
    config.gemini.api_key = "g"
    config.openai.api_key = "o"
    config.debug_max_primary_attempts = 2
    config.history_cap = 12
    return config


@pytest.fixture
def setup(engine, clock):
    def _setup(gemini=(), openai=(), openai_available=True, sink=None, references=None):
        log = []
        gemini_adapter = FakeAdapter(Backend.GEMINI, gemini, log=log)
        openai_adapter = FakeAdapter(Backend.OPENAI, openai, available=openai_available, log=log)
        events = []
        orchestrator = build_orchestrator(
            engine,
            CacheConfig(),
            usage_sink=sink if sink is not None else events.append,
            adapters={Backend.GEMINI: gemini_adapter, Backend.OPENAI: openai_adapter},
            reference_resolver=references,
            clock=clock,
        )
        return SimpleNamespace(
            orchestrator=orchestrator,
            gemini=gemini_adapter,
            openai=openai_adapter,
            log=log,
            events=events,
        )

    return _setup


def generate(orchestrator, *requests):
    async def scenario():
        results = []
        for request in requests:
            results.append(await orchestrator.generate(request))
        await orchestrator.usage_recorder.drain()
        return results

    results = asyncio.run(scenario())
    return results if len(results) > 1 else results[0]


# --- single model and cache ---


def test_identical_requests_are_served_from_cache(setup, game_html):
    env = setup(gemini=[with_code("Ta-da! 🎮", game_html("Pong"))])
    request = GenerationRequest(prompt="make a pong game")

    first, second = generate(env.orchestrator, request, request)

    assert first.is_cache_hit is False
    assert second.is_cache_hit is True
    assert second.code == first.code == game_html("Pong")
    assert second.response == "Ta-da! 🎮"
    assert second.model_used == Backend.GEMINI
    assert len(env.gemini.calls) == 1
    assert env.openai.calls == []


def test_speed_up_on_existing_platformer_uses_and_updates_pattern_hint(setup, game_html):
    env = setup(gemini=[with_code("Zoom zoom! 🏃", game_html("Faster"))])
    patterns = env.orchestrator.pattern_cache
    patterns.store_success(IterationCategory.SPEED_UP, "platformer", Backend.GEMINI, "go faster", "Raised velocity.")

    result = generate(
        env.orchestrator,
        GenerationRequest(
            prompt="make it faster",
            current_code=game_html("Platformer"),
            config=GameConfig(game_type="platformer"),
        ),
    )

    assert result.model_used == Backend.GEMINI
    assert result.code == game_html("Faster")
    assert len(env.gemini.calls) == 1 and env.openai.calls == []
    cacheable, per_request = env.gemini.calls[0].system_parts
    assert cacheable.startswith(PROFESSOR_WRAPPER)
    assert "PATTERN HINT" in per_request and "Raised velocity." in per_request
    assert "CURRENT PROJECT" in per_request
    hint = patterns.get_hint(IterationCategory.SPEED_UP, "platformer", Backend.GEMINI)
    assert hint.success_count == 2
    assert hint.hint == summarize_change("make it faster", IterationCategory.SPEED_UP)


def test_pattern_hint_is_not_used_for_new_games(setup, game_html):
    env = setup(gemini=[with_code("Here!", game_html())])
    env.orchestrator.pattern_cache.store_success(
        IterationCategory.SPEED_UP, None, Backend.GEMINI, "faster", "Raised velocity."
    )

    generate(env.orchestrator, GenerationRequest(prompt="a fast game, faster than light"))

    assert "PATTERN HINT" not in env.gemini.calls[0].system_parts[1]
    hint = env.orchestrator.pattern_cache.get_hint(IterationCategory.SPEED_UP, None, Backend.GEMINI)
    assert hint.success_count == 1


def test_unrecoverable_truncation_is_reported_and_not_cached(setup):
    cut_off = "Here it comes! <script>let player = {x: 0"
    env = setup(gemini=[cut_off, cut_off])
    request = GenerationRequest(prompt="make a maze")

    first, second = generate(env.orchestrator, request, request)

    assert first.was_truncated is True
    assert first.code is None
    assert first.response == TRUNCATED_MESSAGE
    assert second.is_cache_hit is False
    assert len(env.gemini.calls) == 2
    assert [e.was_truncated for e in env.events if isinstance(e, GenerationEvent)] == [True, True]


def test_truncated_reply_is_completed_by_continuation(setup):
    partial_reply = "Building!\n```html\n<!DOCTYPE html>\n<html><body><script>\n" + "let a = 1;\n" * 40
    env = setup(gemini=[partial_reply, "</script></body></html>"])

    result = generate(env.orchestrator, GenerationRequest(prompt="make a maze"))

    assert result.was_truncated is False
    assert result.code.startswith("<!DOCTYPE html>") and result.code.endswith("</html>")
    assert env.gemini.calls[1].system_parts == [CONTINUATION_SYSTEM_PROMPT]


def test_rejected_continuation_is_reported_and_not_cached(setup):
    partial_reply = "Building!\n```html\n<!DOCTYPE html>\n<html><body><script>\n" + "let a = 1;\n" * 40
    env = setup(gemini=[partial_reply, "still going...", partial_reply, "more code"])
    request = GenerationRequest(prompt="make a maze")

    first, second = generate(env.orchestrator, request, request)

    assert first.was_truncated is True
    assert first.code is None
    assert first.response == TRUNCATED_MESSAGE
    assert second.is_cache_hit is False
    assert len(env.gemini.calls) == 4
    assert env.gemini.calls[1].system_parts == [CONTINUATION_SYSTEM_PROMPT]


def test_prose_only_reply_has_no_code(setup):
    env = setup(gemini=["What should your hero look like? 🦸"])

    result = generate(env.orchestrator, GenerationRequest(prompt="make a hero game"))

    assert result.code is None
    assert result.was_truncated is False
    assert result.response == "What should your hero look like? 🦸"


def test_creative_mode_uses_secondary_personality(setup, game_html):
    env = setup(openai=[with_code("YOOO 🔥", game_html())])

    result = generate(env.orchestrator, GenerationRequest(prompt="make it more fun", current_code=game_html("Old")))

    assert result.model_used == Backend.OPENAI
    assert env.openai.calls[0].system_parts[0].startswith(VIBE_BUDDY_WRAPPER)
    assert env.gemini.calls == []


def test_modes_needing_secondary_fall_back_when_unavailable(setup, game_html):
    env = setup(gemini=[with_code("Done!", game_html())], openai_available=False)

    result = generate(env.orchestrator, GenerationRequest(prompt="remix it", mode=Mode.CREATIVE))

    assert result.model_used == Backend.GEMINI
    assert env.openai.calls == []


def test_history_is_trimmed_and_prompt_appended(setup, game_html):
    env = setup(gemini=[with_code("Done!", game_html())])
    history = [
        Turn(role=Role.USER if i % 2 == 0 else Role.ASSISTANT, content=f"turn {i}") for i in range(20)
    ]

    generate(env.orchestrator, GenerationRequest(prompt="add clouds", history=history, image="data:image/png;base64,aGk="))

    messages = env.gemini.calls[0].messages
    assert len(messages) == 14
    assert messages[0].content == "turn 0"
    assert messages[-1].content == "add clouds"
    assert messages[-1].image == "data:image/png;base64,aGk="


def test_upstream_failure_propagates_and_nothing_is_cached(setup, game_html):
    failure = UpstreamFailure(Backend.GEMINI, "503", "overloaded", attempts=2)
    env = setup(gemini=[failure, with_code("Ok!", game_html())])
    request = GenerationRequest(prompt="make snake")

    with pytest.raises(UpstreamFailure):
        generate(env.orchestrator, request)

    result = generate(env.orchestrator, request)
    assert result.is_cache_hit is False
    assert len(env.gemini.calls) == 2


# --- debug ---


def test_debug_stays_on_primary_for_early_attempts(setup, game_html):
    env = setup(gemini=[with_code("Fixed it!", game_html())])

    result = generate(
        env.orchestrator,
        GenerationRequest(prompt="the jump doesn't work", current_code=game_html("Old"), debug_attempt=1),
    )

    assert result.model_used == Backend.GEMINI
    assert result.debug_info.attempts == 2
    assert result.debug_info.final_model == Backend.GEMINI
    assert "carefully debug" in env.gemini.calls[0].messages[-1].content


def test_debug_escalates_to_secondary_once_primary_attempts_are_used(setup, game_html):
    env = setup(openai=[with_code("Squashed it! 🐛", game_html())])

    result = generate(
        env.orchestrator,
        GenerationRequest(prompt="still broken", mode=Mode.DEBUG, current_code=game_html("Old"), debug_attempt=2),
    )

    assert result.model_used == Backend.OPENAI
    assert result.debug_info.attempts == 3
    assert result.debug_info.final_model == Backend.OPENAI
    assert "couldn't fix it" in env.openai.calls[0].messages[-1].content
    assert env.gemini.calls == []


def test_debug_escalation_stays_on_primary_without_secondary(setup, game_html):
    env = setup(gemini=[with_code("Fixed!", game_html())], openai_available=False)

    result = generate(
        env.orchestrator,
        GenerationRequest(prompt="still broken", mode=Mode.DEBUG, current_code=game_html("Old"), debug_attempt=5),
    )

    assert result.debug_info.final_model == Backend.GEMINI
    assert env.openai.calls == []


# --- ask-other ---


@pytest.mark.parametrize(
    "last, expected, marker",
    [
        (Backend.GEMINI, Backend.OPENAI, "Vibe Buddy jumping in"),
        (Backend.OPENAI, Backend.GEMINI, "second opinion"),
        (None, Backend.GEMINI, "second opinion"),
    ],
)
def test_ask_other_switches_backend(setup, game_html, last, expected, marker):
    reply = [with_code("Here's my take!", game_html())]
    env = setup(gemini=reply if expected == Backend.GEMINI else [], openai=reply if expected == Backend.OPENAI else [])

    result = generate(
        env.orchestrator,
        GenerationRequest(prompt="add a boss", mode=Mode.ASK_OTHER, last_model_used=last, current_code=game_html()),
    )

    assert result.model_used == expected
    adapter = env.openai if expected == Backend.OPENAI else env.gemini
    assert marker in adapter.calls[0].messages[-1].content
    assert '"add a boss"' in adapter.calls[0].messages[-1].content


# --- critic ---


def test_critic_runs_generate_review_polish(setup, game_html):
    draft, suggestion, polished = game_html("Draft"), game_html("Suggestion"), game_html("Polished")
    env = setup(
        gemini=[with_code("Here's your shooter!", draft), with_code("All polished! ✨", polished)],
        openai=[with_code("SHIP IT! 🚀", suggestion)],
    )

    result = generate(env.orchestrator, GenerationRequest(prompt="make a space shooter", mode=Mode.CRITIC))

    assert env.log == [Backend.GEMINI, Backend.OPENAI, Backend.GEMINI]
    assert result.model_used == Backend.GEMINI
    assert result.code == polished
    assert result.response == "All polished! ✨"
    assert result.alternate_response.model_used == Backend.OPENAI
    assert result.alternate_response.response == "SHIP IT! 🚀"
    assert result.alternate_response.code == suggestion

    review_call = env.openai.calls[0]
    assert len(review_call.messages) == 1
    assert draft in review_call.messages[0].content
    assert "CURRENT PROJECT" not in review_call.system_parts[1]
    polish_request = env.gemini.calls[1].messages[0].content
    assert "SHIP IT!" in polish_request and suggestion in polish_request


def test_critic_stops_after_one_call_without_code(setup):
    env = setup(gemini=["Ooh! Should it be in space or underwater?"])

    result = generate(env.orchestrator, GenerationRequest(prompt="make a game", mode=Mode.CRITIC))

    assert env.log == [Backend.GEMINI]
    assert result.code is None
    assert result.alternate_response is None


def test_critic_keeps_draft_when_polish_has_no_code(setup, game_html):
    draft = game_html("Draft")
    env = setup(
        gemini=[with_code("First try!", draft), "I think it's already great!"],
        openai=["Looks solid, SHIP IT! 🚀"],
    )

    result = generate(env.orchestrator, GenerationRequest(prompt="make a snake game", mode=Mode.CRITIC))

    assert result.code == draft
    assert result.response == "First try!"
    assert result.was_truncated is False
    assert result.alternate_response.code is None


def test_cut_off_critique_does_not_trigger_continuation(setup, game_html):
    draft, polished = game_html("Draft"), game_html("Polished")
    cut_off_review = "Needs more juice!\n```html\n<!DOCTYPE html>\n<html><body><script>\n" + "let boost = 2;\n" * 40
    env = setup(
        gemini=[with_code("Here's your racer!", draft), with_code("Polished up! ✨", polished)],
        openai=[cut_off_review],
    )

    result = generate(env.orchestrator, GenerationRequest(prompt="make a racing game", mode=Mode.CRITIC))

    assert env.log == [Backend.GEMINI, Backend.OPENAI, Backend.GEMINI]
    assert all(call.system_parts != [CONTINUATION_SYSTEM_PROMPT] for call in env.gemini.calls)
    assert result.code == polished
    assert result.was_truncated is False
    assert result.alternate_response.code is None
    assert result.alternate_response.response == TRUNCATED_MESSAGE


def test_critic_without_secondary_runs_single_primary_call(setup, game_html):
    env = setup(gemini=[with_code("Done!", game_html())], openai_available=False)

    result = generate(env.orchestrator, GenerationRequest(prompt="make a snake game", mode=Mode.CRITIC))

    assert env.log == [Backend.GEMINI]
    assert result.alternate_response is None


# --- best-effort collaborators ---


def test_references_are_merged_into_context(setup, game_html):
    references = StaticReferences(ReferenceBundle(text="REFERENCE CODE LIBRARY: jump()", sources=["template:platformer"]))
    env = setup(gemini=[with_code("Boing!", game_html())], references=references)

    result = generate(env.orchestrator, GenerationRequest(prompt="a mario jumping game"))

    assert result.reference_sources == ["template:platformer"]
    assert "REFERENCE CODE LIBRARY: jump()" in env.gemini.calls[0].system_parts[1]
    assert references.calls == [("a mario jumping game", "platformer", True)]


def test_reference_failures_are_ignored(setup, game_html):
    env = setup(gemini=[with_code("Boing!", game_html())], references=StaticReferences(error=RuntimeError("down")))

    result = generate(env.orchestrator, GenerationRequest(prompt="a jumping game"))

    assert result.code == game_html()
    assert result.reference_sources == []


def test_cache_failures_are_ignored(setup, game_html):
    class BrokenCache:
        def get(self, key):
            raise RuntimeError("cache down")

        def set(self, *args, **kwargs):
            raise RuntimeError("cache down")

    env = setup(gemini=[with_code("Done!", game_html())])
    env.orchestrator.response_cache = BrokenCache()

    result = generate(env.orchestrator, GenerationRequest(prompt="make pong"))

    assert result.code == game_html()


def test_usage_sink_failures_never_affect_results(setup, game_html):
    def broken_sink(event):
        raise RuntimeError("ledger offline")

    env = setup(gemini=[with_code("Done!", game_html())], sink=broken_sink)

    result = generate(env.orchestrator, GenerationRequest(prompt="make pong"))

    assert result.code == game_html()


def test_generation_events_are_recorded(setup, game_html):
    env = setup(gemini=[with_code("Done!", game_html())])

    generate(env.orchestrator, GenerationRequest(prompt="make pong", accounting_id="kid-7"))

    assert env.events == [GenerationEvent(Backend.GEMINI, has_code=True, was_truncated=False, accounting_id="kid-7")]
    assert env.gemini.calls[0].accounting_id == "kid-7"
