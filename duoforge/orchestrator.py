"""Dual-backend routing engine.

:class:`GameOrchestrator` turns one :class:`GenerationRequest` into one
:class:`GenerationResult`: it resolves the mode, serves exact repeats from the
response cache, dispatches to the handler for the mode (single model, debug
escalation, ask-the-other-backend, or the generate/critique/polish pipeline)
and stores what came back.  Cache, pattern-hint and reference lookups are
best-effort; adapter failures propagate to the caller.
"""

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from duoforge.caching import (
    IterationCategory,
    PatternCache,
    PatternHint,
    ResponseCache,
    detect_iteration_pattern,
    generate_cache_key,
    summarize_change,
)
from duoforge.config import CacheConfig, EngineConfig
from duoforge.extraction import (
    ContinuationRecovery,
    clean_assistant_message,
    extract_code,
    extract_partial_code,
    is_truncated,
)
from duoforge.llm_utils import ModelAdapter, build_adapters, calculate_max_tokens, trim_history
from duoforge.models import (
    AlternateResponse,
    Backend,
    CacheEntry,
    DebugInfo,
    GameConfig,
    GenerationRequest,
    GenerationResult,
    Mode,
    Role,
    Turn,
)
from duoforge.prompts import (
    DefaultPromptAssembler,
    NullReferenceResolver,
    PromptAssembler,
    ReferenceBundle,
    ReferenceResolver,
    build_critique_request,
    build_debug_prompt,
    build_fresh_eyes_prompt,
    build_handoff_prompt,
    build_pattern_hint,
    build_polish_request,
    detect_genre,
    get_personality,
    is_new_game,
)
from duoforge.routing import resolve_mode, resolve_target_model
from duoforge.usage import GenerationEvent, UsageLedger, UsageRecorder

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    mode: Mode
    target: Backend
    cache_key: str


Handler = Callable[[GenerationRequest, RequestContext], Awaitable[GenerationResult]]


class GameOrchestrator:
    def __init__(
        self,
        adapters: Dict[Backend, ModelAdapter],
        engine_config: EngineConfig,
        response_cache: ResponseCache,
        pattern_cache: PatternCache,
        cache_config: Optional[CacheConfig] = None,
        prompt_assembler: Optional[PromptAssembler] = None,
        reference_resolver: Optional[ReferenceResolver] = None,
        usage_recorder: Optional[UsageRecorder] = None,
    ) -> None:
        self.adapters = adapters
        self.engine_config = engine_config
        self.cache_config = cache_config or CacheConfig()
        self.response_cache = response_cache
        self.pattern_cache = pattern_cache
        self.prompt_assembler = prompt_assembler or DefaultPromptAssembler()
        self.reference_resolver = reference_resolver or NullReferenceResolver()
        self.usage_recorder = usage_recorder
        self.continuation = ContinuationRecovery(
            adapters[Backend.GEMINI],
            max_output_tokens=engine_config.continuation_max_tokens,
        )

        self._handlers: Dict[Mode, Handler] = {
            Mode.DEFAULT: self._handle_single,
            Mode.GEMINI: self._handle_single,
            Mode.OPENAI: self._handle_single,
            Mode.CREATIVE: self._handle_single,
            Mode.DEBUG: self._handle_debug,
            Mode.ASK_OTHER: self._handle_ask_other,
            Mode.CRITIC: self._handle_critic,
        }
        missing = set(Mode) - set(self._handlers)
        if missing:
            raise RuntimeError("No handler for modes: " + ", ".join(sorted(m.value for m in missing)))

    @property
    def secondary_available(self) -> bool:
        adapter = self.adapters.get(Backend.OPENAI)
        return adapter is not None and adapter.is_available()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        mode = resolve_mode(request.mode, request.prompt, request.last_model_used, self.secondary_available)
        target = self._debug_target(request) if mode == Mode.DEBUG else resolve_target_model(
            mode, request.last_model_used
        )
        logger.info(
            "Mode %r -> %s | has_code=%s | history=%s",
            mode.value,
            target.value,
            bool(request.current_code),
            len(request.history),
        )

        cache_key = generate_cache_key(
            request.prompt,
            request.current_code,
            target,
            mode,
            fingerprint_threshold=self.cache_config.fingerprint_threshold,
        )
        cached = self._safe_cache_get(cache_key)
        if cached is not None:
            return self._from_cache(cached, mode, request)

        context = RequestContext(mode=mode, target=target, cache_key=cache_key)
        result = await self._handlers[mode](request, context)

        if not result.was_truncated:
            self._safe_cache_set(cache_key, result)
        self._record_generation(result, request.accounting_id)
        return result

    def _from_cache(self, cached: CacheEntry, mode: Mode, request: GenerationRequest) -> GenerationResult:
        debug_info = None
        if mode == Mode.DEBUG:
            debug_info = DebugInfo(attempts=request.debug_attempt + 1, final_model=cached.model)
        return GenerationResult(
            response=cached.response,
            code=cached.code,
            model_used=cached.model,
            is_cache_hit=True,
            debug_info=debug_info,
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_single(self, request: GenerationRequest, context: RequestContext) -> GenerationResult:
        return await self._run_single(request, message=request.prompt, target=context.target)

    def _debug_target(self, request: GenerationRequest) -> Backend:
        attempt = request.debug_attempt + 1
        if attempt <= self.engine_config.debug_max_primary_attempts or not self.secondary_available:
            return Backend.GEMINI
        return Backend.OPENAI

    async def _handle_debug(self, request: GenerationRequest, context: RequestContext) -> GenerationResult:
        attempt = request.debug_attempt + 1
        logger.info("Debug mode, attempt %s/%s", attempt, self.engine_config.debug_max_primary_attempts)

        if context.target == Backend.GEMINI:
            message = build_debug_prompt(request.prompt)
        else:
            logger.info("Primary debug attempts exhausted, escalating to %s", context.target.value)
            message = build_fresh_eyes_prompt(request.prompt)

        result = await self._run_single(request, message=message, target=context.target)
        result.debug_info = DebugInfo(attempts=attempt, final_model=context.target)
        return result

    async def _handle_ask_other(self, request: GenerationRequest, context: RequestContext) -> GenerationResult:
        previous = request.last_model_used.value if request.last_model_used else "unknown"
        logger.info("Ask-other: switching from %s to %s", previous, context.target.value)
        message = build_handoff_prompt(request.prompt, context.target)
        return await self._run_single(request, message=message, target=context.target)

    async def _handle_critic(self, request: GenerationRequest, context: RequestContext) -> GenerationResult:
        logger.info("Critic mode: generate -> review -> polish")

        logger.info("Step 1/3: %s generating initial version", Backend.GEMINI.value)
        draft = await self._run_single(request, message=request.prompt, target=Backend.GEMINI)
        if not draft.code:
            logger.warning("Initial version has no code, skipping review")
            return draft

        logger.info("Step 2/3: %s reviewing", Backend.OPENAI.value)
        critique = await self._run_single(
            request,
            message=build_critique_request(request.prompt, draft.code),
            target=Backend.OPENAI,
            standalone=True,
            recover_truncation=False,
        )

        logger.info("Step 3/3: %s polishing with the review", Backend.GEMINI.value)
        polished = await self._run_single(
            request,
            message=build_polish_request(request.prompt, draft.code, critique.response, critique.code),
            target=Backend.GEMINI,
            standalone=True,
        )

        primary = polished if polished.code else draft
        if primary is draft:
            logger.warning("Polish produced no code, keeping the initial version")
        return GenerationResult(
            response=primary.response,
            code=primary.code,
            model_used=Backend.GEMINI,
            was_truncated=False,
            alternate_response=AlternateResponse(
                response=critique.response,
                code=critique.code,
                model_used=Backend.OPENAI,
            ),
            reference_sources=draft.reference_sources,
        )

    # ------------------------------------------------------------------
    # Single model call
    # ------------------------------------------------------------------

    async def _run_single(
        self,
        request: GenerationRequest,
        message: str,
        target: Backend,
        standalone: bool = False,
        recover_truncation: bool = True,
    ) -> GenerationResult:
        """One call to ``target``.

        ``message`` is what the backend sees as the latest user turn; genre and
        iteration category come from the user's own words in ``request.prompt``.
        ``standalone`` calls (the review and polish steps) carry no history,
        survey, image or current artifact. With ``recover_truncation`` off a cut-off
        reply is reported as truncated without a continuation call.
        """
        current_code = None if standalone else request.current_code
        config = None if standalone else request.config
        history: List[Turn] = [] if standalone else list(request.history)
        image = None if standalone else request.image

        genre = self._resolve_genre(request.prompt, request.config)
        category = detect_iteration_pattern(request.prompt)
        modifying = bool(current_code)

        hint_text = ""
        if category and modifying:
            hint = self._safe_pattern_hint(category, genre, target)
            if hint is not None:
                hint_text = build_pattern_hint(category.value, hint.hint, hint.success_count)

        references = await self._safe_resolve_references(request.prompt, genre, config, is_new_game(current_code))
        if references.sources:
            logger.info("Using references: %s", ", ".join(references.sources))

        assembled = self.prompt_assembler.assemble(current_code, config, genre, references.text + hint_text)
        system_parts = [f"{get_personality(target)}\n\n{assembled.cacheable}", assembled.per_request]
        max_tokens = calculate_max_tokens(
            current_code,
            base_tokens=self.engine_config.base_tokens,
            hard_max=self.engine_config.max_tokens,
        )
        turns = trim_history(
            [*history, Turn(role=Role.USER, content=message, image=image)],
            cap=self.engine_config.history_cap,
        )

        reply = await self.adapters[target].send(
            system_parts, turns, max_tokens, accounting_id=request.accounting_id
        )
        text = reply.text

        code = extract_code(text)
        was_truncated = False
        if code is None and is_truncated(text):
            logger.warning("%s response truncated", target.value)
            partial = extract_partial_code(text) if recover_truncation else None
            if partial:
                logger.info("Attempting continuation on %s", Backend.GEMINI.value)
                code = await self.continuation.attempt(partial, accounting_id=request.accounting_id)
            was_truncated = code is None

        if code and category and modifying:
            self._safe_store_pattern(
                category, genre, target, request.prompt, summarize_change(request.prompt, category)
            )

        return GenerationResult(
            response=clean_assistant_message(text, was_truncated),
            code=code,
            model_used=target,
            was_truncated=was_truncated,
            reference_sources=references.sources,
        )

    @staticmethod
    def _resolve_genre(prompt: str, config: Optional[GameConfig]) -> Optional[str]:
        if config is not None and config.game_type:
            return config.game_type
        return detect_genre(prompt)

    # ------------------------------------------------------------------
    # Best-effort helpers
    # ------------------------------------------------------------------

    def _safe_cache_get(self, key: str) -> Optional[CacheEntry]:
        try:
            return self.response_cache.get(key)
        except Exception as exc:
            logger.warning("Response cache lookup failed: %s", exc)
            return None

    def _safe_cache_set(self, key: str, result: GenerationResult) -> None:
        try:
            self.response_cache.set(
                key, result.response, result.code, result.model_used, was_truncated=result.was_truncated
            )
        except Exception as exc:
            logger.warning("Failed to store response in cache: %s", exc)

    def _safe_pattern_hint(
        self, category: IterationCategory, genre: Optional[str], target: Backend
    ) -> Optional[PatternHint]:
        try:
            return self.pattern_cache.get_hint(category, genre, target)
        except Exception as exc:
            logger.warning("Pattern hint lookup failed: %s", exc)
            return None

    def _safe_store_pattern(
        self, category: IterationCategory, genre: Optional[str], target: Backend, prompt: str, hint: str
    ) -> None:
        try:
            self.pattern_cache.store_success(category, genre, target, prompt, hint)
        except Exception as exc:
            logger.warning("Failed to store pattern success: %s", exc)

    async def _safe_resolve_references(
        self, prompt: str, genre: Optional[str], config: Optional[GameConfig], is_new: bool
    ) -> ReferenceBundle:
        try:
            return await self.reference_resolver.resolve(prompt, genre, config, is_new)
        except Exception as exc:
            logger.warning("Reference resolution failed (continuing without): %s", exc)
            return ReferenceBundle()

    def _record_generation(self, result: GenerationResult, accounting_id: Optional[str]) -> None:
        if self.usage_recorder is None:
            return
        self.usage_recorder.record(
            GenerationEvent(
                backend=result.model_used,
                has_code=bool(result.code),
                was_truncated=result.was_truncated,
                accounting_id=accounting_id,
            )
        )

    def stats(self) -> Dict[str, object]:
        return {
            "response_cache": self.response_cache.stats(),
            "pattern_cache": self.pattern_cache.stats(),
        }


def build_orchestrator(
    engine_config: Optional[EngineConfig] = None,
    cache_config: Optional[CacheConfig] = None,
    usage_sink=None,
    adapters: Optional[Dict[Backend, ModelAdapter]] = None,
    prompt_assembler: Optional[PromptAssembler] = None,
    reference_resolver: Optional[ReferenceResolver] = None,
    clock: Callable[[], float] = time.time,
) -> GameOrchestrator:
    """Wire adapters, caches and usage accounting into a ready orchestrator."""
    engine_config = engine_config or EngineConfig()
    cache_config = cache_config or CacheConfig()

    if usage_sink is None:
        usage_sink = UsageLedger(
            pricing={
                Backend.GEMINI: (engine_config.gemini.input_price_per_m, engine_config.gemini.output_price_per_m),
                Backend.OPENAI: (engine_config.openai.input_price_per_m, engine_config.openai.output_price_per_m),
            }
        )
    usage_recorder = UsageRecorder(usage_sink)

    if adapters is None:
        gemini, openai = build_adapters(engine_config, usage_recorder)
        adapters = {Backend.GEMINI: gemini, Backend.OPENAI: openai}

    return GameOrchestrator(
        adapters=adapters,
        engine_config=engine_config,
        response_cache=ResponseCache(
            ttl_s=cache_config.response_ttl_s, max_size=cache_config.response_max_size, clock=clock
        ),
        pattern_cache=PatternCache(
            ttl_s=cache_config.pattern_ttl_s, max_size=cache_config.pattern_max_size, clock=clock
        ),
        cache_config=cache_config,
        prompt_assembler=prompt_assembler,
        reference_resolver=reference_resolver,
        usage_recorder=usage_recorder,
    )
