"""Command line entry point: one generation through the dual-backend engine."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

# Ensure the project root is on the import path when executed as a script.
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import hydra
from omegaconf import DictConfig, OmegaConf

from duoforge.config import CacheConfig, EngineConfig
from duoforge.llm_utils import UpstreamError
from duoforge.models import Backend, GenerationRequest, GenerationResult, Mode
from duoforge.orchestrator import GameOrchestrator, build_orchestrator


def read_file_content(filepath: Optional[str]) -> Optional[str]:
    """Read a UTF-8 text file; ``None`` when no path is given."""
    if not filepath:
        return None
    try:
        with open(filepath, "r", encoding="utf-8") as handle:
            return handle.read()
    except FileNotFoundError:
        print(f"❌ Error: file not found: '{filepath}'")
        sys.exit(1)


def build_request(cfg: DictConfig) -> GenerationRequest:
    request_cfg = cfg.request
    last_model = request_cfg.get("last_model")
    return GenerationRequest(
        prompt=request_cfg.prompt or "",
        current_code=read_file_content(request_cfg.get("code_file")),
        mode=Mode(request_cfg.get("mode") or "default"),
        last_model_used=Backend(last_model) if last_model else None,
        debug_attempt=int(request_cfg.get("debug_attempt") or 0),
        accounting_id=request_cfg.get("accounting_id"),
    )


async def run_once(orchestrator: GameOrchestrator, request: GenerationRequest) -> GenerationResult:
    try:
        return await orchestrator.generate(request)
    finally:
        if orchestrator.usage_recorder is not None:
            await orchestrator.usage_recorder.drain()


@hydra.main(config_path="../configs", config_name="config", version_base=None)
def main(cfg: DictConfig) -> None:
    """Hydra-driven execution entry point."""
    print("\n" + "=" * 70)
    print("🎮 DUOFORGE – DUAL-MODEL GAME GENERATION")
    print("=" * 70)
    print(OmegaConf.to_yaml(cfg.engine))

    engine_config = EngineConfig()
    engine_config.update_from_config(cfg)
    cache_config = CacheConfig.from_omegaconf(cfg.get("cache"))

    request = build_request(cfg)
    if not request.prompt.strip():
        print("❌ Error: request.prompt is empty.")
        sys.exit(1)

    orchestrator = build_orchestrator(engine_config, cache_config)
    if not orchestrator.secondary_available:
        print(f"⚠️ No {Backend.OPENAI.value} API key configured, every mode runs on {Backend.GEMINI.value}")

    try:
        result = asyncio.run(run_once(orchestrator, request))
    except UpstreamError as exc:
        print(f"\n❌ Generation failed: {exc}")
        sys.exit(1)

    print(f"\n🤖 {result.model_used.value}: {result.response}")
    print(f"   cache hit: {result.is_cache_hit} | truncated: {result.was_truncated} | code: {bool(result.code)}")
    if result.debug_info is not None:
        print(f"   debug attempt {result.debug_info.attempts} on {result.debug_info.final_model.value}")
    if result.alternate_response is not None:
        print(f"\n🔍 Review from {result.alternate_response.model_used.value}:\n{result.alternate_response.response}")

    output_file = cfg.request.get("output_file")
    if result.code and output_file:
        Path(output_file).write_text(result.code, encoding="utf-8")
        print(f"\n💾 Game written to {output_file}")

    summary = getattr(orchestrator.usage_recorder.sink, "summary", None)
    if callable(summary):
        print("\n📊 Usage:")
        print(json.dumps(summary(), indent=2))


if __name__ == "__main__":
    main()
