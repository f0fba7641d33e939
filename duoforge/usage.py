"""Usage accounting kept off the generation critical path.

Adapters and the orchestrator report :class:`UsageEvent` and
:class:`GenerationEvent` records to a :class:`UsageRecorder`.  The recorder
hands each record to its sink as a background task on the running event loop,
so a slow or broken sink can never delay or fail a generation.  The default
sink, :class:`UsageLedger`, keeps process-local totals (tokens, estimated cost,
per-account and per-backend breakdowns, and how often each backend produced
code).
"""

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set, Union

from duoforge.models import Backend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageEvent:
    backend: Backend
    model_name: str
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    accounting_id: Optional[str] = None


@dataclass(frozen=True)
class GenerationEvent:
    backend: Backend
    has_code: bool
    was_truncated: bool = False
    accounting_id: Optional[str] = None


Event = Union[UsageEvent, GenerationEvent]


@dataclass
class _Totals:
    requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


@dataclass
class _GenerationCounts:
    total: int = 0
    with_code: int = 0
    truncated: int = 0


class UsageLedger:
    """In-memory aggregate of usage and generation outcomes."""

    def __init__(self, pricing: Optional[Dict[Backend, tuple]] = None) -> None:
        # pricing: backend -> (input USD per 1M tokens, output USD per 1M tokens)
        self.pricing = dict(pricing or {})
        self.totals = _Totals()
        self.by_account: Dict[str, _Totals] = {}
        self.by_backend: Dict[Backend, _Totals] = {}
        self.generations: Dict[Backend, _GenerationCounts] = {}
        self._lock = threading.Lock()

    def estimate_cost(self, event: UsageEvent) -> float:
        input_price, output_price = self.pricing.get(event.backend, (0.0, 0.0))
        return (
            event.input_tokens / 1_000_000 * input_price
            + event.output_tokens / 1_000_000 * output_price
        )

    def __call__(self, event: Event) -> None:
        with self._lock:
            if isinstance(event, GenerationEvent):
                counts = self.generations.setdefault(event.backend, _GenerationCounts())
                counts.total += 1
                counts.with_code += int(event.has_code)
                counts.truncated += int(event.was_truncated)
                return

            cost = self.estimate_cost(event)
            buckets = [self.totals, self.by_backend.setdefault(event.backend, _Totals())]
            if event.accounting_id:
                buckets.append(self.by_account.setdefault(event.accounting_id, _Totals()))
            for bucket in buckets:
                bucket.requests += 1
                bucket.input_tokens += event.input_tokens
                bucket.output_tokens += event.output_tokens
                bucket.cost_usd += cost

        logger.info(
            "AI usage [%s] %sin/%sout (%s cached) | $%.4f | total $%.4f",
            event.backend.value,
            event.input_tokens,
            event.output_tokens,
            event.cached_input_tokens,
            cost,
            self.totals.cost_usd,
        )

    def success_rate(self, backend: Backend) -> float:
        counts = self.generations.get(backend)
        if not counts or counts.total == 0:
            return 0.0
        return counts.with_code / counts.total

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "requests": self.totals.requests,
                "input_tokens": self.totals.input_tokens,
                "output_tokens": self.totals.output_tokens,
                "cost_usd": round(self.totals.cost_usd, 6),
                "by_backend": {
                    backend.value: vars(totals).copy() for backend, totals in self.by_backend.items()
                },
                "by_account": {account: vars(totals).copy() for account, totals in self.by_account.items()},
                "success_rate": {
                    backend.value: f"{self.success_rate(backend) * 100:.1f}%" for backend in self.generations
                },
            }


class UsageRecorder:
    """Fire-and-forget dispatch of usage events to a sink."""

    def __init__(self, sink=None) -> None:
        self.sink = sink if sink is not None else UsageLedger()
        self._pending: Set[asyncio.Task] = set()

    def record(self, event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            self._deliver_sync(event)
            return

        task = loop.create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _deliver_sync(self, event: Event) -> None:
        try:
            outcome = self.sink(event)
            if inspect.isawaitable(outcome):
                asyncio.run(outcome)
        except Exception as exc:
            logger.warning("Usage sink failed for %s: %s", type(event).__name__, exc)

    async def _deliver(self, event: Event) -> None:
        try:
            outcome = self.sink(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.warning("Usage sink failed for %s: %s", type(event).__name__, exc)

    async def drain(self) -> None:
        """Wait for every delivery scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
