"""Boucle de ticks pour les invocations planifiées (cron).

Une invocation cron dispose d'un plafond de temps total ; elle enchaîne
des runs courts (ticks) tant qu'il reste du travail et du temps, en
respectant le délai conseillé par chaque run (`next_delay_ms`).

Usage:
    async def run_once(budget_ms: int) -> SyncResult:
        return await pipeline.run_sync(SyncOptions(time_budget_ms=budget_ms))

    loop = await run_tick_loop(run_once, ceiling_ms=280_000)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from src.data.sync.models import SyncResult

logger = logging.getLogger(__name__)

# En dessous de ce budget, un tick ne vaut pas la peine d'être lancé
MIN_TICK_MS = 10_000

# Marge gardée sous le plafond total
CEILING_MARGIN_MS = 2_000

MIN_DELAY_MS = 250
MAX_DELAY_MS = 5_000

StopReason = Literal["done", "max_loops", "ceiling", "cancelled", "failed"]


@dataclass
class TickLoopResult:
    """Bilan d'une boucle de ticks."""

    ticks: int = 0
    results: list[SyncResult] = field(default_factory=list)
    stopped_reason: StopReason = "done"
    elapsed_ms: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.stopped_reason != "failed"

    def to_dict(self) -> dict[str, Any]:
        last = self.results[-1] if self.results else None
        return {
            "ok": self.ok,
            "ticks": self.ticks,
            "stopped_reason": self.stopped_reason,
            "elapsed_ms": self.elapsed_ms,
            "error": self.error,
            "last": last.to_dict() if last else None,
        }


async def run_tick_loop(
    run_once: Callable[[int], Awaitable[SyncResult]],
    *,
    ceiling_ms: int = 280_000,
    tick_budget_ms: int = 55_000,
    max_loops: int = 20,
    cancel: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> TickLoopResult:
    """Enchaîne des runs jusqu'à épuisement du travail ou du temps.

    Chaque tick reçoit min(tick_budget_ms, temps restant - marge). La
    boucle s'arrête quand un run annonce done, au nombre max de ticks,
    quand il reste moins de MIN_TICK_MS, sur annulation (vérifiée entre
    deux ticks seulement) ou sur un tick en échec.

    Args:
        run_once: Coroutine prenant le budget du tick (ms).
        ceiling_ms: Plafond total de la boucle.
        tick_budget_ms: Budget maximum d'un tick.
        max_loops: Nombre maximum de ticks.
        cancel: Événement d'annulation coopérative.
        sleep: Fonction d'attente (injectable pour les tests).
        clock: Horloge monotone en secondes.

    Returns:
        TickLoopResult.
    """
    started = clock()
    out = TickLoopResult()

    def elapsed_ms() -> int:
        return int((clock() - started) * 1000)

    while True:
        if out.ticks >= max_loops:
            out.stopped_reason = "max_loops"
            break
        if cancel is not None and cancel.is_set():
            out.stopped_reason = "cancelled"
            break

        remaining = ceiling_ms - elapsed_ms() - CEILING_MARGIN_MS
        budget_ms = min(tick_budget_ms, remaining)
        if budget_ms < MIN_TICK_MS:
            out.stopped_reason = "ceiling"
            break

        out.ticks += 1
        try:
            result = await run_once(budget_ms)
        except Exception as e:
            out.stopped_reason = "failed"
            out.error = str(e) or type(e).__name__
            logger.error(f"Tick {out.ticks} en échec: {out.error}")
            break

        out.results.append(result)
        if not result.ok:
            out.stopped_reason = "failed"
            out.error = "run non ok"
            logger.error(f"Tick {out.ticks} terminé en erreur: {result.to_message()}")
            break
        if result.done:
            out.stopped_reason = "done"
            break

        delay_ms = max(MIN_DELAY_MS, min(result.next_delay_ms, MAX_DELAY_MS))
        logger.debug(f"Tick {out.ticks} terminé, prochain dans {delay_ms} ms")
        await sleep(delay_ms / 1000)

    out.elapsed_ms = elapsed_ms()
    logger.info(f"Boucle terminée: {out.ticks} tick(s), raison={out.stopped_reason}")
    return out
