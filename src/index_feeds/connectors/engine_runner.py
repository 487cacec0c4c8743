# src/index_feeds/connectors/engine_runner.py

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

from ..core.state import AppState

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _run_engine(state: AppState, stop_event: asyncio.Event) -> None:
    """
    Engine lifecycle on the background loop:
    autostart -> wait for stop -> stop all tasks -> release the log.
    """
    engine = state.engine
    try:
        started = await engine.autostart(getattr(state.settings, "autostart", []) or [])
        if started:
            logger.info("Autostarted %d index feed(s).", len(started))
        await stop_event.wait()
    except asyncio.CancelledError:
        logger.info("Engine loop cancelled.")
    except Exception:
        logger.exception("Engine loop crashed.")
    finally:
        # Tasks must be stopped before the log store goes away.
        with contextlib.suppress(Exception):
            await engine.close()
        state.log.close()
        logger.info("Engine stopped.")


@dataclass
class EngineRunner:
    thread: threading.Thread
    loop: asyncio.AbstractEventLoop
    stop_event: asyncio.Event

    def call(self, coro: Coroutine[Any, Any, T], timeout: float | None = 30.0) -> T:
        """Run `coro` on the engine loop and wait for its result (from another thread)."""
        fut = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return fut.result(timeout=timeout)

    def stop(self) -> None:
        try:
            self.loop.call_soon_threadsafe(self.stop_event.set)
        except RuntimeError:
            logger.debug("Failed to signal engine stop (loop closed).", exc_info=True)

    def join(self, timeout: float | None = None) -> None:
        self.thread.join(timeout=timeout)


def start_engine_in_background(state: AppState) -> EngineRunner | None:
    """
    Start the engine loop in a background thread.

    The console REPL blocks on input(); the engine is async and wants its own loop.
    """
    ready = threading.Event()
    holder: dict[str, object] = {}

    def runner() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        stop_event = asyncio.Event()

        holder["loop"] = loop
        holder["stop_event"] = stop_event
        ready.set()

        try:
            loop.run_until_complete(_run_engine(state, stop_event))
        finally:
            with contextlib.suppress(Exception):
                loop.run_until_complete(loop.shutdown_asyncgens())
            with contextlib.suppress(Exception):
                loop.close()

    t = threading.Thread(target=runner, name="index-feeds-engine", daemon=True)
    t.start()

    ready.wait(timeout=5.0)
    loop = holder.get("loop")
    stop_event = holder.get("stop_event")

    if not isinstance(loop, asyncio.AbstractEventLoop) or not isinstance(stop_event, asyncio.Event):
        logger.error("Engine thread did not initialize properly.")
        return None

    runner_ = EngineRunner(thread=t, loop=loop, stop_event=stop_event)
    state.runner = runner_
    logger.info("Engine background thread started.")
    return runner_
