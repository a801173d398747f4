"""Time-bounded conversation turns.

The timer is armed by the first outbound vendor request rather than by the
call itself, so time spent waiting on a semaphore or building prompts does
not count. Whichever of the conversation and the timer finishes first wins;
the loser is cancelled.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from phaseforge.core.exceptions import ConversationTimeoutError


@dataclass
class TimedResult:
    type: Literal["success", "timeout", "error"]
    histories: list[Any] = field(default_factory=list)
    error: Optional[BaseException] = None


async def timed_conversate(agent: Any, message: str, timeout: Optional[float]) -> TimedResult:
    """Run ``agent.conversate(message)``, bounded by ``timeout`` seconds when given."""
    if timeout is None:
        try:
            histories = await agent.conversate(message)
        except Exception as e:
            return TimedResult(type="error", error=e)
        return TimedResult(type="success", histories=histories)

    armed = asyncio.Event()
    agent.on("request", lambda _event: armed.set())

    async def expire() -> None:
        await armed.wait()
        await asyncio.sleep(timeout)

    conversation = asyncio.create_task(agent.conversate(message))
    timer = asyncio.create_task(expire())
    try:
        done, _ = await asyncio.wait({conversation, timer}, return_when=asyncio.FIRST_COMPLETED)
        if conversation in done:
            try:
                histories = conversation.result()
            except Exception as e:
                return TimedResult(type="error", error=e)
            return TimedResult(type="success", histories=histories)

        conversation.cancel()
        await asyncio.gather(conversation, return_exceptions=True)
        return TimedResult(type="timeout", error=ConversationTimeoutError(timeout))
    finally:
        for task in (timer, conversation):
            if not task.done():
                task.cancel()
        await asyncio.gather(timer, conversation, return_exceptions=True)
