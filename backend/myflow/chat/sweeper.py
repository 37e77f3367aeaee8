"""Background task that periodically purges expired soft-deleted messages."""
import asyncio
import logging
from typing import Optional

from .gateway import ChatGateway

logger = logging.getLogger(__name__)


async def sweep_forever(gateway: ChatGateway, interval_seconds: float) -> None:
    """Run the expiry sweep every *interval_seconds* until cancelled."""
    logger.info(f"[Sweep] Running every {interval_seconds}s")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await gateway.sweep()
        except Exception:
            logger.exception("[Sweep] Sweep failed; retrying next interval")


def start_sweeper(gateway: ChatGateway, interval_seconds: float) -> asyncio.Task:
    return asyncio.create_task(sweep_forever(gateway, interval_seconds))


async def stop_sweeper(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
