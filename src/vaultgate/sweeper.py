"""
Periodic background sweeps.

Sweeps only tidy memory and push presence updates; every validation path
re-checks expiry itself, so sweep timing never decides access.
"""

import asyncio
from dataclasses import dataclass

from loguru import logger

from .services import Services


@dataclass
class SweepReport:
    credentials: int = 0
    grants: int = 0
    presence: int = 0
    idle: int = 0
    closed: int = 0


async def sweep_once(services: Services) -> SweepReport:
    """Run every sweep once and broadcast presence if anything was removed."""
    settings = services.settings
    report = SweepReport(
        credentials=services.credentials.sweep_expired(),
        grants=services.key_issuer.sweep_expired(),
    )

    report.closed = await services.router.close_invalid()

    stale = services.presence.sweep_stale(settings.presence_max_age)
    report.presence = len(stale)
    if stale:
        await services.router.broadcast_presence()

    report.idle = services.router.sweep_idle(settings.idle_after)
    return report


async def sweep_forever(services: Services, interval: float) -> None:
    """Run sweeps every `interval` seconds until cancelled."""
    logger.info(f"Sweeper running every {interval}s")
    while True:
        await asyncio.sleep(interval)
        try:
            report = await sweep_once(services)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Sweep failed: {e}")
            continue
        logger.debug(f"Sweep: {report}")
