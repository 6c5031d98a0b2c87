# app/workers/expiry_worker.py
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Optional

from app.billing import service
from settings import settings

logger = logging.getLogger("billing.expiry_worker")


def process_once(*, batch_size: Optional[int] = None, now: Optional[datetime] = None) -> dict[str, int]:
    """One sweep pass. Returns the sweep summary."""
    return service.sweep(now=now, batch_size=batch_size or settings.SWEEP_BATCH_SIZE)


def run_forever(
    *,
    poll_seconds: Optional[int] = None,
    batch_size: Optional[int] = None,
    max_loops: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    poll = max(1, int(poll_seconds or settings.SWEEP_POLL_SECONDS))
    size = int(batch_size or settings.SWEEP_BATCH_SIZE)
    logger.info("expiry worker started poll_seconds=%s batch_size=%s", poll, size)

    loops = 0
    while max_loops is None or loops < max_loops:
        loops += 1
        stats = process_once(batch_size=size)
        # a clean full batch means more are due; go again without sleeping
        if stats["checked"] < size or stats.get("errors", 0):
            sleep(poll)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    run_forever()
