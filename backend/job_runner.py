"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and the cron route (manual run).
Each run_* returns a dict with "message" (and optionally "count").
"""
import logging
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


async def run_renewal_sweep(now: Optional[datetime] = None):
    try:
        from services.renewal_sweep import run_renewal_sweep as sweep
        result = await sweep(now=now)
        count = result["expired"] + result["renewal_pending"] + result["reminders_sent"]
        logger.info(f"Renewal sweep job completed: {result['message']}")
        return {**result, "count": count}
    except Exception as e:
        logger.error(f"Renewal sweep job failed: {e}")
        raise
