"""Manual trigger for scheduled jobs (external cron or operators).

POST /api/cron/renewal-sweep - requires X-Cron-Secret matching CRON_SECRET
"""
from fastapi import APIRouter, Header, HTTPException, status
from job_runner import run_renewal_sweep
import hmac
import logging
import os

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cron", tags=["cron"])


def _cron_secret_ok(header_secret: str = None) -> bool:
    configured = (os.getenv("CRON_SECRET") or "").strip()
    if not configured:
        # Never open when unset
        return False
    return bool(header_secret) and hmac.compare_digest(header_secret.strip(), configured)


@router.post("/renewal-sweep")
async def trigger_renewal_sweep(x_cron_secret: str = Header(None, alias="X-Cron-Secret")):
    if not _cron_secret_ok(x_cron_secret):
        logger.warning("Renewal sweep trigger rejected: missing or invalid X-Cron-Secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return await run_renewal_sweep()
