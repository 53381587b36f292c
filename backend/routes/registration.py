"""Public registration routes.

POST /api/register              - full registration bundle (rate limited per address)
POST /api/register/check-email  - email availability pre-check for the form
"""
from fastapi import APIRouter, Depends, Request, status
from models import RegistrationRequest, RegistrationResponse, CheckEmailRequest
from services.identity_guard import check_available, normalize_email
from services.registration import RegistrationService
from services.errors import ValidationError
from utils.rate_limiter import rate_limiter
import logging
import os

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/register", tags=["registration"])

REGISTRATION_RATE_LIMIT = int(os.getenv("REGISTRATION_RATE_LIMIT", "5"))
REGISTRATION_RATE_WINDOW_MINUTES = int(os.getenv("REGISTRATION_RATE_WINDOW_MINUTES", "15"))
CHECK_EMAIL_RATE_LIMIT = 20

_registration_service = None


def get_registration_service() -> RegistrationService:
    global _registration_service
    if _registration_service is None:
        _registration_service = RegistrationService()
    return _registration_service


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else "unknown")


@router.post("", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: Request,
    payload: RegistrationRequest,
    service: RegistrationService = Depends(get_registration_service),
):
    """Create the client bundle. Success means the core records committed; follow-up work may still be pending."""
    ip_address = client_ip(request)
    await rate_limiter.enforce(f"register:{ip_address}", REGISTRATION_RATE_LIMIT, REGISTRATION_RATE_WINDOW_MINUTES)

    result = await service.register(payload, ip_address=ip_address)

    return RegistrationResponse(
        user_id=result.account_id,
        subscription_id=result.subscription_id,
        checkout_url=result.checkout_url,
    )


@router.post("/check-email")
async def check_email(request: Request, payload: CheckEmailRequest):
    ip_address = client_ip(request)
    await rate_limiter.enforce(f"check-email:{ip_address}", CHECK_EMAIL_RATE_LIMIT, 1)

    email = normalize_email(payload.email)
    if not email:
        raise ValidationError("Email is required", field="email")

    availability = await check_available(email)
    return {"available": not availability.email_taken}
