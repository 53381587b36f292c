"""Companies House lookup proxy for the registration form."""
from fastapi import APIRouter, Depends, Request
from services.companies_house import CompaniesHouseClient, companies_house_client
from utils.rate_limiter import rate_limiter
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/companies-house", tags=["companies-house"])

LOOKUP_RATE_LIMIT = 30


def get_companies_house_client() -> CompaniesHouseClient:
    return companies_house_client


def _client_key(request: Request) -> str:
    return f"companies-house:{request.client.host if request.client else 'unknown'}"


@router.get("/search")
async def search_companies(
    q: str,
    request: Request,
    client: CompaniesHouseClient = Depends(get_companies_house_client),
):
    await rate_limiter.enforce(_client_key(request), LOOKUP_RATE_LIMIT, 1)
    return {"items": await client.search(q)}


@router.get("/profile/{number}")
async def company_profile(
    number: str,
    request: Request,
    client: CompaniesHouseClient = Depends(get_companies_house_client),
):
    await rate_limiter.enforce(_client_key(request), LOOKUP_RATE_LIMIT, 1)
    return await client.profile(number)
