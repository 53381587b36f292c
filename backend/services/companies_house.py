"""Companies House registry lookup (form-fill only, no effect on the lifecycle core).

HTTP Basic auth with the API key as username and an empty password.
"""
import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from models import CompanyType
from services.errors import ExternalServiceFailure, NotFound, ValidationError

logger = logging.getLogger(__name__)

BASE_URL = "https://api.company-information.service.gov.uk"

_COMPANY_TYPE_MAP = {
    "ltd": CompanyType.LTD,
    "private-limited-guarant-nsc": CompanyType.LTD,
    "private-limited-guarant-nsc-limited-exemption": CompanyType.LTD,
    "private-limited-shares-section-30-exemption": CompanyType.LTD,
    "private-unlimited": CompanyType.LTD,
    "private-unlimited-nsc": CompanyType.LTD,
    "plc": CompanyType.PLC,
    "old-public-company": CompanyType.PLC,
    "llp": CompanyType.LLP,
    "limited-partnership": CompanyType.PARTNERSHIP,
    "scottish-partnership": CompanyType.PARTNERSHIP,
    "partnership": CompanyType.PARTNERSHIP,
    "sole": CompanyType.SOLE_TRADER,
    "sole-trader": CompanyType.SOLE_TRADER,
    "sole trader": CompanyType.SOLE_TRADER,
}


def map_company_type(raw: Optional[str]) -> CompanyType:
    """Map a registry or free-text company type onto CompanyType. Unknown values become LTD."""
    key = (raw or "").strip().lower()
    if key.upper() in CompanyType.__members__:
        return CompanyType[key.upper()]
    return _COMPANY_TYPE_MAP.get(key, CompanyType.LTD)


def format_address(address: Optional[Dict[str, Any]]) -> str:
    if not address:
        return ""
    parts = [
        address.get("premises"),
        address.get("address_line_1"),
        address.get("address_line_2"),
        address.get("locality"),
        address.get("region"),
        address.get("postal_code"),
        address.get("country"),
    ]
    return ", ".join(p for p in parts if p)


def pad_company_number(number: str) -> str:
    # Registry numbers are 8 characters, zero padded
    return (number or "").strip().upper().zfill(8)


class CompaniesHouseClient:
    def __init__(self, api_key: Optional[str] = None, timeout: float = 10.0):
        self.api_key = api_key
        self.timeout = timeout

    def _auth(self) -> httpx.BasicAuth:
        api_key = self.api_key or os.getenv("COMPANIES_HOUSE_API_KEY")
        if not api_key:
            raise ExternalServiceFailure("companies_house", "COMPANIES_HOUSE_API_KEY is not configured")
        return httpx.BasicAuth(api_key, "")

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(base_url=BASE_URL, auth=self._auth(), timeout=self.timeout) as client:
                response = await client.get(path, params=params, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.error(f"Companies House request failed for {path}: {e}")
            raise ExternalServiceFailure("companies_house", str(e)) from e

        if response.status_code == 404:
            raise NotFound(f"Companies House 404 for {path}", user_message="Company not found")
        if response.status_code == 401:
            raise ExternalServiceFailure("companies_house", "invalid API key")
        if response.status_code == 429:
            raise ExternalServiceFailure("companies_house", "rate limit exceeded")
        if response.status_code != 200:
            raise ExternalServiceFailure("companies_house", f"HTTP {response.status_code}")
        return response.json()

    async def search(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        query = (query or "").strip()
        if len(query) < 2:
            raise ValidationError("Search query must be at least 2 characters", field="q")

        data = await self._get("/search/companies", {"q": query, "items_per_page": limit, "start_index": 0})
        return [
            {
                "name": item.get("title"),
                "number": item.get("company_number"),
                "type": item.get("company_type"),
                "status": item.get("company_status"),
                "address": item.get("address_snippet") or format_address(item.get("address")),
                "date_of_creation": item.get("date_of_creation"),
            }
            for item in data.get("items", [])
        ]

    async def profile(self, number: str) -> Dict[str, Any]:
        if not (number or "").strip():
            raise ValidationError("Company number is required", field="number")
        company_number = pad_company_number(number)

        profile = await self._get(f"/company/{company_number}")

        # Officers are optional; the profile is still useful without them
        officers: List[Dict[str, Any]] = []
        try:
            officer_data = await self._get(f"/company/{company_number}/officers")
            officers = [
                {
                    "name": o.get("name"),
                    "role": o.get("officer_role"),
                    "appointed_on": o.get("appointed_on"),
                    "date_of_birth": o.get("date_of_birth"),
                    "address": format_address(o.get("address")),
                    "nationality": o.get("nationality"),
                    "occupation": o.get("occupation"),
                }
                for o in officer_data.get("items", [])
                if not o.get("resigned_on")
            ]
        except (ExternalServiceFailure, NotFound) as e:
            logger.warning(f"Officers unavailable for {company_number}: {e}")

        return {
            "company_name": profile.get("company_name"),
            "company_number": profile.get("company_number", company_number),
            "type": profile.get("type"),
            "company_type": map_company_type(profile.get("type")).value,
            "company_status": profile.get("company_status"),
            "date_of_creation": profile.get("date_of_creation"),
            "sic_codes": profile.get("sic_codes") or [],
            "registered_office_address": format_address(profile.get("registered_office_address")),
            "officers": officers,
        }


companies_house_client = CompaniesHouseClient()
