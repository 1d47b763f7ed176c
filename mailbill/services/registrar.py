"""Namecheap registrar adapter (XML API over HTTP)."""
from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Any, Dict, List

import requests

from mailbill.core.config import settings
from mailbill.core.exceptions import UpstreamError

logger = logging.getLogger(__name__)


class RegistrarError(Exception):
    pass


class NamecheapRegistrar:
    """Availability, pricing and registration calls.

    ``register_domain`` never raises: registrations in a batch are independent
    and each result reports its own success or failure.
    """

    def __init__(self):
        self.base_url = settings.namecheap_base_url
        if not settings.namecheap_api_key:
            logger.warning("NAMECHEAP_API_KEY not set - domain registration disabled")

    def _auth_params(self) -> Dict[str, str]:
        return {
            "ApiUser": settings.namecheap_api_user or "",
            "ApiKey": settings.namecheap_api_key or "",
            "UserName": settings.namecheap_username or "",
            "ClientIp": settings.namecheap_client_ip or "",
        }

    def _request(self, command: str, **params) -> ET.Element:
        query = {**self._auth_params(), "Command": command, **params}
        resp = requests.get(self.base_url, params=query, timeout=30)
        resp.raise_for_status()
        root = ET.fromstring(resp.content)
        errors = [e.text or "" for e in root.iterfind(".//{*}Errors/{*}Error")]
        if errors:
            raise RegistrarError(errors[0] or "Unknown registrar error")
        return root

    def check_availability(self, names: List[str]) -> List[Dict[str, Any]]:
        if not names:
            return []
        try:
            root = self._request("namecheap.domains.check", DomainList=",".join(names))
        except (requests.RequestException, ET.ParseError, RegistrarError) as e:
            logger.error("Domain availability check failed: %s", e)
            raise UpstreamError("Domain availability check failed") from e
        results = []
        for node in root.iterfind(".//{*}DomainCheckResult"):
            results.append({
                "name": node.get("Domain"),
                "available": (node.get("Available") or "").lower() == "true",
            })
        logger.info("Checked domains: %s", ", ".join(names))
        return results

    def get_pricing(self, tlds: List[str]) -> Dict[str, Dict[str, str | None]]:
        pricing: Dict[str, Dict[str, str | None]] = {}
        for tld in tlds:
            product_name = tld.lstrip(".").upper()
            try:
                root = self._request(
                    "namecheap.users.getPricing",
                    ProductType="DOMAIN",
                    ProductCategory="REGISTER",
                    ActionName="REGISTER",
                    ProductName=product_name,
                )
            except Exception as e:
                logger.warning("Failed to fetch pricing for %s: %s", tld, e)
                pricing[tld] = {"register": None, "renew": None}
                continue
            one_year = None
            for product in root.iterfind(".//{*}Product"):
                if (product.get("Name") or "").lower() != product_name.lower():
                    continue
                one_year = next((p for p in product.iterfind("{*}Price") if p.get("Duration") == "1"), None)
            if one_year is not None:
                pricing[tld] = {
                    "register": one_year.get("Price"),
                    "renew": one_year.get("YourPrice") or one_year.get("Price"),
                }
            else:
                pricing[tld] = {"register": None, "renew": None}
        return pricing

    def _contact_params(self) -> Dict[str, str]:
        contact = {
            "FirstName": settings.registrant_first_name,
            "LastName": settings.registrant_last_name,
            "EmailAddress": settings.registrant_email,
            "Phone": settings.registrant_phone,
            "Address1": settings.registrant_address,
            "City": settings.registrant_city,
            "StateProvince": settings.registrant_state,
            "PostalCode": settings.registrant_postal_code,
            "Country": settings.registrant_country,
        }
        params: Dict[str, str] = {}
        for role in ("Registrant", "Tech", "Admin", "AuxBilling"):
            for field, value in contact.items():
                params[f"{role}{field}"] = value
        return params

    def register_domain(self, name: str, years: int = 1) -> Dict[str, Any]:
        try:
            root = self._request(
                "namecheap.domains.create",
                DomainName=name,
                Years=str(max(1, int(years))),
                **self._contact_params(),
            )
        except Exception as e:
            logger.error("Domain registration failed for %s: %s", name, e)
            return {"success": False, "message": str(e)}
        result = root.find(".//{*}DomainCreateResult")
        if result is not None and (result.get("Registered") or "true").lower() != "true":
            return {"success": False, "message": "Registrar did not confirm registration"}
        logger.info("Domain registered: %s", name)
        return {"success": True, "domain": result.get("Domain") if result is not None else name}


def get_registrar() -> NamecheapRegistrar:
    """FastAPI dependency; overridden in tests."""
    return NamecheapRegistrar()
