"""ClouDNS zone management and nameserver lookups."""
from __future__ import annotations

import logging
from typing import Any, Dict, List

import requests

from mailbill.core.config import settings

logger = logging.getLogger(__name__)


def _fqdn(name: str) -> str:
    name = name.lower()
    return name if name.endswith(".") else name + "."


class ZoneManager:
    def __init__(self):
        self.base_url = settings.cloudns_base_url.rstrip("/")
        if not settings.cloudns_auth_id:
            logger.warning("CLOUDNS_AUTH_ID not set - DNS zone management disabled")

    def _post(self, path: str, **params) -> Dict[str, Any]:
        query = {
            "auth-id": settings.cloudns_auth_id or "",
            "auth-password": settings.cloudns_auth_password or "",
            **params,
        }
        resp = requests.post(f"{self.base_url}{path}", params=query, timeout=15)
        resp.raise_for_status()
        return resp.json()

    def create_zone(self, domain: str) -> Dict[str, Any]:
        try:
            return self._post("/dns/register.json", **{"domain-name": domain, "zone-type": "master"})
        except Exception as e:
            logger.error("ClouDNS zone creation failed for %s: %s", domain, e)
            return {"status": "Failed", "statusDescription": str(e)}

    def get_zone_info(self, domain: str) -> Dict[str, Any]:
        try:
            return self._post("/dns/get-zone-info.json", **{"domain-name": domain})
        except Exception as e:
            logger.error("ClouDNS zone lookup failed for %s: %s", domain, e)
            return {"status": "Failed", "statusDescription": str(e)}

    def delete_zone(self, domain: str) -> bool:
        try:
            data = self._post("/dns/delete.json", **{"domain-name": domain})
        except Exception as e:
            logger.error("ClouDNS zone deletion failed for %s: %s", domain, e)
            return False
        if data.get("status") == "Success":
            logger.info("Zone deleted for %s", domain)
            return True
        logger.error("Failed to delete zone for %s: %s", domain, data)
        return False

    def resolve_nameservers(self, domain: str) -> List[str]:
        """NS records via DNS-over-HTTPS, normalised to lowercase FQDNs."""
        try:
            resp = requests.get(settings.dns_over_https_url, params={"name": domain, "type": "NS"}, timeout=10)
            resp.raise_for_status()
            answers = resp.json().get("Answer") or []
        except Exception as e:
            logger.warning("NS lookup failed for %s: %s", domain, e)
            return []
        return sorted({_fqdn(a["data"]) for a in answers if a.get("type") == 2 and a.get("data")})

    def is_propagated(self, nameservers: List[str]) -> bool:
        resolved = {_fqdn(ns) for ns in nameservers}
        return all(_fqdn(required) in resolved for required in settings.required_nameservers)


def get_zone_manager() -> ZoneManager:
    """FastAPI dependency; overridden in tests."""
    return ZoneManager()
