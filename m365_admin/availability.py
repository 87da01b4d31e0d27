"""Principal name availability checks."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from .context import DirectoryClient
from .graph_client import GraphRequestError
from .models import split_principal_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailabilityResult:
    principal_name: str
    available: bool
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "userPrincipalName": self.principal_name,
            "available": self.available,
        }
        if not self.available:
            payload["suggestions"] = list(self.suggestions)
        return payload


def suggest_alternatives(principal_name: str, today: Optional[date] = None) -> List[str]:
    local, domain = split_principal_name(principal_name)
    year = (today or date.today()).year
    return [
        f"{local}1@{domain}",
        f"{local}.new@{domain}",
        f"{local}{year}@{domain}",
    ]


def check_username_availability(
    client: DirectoryClient, principal_name: str, today: Optional[date] = None
) -> AvailabilityResult:
    """Look up ``principal_name`` and propose alternatives when it is taken.

    Only a "not found" answer from the directory means the name is free;
    every other lookup failure propagates to the caller.
    """

    cleaned = (principal_name or "").strip()
    split_principal_name(cleaned)
    try:
        client.get_user(cleaned, select="id")
    except GraphRequestError as exc:
        if exc.is_not_found:
            return AvailabilityResult(principal_name=cleaned, available=True)
        raise
    suggestions = suggest_alternatives(cleaned, today)
    logger.info("Principal name %s is taken; suggesting %s", cleaned, ", ".join(suggestions))
    return AvailabilityResult(principal_name=cleaned, available=False, suggestions=suggestions)


__all__ = ["AvailabilityResult", "check_username_availability", "suggest_alternatives"]
