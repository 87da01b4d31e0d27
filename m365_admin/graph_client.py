"""Microsoft Graph client used for directory provisioning."""
from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

import msal
import requests

from .config import GraphConfig


GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
USER_SELECT = "id,displayName,userPrincipalName,accountEnabled,createdDateTime"

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    THROTTLED = "throttled"
    TIMEOUT = "timeout"
    CONFLICT = "conflict"
    REJECTED = "rejected"
    SERVER = "server"
    TRANSPORT = "transport"


class GraphClientError(RuntimeError):
    """Base exception for Microsoft Graph client operations."""


class GraphConfigurationError(GraphClientError):
    """Raised when the Graph integration is not configured."""


class GraphAuthenticationError(GraphClientError):
    """Raised when an access token cannot be acquired."""

    def __init__(self, error: str, description: str) -> None:
        super().__init__(f"{error} - {description}")
        self.error = error
        self.description = description


class GraphRequestError(GraphClientError):
    """A failed Graph call, normalized to a single shape."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        kind: ErrorKind,
        details: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        super().__init__(f"{status_code}: {code} - {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.kind = kind
        self.details = list(details or [])

    @property
    def is_not_found(self) -> bool:
        return self.kind is ErrorKind.NOT_FOUND

    def user_message(self) -> str:
        if self.message:
            return self.message
        if self.status_code:
            return f"HTTP {self.status_code}: Unknown error"
        return "Unknown error"


def _kind_for_status(status_code: int, code: str) -> ErrorKind:
    if status_code == 404 or code == "Request_ResourceNotFound":
        return ErrorKind.NOT_FOUND
    if status_code == 429:
        return ErrorKind.THROTTLED
    if status_code in (408, 504):
        return ErrorKind.TIMEOUT
    if status_code == 409:
        return ErrorKind.CONFLICT
    if status_code >= 500:
        return ErrorKind.SERVER
    return ErrorKind.REJECTED


def error_from_response(response: requests.Response) -> GraphRequestError:
    """Translate an error response into a :class:`GraphRequestError`."""

    code = "GraphError"
    message = ""
    details: List[Dict[str, Any]] = []
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]
        code = str(error.get("code") or code)
        message = str(error.get("message") or "")
        raw_details = error.get("details") or []
        if isinstance(raw_details, list):
            details = [entry for entry in raw_details if isinstance(entry, dict)]
    elif response.text:
        message = response.text.strip()
    return GraphRequestError(
        response.status_code,
        code,
        message,
        _kind_for_status(response.status_code, code),
        details,
    )


class GraphClient:
    """Lightweight Microsoft Graph client using app-only credentials."""

    def __init__(
        self,
        config: GraphConfig,
        session: Optional[requests.Session] = None,
        app: Optional[Any] = None,
    ) -> None:
        if not config.has_credentials:
            raise GraphConfigurationError(
                "Microsoft Graph credentials are not configured. "
                "Provide tenant_id, client_id, and client_secret."
            )

        self._config = config
        self._authority = f"https://login.microsoftonline.com/{config.tenant_id}"
        self._app = app or msal.ConfidentialClientApplication(
            client_id=config.client_id,
            client_credential=config.client_secret,
            authority=self._authority,
        )
        self._token_lock = threading.Lock()
        self._session = session or requests.Session()

    @property
    def timeout(self) -> float:
        return self._config.timeout_seconds

    # ------------------------------------------------------------------ #
    # Token handling / HTTP helpers                                      #
    # ------------------------------------------------------------------ #
    def _acquire_token(self) -> str:
        with self._token_lock:
            try:
                result = self._app.acquire_token_silent(GRAPH_SCOPE, account=None)
                if not result:
                    result = self._app.acquire_token_for_client(scopes=GRAPH_SCOPE)
            except requests.RequestException as exc:
                raise GraphAuthenticationError("token_transport_error", str(exc)) from exc

        if not result or "access_token" not in result:
            result = result or {}
            raise GraphAuthenticationError(
                error=result.get("error", "token_error"),
                description=result.get("error_description", "Unable to acquire Graph token."),
            )
        return str(result["access_token"])

    def ensure_authenticated(self) -> None:
        """Acquire a token up front so credential problems surface before any work."""

        self._acquire_token()

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = GRAPH_BASE_URL + path
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {self._acquire_token()}")
        headers.setdefault("Accept", "application/json")
        if "json" in kwargs:
            headers.setdefault("Content-Type", "application/json")

        try:
            response = self._session.request(
                method,
                url,
                timeout=self.timeout,
                headers=headers,
                **kwargs,
            )
        except requests.Timeout as exc:
            raise GraphRequestError(
                0,
                "Timeout",
                f"Request timed out after {self.timeout:g}s.",
                ErrorKind.TIMEOUT,
            ) from exc
        except requests.RequestException as exc:
            raise GraphRequestError(0, "TransportError", str(exc), ErrorKind.TRANSPORT) from exc

        if response.status_code == 204:
            return {}

        if response.status_code >= 400:
            error = error_from_response(response)
            logger.debug("Graph %s %s failed: %s", method, path, error)
            raise error

        if not response.content:
            return {}
        return response.json()

    # ------------------------------------------------------------------ #
    # Users                                                              #
    # ------------------------------------------------------------------ #
    def get_user(self, identifier: str, select: Optional[str] = USER_SELECT) -> Dict[str, Any]:
        """Fetch a user by object id or principal name."""

        cleaned = (identifier or "").strip()
        if not cleaned:
            raise ValueError("A user identifier is required.")
        params = {"$select": select} if select else None
        return self._request("GET", f"/users/{quote(cleaned, safe='@')}", params=params)

    def create_user(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/users", json=payload)

    # ------------------------------------------------------------------ #
    # Licenses                                                           #
    # ------------------------------------------------------------------ #
    def list_subscribed_skus(self) -> List[Dict[str, Any]]:
        result = self._request(
            "GET",
            "/subscribedSkus",
            params={
                "$select": "skuId,skuPartNumber,capabilityStatus,prepaidUnits,consumedUnits",
            },
        )
        return result.get("value", [])

    def assign_license(
        self,
        user_id: str,
        sku_id: str,
        disabled_plans: Optional[Iterable[str]] = None,
        remove_skus: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        payload = {
            "addLicenses": [
                {
                    "skuId": sku_id,
                    "disabledPlans": list(disabled_plans or []),
                }
            ],
            "removeLicenses": list(remove_skus or []),
        }
        return self._request("POST", f"/users/{user_id}/assignLicense", json=payload)


__all__ = [
    "ErrorKind",
    "GraphAuthenticationError",
    "GraphClient",
    "GraphClientError",
    "GraphConfigurationError",
    "GraphRequestError",
    "error_from_response",
]
