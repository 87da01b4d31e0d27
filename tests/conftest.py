from __future__ import annotations

import itertools
from typing import Any, Dict, Iterable, List, Optional

import pytest

from m365_admin.config import ProvisioningConfig
from m365_admin.context import DirectoryContext
from m365_admin.graph_client import ErrorKind, GraphRequestError


def graph_error(
    status_code: int = 400,
    code: str = "Request_BadRequest",
    message: str = "Bad request",
    kind: ErrorKind = ErrorKind.REJECTED,
) -> GraphRequestError:
    return GraphRequestError(status_code, code, message, kind)


def not_found() -> GraphRequestError:
    return graph_error(404, "Request_ResourceNotFound", "Resource does not exist", ErrorKind.NOT_FOUND)


def sku(part_number: str, enabled: int, consumed: int, sku_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "skuId": sku_id or f"sku-{part_number.lower()}",
        "skuPartNumber": part_number,
        "prepaidUnits": {"enabled": enabled},
        "consumedUnits": consumed,
    }


class FakeGraphClient:
    """In-memory directory with the same surface as GraphClient."""

    def __init__(
        self,
        existing: Iterable[str] = (),
        skus: Iterable[Dict[str, Any]] = (),
    ) -> None:
        self._ids = itertools.count(1)
        self.users: Dict[str, Dict[str, Any]] = {}
        self.skus = [dict(entry) for entry in skus]
        self.calls: List[tuple] = []
        self.create_errors: Dict[str, GraphRequestError] = {}
        self.assign_errors: Dict[str, GraphRequestError] = {}
        self.lookup_errors: Dict[str, Exception] = {}
        self.auth_error: Optional[Exception] = None
        self.sku_error: Optional[Exception] = None
        for principal in existing:
            self._store({"userPrincipalName": principal, "displayName": principal})

    def _store(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        account = dict(payload)
        account.pop("passwordProfile", None)
        account["id"] = f"id-{next(self._ids)}"
        account.setdefault("accountEnabled", True)
        account["createdDateTime"] = "2026-10-18T09:00:00Z"
        self.users[account["id"]] = account
        return account

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def ensure_authenticated(self) -> None:
        self.calls.append(("ensure_authenticated",))
        if self.auth_error is not None:
            raise self.auth_error

    def get_user(self, identifier: str, select: Optional[str] = None) -> Dict[str, Any]:
        self.calls.append(("get_user", identifier))
        if identifier in self.lookup_errors:
            raise self.lookup_errors[identifier]
        if identifier in self.users:
            return dict(self.users[identifier])
        for account in self.users.values():
            if account["userPrincipalName"].lower() == identifier.lower():
                return dict(account)
        raise not_found()

    def create_user(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        principal = payload["userPrincipalName"]
        self.calls.append(("create_user", principal))
        if principal in self.create_errors:
            raise self.create_errors[principal]
        if any(a["userPrincipalName"].lower() == principal.lower() for a in self.users.values()):
            raise graph_error(
                400,
                "Request_BadRequest",
                "Another object with the same value for property userPrincipalName already exists.",
            )
        return dict(self._store(payload))

    def list_subscribed_skus(self) -> List[Dict[str, Any]]:
        self.calls.append(("list_subscribed_skus",))
        if self.sku_error is not None:
            raise self.sku_error
        return [dict(entry) for entry in self.skus]

    def assign_license(self, user_id, sku_id, disabled_plans=None, remove_skus=None):
        self.calls.append(("assign_license", user_id, sku_id))
        if sku_id in self.assign_errors:
            raise self.assign_errors[sku_id]
        self.users[user_id].setdefault("assignedLicenses", []).append({"skuId": sku_id})
        return {}


@pytest.fixture
def fake_client() -> FakeGraphClient:
    return FakeGraphClient()


@pytest.fixture
def settings() -> ProvisioningConfig:
    return ProvisioningConfig(delay_seconds=0.1, verify=True)


@pytest.fixture
def context(fake_client: FakeGraphClient, settings: ProvisioningConfig) -> DirectoryContext:
    return DirectoryContext(
        client=fake_client,
        settings=settings,
        password_factory=lambda length: "Generated1!" + "x" * (length - 11),
    )

