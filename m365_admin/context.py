"""Session-scoped access to the directory."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from .config import AppConfig, ProvisioningConfig
from .graph_client import GraphClient, GraphConfigurationError
from .passwords import generate_password


class DirectoryClient(Protocol):
    """The subset of :class:`GraphClient` the provisioning workflow relies on."""

    def ensure_authenticated(self) -> None: ...

    def get_user(self, identifier: str, select: Optional[str] = ...) -> Dict[str, Any]: ...

    def create_user(self, payload: Dict[str, Any]) -> Dict[str, Any]: ...

    def list_subscribed_skus(self) -> List[Dict[str, Any]]: ...

    def assign_license(
        self,
        user_id: str,
        sku_id: str,
        disabled_plans: Optional[Iterable[str]] = None,
        remove_skus: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]: ...



class UnconfiguredClient:
    """Stand-in used when no Graph credentials are configured.

    Dry runs never touch the directory, so they can proceed with this client;
    any real call fails with :class:`GraphConfigurationError`.
    """

    def _fail(self, *args: Any, **kwargs: Any) -> Any:
        raise GraphConfigurationError(
            "Microsoft Graph credentials are not configured. "
            "Provide tenant_id, client_id, and client_secret."
        )

    ensure_authenticated = _fail
    get_user = _fail
    create_user = _fail
    list_subscribed_skus = _fail
    assign_license = _fail


@dataclass
class DirectoryContext:
    """Everything a provisioning run needs, built once per process or session.

    The client (and the token it caches) is shared read-only by every
    component handed this context.
    """

    client: DirectoryClient
    settings: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    password_factory: Optional[Callable[[int], str]] = None

    @classmethod
    def from_config(cls, config: AppConfig) -> "DirectoryContext":
        client: DirectoryClient
        if config.graph.has_credentials:
            client = GraphClient(config.graph)
        else:
            client = UnconfiguredClient()
        return cls(client=client, settings=config.provisioning)

    def new_password(self) -> str:
        if self.password_factory is not None:
            return self.password_factory(self.settings.password_length)
        return generate_password(self.settings.password_length)


__all__ = ["DirectoryClient", "DirectoryContext", "UnconfiguredClient"]
