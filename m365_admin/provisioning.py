"""Bulk user provisioning against Microsoft Graph."""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from .context import DirectoryContext
from .config import ProvisioningConfig
from .graph_client import GraphClientError, GraphRequestError
from .models import (
    ImportRecord,
    LicenseResult,
    ProvisioningOutcome,
    ProvisioningProgress,
    ProvisioningResult,
)
from .progress import ProgressObserver, notify
from .summary import verify_accounts

logger = logging.getLogger(__name__)


class ProvisioningSetupError(RuntimeError):
    """Raised when a run cannot start; nothing has been changed in the directory."""


class CancellationToken:
    """Cooperative stop signal checked before each record."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class LicenseCatalog:
    """Subscribed SKUs fetched once per run, with locally tracked consumption."""

    def __init__(self, skus: Iterable[Dict[str, Any]]) -> None:
        self._skus = [dict(sku) for sku in skus]

    def find(self, requested: str) -> Optional[Dict[str, Any]]:
        wanted = (requested or "").strip().lower()
        if not wanted:
            return None
        for sku in self._skus:
            if str(sku.get("skuId") or "").lower() == wanted:
                return sku
            if str(sku.get("skuPartNumber") or "").lower() == wanted:
                return sku
        return None

    @staticmethod
    def remaining(sku: Dict[str, Any]) -> int:
        enabled = int((sku.get("prepaidUnits") or {}).get("enabled") or 0)
        consumed = int(sku.get("consumedUnits") or 0)
        return enabled - consumed

    @staticmethod
    def consume(sku: Dict[str, Any]) -> None:
        sku["consumedUnits"] = int(sku.get("consumedUnits") or 0) + 1


def build_user_payload(
    record: ImportRecord, settings: ProvisioningConfig, password: str
) -> Dict[str, Any]:
    """Return the Graph ``POST /users`` body for ``record``."""

    payload: Dict[str, Any] = {
        "displayName": record.display_name,
        "userPrincipalName": record.principal_name,
        "mailNickname": record.mail_nickname,
        "passwordProfile": {
            "forceChangePasswordNextSignIn": (
                settings.force_password_change
                if record.force_password_change is None
                else record.force_password_change
            ),
            "password": password,
        },
        "accountEnabled": True,
        "usageLocation": record.usage_location or settings.default_usage_location,
    }
    optional = {
        "jobTitle": record.job_title,
        "department": record.department,
        "officeLocation": record.office,
        "givenName": record.first_name,
        "surname": record.last_name,
    }
    payload.update({key: value for key, value in optional.items() if value})
    return payload


def _error_kind(exc: GraphClientError) -> str:
    if isinstance(exc, GraphRequestError):
        return exc.kind.value
    return "authentication"


def _error_message(exc: GraphClientError) -> str:
    if isinstance(exc, GraphRequestError):
        return exc.user_message()
    return str(exc) or "Unknown error"


def provision_record(
    record: ImportRecord,
    context: DirectoryContext,
    catalog: Optional[LicenseCatalog] = None,
) -> ProvisioningOutcome:
    """Create one account and, when requested, license it.

    Never raises for directory failures: they are captured on the outcome.
    A license failure leaves the created account in place.
    """

    try:
        payload = build_user_payload(
            record, context.settings, record.password or context.new_password()
        )
    except ValueError as exc:
        return ProvisioningOutcome(
            record=record, success=False, failure_reason=str(exc), error_kind="invalid"
        )

    try:
        created = context.client.create_user(payload)
    except GraphClientError as exc:
        reason = _error_message(exc)
        logger.warning(
            "Failed to create %s (row %s): %s", record.principal_name, record.row_number, reason
        )
        return ProvisioningOutcome(
            record=record, success=False, failure_reason=reason, error_kind=_error_kind(exc)
        )

    account_id = str(created.get("id") or "") or None
    outcome = ProvisioningOutcome(record=record, success=True, account_id=account_id, account=created)
    logger.info("Created %s (id=%s)", record.principal_name, account_id)

    if record.license_sku:
        _apply_license(outcome, context, catalog)
    return outcome


def _apply_license(
    outcome: ProvisioningOutcome,
    context: DirectoryContext,
    catalog: Optional[LicenseCatalog],
) -> None:
    requested = outcome.record.license_sku or ""
    principal = outcome.record.principal_name
    try:
        if catalog is None:
            catalog = LicenseCatalog(context.client.list_subscribed_skus())
        sku = catalog.find(requested)
        if sku is None:
            outcome.license_result = LicenseResult.SKIPPED_NO_SKU
            outcome.license_detail = f"License {requested} not found"
            logger.warning("SKU %s not found in tenant; %s left unlicensed", requested, principal)
            return
        remaining = catalog.remaining(sku)
        if remaining <= 0:
            outcome.license_result = LicenseResult.SKIPPED_EXHAUSTED
            outcome.license_detail = f"No available {requested} licenses ({remaining} remaining)"
            logger.warning("No %s licenses remaining; %s left unlicensed", requested, principal)
            return
        if not outcome.account_id:
            outcome.license_result = LicenseResult.ERROR
            outcome.license_detail = "Created account has no identifier"
            return
        context.client.assign_license(outcome.account_id, str(sku["skuId"]))
    except GraphClientError as exc:
        outcome.license_result = LicenseResult.ERROR
        outcome.license_detail = _error_message(exc)
        logger.warning("Failed to assign %s to %s: %s", requested, principal, outcome.license_detail)
        return

    catalog.consume(sku)
    outcome.license_result = LicenseResult.ASSIGNED
    outcome.license_detail = f"Assigned {sku.get('skuPartNumber') or sku['skuId']}"
    logger.info("Assigned %s to %s", requested, principal)


class BulkProvisioner:
    """Creates accounts for a batch of import records, one at a time."""

    def __init__(
        self,
        context: DirectoryContext,
        observers: Iterable[ProgressObserver] = (),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.context = context
        self._observers: List[ProgressObserver] = list(observers)
        self._sleep = sleep

    def add_observer(self, observer: ProgressObserver) -> None:
        self._observers.append(observer)

    def run(
        self,
        records: Iterable[ImportRecord],
        dry_run: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ProvisioningResult:
        candidates = list(records)
        batch = [record for record in candidates if record.is_provisionable]
        if len(batch) != len(candidates):
            logger.info(
                "Excluding %s record(s) that are not valid for provisioning",
                len(candidates) - len(batch),
            )

        if dry_run:
            return self._rehearse(batch)

        result = ProvisioningResult(total=len(batch))
        progress = ProvisioningProgress(total=len(batch))
        if not batch:
            notify(self._observers, progress)
            return result

        catalog = self._prepare(batch)
        delay = self.context.settings.delay_seconds
        logger.info("Starting bulk provisioning of %s user(s)", len(batch))
        for position, record in enumerate(batch):
            if cancel_token is not None and cancel_token.cancelled:
                result.cancelled = True
                logger.warning(
                    "Provisioning cancelled after %s of %s record(s)", position, len(batch)
                )
                break
            logger.info(
                "Creating user %s/%s: %s (%s)",
                position + 1,
                len(batch),
                record.display_name,
                record.principal_name,
            )
            outcome = provision_record(record, self.context, catalog)
            result.outcomes.append(outcome)
            progress = progress.advance(outcome)
            notify(self._observers, progress)
            if position < len(batch) - 1 and delay > 0:
                self._sleep(delay)

        if self.context.settings.verify:
            result.verifications = verify_accounts(self.context.client, result.successful)
        logger.info(
            "Bulk provisioning finished: %s succeeded, %s failed",
            len(result.successful),
            len(result.failed),
        )
        return result

    def _prepare(self, batch: List[ImportRecord]) -> Optional[LicenseCatalog]:
        try:
            self.context.client.ensure_authenticated()
        except GraphClientError as exc:
            raise ProvisioningSetupError(f"Unable to authenticate with Microsoft Graph: {exc}") from exc

        if not any(record.license_sku for record in batch):
            return None
        try:
            skus = self.context.client.list_subscribed_skus()
        except GraphClientError as exc:
            raise ProvisioningSetupError(f"Unable to load the license catalog: {exc}") from exc
        return LicenseCatalog(skus)

    def _rehearse(self, batch: List[ImportRecord]) -> ProvisioningResult:
        logger.info("Dry run: %s user(s) would be created", len(batch))
        result = ProvisioningResult(
            total=len(batch),
            outcomes=[ProvisioningOutcome(record=record, success=True) for record in batch],
            dry_run=True,
        )
        notify(
            self._observers,
            ProvisioningProgress(total=len(batch), processed=len(batch), successful=len(batch)),
        )
        return result


__all__ = [
    "BulkProvisioner",
    "CancellationToken",
    "LicenseCatalog",
    "ProvisioningSetupError",
    "build_user_payload",
    "provision_record",
]
