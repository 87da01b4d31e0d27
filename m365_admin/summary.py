"""Post-run verification and reporting for provisioning runs."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, TYPE_CHECKING

from .graph_client import USER_SELECT, GraphClientError
from .models import FailureEntry, ProvisioningOutcome, ProvisioningResult, VerificationEntry

if TYPE_CHECKING:
    from .context import DirectoryClient

logger = logging.getLogger(__name__)

_VERIFIED_FIELDS = ("id", "displayName", "userPrincipalName", "accountEnabled", "createdDateTime")


def verify_accounts(
    client: "DirectoryClient", outcomes: Iterable[ProvisioningOutcome]
) -> List[VerificationEntry]:
    """Re-read each created account; lookup failures are recorded, not raised."""

    entries: List[VerificationEntry] = []
    for outcome in outcomes:
        principal = outcome.record.principal_name
        if not outcome.account_id:
            entries.append(
                VerificationEntry(
                    principal_name=principal,
                    account_id=None,
                    verified=False,
                    error="No account identifier returned at creation",
                )
            )
            continue
        try:
            account = client.get_user(outcome.account_id, select=USER_SELECT)
        except GraphClientError as exc:
            logger.warning("Could not verify user %s: %s", principal, exc)
            entries.append(
                VerificationEntry(
                    principal_name=principal,
                    account_id=outcome.account_id,
                    verified=False,
                    error=str(exc),
                )
            )
            continue
        entries.append(
            VerificationEntry(
                principal_name=principal,
                account_id=outcome.account_id,
                verified=True,
                account={key: account.get(key) for key in _VERIFIED_FIELDS},
            )
        )
    return entries


@dataclass
class AccountConfirmation:
    row: int
    principal_name: str
    display_name: str
    account_id: Optional[str]
    verified: Optional[bool]
    enabled: Optional[bool] = None
    created_at: Optional[str] = None
    license_result: Optional[str] = None
    license_detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rowNumber": self.row,
            "userPrincipalName": self.principal_name,
            "displayName": self.display_name,
            "accountId": self.account_id,
            "verified": self.verified,
            "accountEnabled": self.enabled,
            "createdDateTime": self.created_at,
            "licenseResult": self.license_result,
            "licenseDetail": self.license_detail,
        }


@dataclass
class ProvisioningSummary:
    total: int
    successful: int
    failed: int
    dry_run: bool = False
    cancelled: bool = False
    verified: int = 0
    unverified: int = 0
    license_counts: Dict[str, int] = field(default_factory=dict)
    accounts: List[AccountConfirmation] = field(default_factory=list)
    failures: List[FailureEntry] = field(default_factory=list)

    @property
    def not_attempted(self) -> int:
        return self.total - self.successful - self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "notAttempted": self.not_attempted,
            "dryRun": self.dry_run,
            "cancelled": self.cancelled,
            "verified": self.verified,
            "unverified": self.unverified,
            "licenses": dict(self.license_counts),
            "accounts": [account.to_dict() for account in self.accounts],
            "failures": [failure.to_dict() for failure in self.failures],
        }


def build_summary(result: ProvisioningResult) -> ProvisioningSummary:
    verifications = {entry.account_id: entry for entry in result.verifications if entry.account_id}
    checked = bool(result.verifications)
    accounts: List[AccountConfirmation] = []
    for outcome in result.successful:
        entry = verifications.get(outcome.account_id) if outcome.account_id else None
        verified: Optional[bool] = None
        if checked:
            verified = bool(entry and entry.verified)
        source = (entry.account if entry and entry.verified else outcome.account) or {}
        accounts.append(
            AccountConfirmation(
                row=outcome.record.row_number,
                principal_name=outcome.record.principal_name,
                display_name=outcome.record.display_name,
                account_id=outcome.account_id,
                verified=verified,
                enabled=source.get("accountEnabled"),
                created_at=source.get("createdDateTime"),
                license_result=outcome.license_result.value if outcome.license_result else None,
                license_detail=outcome.license_detail,
            )
        )

    failures = [
        FailureEntry(
            row=outcome.record.row_number,
            principal_name=outcome.record.principal_name,
            error=outcome.failure_reason or "Unknown error",
        )
        for outcome in result.failed
    ]
    license_counts = Counter(
        outcome.license_result.value for outcome in result.successful if outcome.license_result
    )
    return ProvisioningSummary(
        total=result.total,
        successful=len(result.successful),
        failed=len(result.failed),
        dry_run=result.dry_run,
        cancelled=result.cancelled,
        verified=sum(1 for account in accounts if account.verified),
        unverified=sum(1 for account in accounts if account.verified is False),
        license_counts=dict(license_counts),
        accounts=accounts,
        failures=failures,
    )


def format_summary(summary: ProvisioningSummary) -> List[str]:
    """Render ``summary`` as report lines."""

    title = "BULK IMPORT SUMMARY (dry run)" if summary.dry_run else "BULK IMPORT SUMMARY"
    lines = [
        title,
        "=" * len(title),
        f"Total processed: {summary.successful + summary.failed} of {summary.total}",
        f"Successfully created: {summary.successful}",
        f"Failed: {summary.failed}",
    ]
    if summary.cancelled:
        lines.append(f"Cancelled before {summary.not_attempted} record(s) were attempted")
    if summary.license_counts:
        rendered = ", ".join(f"{key}={value}" for key, value in sorted(summary.license_counts.items()))
        lines.append(f"Licenses: {rendered}")

    if summary.accounts and not summary.dry_run:
        lines.extend(["", "CREATED USERS:"])
        for position, account in enumerate(summary.accounts, 1):
            lines.append(f"{position}. {account.display_name} ({account.principal_name})")
            lines.append(f"   ID: {account.account_id or 'unknown'}")
            if account.verified is not None:
                lines.append(f"   Verified: {'yes' if account.verified else 'no'}")
            if account.enabled is not None:
                lines.append(f"   Status: {'Active' if account.enabled else 'Disabled'}")
            if account.created_at:
                lines.append(f"   Created: {account.created_at}")
            if account.license_result:
                lines.append(f"   License: {account.license_result} ({account.license_detail})")

    if summary.failures:
        lines.extend(["", "FAILED USERS:"])
        for position, failure in enumerate(summary.failures, 1):
            lines.append(f"{position}. Row {failure.row}: {failure.principal_name}")
            lines.append(f"   Error: {failure.error}")
    return lines


def log_summary(summary: ProvisioningSummary, log: Optional[logging.Logger] = None) -> None:
    target = log or logger
    for line in format_summary(summary):
        target.info(line)


__all__ = [
    "AccountConfirmation",
    "ProvisioningSummary",
    "build_summary",
    "format_summary",
    "log_summary",
    "verify_accounts",
]
