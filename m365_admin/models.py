"""Data models for CSV import records and provisioning results."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class RecordStatus(str, Enum):
    PENDING = "Pending"
    VALID = "Valid"
    INVALID = "Invalid"
    DUPLICATE = "Duplicate"


class LicenseResult(str, Enum):
    ASSIGNED = "assigned"
    SKIPPED_NO_SKU = "skipped-no-sku"
    SKIPPED_EXHAUSTED = "skipped-exhausted"
    ERROR = "error"


PROVISIONABLE_STATUSES = frozenset({RecordStatus.VALID, RecordStatus.PENDING})


def _unique_preserve(values: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        cleaned = str(value or "").strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


def split_principal_name(principal_name: str) -> tuple[str, str]:
    """Return ``(local_part, domain)`` for an email-shaped principal name."""

    local, sep, domain = (principal_name or "").strip().rpartition("@")
    if not sep or not local or not domain:
        raise ValueError(f"'{principal_name}' is not an email-shaped principal name.")
    return local, domain


@dataclass(frozen=True)
class RowError:
    """A single validation message attached to a CSV row."""

    row: int
    field: str
    value: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"row": self.row, "field": self.field, "value": self.value, "error": self.error}


@dataclass
class ImportRecord:
    """One candidate account parsed from a CSV row."""

    row_number: int
    display_name: str = ""
    principal_name: str = ""
    first_name: str = ""
    last_name: str = ""
    department: Optional[str] = None
    job_title: Optional[str] = None
    office: Optional[str] = None
    manager: Optional[str] = None
    license_sku: Optional[str] = None
    groups: List[str] = field(default_factory=list)
    password: Optional[str] = None
    force_password_change: Optional[bool] = None
    usage_location: Optional[str] = None
    status: RecordStatus = RecordStatus.PENDING
    errors: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.groups = _unique_preserve(self.groups)

    @property
    def is_provisionable(self) -> bool:
        return self.status in PROVISIONABLE_STATUSES

    @property
    def mail_nickname(self) -> str:
        return split_principal_name(self.principal_name)[0]

    def to_dict(self, include_password: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "rowNumber": self.row_number,
            "displayName": self.display_name,
            "userPrincipalName": self.principal_name,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "department": self.department,
            "jobTitle": self.job_title,
            "office": self.office,
            "manager": self.manager,
            "licenseSku": self.license_sku,
            "groups": list(self.groups),
            "forcePasswordChange": self.force_password_change,
            "usageLocation": self.usage_location,
            "status": self.status.value,
            "errors": list(self.errors),
        }
        if include_password:
            payload["password"] = self.password
        else:
            payload["hasPassword"] = bool(self.password)
        return payload


@dataclass
class ImportSummary:
    total: int = 0
    valid: int = 0
    invalid: int = 0
    duplicate: int = 0
    errors: List[RowError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "valid": self.valid,
            "invalid": self.invalid,
            "duplicate": self.duplicate,
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass
class ProvisioningOutcome:
    """Terminal result for a single record."""

    record: ImportRecord
    success: bool
    account_id: Optional[str] = None
    account: Dict[str, Any] = field(default_factory=dict)
    license_result: Optional[LicenseResult] = None
    license_detail: Optional[str] = None
    failure_reason: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def principal_name(self) -> str:
        return self.record.principal_name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rowNumber": self.record.row_number,
            "userPrincipalName": self.record.principal_name,
            "displayName": self.record.display_name,
            "success": self.success,
            "accountId": self.account_id,
            "licenseResult": self.license_result.value if self.license_result else None,
            "licenseDetail": self.license_detail,
            "error": self.failure_reason,
            "errorKind": self.error_kind,
        }


@dataclass(frozen=True)
class FailureEntry:
    row: int
    principal_name: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"rowNumber": self.row, "userPrincipalName": self.principal_name, "error": self.error}


@dataclass(frozen=True)
class ProvisioningProgress:
    """Aggregate progress snapshot emitted after each record."""

    total: int
    processed: int = 0
    successful: int = 0
    failed: int = 0
    failures: tuple[FailureEntry, ...] = ()

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 100
        return int(self.processed * 100 / self.total + 0.5)

    @property
    def complete(self) -> bool:
        return self.processed >= self.total

    def advance(self, outcome: ProvisioningOutcome) -> "ProvisioningProgress":
        """Return the snapshot that follows ``outcome``."""

        failures = self.failures
        if not outcome.success:
            failures = failures + (
                FailureEntry(
                    row=outcome.record.row_number,
                    principal_name=outcome.record.principal_name,
                    error=outcome.failure_reason or "Unknown error",
                ),
            )
        return ProvisioningProgress(
            total=self.total,
            processed=self.processed + 1,
            successful=self.successful + (1 if outcome.success else 0),
            failed=self.failed + (0 if outcome.success else 1),
            failures=failures,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "percentage": self.percentage,
            "errors": [entry.to_dict() for entry in self.failures],
        }


@dataclass
class VerificationEntry:
    principal_name: str
    account_id: Optional[str]
    verified: bool
    account: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userPrincipalName": self.principal_name,
            "accountId": self.account_id,
            "verified": self.verified,
            "account": dict(self.account),
            "error": self.error,
        }


@dataclass
class ProvisioningResult:
    total: int
    outcomes: List[ProvisioningOutcome] = field(default_factory=list)
    verifications: List[VerificationEntry] = field(default_factory=list)
    dry_run: bool = False
    cancelled: bool = False

    @property
    def successful(self) -> List[ProvisioningOutcome]:
        return [outcome for outcome in self.outcomes if outcome.success]

    @property
    def failed(self) -> List[ProvisioningOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "dryRun": self.dry_run,
            "cancelled": self.cancelled,
            "successful": [outcome.to_dict() for outcome in self.successful],
            "failed": [outcome.to_dict() for outcome in self.failed],
            "verifications": [entry.to_dict() for entry in self.verifications],
        }


__all__ = [
    "FailureEntry",
    "ImportRecord",
    "ImportSummary",
    "LicenseResult",
    "PROVISIONABLE_STATUSES",
    "ProvisioningOutcome",
    "ProvisioningProgress",
    "ProvisioningResult",
    "RecordStatus",
    "RowError",
    "VerificationEntry",
    "split_principal_name",
]
