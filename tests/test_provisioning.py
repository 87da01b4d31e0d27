from __future__ import annotations

from typing import List

import pytest
from conftest import graph_error, sku

from m365_admin.config import AppConfig, ProvisioningConfig, config_from_dict
from m365_admin.context import DirectoryContext
from m365_admin.csv_import import parse_csv
from m365_admin.graph_client import ErrorKind, GraphAuthenticationError
from m365_admin.models import ImportRecord, LicenseResult, ProvisioningProgress, RecordStatus
from m365_admin.progress import CallbackObserver, ProgressRecorder
from m365_admin.provisioning import (
    BulkProvisioner,
    CancellationToken,
    LicenseCatalog,
    ProvisioningSetupError,
    build_user_payload,
    provision_record,
)


def _record(row: int, principal: str, **fields) -> ImportRecord:
    fields.setdefault("display_name", principal.split("@")[0].replace(".", " ").title())
    fields.setdefault("status", RecordStatus.VALID)
    return ImportRecord(row_number=row, principal_name=principal, **fields)


def _batch(count: int) -> List[ImportRecord]:
    return [_record(row + 2, f"user{row + 1}@contoso.com") for row in range(count)]


def _assert_progress_invariants(events: List[ProvisioningProgress], total: int) -> None:
    assert events
    previous_processed = -1
    previous_percentage = -1
    for event in events:
        assert event.processed == event.successful + event.failed
        assert event.processed >= previous_processed
        assert event.percentage >= previous_percentage
        previous_processed = event.processed
        previous_percentage = event.percentage
    assert [event.processed for event in events].count(total) == 1
    assert events[-1].processed == total
    assert events[-1].percentage == 100


@pytest.fixture
def recorder() -> ProgressRecorder:
    return ProgressRecorder()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def provisioner(context, recorder, sleeps) -> BulkProvisioner:
    return BulkProvisioner(context, observers=[recorder], sleep=sleeps.append)


def test_payload_uses_record_fields_and_defaults():
    record = _record(
        2,
        "sarah.connor@contoso.com",
        display_name="Sarah Connor",
        first_name="Sarah",
        last_name="Connor",
        job_title="Security Specialist",
        department="Security",
        office="Los Angeles",
    )

    payload = build_user_payload(record, ProvisioningConfig(default_usage_location="GB"), "Secret123!")

    assert payload == {
        "displayName": "Sarah Connor",
        "userPrincipalName": "sarah.connor@contoso.com",
        "mailNickname": "sarah.connor",
        "passwordProfile": {"forceChangePasswordNextSignIn": True, "password": "Secret123!"},
        "accountEnabled": True,
        "usageLocation": "GB",
        "jobTitle": "Security Specialist",
        "department": "Security",
        "officeLocation": "Los Angeles",
        "givenName": "Sarah",
        "surname": "Connor",
    }


def test_payload_prefers_record_usage_location_and_omits_blanks():
    record = _record(2, "kyle@contoso.com", usage_location="CA", force_password_change=False)

    payload = build_user_payload(record, ProvisioningConfig(), "Secret123!")

    assert payload["usageLocation"] == "CA"
    assert payload["passwordProfile"]["forceChangePasswordNextSignIn"] is False
    assert "jobTitle" not in payload
    assert "givenName" not in payload


def test_blank_force_flag_falls_back_to_configured_default():
    (record,) = parse_csv("displayName,userPrincipalName\nSarah Connor,sarah@contoso.com\n").records
    settings = config_from_dict({"provisioning": {"force_password_change": False}}).provisioning

    payload = build_user_payload(record, settings, "Secret123!")

    assert record.force_password_change is None
    assert payload["passwordProfile"]["forceChangePasswordNextSignIn"] is False


def test_explicit_force_flag_overrides_configured_default():
    record = _record(2, "kyle@contoso.com", force_password_change=True)

    payload = build_user_payload(record, ProvisioningConfig(force_password_change=False), "Secret123!")

    assert payload["passwordProfile"]["forceChangePasswordNextSignIn"] is True


@pytest.mark.parametrize("processed,total,expected", [(1, 8, 13), (1, 3, 33), (2, 3, 67), (0, 5, 0), (5, 5, 100)])
def test_percentage_rounds_half_up(processed, total, expected):
    assert ProvisioningProgress(total=total, processed=processed, successful=processed).percentage == expected


def test_record_password_is_used_and_missing_password_generated(context, fake_client):
    supplied = provision_record(_record(2, "a@contoso.com", password="Supplied123"), context)
    generated = provision_record(_record(3, "b@contoso.com"), context)

    assert supplied.success and generated.success
    assert len(fake_client.users) == 2


def test_valid_row_without_available_sku_still_creates_account(fake_client, context, recorder, provisioner):
    parsed = parse_csv(
        "displayName,userPrincipalName,licenseSku\n"
        "Sarah Connor,sarah.connor@contoso.com,SPE_E3\n"
        "Kyle Reese,kyle.reese@invalid,SPE_E3\n"
    )
    assert (parsed.summary.total, parsed.summary.valid, parsed.summary.invalid) == (2, 1, 1)

    result = provisioner.run(parsed.provisionable())

    assert len(result.successful) == 1
    assert len(result.failed) == 0
    assert result.successful[0].license_result is LicenseResult.SKIPPED_NO_SKU
    assert [event.processed for event in recorder.events] == [1]
    assert recorder.events[-1].percentage == 100


def test_failure_in_middle_does_not_abort_batch(fake_client, recorder, provisioner, sleeps):
    records = _batch(5)
    fake_client.create_errors["user3@contoso.com"] = graph_error(
        400, "Request_BadRequest", "Password does not meet complexity requirements."
    )

    result = provisioner.run(records)

    created = [call[1] for call in fake_client.calls if call[0] == "create_user"]
    assert created == [record.principal_name for record in records]
    assert len(result.successful) + len(result.failed) == 5
    assert len(result.failed) == 1
    failure = result.failed[0]
    assert failure.record.row_number == 4
    assert failure.failure_reason == "Password does not meet complexity requirements."
    assert failure.error_kind == ErrorKind.REJECTED.value
    assert [outcome.principal_name for outcome in result.outcomes] == [r.principal_name for r in records]
    _assert_progress_invariants(recorder.events, 5)
    assert recorder.events[-1].failures[0].principal_name == "user3@contoso.com"
    assert sleeps == [0.1] * 4


def test_message_less_error_falls_back_to_http_status(fake_client, provisioner):
    fake_client.create_errors["user1@contoso.com"] = graph_error(500, "GraphError", "", ErrorKind.SERVER)

    result = provisioner.run(_batch(1))

    assert result.failed[0].failure_reason == "HTTP 500: Unknown error"


def test_timeout_is_an_ordinary_record_failure(fake_client, provisioner):
    fake_client.create_errors["user1@contoso.com"] = graph_error(
        0, "Timeout", "Request timed out after 30s.", ErrorKind.TIMEOUT
    )

    result = provisioner.run(_batch(2))

    assert [outcome.success for outcome in result.outcomes] == [False, True]
    assert result.failed[0].error_kind == "timeout"


def test_dry_run_never_touches_directory(fake_client, recorder, provisioner, sleeps):
    records = _batch(3)

    result = provisioner.run(records, dry_run=True)

    assert fake_client.calls == []
    assert result.dry_run is True
    assert len(result.successful) == 3
    assert result.failed == []
    assert len(recorder.events) == 1
    _assert_progress_invariants(recorder.events, 3)
    assert sleeps == []


def test_non_provisionable_records_are_excluded(fake_client, provisioner):
    records = [
        _record(2, "ann@contoso.com"),
        _record(3, "ann@contoso.com", status=RecordStatus.DUPLICATE),
        _record(4, "bad@contoso", status=RecordStatus.INVALID),
        _record(5, "pending@contoso.com", status=RecordStatus.PENDING),
    ]

    result = provisioner.run(records)

    assert result.total == 2
    assert [o.record.row_number for o in result.successful] == [2, 5]
    assert fake_client.call_names().count("create_user") == 2


def test_license_assigned_when_capacity_remains(fake_client, provisioner):
    fake_client.skus = [sku("SPE_E3", enabled=2, consumed=0, sku_id="05e9a617-0261-4cee-bb44-138d3ef5d965")]
    records = [
        _record(2, "a@contoso.com", license_sku="spe_e3"),
        _record(3, "b@contoso.com", license_sku="05E9A617-0261-4CEE-BB44-138D3EF5D965"),
        _record(4, "c@contoso.com", license_sku="SPE_E3"),
    ]

    result = provisioner.run(records)

    assert [o.license_result for o in result.outcomes] == [
        LicenseResult.ASSIGNED,
        LicenseResult.ASSIGNED,
        LicenseResult.SKIPPED_EXHAUSTED,
    ]
    assert fake_client.call_names().count("list_subscribed_skus") == 1
    assert fake_client.call_names().count("assign_license") == 2
    assert all(outcome.success for outcome in result.outcomes)


def test_license_assignment_error_keeps_account(fake_client, provisioner):
    fake_client.skus = [sku("SPE_E5", enabled=5, consumed=1)]
    fake_client.assign_errors["sku-spe_e5"] = graph_error(
        400, "Request_BadRequest", "License assignment failed because usage location is not set."
    )

    result = provisioner.run([_record(2, "a@contoso.com", license_sku="SPE_E5")])

    (outcome,) = result.successful
    assert outcome.license_result is LicenseResult.ERROR
    assert "usage location" in outcome.license_detail
    assert outcome.account_id in fake_client.users
    assert "delete_user" not in fake_client.call_names()


def test_records_without_sku_skip_catalog(fake_client, provisioner):
    result = provisioner.run(_batch(2))

    assert "list_subscribed_skus" not in fake_client.call_names()
    assert all(outcome.license_result is None for outcome in result.outcomes)


def test_catalog_failure_is_fatal_before_any_creation(fake_client, provisioner, recorder):
    fake_client.sku_error = graph_error(503, "ServiceUnavailable", "Unavailable", ErrorKind.SERVER)

    with pytest.raises(ProvisioningSetupError):
        provisioner.run([_record(2, "a@contoso.com", license_sku="SPE_E3")])

    assert "create_user" not in fake_client.call_names()
    assert recorder.events == []


def test_authentication_failure_is_fatal(fake_client, provisioner):
    fake_client.auth_error = GraphAuthenticationError("invalid_client", "AADSTS7000215: Invalid client secret.")

    with pytest.raises(ProvisioningSetupError) as excinfo:
        provisioner.run(_batch(2))

    assert isinstance(excinfo.value.__cause__, GraphAuthenticationError)
    assert "create_user" not in fake_client.call_names()


def test_all_records_failing_is_a_completed_run(fake_client, provisioner):
    for record in _batch(3):
        fake_client.create_errors[record.principal_name] = graph_error()

    result = provisioner.run(_batch(3))

    assert len(result.failed) == 3
    assert result.cancelled is False


def test_cancellation_returns_partial_result(context, fake_client):
    token = CancellationToken()
    seen: List[ProvisioningProgress] = []

    def stop_after_two(progress: ProvisioningProgress) -> None:
        seen.append(progress)
        if progress.processed == 2:
            token.cancel()

    provisioner = BulkProvisioner(context, observers=[CallbackObserver(stop_after_two)], sleep=lambda _: None)
    result = provisioner.run(_batch(5), cancel_token=token)

    assert result.cancelled is True
    assert len(result.outcomes) == 2
    assert result.total == 5
    assert fake_client.call_names().count("create_user") == 2
    assert seen[-1].percentage == 40


def test_verification_is_observational(fake_client, provisioner):
    records = _batch(2)
    original_get_user = fake_client.get_user

    def flaky_get_user(identifier, select=None):
        if identifier == "id-2":
            raise graph_error(404, "Request_ResourceNotFound", "Not yet replicated", ErrorKind.NOT_FOUND)
        return original_get_user(identifier, select)

    fake_client.get_user = flaky_get_user

    result = provisioner.run(records)

    assert len(result.successful) == 2
    assert [entry.verified for entry in result.verifications] == [True, False]
    assert result.verifications[0].account["userPrincipalName"] == "user1@contoso.com"


def test_verification_can_be_disabled(fake_client, settings, provisioner):
    settings.verify = False

    result = provisioner.run(_batch(2))

    assert result.verifications == []
    assert "get_user" not in fake_client.call_names()


def test_empty_batch_reports_completion(fake_client, recorder, provisioner):
    result = provisioner.run([])

    assert result.outcomes == []
    assert fake_client.calls == []
    assert recorder.events[-1].percentage == 100


def test_multiple_observers_all_notified(context):
    first, second = ProgressRecorder(), ProgressRecorder()
    provisioner = BulkProvisioner(context, observers=[first], sleep=lambda _: None)
    provisioner.add_observer(second)

    provisioner.run(_batch(3))

    assert first.events == second.events
    assert len(first.events) == 3


def test_license_catalog_matching():
    catalog = LicenseCatalog([sku("ENTERPRISEPACK", enabled=1, consumed=1, sku_id="6fd2c87f")])

    assert catalog.find("enterprisepack")["skuId"] == "6fd2c87f"
    assert catalog.find("6FD2C87F")["skuPartNumber"] == "ENTERPRISEPACK"
    assert catalog.find("SPE_E5") is None
    assert catalog.find("") is None
    assert LicenseCatalog.remaining(catalog.find("6fd2c87f")) == 0


def test_unconfigured_context_still_supports_dry_run():
    context = DirectoryContext.from_config(AppConfig())
    provisioner = BulkProvisioner(context, sleep=lambda _: None)

    assert len(provisioner.run(_batch(2), dry_run=True).successful) == 2
    with pytest.raises(ProvisioningSetupError):
        provisioner.run(_batch(2))
