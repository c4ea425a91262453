from __future__ import annotations

from datetime import datetime

import pytest

from src.finance_sync.integrations.netsuite_records import (
    NON_MALAYSIAN_TIN,
    TransactionResult,
    build_transaction_einvoice_fields,
    build_vendor_payload,
    describe_failure,
    format_netsuite_datetime,
    to_rest_date,
)
from src.finance_sync.integrations.netsuite_rest_client import NetSuiteApiError


def test_vendor_payload_requires_company_name() -> None:
    with pytest.raises(ValueError, match="Company name is required"):
        build_vendor_payload({"company_name": "   "})


def test_vendor_payload_malaysian_defaults() -> None:
    payload = build_vendor_payload(
        {
            "company_name": " Acme Sdn Bhd ",
            "entity_id": "V-100",
            "email": "ap@acme.my",
            "currency_id": 1,
            "address_1": "1 Jalan Ampang",
            "city": "Kuala Lumpur",
            "country": "_malaysia",
            "tin_number": "C123",
        }
    )

    assert payload["companyName"] == "Acme Sdn Bhd"
    assert payload["entityId"] == "V-100"
    assert payload["currency"] == {"id": "1"}
    address = payload["addressBook"]["items"][0]
    assert address["defaultBilling"] is True
    assert address["addressBookAddress"] == {
        "addr1": "1 Jalan Ampang",
        "city": "Kuala Lumpur",
        "country": "_malaysia",
    }
    assert payload["custentity_assa_tin_number"] == "C123"
    assert payload["custentity_einv_registered_name"] == "Acme Sdn Bhd"
    assert payload["custentity_einv_city_name"] == "Kuala Lumpur"
    assert payload["custentity_einv_identification_code"] == "0"
    assert payload["custentity_einv_country_code"] == "MY"
    assert payload["custentity_einv_tin_no"] == NON_MALAYSIAN_TIN


def test_vendor_payload_foreign_defaults_and_explicit_zero() -> None:
    payload = build_vendor_payload(
        {
            "company_name": "Globex Pte Ltd",
            "einv_country_code": "sg",
            "einv_sst_register_no": "0",
            "einv_msic_code": "46900",
        }
    )

    assert payload["custentity_einv_country_code"] == "SG"
    assert payload["custentity_einv_city_name"] == "Not Applicable"
    assert payload["custentity_einv_identification_code"] == "000000"
    assert payload["custentity_einv_sst_register_no"] == "0"
    assert payload["custentity_einv_msic_code"] == "46900"
    assert "addressBook" not in payload


def test_transaction_einvoice_fields_for_foreign_vendor_use_placeholder_tin() -> None:
    vendor = {
        "companyName": "Globex Pte Ltd",
        "addressBook": {
            "items": [
                {
                    "addressBookAddress": {
                        "addr1": "8 Marina View",
                        "city": "Singapore",
                        "country": {"id": "SG", "refName": "Singapore"},
                    }
                }
            ]
        },
    }

    fields = build_transaction_einvoice_fields(vendor, country_to_iso2=lambda c: c)

    assert fields["custbody__eiv_tin_no"] == NON_MALAYSIAN_TIN
    assert fields["custbody__eiv_tin_registeredname"] == "Globex Pte Ltd"
    assert fields["custbody__eiv_tin_addrline1"] == "8 Marina View"
    assert fields["custbody__eiv_tin_cityname"] == "Singapore"
    assert fields["custbody__eiv_tin_sstregisterno"] == "0"
    assert fields["custbody__eiv_tin_msic"] == {"id": "1"}
    assert fields["custbody__eiv_iseinvoice"] is False


def test_transaction_einvoice_fields_for_malaysian_vendor_without_tin() -> None:
    vendor = {
        "addressBook": {"items": [{"addressBookAddress": {"country": {"id": "MY"}}}]},
        "custentity_einv_address_line1": "1 Jalan Ampang",
        "custentity_einv_identification_code": "201901000001",
    }

    fields = build_transaction_einvoice_fields(vendor, company_name="Acme Sdn Bhd")

    assert "custbody__eiv_tin_no" not in fields
    assert fields["custbody__eiv_tin_registeredname"] == "Acme Sdn Bhd"
    assert fields["custbody__eiv_tin_addrline1"] == "1 Jalan Ampang"
    assert fields["custbody__eiv_tin_cityname"] == "-"
    assert fields["custbody__eiv_tin_id"] == "201901000001"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2025-01-15", "2025-01-15T00:00:00"),
        ("2025-01-15 10:30:00", "2025-01-15T10:30:00"),
        ("2025-01-15T10:30:00+08:00", "2025-01-15T10:30:00+08:00"),
        ("2025-01-15T10:30:00.123Z", "2025-01-15T10:30:00"),
        ("2025-01-15 10:30:00 Asia/Kuala_Lumpur", "2025-01-15T10:30:00"),
        ("01/15/2025", "2025-01-15T00:00:00"),
        ("25/12/2024", "2024-12-25T00:00:00"),
        ("03/04/2024", "2024-04-03T00:00:00"),
        ("03/04/2024 14:05", "2024-04-03T14:05:00"),
        ("15 January 2025", "2025-01-15T00:00:00"),
        ("not a date", None),
        ("", None),
        (None, None),
    ],
)
def test_format_netsuite_datetime(raw, expected) -> None:
    assert format_netsuite_datetime(raw) == expected


def test_to_rest_date_uses_default_when_unparseable() -> None:
    assert to_rest_date("2025-03-04T09:00:00") == "2025-03-04"
    assert to_rest_date("??", default=datetime(2024, 12, 31)) == "2024-12-31"


def test_describe_failure_pretty_prints_payload() -> None:
    error = NetSuiteApiError(
        "NetSuite REST API request failed: HTTP 400",
        status_code=400,
        payload={"o:errorDetails": [{"detail": "Missing vendor"}]},
    )

    result = TransactionResult.from_error(error)

    assert result.success is False
    assert result.error.endswith("| Details: Missing vendor")
    assert '"detail": "Missing vendor"' in result.netsuite_response


def test_describe_failure_parses_embedded_json() -> None:
    message, response = describe_failure(RuntimeError('failed | Full response: {"title": "Bad"}'))

    assert message.startswith("failed")
    assert '"title": "Bad"' in response
