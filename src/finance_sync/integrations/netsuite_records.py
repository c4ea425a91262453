"""NetSuite record payload builders.

Pure functions: no network or database access. The REST client and the
transaction services feed these with already-fetched data.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

MALAYSIA_IDENTIFIERS = {"_MALAYSIA", "MALAYSIA", "MY", "MYS"}
NON_MALAYSIAN_TIN = "EI000000000030"

VENDOR_EINVOICE_FIELDS = (
    "custentity_einv_tin_no",
    "custentity_einv_registered_name",
    "custentity_einv_sst_register_no",
    "custentity_einv_msic_code",
    "custentity_einv_address_line1",
    "custentity_einv_city_name",
    "custentity_einv_country_code",
    "custentity_einv_state_code",
    "custentity_einv_identification_code",
    "custentity_einv_identification_type",
)

# List values on the transaction e-invoice fields (internal ids):
# MSIC "00000 : NOT APPLICABLE", country Malaysia, state "17 : Not Applicable", id type BRN.
EINV_MSIC_NOT_APPLICABLE_ID = "1"
EINV_COUNTRY_MALAYSIA_ID = "80"
EINV_STATE_NOT_APPLICABLE_ID = "218"
EINV_ID_TYPE_BRN_ID = "2"

_TZ_NAME_SUFFIX = re.compile(r"^(.+)\s+[A-Z][A-Za-z]+/[A-Za-z_]+$")
_ISO_FULL = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}([+-]\d{2}:\d{2}|Z)?$")
_ISO_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})")
_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_FALLBACK_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d",
    # Ambiguous slash dates are day-first; month-first only matches when the second number is > 12.
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
    "%d-%m-%Y",
    "%d %B %Y",
    "%d %b %Y",
    "%B %d, %Y",
    "%b %d, %Y",
)


def extract_error_details(data: Any) -> list[str]:
    """Collect `o:errorDetails[].detail` strings from a NetSuite error body."""

    if not isinstance(data, dict):
        return []
    details = data.get("o:errorDetails")
    if not isinstance(details, list):
        return []
    return [d["detail"] for d in details if isinstance(d, dict) and d.get("detail")]


def describe_failure(error: Exception | str) -> tuple[str, str]:
    """Return (message, netsuite_response) for a failed NetSuite call.

    If the message embeds a JSON body, the response is that body pretty-printed
    and any `o:errorDetails` are appended to the message.
    """

    message = str(error)
    response = message
    payload = getattr(error, "payload", None)
    if payload is None:
        match = re.search(r"\{.*\}", message, re.S)
        if match:
            try:
                payload = json.loads(match.group(0))
            except ValueError:
                payload = None

    if isinstance(payload, dict):
        response = json.dumps(payload, indent=2)
        details = extract_error_details(payload)
        if details:
            message += " | Details: " + "; ".join(details)
    return message, response


@dataclass(slots=True)
class VendorCreateResult:
    success: bool
    internal_id: str | None = None
    entity_id: str | None = None
    error: str | None = None
    netsuite_response: str | None = None

    @classmethod
    def from_error(cls, error: Exception) -> "VendorCreateResult":
        message, response = describe_failure(error)
        return cls(success=False, error=message, netsuite_response=response)


@dataclass(slots=True)
class TransactionResult:
    success: bool
    internal_id: str | None = None
    transaction_id: str | None = None
    error: str | None = None
    netsuite_response: str | None = None

    @classmethod
    def from_error(cls, error: Exception) -> "TransactionResult":
        message, response = describe_failure(error)
        return cls(success=False, error=message, netsuite_response=response)


def is_malaysian_identifier(value: Any) -> bool:
    return str(value or "").strip().upper() in MALAYSIA_IDENTIFIERS


def _value_or(data: dict[str, Any], key: str, default: str) -> str:
    # "0" is a real value here; only None/"" fall back.
    value = data.get(key)
    if value is None or value == "":
        return default
    return str(value).strip()


def build_vendor_payload(data: dict[str, Any]) -> dict[str, Any]:
    """Map flat vendor input to a REST `vendor` body, including e-invoice fields."""

    company_name = data.get("company_name")
    if company_name is None or str(company_name).strip() == "":
        raise ValueError(
            "Company name is required and cannot be empty. Received: "
            + json.dumps(company_name if company_name is not None else "NOT SET")
        )

    payload: dict[str, Any] = {"companyName": str(company_name).strip()}

    if data.get("entity_id"):
        payload["entityId"] = data["entity_id"]
    if data.get("email") is not None:
        payload["email"] = data["email"]
    if data.get("phone") is not None:
        payload["phone"] = data["phone"]
    if data.get("is_inactive") is not None:
        payload["isInactive"] = bool(data["is_inactive"])
    if data.get("currency_id") is not None:
        payload["currency"] = {"id": str(data["currency_id"])}

    if any(data.get(k) is not None for k in ("address_1", "city", "country")):
        address = {
            target: data[source]
            for source, target in (
                ("address_1", "addr1"),
                ("address_2", "addr2"),
                ("city", "city"),
                ("state", "state"),
                ("zip", "zip"),
                ("country", "country"),
            )
            if data.get(source) is not None
        }
        payload["addressBook"] = {
            "items": [
                {
                    "defaultBilling": True,
                    "defaultShipping": True,
                    "addressBookAddress": address,
                }
            ]
        }

    custom: dict[str, Any] = {}
    for source, target in (
        ("tin_number", "custentity_assa_tin_number"),
        ("sst_number", "custentity_assa_sst_number"),
        ("tourism_tax", "custentity_assa_tourism_tax"),
    ):
        if data.get(source) is not None:
            custom[target] = data[source]

    einv_country = str(data.get("einv_country_code") or "").strip().upper()
    country = str(data.get("country") or "").strip().upper()
    if einv_country:
        malaysian = einv_country in {"MY", "MYS"}
    elif country:
        malaysian = country in MALAYSIA_IDENTIFIERS
    else:
        malaysian = True

    custom.update(
        {
            "custentity_einv_tin_no": _value_or(data, "einv_tin_no", NON_MALAYSIAN_TIN),
            "custentity_einv_registered_name": _value_or(
                data, "einv_registered_name", _value_or(data, "company_name", "")
            ),
            "custentity_einv_sst_register_no": _value_or(data, "einv_sst_register_no", "0"),
            "custentity_einv_msic_code": _value_or(data, "einv_msic_code", "00000"),
            "custentity_einv_address_line1": _value_or(data, "einv_address_line1", "0"),
            "custentity_einv_city_name": _value_or(
                data, "einv_city_name", "Kuala Lumpur" if malaysian else "Not Applicable"
            ),
            "custentity_einv_country_code": _value_or(data, "einv_country_code", "MY").upper(),
            "custentity_einv_state_code": _value_or(data, "einv_state_code", "0"),
            "custentity_einv_identification_code": _value_or(
                data, "einv_identification_code", "0" if malaysian else "000000"
            ),
            "custentity_einv_identification_type": _value_or(
                data, "einv_identification_type", "BRN"
            ),
        }
    )

    for field in VENDOR_EINVOICE_FIELDS:
        if not custom.get(field):
            raise ValueError(
                f"Required E-Invoicing field {field} is missing or empty. "
                f"Value: {custom.get(field, 'NOT SET')}"
            )

    # REST takes custom fields as top-level body keys.
    payload.update(custom)
    return payload


def _addressbook_entries(vendor_record: dict[str, Any]) -> list[dict[str, Any]]:
    book = vendor_record.get("addressBook") or vendor_record.get("addressbookList") or {}
    items = book.get("items") or book.get("addressbook") or []
    if isinstance(items, dict):
        items = [items]
    out = []
    for entry in items:
        addr = entry.get("addressBookAddress") or entry.get("addressbookAddress")
        if isinstance(addr, dict):
            out.append(addr)
    return out


def _ref_id(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("id") or value.get("refName")
    return value or None


def build_transaction_einvoice_fields(
    vendor_record: dict[str, Any],
    *,
    company_name: str | None = None,
    country_to_iso2: Callable[[str], str | None] | None = None,
) -> dict[str, Any]:
    """E-invoice body fields for a PO or bill, taken from the vendor record."""

    addresses = _addressbook_entries(vendor_record)

    malaysian = False
    for addr in addresses:
        country = _ref_id(addr.get("country"))
        if country:
            malaysian = is_malaysian_identifier(country)
            break

    name = vendor_record.get("companyName") or company_name or ""

    tin = vendor_record.get("custentity_einv_tin_no") or None
    sst = vendor_record.get("custentity_einv_sst_register_no") or None
    address = vendor_record.get("custentity_einv_address_line1") or None
    city = vendor_record.get("custentity_einv_city_name") or None
    state = vendor_record.get("custentity_einv_state_code") or None
    country_code = vendor_record.get("custentity_einv_country_code") or None
    id_code = vendor_record.get("custentity_einv_identification_code") or None

    if not address and addresses:
        addr = addresses[0]
        address = address or addr.get("addr1")
        city = city or addr.get("city")
        state = state or addr.get("state")
        country = _ref_id(addr.get("country"))
        if not country_code and country and country_to_iso2 is not None:
            country_code = country_to_iso2(str(country))

    fields: dict[str, Any] = {}
    tin_no = tin or (None if malaysian else NON_MALAYSIAN_TIN)
    if tin_no:
        fields["custbody__eiv_tin_no"] = tin_no
    if name:
        fields["custbody__eiv_tin_registeredname"] = name

    fields.update(
        {
            "custbody__eiv_tin_sstregisterno": sst or "0",
            "custbody__eiv_tin_msic": {"id": EINV_MSIC_NOT_APPLICABLE_ID},
            "custbody__eiv_tin_addrline1": address or "-",
            "custbody__eiv_tin_cityname": city or "-",
            "custbody__eiv_tin_countrycode": {"id": EINV_COUNTRY_MALAYSIA_ID},
            "custbody__eiv_tin_statecode": {"id": EINV_STATE_NOT_APPLICABLE_ID},
            "custbody__eiv_tin_id": id_code or "-",
            "custbody__eiv_tin_idtype": {"id": EINV_ID_TYPE_BRN_ID},
            "custbody__eiv_iseinvoice": False,
            "custbody__eiv_einvconmark": False,
            "custbody__eiv_issubmitted": False,
            "custbody__eiv_isdebitnote": False,
        }
    )
    return fields


def format_netsuite_datetime(value: str | None) -> str | None:
    """Normalise a sheet date/time cell to `YYYY-MM-DDTHH:MM:SS` (offset kept if valid)."""

    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None

    m = _TZ_NAME_SUFFIX.match(s)
    if m:
        s = m.group(1).strip()

    if "T" in s:
        if _ISO_FULL.match(s):
            return s
        m = _ISO_PREFIX.match(s)
        if m:
            return m.group(1)

    if _DATE_ONLY.match(s):
        return f"{s}T00:00:00"

    for fmt in _FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).strftime("%Y-%m-%dT%H:%M:%S")
        except ValueError:
            continue
    return None


def to_rest_date(value: str | None, *, default: datetime | None = None) -> str:
    """REST date fields take `YYYY-MM-DD`; fall back to `default` (or now)."""

    formatted = format_netsuite_datetime(value)
    if formatted:
        return formatted[:10]
    return (default or datetime.now()).strftime("%Y-%m-%d")
