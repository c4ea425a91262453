"""One-off vendor operations: create a vendor, dump a vendor record to JSON."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from src.finance_sync.integrations.netsuite_records import VendorCreateResult
from src.finance_sync.integrations.netsuite_rest_client import NetSuiteRestClient, quote_literal

logger = logging.getLogger(__name__)

CUSTOM_FIELD_PREFIX = re.compile(r"^(custentity_|custbody_|custitem_|custrecord_|cseg_|custcol_)")


def load_vendor_input(path: str | Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Vendor file {path} must contain a JSON object")
    return data


def create_vendor(client: NetSuiteRestClient, vendor_data: dict[str, Any]) -> VendorCreateResult:
    entity_id = vendor_data.get("entity_id")
    if entity_id and client.vendor_exists_by_entity_id(str(entity_id)):
        return VendorCreateResult(success=False, error=f"Vendor with entity ID '{entity_id}' already exists")
    result = client.create_vendor(vendor_data)
    if result.success:
        logger.info("Created vendor internal_id=%s entity_id=%s", result.internal_id, result.entity_id)
    else:
        logger.error("Vendor creation failed: %s", result.error)
    return result


def custom_fields(record: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in record.items() if CUSTOM_FIELD_PREFIX.match(k)}


def dump_vendor(
    client: NetSuiteRestClient,
    *,
    vendor_id: str | None = None,
    entity_id: str | None = None,
    output: str | Path = "vendor_reference.json",
) -> dict[str, Any]:
    """Write one vendor (with a `_customFields` digest) to `output`; the first vendor when no id is given."""

    if not vendor_id:
        where = f"entityid = {quote_literal(entity_id)}" if entity_id else None
        found = client.search_vendors("id", where, limit=1)
        if not found:
            raise LookupError(
                f"No vendor found with entity ID: {entity_id}" if entity_id else "No vendors found in NetSuite."
            )
        vendor_id = str(found[0]["id"])

    vendor = client.get_vendor(vendor_id)
    fields = custom_fields(vendor)
    vendor["_customFields"] = fields
    vendor["_customFieldsCount"] = len(fields)

    Path(output).write_text(json.dumps(vendor, indent=4, ensure_ascii=False), encoding="utf-8")
    logger.info(
        "Vendor %s (%s) saved to %s with %s custom field(s)",
        vendor.get("id", vendor_id),
        vendor.get("companyName", "N/A"),
        output,
        len(fields),
    )
    return vendor
