from __future__ import annotations

import json

import pytest

from src.finance_sync.integrations.netsuite_records import VendorCreateResult
from src.finance_sync.use_cases.vendor_tools import create_vendor, custom_fields, dump_vendor, load_vendor_input


class _StubNetSuite:
    def __init__(self, *, existing: set[str] | None = None, vendors: list[dict] | None = None) -> None:
        self.existing = existing or set()
        self.vendors = vendors if vendors is not None else [{"id": "12"}]
        self.created: list[dict] = []
        self.searches: list[tuple] = []

    def vendor_exists_by_entity_id(self, entity_id):
        return entity_id in self.existing

    def create_vendor(self, vendor_data):
        self.created.append(vendor_data)
        return VendorCreateResult(success=True, internal_id="501", entity_id=vendor_data.get("entity_id"))

    def search_vendors(self, fields="", where=None, limit=None):
        self.searches.append((fields, where, limit))
        return self.vendors

    def get_vendor(self, vendor_id, *, expand=False):
        return {
            "id": vendor_id,
            "companyName": "Acme Sdn Bhd",
            "custentity_einv_tin_no": "C2584563200",
            "custentity_msic_code": {"id": "3"},
            "email": "ap@acme.my",
        }


def test_create_vendor_rejects_duplicate_entity_id() -> None:
    client = _StubNetSuite(existing={"V-1"})

    duplicate = create_vendor(client, {"entity_id": "V-1", "company_name": "Acme"})
    created = create_vendor(client, {"entity_id": "V-2", "company_name": "Globex"})

    assert duplicate.success is False
    assert duplicate.error == "Vendor with entity ID 'V-1' already exists"
    assert created.success is True
    assert created.internal_id == "501"
    assert [v["entity_id"] for v in client.created] == ["V-2"]


def test_load_vendor_input(tmp_path) -> None:
    good = tmp_path / "vendor.json"
    good.write_text(json.dumps({"company_name": "Acme"}), encoding="utf-8")
    bad = tmp_path / "list.json"
    bad.write_text("[]", encoding="utf-8")

    assert load_vendor_input(good) == {"company_name": "Acme"}
    with pytest.raises(ValueError, match="must contain a JSON object"):
        load_vendor_input(bad)


def test_custom_fields() -> None:
    assert custom_fields({"custentity_a": 1, "companyName": "x", "custbody_b": 2}) == {
        "custentity_a": 1,
        "custbody_b": 2,
    }


def test_dump_vendor_by_entity_id_writes_custom_field_digest(tmp_path) -> None:
    client = _StubNetSuite(vendors=[{"id": "44"}])
    output = tmp_path / "vendor_reference.json"

    vendor = dump_vendor(client, entity_id="V-44", output=output)

    assert client.searches == [("id", "entityid = 'V-44'", 1)]
    saved = json.loads(output.read_text(encoding="utf-8"))
    assert saved == vendor
    assert saved["id"] == "44"
    assert saved["_customFieldsCount"] == 2
    assert set(saved["_customFields"]) == {"custentity_einv_tin_no", "custentity_msic_code"}


def test_dump_vendor_without_matches_raises(tmp_path) -> None:
    client = _StubNetSuite(vendors=[])

    with pytest.raises(LookupError, match="No vendor found with entity ID: V-9"):
        dump_vendor(client, entity_id="V-9", output=tmp_path / "out.json")
    with pytest.raises(LookupError, match="No vendors found in NetSuite"):
        dump_vendor(client, output=tmp_path / "out.json")
