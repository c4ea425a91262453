from __future__ import annotations

import json

import pytest

from src.finance_sync.integrations.kissflow_client import (
    KissflowClient,
    employee_to_dataset_row,
    vendor_to_dataset_row,
)


class _FakeResp:
    def __init__(self, status_code: int, payload, text: str | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload) if text is None else text

    def json(self):
        return self._payload


def _client() -> KissflowClient:
    return KissflowClient(
        base_url="https://acme.kissflow.com/",
        access_key_id="key-id",
        access_key_secret="key-secret",
    )


def test_from_env_requires_base_url(monkeypatch) -> None:
    monkeypatch.setenv("KISSFLOW_ACCESS_KEY_ID", "id")
    monkeypatch.setenv("KISSFLOW_ACCESS_KEY_SECRET", "secret")
    monkeypatch.delenv("KISSFLOW_BASE_URL", raising=False)

    with pytest.raises(ValueError, match="KISSFLOW_BASE_URL"):
        KissflowClient.from_env()


def test_from_env_requires_access_keys(monkeypatch) -> None:
    monkeypatch.delenv("KISSFLOW_ACCESS_KEY_ID", raising=False)
    monkeypatch.setenv("KISSFLOW_BASE_URL", "https://acme.kissflow.com")

    with pytest.raises(ValueError, match="credentials not configured"):
        KissflowClient.from_env()


def test_dataset_rows() -> None:
    vendor = {"internal_id": "42", "entity_id": "V-42", "company_name": "Acme", "is_inactive": True}
    assert vendor_to_dataset_row(vendor) == {
        "_id": "42",
        "Name": "42",
        "Code": "V-42",
        "Supplier_Name": "Acme",
        "Email_1": "",
        "Phone": "",
        "Is_Active": True,
    }
    assert employee_to_dataset_row({"netsuite_id": 7, "name": "Aina Rahman"}) == {
        "_id": "7",
        "Name": "7",
        "Employee_Name": "Aina Rahman",
    }
    assert employee_to_dataset_row({"name": "No Id"}) is None


def test_search_by_po_number_uses_access_key_headers(monkeypatch) -> None:
    seen = {}

    def fake_request(method, url, headers=None, params=None, json=None, data=None, timeout=None):
        seen.update(method=method, url=url, headers=headers, params=params)
        return _FakeResp(200, {"Data": [{"_id": "Pk123", "PO_Number": "PO-1"}]})

    monkeypatch.setattr("requests.request", fake_request)

    match = _client().search_by_po_number("PO-1")

    assert match.id == "Pk123"
    assert seen["url"] == (
        "https://acme.kissflow.com/process/2/AcflcLIlo4aq/admin/"
        "Electronic_Payment_Requisition_EPR_/item"
    )
    assert seen["params"] == {"page_number": 1, "page_size": 1, "q": "PO-1", "search_field": "PO_Number"}
    assert seen["headers"]["X-Access-Key-Id"] == "key-id"
    assert seen["headers"]["X-Access-Key-Secret"] == "key-secret"


def test_get_kissflow_id_returns_none_without_match(monkeypatch) -> None:
    def fake_request(method, url, headers=None, params=None, json=None, data=None, timeout=None):
        return _FakeResp(200, {"Data": []})

    monkeypatch.setattr("requests.request", fake_request)

    assert _client().get_kissflow_id("PO-404") is None


def test_push_vendors_batch_requires_configured_url(monkeypatch) -> None:
    monkeypatch.delenv("KISSFLOW_VENDORS_BATCH_URL_PRODUCTION", raising=False)

    result = _client().push_vendors_batch([{"internal_id": "1"}], is_sandbox=False)

    assert result.success is False
    assert "not configured for production" in result.error


def test_push_vendors_batch_posts_rows(monkeypatch) -> None:
    monkeypatch.setenv("KISSFLOW_VENDORS_BATCH_URL_SANDBOX", "https://acme.kissflow.com/dataset/2/x/Vendors/batch")
    seen = {}

    def fake_request(method, url, headers=None, params=None, json=None, data=None, timeout=None):
        seen.update(method=method, url=url, body=json)
        return _FakeResp(200, {"status": "ok"})

    monkeypatch.setattr("requests.request", fake_request)

    result = _client().push_vendors_batch(
        [{"internal_id": "1", "company_name": "Acme"}, {"internal_id": "2", "company_name": "Globex"}]
    )

    assert result.success is True
    assert result.count == 2
    assert seen["method"] == "POST"
    assert seen["url"].endswith("/Vendors/batch")
    assert [row["_id"] for row in seen["body"]] == ["1", "2"]


def test_push_employees_batch_reports_http_error(monkeypatch) -> None:
    monkeypatch.delenv("KISSFLOW_EMPLOYEE_BATCH_URL_SANDBOX", raising=False)
    monkeypatch.delenv("KISSFLOW_EMPLOYEE_DATASET_ID_SANDBOX", raising=False)
    monkeypatch.delenv("KISSFLOW_EMPLOYEE_DATASET_ID", raising=False)
    seen = {}

    def fake_request(method, url, headers=None, params=None, json=None, data=None, timeout=None):
        seen["url"] = url
        return _FakeResp(500, None, text="upstream down")

    monkeypatch.setattr("requests.request", fake_request)

    result = _client().push_employees_batch([{"netsuite_id": "7", "name": "Aina"}], is_sandbox=True)

    assert result.success is False
    assert "HTTP 500 - upstream down" in result.error
    assert seen["url"] == "https://acme.kissflow.com/dataset/2/AcflcLIlo4aq/NetSuite_Employee_Sandbox/batch"


def test_get_budget_items_pages_until_short_page(monkeypatch) -> None:
    monkeypatch.delenv("KISSFLOW_BUDGET_DATASET_ID", raising=False)
    pages = []

    def fake_request(method, url, headers=None, params=None, json=None, data=None, timeout=None):
        pages.append(params["page_number"])
        assert url.endswith("/dataset/2/AcflcLIlo4aq/Budgets_01/list")
        if params["page_number"] == 1:
            return _FakeResp(200, {"Data": [{"_id": "a", "Name": "JB-C030"}, {"_id": "b", "Name": "JB-C031"}]})
        return _FakeResp(200, {"Data": [{"_id": "c", "Name": "KL-A100"}]})

    monkeypatch.setattr("requests.request", fake_request)

    items = _client().get_budget_items(page_size=2)

    assert [i["_id"] for i in items] == ["a", "b", "c"]
    assert pages == [1, 2]


def test_update_budget_spent(monkeypatch) -> None:
    seen = {}

    def fake_request(method, url, headers=None, params=None, json=None, data=None, timeout=None):
        seen.update(url=url, body=json)
        if json[0]["_id"] == "bad":
            return _FakeResp(422, None, text="invalid")
        return _FakeResp(200, {"ok": True})

    monkeypatch.setattr("requests.request", fake_request)
    client = _client()

    ok = client.update_budget_spent("a", 1500.5)
    assert ok.success is True
    assert seen["url"].endswith("/Budgets_01/batch")
    assert seen["body"] == [{"_id": "a", "Budget_Spent": 1500.5}]

    failed = client.update_budget_spent("bad", 1.0)
    assert failed.success is False
    assert "Kissflow budget update failed: HTTP 422" in failed.error
