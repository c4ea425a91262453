"""NetSuite REST connector (OAuth2 client credentials + SuiteQL).

Purpose
- One place for NetSuite auth: a PS256-signed JWT assertion is exchanged for a
  bearer token, which is cached on disk per environment.
- Thin wrappers over the REST record API and SuiteQL, returning plain dicts.

Reference syncs, transaction creation and existence checks all go through
this client; nothing here touches the local database.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import requests
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from dotenv import load_dotenv

from src.finance_sync.config.settings import env_first
from src.finance_sync.integrations.netsuite_records import (
    VendorCreateResult,
    build_vendor_payload,
    extract_error_details,
)

load_dotenv(override=False)

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_PATH = "/services/rest/auth/oauth2/v1/token"
DEFAULT_SCOPES = "restlets,rest_webservices"
SUITEQL_ENDPOINT = "/services/rest/query/v1/suiteql"
RECORD_ENDPOINT = "/services/rest/record/v1"
CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"

# SuiteQL caps a single page at 1000 rows and a result set at 100k.
SUITEQL_PAGE_MAX = 1000
SUITEQL_RESULT_MAX = 100_000

TOKEN_REFRESH_MARGIN_SECONDS = 15

DEFAULT_VENDOR_FIELDS = "id, entityid, companyname, email, phone, currency, isinactive"

COUNTRIES_FALLBACK_PATH = Path(__file__).resolve().parent / "data" / "netsuite_countries.json"

# SuiteQL transaction.type codes.
TRANSACTION_TYPES = {
    "purchaseOrder": "PurchOrd",
    "vendorBill": "VendBill",
    "expenseReport": "ExpRept",
}

REFERENCE_QUERIES = {
    "employee": "id, entityid, firstname, lastname, email, phone, isinactive",
    "department": "id, name, isinactive",
    "account": "id, acctnumber, fullname, accttype, isinactive",
    "location": "id, name, locationtype, isinactive",
    "item": "id, itemid, displayname, itemtype, description, isinactive",
    "expensecategory": "id, name, description, isinactive",
}


class NetSuiteApiError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def quote_literal(value: Any) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def _safe_json(resp: Any) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


def sign_jwt_ps256(header: dict[str, Any], payload: dict[str, Any], private_key_pem: str) -> str:
    """Build a compact JWS signed with RSASSA-PSS / SHA-256 (PS256)."""

    key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
    signing_input = (
        _b64url(json.dumps(header, separators=(",", ":")).encode("utf-8"))
        + "."
        + _b64url(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    )
    signature = key.sign(
        signing_input.encode("ascii"),
        padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=32),
        hashes.SHA256(),
    )
    return f"{signing_input}.{_b64url(signature)}"


def format_api_error(prefix: str, status_code: int, body: str, data: Any) -> str:
    message = f"{prefix}: HTTP {status_code}"
    details = extract_error_details(data)
    if details:
        message += " - " + "; ".join(details)
    elif isinstance(data, dict) and data.get("title"):
        message += f" - {data['title']}"
        if data.get("detail"):
            message += f": {data['detail']}"
    elif isinstance(data, dict) and (data.get("error") or data.get("message")):
        message += f" - {data.get('error') or data.get('message')}"
    else:
        message += f" - {(body or '')[:200]}"

    if data:
        message += f" | Full response: {json.dumps(data)}"
    return message


def next_page_query(base_query: str, last_id: Any) -> str:
    """Keyset pagination: continue after `last_id` on a query ending in ORDER BY id."""

    if "WHERE" in base_query.upper():
        return base_query.replace("ORDER BY id", f"AND id > {last_id} ORDER BY id")
    return base_query.replace("ORDER BY id", f"WHERE id > {last_id} ORDER BY id")


def load_countries_fallback() -> list[dict[str, str]]:
    with open(COUNTRIES_FALLBACK_PATH, "r", encoding="utf-8") as f:
        return json.load(f)


@dataclass(frozen=True, slots=True)
class NetSuiteCredentials:
    environment: str
    domain: str
    consumer_key: str | None
    certificate_kid: str | None
    private_key: str | None
    scopes: str = DEFAULT_SCOPES
    token_path: str = DEFAULT_TOKEN_PATH

    @property
    def is_complete(self) -> bool:
        return bool(self.consumer_key and self.certificate_kid and self.private_key)

    @property
    def token_url(self) -> str:
        return f"https://{self.domain}{self.token_path}"

    @classmethod
    def from_env(cls, environment: str | None = None) -> "NetSuiteCredentials":
        load_dotenv(override=False)
        env = (environment or os.environ.get("NETSUITE_ENVIRONMENT") or "sandbox").strip().lower()

        if env == "production":
            domain = env_first("NETSUITE_REST_DOMAIN", "NETSUITE_HOST")
            consumer_key = env_first("NETSUITE_REST_CONSUMER_KEY")
            kid = env_first("NETSUITE_REST_CERTIFICATE_KID")
            private_key = env_first("NETSUITE_REST_CERTIFICATE_PRIVATE_KEY")
        else:
            domain = env_first(
                "SANDBOX_NETSUITE_REST_DOMAIN", "NETSUITE_REST_DOMAIN", "NETSUITE_HOST"
            )
            consumer_key = env_first(
                "SANDBOX_NETSUITE_REST_CONSUMER_KEY", "NETSUITE_REST_CONSUMER_KEY"
            )
            kid = env_first(
                "SANDBOX_NETSUITE_REST_CERTIFICATE_KID", "NETSUITE_REST_CERTIFICATE_KID"
            )
            private_key = env_first(
                "SANDBOX_NETSUITE_REST_CERTIFICATE_PRIVATE_KEY",
                "NETSUITE_REST_CERTIFICATE_PRIVATE_KEY",
            )

        if private_key:
            # .env files usually carry the PEM on one line with literal "\n".
            private_key = private_key.replace("\\n", "\n")

        return cls(
            environment=env,
            domain=re.sub(r"^https?://", "", domain or ""),
            consumer_key=consumer_key,
            certificate_kid=kid,
            private_key=private_key,
            scopes=os.environ.get("NETSUITE_REST_SCOPES", DEFAULT_SCOPES),
            token_path=os.environ.get("NETSUITE_REST_TOKEN_PATH", DEFAULT_TOKEN_PATH),
        )


class NetSuiteRestClient:
    def __init__(
        self,
        *,
        credentials: NetSuiteCredentials,
        token_cache_path: str,
        timeout_seconds: int = 60,
        page_delay_seconds: float = 0.2,
        currency_delay_seconds: float = 0.1,
    ) -> None:
        self._credentials = credentials
        self._token_cache_path = token_cache_path
        self._timeout_seconds = timeout_seconds
        self._page_delay_seconds = page_delay_seconds
        self._currency_delay_seconds = currency_delay_seconds
        self._token: dict[str, Any] | None = None

    @classmethod
    def from_env(cls, environment: str | None = None) -> "NetSuiteRestClient":
        load_dotenv(override=False)
        return cls(
            credentials=NetSuiteCredentials.from_env(environment),
            token_cache_path=os.environ.get(
                "NETSUITE_TOKEN_CACHE_PATH", os.path.abspath(".netsuite_token_cache.json")
            ),
            timeout_seconds=int(os.environ.get("NETSUITE_HTTP_TIMEOUT_SECONDS", "60")),
        )

    @property
    def environment(self) -> str:
        return self._credentials.environment

    @property
    def is_sandbox(self) -> bool:
        return self._credentials.environment == "sandbox"

    @property
    def cache_key(self) -> str:
        return f"netsuite_rest_token_{self._credentials.environment}"

    # ------------------------------------------------------------------ auth

    def _read_token_cache(self) -> dict[str, Any]:
        if not os.path.exists(self._token_cache_path):
            return {}
        try:
            with open(self._token_cache_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable NetSuite token cache %s: %s", self._token_cache_path, e)
            return {}
        return raw if isinstance(raw, dict) else {}

    def _write_token_cache(self, entry: dict[str, Any]) -> None:
        cache = self._read_token_cache()
        cache[self.cache_key] = entry
        with open(self._token_cache_path, "w", encoding="utf-8") as f:
            json.dump(cache, f, indent=2)

    def _cached_token(self, now: float) -> str | None:
        entry = self._token or self._read_token_cache().get(self.cache_key)
        if not entry or not entry.get("access_token") or not entry.get("expires_at"):
            return None
        if float(entry["expires_at"]) > now + TOKEN_REFRESH_MARGIN_SECONDS:
            self._token = entry
            return entry["access_token"]
        return None

    def build_client_assertion(self, now: int | None = None) -> str:
        creds = self._credentials
        issued_at = int(now if now is not None else time.time())
        header = {"alg": "PS256", "typ": "JWT", "kid": creds.certificate_kid}
        payload = {
            "iss": creds.consumer_key,
            "scope": [s.strip() for s in creds.scopes.split(",") if s.strip()],
            "iat": issued_at,
            "exp": issued_at + 3600,
            "aud": creds.token_url,
        }
        try:
            return sign_jwt_ps256(header, payload, creds.private_key or "")
        except (ValueError, TypeError) as e:
            raise RuntimeError(f"Failed to create JWT assertion: {e}") from e

    def get_access_token(self) -> str:
        now = time.time()
        cached = self._cached_token(now)
        if cached:
            return cached

        if not self._credentials.is_complete:
            raise RuntimeError(
                "NetSuite REST credentials not configured. Set NETSUITE_REST_CONSUMER_KEY, "
                "NETSUITE_REST_CERTIFICATE_KID, and NETSUITE_REST_CERTIFICATE_PRIVATE_KEY in .env"
            )

        assertion = self.build_client_assertion(int(now))
        resp = requests.request(
            "POST",
            self._credentials.token_url,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data={
                "grant_type": "client_credentials",
                "client_assertion_type": CLIENT_ASSERTION_TYPE,
                "client_assertion": assertion,
            },
            timeout=self._timeout_seconds,
        )
        if resp.status_code >= 400:
            raise RuntimeError(f"Token request failed: HTTP {resp.status_code} - {resp.text}")

        data = _safe_json(resp) or {}
        if not data.get("access_token"):
            raise RuntimeError("No access token in response")

        expires_in = int(data.get("expires_in") or 3600)
        entry = {
            "access_token": data["access_token"],
            "expires_at": now + expires_in - TOKEN_REFRESH_MARGIN_SECONDS,
        }
        self._token = entry
        self._write_token_cache(entry)
        logger.info("Obtained NetSuite REST token for %s (expires in %ss)", self.environment, expires_in)
        return entry["access_token"]

    # --------------------------------------------------------------- requests

    def make_request(
        self,
        method: str,
        endpoint: str,
        *,
        json_body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            token = self.get_access_token()
        except RuntimeError as e:
            logger.error("Failed to get NetSuite access token: %s", e)
            raise RuntimeError(f"Authentication failed: {e}") from e

        url = f"https://{self._credentials.domain}{endpoint}"
        resp = requests.request(
            method,
            url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            params=params,
            json=json_body,
            timeout=self._timeout_seconds,
        )

        if resp.status_code >= 400:
            data = _safe_json(resp)
            logger.error("NetSuite REST error %s %s -> HTTP %s", method, endpoint, resp.status_code)
            raise NetSuiteApiError(
                format_api_error(
                    "NetSuite REST API request failed", resp.status_code, resp.text, data
                ),
                status_code=resp.status_code,
                payload=data,
            )

        result = _safe_json(resp) if resp.text else None
        if not isinstance(result, dict):
            result = {}

        # Record creation answers 204 with the new id only in the Location header.
        location = (resp.headers or {}).get("Location")
        if location and "id" not in result:
            result["id"] = location.rstrip("/").rsplit("/", 1)[-1]
        return result

    def _suiteql_page(self, query: str, *, limit: int) -> dict[str, Any]:
        token = self.get_access_token()
        resp = requests.request(
            "POST",
            f"https://{self._credentials.domain}{SUITEQL_ENDPOINT}",
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Prefer": "transient",
            },
            params={"limit": limit},
            json={"q": query},
            timeout=self._timeout_seconds,
        )
        if resp.status_code >= 400:
            data = _safe_json(resp)
            message = f"NetSuite REST API SuiteQL request failed: HTTP {resp.status_code}"
            if isinstance(data, dict) and (data.get("error") or data.get("message")):
                message += f" - {data.get('error') or data.get('message')}"
            else:
                message += f" - {(resp.text or '')[:200]}"
            logger.error("SuiteQL failed (HTTP %s): %s", resp.status_code, query)
            raise NetSuiteApiError(message, status_code=resp.status_code, payload=data)
        return _safe_json(resp) or {}

    def suiteql(
        self,
        query: str,
        *,
        limit: int = SUITEQL_PAGE_MAX,
        max_rows: int = SUITEQL_RESULT_MAX,
    ) -> list[dict[str, Any]]:
        """Run a SuiteQL query ending in `ORDER BY id`, following keyset pages.

        Pages continue while the response signals more rows (`hasMore`, a
        `next` link, or a full page) and stop on an empty or short page.
        """

        page_limit = min(limit, SUITEQL_PAGE_MAX)
        rows: list[dict[str, Any]] = []
        current = query

        while True:
            data = self._suiteql_page(current, limit=page_limit)
            items = data.get("items") or []

            has_more = bool(data.get("hasMore"))
            if not has_more:
                has_more = any(
                    isinstance(link, dict) and link.get("rel") == "next"
                    for link in data.get("links") or []
                )
            if not has_more and len(items) >= page_limit:
                has_more = True

            if not items:
                break
            rows.extend(items)
            logger.debug("SuiteQL page: %s rows (total %s)", len(items), len(rows))

            if len(items) < SUITEQL_PAGE_MAX or not has_more:
                break
            if len(rows) >= min(max_rows, SUITEQL_RESULT_MAX):
                logger.warning("Reached SuiteQL result cap of %s rows", len(rows))
                break

            last_id = items[-1].get("id")
            if last_id is None:
                break
            current = next_page_query(query, last_id)
            time.sleep(self._page_delay_seconds)

        return rows[:max_rows]

    # -------------------------------------------------------- reference data

    def search(
        self,
        table: str,
        *,
        fields: str | list[str] | None = None,
        where: str | None = None,
        limit: int = SUITEQL_PAGE_MAX,
        max_rows: int = SUITEQL_RESULT_MAX,
    ) -> list[dict[str, Any]]:
        if isinstance(fields, list):
            fields = ", ".join(fields)
        select = fields or REFERENCE_QUERIES.get(table, "*")
        query = f"SELECT {select} FROM {table}"
        if where:
            query += f" WHERE {where}"
        query += " ORDER BY id"
        return self.suiteql(query, limit=limit, max_rows=max_rows)

    def search_vendors(
        self,
        fields: str | list[str] | None = None,
        where: str | None = None,
        limit: int = SUITEQL_PAGE_MAX,
    ) -> list[dict[str, Any]]:
        return self.search("vendor", fields=fields or DEFAULT_VENDOR_FIELDS, where=where, limit=limit)

    def search_employees(self) -> list[dict[str, Any]]:
        return self.search("employee")

    def search_departments(self) -> list[dict[str, Any]]:
        return self.search("department")

    def search_accounts(self) -> list[dict[str, Any]]:
        return self.search("account")

    def search_locations(self) -> list[dict[str, Any]]:
        return self.search("location")

    def search_items(self) -> list[dict[str, Any]]:
        return self.search("item")

    def search_expense_categories(self) -> list[dict[str, Any]]:
        return self.search("expensecategory")

    def fetch_currencies(self, ids: range = range(1, 21)) -> dict[str, dict[str, Any]]:
        currencies: dict[str, dict[str, Any]] = {}
        errors: list[str] = []
        for currency_id in ids:
            try:
                currency = self.make_request("GET", f"{RECORD_ENDPOINT}/currency/{currency_id}")
            except RuntimeError as e:
                msg = str(e)
                if "404" in msg or "not found" in msg:
                    continue
                errors.append(f"Currency ID {currency_id}: {msg}")
                logger.warning("Currency ID %s error: %s", currency_id, msg)
                continue

            if currency.get("id") or currency.get("refName"):
                currencies[str(currency.get("id") or currency_id)] = currency
            time.sleep(self._currency_delay_seconds)

        if not currencies:
            summary = ""
            if errors:
                summary = "\nErrors encountered:\n" + "\n".join(errors[:5])
            raise RuntimeError(
                "No currencies found. Please check your REST API credentials and permissions."
                + summary
            )
        logger.info("Fetched %s currencies", len(currencies))
        return currencies

    def fetch_countries(self) -> list[dict[str, str]]:
        """Countries via SuiteQL, falling back to the bundled list."""

        query = "SELECT id, country, countrycode, addressbookcode FROM countries ORDER BY country"
        try:
            data = self._suiteql_page(query, limit=SUITEQL_PAGE_MAX)
        except RuntimeError as e:
            logger.warning("Countries SuiteQL failed, using bundled list: %s", e)
            return load_countries_fallback()

        countries: list[dict[str, str]] = []
        for row in data.get("items") or []:
            iso2 = (row.get("countrycode") or "").strip()
            name = (row.get("country") or "").strip()
            if not row.get("id") or not iso2 or not name:
                continue
            countries.append(
                {
                    "id": str(row["id"]),
                    "country_code": row.get("addressbookcode") or iso2,
                    "name": name,
                    "iso_code_2": iso2.upper(),
                    "iso_code_3": "",
                }
            )
        if not countries:
            logger.warning("Countries SuiteQL returned no usable rows, using bundled list")
            return load_countries_fallback()
        return countries

    def fetch_msic_codes(self) -> list[dict[str, Any]]:
        record = os.environ.get("NETSUITE_MSIC_RECORD", "customrecord_einv_msic")
        return self.search(record, fields="id, name")

    # ---------------------------------------------------------------- vendors

    def get_vendor(self, vendor_id: str | int, *, expand: bool = False) -> dict[str, Any]:
        params = {"expandSubResources": "true"} if expand else None
        return self.make_request("GET", f"{RECORD_ENDPOINT}/vendor/{vendor_id}", params=params)

    def vendor_exists_by_entity_id(self, entity_id: str) -> bool:
        try:
            return bool(
                self.search_vendors("id, entityid", f"entityid = {quote_literal(entity_id)}", limit=1)
            )
        except RuntimeError as e:
            logger.error("Error checking vendor existence for %s: %s", entity_id, e)
            return False

    def create_vendor(self, vendor_data: dict[str, Any]) -> VendorCreateResult:
        try:
            payload = build_vendor_payload(vendor_data)
            logger.info(
                "Creating vendor %r (entity_id=%s)",
                payload["companyName"],
                vendor_data.get("entity_id"),
            )
            response = self.make_request("POST", f"{RECORD_ENDPOINT}/vendor", json_body=payload)
        except (RuntimeError, ValueError) as e:
            return VendorCreateResult.from_error(e)

        vendor_id = response.get("id")
        entity_id = None
        if vendor_id:
            try:
                entity_id = self.get_vendor(vendor_id).get("entityId")
            except RuntimeError as e:
                logger.warning("Could not fetch created vendor %s for entity ID: %s", vendor_id, e)

        return VendorCreateResult(success=True, internal_id=vendor_id, entity_id=entity_id)

    # ----------------------------------------------------------- transactions

    def create_record(self, record_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self.make_request("POST", f"{RECORD_ENDPOINT}/{record_type}", json_body=payload)

    def get_record(
        self, record_type: str, record_id: str | int, *, expand: bool = False
    ) -> dict[str, Any]:
        params = {"expandSubResources": "true"} if expand else None
        return self.make_request(
            "GET", f"{RECORD_ENDPOINT}/{record_type}/{record_id}", params=params
        )

    def find_transactions(
        self, record_type: str, *, tran_id: str | None = None, memo: str | None = None
    ) -> list[dict[str, Any]]:
        code = TRANSACTION_TYPES[record_type]
        where = f"type = {quote_literal(code)}"
        if tran_id:
            where += f" AND tranid = {quote_literal(tran_id)}"
        if memo:
            where += f" AND memo = {quote_literal(memo)}"
        return self.search(
            "transaction", fields="id, tranid, memo", where=where, limit=1, max_rows=1
        )

    def purchase_order_exists_by_tran_id(self, tran_id: str) -> dict[str, Any] | None:
        found = self.find_transactions("purchaseOrder", tran_id=tran_id)
        return found[0] if found else None

    def purchase_order_exists_by_memo(self, memo: str) -> dict[str, Any] | None:
        found = self.find_transactions("purchaseOrder", memo=memo)
        return found[0] if found else None

    def vendor_bill_exists_by_tran_id(self, tran_id: str) -> dict[str, Any] | None:
        found = self.find_transactions("vendorBill", tran_id=tran_id)
        return found[0] if found else None

    def vendor_bill_exists_by_memo(self, memo: str) -> dict[str, Any] | None:
        found = self.find_transactions("vendorBill", memo=memo)
        return found[0] if found else None

    def expense_report_exists_by_tran_id(self, tran_id: str) -> dict[str, Any] | None:
        found = self.find_transactions("expenseReport", tran_id=tran_id)
        return found[0] if found else None

    def get_purchase_order(self, po_id: str | int) -> dict[str, Any]:
        return self.get_record("purchaseOrder", po_id, expand=True)

    def search_purchase_orders(
        self,
        fields: list[str] | None = None,
        where: str | None = None,
        limit: int = SUITEQL_PAGE_MAX,
    ) -> list[dict[str, Any]]:
        clause = f"type = {quote_literal(TRANSACTION_TYPES['purchaseOrder'])}"
        if where:
            clause += f" AND {where}"
        return self.search(
            "transaction",
            fields=fields or "id, tranid, trandate, entity, memo, foreigntotal AS total",
            where=clause,
            limit=limit,
            max_rows=limit,
        )

    def get_item(self, item_id: str | int, item_type: str = "noninventorypurchaseitem") -> dict[str, Any]:
        return self.make_request("GET", f"{RECORD_ENDPOINT}/{item_type}/{item_id}")
