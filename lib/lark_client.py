"""Lark (Feishu) bitable client: workspace listing, field metadata and record CRUD."""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import requests

from lib.config import LARK_BASE_URL, LARK_HTTP_TIMEOUT
from lib.lark_auth import AUTH_FAILURE_CODES, TenantTokenCache, request_tenant_token
from lib.models import BitableInfo, FieldInfo, RecordHandle, TableInfo
from lib.values import FieldValue, is_incomplete, to_field_values
from utils.decorators import log_execution
from utils.errors import InvalidCredentials, RemoteError, RemoteFatal, RemoteTransient
from utils.logging import logger

T = TypeVar("T")

# Lark codes worth retrying: rate limits, write conflicts, internal errors, timeouts.
TRANSIENT_CODES = {
    99991400,
    1254290,
    1254291,
    1254607,
    1255001,
    1255002,
    1255040,
}
TOKEN_INVALID_CODES = {99991661, 99991663, 99991664, 99991665, 99991668}
# Codes returned when a wiki node token is used where a bitable app token is expected.
WIKI_HINT_CODES = {91402, 99991663, 1254003}
CREDENTIAL_REJECTED_CODES = AUTH_FAILURE_CODES
MIN_CREDENTIAL_LENGTH = 10
PAGE_SIZE = 100


def classify_error(code: int, msg: str, context: str, body: Optional[Dict[str, Any]] = None) -> RemoteError:
    """Map a non-zero Lark response code to a transient or fatal error."""
    message = f"{context}: {msg} (Code: {code})"
    if code in TRANSIENT_CODES or code in TOKEN_INVALID_CODES:
        return RemoteTransient(message, code=code, msg=msg, body=body)
    return RemoteFatal(message, code=code, msg=msg, body=body)


class LarkClient:
    """
    Thin client over the Lark open API for one app id / app secret pair.

    All calls authenticate with a tenant access token shared through a
    TenantTokenCache. Wiki node tokens are resolved to the underlying bitable
    app token on demand and the resolution is cached per client.
    """

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        base_url: str = LARK_BASE_URL,
        timeout: float = LARK_HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.app_id = app_id
        self.app_secret = app_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self._tokens = TenantTokenCache(
            lambda: request_tenant_token(self.session, app_id, app_secret, self.base_url, timeout)
        )
        self._wiki_cache: Dict[str, str] = {}
        self._wiki_lock = threading.Lock()

    # ------------------------------------------------------------------ transport

    def call(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
        context: str = "Lark API request failed",
    ) -> Dict[str, Any]:
        """Issue an authenticated request and return the ``data`` object of the response."""
        token = self._tokens.get()
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=payload,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise RemoteTransient(f"{context}: {exc}") from exc
        except requests.RequestException as exc:
            raise RemoteFatal(f"{context}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise RemoteTransient(f"{context}: HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteFatal(f"{context}: response is not JSON (HTTP {response.status_code})") from exc

        code = body.get("code", 0)
        if code != 0:
            if code in TOKEN_INVALID_CODES:
                self._tokens.invalidate()
            logger.debug("Lark API error response for %s %s: %s", method, path, body)
            raise classify_error(code, body.get("msg", ""), context, body)
        return body.get("data") or {}

    def _paginate(self, path: str, params: Dict[str, Any], items_key: str, context: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            query = dict(params)
            if page_token:
                query["page_token"] = page_token
            data = self.call("GET", path, params=query, context=context)
            items.extend(data.get(items_key) or [])
            page_token = data.get("page_token") or data.get("next_page_token")
            if not data.get("has_more") or not page_token:
                return items

    # ------------------------------------------------------------------ wiki tokens

    def resolve_app_token(self, token: str) -> str:
        """Return the bitable app token behind a wiki node token, or the token unchanged."""
        with self._wiki_lock:
            cached = self._wiki_cache.get(token)
        if cached:
            return cached

        node = self.get_wiki_node(token)
        resolved = token
        if node.get("obj_type") == "bitable" and node.get("obj_token"):
            resolved = node["obj_token"]
            logger.info("Resolved wiki token %s to bitable %s", token, resolved)
        with self._wiki_lock:
            self._wiki_cache[token] = resolved
        return resolved

    def get_wiki_node(self, token: str) -> Dict[str, Any]:
        data = self.call(
            "GET",
            "/open-apis/wiki/v2/spaces/get_node",
            params={"token": token},
            context="Failed to get wiki node",
        )
        return data.get("node") or {}

    def _with_wiki_fallback(self, app_token: str, action: Callable[[str], T]) -> T:
        try:
            return action(app_token)
        except RemoteFatal as first_error:
            try:
                resolved = self.resolve_app_token(app_token)
            except RemoteError:
                raise first_error
            if resolved == app_token:
                raise
            return action(resolved)

    # ------------------------------------------------------------------ credentials

    def validate_credentials(self) -> None:
        """
        Check the app credentials against the remote service.

        Raises InvalidCredentials when the pair is malformed or rejected;
        permission errors are accepted since they prove the credentials work.
        """
        if len(self.app_id) < MIN_CREDENTIAL_LENGTH:
            raise InvalidCredentials("App ID format is invalid")
        if len(self.app_secret) < MIN_CREDENTIAL_LENGTH:
            raise InvalidCredentials("App Secret format is invalid")
        try:
            self.call("GET", "/open-apis/drive/v1/files", params={"page_size": 1}, context="Credential check")
        except RemoteFatal as exc:
            if exc.code in CREDENTIAL_REJECTED_CODES:
                raise InvalidCredentials(f"App ID or App Secret is incorrect (Code: {exc.code})") from exc
            logger.warning("Credentials accepted, but the check call returned: %s", exc)

    # ------------------------------------------------------------------ workspace listing

    @log_execution
    def list_bitables(self) -> List[BitableInfo]:
        files = self._paginate(
            "/open-apis/drive/v1/files",
            {"page_size": 200},
            "files",
            "Failed to list bitables",
        )
        bitables = [
            BitableInfo(app_token=item.get("token", ""), name=item.get("name") or "未知")
            for item in files
            if item.get("type") == "bitable"
        ]
        if not bitables:
            logger.warning(
                "No bitables found among %d files; grant drive:drive:readonly and share a bitable with the app",
                len(files),
            )
        return bitables

    @log_execution
    def list_tables(self, app_token: str, is_wiki: bool = False) -> List[TableInfo]:
        if is_wiki:
            return self._list_wiki_tables(app_token)
        try:
            return self._list_bitable_tables(app_token)
        except RemoteError as exc:
            if exc.code in WIKI_HINT_CODES:
                logger.info("Table listing failed with code %s, retrying as a wiki token", exc.code)
                return self._list_wiki_tables(app_token)
            raise

    def _list_bitable_tables(self, app_token: str) -> List[TableInfo]:
        items = self._paginate(
            f"/open-apis/bitable/v1/apps/{app_token}/tables",
            {"page_size": PAGE_SIZE},
            "items",
            "Failed to list tables",
        )
        return [
            TableInfo(table_id=item["table_id"], name=item.get("name", ""))
            for item in items
            if item.get("table_id")
        ]

    def _list_wiki_tables(self, wiki_token: str) -> List[TableInfo]:
        node = self.get_wiki_node(wiki_token)
        if node.get("obj_type") == "bitable" and node.get("obj_token"):
            with self._wiki_lock:
                self._wiki_cache[wiki_token] = node["obj_token"]
            return self._list_bitable_tables(node["obj_token"])

        space_id = node.get("space_id")
        if not space_id:
            return []
        children = self._paginate(
            f"/open-apis/wiki/v2/spaces/{space_id}/nodes",
            {"parent_node_token": node.get("node_token", wiki_token), "page_size": 50},
            "items",
            "Failed to list wiki child nodes",
        )
        tables: List[TableInfo] = []
        for child in children:
            if child.get("obj_type") == "bitable" and child.get("obj_token"):
                tables.extend(self._list_bitable_tables(child["obj_token"]))
        return tables

    @log_execution
    def list_fields(self, app_token: str, table_id: str) -> List[FieldInfo]:
        def _list(token: str) -> List[Dict[str, Any]]:
            return self._paginate(
                f"/open-apis/bitable/v1/apps/{token}/tables/{table_id}/fields",
                {"page_size": PAGE_SIZE},
                "items",
                "Failed to list fields",
            )

        items = self._with_wiki_fallback(app_token, _list)
        fields: List[FieldInfo] = []
        for item in items:
            prop = item.get("property") or {}
            fields.append(
                FieldInfo(
                    field_name=item.get("field_name", ""),
                    field_type=str(item.get("type", "")),
                    field_id=item.get("field_id", ""),
                    is_primary=bool(item.get("is_primary", prop.get("is_primary", False))),
                    ui_type=item.get("ui_type", ""),
                )
            )
        return fields

    # ------------------------------------------------------------------ records

    @log_execution
    def add_record(self, app_token: str, table_id: str, fields: Dict[str, Any]) -> str:
        def _create(token: str) -> Dict[str, Any]:
            try:
                return self.call(
                    "POST",
                    f"/open-apis/bitable/v1/apps/{token}/tables/{table_id}/records",
                    params={"user_id_type": "user_id"},
                    payload={"fields": fields},
                    context="Failed to add record",
                )
            except RemoteError as exc:
                details = _field_violation_details(exc.body)
                if details:
                    raise type(exc)(f"{exc}. Details: {details}", code=exc.code, msg=exc.msg) from exc
                raise

        data = self._with_wiki_fallback(app_token, _create)
        record_id = (data.get("record") or {}).get("record_id")
        if not record_id:
            raise RemoteFatal("Failed to add record: no record id in response")
        return record_id

    def get_record(self, app_token: str, table_id: str, record_id: str) -> Dict[str, Any]:
        """Fetch the raw field map of a record."""

        def _get(token: str) -> Dict[str, Any]:
            return self.call(
                "GET",
                f"/open-apis/bitable/v1/apps/{token}/tables/{table_id}/records/{record_id}",
                params={"user_id_type": "user_id"},
                context="Failed to get record",
            )

        data = self._with_wiki_fallback(app_token, _get)
        record = data.get("record")
        if record is None:
            raise RemoteFatal("Failed to get record: record data is empty")
        return record.get("fields") or {}

    def fetch_field_values(self, handle: RecordHandle) -> Dict[str, FieldValue]:
        return to_field_values(self.get_record(handle.app_token, handle.table_id, handle.record_id))

    def check_fields_completed(
        self, handle: RecordHandle, check_fields: List[str]
    ) -> Tuple[bool, Dict[str, FieldValue]]:
        values = self.fetch_field_values(handle)
        completed = all(not is_incomplete(values.get(name)) for name in check_fields)
        return completed, values


def _field_violation_details(body: Optional[Dict[str, Any]]) -> str:
    if not body:
        return ""
    violations = (body.get("error") or {}).get("field_violations") or []
    return "; ".join(f"field '{v.get('field')}': {v.get('description', '')}" for v in violations)
