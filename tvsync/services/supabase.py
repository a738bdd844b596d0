"""HTTP transport for the Supabase REST backend."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

import httpx

from ..config import Settings
from ..stores import SessionStore

logger = logging.getLogger(__name__)

_MISSING_RESOURCE_CODES = frozenset({"PGRST205", "PGRST202"})
_MISSING_RESOURCE_MARKERS = (
    "PGRST205",
    "PGRST202",
    "Could not find the table",
    "Could not find the function",
)
_CONFLICT_TARGET_CODE = "42P10"
_CONFLICT_TARGET_MARKERS = (
    "42P10",
    "no unique or exclusion constraint matching the ON CONFLICT specification",
)


class SupabaseError(Exception):
    """A failed backend request, normalised from the HTTP response."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        code: str | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.detail = detail

    @classmethod
    def from_response(cls, response: httpx.Response) -> "SupabaseError":
        text = response.text
        code: str | None = None
        detail: str | None = None
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            if isinstance(payload.get("code"), str):
                code = payload["code"]
            if isinstance(payload.get("message"), str):
                detail = payload["message"]
        return cls(text or response.reason_phrase, status=response.status_code, code=code, detail=detail)

    def __str__(self) -> str:
        parts = [f"status={self.status}" if self.status is not None else "transport"]
        if self.code:
            parts.append(f"code={self.code}")
        parts.append(self.detail or super().__str__())
        return " ".join(parts)


def _error_text(error: SupabaseError) -> str:
    return " ".join(filter(None, (error.args[0] if error.args else "", error.detail or "")))


def is_missing_resource(error: BaseException | None) -> bool:
    """Whether the backend reported that a table or function does not exist."""

    if not isinstance(error, SupabaseError):
        return False
    if error.status == 404:
        return True
    if error.code in _MISSING_RESOURCE_CODES:
        return True
    text = _error_text(error)
    return any(marker in text for marker in _MISSING_RESOURCE_MARKERS)


def is_conflict_target_error(error: BaseException | None) -> bool:
    """Whether an upsert named a conflict target without a matching constraint."""

    if not isinstance(error, SupabaseError):
        return False
    if error.code == _CONFLICT_TARGET_CODE:
        return True
    text = _error_text(error)
    return any(marker in text for marker in _CONFLICT_TARGET_MARKERS)


def eq(value: Any) -> str:
    """PostgREST equality filter value."""

    return f"eq.{value}"


class SupabaseClient:
    """Thin wrapper around the PostgREST procedure and table endpoints."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        session: SessionStore,
    ) -> None:
        self._settings = settings
        self._client = http_client
        self._session = session

    def _headers(
        self,
        *,
        use_session_auth: bool,
        extra: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        anon_key = self._settings.supabase_anon_key or ""
        headers = {"apikey": anon_key}
        if extra:
            headers.update(extra)
        access_token = self._session.access_token if use_session_auth else None
        headers["Authorization"] = f"Bearer {access_token or anon_key}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        use_session_auth: bool,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
        extra_headers: Mapping[str, str] | None = None,
    ) -> Any:
        headers = self._headers(use_session_auth=use_session_auth, extra=extra_headers)
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                headers=headers,
                json=body,
            )
        except httpx.HTTPError as exc:
            raise SupabaseError(
                f"{exc.__class__.__name__} during {method} {path}: {exc}"
            ) from exc

        if response.status_code >= 400:
            raise SupabaseError.from_response(response)
        if response.status_code == 204:
            return None
        if not response.content.strip():
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise SupabaseError(
                f"Unexpected non-JSON response for {method} {path}",
                status=response.status_code,
            ) from exc

    async def call_procedure(
        self,
        name: str,
        args: Mapping[str, Any] | None = None,
        use_session_auth: bool = True,
    ) -> Any:
        """Invoke ``/rest/v1/rpc/<name>`` with a JSON argument object."""

        return await self._request(
            "POST",
            f"/rest/v1/rpc/{name}",
            use_session_auth=use_session_auth,
            body=dict(args or {}),
        )

    async def select_rows(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        use_session_auth: bool = True,
    ) -> list[dict[str, Any]]:
        """Read rows; non-list payloads are treated as no rows."""

        payload = await self._request(
            "GET",
            f"/rest/v1/{table}",
            use_session_auth=use_session_auth,
            params=filters,
        )
        if not isinstance(payload, list):
            return []
        return [row for row in payload if isinstance(row, dict)]

    async def upsert_rows(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on_conflict: str | Sequence[str] | None = None,
        use_session_auth: bool = True,
    ) -> Any:
        """Insert or merge ``rows``; ``on_conflict`` names the unique columns."""

        params: dict[str, str] | None = None
        if on_conflict:
            columns = on_conflict if isinstance(on_conflict, str) else ",".join(on_conflict)
            params = {"on_conflict": columns}
        return await self._request(
            "POST",
            f"/rest/v1/{table}",
            use_session_auth=use_session_auth,
            params=params,
            body=[dict(row) for row in rows],
            extra_headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )

    async def delete_rows(
        self,
        table: str,
        filters: Mapping[str, Any],
        use_session_auth: bool = True,
    ) -> Any:
        """Delete rows matching ``filters``."""

        return await self._request(
            "DELETE",
            f"/rest/v1/{table}",
            use_session_auth=use_session_auth,
            params=filters,
            extra_headers={"Prefer": "return=representation"},
        )
