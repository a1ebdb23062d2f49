# src/api/http_gateway.py — v1
"""HTTP implementation of BaseGateway on top of httpx.AsyncClient.

Endpoints (relative to API_BASE_URL):
    POST   proofs/sign-upload              -> {upload_url, path}
    PUT    <upload_url>                     (signed, no bearer token)
    POST   submissions/extract             -> extraction fields
    POST   submissions/batch               -> {submission: {id, verified}} | 409 {existing}
    POST   submissions/check-conflict {dates, league_id} -> {has_conflicts, conflicts, conflict_dates}
    POST   submissions/resolve {resolutions, league_id} -> {resolved, total, results}
    DELETE submissions/bulk     {ids}      -> {success, count}
    PATCH  submissions/{id}     {for_date, reason}
    POST   submissions/bulk/reanalyze {ids} -> {results: [{id, success, error}]}
    GET    submissions?...                 -> {submissions, total}
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from stepbatch.api.base_gateway import BaseGateway
from stepbatch.api.models import (
    BulkResponse,
    CommitRequest,
    CommitResponse,
    ConflictCheckResponse,
    ExtractionResponse,
    RecordPage,
    ResolveRequest,
    ResolveResponse,
    UploadTarget,
)
from stepbatch.core.errors import (
    ConflictDetected,
    NetworkError,
    RateLimited,
    RequestTimeout,
    ServiceRejection,
    SubmissionValidationError,
)
from stepbatch.core.models import ExistingRecord, RecordFilter

if TYPE_CHECKING:
    from stepbatch.config.settings import Settings

logger = logging.getLogger(__name__)


class HttpGateway(BaseGateway):
    """Talks to the submissions backend over HTTPS.

    Args:
        base_url: API root, e.g. ``https://example.org/api``.
        token: Bearer token for authenticated endpoints.
        timeout_s: Per-request timeout.
        client: Pre-built client (tests inject one with a MockTransport).
        upload_client: Client used for signed-URL uploads.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
        upload_client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        timeout = httpx.Timeout(timeout_s, connect=5.0)
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/", headers=headers, timeout=timeout,
        )
        self._upload_client = upload_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpGateway:
        return cls(
            base_url=settings.api_base_url,
            token=settings.api_token,
            timeout_s=settings.request_timeout_s,
        )

    # --- Upload + extraction ---

    async def sign_upload(self, content_type: str) -> UploadTarget:
        data = await self._request("POST", "proofs/sign-upload", json={"content_type": content_type})
        return UploadTarget.model_validate(data)

    async def upload(self, upload_url: str, data: bytes, content_type: str) -> None:
        response = await self._send(
            self._upload_client, "PUT", upload_url,
            content=data, headers={"Content-Type": content_type, "x-upsert": "true"},
        )
        _raise_for_status(response)
        logger.debug("Uploaded %d bytes", len(data))

    async def extract(
        self, proof_ref: str, context_hint: str | None = None, league_id: str | None = None,
    ) -> ExtractionResponse:
        payload: dict[str, Any] = {"proof_path": proof_ref, "league_id": league_id}
        if context_hint:
            payload["filename"] = context_hint
        data = await self._request("POST", "submissions/extract", json=payload)
        return ExtractionResponse.model_validate(data)

    # --- Records ---

    async def commit(self, request: CommitRequest) -> CommitResponse:
        payload = request.model_dump(by_alias=True, exclude_none=True)
        data = await self._request("POST", "submissions/batch", json=payload, conflict_date=request.date)
        submission = data.get("submission", data)
        return CommitResponse.model_validate(submission)

    async def check_conflicts(
        self, dates: list[str], league_id: str | None = None,
    ) -> ConflictCheckResponse:
        data = await self._request(
            "POST", "submissions/check-conflict", json={"dates": dates, "league_id": league_id},
        )
        return ConflictCheckResponse.model_validate(data)

    async def resolve_conflicts(self, request: ResolveRequest) -> ResolveResponse:
        payload = request.model_dump(by_alias=True, exclude_none=True)
        data = await self._request("POST", "submissions/resolve", json=payload)
        return ResolveResponse.model_validate(data)

    async def delete_records(self, ids: list[str]) -> BulkResponse:
        data = await self._request("DELETE", "submissions/bulk", json={"ids": ids})
        return BulkResponse.model_validate(data)

    async def patch_record_date(self, record_id: str, new_date: str, reason: str) -> None:
        await self._request(
            "PATCH", f"submissions/{record_id}", json={"for_date": new_date, "reason": reason},
        )

    async def reverify(self, ids: list[str]) -> BulkResponse:
        data = await self._request("POST", "submissions/bulk/reanalyze", json={"ids": ids})
        return BulkResponse.model_validate(data)

    async def list_records(
        self, record_filter: RecordFilter, limit: int, offset: int = 0,
    ) -> RecordPage:
        if not record_filter.is_resolvable:
            logger.debug("Proxy view without a proxy member; returning an empty page")
            return RecordPage()
        params: dict[str, Any] = {"limit": limit, "offset": offset, "order_by": "created_at"}
        if record_filter.league_id:
            params["league_id"] = record_filter.league_id
        if record_filter.view_context == "me":
            if record_filter.user_id:
                params["user_id"] = record_filter.user_id
            params["exclude_proxy"] = "true"
        else:
            params["proxy_member_id"] = record_filter.proxy_member_id
        if record_filter.date_range is not None:
            params["start_date"] = record_filter.date_range.start
            params["end_date"] = record_filter.date_range.end
        data = await self._request("GET", "submissions", params=params)
        return RecordPage.model_validate(data)

    async def aclose(self) -> None:
        await self._client.aclose()
        await self._upload_client.aclose()

    # --- Internals ---

    async def _request(
        self, method: str, path: str, conflict_date: str | None = None, **kwargs: Any,
    ) -> dict[str, Any]:
        response = await self._send(self._client, method, path, **kwargs)
        _raise_for_status(response, conflict_date=conflict_date)
        if not response.content:
            return {}
        return response.json()

    @staticmethod
    async def _send(
        client: httpx.AsyncClient, method: str, url: str, **kwargs: Any,
    ) -> httpx.Response:
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise RequestTimeout(f"{method} {url} timed out") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {url} failed: {exc}") from exc


def _raise_for_status(response: httpx.Response, conflict_date: str | None = None) -> None:
    """Translate a non-2xx response into the error taxonomy."""
    status = response.status_code
    if status < 400:
        return

    body = _safe_json(response)
    message = str(body.get("error") or body.get("message") or response.reason_phrase)

    if status == 409 and isinstance(body.get("existing"), dict):
        raw = body["existing"]
        existing = ExistingRecord(
            id=str(raw["id"]),
            steps=int(raw.get("steps") or 0),
            verified=raw.get("verified"),
            proof_ref=raw.get("proof_path") or raw.get("proof_ref"),
            created_at=raw.get("created_at"),
        )
        raise ConflictDetected(existing, date=raw.get("for_date") or conflict_date)
    if status == 429:
        raise RateLimited(message, status_code=status)
    if status in (408, 504):
        raise RequestTimeout(message, status_code=status)
    if status in (400, 422):
        raise SubmissionValidationError(message, status_code=status)
    raise ServiceRejection(f"HTTP {status}: {message}", status_code=status)


def _safe_json(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
