# tests/unit/api/test_http_gateway.py — v1
"""Tests for api/http_gateway.py — endpoints and status mapping via MockTransport."""

from __future__ import annotations

import json
from typing import Callable

import httpx
import pytest

from stepbatch.api.http_gateway import HttpGateway
from stepbatch.api.models import CommitRequest, IncomingData, ResolutionEntry, ResolveRequest
from stepbatch.config.settings import Settings
from stepbatch.core.errors import (
    ConflictDetected,
    NetworkError,
    RateLimited,
    RequestTimeout,
    ServiceRejection,
    SubmissionValidationError,
)
from stepbatch.core.models import DateRange, RecordFilter

BASE = "https://api.test/api/"


def _gateway(handler: Callable[[httpx.Request], httpx.Response]) -> tuple[HttpGateway, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    transport = httpx.MockTransport(_record)
    client = httpx.AsyncClient(base_url=BASE, transport=transport, headers={"Authorization": "Bearer t0k"})
    upload_client = httpx.AsyncClient(transport=transport)
    return HttpGateway(BASE, client=client, upload_client=upload_client), seen


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


class TestEndpoints:
    @pytest.mark.asyncio
    async def test_sign_and_upload(self):
        def handler(request):
            if request.url.path == "/api/proofs/sign-upload":
                return httpx.Response(200, json={"upload_url": "https://storage.test/u/1", "path": "proofs/1.jpg"})
            return httpx.Response(200)

        gw, seen = _gateway(handler)
        target = await gw.sign_upload("image/jpeg")
        await gw.upload(target.upload_url, b"jpegbytes", "image/jpeg")

        assert target.path == "proofs/1.jpg"
        put = seen[1]
        assert put.method == "PUT"
        assert str(put.url) == "https://storage.test/u/1"
        assert put.headers["x-upsert"] == "true"
        assert "authorization" not in put.headers
        assert put.content == b"jpegbytes"

    @pytest.mark.asyncio
    async def test_extract_maps_wire_fields(self):
        def handler(request):
            return httpx.Response(200, json={
                "extracted_steps": 12345, "extracted_date": "2026-01-10",
                "extracted_km": 8.2, "confidence": "medium", "notes": "blurry",
            })

        gw, seen = _gateway(handler)
        result = await gw.extract("proofs/1.jpg", context_hint="IMG_0110.png", league_id="lg")

        assert result.steps == 12345
        assert result.date == "2026-01-10"
        assert result.distance_km == 8.2
        assert result.confidence == "medium"
        body = json.loads(seen[0].content)
        assert body == {"proof_path": "proofs/1.jpg", "league_id": "lg", "filename": "IMG_0110.png"}

    @pytest.mark.asyncio
    async def test_commit_payload(self):
        def handler(request):
            return httpx.Response(200, json={"submission": {"id": "s1", "verified": None}})

        gw, seen = _gateway(handler)
        response = await gw.commit(
            CommitRequest(date="2026-01-10", steps=900, proof_ref="proofs/1.jpg", overwrite=True)
        )

        assert response.id == "s1"
        assert seen[0].url.path == "/api/submissions/batch"
        body = json.loads(seen[0].content)
        assert body == {"date": "2026-01-10", "steps": 900, "proof_path": "proofs/1.jpg", "overwrite": True}

    @pytest.mark.asyncio
    async def test_delete_patch_reverify(self):
        def handler(request):
            if request.url.path.endswith("reanalyze"):
                return httpx.Response(200, json={"results": [{"id": "a", "success": True}]})
            if request.method == "DELETE":
                return httpx.Response(200, json={"success": True, "count": 2})
            return httpx.Response(200, json={})

        gw, seen = _gateway(handler)
        deleted = await gw.delete_records(["a", "b"])
        await gw.patch_record_date("a", "2026-01-05", "wrong day")
        reverified = await gw.reverify(["a"])

        assert deleted.count == 2
        assert json.loads(seen[0].content) == {"ids": ["a", "b"]}
        assert seen[1].method == "PATCH"
        assert seen[1].url.path == "/api/submissions/a"
        assert json.loads(seen[1].content) == {"for_date": "2026-01-05", "reason": "wrong day"}
        assert reverified.results[0].success

    @pytest.mark.asyncio
    async def test_list_records_params(self):
        def handler(request):
            return httpx.Response(200, json={
                "submissions": [{"id": "r1", "for_date": "2026-01-10", "steps": 100, "proof_path": None}],
                "total": 31,
            })

        gw, seen = _gateway(handler)
        page = await gw.list_records(
            RecordFilter(league_id="lg", user_id="u1", date_range=DateRange(start="2026-01-01", end="2026-01-31")),
            limit=10, offset=20,
        )

        assert page.total == 31
        assert page.items[0].date == "2026-01-10"
        params = seen[0].url.params
        assert params["limit"] == "10"
        assert params["offset"] == "20"
        assert params["user_id"] == "u1"
        assert params["exclude_proxy"] == "true"
        assert params["start_date"] == "2026-01-01"

    @pytest.mark.asyncio
    async def test_unresolvable_proxy_filter_makes_no_request(self):
        gw, seen = _gateway(lambda request: httpx.Response(500))
        page = await gw.list_records(RecordFilter(view_context="proxy"), limit=10)
        assert page.total == 0
        assert seen == []

    @pytest.mark.asyncio
    async def test_check_conflicts(self):
        def handler(request):
            return httpx.Response(200, json={
                "has_conflicts": True,
                "conflicts": [{
                    "date": "2026-01-10",
                    "existing": {
                        "id": "s1", "for_date": "2026-01-10", "steps": 4000, "verified": False,
                        "proof_path": None, "created_at": "2026-01-10T08:00:00Z",
                    },
                    "source": "manual",
                }],
                "conflict_dates": ["2026-01-10"],
            })

        gw, seen = _gateway(handler)
        response = await gw.check_conflicts(["2026-01-10", "2026-01-11"], league_id="lg")

        assert seen[0].method == "POST"
        assert seen[0].url.path == "/api/submissions/check-conflict"
        assert json.loads(seen[0].content) == {"dates": ["2026-01-10", "2026-01-11"], "league_id": "lg"}
        assert response.has_conflicts
        assert response.conflict_dates == ["2026-01-10"]
        existing = response.conflicts[0].existing.as_existing()
        assert existing.id == "s1"
        assert existing.created_at == "2026-01-10T08:00:00Z"

    @pytest.mark.asyncio
    async def test_resolve_conflicts(self):
        def handler(request):
            return httpx.Response(200, json={
                "resolved": 1,
                "total": 1,
                "results": [{
                    "date": "2026-01-10", "action": "use_incoming", "success": True,
                    "message": "Replaced existing submission", "submission_id": "s1",
                }],
            })

        gw, seen = _gateway(handler)
        request = ResolveRequest(
            resolutions=[ResolutionEntry(
                date="2026-01-10", action="use_incoming",
                incoming=IncomingData(steps=11_000, proof_ref="proofs/1.jpg"),
            )],
            league_id="lg",
        )
        response = await gw.resolve_conflicts(request)

        assert seen[0].url.path == "/api/submissions/resolve"
        assert json.loads(seen[0].content) == {
            "resolutions": [{
                "date": "2026-01-10", "action": "use_incoming",
                "incoming_data": {"steps": 11_000, "proof_path": "proofs/1.jpg"},
            }],
            "league_id": "lg",
        }
        assert response.resolved == 1
        assert response.results[0].record_id == "s1"


# ---------------------------------------------------------------------------
# Status mapping
# ---------------------------------------------------------------------------


class TestStatusMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error_cls",
        [
            (429, RateLimited),
            (408, RequestTimeout),
            (504, RequestTimeout),
            (400, SubmissionValidationError),
            (422, SubmissionValidationError),
            (500, ServiceRejection),
            (403, ServiceRejection),
        ],
    )
    async def test_status_codes(self, status, error_cls):
        gw, _ = _gateway(lambda request: httpx.Response(status, json={"error": "nope"}))
        with pytest.raises(error_cls) as exc_info:
            await gw.extract("proofs/1.jpg")
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_conflict_response(self):
        def handler(request):
            return httpx.Response(409, json={
                "error": "exists",
                "existing": {"id": "old", "steps": 4000, "verified": False, "proof_path": None},
            })

        gw, _ = _gateway(handler)
        with pytest.raises(ConflictDetected) as exc_info:
            await gw.commit(CommitRequest(date="2026-01-10", steps=900))
        assert exc_info.value.existing.id == "old"
        assert exc_info.value.existing.proof_ref is None
        assert exc_info.value.date == "2026-01-10"

    @pytest.mark.asyncio
    async def test_409_without_existing_is_rejection(self):
        gw, _ = _gateway(lambda request: httpx.Response(409, json={"error": "dup"}))
        with pytest.raises(ServiceRejection):
            await gw.commit(CommitRequest(date="2026-01-10", steps=900))

    @pytest.mark.asyncio
    async def test_transport_errors(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        gw, _ = _gateway(refuse)
        with pytest.raises(NetworkError):
            await gw.sign_upload("image/png")

    @pytest.mark.asyncio
    async def test_timeouts(self):
        def slow(request):
            raise httpx.ReadTimeout("slow", request=request)

        gw, _ = _gateway(slow)
        with pytest.raises(RequestTimeout):
            await gw.sign_upload("image/png")

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        gw, _ = _gateway(lambda request: httpx.Response(502, text="<html>bad gateway</html>"))
        with pytest.raises(ServiceRejection, match="502"):
            await gw.sign_upload("image/png")


class TestConstruction:
    @pytest.mark.asyncio
    async def test_from_settings(self):
        gw = HttpGateway.from_settings(
            Settings(_env_file=None, api_base_url="https://x.test/api", api_token="abc")
        )
        assert gw._client.headers["Authorization"] == "Bearer abc"
        assert str(gw._client.base_url) == "https://x.test/api/"
        await gw.aclose()
