from __future__ import annotations

from collections.abc import Iterator
import logging
from dataclasses import dataclass
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.jobs.scheduler import SyncScheduler, get_scheduler
from app.main import app
from app.services.repository import get_repository
from app.services.store import InMemoryRepository

OPERATOR_KEY = "operator-secret"
HEADERS = {"X-Operator-Key": OPERATOR_KEY, "X-Operator-Id": "alice"}
NO_DATE_PAGE = "<html><body><h1>Example Marathon</h1><p>Registration opens soon</p></body></html>"
DATED_PAGE = "<html><body><h1>Example Marathon</h1><p>Race day 2026-03-07</p></body></html>"


@dataclass
class AdminApi:
    client: TestClient
    repository: InMemoryRepository
    pages: dict[str, str]

    def post(self, path: str, payload: Any = None) -> httpx.Response:
        return self.client.post(path, json=payload, headers=HEADERS)

    def patch(self, path: str, payload: Any) -> httpx.Response:
        return self.client.patch(path, json=payload, headers=HEADERS)

    def get(self, path: str, **params: Any) -> httpx.Response:
        return self.client.get(path, params=params, headers=HEADERS)

    def seed(self, *, source_name: str = "official-site", source_type: str = "official") -> dict[str, str]:
        source = self.post("/admin/sources", {"name": source_name, "type": source_type, "priority": 90})
        assert source.status_code == 201, source.text
        series = self.post(
            "/admin/series",
            {"name": "Example Marathon", "canonical_name": f"example-marathon-{source_name}"},
        )
        assert series.status_code == 201, series.text
        link = self.post(
            "/admin/links",
            {
                "series_id": series.json()["id"],
                "source_id": source.json()["id"],
                "url": "https://race.example.com/2026",
            },
        )
        assert link.status_code == 201, link.text
        return {"source_id": source.json()["id"], "series_id": series.json()["id"], "link_id": link.json()["id"]}

    def sync_link(self, link_id: str) -> dict[str, Any]:
        response = self.post("/admin/sync", {"link_id": link_id})
        assert response.status_code == 200, response.text
        return response.json()


@pytest.fixture
def admin_api(monkeypatch: pytest.MonkeyPatch) -> Iterator[AdminApi]:
    monkeypatch.setenv("RACESYNC_OPERATOR_API_KEY", OPERATOR_KEY)
    monkeypatch.setenv("RACESYNC_STORAGE_BACKEND", "memory")
    monkeypatch.setenv("RACESYNC_AI_ENABLE_RULE_GEN", "false")
    get_settings.cache_clear()

    repository = InMemoryRepository()
    pages = {"current": DATED_PAGE}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/html"}, content=pages["current"].encode("utf-8"))

    async def no_sleep(_: float) -> None:
        return None

    scheduler = SyncScheduler(
        repository,
        lock=repository.create_scheduler_lock(1),
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=no_sleep,
    )
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_scheduler] = lambda: scheduler

    with TestClient(app) as client:
        yield AdminApi(client=client, repository=repository, pages=pages)

    app.dependency_overrides.clear()
    get_settings.cache_clear()


def test_admin_routes_require_operator_key(admin_api: AdminApi) -> None:
    missing = admin_api.client.get("/admin/sources")
    wrong = admin_api.client.get("/admin/sources", headers={"X-Operator-Key": "nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 401


def test_request_log_omits_caller_supplied_operator_id(
    admin_api: AdminApi,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO, logger="app.main")

    response = admin_api.client.get(
        "/admin/sources",
        headers={"X-Operator-Key": "nope", "X-Operator-Id": "forged-operator"},
    )

    assert response.status_code == 401
    request_logs = [record.getMessage() for record in caplog.records if record.name == "app.main"]
    assert any("path=/admin/sources status=401" in message for message in request_logs)
    assert not any("forged" in message for message in request_logs)


def test_admin_routes_unavailable_without_configured_key(
    admin_api: AdminApi,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("RACESYNC_OPERATOR_API_KEY")
    get_settings.cache_clear()

    response = admin_api.get("/admin/sources")

    assert response.status_code == 503


def test_source_create_list_and_patch(admin_api: AdminApi) -> None:
    created = admin_api.post(
        "/admin/sources",
        {
            "name": "official-site",
            "type": "official",
            "priority": 90,
            "extraction_config": {"extract": {"raceDate": {"selector": "time", "attr": "datetime"}}},
        },
    )
    assert created.status_code == 201
    source = created.json()
    assert source["retry_max"] == 3
    assert source["extraction_config"]["kind"] == "selector"

    assert admin_api.post("/admin/sources", {"name": "official-site"}).status_code == 409
    assert admin_api.post("/admin/sources", {"name": "other", "type": "newspaper"}).status_code == 422

    invalid = admin_api.patch(
        f"/admin/sources/{source['id']}",
        {"extraction_config": {"kind": "selector", "extract": {"raceDate": {"selector": "time", "regex": "("}}}},
    )
    assert invalid.status_code == 422
    assert admin_api.patch(f"/admin/sources/{source['id']}", {"priority": None}).status_code == 422

    patched = admin_api.patch(f"/admin/sources/{source['id']}", {"extraction_config": None, "retry_max": 5})
    assert patched.status_code == 200
    assert patched.json()["extraction_config"] is None
    assert patched.json()["retry_max"] == 5
    assert patched.json()["priority"] == 90

    assert admin_api.patch("/admin/sources/missing", {"priority": 1}).status_code == 404
    listed = admin_api.get("/admin/sources")
    assert [row["name"] for row in listed.json()] == ["official-site"]


def test_link_validation(admin_api: AdminApi) -> None:
    ids = admin_api.seed()

    bad_url = admin_api.post(
        "/admin/links",
        {"series_id": ids["series_id"], "source_id": ids["source_id"], "url": "ftp://race.example.com"},
    )
    unknown_series = admin_api.post(
        "/admin/links",
        {"series_id": "missing", "source_id": ids["source_id"], "url": "https://race.example.com"},
    )
    duplicate = admin_api.post(
        "/admin/links",
        {"series_id": ids["series_id"], "source_id": ids["source_id"], "url": ""},
    )

    assert bad_url.status_code == 422
    assert unknown_series.status_code == 404
    assert duplicate.status_code == 409
    listed = admin_api.get("/admin/links", series_id=ids["series_id"])
    assert [row["id"] for row in listed.json()] == [ids["link_id"]]


def test_manual_sync_archives_and_merges(admin_api: AdminApi) -> None:
    ids = admin_api.seed()

    result = admin_api.sync_link(ids["link_id"])

    assert result["status"] == "success"
    editions = admin_api.get(f"/admin/series/{ids['series_id']}/editions").json()
    assert len(editions) == 1
    assert editions[0]["year"] == 2026
    assert editions[0]["race_date"] == "2026-03-07"
    assert editions[0]["field_sources"]["race_date"]["source_type"] == "official"

    runs = admin_api.get("/admin/sync-runs", link_id=ids["link_id"]).json()
    assert [run["id"] for run in runs] == [result["run_id"]]
    assert runs[0]["new_count"] == 1

    snapshots = admin_api.get("/admin/snapshots", status="processed").json()
    assert len(snapshots) == 1
    assert "raw_content" not in snapshots[0]
    detail = admin_api.get(f"/admin/snapshots/{snapshots[0]['id']}").json()
    assert detail["raw_content"] == DATED_PAGE

    assert admin_api.post("/admin/sync", {"link_id": "missing"}).status_code == 404
    assert admin_api.get("/admin/series/missing/editions").status_code == 404
    assert admin_api.get("/admin/sync-runs", status="bogus").status_code == 422


def test_sync_all_starts_a_background_pass(admin_api: AdminApi) -> None:
    response = admin_api.post("/admin/sync")

    assert response.status_code == 200
    assert response.json()["status"] in {"started", "skipped"}
    assert response.json()["run_id"]


def test_review_status_transitions(admin_api: AdminApi) -> None:
    ids = admin_api.seed()
    admin_api.sync_link(ids["link_id"])
    processed = admin_api.get("/admin/snapshots", status="processed").json()[0]

    assert admin_api.patch(f"/admin/snapshots/{processed['id']}", {"status": "pending"}).status_code == 409
    assert admin_api.patch(f"/admin/snapshots/{processed['id']}", {"status": "bogus"}).status_code == 422

    admin_api.pages["current"] = NO_DATE_PAGE
    admin_api.sync_link(ids["link_id"])
    queued = admin_api.get("/admin/snapshots", status="needs_review").json()
    assert len(queued) == 1

    ignored = admin_api.patch(f"/admin/snapshots/{queued[0]['id']}", {"status": "ignored", "note": "off-season"})
    assert ignored.status_code == 200
    assert ignored.json()["status"] == "ignored"
    assert ignored.json()["metadata"]["review"] == {"by": "alice", "status": "ignored", "note": "off-season"}
    assert ignored.json()["processed_at"] is not None


def test_manual_correction_wins_over_later_sources(admin_api: AdminApi) -> None:
    ids = admin_api.seed()
    admin_api.pages["current"] = NO_DATE_PAGE
    admin_api.sync_link(ids["link_id"])
    snapshot = admin_api.get("/admin/snapshots", status="needs_review").json()[0]

    assert admin_api.post(f"/admin/snapshots/{snapshot['id']}/corrections", {"note": "empty"}).status_code == 422
    assert (
        admin_api.post(f"/admin/snapshots/{snapshot['id']}/corrections", {"registration_status": "open"}).status_code
        == 422
    )

    corrected = admin_api.post(
        f"/admin/snapshots/{snapshot['id']}/corrections",
        {"race_date": "2026年3月8日", "note": "confirmed by phone"},
    )
    assert corrected.status_code == 200, corrected.text
    body = corrected.json()
    assert body["merge"]["action"] == "inserted"
    assert body["snapshot"]["status"] == "processed"
    assert body["snapshot"]["metadata"]["correction"]["by"] == "alice"

    again = admin_api.post(f"/admin/snapshots/{snapshot['id']}/corrections", {"race_date": "2026-03-09"})
    assert again.status_code == 409

    admin_api.pages["current"] = DATED_PAGE
    admin_api.sync_link(ids["link_id"])
    conflicted = admin_api.get("/admin/snapshots", status="needs_review").json()
    assert len(conflicted) == 1
    assert conflicted[0]["metadata"]["merge"]["conflicts"][0]["field"] == "race_date"

    edition = admin_api.get(f"/admin/series/{ids['series_id']}/editions").json()[0]
    assert edition["race_date"] == "2026-03-08"
    assert edition["field_sources"]["race_date"]["source_type"] == "manual"
    assert edition["field_sources"]["race_date"]["source_id"] == "manual:alice"

    second_opinion = admin_api.post(
        f"/admin/snapshots/{conflicted[0]['id']}/corrections",
        {"race_date": "2026-03-09", "registration_status": "open"},
    )
    assert second_opinion.status_code == 409
    detail = second_opinion.json()["detail"]
    assert [conflict["field"] for conflict in detail["conflicts"]] == ["race_date"]
    assert detail["conflicts"][0]["existing"]["value"] == "2026-03-08"
    assert detail["conflicts"][0]["incoming"]["value"] == "2026-03-09"
    assert admin_api.get(f"/admin/snapshots/{conflicted[0]['id']}").json()["status"] == "needs_review"
    edition = admin_api.get(f"/admin/series/{ids['series_id']}/editions").json()[0]
    assert edition["race_date"] == "2026-03-08"
    assert edition["registration_status"] != "open"

    status_only = admin_api.post(
        f"/admin/snapshots/{conflicted[0]['id']}/corrections",
        {"registration_status": "closed"},
    )
    assert status_only.status_code == 200
    assert status_only.json()["merge"]["year"] == 2026
    edition = admin_api.get(f"/admin/series/{ids['series_id']}/editions").json()[0]
    assert edition["registration_status"] == "closed"
    assert edition["race_date"] == "2026-03-08"


def test_rule_template_preview_and_apply(admin_api: AdminApi) -> None:
    admin_api.pages["current"] = (
        '<html><head><meta itemprop="startDate" content="2026-04-12"></head>'
        '<body><div class="status">Registration: Open</div></body></html>'
    )
    ids = admin_api.seed()
    admin_api.sync_link(ids["link_id"])
    snapshot = admin_api.get("/admin/snapshots").json()[0]
    template = {
        "extract": {
            "raceDate": {"selector": "meta[itemprop=startDate]", "attr": "content"},
            "registrationStatus": {"selector": ".status", "regex": "Registration:\\s*(\\w+)"},
        },
        "notes": "microdata",
    }

    preview = admin_api.post(f"/admin/snapshots/{snapshot['id']}/rule-template/preview", {"template": template})
    assert preview.status_code == 200
    assert preview.json()["race_date"] == {"raw": "2026-04-12", "normalized": "2026-04-12"}
    assert preview.json()["registration_status"]["raw"] == "Open"
    assert preview.json()["registration_url"] == {"raw": None, "normalized": None}

    source_id = ids["source_id"]
    empty = admin_api.post(f"/admin/sources/{source_id}/rule-template/apply", {"template": {"extract": {}}})
    assert empty.status_code == 422

    other = admin_api.seed(source_name="ticket-platform", source_type="platform")
    foreign = admin_api.post(
        f"/admin/sources/{source_id}/rule-template/apply",
        {"template": template, "verify_link_id": other["link_id"]},
    )
    assert foreign.status_code == 422

    admin_api.pages["current"] = admin_api.pages["current"].replace("Open", "Closed")
    applied = admin_api.post(
        f"/admin/sources/{source_id}/rule-template/apply",
        {"template": template, "verify_link_id": ids["link_id"]},
    )
    assert applied.status_code == 200, applied.text
    body = applied.json()
    config = body["source"]["extraction_config"]
    assert config["kind"] == "selector"
    assert config["extract"]["race_date"]["selector"] == "meta[itemprop=startDate]"
    assert config["notes"] == "microdata"
    assert body["verification"]["status"] == "success"
    assert body["verification"]["unchanged"] is False

    verified = admin_api.get(f"/admin/snapshots/{body['verification']['snapshot_id']}").json()
    assert verified["metadata"]["extraction"]["method"] == "rule"
    assert verified["metadata"]["extraction"]["registration_status"] == "Closed"


def test_rule_template_generation_disabled(admin_api: AdminApi) -> None:
    ids = admin_api.seed()
    admin_api.sync_link(ids["link_id"])
    snapshot = admin_api.get("/admin/snapshots").json()[0]

    response = admin_api.post(f"/admin/snapshots/{snapshot['id']}/rule-template/generate")

    assert response.status_code == 503
    assert admin_api.post("/admin/snapshots/missing/rule-template/generate").status_code == 404
