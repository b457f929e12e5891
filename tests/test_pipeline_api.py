"""Tests for the /api/pipeline JSON blueprint.

Covers:
- API key enforcement (open when unset, Bearer token when set)
- Stage routes (list, create, update, reorder)
- Deal routes (create, detail, edit, move, won, lost, delete, filters)
- Error rendering (status codes, codes, closure_command hint)
- Activity routes, board and forecast
"""

import pytest

from dealflow.extensions import db
from dealflow.models.deal import Deal
from dealflow.models.deal_activity import DealActivity


def _create_deal(client, title="Acme LED Retrofit", value=12000, **extra):
    resp = client.post(
        "/api/pipeline/deals",
        json={"title": title, "value": value, **extra},
        headers={"X-Actor-Id": "user-1"},
    )
    assert resp.status_code == 201
    return resp.get_json()


# ─── Auth ────────────────────────────────────────────────────────

class TestApiKey:

    def test_open_when_no_key_configured(self, client, stages):
        resp = client.get("/api/pipeline/stages")
        assert resp.status_code == 200

    def test_missing_token_rejected(self, client, stages, app, monkeypatch):
        monkeypatch.setitem(app.config, "PIPELINE_API_KEY", "s3cret")
        resp = client.get("/api/pipeline/stages")
        assert resp.status_code == 401
        assert resp.get_json()["code"] == "unauthorized"

    def test_wrong_token_rejected(self, client, stages, app, monkeypatch):
        monkeypatch.setitem(app.config, "PIPELINE_API_KEY", "s3cret")
        resp = client.get(
            "/api/pipeline/stages",
            headers={"Authorization": "Bearer nope"},
        )
        assert resp.status_code == 401

    def test_valid_token_accepted(self, client, stages, app, monkeypatch):
        monkeypatch.setitem(app.config, "PIPELINE_API_KEY", "s3cret")
        resp = client.get(
            "/api/pipeline/stages",
            headers={"Authorization": "Bearer s3cret"},
        )
        assert resp.status_code == 200


# ─── Stages ──────────────────────────────────────────────────────

class TestStageRoutes:

    def test_list_stages(self, client, stages):
        data = client.get("/api/pipeline/stages").get_json()
        assert [s["name"] for s in data] == ["Stage A", "Stage B", "Won", "Lost"]
        assert data[0]["position"] == 0
        assert data[2]["is_won"] is True
        assert data[3]["position"] is None

    def test_create_stage(self, client, stages):
        resp = client.post("/api/pipeline/stages", json={
            "name": "Negotiation", "win_probability": 75, "rotting_days": 7,
        })
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["position"] == 2
        assert data["win_probability"] == 75

    def test_create_second_won_stage(self, client, stages):
        resp = client.post("/api/pipeline/stages", json={
            "name": "Also Won", "is_won": True,
        })
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "validation_error"

    def test_update_stage(self, client, stages):
        resp = client.put(f"/api/pipeline/stages/{stages['a']}", json={
            "rotting_days": 5,
        })
        assert resp.status_code == 200
        assert resp.get_json()["rotting_days"] == 5

    def test_update_unknown_stage(self, client, stages):
        resp = client.put("/api/pipeline/stages/missing", json={"name": "x"})
        assert resp.status_code == 404
        assert resp.get_json()["code"] == "not_found"

    def test_reorder(self, client, stages):
        resp = client.put("/api/pipeline/stages/reorder", json={
            "stage_ids": [stages["b"], stages["a"]],
        })
        assert resp.status_code == 200
        assert [s["id"] for s in resp.get_json()][:2] == [stages["b"], stages["a"]]

    def test_reorder_requires_list(self, client, stages):
        resp = client.put("/api/pipeline/stages/reorder", json={
            "stage_ids": stages["a"],
        })
        assert resp.status_code == 400


# ─── Deals ───────────────────────────────────────────────────────

class TestDealRoutes:

    def test_create_deal(self, client, stages):
        data = _create_deal(client)
        assert data["stage_id"] == stages["a"]
        assert data["status"] == "open"
        assert data["win_probability"] == 20
        assert data["value"] == 12000
        assert data["rotting_level"] == 0
        assert data["rotting_label"] == "fresh"

        activity = DealActivity.query.filter_by(deal_id=data["id"]).one()
        assert activity.created_by == "user-1"

    def test_create_deal_requires_title(self, client, stages):
        resp = client.post("/api/pipeline/deals", json={"value": 10})
        assert resp.status_code == 400
        assert "title" in resp.get_json()["error"]

    def test_body_must_be_object(self, client, stages):
        resp = client.post("/api/pipeline/deals", json=["not", "an", "object"])
        assert resp.status_code == 400

    def test_get_deal(self, client, stages):
        deal = _create_deal(client)
        resp = client.get(f"/api/pipeline/deals/{deal['id']}")
        assert resp.status_code == 200
        assert resp.get_json()["title"] == "Acme LED Retrofit"

    def test_get_unknown_deal(self, client, stages):
        resp = client.get("/api/pipeline/deals/missing")
        assert resp.status_code == 404
        assert resp.get_json()["code"] == "not_found"

    def test_update_deal(self, client, stages):
        deal = _create_deal(client)
        resp = client.put(f"/api/pipeline/deals/{deal['id']}", json={
            "organization": "Acme Corp", "expected_close_date": "2026-12-01",
        })
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["organization"] == "Acme Corp"
        assert data["expected_close_date"] == "2026-12-01"

    def test_list_filters(self, client, stages):
        _create_deal(client, title="Warehouse lighting", owner_id="rep-1")
        _create_deal(client, title="Office retrofit", owner_id="rep-2")

        by_owner = client.get("/api/pipeline/deals?owner_id=rep-1").get_json()
        assert [d["title"] for d in by_owner] == ["Warehouse lighting"]

        by_search = client.get("/api/pipeline/deals?q=retro").get_json()
        assert [d["title"] for d in by_search] == ["Office retrofit"]

    def test_move_deal(self, client, stages):
        deal = _create_deal(client)
        resp = client.put(f"/api/pipeline/deals/{deal['id']}/move", json={
            "stage_id": stages["b"], "expected_stage_id": stages["a"],
        })
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["stage_id"] == stages["b"]
        assert data["win_probability"] == 60

    def test_move_to_won_needs_closure(self, client, stages):
        deal = _create_deal(client)
        resp = client.put(f"/api/pipeline/deals/{deal['id']}/move", json={
            "stage_id": stages["won"],
        })
        assert resp.status_code == 409
        data = resp.get_json()
        assert data["code"] == "requires_closure_data"
        assert data["closure_command"] == "close_won"

    def test_move_to_lost_needs_closure(self, client, stages):
        deal = _create_deal(client)
        resp = client.put(f"/api/pipeline/deals/{deal['id']}/move", json={
            "stage_id": stages["lost"],
        })
        assert resp.get_json()["closure_command"] == "close_lost"

    def test_stale_move_conflicts(self, client, stages):
        deal = _create_deal(client)
        resp = client.put(f"/api/pipeline/deals/{deal['id']}/move", json={
            "stage_id": stages["b"], "expected_stage_id": stages["b"],
        })
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "conflict"

    def test_close_won(self, client, stages):
        deal = _create_deal(client)
        resp = client.post(f"/api/pipeline/deals/{deal['id']}/won", json={
            "notes": "Signed PO",
        })
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "won"
        assert data["stage_id"] == stages["won"]
        assert data["won_notes"] == "Signed PO"
        assert data["won_at"] is not None

    def test_close_lost_requires_reason(self, client, stages):
        deal = _create_deal(client)
        resp = client.post(f"/api/pipeline/deals/{deal['id']}/lost", json={})
        assert resp.status_code == 400

    def test_close_lost(self, client, stages):
        deal = _create_deal(client)
        resp = client.post(f"/api/pipeline/deals/{deal['id']}/lost", json={
            "reason": "Budget cut",
        })
        data = resp.get_json()
        assert data["status"] == "lost"
        assert data["lost_reason"] == "Budget cut"

    def test_closing_twice_is_invalid_state(self, client, stages):
        deal = _create_deal(client)
        client.post(f"/api/pipeline/deals/{deal['id']}/won", json={})
        resp = client.post(f"/api/pipeline/deals/{deal['id']}/lost", json={
            "reason": "Changed mind",
        })
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "invalid_state"

    def test_delete_deal(self, client, stages):
        deal = _create_deal(client)
        client.put(f"/api/pipeline/deals/{deal['id']}/move", json={
            "stage_id": stages["b"],
        })
        resp = client.delete(f"/api/pipeline/deals/{deal['id']}")
        assert resp.status_code == 200
        assert resp.get_json() == {"success": True, "activities_deleted": 2}
        assert db.session.get(Deal, deal["id"]) is None


# ─── Activities ──────────────────────────────────────────────────

class TestActivityRoutes:

    def test_log_and_list(self, client, stages):
        deal = _create_deal(client)
        resp = client.post(
            f"/api/pipeline/deals/{deal['id']}/activities",
            json={"activity_type": "call", "subject": "Intro call"},
            headers={"X-Actor-Id": "user-7"},
        )
        assert resp.status_code == 201
        assert resp.get_json()["created_by"] == "user-7"

        history = client.get(
            f"/api/pipeline/deals/{deal['id']}/activities"
        ).get_json()
        assert [a["activity_type"] for a in history] == ["call", "created"]

    def test_engine_type_rejected(self, client, stages):
        deal = _create_deal(client)
        resp = client.post(
            f"/api/pipeline/deals/{deal['id']}/activities",
            json={"activity_type": "won", "subject": "Fake win"},
        )
        assert resp.status_code == 400

    def test_history_for_unknown_deal(self, client, stages):
        resp = client.get("/api/pipeline/deals/missing/activities")
        assert resp.status_code == 404


# ─── Board / Forecast ────────────────────────────────────────────

class TestBoardAndForecast:

    def test_board(self, client, stages):
        _create_deal(client, value=1000)
        board = client.get("/api/pipeline/board").get_json()
        assert [col["name"] for col in board] == ["Stage A", "Stage B", "Won", "Lost"]
        assert board[0]["deal_count"] == 1
        assert board[0]["deals"][0]["rotting_label"] == "fresh"
        assert board[1]["deals"] == []

    def test_forecast(self, client, stages):
        first = _create_deal(client, value=1000)
        second = _create_deal(client, value=5000)
        client.put(f"/api/pipeline/deals/{second['id']}/move", json={
            "stage_id": stages["b"],
        })
        client.post(f"/api/pipeline/deals/{first['id']}/won", json={})

        data = client.get("/api/pipeline/forecast").get_json()
        assert data["pipeline_total"] == 5000
        assert data["weighted_pipeline_value"] == pytest.approx(3000)
        by_name = {s["name"]: s for s in data["stages"]}
        assert by_name["Won"]["total_value"] == 1000
        assert by_name["Stage B"]["deal_count"] == 1
