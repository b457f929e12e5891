"""Pipeline blueprint — /api/pipeline/*

JSON surface for the sales board and automation clients. Drag-and-drop,
buttons and bots all map onto the same commands: move, close won, close
lost. When PIPELINE_API_KEY is configured every route needs it as a
Bearer token. The acting user is passed as the X-Actor-Id header.

Route Map:
  GET    /api/pipeline/stages                   — Ordered stages
  POST   /api/pipeline/stages                   — Create stage
  PUT    /api/pipeline/stages/<id>              — Update stage config
  PUT    /api/pipeline/stages/reorder           — Reorder open stages
  GET    /api/pipeline/deals                    — Open deals (owner/stage/q filters)
  POST   /api/pipeline/deals                    — Create deal
  GET    /api/pipeline/deals/<id>               — Deal detail
  PUT    /api/pipeline/deals/<id>               — Edit deal details
  DELETE /api/pipeline/deals/<id>               — Delete deal + history
  PUT    /api/pipeline/deals/<id>/move          — Move to an open stage
  POST   /api/pipeline/deals/<id>/won           — Close as won
  POST   /api/pipeline/deals/<id>/lost          — Close as lost
  GET    /api/pipeline/deals/<id>/activities    — History, newest first
  POST   /api/pipeline/deals/<id>/activities    — Log note/call/email/...
  GET    /api/pipeline/board                    — Board snapshot with rotting
  GET    /api/pipeline/forecast                 — Totals and weighted value
"""

import hmac
from datetime import datetime, timezone
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from dealflow.services import (
    activity_service,
    deal_service,
    forecast_service,
    rotting,
    stage_service,
)
from dealflow.services.errors import PipelineError, ValidationError

pipeline_bp = Blueprint("pipeline", __name__, url_prefix="/api/pipeline")


def _pipeline_api_auth(f):
    """Require a Bearer token matching PIPELINE_API_KEY, when one is set."""
    @wraps(f)
    def decorated(*args, **kwargs):
        expected = current_app.config.get("PIPELINE_API_KEY") or ""
        if not expected:
            return f(*args, **kwargs)
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
            if hmac.compare_digest(token, expected):
                return f(*args, **kwargs)
        return jsonify({"error": "Invalid API key", "code": "unauthorized"}), 401
    return decorated


@pipeline_bp.errorhandler(PipelineError)
def _handle_pipeline_error(e):
    if e.status_code >= 500:
        current_app.logger.error(f"Pipeline error: {e}")
    return jsonify(e.to_dict()), e.status_code


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _actor_id():
    return request.headers.get("X-Actor-Id") or None


# ─── Stage API ───────────────────────────────────────────────────

@pipeline_bp.route("/stages")
@_pipeline_api_auth
def api_list_stages():
    return jsonify([_stage_dict(s) for s in stage_service.list_stages()])


@pipeline_bp.route("/stages", methods=["POST"])
@_pipeline_api_auth
def api_create_stage():
    data = _json_body()
    stage = stage_service.create_stage(
        name=data.get("name"),
        color=data.get("color"),
        win_probability=data.get("win_probability", 0),
        rotting_days=data.get("rotting_days"),
        is_won=data.get("is_won", False),
        is_lost=data.get("is_lost", False),
    )
    return jsonify(_stage_dict(stage)), 201


@pipeline_bp.route("/stages/reorder", methods=["PUT"])
@_pipeline_api_auth
def api_reorder_stages():
    data = _json_body()
    stage_ids = data.get("stage_ids")
    if not isinstance(stage_ids, list):
        raise ValidationError("stage_ids must be a list of stage ids.")
    stages = stage_service.reorder_stages(stage_ids)
    return jsonify([_stage_dict(s) for s in stages])


@pipeline_bp.route("/stages/<stage_id>", methods=["PUT"])
@_pipeline_api_auth
def api_update_stage(stage_id):
    stage = stage_service.update_stage(stage_id, _json_body())
    return jsonify(_stage_dict(stage))


# ─── Deal API ────────────────────────────────────────────────────

@pipeline_bp.route("/deals")
@_pipeline_api_auth
def api_list_deals():
    now = datetime.now(timezone.utc)
    deals = deal_service.list_open_deals(
        owner_id=request.args.get("owner_id"),
        stage_id=request.args.get("stage_id"),
        search=request.args.get("q"),
    )
    return jsonify([_deal_dict(d, now) for d in deals])


@pipeline_bp.route("/deals", methods=["POST"])
@_pipeline_api_auth
def api_create_deal():
    deal = deal_service.create_deal(_json_body(), actor_id=_actor_id())
    return jsonify(_deal_dict(deal)), 201


@pipeline_bp.route("/deals/<deal_id>")
@_pipeline_api_auth
def api_get_deal(deal_id):
    return jsonify(_deal_dict(deal_service.get_deal(deal_id)))


@pipeline_bp.route("/deals/<deal_id>", methods=["PUT"])
@_pipeline_api_auth
def api_update_deal(deal_id):
    deal = deal_service.update_deal(deal_id, _json_body(), actor_id=_actor_id())
    return jsonify(_deal_dict(deal))


@pipeline_bp.route("/deals/<deal_id>", methods=["DELETE"])
@_pipeline_api_auth
def api_delete_deal(deal_id):
    removed = deal_service.delete_deal(deal_id)
    return jsonify({"success": True, "activities_deleted": removed})


@pipeline_bp.route("/deals/<deal_id>/move", methods=["PUT"])
@_pipeline_api_auth
def api_move_deal(deal_id):
    data = _json_body()
    deal = deal_service.move_deal(
        deal_id,
        data.get("stage_id"),
        actor_id=_actor_id(),
        expected_stage_id=data.get("expected_stage_id"),
    )
    return jsonify(_deal_dict(deal))


@pipeline_bp.route("/deals/<deal_id>/won", methods=["POST"])
@_pipeline_api_auth
def api_close_won(deal_id):
    data = _json_body()
    deal = deal_service.close_won(
        deal_id,
        notes=data.get("notes"),
        actor_id=_actor_id(),
        expected_stage_id=data.get("expected_stage_id"),
        expected_status=data.get("expected_status"),
    )
    return jsonify(_deal_dict(deal))


@pipeline_bp.route("/deals/<deal_id>/lost", methods=["POST"])
@_pipeline_api_auth
def api_close_lost(deal_id):
    data = _json_body()
    deal = deal_service.close_lost(
        deal_id,
        data.get("reason"),
        actor_id=_actor_id(),
        expected_stage_id=data.get("expected_stage_id"),
        expected_status=data.get("expected_status"),
    )
    return jsonify(_deal_dict(deal))


# ─── Activity API ────────────────────────────────────────────────

@pipeline_bp.route("/deals/<deal_id>/activities")
@_pipeline_api_auth
def api_list_activities(deal_id):
    deal = deal_service.get_deal(deal_id)
    return jsonify([
        _activity_dict(a) for a in activity_service.list_for_deal(deal.id)
    ])


@pipeline_bp.route("/deals/<deal_id>/activities", methods=["POST"])
@_pipeline_api_auth
def api_log_activity(deal_id):
    data = _json_body()
    activity = activity_service.append_activity(
        deal_id,
        data.get("activity_type"),
        data.get("subject"),
        description=data.get("description"),
        actor_id=_actor_id(),
    )
    return jsonify(_activity_dict(activity)), 201


# ─── Board / Forecast API ────────────────────────────────────────

@pipeline_bp.route("/board")
@_pipeline_api_auth
def api_board():
    now = datetime.now(timezone.utc)
    result = []
    for column in forecast_service.pipeline_board(now):
        result.append({
            **_stage_dict(column["stage"]),
            "deal_count": column["deal_count"],
            "total_value": column["total_value"],
            "weighted_value": column["weighted_value"],
            "deals": [_deal_dict(d, now, level) for d, level in column["deals"]],
        })
    return jsonify(result)


@pipeline_bp.route("/forecast")
@_pipeline_api_auth
def api_forecast():
    return jsonify({
        "pipeline_total": forecast_service.pipeline_total(),
        "weighted_pipeline_value": forecast_service.weighted_pipeline_value(),
        "stages": [
            {
                "stage_id": s["stage"].id,
                "name": s["stage"].name,
                "deal_count": s["deal_count"],
                "total_value": s["total_value"],
                "weighted_value": s["weighted_value"],
            }
            for s in forecast_service.stage_summaries()
        ],
    })


# ─── Helpers ─────────────────────────────────────────────────────

def _iso(value):
    return value.isoformat() if value else None


def _stage_dict(stage):
    """Serialize a Stage to a JSON-safe dict."""
    return {
        "id": stage.id,
        "name": stage.name,
        "color": stage.color,
        "position": stage.position,
        "win_probability": stage.win_probability,
        "rotting_days": stage.rotting_days,
        "is_won": stage.is_won,
        "is_lost": stage.is_lost,
    }


def _deal_dict(deal, now=None, level=None):
    """Serialize a Deal, including its live rotting level."""
    if level is None:
        level = rotting.rotting_level(deal, deal.stage, now)
    return {
        "id": deal.id,
        "title": deal.title,
        "value": float(deal.value or 0),
        "organization": deal.organization,
        "contact_name": deal.contact_name,
        "contact_email": deal.contact_email,
        "contact_phone": deal.contact_phone,
        "expected_close_date": _iso(deal.expected_close_date),
        "owner_id": deal.owner_id,
        "lead_id": deal.lead_id,
        "customer_id": deal.customer_id,
        "audit_id": deal.audit_id,
        "quote_id": deal.quote_id,
        "stage_id": deal.stage_id,
        "status": deal.status,
        "win_probability": deal.win_probability,
        "last_activity_at": _iso(deal.last_activity_at),
        "rotting_level": level,
        "rotting_label": rotting.rotting_label(level),
        "won_at": _iso(deal.won_at),
        "won_notes": deal.won_notes,
        "lost_at": _iso(deal.lost_at),
        "lost_reason": deal.lost_reason,
        "created_at": _iso(deal.created_at),
        "updated_at": _iso(deal.updated_at),
    }


def _activity_dict(activity):
    """Serialize a DealActivity to a JSON-safe dict."""
    return {
        "id": activity.id,
        "deal_id": activity.deal_id,
        "activity_type": activity.activity_type,
        "subject": activity.subject,
        "description": activity.description,
        "from_stage_id": activity.from_stage_id,
        "to_stage_id": activity.to_stage_id,
        "created_by": activity.created_by,
        "created_at": _iso(activity.created_at),
    }
