"""
Web app for FollowThrough: Google push notifications, workflow control and
the dashboard.

Run with: followthrough --serve   (or python -m followthrough.main --serve)

All routes use the shared Services object; no logic lives here beyond
request parsing.
"""

from datetime import datetime
from typing import Optional

from flask import Flask, abort, jsonify, render_template, request
from pydantic import ValidationError

from followthrough.exceptions import SessionNotFoundError
from followthrough.models import CalendarEvent, ensure_aware
from followthrough.services import Services
from followthrough.session_store import SessionQuery
from followthrough.workflow_state import CalendarWorkflowStage, MeetingStatus, SessionStatus


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return ensure_aware(datetime.fromisoformat(value))
    except ValueError:
        abort(400, description=f"Invalid datetime: {value}")


def _parse_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return value.lower() in ("1", "true", "yes")


def create_app(services: Services) -> Flask:
    app = Flask(__name__)
    app.config["SERVICES"] = services
    user_default = services.config.user_id

    def resolve_event(body: dict) -> CalendarEvent:
        """Event from the request body, the sync cache, or the Calendar API."""
        if body.get("event"):
            try:
                return CalendarEvent.model_validate(body["event"])
            except ValidationError as e:
                abort(400, description=f"Invalid event: {e}")

        event_id = body.get("event_id")
        if not event_id:
            abort(400, description="event_id or event is required")
        user_id = body.get("user_id", user_default)
        event = services.sync.find_event(user_id, event_id)
        if event is None and services.calendar_client is not None:
            event = services.calendar_client.get_event(event_id)
        if event is None:
            abort(404, description=f"Calendar event not found: {event_id}")
        return event

    @app.errorhandler(400)
    @app.errorhandler(404)
    def json_error(error):
        return jsonify({"error": error.description}), error.code

    @app.route("/")
    def index():
        sessions, total = services.store.find_sessions(SessionQuery(limit=20))
        return render_template(
            "dashboard.html",
            sessions=sessions,
            total=total,
            briefs=services.delivery.get_dashboard_briefs()[:10],
            attention=services.store.get_sessions_needing_attention(),
        )

    @app.route("/health")
    def health():
        return jsonify({
            "status": "ok",
            "google_connected": services.calendar_client is not None,
            "jobs": len(services.scheduler.get_jobs()),
        })

    # ── Webhooks ───────────────────────────────────────────────

    @app.route("/webhooks/google-calendar", methods=["POST"])
    def google_calendar_webhook():
        processed = services.triggers.handle_google_notification(
            channel_id=request.headers.get("X-Goog-Channel-ID", ""),
            resource_id=request.headers.get("X-Goog-Resource-ID"),
            resource_state=request.headers.get("X-Goog-Resource-State", ""),
            token=request.headers.get("X-Goog-Channel-Token"),
        )
        # Always 200: Google retries anything else
        return jsonify({"processed": processed})

    @app.route("/webhooks/transcript", methods=["POST"])
    def transcript_webhook():
        body = request.get_json(silent=True) or {}
        transcript = body.get("transcript")
        if not transcript:
            abort(400, description="transcript is required")
        event = resolve_event(body)
        services.triggers.handle_transcript_available(
            body.get("user_id", user_default), event.event_id, transcript, event,
        )
        return jsonify({"accepted": True, "event_id": event.event_id}), 202

    # ── Workflows ──────────────────────────────────────────────

    @app.route("/workflows", methods=["POST"])
    def start_workflow():
        body = request.get_json(silent=True) or {}
        event = resolve_event(body)
        overrides = body.get("options") or {}
        try:
            options = services.engine.default_options(**overrides)
        except ValidationError as e:
            abort(400, description=f"Invalid options: {e}")
        result = services.engine.start_workflow(event, body.get("user_id", user_default), options)
        return jsonify(result.model_dump(mode="json")), 201

    @app.route("/workflows/<session_id>")
    def workflow_status(session_id):
        status = services.engine.get_workflow_status(session_id)
        if status is None:
            abort(404, description=f"Workflow session not found: {session_id}")
        return jsonify(status)

    @app.route("/workflows/<session_id>/cancel", methods=["POST"])
    def cancel_workflow(session_id):
        if not services.engine.cancel_workflow(session_id):
            abort(404, description=f"No running workflow: {session_id}")
        return jsonify({"cancelled": True})

    @app.route("/workflows/<session_id>/retry", methods=["POST"])
    def retry_workflow(session_id):
        try:
            result = services.engine.retry_session(session_id)
        except SessionNotFoundError as e:
            abort(404, description=str(e))
        return jsonify(result.model_dump(mode="json"))

    @app.route("/workflows/<session_id>/interactions", methods=["POST"])
    def record_interaction(session_id):
        body = request.get_json(silent=True) or {}
        if not body.get("type"):
            abort(400, description="type is required")
        state = services.engine.record_interaction(session_id, body["type"], body.get("data"))
        if state is None:
            abort(404, description=f"Workflow session not found: {session_id}")
        return jsonify({"approval_required": state.approval_required, "interactions": len(state.user_interactions)})

    # ── Sessions ───────────────────────────────────────────────

    @app.route("/sessions")
    def list_sessions():
        args = request.args
        try:
            query = SessionQuery(
                user_id=args.get("user_id"),
                event_id=args.get("event_id"),
                stage=CalendarWorkflowStage(args["stage"]) if args.get("stage") else None,
                meeting_status=MeetingStatus(args["meeting_status"]) if args.get("meeting_status") else None,
                participant_email=args.get("participant"),
                organizer=args.get("organizer"),
                status=SessionStatus(args["status"]) if args.get("status") else None,
                has_errors=_parse_bool(args.get("has_errors")),
                is_completed=_parse_bool(args.get("is_completed")),
                date_from=_parse_datetime(args.get("date_from")),
                date_to=_parse_datetime(args.get("date_to")),
                sort_by=args.get("sort_by", "created_at"),
                sort_order=args.get("sort_order", "desc"),
                offset=int(args.get("offset", 0)),
                limit=int(args.get("limit", 50)),
            )
        except (ValueError, ValidationError) as e:
            abort(400, description=f"Invalid query: {e}")

        sessions, total = services.store.find_sessions(query)
        return jsonify({
            "total": total,
            "offset": query.offset,
            "limit": query.limit,
            "sessions": [s.model_dump(mode="json", exclude={"meeting_transcript"}) for s in sessions],
        })

    @app.route("/sessions/attention")
    def sessions_needing_attention():
        sessions = services.store.get_sessions_needing_attention()
        return jsonify([services.engine.get_workflow_status(s.session_id) for s in sessions])

    @app.route("/sessions/<session_id>", methods=["DELETE"])
    def delete_session(session_id):
        hard = _parse_bool(request.args.get("hard")) or False
        deleted = (
            services.store.hard_delete_session(session_id) if hard
            else services.store.delete_session(session_id)
        )
        if not deleted:
            abort(404, description=f"Workflow session not found: {session_id}")
        return jsonify({"deleted": True, "hard": hard})

    @app.route("/sessions/archive", methods=["POST"])
    def archive_sessions():
        body = request.get_json(silent=True) or {}
        days = int(body.get("older_than_days", services.config.sessions.archive_after_days))
        return jsonify({"archived": services.store.archive_completed_sessions(days)})

    @app.route("/stats")
    def stats():
        user_id = request.args.get("user_id")
        if user_id:
            return jsonify(services.engine.get_user_workflow_stats(user_id))
        result = services.store.get_session_stats(
            date_from=_parse_datetime(request.args.get("date_from")),
            date_to=_parse_datetime(request.args.get("date_to")),
        )
        return jsonify(result.model_dump(mode="json"))

    # ── Analysis ───────────────────────────────────────────────

    @app.route("/analysis/status")
    def analysis_status():
        return jsonify(services.analysis.get_analysis_status())

    @app.route("/analysis/trigger", methods=["POST"])
    def trigger_analysis():
        body = request.get_json(silent=True) or {}
        event = resolve_event(body)
        trigger_id = services.analysis.manually_trigger_analysis(
            event.event_id,
            body.get("user_id", user_default),
            event,
            force_without_recording=bool(body.get("force_without_recording")),
            test_transcript=body.get("transcript"),
        )
        trigger = services.analysis.get_trigger(trigger_id)
        return jsonify({"trigger_id": trigger_id, "status": trigger.status if trigger else None}), 202

    # ── Briefs / detector ──────────────────────────────────────

    @app.route("/briefs/scheduled")
    def scheduled_briefs():
        return jsonify({
            "briefs": [b.model_dump(mode="json") for b in services.triggers.get_scheduled_briefs()],
            "deliveries": [d.model_dump(mode="json") for d in services.delivery.get_scheduled_deliveries()],
        })

    @app.route("/briefs/dashboard")
    def dashboard_briefs():
        return jsonify([b.model_dump(mode="json") for b in services.delivery.get_dashboard_briefs()])

    @app.route("/detector/stats")
    def detector_stats():
        return jsonify({
            **services.detector.get_processing_stats(),
            "webhooks": len(services.triggers.get_webhooks()),
            "recent_events": [
                {"topic": e["topic"], "emitted_at": e["emitted_at"].isoformat()}
                for e in services.bus.recent(limit=20)
            ],
        })

    return app
