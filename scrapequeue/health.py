"""Monitoring and admin HTTP endpoints."""
from dataclasses import replace
from typing import Optional

from flask import Flask, jsonify, request

from scrapequeue import settings
from scrapequeue.db import StorageError
from scrapequeue.logging_conf import logger
from scrapequeue.models import WorkItem, parse_timestamp, utcnow


def _parse_bool(value, default=None):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in ("1", "true", "yes"):
        return True
    if lowered in ("0", "false", "no"):
        return False
    raise ValueError(f"Not a boolean: {value}")


def create_app(store, queue=None, seeder=None, checkpoint=None, rate_limiter=None,
               version: Optional[str] = None) -> Flask:
    """Build the Flask app around the given collaborators."""
    app = Flask(__name__)
    version = version or settings.CONSUMER_VERSION

    @app.errorhandler(StorageError)
    def storage_unavailable(e):
        logger.error(f"Storage error serving {request.path}: {e}")
        return jsonify({"error": "storage unavailable", "detail": str(e)}), 503

    @app.errorhandler(ValueError)
    def bad_request(e):
        return jsonify({"error": str(e)}), 400

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({
            "status": "healthy",
            "version": version,
            "timestamp": utcnow().isoformat(),
        })

    @app.route("/stats", methods=["GET"])
    def stats():
        """
        Pipeline statistics.

        Query parameters:
        - limit: number of recent processing-log entries (default STATS_LOG_LIMIT)
        """
        limit = int(request.args.get("limit", settings.STATS_LOG_LIMIT))
        return jsonify({
            "recent_logs": [entry.to_dict() for entry in store.recent_processing_log(limit)],
            "rate_limits": store.rate_limit_utilization(),
            "queue_states": store.queue_state_counts(),
            "spool": queue.size() if queue is not None else None,
            "last_seed_run": checkpoint.get_last_seed_run() if checkpoint is not None else None,
            "timestamp": utcnow().isoformat(),
        })

    @app.route("/rate-limits", methods=["GET"])
    def list_rate_limits():
        return jsonify({"rate_limits": [c.to_dict() for c in store.list_rate_limit_configs()]})

    @app.route("/rate-limits/<source>/<scope>", methods=["PATCH"])
    def update_rate_limit(source, scope):
        body = request.get_json(silent=True) or {}
        changes = {}
        if "requests_per_second" in body:
            rps = float(body["requests_per_second"])
            if rps <= 0:
                raise ValueError("requests_per_second must be positive")
            changes["requests_per_second"] = rps
        if "throttled" in body:
            changes["throttled"] = _parse_bool(body["throttled"])
        if "throttled_until" in body:
            changes["throttled_until"] = parse_timestamp(body["throttled_until"])
        if "throttle_reason" in body:
            changes["throttle_reason"] = body["throttle_reason"]
        if not changes:
            raise ValueError("No editable fields in request body")

        config = store.update_rate_limit_config(source, scope, **changes)
        if rate_limiter is not None:
            rate_limiter.invalidate(source, scope)
        return jsonify(config.to_dict())

    @app.route("/rate-limits/<source>/<scope>/clear-throttle", methods=["POST"])
    def clear_throttle(source, scope):
        config = store.clear_throttle(source, scope)
        if rate_limiter is not None:
            rate_limiter.invalidate(source, scope)
        logger.info(f"Throttle cleared for {source}:{scope}")
        return jsonify(config.to_dict())

    @app.route("/dead-letters", methods=["GET"])
    def list_dead_letters():
        """
        Dead-letter entries, newest first.

        Query parameters:
        - resolved: true/false/all (default false)
        - limit: int (default 100)
        """
        resolved_arg = request.args.get("resolved", "false")
        resolved = None if resolved_arg == "all" else _parse_bool(resolved_arg)
        limit = int(request.args.get("limit", 100))
        entries = store.list_dead_letters(resolved=resolved, limit=limit)
        return jsonify({"dead_letters": [e.to_dict() for e in entries], "count": len(entries)})

    @app.route("/dead-letters/<int:entry_id>/resolve", methods=["POST"])
    def resolve_dead_letter(entry_id):
        body = request.get_json(silent=True) or {}
        requeue = _parse_bool(body.get("requeue"), default=False)
        entry = store.resolve_dead_letter(
            entry_id,
            resolved_by=body.get("resolved_by"),
            notes=body.get("notes"),
            requeue=requeue,
        )
        if entry is None:
            return jsonify({"error": f"No unresolved dead letter with id {entry_id}"}), 404

        published = False
        if requeue and queue is not None:
            item = replace(WorkItem.from_message_body(entry.message_body), scheduled_at=utcnow())
            published = queue.publish(item)
        return jsonify({"dead_letter": entry.to_dict(), "requeued": published})

    @app.route("/seed", methods=["POST"])
    def trigger_seed():
        if seeder is None:
            return jsonify({"error": "Seeding is not available"}), 503
        body = request.get_json(silent=True) or {}
        jurisdictions = body.get("jurisdictions")
        if isinstance(jurisdictions, str):
            jurisdictions = [j.strip() for j in jurisdictions.split(",") if j.strip()]
        result = seeder.seed(
            mode=body.get("mode"),
            jurisdictions=jurisdictions,
            force=_parse_bool(body.get("force"), default=False),
        )
        return jsonify(result.to_dict())

    return app
