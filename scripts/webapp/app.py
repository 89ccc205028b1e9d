import json
import logging
import queue
import threading

from flask import Flask, Response, jsonify, request, stream_with_context

from cloning.models import ConnectionProfile, Level, ProgressEvent, Role
from scheduling.jobs import JobNotFoundError, JobValidationError

logger = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 100
MAX_LOG_LIMIT = 1000
INTERACTIVE_JOB_NAME = "Interactive clone"


def _filter_value(value):
    if value in (None, "", "all"):
        return None
    return value


def _int_arg(name, default, minimum=0, maximum=None):
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    value = int(raw)
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}")
    if maximum is not None:
        value = min(value, maximum)
    return value


def _error(message, status):
    return jsonify({"success": False, "message": message}), status


def create_app(scheduler, log_store, clone_runner):
    """Build the HTTP surface around an already loaded scheduler and log store."""
    app = Flask(__name__)

    @app.errorhandler(JobValidationError)
    def handle_validation(err):
        return _error(str(err), 400)

    @app.errorhandler(JobNotFoundError)
    def handle_not_found(err):
        return _error(str(err), 404)

    # Interactive clone

    @app.post("/api/clone-database")
    def clone_database():
        payload = request.get_json(silent=True) or {}
        if not payload.get("source") or not payload.get("target"):
            return _error("Source and target credentials are required", 400)
        try:
            source = ConnectionProfile.from_dict(payload["source"], Role.SOURCE)
            target = ConnectionProfile.from_dict(payload["target"], Role.TARGET)
        except (TypeError, ValueError) as e:
            return _error(str(e), 400)
        if not source.database or not target.database:
            return _error("Source and target database names are required", 400)

        events = queue.Queue()

        def record(event):
            events.put(event)
            # Only the notable part of an interactive run goes to the durable log
            if event.level in (Level.WARNING, Level.ERROR) or event.is_terminal:
                log_store.append(event.level, event.message.strip(), job_name=INTERACTIVE_JOB_NAME,
                                 metadata={"stage": event.stage, "target": target.describe()})

        def worker():
            try:
                clone_runner(source, target, record)
            except Exception as e:
                logger.exception("Interactive clone crashed")
                events.put(ProgressEvent(stage="summary", message=str(e), status="error", level=Level.ERROR))

        threading.Thread(target=worker, name="interactive-clone", daemon=True).start()

        def generate():
            while True:
                event = events.get()
                yield json.dumps(event.to_wire()) + "\n"
                if event.is_terminal:
                    break

        return Response(stream_with_context(generate()), mimetype="application/x-ndjson")

    # Scheduled jobs

    @app.get("/api/cron-jobs")
    def list_jobs():
        jobs = [job.to_dict(include_secret=False) for job in scheduler.list_jobs()]
        return jsonify({"success": True, "jobs": jobs})

    @app.post("/api/cron-jobs")
    def create_job():
        payload = request.get_json(silent=True) or {}
        job = scheduler.create_job(
            payload.get("name"),
            payload.get("schedule"),
            payload.get("source"),
            payload.get("target"),
            enabled=payload.get("enabled", True),
        )
        return jsonify({"success": True, "job": job.to_dict(include_secret=False)}), 201

    @app.patch("/api/cron-jobs/<job_id>")
    def update_job(job_id):
        payload = request.get_json(silent=True) or {}
        job = scheduler.update_job(
            job_id,
            enabled=payload.get("enabled"),
            name=payload.get("name"),
            schedule=payload.get("schedule"),
        )
        return jsonify({"success": True, "job": job.to_dict(include_secret=False)})

    @app.delete("/api/cron-jobs/<job_id>")
    def delete_job(job_id):
        job = scheduler.delete_job(job_id)
        return jsonify({"success": True, "message": f"Job {job.name} deleted"})

    @app.post("/api/cron-jobs/<job_id>/run")
    def run_job(job_id):
        job = scheduler.get_job(job_id)
        scheduler.run_now(job_id)
        return jsonify({"success": True, "message": f"Job {job.name} started"}), 202

    @app.get("/api/cron-jobs/<job_id>/history")
    def job_history(job_id):
        return jsonify({"success": True, "history": scheduler.history(job_id)})

    # Logs

    @app.get("/api/logs")
    def query_logs():
        try:
            level = _filter_value(request.args.get("level"))
            if level is not None:
                level = Level(level)
            limit = _int_arg("limit", DEFAULT_LOG_LIMIT, minimum=1, maximum=MAX_LOG_LIMIT)
            offset = _int_arg("offset", 0)
        except ValueError as e:
            return _error(str(e), 400)
        entries, total = log_store.query(
            job_id=_filter_value(request.args.get("jobId")),
            level=level,
            limit=limit,
            offset=offset,
        )
        return jsonify({"success": True, "logs": [entry.to_dict() for entry in entries], "total": total})

    @app.delete("/api/logs")
    def clear_logs():
        removed = log_store.clear(job_id=_filter_value(request.args.get("jobId")))
        return jsonify({"success": True, "removed": removed})

    @app.get("/api/logs/stats")
    def log_stats():
        return jsonify({"success": True, "stats": log_store.stats()})

    return app
