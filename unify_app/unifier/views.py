"""
Unifier blueprint: trigger/continuation endpoints, run ledger queries,
conflict review and health checks.

Payload keys are camelCase; authentication is handled in front of the app.
"""

from __future__ import annotations

import time
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import NoResultFound

from config.merge_policy import load_profile
from config.monitoring import UnifierMonitoring
from unify_app.models import ConflictStatus, ConflictType
from unify_app.models.base import db
from unify_app.utils.unifier import is_unifier_enabled

from .celery_app import DEFAULT_QUEUE_NAME, EXTENSION_KEY, get_celery_app
from .pipeline.conflicts import ConflictAlreadyReviewed, ConflictReviewService, serialize_conflict
from .pipeline.ledger import InvalidRunTransition, RunAlreadyActive, RunFilters, SyncRunService
from .pipeline.normalize import UnknownSourceError
from .pipeline.orchestrator import (
    STATUS_ALREADY_RUNNING,
    STATUS_CANCELLED,
    STATUS_NO_WORK,
    STATUS_QUEUED,
    continue_run,
    estimate_seconds,
    pending_work,
    resume_run,
    trigger_unification,
)

unifier_blueprint = Blueprint("unifier", __name__, url_prefix="/unifier")

MAX_CONFLICT_PAGE = 200


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _ensure_unifier_enabled_api():
    if not is_unifier_enabled(current_app):
        return _json_error("Unifier is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _split_csv(value) -> tuple[str, ...]:
    if value in (None, "", ()):
        return ()
    if isinstance(value, (tuple, list)):
        return tuple(str(v).strip().lower() for v in value if str(v).strip())
    return tuple(token.strip().lower() for token in str(value).split(",") if token.strip())


def _optional_positive_int(value, *, name: str) -> int | None:
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a positive integer.")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a positive integer.") from None
    if number < 1:
        raise ValueError(f"{name} must be a positive integer.")
    return number


def _isoformat(value):
    return value.isoformat() if value else None


def _serialize_summary(summary):
    return {
        "id": summary.id,
        "runId": summary.id,
        "status": summary.status,
        "sources": list(summary.sources),
        "batchSize": summary.batch_size,
        "chunkNumber": summary.chunk_number,
        "iterations": summary.iterations,
        "startedAt": _isoformat(summary.started_at),
        "heartbeatAt": _isoformat(summary.heartbeat_at),
        "completedAt": _isoformat(summary.completed_at),
        "durationSeconds": summary.duration_seconds,
        "totals": {
            "fetched": summary.total_fetched,
            "processed": summary.total_processed,
            "inserted": summary.total_inserted,
            "updated": summary.total_updated,
            "skipped": summary.total_skipped,
            "conflicts": summary.total_conflicts,
            "errors": summary.total_errors,
        },
        "errorMessage": summary.error_message,
        "isActive": summary.is_active,
    }


def _serialize_detail(run, *, summary):
    payload = _serialize_summary(summary)
    payload.update(
        {
            "counts": dict(summary.counts),
            "pendingAtStart": dict(summary.pending),
            "cursor": dict(summary.cursor),
            "checkpoint": dict(run.checkpoint or {}),
            "metadata": dict(run.metadata_json or {}),
        }
    )
    return payload


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@unifier_blueprint.get("/health")
def unifier_healthcheck():
    """
    Lightweight health endpoint proving the unifier blueprint mounted correctly.
    """
    state = current_app.extensions.get(EXTENSION_KEY, {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": state.get("enabled", False),
                "sources": list(state.get("sources", ())),
            }
        ),
        200,
    )


@unifier_blueprint.get("/worker_health")
def unifier_worker_health():
    """
    Validate unifier worker availability via the heartbeat task.
    """
    state = current_app.extensions.get(EXTENSION_KEY, {})
    enabled = state.get("enabled", False)
    worker_enabled = state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))

    payload = {
        "unifierEnabled": enabled,
        "workerEnabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeoutSeconds": timeout_seconds,
    }

    if not enabled:
        payload["status"] = "disabled"
        return jsonify(payload), 200

    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set UNIFIER_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("unifier.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["status"] = "ok"
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:  # pragma: no cover
        current_app.logger.exception("Unifier worker health check failed.", exc_info=exc)
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), 500


# ---------------------------------------------------------------------------
# Trigger / continuation
# ---------------------------------------------------------------------------


@unifier_blueprint.post("/trigger")
def unifier_trigger():
    enabled_response = _ensure_unifier_enabled_api()
    if enabled_response:
        return enabled_response

    body = _json_body()
    try:
        batch_size = _optional_positive_int(body.get("batchSize"), name="batchSize")
    except ValueError as exc:
        UnifierMonitoring.record_trigger(duration_seconds=0.0, status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    try:
        result = trigger_unification(
            sources=_split_csv(body.get("sources")) or None,
            batch_size=batch_size,
            force_cancel=bool(body.get("forceCancel", False)),
        )
    except UnknownSourceError as exc:
        UnifierMonitoring.record_trigger(duration_seconds=time.perf_counter() - start_time, status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    except Exception as exc:  # pragma: no cover
        db.session.rollback()
        current_app.logger.exception("Unification trigger failed.", exc_info=exc)
        UnifierMonitoring.record_trigger(duration_seconds=time.perf_counter() - start_time, status="error")
        return _json_error("Failed to start unification.", HTTPStatus.INTERNAL_SERVER_ERROR)

    duration = time.perf_counter() - start_time
    UnifierMonitoring.record_trigger(duration_seconds=duration, status=result.status)
    current_app.logger.info(
        "Unification trigger handled",
        extra={
            "unifier_status": result.status,
            "unifier_run_id": result.run_id,
            "unifier_pending": dict(result.pending),
            "unifier_response_time_ms": round(duration * 1000, 2),
        },
    )

    if result.status == STATUS_CANCELLED:
        return jsonify({"status": result.status, "cancelled": list(result.cancelled)}), HTTPStatus.OK
    if result.status == STATUS_NO_WORK:
        return jsonify({"status": result.status, "pendingCounts": dict(result.pending)}), HTTPStatus.OK
    if result.status == STATUS_ALREADY_RUNNING:
        return jsonify({"status": result.status, "runId": result.run_id}), HTTPStatus.CONFLICT
    return (
        jsonify(
            {
                "status": result.status,
                "runId": result.run_id,
                "pendingCounts": dict(result.pending),
                "estimatedTime": result.estimated_seconds,
                "taskId": result.task_id,
            }
        ),
        HTTPStatus.ACCEPTED,
    )


@unifier_blueprint.post("/continue")
def unifier_continue():
    enabled_response = _ensure_unifier_enabled_api()
    if enabled_response:
        return enabled_response

    body = _json_body()
    if body.get("continuation") is not True:
        return _json_error("Continuation requests must set continuation=true.", HTTPStatus.BAD_REQUEST)
    try:
        run_id = _optional_positive_int(body.get("runId"), name="runId")
        chunk_number = _optional_positive_int(body.get("chunkNumber"), name="chunkNumber")
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    if run_id is None:
        return _json_error("runId is required.", HTTPStatus.BAD_REQUEST)

    try:
        result = continue_run(run_id, chunk_number)
    except NoResultFound:
        return _json_error(f"Sync run {run_id} not found.", HTTPStatus.NOT_FOUND)

    current_app.logger.info(
        "Unification continuation handled",
        extra={
            "unifier_run_id": run_id,
            "unifier_chunk": chunk_number,
            "unifier_status": result.status,
            "unifier_cursor": body.get("cursor"),
        },
    )
    status = HTTPStatus.ACCEPTED if result.status == STATUS_QUEUED else HTTPStatus.OK
    return jsonify({"status": result.status, "runId": result.run_id, "taskId": result.task_id}), status


# ---------------------------------------------------------------------------
# Run ledger
# ---------------------------------------------------------------------------


@unifier_blueprint.post("/runs/<int:run_id>/cancel")
def unifier_run_cancel(run_id: int):
    enabled_response = _ensure_unifier_enabled_api()
    if enabled_response:
        return enabled_response
    try:
        run = SyncRunService().cancel(run_id)
    except NoResultFound:
        return _json_error(f"No active sync run {run_id}.", HTTPStatus.NOT_FOUND)
    return jsonify({"status": run.status.value, "runId": run.id}), HTTPStatus.OK


@unifier_blueprint.post("/runs/<int:run_id>/resume")
def unifier_run_resume(run_id: int):
    enabled_response = _ensure_unifier_enabled_api()
    if enabled_response:
        return enabled_response

    body = _json_body()
    try:
        run = resume_run(run_id, retry_errors=bool(body.get("retryErrors", False)))
    except NoResultFound:
        return _json_error(f"Sync run {run_id} not found.", HTTPStatus.NOT_FOUND)
    except InvalidRunTransition as exc:
        return _json_error(str(exc), HTTPStatus.CONFLICT)
    except RunAlreadyActive as exc:
        return jsonify({"status": STATUS_ALREADY_RUNNING, "runId": exc.run_id}), HTTPStatus.CONFLICT

    db.session.refresh(run)
    return jsonify({"status": run.status.value, "runId": run.id}), HTTPStatus.ACCEPTED


@unifier_blueprint.post("/force-cancel")
def unifier_force_cancel():
    enabled_response = _ensure_unifier_enabled_api()
    if enabled_response:
        return enabled_response
    cancelled = SyncRunService().force_cancel_all()
    return jsonify({"status": STATUS_CANCELLED, "cancelled": cancelled}), HTTPStatus.OK


@unifier_blueprint.get("/pending")
def unifier_pending():
    enabled_response = _ensure_unifier_enabled_api()
    if enabled_response:
        return enabled_response
    try:
        pending = pending_work(_split_csv(request.args.get("sources")) or None)
    except UnknownSourceError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return (
        jsonify({"pendingCounts": pending.as_dict(), "estimatedTime": estimate_seconds(pending)}),
        HTTPStatus.OK,
    )


@unifier_blueprint.get("/status")
def unifier_status():
    enabled_response = _ensure_unifier_enabled_api()
    if enabled_response:
        return enabled_response

    service = SyncRunService()
    run = service.latest_run()
    pending = pending_work()
    payload = {
        "pendingCounts": pending.as_dict(),
        "latestRun": _serialize_summary(service.summarize(run)) if run else None,
    }
    active = service.get_active_run()
    payload["activeRunId"] = active.id if active else None
    return jsonify(payload), HTTPStatus.OK


@unifier_blueprint.get("/runs")
def unifier_runs_list():
    enabled_response = _ensure_unifier_enabled_api()
    if enabled_response:
        return enabled_response

    raw = request.args
    try:
        filters = RunFilters.coerce(
            page=raw.get("page"),
            page_size=raw.get("per_page") or raw.get("pageSize"),
            sort=raw.get("sort"),
            statuses=_split_csv(raw.get("status")),
        )
    except ValueError as exc:
        UnifierMonitoring.record_runs_list(duration_seconds=0.0, status="invalid_request", result_count=0)
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    try:
        result = SyncRunService().list_runs(filters)
    except Exception as exc:  # pragma: no cover
        current_app.logger.exception("Unifier runs list failed.", exc_info=exc)
        UnifierMonitoring.record_runs_list(
            duration_seconds=time.perf_counter() - start_time, status="error", result_count=0
        )
        return _json_error("Failed to load runs.", HTTPStatus.INTERNAL_SERVER_ERROR)

    duration = time.perf_counter() - start_time
    UnifierMonitoring.record_runs_list(duration_seconds=duration, status="success", result_count=len(result.items))

    response_payload = {
        "runs": [_serialize_summary(item) for item in result.items],
        "total": result.total,
        "page": result.page,
        "pageSize": result.page_size,
        "totalPages": result.total_pages,
        "filters": {
            "page": filters.page,
            "pageSize": filters.page_size,
            "sort": filters.sort,
            "statuses": [status.value for status in filters.statuses],
        },
    }
    current_app.logger.info(
        "Unifier runs list retrieved",
        extra={
            "unifier_run_count": len(result.items),
            "unifier_total_runs": result.total,
            "unifier_response_time_ms": round(duration * 1000, 2),
        },
    )
    return jsonify(response_payload), HTTPStatus.OK


@unifier_blueprint.get("/runs/<int:run_id>")
def unifier_run_detail(run_id: int):
    enabled_response = _ensure_unifier_enabled_api()
    if enabled_response:
        return enabled_response

    service = SyncRunService()
    start_time = time.perf_counter()
    try:
        run = service.get_run(run_id)
        summary = service.summarize(run)
    except NoResultFound:
        UnifierMonitoring.record_runs_detail(duration_seconds=time.perf_counter() - start_time, status="not_found")
        return _json_error(f"Sync run {run_id} not found.", HTTPStatus.NOT_FOUND)

    UnifierMonitoring.record_runs_detail(duration_seconds=time.perf_counter() - start_time, status="success")
    return jsonify(_serialize_detail(run, summary=summary)), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Conflict review
# ---------------------------------------------------------------------------


@unifier_blueprint.get("/conflicts")
def unifier_conflicts_list():
    enabled_response = _ensure_unifier_enabled_api()
    if enabled_response:
        return enabled_response

    raw = request.args
    try:
        status_value = raw.get("status", ConflictStatus.PENDING.value)
        status = None if status_value == "all" else ConflictStatus(status_value)
        conflict_type = ConflictType(raw["type"]) if raw.get("type") else None
        limit = min(_optional_positive_int(raw.get("limit"), name="limit") or 50, MAX_CONFLICT_PAGE)
        offset = int(raw.get("offset") or 0)
        if offset < 0:
            raise ValueError("offset must not be negative.")
    except ValueError as exc:
        UnifierMonitoring.record_conflicts_list(duration_seconds=0.0, status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    page = ConflictReviewService().list_conflicts(
        status=status,
        source=raw.get("source") or None,
        conflict_type=conflict_type,
        limit=limit,
        offset=offset,
    )
    UnifierMonitoring.record_conflicts_list(duration_seconds=time.perf_counter() - start_time, status="success")
    return (
        jsonify(
            {
                "conflicts": [serialize_conflict(item) for item in page.items],
                "total": page.total,
                "limit": page.limit,
                "offset": page.offset,
            }
        ),
        HTTPStatus.OK,
    )


@unifier_blueprint.post("/conflicts/<int:conflict_id>/resolve")
def unifier_conflict_resolve(conflict_id: int):
    enabled_response = _ensure_unifier_enabled_api()
    if enabled_response:
        return enabled_response

    body = _json_body()
    try:
        client_id = _optional_positive_int(body.get("clientId"), name="clientId")
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    if client_id is None:
        return _json_error("clientId is required.", HTTPStatus.BAD_REQUEST)

    try:
        conflict = ConflictReviewService().resolve(
            conflict_id,
            client_id=client_id,
            note=body.get("note"),
            profile=load_profile(current_app.config),
        )
    except NoResultFound as exc:
        db.session.rollback()
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except ConflictAlreadyReviewed as exc:
        db.session.rollback()
        return _json_error(str(exc), HTTPStatus.CONFLICT)
    db.session.commit()
    return jsonify(serialize_conflict(conflict)), HTTPStatus.OK


@unifier_blueprint.post("/conflicts/<int:conflict_id>/ignore")
def unifier_conflict_ignore(conflict_id: int):
    enabled_response = _ensure_unifier_enabled_api()
    if enabled_response:
        return enabled_response

    body = _json_body()
    try:
        conflict = ConflictReviewService().ignore(conflict_id, note=body.get("note"))
    except NoResultFound as exc:
        db.session.rollback()
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except ConflictAlreadyReviewed as exc:
        db.session.rollback()
        return _json_error(str(exc), HTTPStatus.CONFLICT)
    db.session.commit()
    return jsonify(serialize_conflict(conflict)), HTTPStatus.OK


__all__ = ["unifier_blueprint"]
