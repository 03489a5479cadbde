"""
HTTP Service
============
Flask-based HTTP API around import sessions.

The app owns one SessionManager; clients address an import by the
session handle returned from the upload, never through shared state.

Endpoints:
    GET    /api/health                              → Health check
    POST   /api/imports                             → Upload a PDF and parse it
    GET    /api/imports/<sid>                       → Current ImportResult
    PATCH  /api/imports/<sid>/rows/<row_id>         → Edit one cell
    POST   /api/imports/<sid>/bulk-edit             → Bulk edit a selection
    POST   /api/imports/<sid>/resolve-duplicate     → Keep one row of a WIP
    POST   /api/imports/<sid>/skip                  → Skip / un-skip rows
    POST   /api/imports/<sid>/commit                → Commit to the job store
    GET    /api/imports/<sid>/log                   → Parse log JSON
    GET    /api/imports/<sid>/csv                   → Parsed rows CSV
    DELETE /api/imports/<sid>                       → Discard the session
    GET    /api/jobs                                → Stored jobs
"""

from __future__ import annotations

import logging
from pathlib import Path

from flask import Blueprint, Flask, Response, current_app, jsonify, request
from flask_cors import CORS
from pydantic import TypeAdapter, ValidationError

from . import __version__
from . import storage as fs_storage
from .database import JobStore
from .engine import ImportConfig
from .exceptions import (
    BatchValidationError,
    CommitFailure,
    InvalidTransition,
    SessionBusy,
    TechRecordsError,
    UnknownRow,
    UnknownSession,
    UnreadablePDF,
)
from .exporters import export_stem, parse_log_document, rows_csv
from .models import BulkEdit, ImportStatus
from .session import ImportSession, SessionManager

logger = logging.getLogger(__name__)

api = Blueprint("techrecords", __name__)

_BULK_EDIT = TypeAdapter(BulkEdit)

_STATUS_CODES = {
    UnknownSession: 404,
    UnknownRow: 404,
    SessionBusy: 409,
    InvalidTransition: 409,
    BatchValidationError: 409,
    UnreadablePDF: 400,
    CommitFailure: 500,
}


def create_app(config: dict = None) -> Flask:
    """Create and configure the Flask app."""
    app = Flask(__name__)
    CORS(app)
    if config:
        app.config.update(config)

    project_root = fs_storage.get_project_root()
    app.config.setdefault("UPLOAD_DIR", str(project_root / "uploads" / "pdfs"))
    app.config.setdefault("DB_PATH", None)
    app.config.setdefault("MAX_CONTENT_LENGTH", 50 * 1024 * 1024)  # 50MB
    app.config.setdefault("IMPORT_CONFIG", ImportConfig())

    Path(app.config["UPLOAD_DIR"]).mkdir(parents=True, exist_ok=True)

    store = JobStore(app.config["DB_PATH"])
    app.extensions["techrecords"] = SessionManager(
        config=app.config["IMPORT_CONFIG"],
        store=store,
    )

    app.register_blueprint(api)
    app.register_error_handler(TechRecordsError, _handle_import_error)
    app.register_error_handler(ValidationError, _handle_bad_request)
    app.register_error_handler(ValueError, _handle_bad_request)
    return app


def _sessions() -> SessionManager:
    return current_app.extensions["techrecords"]


def _session_payload(session: ImportSession) -> dict:
    payload = session.result().model_dump(mode="json")
    payload["status"] = session.status.value
    payload["progress"] = (
        session.progress.model_dump(mode="json") if session.progress else None
    )
    return payload


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object body")
    return data


# ─── Error Handlers ───────────────────────────────────────────────────────────


def _handle_import_error(e: TechRecordsError):
    status = 400
    for exc_type, code in _STATUS_CODES.items():
        if isinstance(e, exc_type):
            status = code
            break
    if status >= 500:
        logger.error(f"{type(e).__name__}: {e.message}")
    return jsonify({
        "error": e.message,
        "type": type(e).__name__,
        "details": e.details,
    }), status


def _handle_bad_request(e: Exception):
    if isinstance(e, ValidationError):
        return jsonify({"error": "Invalid request", "details": str(e)}), 400
    return jsonify({"error": str(e)}), 400


# ─── Health Check ─────────────────────────────────────────────────────────────


@api.route("/health", methods=["GET"])
@api.route("/api/health", methods=["GET"])
def health():
    """Health check endpoint."""
    manager = _sessions()
    return jsonify({
        "status": "healthy",
        "service": "techrecords-import",
        "version": __version__,
        "busy": manager.busy,
        "sessions": len(manager.sessions()),
    })


# ─── Import Sessions ──────────────────────────────────────────────────────────


@api.route("/api/imports", methods=["POST"])
def create_import():
    """
    Upload a Tech Records PDF (multipart field ``file``) and parse it.

    Returns 201 with the ImportResult when the session reached preview,
    422 when the file could not be read (the parse log says why).
    """
    if "file" not in request.files:
        return jsonify({"error": "No file provided. Use multipart field 'file'"}), 400
    file = request.files["file"]
    if not file.filename:
        return jsonify({"error": "No file selected"}), 400

    data = file.read()
    filename = fs_storage.sanitize_filename(file.filename)
    fs_storage.save_upload(data, filename, uploads_dir=current_app.config["UPLOAD_DIR"])

    session = _sessions().start(data, filename)
    logger.info(
        f"Import {session.session_id} for {filename}: {session.status.value}, "
        f"{len(session.rows)} rows"
    )
    code = 201 if session.status == ImportStatus.PREVIEW else 422
    return jsonify(_session_payload(session)), code


@api.route("/api/imports/<sid>", methods=["GET"])
def get_import(sid: str):
    return jsonify(_session_payload(_sessions().get(sid)))


@api.route("/api/imports/<sid>", methods=["DELETE"])
def discard_import(sid: str):
    _sessions().discard(sid)
    return jsonify({"success": True, "session_id": sid})


@api.route("/api/imports/<sid>/rows/<row_id>", methods=["PATCH"])
def edit_row(sid: str, row_id: str):
    """Edit one cell: ``{"field": "aws", "value": 12}``."""
    data = _json_body()
    if "field" not in data or "value" not in data:
        return jsonify({"error": "Body must contain 'field' and 'value'"}), 400
    session = _sessions().get(sid)
    row = session.edit_cell(row_id, data["field"], data["value"])
    return jsonify({
        "row": row.model_dump(mode="json"),
        "summary": session.summary.model_dump(mode="json"),
    })


@api.route("/api/imports/<sid>/bulk-edit", methods=["POST"])
def bulk_edit(sid: str):
    """Apply ``{"row_ids": [...], "edit": {"kind": "set_vhc", ...}}``."""
    data = _json_body()
    edit = _BULK_EDIT.validate_python(data.get("edit"))
    row_ids = data.get("row_ids") or []
    session = _sessions().get(sid)
    rows = session.bulk_edit(row_ids, edit)
    return jsonify({
        "rows": [r.model_dump(mode="json") for r in rows],
        "summary": session.summary.model_dump(mode="json"),
    })


@api.route("/api/imports/<sid>/resolve-duplicate", methods=["POST"])
def resolve_duplicate(sid: str):
    data = _json_body()
    wip = str(data.get("wip", ""))
    keep_row_id = str(data.get("keep_row_id", ""))
    if not wip or not keep_row_id:
        return jsonify({"error": "Body must contain 'wip' and 'keep_row_id'"}), 400
    summary = _sessions().get(sid).resolve_duplicate(wip, keep_row_id)
    return jsonify({"summary": summary.model_dump(mode="json")})


@api.route("/api/imports/<sid>/skip", methods=["POST"])
def skip_rows(sid: str):
    """``{"row_ids": [...], "skip": true}``; ``skip: false`` brings rows back."""
    data = _json_body()
    summary = _sessions().get(sid).skip_rows(
        data.get("row_ids") or [], skip=bool(data.get("skip", True))
    )
    return jsonify({"summary": summary.model_dump(mode="json")})


@api.route("/api/imports/<sid>/commit", methods=["POST"])
def commit_import(sid: str):
    summary = _sessions().commit(sid)
    return jsonify({
        "status": ImportStatus.COMPLETE.value,
        "created": summary.created,
        "updated": summary.updated,
        "skipped": summary.skipped,
    })


@api.route("/api/imports/<sid>/log", methods=["GET"])
def export_log(sid: str):
    result = _sessions().get(sid).result()
    response = jsonify(parse_log_document(result))
    response.headers["Content-Disposition"] = (
        f'attachment; filename="{export_stem(result.filename)}_parse_log.json"'
    )
    return response


@api.route("/api/imports/<sid>/csv", methods=["GET"])
def export_csv(sid: str):
    result = _sessions().get(sid).result()
    return Response(
        rows_csv(result.rows),
        mimetype="text/csv",
        headers={
            "Content-Disposition":
                f'attachment; filename="{export_stem(result.filename)}_rows.csv"'
        },
    )


# ─── Job Store ────────────────────────────────────────────────────────────────


@api.route("/api/jobs", methods=["GET"])
def list_jobs():
    """All committed jobs."""
    store = _sessions().store
    return jsonify([j.model_dump(mode="json") for j in store.get_all()])


# ─── Run Server ──────────────────────────────────────────────────────────────


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
):
    """Start the HTTP service."""
    fs_storage.init_storage()
    app = create_app()
    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    run_server(debug=True)
