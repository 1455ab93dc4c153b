"""Flask JSON API for playbook training runs.

Thin layer over TrainingService: parses request parameters, calls the
service and maps domain errors to JSON error responses.
"""

from __future__ import annotations

import logging
from typing import Any

from flask import Flask, abort, g, jsonify, request
from pydantic import ValidationError

from src.db.repo import Repository
from src.training.config import CreateRunRequest, RecoveryConfig
from src.training.dataset import parse_dataset
from src.training.errors import DatasetError, InvalidRunStateError, RunNotFoundError
from src.training.service import PipelineFactory, TrainingService

logger = logging.getLogger(__name__)

app = Flask(__name__)

# Set by init_app
_db_path: str | None = None
_pipeline_factory: PipelineFactory | None = None
_recovery_config: RecoveryConfig | None = None


def get_repo() -> Repository:
    """Get the repository instance for the current request.

    Creates a new connection per request to handle Flask's threading model.
    """
    if _db_path is None:
        raise RuntimeError("Database path not initialized. Call init_app() first.")

    if "repo" not in g:
        g.repo = Repository(_db_path)
        g.repo.connect()

    return g.repo


def get_service() -> TrainingService:
    return TrainingService(get_repo(), _pipeline_factory, _recovery_config)


@app.teardown_appcontext
def close_repo(exception):
    """Close the repository connection at the end of each request."""
    repo = g.pop("repo", None)
    if repo is not None:
        repo.close()


def init_app(
    db_path: str,
    pipeline_factory: PipelineFactory | None = None,
    recovery_config: RecoveryConfig | None = None,
) -> Flask:
    """Initialize the Flask app.

    Args:
        db_path: Path to the SQLite database
        pipeline_factory: Builds epoch pipelines for started runs; without
            one the API is read-only and start requests fail
        recovery_config: Thresholds for the recover endpoint

    Returns:
        Configured Flask app
    """
    global _db_path, _pipeline_factory, _recovery_config
    _db_path = db_path
    _pipeline_factory = pipeline_factory
    _recovery_config = recovery_config or RecoveryConfig.from_env()
    return app


def _int_arg(name: str, required: bool = True) -> int | None:
    value = request.args.get(name)
    if value is None or value == "":
        if required:
            abort(400, description=f"Missing {name} parameter")
        return None
    try:
        return int(value)
    except ValueError:
        abort(400, description=f"Invalid {name} parameter: {value}")


def _json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        abort(400, description="Request body must be a JSON object")
    return body


# =============================================================================
# Run lifecycle
# =============================================================================


@app.route("/api/training/start", methods=["POST"])
def create_and_start_run():
    """Create a run from uploaded data and start it unless auto_start is false."""
    body = _json_body()
    if not body.get("name") or not body.get("training_data") or not body.get("eval_data"):
        abort(400, description="Missing required fields: name, training_data, eval_data")

    params = CreateRunRequest.model_validate(
        {k: body[k] for k in ("name", "max_epochs", "plateau_threshold", "plateau_patience") if k in body}
    )
    try:
        train_rows = parse_dataset(body["training_data"])
    except DatasetError as e:
        raise DatasetError("Invalid training data", e.errors) from e
    try:
        eval_rows = parse_dataset(body["eval_data"])
    except DatasetError as e:
        raise DatasetError("Invalid evaluation data", e.errors) from e

    service = get_service()
    run = service.create_run(params, train_rows, eval_rows)
    payload = {
        "run_id": run.id,
        "training_samples": len(train_rows),
        "eval_samples": len(eval_rows),
    }

    if body.get("auto_start", True):
        service.start_run(run.id)
        return jsonify({"message": "Training started", **payload})
    return jsonify({"message": "Training run created", **payload})


@app.route("/api/training/start/<int:run_id>", methods=["POST"])
def start_run(run_id: int):
    get_service().start_run(run_id)
    return jsonify({"message": "Training started", "run_id": run_id})


@app.route("/api/training/stop", methods=["POST"])
def stop_run():
    body = _json_body()
    run_id = body.get("run_id")
    if not isinstance(run_id, int):
        abort(400, description="run_id is required")

    get_service().stop_run(run_id)
    return jsonify({
        "success": True,
        "message": f"Stop requested for training run {run_id}; it ends after the current epoch",
    })


@app.route("/api/training/recover", methods=["POST"])
def recover():
    result = get_service().recover_now()
    return jsonify({
        "success": True,
        "message": f"Recovered {result['recovered']} stuck run(s), timed out {result['timed_out']} run(s)",
        **result,
    })


# =============================================================================
# Queries
# =============================================================================


@app.route("/api/training/runs")
def list_runs():
    status = request.args.get("status") or None
    limit = _int_arg("limit", required=False) or 100
    return jsonify(get_service().list_runs(status=status, limit=limit))


@app.route("/api/training/status")
def run_status():
    return jsonify(get_service().get_run_status(_int_arg("run_id")))


@app.route("/api/training/epochs")
def list_epochs():
    return jsonify(get_service().list_epochs(_int_arg("run_id")))


@app.route("/api/training/reflections")
def list_reflections():
    run_id = _int_arg("run_id")
    epoch_number = _int_arg("epoch_number", required=False)
    return jsonify(get_service().list_reflections(run_id, epoch_number))


@app.route("/api/training/heuristics")
def list_heuristics():
    run_id = _int_arg("run_id", required=False)
    include_baseline = request.args.get("include_baseline", "true").lower() != "false"
    return jsonify(get_service().list_heuristics(run_id, include_baseline=include_baseline))


@app.route("/api/training/logs")
def list_agent_logs():
    run_id = _int_arg("run_id")
    epoch_number = _int_arg("epoch_number", required=False)
    agent_type = request.args.get("agent_type") or None
    return jsonify(get_service().list_agent_logs(run_id, epoch_number, agent_type))


@app.route("/api/training/playbook-snapshot")
def playbook_snapshot():
    run_id = _int_arg("run_id")
    epoch_number = _int_arg("epoch_number")
    return jsonify(get_service().get_playbook_snapshot(run_id, epoch_number))


# =============================================================================
# Error Handlers
# =============================================================================


@app.errorhandler(RunNotFoundError)
def run_not_found(e):
    return jsonify({"error": str(e)}), 404


@app.errorhandler(InvalidRunStateError)
def invalid_run_state(e):
    return jsonify({"error": str(e)}), 409


@app.errorhandler(DatasetError)
def invalid_dataset(e):
    return jsonify({"error": str(e), "details": e.errors}), 400


@app.errorhandler(ValidationError)
def invalid_parameters(e):
    return jsonify({"error": "Invalid parameters", "details": [err["msg"] for err in e.errors()]}), 400


@app.errorhandler(400)
def bad_request(e):
    return jsonify({"error": e.description}), 400


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
def server_error(e):
    logger.error(f"Server error: {e}")
    return jsonify({"error": f"Server error: {e}"}), 500
