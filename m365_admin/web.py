"""Flask JSON API used by the browser console."""
from __future__ import annotations

import os
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from flask import Flask, jsonify, request

from .availability import check_username_availability
from .config import AppConfig, ConfigurationError, configure_logging, load_config
from .context import DirectoryContext
from .csv_import import CSVParser, ImportParseResult
from .graph_client import GraphClientError
from .models import ProvisioningProgress, ProvisioningResult
from .passwords import DEFAULT_LENGTH, MIN_LENGTH, generate_password_with_strength
from .progress import LoggingProgressObserver, ProgressRecorder
from .provisioning import BulkProvisioner, CancellationToken, ProvisioningSetupError
from .summary import build_summary, log_summary

_MAX_PASSWORD_LENGTH = 256
DEFAULT_JOB_RETENTION = timedelta(hours=1)


@dataclass
class ImportJob:
    """A provisioning run executing on a background thread."""

    id: str
    total: int
    dry_run: bool
    recorder: ProgressRecorder = field(default_factory=ProgressRecorder)
    token: CancellationToken = field(default_factory=CancellationToken)
    state: str = "running"  # running, completed, cancelled, failed
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    result: Optional[ProvisioningResult] = None
    error: Optional[str] = None
    thread: Optional[threading.Thread] = None

    def to_dict(self) -> Dict[str, Any]:
        progress = self.recorder.latest or ProvisioningProgress(total=self.total)
        payload: Dict[str, Any] = {
            "id": self.id,
            "state": self.state,
            "dryRun": self.dry_run,
            "createdAt": self.created_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "progress": progress.to_dict(),
        }
        if self.error:
            payload["error"] = self.error
        if self.result is not None:
            payload["summary"] = build_summary(self.result).to_dict()
        return payload


class ImportJobRegistry:
    """Jobs by id; finished jobs are dropped once older than ``retention``."""

    def __init__(self, retention: timedelta = DEFAULT_JOB_RETENTION) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[str, ImportJob] = {}
        self.retention = retention

    def add(self, job: ImportJob) -> None:
        with self._lock:
            self._prune(datetime.now(timezone.utc))
            self._jobs[job.id] = job

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.retention
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.finished_at is not None and job.finished_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]

    def get(self, job_id: str) -> Optional[ImportJob]:
        with self._lock:
            return self._jobs.get(job_id)


def create_app(
    config: Optional[AppConfig] = None,
    context: Optional[DirectoryContext] = None,
    config_path: Optional[Union[Path, str]] = None,
) -> Flask:
    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False
    if config is None:
        config = load_config(Path(config_path) if config_path else None)
    configure_logging(config.logging)
    app.config["APP_CONFIG"] = config
    app.config["DIRECTORY_CONTEXT"] = context or DirectoryContext.from_config(config)
    app.config["IMPORT_JOBS"] = ImportJobRegistry()

    @app.post("/api/import/validate")
    def api_validate_import() -> Any:
        text = _request_csv_text()
        if text is None:
            return jsonify({"error": "Provide CSV text in the request body or a 'file' upload."}), 400
        parsed = _parser(app).parse(text)
        return jsonify(parsed.to_dict())

    @app.post("/api/import/jobs")
    def api_start_import() -> Any:
        text = _request_csv_text()
        if text is None:
            return jsonify({"error": "Provide CSV text in 'csv' or a 'file' upload."}), 400
        dry_run = _request_flag("dryRun")
        parsed = _parser(app).parse(text)
        records = parsed.provisionable()
        if not records:
            payload = parsed.to_dict()
            payload["error"] = "No valid records to provision."
            return jsonify(payload), 422

        job = ImportJob(id=str(uuid.uuid4()), total=len(records), dry_run=dry_run)
        _registry(app).add(job)
        worker = threading.Thread(
            target=_run_import_job,
            args=(app, job, parsed),
            name=f"import-{job.id}",
            daemon=True,
        )
        job.thread = worker
        worker.start()
        app.logger.info("Started import job %s with %s record(s)", job.id, job.total)
        payload = job.to_dict()
        payload["validation"] = parsed.summary.to_dict()
        return jsonify(payload), 202

    @app.get("/api/import/jobs/<job_id>")
    def api_import_status(job_id: str) -> Any:
        job = _registry(app).get(job_id)
        if job is None:
            return jsonify({"error": f"Import job '{job_id}' not found."}), 404
        return jsonify(job.to_dict())

    @app.post("/api/import/jobs/<job_id>/cancel")
    def api_cancel_import(job_id: str) -> Any:
        job = _registry(app).get(job_id)
        if job is None:
            return jsonify({"error": f"Import job '{job_id}' not found."}), 404
        job.token.cancel()
        app.logger.info("Cancellation requested for import job %s", job_id)
        return jsonify(job.to_dict()), 202

    @app.get("/api/users/availability")
    def api_username_availability() -> Any:
        principal_name = (request.args.get("upn") or "").strip()
        if not principal_name:
            return jsonify({"error": "Query parameter 'upn' is required."}), 400
        try:
            result = check_username_availability(_context(app).client, principal_name)
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        except GraphClientError as exc:
            app.logger.warning("Availability lookup failed for %s: %s", principal_name, exc)
            return jsonify({"error": str(exc)}), 502
        return jsonify(result.to_dict())

    @app.get("/api/password")
    def api_generate_password() -> Any:
        try:
            length = int(request.args.get("length", DEFAULT_LENGTH))
        except ValueError:
            return jsonify({"error": "'length' must be an integer."}), 400
        if length < MIN_LENGTH or length > _MAX_PASSWORD_LENGTH:
            return (
                jsonify({"error": f"'length' must be between {MIN_LENGTH} and {_MAX_PASSWORD_LENGTH}."}),
                400,
            )
        generated = generate_password_with_strength(length)
        return jsonify({"password": generated.password, "strength": generated.strength.value})

    @app.errorhandler(ConfigurationError)
    def handle_configuration_error(exc: ConfigurationError) -> Any:
        return jsonify({"error": str(exc)}), 500

    return app


def _context(app: Flask) -> DirectoryContext:
    return app.config["DIRECTORY_CONTEXT"]


def _registry(app: Flask) -> ImportJobRegistry:
    return app.config["IMPORT_JOBS"]


def _parser(app: Flask) -> CSVParser:
    config: AppConfig = app.config["APP_CONFIG"]
    return CSVParser(config.imports)


def _request_csv_text() -> Optional[str]:
    upload = request.files.get("file")
    if upload is not None:
        return upload.read().decode("utf-8-sig", errors="replace")
    if request.is_json:
        payload = request.get_json(silent=True) or {}
        text = payload.get("csv") if isinstance(payload, dict) else None
        return text if isinstance(text, str) and text.strip() else None
    if request.form.get("csv"):
        return request.form["csv"]
    text = request.get_data(as_text=True)
    return text if text.strip() else None


def _request_flag(name: str) -> bool:
    if request.is_json:
        payload = request.get_json(silent=True) or {}
        value = payload.get(name) if isinstance(payload, dict) else None
    else:
        value = request.form.get(name, request.args.get(name))
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _run_import_job(app: Flask, job: ImportJob, parsed: ImportParseResult) -> None:
    observers: List[Any] = [job.recorder, LoggingProgressObserver(app.logger)]
    provisioner = BulkProvisioner(_context(app), observers=observers)
    try:
        result = provisioner.run(parsed.provisionable(), dry_run=job.dry_run, cancel_token=job.token)
    except ProvisioningSetupError as exc:
        job.state = "failed"
        job.error = str(exc)
        app.logger.error("Import job %s could not start: %s", job.id, exc)
    except Exception as exc:  # pragma: no cover - worker resilience
        job.state = "failed"
        job.error = f"Unexpected error: {exc}"
        app.logger.exception("Import job %s crashed: %s", job.id, exc)
    else:
        job.result = result
        job.state = "cancelled" if result.cancelled else "completed"
        log_summary(build_summary(result), app.logger)
    finally:
        job.finished_at = datetime.now(timezone.utc)


def main() -> None:
    """Run the development server."""

    app = create_app()
    app.run(
        host=os.environ.get("M365_ADMIN_WEB_HOST", "127.0.0.1"),
        port=int(os.environ.get("M365_ADMIN_WEB_PORT", "5000")),
        debug=os.environ.get("M365_ADMIN_WEB_DEBUG") == "1",
    )


__all__ = ["ImportJob", "ImportJobRegistry", "create_app", "main"]


if __name__ == "__main__":
    main()
