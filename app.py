import logging
import os
from io import BytesIO

from flask import Blueprint, Flask, current_app, jsonify, request, send_file

import lifecycle
from errors import JobTrackerError, NotFound
from labels import render_traveller_label
from models import PROCESSES, USERS, Process, User, db
from store import RecordStore

DEFAULT_CONFIG = {
    "SQLALCHEMY_DATABASE_URI": "sqlite:///jobtrack.db",
    "SECRET_KEY": os.getenv("FLASK_SECRET_KEY", "dev_only_change_me"),
    "LOG_LEVEL": "INFO",
    "SEED_REFERENCE_DATA": True,
    "LABEL_FONT": "arial.ttf",
}

api = Blueprint("api", __name__, url_prefix="/api")


def get_store():
    return current_app.extensions["record_store"]


# ========================
# App factory
# ========================
def create_app(config=None):
    app = Flask(__name__)
    app.config.update(DEFAULT_CONFIG)
    app.config.from_prefixed_env()
    if config:
        app.config.update(config)

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.logger.setLevel(app.config["LOG_LEVEL"])

    db.init_app(app)
    app.extensions["record_store"] = RecordStore(db)
    app.register_blueprint(api)

    @app.errorhandler(JobTrackerError)
    def handle_tracker_error(error):
        if error.http_status >= 500:
            app.logger.warning("%s: %s", type(error).__name__, error)
        return jsonify({"error": str(error)}), error.http_status

    @app.cli.command("init-db")
    def init_db_command():
        """Create tables and load the process and user reference data."""
        db.create_all()
        added = seed_reference_data()
        print(f"Database ready ({added} reference rows added).")

    if app.config["SEED_REFERENCE_DATA"]:
        with app.app_context():
            db.create_all()
            seed_reference_data()

    return app


def seed_reference_data():
    """Insert the 17 processes and the department users if they do not exist."""
    added = 0
    for process_id, name, sequence in PROCESSES:
        if not db.session.get(Process, process_id):
            db.session.add(Process(process_id=process_id, process_name=name, sequence_number=sequence))
            added += 1

    for user_id, name, role, department in USERS:
        if not db.session.get(User, user_id):
            db.session.add(User(id=user_id, name=name, role=role, department=department))
            added += 1

    db.session.commit()
    if added:
        logging.getLogger(__name__).info("Seeded %d reference rows", added)
    return added


# ========================
# Read endpoints
# ========================
def _load(entity, loader):
    try:
        return jsonify(loader())
    except JobTrackerError:
        raise
    except Exception:
        current_app.logger.exception("Failed to load %s", entity)
        return jsonify({"error": f"Failed to load {entity}."}), 500


@api.route("/users")
def list_users():
    return _load("users", lambda: [u.to_dict() for u in get_store().get_users()])


@api.route("/processes")
def list_processes():
    return _load("processes", lambda: [p.to_dict() for p in get_store().get_processes()])


@api.route("/jobs")
def list_jobs():
    status = request.args.get("status", "").strip()
    query = request.args.get("q", "").strip()
    if status == "All":
        status = ""
    return _load("jobs", lambda: [j.to_dict() for j in get_store().get_jobs(status, query)])


@api.route("/job-processes")
def list_job_processes():
    job_key = request.args.get("jobId", "").strip()
    return _load(
        "job processes",
        lambda: [jp.to_dict() for jp in get_store().get_job_processes(job_key or None)],
    )


@api.route("/jobs/<job_id>")
def job_detail(job_id):
    store = get_store()
    job = store.get_job_by_id(job_id)
    rows = [jp.snapshot() for jp in store.get_job_processes_by_job_id(job.process_key)]
    return jsonify(lifecycle.job_with_processes(job, rows))


@api.route("/jobs/<job_id>/processes/<process_id>/suggestion")
def quantity_suggestion(job_id, process_id):
    new_status = request.args.get("newStatus", "Completed")
    return jsonify(lifecycle.suggest_quantity(get_store(), job_id, process_id, new_status))


@api.route("/jobs/<job_id>/label.png")
def traveller_label(job_id):
    job = get_store().get_job_by_id(job_id)
    png = render_traveller_label(job, current_app.config["LABEL_FONT"])
    return send_file(BytesIO(png), mimetype="image/png", download_name=f"{job.job_id.upper()}.png")


# ========================
# Mutations
# ========================
@api.route("/jobs", methods=["POST"])
def create_job():
    created = lifecycle.create_job(get_store(), request.get_json(silent=True) or {})
    return jsonify(created), 201


@api.route("/jobs/<job_id>", methods=["PUT"])
def update_job(job_id):
    return jsonify(lifecycle.update_job(get_store(), job_id, request.get_json(silent=True) or {}))


@api.route("/jobs/<job_id>", methods=["DELETE"])
def delete_job(job_id):
    deleted = lifecycle.delete_job(get_store(), job_id)
    if deleted is None:
        raise NotFound(f"Job {job_id} not found")
    return jsonify(deleted)


@api.route("/jobs/restore", methods=["POST"])
def restore_job():
    lifecycle.restore_job(get_store(), request.get_json(silent=True))
    return "", 204


@api.route("/jobs/<job_id>/processes/<process_id>/status", methods=["POST"])
def update_process_status(job_id, process_id):
    payload = dict(request.get_json(silent=True) or {}, jobId=job_id, processId=process_id)
    return jsonify(lifecycle.update_process_status(get_store(), payload))


@api.route("/undo/<token>", methods=["POST"])
def undo(token):
    return jsonify({"jobProcesses": lifecycle.undo(get_store(), token)})


if __name__ == "__main__":
    create_app().run(debug=True)
