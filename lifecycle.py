"""Job lifecycle: create, edit, delete/restore jobs and drive process status changes."""
import logging
from datetime import date, datetime

import workflow
from errors import ValidationError
from models import JOB_FIELDS, JobProcess, JobStatus, ProcessStatus, camel, parse_timestamp
from undo import UndoLog, run_mutation

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = {
    "jobId": "Job No. is required",
    "customerName": "Customer name is required",
    "partNo": "Part No. is required",
    "dueDate": "A due date is required.",
    "quantity": "Order quantity must be at least 1",
    "material": "Material is required",
}
DATE_FIELDS = ("orderDate", "dueDate")
PRIORITIES = ("Low", "Medium", "High", "Urgent")


# ========================
# Payload parsing
# ========================
def _coerce(key, column, value):
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    kind = column.type.python_type
    if kind is bool:
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes", "on")
        return bool(value)
    if kind in (int, float):
        try:
            number = kind(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{key} must be a number")
        if number < 0:
            raise ValidationError(f"{key} cannot be negative.")
        return number
    return str(value).strip()


def parse_job_payload(data, partial=False):
    """Validate a job form and map it onto Job column names."""
    if not isinstance(data, dict):
        raise ValidationError("Job data must be an object")

    missing = [
        message
        for key, message in REQUIRED_FIELDS.items()
        if (not partial or key in data) and data.get(key) in (None, "")
    ]
    if missing:
        raise ValidationError("; ".join(missing))

    fields = {}
    for key, column in JOB_FIELDS.items():
        if key in data:
            fields[column.name] = _coerce(key, column, data[key])

    if "quantity" in fields and (fields["quantity"] is None or fields["quantity"] < 1):
        raise ValidationError(REQUIRED_FIELDS["quantity"])
    for key in DATE_FIELDS:
        value = fields.get(column_name(key))
        if value:
            try:
                date.fromisoformat(value[:10])
            except ValueError:
                raise ValidationError(f"{key} must be an ISO date")
    if fields.get("priority") and fields["priority"] not in PRIORITIES:
        raise ValidationError(f"priority must be one of {', '.join(PRIORITIES)}")
    return fields


def column_name(key):
    return JOB_FIELDS[key].name


def _int_or_none(payload, key):
    value = payload.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number")


def parse_status_change(payload):
    for key in ("processId", "newStatus", "userId"):
        if not payload.get(key):
            raise ValidationError(f"{key} is required")
    try:
        new_status = ProcessStatus(payload["newStatus"])
    except ValueError:
        raise ValidationError(f"Unknown status {payload['newStatus']}")

    quantities = {
        name: _int_or_none(payload, camel(name)) for name in workflow.StatusChange.QUANTITY_FIELDS
    }
    return workflow.StatusChange(
        process_id=payload["processId"],
        new_status=new_status,
        user_id=payload["userId"],
        remarks=payload.get("remarks") or None,
        **quantities,
    )


def job_with_processes(job, rows):
    data = job.to_dict()
    data["processes"] = [JobProcess.row_to_dict(row) for row in rows]
    return data


# ========================
# Job operations
# ========================
def create_job(store, data, now=None):
    """Create a job together with one row per process, the first one started."""
    now = now or datetime.utcnow()
    fields = parse_job_payload(data)
    fields.update(created_at=now, status=JobStatus.IN_PROGRESS.value)

    def _create():
        processes = store.get_processes()
        if not processes:
            raise ValidationError("No processes defined; run `flask init-db` first")
        job = store.add_job(fields)
        rows = workflow.build_job_processes(job.job_id, job.process_key, processes, job.launched_panels, now)
        store.add_job_processes(rows)
        return job_with_processes(job, rows)

    created = run_mutation(store, _create)
    logger.info("Job %s created with %d processes", created["jobId"], len(created["processes"]))
    return created


def update_job(store, identifier, data):
    fields = parse_job_payload(data, partial=True)
    job = run_mutation(store, store.update_job, identifier, fields)
    logger.info("Job %s updated", job.job_id)
    return job.to_dict()


def delete_job(store, identifier):
    """Delete a job and its processes; returns the snapshot needed to restore it."""
    snapshot = run_mutation(store, store.delete_job, identifier)
    if snapshot is None:
        return None
    job, processes = snapshot
    logger.info("Job %s deleted with %d processes", job["jobId"], len(processes))
    return dict(job, processes=processes)


def restore_job(store, snapshot):
    if not isinstance(snapshot, dict):
        raise ValidationError("Job snapshot must be an object")
    fields = parse_job_payload(snapshot)
    try:
        status = JobStatus(snapshot.get("status") or JobStatus.IN_PROGRESS.value)
        created_at = parse_timestamp(snapshot.get("createdAt")) or datetime.utcnow()
        rows = [JobProcess.row_from_dict(p) for p in snapshot.get("processes") or []]
    except (TypeError, ValueError, AttributeError):
        raise ValidationError("Job snapshot is malformed")
    fields.update(status=status.value, created_at=created_at)

    restored = run_mutation(store, store.restore_job, fields, rows)
    if restored:
        logger.info("Job %s restored with %d processes", fields["job_id"], len(rows))
    return restored


# ========================
# Process status
# ========================
def update_process_status(store, payload, now=None):
    """Apply one status change and persist it.

    Returns the payload echoed back, plus the updated row, the job's rows
    after the change and a token that undoes it.
    """
    now = now or datetime.utcnow()
    if not isinstance(payload, dict) or not payload.get("jobId"):
        raise ValidationError("jobId is required")
    change = parse_status_change(payload)
    job = store.get_job_by_id(payload["jobId"])
    user = store.get_user(change.user_id)
    processes = store.get_processes()
    current = [jp.snapshot() for jp in store.get_job_processes_by_job_id(job.process_key)]

    rows, updated = workflow.update_process_status(current, processes, user, change, now)

    def _persist():
        token = UndoLog(store).record(job.process_key, current)
        store.replace_job_processes(job.process_key, rows)
        job.status = workflow.derive_job_status(job.due_date, rows, now.date()).value
        return token

    token = run_mutation(store, _persist)
    logger.info(
        "Job %s process %s -> %s by %s",
        job.job_id, change.process_id, updated["status"].value, user.id,
    )
    return dict(
        payload,
        undoToken=token,
        process=JobProcess.row_to_dict(updated),
        jobProcesses=[JobProcess.row_to_dict(row) for row in rows],
    )


def undo(store, token, now=None):
    now = now or datetime.utcnow()

    def _undo():
        job, rows = UndoLog(store).undo(token)
        job.status = workflow.derive_job_status(job.due_date, rows, now.date()).value
        return rows

    rows = run_mutation(store, _undo)
    return [JobProcess.row_to_dict(row) for row in rows]


def suggest_quantity(store, identifier, process_id, new_status):
    job = store.get_job_by_id(identifier)
    try:
        new_status = ProcessStatus(new_status)
    except ValueError:
        raise ValidationError(f"Unknown status {new_status}")
    rows = [jp.snapshot() for jp in store.get_job_processes_by_job_id(job.process_key)]
    return workflow.suggest_quantity_in(job.ups_panel, rows, store.get_processes(), process_id, new_status)
