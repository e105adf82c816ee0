"""Job process workflow: state machine, quantity accounting and pipeline advance.

Everything here is pure. Rows are plain dicts shaped like
``JobProcess.snapshot()`` and processes are any objects exposing
``process_id``, ``process_name`` and ``sequence_number``. Callers persist
the returned rows; nothing in this module touches the session.
"""
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional

from errors import NotFound, PermissionDenied, ValidationError
from models import (
    QC_STYLE_PROCESSES,
    REWORK_CUTOFF_PROCESS,
    JobStatus,
    ProcessStatus,
)

START = "start"
FINISH = "finish"
REWORK = "rework"

# (current status, requested status) -> action
TRANSITIONS = {
    (ProcessStatus.PENDING, ProcessStatus.IN_PROGRESS): START,
    (ProcessStatus.IN_PROGRESS, ProcessStatus.COMPLETED): FINISH,
    (ProcessStatus.IN_PROGRESS, ProcessStatus.REJECTED): FINISH,
    (ProcessStatus.IN_PROGRESS, ProcessStatus.IN_PROGRESS): REWORK,
    (ProcessStatus.COMPLETED, ProcessStatus.IN_PROGRESS): REWORK,
    (ProcessStatus.REJECTED, ProcessStatus.IN_PROGRESS): REWORK,
}


@dataclass
class StatusChange:
    """One status-change request for a single job process."""
    process_id: str
    new_status: ProcessStatus
    user_id: str
    remarks: Optional[str] = None
    quantity_in: Optional[int] = None
    quantity_out: Optional[int] = None
    launched_panels: Optional[int] = None
    pending: Optional[int] = None
    rework_quantity_in: Optional[int] = None
    rework_quantity_out: Optional[int] = None

    QUANTITY_FIELDS = (
        "quantity_in",
        "quantity_out",
        "launched_panels",
        "pending",
        "rework_quantity_in",
        "rework_quantity_out",
    )

    def validate(self):
        for name in self.QUANTITY_FIELDS:
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValidationError(f"{name} cannot be negative.")


# ========================
# Process ordering helpers
# ========================
def ordered(processes):
    return sorted(processes, key=lambda p: p.sequence_number)


def find_process(processes, process_id):
    for process in processes:
        if process.process_id == process_id:
            return process
    raise NotFound(f"Process {process_id} not found")


def next_process(processes, process):
    for candidate in processes:
        if candidate.sequence_number == process.sequence_number + 1:
            return candidate
    return None


def rework_allowed(process, processes) -> bool:
    cutoff = next((p for p in processes if p.process_name == REWORK_CUTOFF_PROCESS), None)
    return cutoff is None or process.sequence_number < cutoff.sequence_number


def uses_pcbs(process) -> bool:
    return process.process_name in QC_STYLE_PROCESSES


def can_update(user, process, row) -> bool:
    return (
        user.is_admin
        or user.department == process.process_name
        or (row.get("assigned_to") is not None and row.get("assigned_to") == user.id)
    )


# ========================
# Quantity accounting
# ========================
def pending_quantity(row) -> Optional[int]:
    """quantityIn - quantityOut - reworkQuantityOut, or None before any IN is known."""
    if row.get("quantity_in") is None:
        return None
    return row["quantity_in"] - (row.get("quantity_out") or 0) - (row.get("rework_quantity_out") or 0)


def total_out(row) -> int:
    return (row.get("quantity_out") or 0) + (row.get("rework_quantity_out") or 0)


# ========================
# Transitions
# ========================
def resolve_action(row, process, processes, new_status) -> str:
    new_status = ProcessStatus(new_status)
    action = TRANSITIONS.get((row["status"], new_status))
    if action is None:
        raise ValidationError(
            f"Cannot move {process.process_name} from {row['status'].value} to {new_status.value}."
        )
    if action == REWORK and not rework_allowed(process, processes):
        if row["status"] == ProcessStatus.IN_PROGRESS:
            return FINISH
        raise ValidationError(f"Rework is not allowed for {process.process_name}.")
    return action


def start(row, change, now):
    updated = dict(row)
    updated.update(
        status=ProcessStatus.IN_PROGRESS,
        start_time=now,
        end_time=None,
        assigned_to=None,
        remarks=change.remarks or row.get("remarks"),
    )
    return updated


def finish(row, process, processes, change, now):
    status = ProcessStatus(change.new_status)
    updated = dict(row)
    updated.update(
        status=status,
        end_time=None if status == ProcessStatus.IN_PROGRESS else now,
        remarks=change.remarks or row.get("remarks"),
        assigned_to=change.user_id,
    )
    if change.quantity_in is not None:
        updated["quantity_in"] = change.quantity_in
    if change.quantity_out is not None:
        updated["quantity_out"] = change.quantity_out
    if change.launched_panels is not None:
        updated["launched_panels"] = change.launched_panels
        if change.quantity_out is None and not uses_pcbs(process):
            updated["quantity_out"] = change.launched_panels

    if not rework_allowed(process, processes) and updated.get("quantity_in") is not None:
        diff = updated["quantity_in"] - (updated.get("quantity_out") or 0)
        updated["reject_quantity"] = diff if diff > 0 else 0
    return updated


def rework(row, change, now):
    """Re-open a process for its pending quantity.

    With ``pending`` supplied the rework OUT is derived from it:
    reworkQuantityOut = quantityIn - quantityOut(new) - pending(new).
    Without it, ``rework_quantity_out`` is added to the running total.
    Reaching a pending quantity of exactly 0 completes the process.
    """
    previous_pending = pending_quantity(row)
    if previous_pending is None:
        raise ValidationError("IN quantity is not recorded yet; nothing to rework.")
    reopening = row["status"] != ProcessStatus.IN_PROGRESS
    if reopening and previous_pending <= 0:
        raise ValidationError("Nothing is pending, so the process cannot be reworked.")

    quantity_in = row["quantity_in"]
    quantity_out = change.quantity_out if change.quantity_out is not None else (row.get("quantity_out") or 0)

    if change.pending is not None:
        rework_out = quantity_in - quantity_out - change.pending
    else:
        rework_out = (row.get("rework_quantity_out") or 0) + (change.rework_quantity_out or 0)
    if rework_out < 0:
        raise ValidationError("OUT and pending quantities exceed the IN quantity.")

    # Only a reopened process takes its pending quantity back in
    if change.rework_quantity_in is not None:
        added_in = change.rework_quantity_in
    else:
        added_in = previous_pending if reopening else 0
    updated = dict(row)
    updated.update(
        quantity_out=quantity_out,
        rework_quantity_out=rework_out,
        rework_quantity_in=(row.get("rework_quantity_in") or 0) + added_in,
        remarks=change.remarks or row.get("remarks"),
        status=ProcessStatus.IN_PROGRESS,
        end_time=None,
    )

    remaining = pending_quantity(updated)
    if remaining < 0:
        raise ValidationError("Rework would leave a negative pending quantity.")
    if remaining == 0:
        updated["status"] = ProcessStatus.COMPLETED
        updated["end_time"] = now
    return updated


def apply_status_change(row, process, processes, change, now):
    """Compute the new state of one row. Other rows are untouched."""
    change.validate()
    action = resolve_action(row, process, processes, change.new_status)
    if action == START:
        return start(row, change, now)
    if action == REWORK:
        return rework(row, change, now)
    return finish(row, process, processes, change, now)


# ========================
# Pipeline advance and merge
# ========================
def advance(rows, processes, completed_process_id, now):
    """Activate the process after ``completed_process_id`` when it is still Pending."""
    rows = [dict(r) for r in rows]
    completed = next((r for r in rows if r["process_id"] == completed_process_id), None)
    if completed is None or completed["status"] != ProcessStatus.COMPLETED:
        return rows

    following = next_process(processes, find_process(processes, completed_process_id))
    if following is None:
        return rows

    for row in rows:
        if row["process_id"] == following.process_id and row["status"] == ProcessStatus.PENDING:
            # The next process starts with everything the completed one put out, rework included
            row.update(
                status=ProcessStatus.IN_PROGRESS,
                start_time=now,
                assigned_to=None,
                quantity_in=total_out(completed) or None,
            )
    return rows


def merge_process_update(rows, updated_row, processes, now):
    """Replace the row with the same id and chain the next process if it completed."""
    merged = [dict(updated_row) if r["id"] == updated_row["id"] else dict(r) for r in rows]
    if updated_row["status"] == ProcessStatus.COMPLETED:
        merged = advance(merged, processes, updated_row["process_id"], now)
    return merged


def update_process_status(rows, processes, user, change, now):
    """Run one status change against a job's rows.

    Returns ``(new_rows, updated_row)``.
    """
    process = find_process(processes, change.process_id)
    row = next((r for r in rows if r["process_id"] == change.process_id), None)
    if row is None:
        raise NotFound(f"Process {change.process_id} not found for this job")
    if not can_update(user, process, row):
        raise PermissionDenied(f"{user.name} cannot update {process.process_name}.")

    updated = apply_status_change(row, process, processes, change, now)
    return merge_process_update(rows, updated, processes, now), updated


# ========================
# Prefill and job status
# ========================
def suggest_quantity_in(ups_panel, rows, processes, process_id, new_status):
    """Propose the IN quantity for a status change.

    Rework proposes the pending quantity. Otherwise the closest earlier
    process with output supplies the figure, converted between panels and
    PCBs with the job's ups-per-panel.
    """
    process = find_process(processes, process_id)
    row = next((r for r in rows if r["process_id"] == process_id), None)
    if row is None:
        raise NotFound(f"Process {process_id} not found for this job")

    current_pcbs = uses_pcbs(process)
    unit = "pcbs" if current_pcbs else "panels"
    new_status = ProcessStatus(new_status)
    if (
        new_status == ProcessStatus.IN_PROGRESS
        and row["status"] != ProcessStatus.PENDING
        and rework_allowed(process, processes)
    ):
        return {"quantityIn": pending_quantity(row) or 0, "unit": unit, "rework": True}

    by_id = {p.process_id: p for p in processes}
    earlier = sorted(
        (r for r in rows if by_id[r["process_id"]].sequence_number < process.sequence_number),
        key=lambda r: by_id[r["process_id"]].sequence_number,
        reverse=True,
    )
    if current_pcbs:
        previous = next((r for r in earlier if r.get("launched_panels") is not None), None)
    else:
        previous = next(
            (r for r in earlier if r.get("quantity_out") is not None or r.get("launched_panels") is not None),
            None,
        )

    base, base_unit = None, None
    if previous is not None:
        if current_pcbs and previous.get("launched_panels") is not None:
            base, base_unit = previous["launched_panels"], "panels"
        elif previous.get("quantity_out") is not None:
            base = total_out(previous)
            base_unit = "pcbs" if uses_pcbs(by_id[previous["process_id"]]) else "panels"
        elif previous.get("launched_panels") is not None:
            base, base_unit = previous["launched_panels"], "panels"
    if base is None and row.get("quantity_in") is not None:
        base, base_unit = row["quantity_in"], unit

    if base is None:
        return {"quantityIn": None, "unit": unit, "rework": False}

    ups = ups_panel or 1
    if base_unit == unit:
        quantity = base
    elif base_unit == "panels":
        quantity = base * ups
    else:
        quantity = base // ups
    return {"quantityIn": quantity, "unit": unit, "rework": False}


def _due(due_date) -> Optional[date]:
    if not due_date:
        return None
    return date.fromisoformat(due_date[:10])


def derive_job_status(due_date, rows: List[dict], today: date) -> JobStatus:
    statuses = [r["status"] for r in rows]
    if statuses and all(s == ProcessStatus.COMPLETED for s in statuses):
        return JobStatus.COMPLETED
    due = _due(due_date)
    if due is not None and due < today:
        return JobStatus.OVERDUE
    if all(s == ProcessStatus.PENDING for s in statuses):
        return JobStatus.PENDING
    return JobStatus.IN_PROGRESS


def build_job_processes(job_id, process_key, processes, launched_panels, now: datetime):
    """The 17 rows of a new job: first process In Progress, the rest Pending."""
    rows = []
    for index, process in enumerate(ordered(processes)):
        first = index == 0
        rows.append({
            "id": f"jp-{job_id}-{process.process_id}",
            "job_id": process_key,
            "process_id": process.process_id,
            "assigned_to": None,
            "status": ProcessStatus.IN_PROGRESS if first else ProcessStatus.PENDING,
            "start_time": now if first else None,
            "end_time": None,
            "remarks": None,
            "quantity_in": launched_panels if first else None,
            "quantity_out": None,
            "rework_quantity_in": None,
            "rework_quantity_out": None,
            "reject_quantity": None,
            "launched_panels": None,
        })
    return rows
