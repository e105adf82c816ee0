"""Mutation runner and snapshot-based undo log."""
import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError

from errors import NotFound, TransientFailure
from models import JobProcess

logger = logging.getLogger(__name__)

# Undo entries kept per job
UNDO_DEPTH = 20


def run_mutation(store, fn, *args, **kwargs):
    """Run ``fn`` and commit, or roll back to the last committed state.

    Store failures surface as TransientFailure. Nothing is retried.
    """
    try:
        result = fn(*args, **kwargs)
        store.commit()
        return result
    except SQLAlchemyError as exc:
        store.rollback()
        logger.warning("Mutation %s rolled back", fn.__name__, exc_info=True)
        raise TransientFailure("Could not save changes. Please try again.") from exc
    except Exception:
        store.rollback()
        raise


class UndoLog:
    """Keeps pre-mutation snapshots of a job's process rows.

    Undo writes the snapshot back as a compensating update; it does not
    run the state machine in reverse.
    """

    def __init__(self, store, depth=UNDO_DEPTH):
        self.store = store
        self.depth = depth

    def record(self, job_key, rows):
        token = uuid.uuid4().hex
        snapshot = [JobProcess.row_to_dict(row) for row in rows]
        self.store.add_undo_entry(token, job_key, snapshot)
        self.store.prune_undo_entries(job_key, self.depth)
        return token

    def undo(self, token):
        """Write a snapshot back; returns ``(job, rows)``."""
        entry = self.store.pop_undo_entry(token)
        job = self.store.find_job(entry.job_key)
        if job is None or job.process_key != entry.job_key:
            raise NotFound(f"Job {entry.job_key} no longer exists; nothing to undo")
        rows = [JobProcess.row_from_dict(data) for data in entry.snapshot]
        self.store.replace_job_processes(entry.job_key, rows)
        logger.info("Undo %s restored %d rows for job %s", token, len(rows), entry.job_key)
        return job, rows
