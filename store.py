"""Record store: the only module that talks to the SQLAlchemy session."""
import logging
import re

from sqlalchemy import or_

from errors import DuplicateJobError, NotFound
from models import Job, JobProcess, Process, UndoEntry, User

logger = logging.getLogger(__name__)


def normalize_key(value):
    return re.sub(r"\s+", "", value or "").lower()


def clean_ref_no(value):
    value = (value or "").strip()
    return value or None


class RecordStore:
    """Get/add/update/delete over Users, Processes, Jobs and JobProcesses.

    Methods flush but never commit; ``undo.run_mutation`` owns the
    transaction boundary.
    """

    def __init__(self, db):
        self.db = db

    @property
    def session(self):
        return self.db.session

    def commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()

    # ---------- Users / Processes ----------
    def get_users(self):
        return User.query.order_by(User.name).all()

    def get_user(self, user_id):
        user = self.session.get(User, user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user

    def get_processes(self):
        return Process.query.order_by(Process.sequence_number).all()

    # ---------- Jobs ----------
    def get_jobs(self, status=None, search=None):
        query = Job.query
        if status:
            query = query.filter(Job.status == status)
        if search:
            query = query.filter(
                Job.job_id.contains(search.lower())
                | Job.customer_name.contains(search)
                | Job.part_no.contains(search)
                | Job.description.contains(search)
                | Job.ref_no.contains(search)
            )
        return query.order_by(Job.created_at.desc(), Job.id.desc()).all()

    def find_job(self, identifier):
        key = normalize_key(identifier)
        if not key:
            return None
        return Job.query.filter(or_(Job.job_key == key, Job.ref_key == key)).first()

    def get_job_by_id(self, identifier):
        job = self.find_job(identifier)
        if job is None:
            raise NotFound(f"Job {identifier} not found")
        return job

    def _ensure_unique(self, job_id, ref_no, ignore=None):
        for identifier in (job_id, ref_no):
            existing = self.find_job(identifier) if identifier else None
            if existing is not None and existing is not ignore:
                raise DuplicateJobError(f"Job {identifier.upper()} already exists!")

    @staticmethod
    def _assign_keys(job, job_id, ref_no):
        job.job_id = job_id.strip().lower()
        job.ref_no = clean_ref_no(ref_no)
        job.job_key = normalize_key(job_id)
        job.ref_key = normalize_key(job.ref_no) if job.ref_no else None

    def add_job(self, fields):
        fields = dict(fields)
        job_id, ref_no = fields.pop("job_id"), fields.pop("ref_no", None)
        self._ensure_unique(job_id, clean_ref_no(ref_no))
        job = Job(**fields)
        self._assign_keys(job, job_id, ref_no)
        self.session.add(job)
        self.session.flush()
        return job

    def update_job(self, identifier, fields):
        job = self.get_job_by_id(identifier)
        old_key = job.process_key
        fields = dict(fields)
        job_id = fields.pop("job_id", None) or job.job_id
        ref_no = fields.pop("ref_no", job.ref_no)
        self._ensure_unique(job_id, clean_ref_no(ref_no), ignore=job)
        for name, value in fields.items():
            setattr(job, name, value)
        self._assign_keys(job, job_id, ref_no)

        if job.process_key != old_key:
            for jp in JobProcess.query.filter_by(job_id=old_key).all():
                jp.job_id = job.process_key
            # Snapshots under the old key would restore rows nobody owns
            self.drop_undo_entries(old_key)
        self.session.flush()
        return job

    def delete_job(self, identifier):
        """Remove a job and its rows; returns ``(job_dict, process_dicts)`` or None."""
        job = self.find_job(identifier)
        if job is None:
            return None
        processes = self.get_job_processes_by_job_id(job.process_key)
        snapshot = (job.to_dict(), [jp.to_dict() for jp in processes])
        for jp in processes:
            self.session.delete(jp)
        self.drop_undo_entries(job.process_key)
        self.session.delete(job)
        self.session.flush()
        return snapshot

    def restore_job(self, fields, rows):
        """Reinsert a deleted job; a job already present under either key wins."""
        fields = dict(fields)
        job_id, ref_no = fields.pop("job_id"), fields.pop("ref_no", None)
        if self.find_job(job_id) or (clean_ref_no(ref_no) and self.find_job(ref_no)):
            logger.info("Restore skipped, job %s already exists", job_id)
            return False
        job = Job(**fields)
        self._assign_keys(job, job_id, ref_no)
        self.session.add(job)
        self.add_job_processes(rows)
        return True

    # ---------- Job processes ----------
    def get_job_processes(self, job_key=None):
        query = JobProcess.query.join(Process)
        if job_key:
            query = query.filter(JobProcess.job_id == job_key.lower())
        return query.order_by(JobProcess.job_id, Process.sequence_number).all()

    def get_job_processes_by_job_id(self, job_key):
        return self.get_job_processes(job_key) if job_key else []

    def add_job_processes(self, rows):
        for row in rows:
            self.session.add(JobProcess.from_row(row))
        self.session.flush()

    def update_job_process(self, job_key, process_id, row):
        jp = JobProcess.query.filter_by(job_id=job_key.lower(), process_id=process_id).first()
        if jp is None:
            raise NotFound(f"Process {process_id} not found for job {job_key}")
        jp.apply(row)
        return jp

    def replace_job_processes(self, job_key, rows):
        """Write every row back, creating rows that no longer exist."""
        existing = {jp.id: jp for jp in self.get_job_processes_by_job_id(job_key)}
        for row in rows:
            jp = existing.get(row["id"])
            if jp is None:
                self.session.add(JobProcess.from_row(row))
            else:
                jp.apply(row)
        self.session.flush()

    # ---------- Undo log ----------
    def add_undo_entry(self, token, job_key, snapshot):
        self.session.add(UndoEntry(token=token, job_key=job_key, snapshot=snapshot))

    def pop_undo_entry(self, token):
        entry = UndoEntry.query.filter_by(token=token).first()
        if entry is None:
            raise NotFound(f"Nothing to undo for {token}")
        self.session.delete(entry)
        return entry

    def prune_undo_entries(self, job_key, keep):
        """Drop all but the newest ``keep`` entries for a job."""
        stale = (
            UndoEntry.query.filter_by(job_key=job_key)
            .order_by(UndoEntry.id.desc())
            .offset(keep)
            .all()
        )
        for entry in stale:
            self.session.delete(entry)
        return len(stale)

    def drop_undo_entries(self, job_key):
        self.session.flush()
        return UndoEntry.query.filter_by(job_key=job_key).delete()
