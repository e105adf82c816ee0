"""Job lifecycle and process status changes against the record store."""

from datetime import datetime

import pytest
from sqlalchemy.exc import SQLAlchemyError

import lifecycle
from errors import DuplicateJobError, NotFound, PermissionDenied, TransientFailure, ValidationError
from models import Job, JobProcess, UndoEntry
from undo import UndoLog, run_mutation

NOW = datetime(2024, 12, 2, 8, 0)


def statuses(result):
    return {p["processId"]: p["status"] for p in result["processes"]}


class TestCreateJob:

    def test_creates_seventeen_processes(self, store, job_payload):
        created = lifecycle.create_job(store, job_payload, now=NOW)

        assert created["jobId"] == "job-100"
        assert created["status"] == "In Progress"
        assert len(created["processes"]) == 17
        assert sorted(p["processId"] for p in created["processes"]) == sorted(
            p.process_id for p in store.get_processes()
        )
        first = next(p for p in created["processes"] if p["processId"] == "proc-1")
        assert first["status"] == "In Progress"
        assert first["quantityIn"] == 10
        assert first["startTime"] == NOW.isoformat()
        assert all(s == "Pending" for pid, s in statuses(created).items() if pid != "proc-1")

    def test_rows_are_persisted(self, store, job_payload):
        lifecycle.create_job(store, job_payload)
        assert len(store.get_job_processes_by_job_id("job-100")) == 17
        assert JobProcess.query.count() == 17

    @pytest.mark.parametrize("field", ["customerName", "partNo", "dueDate", "quantity", "material", "jobId"])
    def test_required_fields(self, store, job_payload, field):
        del job_payload[field]
        with pytest.raises(ValidationError):
            lifecycle.create_job(store, job_payload)
        assert Job.query.count() == 0

    def test_quantity_must_be_positive(self, store, job_payload):
        job_payload["quantity"] = 0
        with pytest.raises(ValidationError):
            lifecycle.create_job(store, job_payload)

    def test_negative_attribute_rejected(self, store, job_payload):
        job_payload["upsPanel"] = -4
        with pytest.raises(ValidationError):
            lifecycle.create_job(store, job_payload)

    def test_duplicate_job(self, store, job_payload):
        lifecycle.create_job(store, job_payload)
        job_payload["jobId"] = "JOB-100"
        with pytest.raises(DuplicateJobError):
            lifecycle.create_job(store, job_payload)


class TestJobKey:

    def test_ref_no_is_process_key(self, store, job_payload):
        job_payload.update(jobId="job-010", refNo="6")
        lifecycle.create_job(store, job_payload)

        assert store.get_job_by_id("6").job_id == "job-010"
        assert store.get_job_by_id("JOB-010").ref_no == "6"
        assert len(store.get_job_processes_by_job_id("6")) == 17
        assert store.get_job_processes_by_job_id("job-010") == []

    @pytest.mark.parametrize("ref_no", ["", " "])
    def test_blank_ref_no_falls_back_to_job_id(self, store, job_payload, ref_no):
        job_payload.update(jobId="job-010", refNo=ref_no)
        created = lifecycle.create_job(store, job_payload)

        assert created["refNo"] is None
        assert len(store.get_job_processes_by_job_id("job-010")) == 17

    def test_unknown_job(self, store):
        with pytest.raises(NotFound):
            store.get_job_by_id("nope")

    def test_changing_ref_no_moves_processes(self, store, job_payload):
        lifecycle.create_job(store, job_payload)
        updated = lifecycle.update_job(store, "job-100", {"refNo": "77", "customerName": "Acme Ltd"})

        assert updated["refNo"] == "77"
        assert updated["customerName"] == "Acme Ltd"
        assert len(store.get_job_processes_by_job_id("77")) == 17
        assert store.get_job_processes_by_job_id("job-100") == []

    def test_update_cannot_blank_required_field(self, store, job_payload):
        lifecycle.create_job(store, job_payload)
        with pytest.raises(ValidationError):
            lifecycle.update_job(store, "job-100", {"material": ""})


class TestDeleteRestore:

    def test_round_trip(self, store, job_payload):
        created = lifecycle.create_job(store, job_payload, now=NOW)
        lifecycle.update_process_status(
            store, {"jobId": "job-100", "processId": "proc-1", "newStatus": "Completed",
                    "userId": "user-2", "launchedPanels": 10},
            now=NOW,
        )
        before = store.get_job_by_id("job-100").to_dict()
        rows_before = [jp.to_dict() for jp in store.get_job_processes_by_job_id("job-100")]

        snapshot = lifecycle.delete_job(store, "job-100")
        assert store.find_job("job-100") is None
        assert JobProcess.query.count() == 0
        assert len(snapshot["processes"]) == 17

        assert lifecycle.restore_job(store, snapshot) is True
        assert store.get_job_by_id("job-100").to_dict() == before
        assert [jp.to_dict() for jp in store.get_job_processes_by_job_id("job-100")] == rows_before
        assert created["createdAt"] == before["createdAt"]

    def test_restore_keeps_creation_order(self, store, job_payload):
        lifecycle.create_job(store, job_payload, now=datetime(2024, 12, 1))
        lifecycle.create_job(store, dict(job_payload, jobId="job-200"), now=datetime(2024, 12, 5))
        lifecycle.create_job(store, dict(job_payload, jobId="job-300"), now=datetime(2024, 12, 3))

        snapshot = lifecycle.delete_job(store, "job-200")
        lifecycle.restore_job(store, snapshot)
        assert [j.job_id for j in store.get_jobs()] == ["job-200", "job-300", "job-100"]

    def test_delete_missing_job(self, store):
        assert lifecycle.delete_job(store, "job-404") is None

    def test_restore_over_existing_job_is_ignored(self, store, job_payload):
        created = lifecycle.create_job(store, job_payload)
        assert lifecycle.restore_job(store, created) is False
        assert JobProcess.query.count() == 17


class TestProcessStatus:

    def complete_first(self, store, **extra):
        payload = {"jobId": "job-100", "processId": "proc-1", "newStatus": "Completed", "userId": "user-2"}
        payload.update(extra)
        return lifecycle.update_process_status(store, payload, now=NOW)

    def test_completion_activates_next(self, store, job_payload):
        lifecycle.create_job(store, job_payload, now=NOW)
        result = self.complete_first(store, quantityIn=10, quantityOut=9, remarks="two scrapped")

        assert result["newStatus"] == "Completed"
        assert result["remarks"] == "two scrapped"
        assert result["undoToken"]
        assert result["process"]["endTime"] == NOW.isoformat()
        rows = {jp.process_id: jp for jp in store.get_job_processes_by_job_id("job-100")}
        assert rows["proc-1"].status == "Completed"
        assert rows["proc-2"].status == "In Progress"
        assert rows["proc-2"].quantity_in == 9
        assert rows["proc-3"].status == "Pending"

    def test_job_status_is_recomputed(self, store, job_payload):
        lifecycle.create_job(store, dict(job_payload, dueDate="2099-01-01"), now=NOW)
        self.complete_first(store, quantityOut=10)
        assert store.get_job_by_id("job-100").status == "In Progress"

        lifecycle.create_job(store, dict(job_payload, jobId="job-101"), now=NOW)
        lifecycle.update_process_status(
            store, {"jobId": "job-101", "processId": "proc-1", "newStatus": "Completed", "userId": "user-1"},
            now=datetime(2025, 2, 1),
        )
        assert store.get_job_by_id("job-101").status == "Overdue"

    def test_wrong_department(self, store, job_payload):
        lifecycle.create_job(store, job_payload)
        with pytest.raises(PermissionDenied):
            self.complete_first(store, userId="user-3")

    def test_unknown_user(self, store, job_payload):
        lifecycle.create_job(store, job_payload)
        with pytest.raises(NotFound):
            self.complete_first(store, userId="user-404")

    def test_unknown_status(self, store, job_payload):
        lifecycle.create_job(store, job_payload)
        with pytest.raises(ValidationError):
            self.complete_first(store, newStatus="Done")

    def test_undo_restores_snapshot(self, store, job_payload):
        lifecycle.create_job(store, job_payload, now=NOW)
        result = self.complete_first(store, quantityOut=10)

        rows = lifecycle.undo(store, result["undoToken"])
        by_id = {r["processId"]: r for r in rows}
        assert by_id["proc-1"]["status"] == "In Progress"
        assert by_id["proc-2"]["status"] == "Pending"
        persisted = {jp.process_id: jp.status for jp in store.get_job_processes_by_job_id("job-100")}
        assert persisted["proc-1"] == "In Progress"
        assert persisted["proc-2"] == "Pending"

        with pytest.raises(NotFound):
            lifecycle.undo(store, result["undoToken"])

    def test_undo_after_delete_leaves_no_rows(self, store, job_payload):
        lifecycle.create_job(store, job_payload, now=NOW)
        token = self.complete_first(store, quantityOut=10)["undoToken"]
        lifecycle.delete_job(store, "job-100")
        assert UndoEntry.query.count() == 0

        with pytest.raises(NotFound):
            lifecycle.undo(store, token)
        assert JobProcess.query.count() == 0

        created = lifecycle.create_job(store, job_payload, now=NOW)
        assert len(created["processes"]) == 17

    def test_undo_after_ref_no_change(self, store, job_payload):
        lifecycle.create_job(store, job_payload, now=NOW)
        token = self.complete_first(store, quantityOut=10)["undoToken"]
        lifecycle.update_job(store, "job-100", {"refNo": "77"})

        with pytest.raises(NotFound):
            lifecycle.undo(store, token)
        assert store.get_job_processes_by_job_id("job-100") == []
        assert len(store.get_job_processes_by_job_id("77")) == 17

    def test_undo_for_missing_job(self, store, job_payload):
        lifecycle.create_job(store, job_payload, now=NOW)
        rows = [jp.snapshot() for jp in store.get_job_processes_by_job_id("job-100")]
        log = UndoLog(store)
        token = log.record("job-999", rows)
        store.commit()

        with pytest.raises(NotFound):
            log.undo(token)

    def test_undo_history_is_bounded(self, store, job_payload):
        lifecycle.create_job(store, job_payload, now=NOW)
        rows = [jp.snapshot() for jp in store.get_job_processes_by_job_id("job-100")]
        log = UndoLog(store, depth=2)
        tokens = [log.record("job-100", rows) for _ in range(3)]
        store.commit()

        assert UndoEntry.query.count() == 2
        with pytest.raises(NotFound):
            log.undo(tokens[0])
        job, _ = log.undo(tokens[2])
        assert job.job_id == "job-100"

    def test_update_single_row(self, store, job_payload):
        lifecycle.create_job(store, job_payload, now=NOW)
        row = store.get_job_processes_by_job_id("job-100")[2].snapshot()
        row.update(remarks="material on hold", assigned_to="user-4")

        store.update_job_process("JOB-100", "proc-3", row)
        store.commit()
        jp = store.get_job_processes_by_job_id("job-100")[2]
        assert (jp.remarks, jp.assigned_to, jp.status) == ("material on hold", "user-4", "Pending")

        with pytest.raises(NotFound):
            store.update_job_process("job-100", "proc-99", row)

    def test_suggestion_uses_previous_output(self, store, job_payload):
        lifecycle.create_job(store, dict(job_payload, upsPanel=24), now=NOW)
        self.complete_first(store, quantityOut=10)
        suggestion = lifecycle.suggest_quantity(store, "job-100", "proc-2", "Completed")
        assert suggestion["quantityIn"] == 10


class TestRollback:

    def test_store_failure_rolls_back(self, store, job_payload):
        fields = lifecycle.parse_job_payload(job_payload)

        def failing():
            store.add_job(fields)
            raise SQLAlchemyError("connection lost")

        with pytest.raises(TransientFailure):
            run_mutation(store, failing)
        assert store.find_job("job-100") is None

    def test_validation_failure_rolls_back(self, store, job_payload):
        fields = lifecycle.parse_job_payload(job_payload)

        def failing():
            store.add_job(fields)
            raise ValidationError("bad")

        with pytest.raises(ValidationError):
            run_mutation(store, failing)
        assert Job.query.count() == 0
