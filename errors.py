"""Custom exception classes"""


class JobTrackerError(Exception):
    """Base error for the job tracker"""
    http_status = 500


class NotFound(JobTrackerError):
    """Job, user or process does not exist"""
    http_status = 404


class ValidationError(JobTrackerError):
    """Missing required field, bad quantity or illegal transition"""
    http_status = 400


class DuplicateJobError(ValidationError):
    """A job with the same Job No. or Ref No. already exists"""
    http_status = 409


class PermissionDenied(JobTrackerError):
    """Actor may not update this process"""
    http_status = 403


class TransientFailure(JobTrackerError):
    """Store call failed; the mutation was rolled back"""
    http_status = 503
