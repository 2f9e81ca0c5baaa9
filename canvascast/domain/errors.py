class JobError(Exception):
    """Base exception for pipeline job errors."""
    pass

class ConfigurationError(JobError):
    pass

class JobNotFoundError(JobError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")

class ProjectNotFoundError(JobError):
    code = "PROJECT_NOT_FOUND"

    def __init__(self, project_id):
        self.project_id = project_id
        super().__init__(f"Project {project_id} not found")

class InvalidJobStateError(JobError):
    code = "INVALID_JOB_STATE"

    def __init__(self, current_status, target_status):
        super().__init__(f"Cannot transition from {current_status} to {target_status}")

class JobNotInDeadLetterQueueError(JobError):
    code = "JOB_NOT_IN_DLQ"

    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job {job_id} is not in the dead letter queue")

class InsufficientCreditsError(JobError):
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, user_id, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits for user {user_id}: need {required}, have {available}")

class LeaseError(JobError):
    pass

class LeaseExpiredError(LeaseError):
    pass

class LeaseNotFoundError(LeaseError):
    pass
