class PeerReviewError(Exception):
    """Base class for every error raised by the peer review core."""


class ParameterError(PeerReviewError, ValueError):
    """Invalid batch parameters (reviewNum < 1, duplicate authors)."""


class PopulationError(PeerReviewError):
    """Fewer than two distinct authors submitted to the activity."""


class PersistenceError(PeerReviewError):
    """Store unreachable or transaction conflict. Never means 'nothing to do'."""


class PassbackError(PeerReviewError):
    """Grade-passback channel unreachable or the update was rejected."""


class BatchExistsError(PeerReviewError):
    def __init__(self, batch_key: str) -> None:
        super().__init__(f"Batch {batch_key} already exists")
        self.batch_key = batch_key


class AssignmentNotFoundError(PeerReviewError, LookupError):
    def __init__(self, assignment_id: int) -> None:
        super().__init__(f"Review assignment {assignment_id} not found")
        self.assignment_id = assignment_id


class ReviewerNotFoundError(PeerReviewError, LookupError):
    def __init__(self, batch_key: str, reviewer_id: str) -> None:
        super().__init__(f"Reviewer {reviewer_id} has no assignments in batch {batch_key}")
        self.batch_key = batch_key
        self.reviewer_id = reviewer_id
