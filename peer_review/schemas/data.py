from __future__ import annotations
from enum import Enum
from typing import Any, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class ReviewStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"


class ReportState(str, Enum):
    PENDING = "pending"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    FAILED = "failed"


class Submission(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    paper_id: str = Field(..., alias="paperId")
    author_id: str = Field(..., alias="authorId")
    attachment_ref: Optional[str] = Field(None, alias="attachmentRef")


class Batch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_key: str = Field(..., alias="batchKey")
    review_num: int = Field(..., alias="reviewNum")
    submissions: list[Submission] = Field(default_factory=list)


class ReviewAssignment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    batch_key: str = Field(..., alias="batchKey")
    paper_id: str = Field(..., alias="paperId")
    author_id: str = Field(..., alias="authorId")
    reviewer_id: str = Field(..., alias="reviewerId")
    status: ReviewStatus = ReviewStatus.PENDING
    payload: Optional[Any] = None
    created_at: datetime = Field(..., alias="createdAt")
    completed_at: Optional[datetime] = Field(None, alias="completedAt")

    @property
    def is_complete(self) -> bool:
        return self.status == ReviewStatus.COMPLETE


class ReviewerProgress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_key: str = Field(..., alias="batchKey")
    reviewer_id: str = Field(..., alias="reviewerId")
    report_state: ReportState = Field(ReportState.PENDING, alias="reportState")
    passback_ref: Optional[str] = Field(None, alias="passbackRef")
    report_error: Optional[str] = Field(None, alias="reportError")
    reported_at: Optional[datetime] = Field(None, alias="reportedAt")


class CompletionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    assignment_id: int = Field(..., alias="assignmentId")
    transitioned: bool
    fully_complete: bool = Field(False, alias="fullyComplete")
    reported: bool = False
    report_error: Optional[str] = Field(None, alias="reportError")
