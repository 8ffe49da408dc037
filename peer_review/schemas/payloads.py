from __future__ import annotations
from typing import Any, Optional, TypedDict
from pydantic import BaseModel, Field

# ---- Queue message payloads ----
class ReviewCompletedMessage(TypedDict):
    batchKey: str
    assignmentId: int
    reviewerId: str
    payload: Any

class ReportRetryMessage(TypedDict, total=False):
    batchKey: str
    reviewerId: str
    force: bool

# ---- HTTP bodies ----
class BatchCreateRequest(BaseModel):
    reviewNum: int = Field(..., description="Number of reviews each paper receives")

class ReviewSubmitRequest(BaseModel):
    reviewerId: str
    payload: Any = None

class PassbackTargetRequest(BaseModel):
    passbackRef: str

class ReportRetryRequest(BaseModel):
    force: Optional[bool] = False
