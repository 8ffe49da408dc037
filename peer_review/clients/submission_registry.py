"""Submission registry backed by the LMS REST API."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import aiohttp

from peer_review.schemas.data import Submission

logger = logging.getLogger(__name__)


class SubmissionRegistry(ABC):
    @abstractmethod
    async def list_submission_ids(self, course_id: str, activity_id: str) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    async def get_submission(self, course_id: str, activity_id: str, submission_id: str) -> Submission:
        raise NotImplementedError


class CanvasSubmissionRegistry(SubmissionRegistry):
    """Canvas-style API: submissions are addressed by the submitting user id."""

    def __init__(self, session: aiohttp.ClientSession, api_url: str, api_key: str, *, timeout: float = 10.0) -> None:
        self.session = session
        self.api_url = api_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {api_key}"}
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _get(self, path: str) -> Any:
        async with self.session.get(
            f"{self.api_url}{path}", headers=self.headers, timeout=self.timeout
        ) as response:
            response.raise_for_status()
            return await response.json()

    async def list_submission_ids(self, course_id: str, activity_id: str) -> list[str]:
        data = await self._get(f"/api/v1/courses/{course_id}/assignments/{activity_id}/submissions")
        # unsubmitted entries carry no attachment and are skipped
        return [
            str(item["user_id"])
            for item in data
            if item.get("workflow_state") != "unsubmitted"
        ]

    async def get_submission(self, course_id: str, activity_id: str, submission_id: str) -> Submission:
        item = await self._get(
            f"/api/v1/courses/{course_id}/assignments/{activity_id}/submissions/{submission_id}"
        )
        attachments = item.get("attachments") or []
        return Submission(
            paper_id=str(item["id"]),
            author_id=str(item["user_id"]),
            attachment_ref=attachments[0].get("uuid") if attachments else None,
        )
