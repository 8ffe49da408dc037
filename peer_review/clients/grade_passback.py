"""Grade-passback channel (LTI 1.1 Basic Outcomes ``replaceResult``)."""
from __future__ import annotations

import asyncio
import logging
import uuid
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from peer_review.core.errors import PassbackError

logger = logging.getLogger(__name__)

POX_NS = "http://www.imsglobal.org/services/ltiv1p1/xsd/imsoms_v1p0"


class GradePassback(ABC):
    @abstractmethod
    async def replace_result(self, passback_ref: str, score: Optional[float], report_text: str) -> None:
        """Replace the reviewer's result in the LMS gradebook. Raises PassbackError."""
        raise NotImplementedError


def q(tag: str) -> str:
    return f"{{{POX_NS}}}{tag}"


def build_replace_result(passback_ref: str, score: Optional[float], report_text: str) -> bytes:
    if score is not None and not 0.0 <= score <= 1.0:
        raise ValueError(f"score must be within [0, 1], got {score}")

    envelope = ET.Element(q("imsx_POXEnvelopeRequest"))
    header = ET.SubElement(ET.SubElement(envelope, q("imsx_POXHeader")), q("imsx_POXRequestHeaderInfo"))
    ET.SubElement(header, q("imsx_version")).text = "V1.0"
    ET.SubElement(header, q("imsx_messageIdentifier")).text = uuid.uuid4().hex

    body = ET.SubElement(envelope, q("imsx_POXBody"))
    record = ET.SubElement(ET.SubElement(body, q("replaceResultRequest")), q("resultRecord"))
    ET.SubElement(ET.SubElement(record, q("sourcedGUID")), q("sourcedId")).text = passback_ref
    result = ET.SubElement(record, q("result"))
    if score is not None:
        result_score = ET.SubElement(result, q("resultScore"))
        ET.SubElement(result_score, q("language")).text = "en"
        ET.SubElement(result_score, q("textString")).text = str(float(score))
    ET.SubElement(ET.SubElement(result, q("resultData")), q("text")).text = report_text

    return ET.tostring(envelope, encoding="utf-8", xml_declaration=True, default_namespace=POX_NS)


def parse_code_major(response_body: str) -> Optional[str]:
    try:
        root = ET.fromstring(response_body)
    except ET.ParseError:
        return None
    node = root.find(".//" + q("imsx_codeMajor"))
    return node.text.strip() if node is not None and node.text else None


class LtiGradePassback(GradePassback):
    """POSTs a POX envelope to the outcome service.

    Request signing is done by the LMS handshake layer in front of this
    service, so the envelope is sent as is.
    """

    def __init__(self, session: aiohttp.ClientSession, outcome_url: str, *, timeout: float = 10.0) -> None:
        self.session = session
        self.outcome_url = outcome_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def replace_result(self, passback_ref: str, score: Optional[float], report_text: str) -> None:
        envelope = build_replace_result(passback_ref, score, report_text)
        try:
            async with self.session.post(
                self.outcome_url,
                data=envelope,
                headers={"Content-Type": "application/xml"},
                timeout=self.timeout,
            ) as response:
                text = await response.text()
                if response.status != 200:
                    raise PassbackError(f"Outcome service answered {response.status}: {text[:200]}")
        except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
            raise PassbackError(f"Outcome service unreachable: {exc}") from exc

        code = parse_code_major(text)
        if code != "success":
            raise PassbackError(f"Outcome service rejected the result (imsx_codeMajor={code})")
        logger.info("Result replaced", extra={"passback_ref": passback_ref})
