"""
AWS Rekognition person provider

Runs DetectFaces with all attributes and maps each FaceDetail to gender,
age range and emotions. boto3 is synchronous, so the call runs in a worker
thread to keep the event loop free.

Credentials and default region come from the usual AWS sources
(environment, ~/.aws/credentials, ~/.aws/config); AWS_REGION overrides the
region.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from mvwatch.services.providers.base import (
    AgeRange,
    Emotion,
    FaceDetail,
    GenderEstimate,
    PersonProvider,
    ProviderError,
)

logger = logging.getLogger(__name__)


def parse_face_details(response: Dict[str, Any]) -> List[FaceDetail]:
    """Convert a DetectFaces response into FaceDetail records."""
    faces = []
    for data in response.get("FaceDetails", []):
        gender = data.get("Gender") or {}
        age = data.get("AgeRange") or {}
        faces.append(
            FaceDetail(
                gender=GenderEstimate(
                    value=gender.get("Value", "Unknown"),
                    confidence=float(gender.get("Confidence", 0.0)),
                ),
                age_range=AgeRange(low=int(age.get("Low", 0)), high=int(age.get("High", 0))),
                emotions=[
                    Emotion(type=emotion.get("Type", "UNKNOWN"), confidence=float(emotion.get("Confidence", 0.0)))
                    for emotion in data.get("Emotions", [])
                ],
            )
        )
    return faces


class RekognitionProvider(PersonProvider):
    """Person provider backed by Amazon Rekognition DetectFaces."""

    name = "aws_rekognition"

    def __init__(self, region_name: Optional[str] = None, client: Any = None):
        """
        Args:
            region_name: AWS region; None uses the configured default
            client: Optional pre-built rekognition client
        """
        self._region_name = region_name or None
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client("rekognition", region_name=self._region_name)
        return self._client

    def _detect_faces(self, image: bytes) -> Dict[str, Any]:
        return self._get_client().detect_faces(Image={"Bytes": image}, Attributes=["ALL"])

    async def analyze(self, image: bytes) -> List[FaceDetail]:
        logger.debug("processAWSRekognition:", extra={"event_type": "rekognition_request"})
        try:
            response = await asyncio.to_thread(self._detect_faces, image)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "ClientError")
            raise ProviderError(self.name, f"{code}: {e}") from e
        except BotoCoreError as e:
            raise ProviderError(self.name, str(e)) from e
        return parse_face_details(response)
