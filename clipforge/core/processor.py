import logging
from typing import Dict

import requests

from ..config import Settings
from ..errors import ProcessorError

logger = logging.getLogger(__name__)


class ClipProcessorClient:
    """Calls the external clip extraction service that writes clips next to the source object."""

    def __init__(self, endpoint: str, auth_token: str, model: str, timeout: float = 300.0):
        self.endpoint = endpoint
        self.model = model
        self.timeout = timeout
        self.headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {auth_token}"
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClipProcessorClient":
        return cls(
            endpoint=settings.PROCESS_VIDEO_ENDPOINT,
            auth_token=settings.PROCESS_VIDEO_ENDPOINT_AUTH,
            model=settings.PROCESS_VIDEO_MODEL,
            timeout=settings.PROCESSOR_TIMEOUT_SECONDS,
        )

    def process(self, s3_key: str, max_clips: int) -> Dict:
        """Requests clip extraction; any network error, timeout or non-2xx raises ProcessorError."""
        logger.info("Sending request to process video endpoint %s for %s", self.endpoint, s3_key)
        try:
            response = requests.post(
                self.endpoint,
                headers=self.headers,
                json={
                    "s3_key": s3_key,
                    "max_clips": max_clips,
                    "model": self.model
                },
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.HTTPError as e:
            raise ProcessorError(
                f"Processor returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except requests.RequestException as e:
            raise ProcessorError(f"Processor request failed: {e}") from e

        return self._parse_body(response)

    def _parse_body(self, response: requests.Response) -> Dict:
        """Returns the JSON object body, or an empty dict when the service sends none."""
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"result": body}
