"""HTTP client that submits queued entries to the remote endpoint."""
from typing import Optional, Dict, Any
import requests

from formqueue import settings
from formqueue.errors import DeliveryError
from formqueue.logging_conf import logger
from formqueue.queue.models import ResolvedEntry


class DeliveryClient:
    """Posts resolved entries as multipart form data."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[int] = None):
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def submit(self, resolved: ResolvedEntry) -> Dict[str, Any]:
        """
        Submit one entry with its attachments.

        Args:
            resolved: Entry plus the blobs named by its blob_refs

        Returns:
            The server's JSON acknowledgement

        Raises:
            DeliveryError on any transport or remote failure
        """
        entry = resolved.entry
        data = dict(entry.payload)
        data["queueId"] = entry.id
        data["timestamp"] = str(entry.created_at)

        files = [
            (f"image_{index}", (blob.file_name, blob.content, blob.content_type))
            for index, blob in enumerate(resolved.blobs)
        ]

        url = f"{self.base_url}/api/submit"
        logger.info(f"Submitting entry {entry.id} to {url}")

        try:
            response = self.session.post(url, data=data, files=files or None, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise DeliveryError(f"Request failed: {e}") from e

        if not response.ok:
            raise DeliveryError(f"HTTP {response.status_code}: {response.text[:500]}", response.status_code)

        try:
            result = response.json()
        except ValueError:
            result = {"success": True, "message": response.text}

        if isinstance(result, dict) and result.get("success") is False:
            raise DeliveryError(result.get("message") or "Submission rejected", response.status_code)

        logger.info(f"Submitted entry {entry.id}")
        return result

    def ping(self) -> bool:
        """Check if the server is reachable."""
        try:
            response = self.session.get(f"{self.base_url}/health", timeout=settings.PING_TIMEOUT)
            return response.ok
        except requests.exceptions.RequestException:
            return False

    def close(self):
        self.session.close()
