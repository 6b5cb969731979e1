"""Lighthouse (IPFS) content-addressed store."""

from __future__ import annotations

import httpx

from payroll_config.schema import ContentStoreSettings
from payroll_kernel.exceptions import ArtifactFetchError, ArtifactUploadError
from payroll_kernel.logging_config import get_logger

logger = get_logger("clients.lighthouse")

UPLOAD_PATH = "/api/v0/add"


class LighthouseContentStore:
    """Uploads through the node API, fetches back through the gateway."""

    def __init__(
        self,
        settings: ContentStoreSettings | None = None,
        api_key: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings or ContentStoreSettings()
        self.api_key = api_key
        self.client = client or httpx.Client(timeout=self.settings.timeout_seconds)

    def close(self) -> None:
        self.client.close()

    def upload(self, data: bytes, filename: str) -> str:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            response = self.client.post(
                f"{self.settings.base_url}{UPLOAD_PATH}",
                files={"file": (filename, data, "application/octet-stream")},
                headers=headers,
            )
            response.raise_for_status()
            content_id = response.json().get("Hash")
        except (httpx.HTTPError, ValueError) as exc:
            raise ArtifactUploadError(filename, str(exc)) from exc
        if not content_id:
            raise ArtifactUploadError(filename, "response carried no content id")
        logger.debug("content_uploaded", extra={
            "content_id": content_id,
            "size_bytes": len(data),
        })
        return content_id

    def fetch(self, content_id: str) -> bytes:
        try:
            response = self.client.get(f"{self.settings.gateway_url}/{content_id}")
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ArtifactFetchError(content_id, str(exc)) from exc
        return response.content
