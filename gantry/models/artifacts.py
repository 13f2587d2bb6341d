"""Artifact models — immutable once published."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class ArtifactRef(BaseModel):
    """A reference to a published artifact.

    Tasks and reports hold these; the bytes live only in the store.
    The content_address is the SHA-256 hex digest of the artifact bytes.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    name: str
    producer: str  # name of the task that published it
    content_address: str  # "sha256:<hex>"
    size_bytes: int = 0
    filename: str = ""  # file name used when materializing into a workspace
    media_type: str = "application/octet-stream"
    published_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def digest(self) -> str:
        return self.content_address.removeprefix("sha256:")


class ArtifactPayload(BaseModel):
    """Bytes plus descriptor, as handed to ``ArtifactStore.publish_many``."""

    model_config = ConfigDict(frozen=True)

    name: str
    data: bytes
    filename: str = ""
    media_type: str = "application/octet-stream"
