"""Archive-mode manifest and persisted state schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ArchiveManifest(BaseModel):
    """Full-pack snapshot published by the server. Only ``url`` is mandatory."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    name: str = "Unknown Pack"
    version: str = "unknown"
    url: str = Field(min_length=1)
    sha1: str = ""
    size_bytes: int = Field(default=0, ge=0, alias="sizeBytes")
    updated_at: str = Field(default="unknown time", alias="updatedAt")


class ArchiveState(BaseModel):
    """Record of the last successfully applied archive, stored at the target root."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    name: str = ""
    version: str = ""
    url: str = ""
    sha1: str = ""
    size_bytes: int = Field(default=0, alias="sizeBytes")
    updated_at: str = Field(default="", alias="updatedAt")

    @classmethod
    def from_manifest(cls, manifest: ArchiveManifest) -> ArchiveState:
        return cls.model_validate(manifest.model_dump())
