"""Remote metadata document schema."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from packsync.filesystem.files import is_safe_relative_path


class RemoteFileInfo(BaseModel):
    """Fingerprint of one remote file."""

    size: int = Field(ge=0)
    hash: str = Field(pattern=r"^[0-9a-fA-F]{40}$")


class RemoteMetadataDocument(BaseModel):
    """Body of ``metadata.json``."""

    version: int = 1
    encrypt: bool = False
    files: dict[str, RemoteFileInfo] = Field(default_factory=dict)

    @field_validator("files")
    @classmethod
    def paths_must_stay_inside_pack(
        cls, v: dict[str, RemoteFileInfo]
    ) -> dict[str, RemoteFileInfo]:
        """Reject absolute, empty or parent-relative file paths."""
        _ = cls
        for file_path in v:
            if not is_safe_relative_path(file_path):
                raise ValueError(f"Unsafe file path in manifest: {file_path!r}")
        return v
