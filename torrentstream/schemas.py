# torrentstream/schemas.py
from __future__ import annotations
from datetime import datetime
from typing import Optional, List

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CamelBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---- Sessions ----
class AddIn(BaseModel):
    # older clients post { magnet }
    descriptor: str = Field(min_length=1, validation_alias=AliasChoices("descriptor", "magnet"))


class FileOut(CamelBase):
    index: int
    name: str
    path: str
    size: int
    size_formatted: str = Field(alias="sizeFormatted")
    is_media: bool = Field(alias="isMedia")


class AddOut(CamelBase):
    id: str
    name: str
    files: List[FileOut]
    status: str  # "created" | "already_active"
    primary_index: Optional[int] = Field(default=None, alias="primaryIndex")


class SessionOut(CamelBase):
    id: str
    name: str
    created_at: datetime = Field(alias="createdAt")
    file_count: int = Field(alias="fileCount")
    active_streams: int = Field(alias="activeStreams")


class StatusOut(CamelBase):
    id: str
    download_rate_bps: int = Field(alias="downloadRateBps")
    upload_rate_bps: int = Field(alias="uploadRateBps")
    peer_count: int = Field(alias="peerCount")
    downloaded_bytes: int = Field(alias="downloadedBytes")
    uploaded_bytes: int = Field(alias="uploadedBytes")
    progress: float = 0.0


class RemoveOut(BaseModel):
    removed: bool
