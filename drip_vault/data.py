"""
Vault data models — media records, the cycle state and import sources.

Records are pydantic models so they validate on the way in from storage;
``to_dict``/``from_dict`` produce JSON-safe dictionaries (bytes are
base64-wrapped) ready for orjson.
"""
import base64
import mimetypes
from datetime import datetime
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Callable, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

NONCE_SIZE = 12  # 96-bit AES-GCM nonce

CYCLE_STATE_ID = 0


def _b64decode_if_str(value: Any) -> Any:
    if isinstance(value, str):
        return base64.b64decode(value)
    return value


class MediaRecord(BaseModel):
    """One imported media item.

    ``encrypted_ref`` and ``thumb_ref`` are opaque blob storage locators.
    ``nonce`` is the IV used to encrypt the blob.
    """

    id: str
    original_name: str
    mime_type: str = 'application/octet-stream'
    size_bytes: int = Field(default=0, ge=0)
    imported_at: datetime
    encrypted_ref: str
    nonce: bytes
    thumb_ref: Optional[str] = None
    viewed_at: Optional[datetime] = None

    @field_validator('nonce', mode='before')
    @classmethod
    def decode_nonce(cls, v: Any) -> Any:
        """Accept base64 text as produced by ``to_dict``."""
        return _b64decode_if_str(v)

    @field_validator('nonce')
    @classmethod
    def validate_nonce(cls, v: bytes) -> bytes:
        if len(v) != NONCE_SIZE:
            raise ValueError(
                f"nonce must be {NONCE_SIZE} bytes, got {len(v)}"
            )
        return v

    @field_serializer('nonce', when_used='json')
    def encode_nonce(self, v: bytes) -> str:
        return base64.b64encode(v).decode('ascii')

    @property
    def viewed(self) -> bool:
        return self.viewed_at is not None

    def to_dict(self) -> dict:
        return self.model_dump(mode='json')

    @classmethod
    def from_dict(cls, data: dict) -> "MediaRecord":
        return cls.model_validate(data)


class CycleState(BaseModel):
    """Persistent cursor of the daily schedule (singleton, ``id = 0``).

    - ``order``: shuffled permutation of media IDs for the current cycle.
    - ``pointer``: first item not yet consumed by a completed day.
    - ``daily_index``: items from ``pointer`` already viewed today.
    - ``day_anchor``: local 07:00 start of the day window in effect.
    """

    id: int = CYCLE_STATE_ID
    order: list[str] = Field(default_factory=list)
    pointer: int = Field(default=0, ge=0)
    daily_index: int = Field(default=0, ge=0)
    day_anchor: datetime

    @property
    def remaining(self) -> int:
        """Items of the cycle not consumed by a completed day."""
        return max(0, len(self.order) - self.pointer)

    def window_size(self, limit: int) -> int:
        return min(limit, self.remaining)

    def window(self, limit: int) -> list[str]:
        return self.order[self.pointer:self.pointer + self.window_size(limit)]

    def to_dict(self) -> dict:
        return self.model_dump(mode='json')

    @classmethod
    def from_dict(cls, data: dict) -> "CycleState":
        return cls.model_validate(data)


@dataclass
class TodayMedia:
    """Items offered for the current day window.

    The first ``daily_index`` items have already been viewed today.
    """
    items: list[MediaRecord] = field(default_factory=list)
    daily_index: int = 0

    @property
    def remaining(self) -> int:
        return max(0, len(self.items) - self.daily_index)

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class ImportSource:
    """A media source to import: metadata plus a way to open its bytes."""
    name: str
    opener: Callable[[], BinaryIO]
    mime_type: str = 'application/octet-stream'
    size: int = 0

    def open(self) -> BinaryIO:
        return self.opener()

    @classmethod
    def from_path(cls, path: Any) -> "ImportSource":
        """Describe a file on disk, guessing its MIME type from the name."""
        path = Path(path)
        mime_type, _ = mimetypes.guess_type(path.name)
        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        return cls(
            name=path.name,
            opener=lambda: open(path, 'rb'),
            mime_type=mime_type or 'application/octet-stream',
            size=size,
        )
