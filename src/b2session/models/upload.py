"""Upload URL capability records."""

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

_capability_ids = itertools.count(1)


class UploadUrlResponse(BaseModel):
    """Body of ``b2_get_upload_url`` and ``b2_get_upload_part_url`` responses."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    upload_url: str
    authorization_token: str
    bucket_id: Optional[str] = None
    file_id: Optional[str] = None


class UploadUrlStatus(str, Enum):
    """Lifecycle of a pooled upload URL."""

    IDLE = "idle"  # in the pool, free to hand out
    LEASED = "leased"  # held by exactly one caller
    DEAD = "dead"  # evicted, never handed out again


class ReleaseOutcome(str, Enum):
    """What a caller reports when giving an upload URL back."""

    REUSABLE = "reusable"
    INVALID = "invalid"


@dataclass(eq=False)
class UploadUrl:
    """A short-lived upload target: URL plus its own authorization token.

    ``key`` is the bucket id for whole-file uploads and the large file id for
    part uploads. Identity matters: two instances are never equal even if the
    service handed out the same URL twice.
    """

    key: str
    upload_url: str
    authorization_token: str = field(repr=False)
    uses: int = 0
    status: UploadUrlStatus = UploadUrlStatus.IDLE
    capability_id: int = field(default_factory=lambda: next(_capability_ids))

    @classmethod
    def from_response(cls, key: str, response: UploadUrlResponse) -> "UploadUrl":
        return cls(
            key=key,
            upload_url=response.upload_url,
            authorization_token=response.authorization_token,
        )
