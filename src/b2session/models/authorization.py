"""Account authorization models."""

import enum
import logging
from dataclasses import dataclass
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class Capability(enum.Flag):
    """Capabilities an application key may grant."""

    NONE = 0
    LIST_KEYS = enum.auto()
    WRITE_KEYS = enum.auto()
    DELETE_KEYS = enum.auto()
    LIST_ALL_BUCKET_NAMES = enum.auto()
    LIST_BUCKETS = enum.auto()
    READ_BUCKETS = enum.auto()
    WRITE_BUCKETS = enum.auto()
    DELETE_BUCKETS = enum.auto()
    READ_BUCKET_RETENTIONS = enum.auto()
    WRITE_BUCKET_RETENTIONS = enum.auto()
    READ_BUCKET_ENCRYPTION = enum.auto()
    WRITE_BUCKET_ENCRYPTION = enum.auto()
    LIST_FILES = enum.auto()
    READ_FILES = enum.auto()
    SHARE_FILES = enum.auto()
    WRITE_FILES = enum.auto()
    DELETE_FILES = enum.auto()
    READ_FILE_LEGAL_HOLDS = enum.auto()
    WRITE_FILE_LEGAL_HOLDS = enum.auto()
    READ_FILE_RETENTIONS = enum.auto()
    WRITE_FILE_RETENTIONS = enum.auto()
    BYPASS_GOVERNANCE = enum.auto()
    READ_BUCKET_REPLICATIONS = enum.auto()
    WRITE_BUCKET_REPLICATIONS = enum.auto()

    @property
    def api_name(self) -> str:
        """Name of a single capability as the service spells it."""
        return to_camel(self.name.lower())

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "Capability":
        """Parse service capability names, ignoring case.

        Unknown names are skipped so that capabilities added to the service
        later do not break authorization.
        """
        flags = cls.NONE
        for name in names:
            member = _CAPABILITIES_BY_NAME.get(name.lower())
            if member is None:
                logger.debug("Ignoring unknown capability", extra={"capability": name})
                continue
            flags |= member
        return flags


_CAPABILITIES_BY_NAME = {
    member.api_name.lower(): member
    for member in Capability
    if member is not Capability.NONE and member.name
}


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StorageApiInfo(_WireModel):
    """Storage API section of an account authorization."""

    api_url: str = Field(..., description="Base URL for all API calls except uploads and downloads")
    download_url: str = Field(..., description="Base URL for downloading files")
    recommended_part_size: int = Field(..., description="Recommended large file part size in bytes")
    absolute_minimum_part_size: int = Field(..., description="Smallest allowed part size in bytes")
    s3_api_url: str | None = Field(None, description="S3 compatible endpoint")
    capabilities: list[str] = Field(default_factory=list, description="Capabilities granted to the key")
    bucket_id: str | None = Field(None, description="Bucket the key is restricted to")
    bucket_name: str | None = Field(None, description="Name of the restricting bucket")
    name_prefix: str | None = Field(None, description="File name prefix the key is restricted to")


class ApiInfo(_WireModel):
    storage_api: StorageApiInfo


class AuthorizeAccountResponse(_WireModel):
    """Body of a successful ``b2_authorize_account`` response."""

    account_id: str
    authorization_token: str
    api_info: ApiInfo
    application_key_expiration_timestamp: int | None = None


@dataclass(frozen=True)
class Authorization:
    """An account authorization token and the endpoints it is valid for.

    Instances are immutable; a refresh replaces the whole value.

    Attributes:
        account_id: Account the key belongs to
        token: Token for the Authorization header of API calls
        api: Endpoint and restriction details
        capabilities: Parsed capability flags
        issued_at: Clock reading when the token was obtained
        expires_at: Clock reading after which the token is no longer valid
    """

    account_id: str
    token: str
    api: StorageApiInfo
    capabilities: Capability
    issued_at: float
    expires_at: float

    @classmethod
    def from_response(
        cls, response: AuthorizeAccountResponse, issued_at: float, ttl: float
    ) -> "Authorization":
        """Build an authorization from the wire response.

        The absolute expiry is the token lifetime from ``issued_at``, capped by
        the application key expiration when the key has one.
        """
        api = response.api_info.storage_api
        expires_at = issued_at + ttl
        if response.application_key_expiration_timestamp is not None:
            expires_at = min(expires_at, response.application_key_expiration_timestamp / 1000)
        return cls(
            account_id=response.account_id,
            token=response.authorization_token,
            api=api,
            capabilities=Capability.from_names(api.capabilities),
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def allows(self, capability: Capability) -> bool:
        """Check whether every flag in ``capability`` is granted."""
        return (self.capabilities & capability) == capability

    def is_expired(self, now: float, margin: float = 0.0) -> bool:
        """Check whether the token is expired, or will be within ``margin``."""
        return now >= self.expires_at - margin

    @property
    def default_bucket_id(self) -> str | None:
        return self.api.bucket_id

    @property
    def recommended_part_size(self) -> int:
        return self.api.recommended_part_size

    @property
    def absolute_minimum_part_size(self) -> int:
        return self.api.absolute_minimum_part_size

    def __repr__(self) -> str:
        return (
            f"Authorization(account_id={self.account_id!r}, api_url={self.api.api_url!r}, "
            f"expires_at={self.expires_at!r})"
        )
