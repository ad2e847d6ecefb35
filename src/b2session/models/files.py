"""File, part and bucket models for the native API."""

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional
from urllib.parse import quote, unquote

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from b2session.core.digest import md5_base64
from b2session.core.exceptions import ProtocolViolationError

DEFAULT_CONTENT_TYPE = "application/octet-stream"
AUTO_CONTENT_TYPE = "b2/x-auto"
INFO_HEADER_PREFIX = "x-bz-info-"


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def encode_header_value(value: str) -> str:
    """Percent-encode a file name or info value for an ``X-Bz-*`` header."""
    return quote(value, safe="/")


class RetentionMode(str, Enum):
    """Object lock retention mode."""

    GOVERNANCE = "governance"
    COMPLIANCE = "compliance"


@dataclass(frozen=True)
class FileRetention:
    """Object lock retention applied to a new file."""

    mode: RetentionMode
    retain_until_timestamp: int  # milliseconds since epoch

    def headers(self) -> dict[str, str]:
        return {
            "X-Bz-File-Retention-Mode": self.mode.value,
            "X-Bz-File-Retention-Retain-Until-Timestamp": str(self.retain_until_timestamp),
        }

    def json_body(self) -> dict[str, Any]:
        return {"mode": self.mode.value, "retainUntilTimestamp": self.retain_until_timestamp}


class EncryptionMode(str, Enum):
    """Server-side encryption mode."""

    SSE_B2 = "SSE-B2"
    SSE_C = "SSE-C"


@dataclass(frozen=True)
class ServerSideEncryption:
    """Server-side encryption settings for an upload or download.

    ``SSE_B2`` uses keys managed by the service. ``SSE_C`` uses a customer
    supplied 256-bit key that must be sent again on every part upload and
    download.
    """

    mode: EncryptionMode
    algorithm: str = "AES256"
    customer_key: bytes | None = field(default=None, repr=False)

    @classmethod
    def sse_b2(cls) -> "ServerSideEncryption":
        return cls(mode=EncryptionMode.SSE_B2)

    @classmethod
    def sse_c(cls, customer_key: bytes) -> "ServerSideEncryption":
        if len(customer_key) != 32:
            raise ValueError("SSE-C customer key must be 32 bytes")
        return cls(mode=EncryptionMode.SSE_C, customer_key=customer_key)

    def _customer_headers(self) -> dict[str, str]:
        if self.mode is not EncryptionMode.SSE_C or self.customer_key is None:
            return {}
        return {
            "X-Bz-Server-Side-Encryption-Customer-Algorithm": self.algorithm,
            "X-Bz-Server-Side-Encryption-Customer-Key": base64.b64encode(self.customer_key).decode("ascii"),
            "X-Bz-Server-Side-Encryption-Customer-Key-Md5": md5_base64(self.customer_key),
        }

    def upload_headers(self) -> dict[str, str]:
        """Headers for ``b2_upload_file``."""
        if self.mode is EncryptionMode.SSE_B2:
            return {"X-Bz-Server-Side-Encryption": self.algorithm}
        return self._customer_headers()

    def part_headers(self) -> dict[str, str]:
        """Headers for ``b2_upload_part``; only SSE-C repeats its key."""
        return self._customer_headers()

    def download_headers(self) -> dict[str, str]:
        """Headers needed to read back an SSE-C encrypted file."""
        return self._customer_headers()

    def json_body(self) -> dict[str, Any]:
        """Representation used in JSON request bodies."""
        body: dict[str, Any] = {"mode": self.mode.value, "algorithm": self.algorithm}
        if self.mode is EncryptionMode.SSE_C and self.customer_key is not None:
            body["customerKey"] = base64.b64encode(self.customer_key).decode("ascii")
            body["customerKeyMd5"] = md5_base64(self.customer_key)
        return body


@dataclass(frozen=True)
class NewFileInfo:
    """Description of a whole file about to be uploaded."""

    file_name: str
    content_length: int
    content_sha1: str
    content_type: str = DEFAULT_CONTENT_TYPE
    file_info: Mapping[str, str] = field(default_factory=dict)
    encryption: Optional[ServerSideEncryption] = None
    retention: Optional[FileRetention] = None
    legal_hold: Optional[bool] = None

    def headers(self) -> dict[str, str]:
        """Request headers for ``b2_upload_file``, excluding Authorization."""
        headers = {
            "X-Bz-File-Name": encode_header_value(self.file_name),
            "Content-Type": self.content_type,
            "Content-Length": str(self.content_length),
            "X-Bz-Content-Sha1": self.content_sha1,
        }
        for key, value in self.file_info.items():
            headers[f"X-Bz-Info-{key}"] = encode_header_value(value)
        if self.retention is not None:
            headers.update(self.retention.headers())
        if self.legal_hold is not None:
            headers["X-Bz-File-Legal-Hold"] = "on" if self.legal_hold else "off"
        if self.encryption is not None:
            headers.update(self.encryption.upload_headers())
        return headers


@dataclass(frozen=True)
class NewLargeFileInfo:
    """Description of a large file about to be started."""

    file_name: str
    content_type: str = DEFAULT_CONTENT_TYPE
    file_info: Mapping[str, str] = field(default_factory=dict)
    encryption: Optional[ServerSideEncryption] = None
    retention: Optional[FileRetention] = None
    legal_hold: Optional[bool] = None

    def json_body(self, bucket_id: str) -> dict[str, Any]:
        """Request body for ``b2_start_large_file``."""
        body: dict[str, Any] = {
            "bucketId": bucket_id,
            "fileName": self.file_name,
            "contentType": self.content_type,
        }
        if self.file_info:
            body["fileInfo"] = dict(self.file_info)
        if self.retention is not None:
            body["fileRetention"] = self.retention.json_body()
        if self.legal_hold is not None:
            body["legalHold"] = "on" if self.legal_hold else "off"
        if self.encryption is not None:
            body["serverSideEncryption"] = self.encryption.json_body()
        return body


@dataclass(frozen=True)
class NewPartInfo:
    """Description of one part about to be uploaded."""

    part_number: int
    content_length: int
    content_sha1: str
    encryption: Optional[ServerSideEncryption] = None

    def headers(self) -> dict[str, str]:
        """Request headers for ``b2_upload_part``, excluding Authorization."""
        headers = {
            "X-Bz-Part-Number": str(self.part_number),
            "Content-Length": str(self.content_length),
            "X-Bz-Content-Sha1": self.content_sha1,
        }
        if self.encryption is not None:
            headers.update(self.encryption.part_headers())
        return headers


class FileInfo(_WireModel):
    """File version metadata returned by most file operations."""

    account_id: Optional[str] = Field(None, description="Account owning the file")
    action: Optional[str] = Field(None, description="upload, start, hide or folder")
    bucket_id: Optional[str] = Field(None, description="Bucket containing the file")
    content_length: int = Field(0, description="Size in bytes; 0 for unfinished large files")
    content_sha1: Optional[str] = Field(None, description="Hex SHA-1, or 'none' for large files")
    content_md5: Optional[str] = Field(None, description="Hex MD5 when known")
    content_type: Optional[str] = Field(None, description="MIME type")
    file_id: str = Field(..., description="Unique file version id")
    file_info: dict[str, str] = Field(default_factory=dict, description="Custom X-Bz-Info metadata")
    file_name: str = Field(..., description="Name of the file")
    file_retention: Optional[dict[str, Any]] = Field(None, description="Object lock retention")
    legal_hold: Optional[dict[str, Any]] = Field(None, description="Object lock legal hold")
    server_side_encryption: Optional[dict[str, Any]] = Field(None, description="Encryption mode and algorithm")
    upload_timestamp: Optional[int] = Field(None, description="Milliseconds since epoch")


class PartInfo(_WireModel):
    """A stored part of an unfinished large file."""

    file_id: str
    part_number: int
    content_length: int
    content_sha1: str
    content_md5: Optional[str] = None
    server_side_encryption: Optional[dict[str, Any]] = None
    upload_timestamp: Optional[int] = None


class CancelledFileInfo(_WireModel):
    """Response of ``b2_cancel_large_file``."""

    file_id: str
    account_id: Optional[str] = None
    bucket_id: Optional[str] = None
    file_name: Optional[str] = None


class DeletedFileVersion(_WireModel):
    """Response of ``b2_delete_file_version``."""

    file_id: str
    file_name: str


class FileList(_WireModel):
    """One page of ``b2_list_file_names`` or ``b2_list_file_versions``."""

    files: list[FileInfo] = Field(default_factory=list)
    next_file_name: Optional[str] = None
    next_file_id: Optional[str] = None


class PartList(_WireModel):
    """One page of ``b2_list_parts``."""

    parts: list[PartInfo] = Field(default_factory=list)
    next_part_number: Optional[int] = None


class UnfinishedFileList(_WireModel):
    """One page of ``b2_list_unfinished_large_files``."""

    files: list[FileInfo] = Field(default_factory=list)
    next_file_id: Optional[str] = None


class Bucket(_WireModel):
    """Bucket description returned by ``b2_list_buckets``."""

    account_id: str
    bucket_id: str
    bucket_name: str
    bucket_type: str
    bucket_info: dict[str, Any] = Field(default_factory=dict)
    revision: Optional[int] = None
    options: list[str] = Field(default_factory=list)


class BucketList(_WireModel):
    buckets: list[Bucket] = Field(default_factory=list)


def _require_header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        raise ProtocolViolationError(f"Missing response header {name}")
    return value


def _int_header(headers: Mapping[str, str], name: str, required: bool = True) -> Optional[int]:
    value = _require_header(headers, name) if required else headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError as e:
        raise ProtocolViolationError(f"Header {name} is not an integer: {value!r}") from e


@dataclass(frozen=True)
class FileHeaders:
    """File metadata carried in the headers of a download response."""

    file_id: str
    file_name: str
    content_sha1: str
    content_type: str
    content_length: int
    upload_timestamp: int
    file_info: dict[str, str]
    encryption: Optional[str] = None
    retention_mode: Optional[RetentionMode] = None
    retain_until_timestamp: Optional[int] = None
    legal_hold: Optional[bool] = None

    @classmethod
    def parse(cls, headers: Mapping[str, str]) -> "FileHeaders":
        """Parse download response headers.

        Args:
            headers: Case-insensitive response headers

        Returns:
            Parsed file headers

        Raises:
            ProtocolViolationError: If a mandatory header is missing or malformed
        """
        file_info = {}
        for key, value in headers.items():
            lowered = key.lower()
            if lowered.startswith(INFO_HEADER_PREFIX):
                file_info[lowered[len(INFO_HEADER_PREFIX):]] = unquote(value)

        retention_mode = None
        raw_mode = headers.get("x-bz-file-retention-mode")
        if raw_mode is not None:
            try:
                retention_mode = RetentionMode(raw_mode.lower())
            except ValueError as e:
                raise ProtocolViolationError(f"Unknown retention mode {raw_mode!r}") from e

        legal_hold = None
        raw_hold = headers.get("x-bz-file-legal-hold")
        if raw_hold is not None:
            if raw_hold.lower() not in ("on", "off"):
                raise ProtocolViolationError(f"Invalid legal hold value {raw_hold!r}")
            legal_hold = raw_hold.lower() == "on"

        return cls(
            file_id=_require_header(headers, "x-bz-file-id"),
            file_name=unquote(_require_header(headers, "x-bz-file-name")),
            content_sha1=_require_header(headers, "x-bz-content-sha1"),
            content_type=headers.get("content-type", DEFAULT_CONTENT_TYPE),
            content_length=_int_header(headers, "content-length"),
            upload_timestamp=_int_header(headers, "x-bz-upload-timestamp"),
            file_info=file_info,
            encryption=headers.get("x-bz-server-side-encryption"),
            retention_mode=retention_mode,
            retain_until_timestamp=_int_header(
                headers, "x-bz-file-retention-retain-until-timestamp", required=False
            ),
            legal_hold=legal_hold,
        )


@dataclass(frozen=True)
class DownloadedFile:
    """A downloaded file (or byte range) and its parsed headers."""

    headers: FileHeaders
    content: bytes
