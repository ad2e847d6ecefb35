"""Large-file upload sessions.

A session moves through these states::

    Open --finish--> Finishing --ok--> Finished
    Finishing --transient failure--> Open
    Open | Finishing | Failed --cancel--> Cancelled
    Cancelled --finish that was already in flight succeeds--> Finished
    any non-terminal --fatal failure--> Failed

Part numbers are reserved at dispatch, in call order, and completed parts
land in the slot of their number. The part list handed to finish is
therefore contiguous and ordered no matter in which order uploads complete.
"""

import asyncio
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional

from b2session.client import endpoints
from b2session.client.protocol import ProtocolClient
from b2session.core.digest import DigestProvider, sha1_hex
from b2session.core.exceptions import (
    B2SessionError,
    PartMismatchError,
    PermanentError,
    ProtocolViolationError,
    SessionStateError,
    TransientError,
)
from b2session.core.logging import file_id_context
from b2session.models.files import (
    CancelledFileInfo,
    FileInfo,
    NewLargeFileInfo,
    NewPartInfo,
    PartInfo,
    ServerSideEncryption,
)
from b2session.session.resilience import ResiliencePolicy
from b2session.session.upload_pool import UploadUrlPool

logger = logging.getLogger(__name__)

# The service numbers parts 1..10000
MAX_PART_NUMBER = 10000


class SessionStatus(str, Enum):
    """Large-file session state."""

    OPEN = "open"
    FINISHING = "finishing"
    FINISHED = "finished"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class PartDescriptor:
    """A part the service has acknowledged."""

    part_number: int
    content_length: int
    content_sha1: str


class LargeFileSession:
    """Upload of one large file as independently uploaded parts.

    Dropping a session does not cancel it on the service; call ``cancel``.
    """

    def __init__(
        self,
        client: ProtocolClient,
        policy: ResiliencePolicy,
        file: FileInfo,
        *,
        encryption: Optional[ServerSideEncryption] = None,
        digest: DigestProvider = sha1_hex,
        verify_parts: bool = True,
        max_part_urls: int = 4,
        pooling: bool = True,
        timeout: Optional[float] = None,
    ):
        """Wrap an already started large file.

        Args:
            client: Protocol client
            policy: Resilience policy every call runs under
            file: Response of ``b2_start_large_file``
            encryption: Encryption the file was started with; SSE-C keys are
                repeated on every part
            digest: Digest provider for part SHA-1s
            verify_parts: Compare the server's part list with the local record
                before finishing
            max_part_urls: Cap on concurrently leased part upload URLs
            pooling: Whether part upload URLs are reused
            timeout: Per-request timeout for part uploads
        """
        self._client = client
        self._policy = policy
        self._file = file
        self._encryption = encryption
        self._digest = digest
        self._verify_parts = verify_parts
        self._timeout = timeout
        self._part_urls = UploadUrlPool(
            self._fetch_part_url, max_per_key=max_part_urls, pooling=pooling
        )

        self._lock = threading.Lock()
        self._status = SessionStatus.OPEN
        self._slots: list[Optional[PartDescriptor]] = []
        self._in_flight: set[int] = set()
        self._finish_was_ambiguous = False

    @classmethod
    async def start(
        cls,
        client: ProtocolClient,
        policy: ResiliencePolicy,
        bucket_id: str,
        info: NewLargeFileInfo,
        *,
        request_timeout: Optional[float] = None,
        **kwargs,
    ) -> "LargeFileSession":
        """Start a large file on the service and open a session for it.

        ``request_timeout`` applies to the start call; the remaining keyword
        arguments are passed to the constructor.

        Raises:
            B2SessionError: If the start call fails; no session exists then
        """
        file = await policy.execute(
            endpoints.START_LARGE_FILE,
            lambda auth: client.start_large_file(auth, bucket_id, info, timeout=request_timeout),
        )
        logger.info(
            "Large file started",
            extra={"file_id": file.file_id, "file_name": file.file_name, "bucket_id": bucket_id},
        )
        return cls(client, policy, file, encryption=info.encryption, **kwargs)

    @property
    def file_id(self) -> str:
        return self._file.file_id

    @property
    def file_name(self) -> str:
        return self._file.file_name

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def parts(self) -> list[PartDescriptor]:
        """Acknowledged parts in part number order."""
        with self._lock:
            return [slot for slot in self._slots if slot is not None]

    @property
    def bytes_committed(self) -> int:
        return sum(part.content_length for part in self.parts)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def part_urls(self) -> UploadUrlPool:
        return self._part_urls

    @contextmanager
    def _log_context(self) -> Iterator[None]:
        token = file_id_context.set(self.file_id)
        try:
            yield
        finally:
            file_id_context.reset(token)

    async def _fetch_part_url(self, file_id: str):
        return await self._policy.execute(
            endpoints.GET_UPLOAD_PART_URL,
            lambda auth: self._client.get_upload_part_url(auth, file_id),
        )

    def _reserve(self) -> int:
        with self._lock:
            if self._status is not SessionStatus.OPEN:
                raise SessionStateError(f"Cannot upload a part while the session is {self._status.value}")
            part_number = len(self._slots) + 1
            if part_number > MAX_PART_NUMBER:
                raise SessionStateError(f"A large file has at most {MAX_PART_NUMBER} parts")
            self._slots.append(None)
            self._in_flight.add(part_number)
            return part_number

    def _complete(self, descriptor: PartDescriptor) -> None:
        with self._lock:
            self._in_flight.discard(descriptor.part_number)
            if self._status is SessionStatus.CANCELLED:
                logger.info(
                    "Part completed after cancel, not recorded",
                    extra={"part_number": descriptor.part_number},
                )
                return
            self._slots[descriptor.part_number - 1] = descriptor

    def _part_failed(self, part_number: int, error: BaseException) -> None:
        with self._lock:
            self._in_flight.discard(part_number)
            if self._status in (SessionStatus.CANCELLED, SessionStatus.FAILED):
                return

            fatal = isinstance(error, (PermanentError, ProtocolViolationError))
            if not fatal and part_number == len(self._slots):
                # Nothing was reserved after this part, so no gap is left behind
                self._slots.pop()
                logger.warning(
                    "Part upload failed, reservation released",
                    extra={"part_number": part_number, "error": str(error)},
                )
                return

            self._status = SessionStatus.FAILED
            logger.error(
                "Part upload failed, session failed",
                extra={
                    "part_number": part_number,
                    "error": str(error),
                    "error_type": type(error).__name__,
                },
            )

    def _check_part(self, expected: NewPartInfo, part: PartInfo) -> PartDescriptor:
        if (
            part.part_number != expected.part_number
            or part.content_sha1 != expected.content_sha1
            or part.content_length != expected.content_length
        ):
            raise ProtocolViolationError(
                f"Service acknowledged part {part.part_number} "
                f"but part {expected.part_number} was sent",
                operation=endpoints.UPLOAD_PART.name,
            )
        return PartDescriptor(
            part_number=part.part_number,
            content_length=part.content_length,
            content_sha1=part.content_sha1,
        )

    async def upload_part(self, data: bytes, *, timeout: Optional[float] = None) -> PartDescriptor:
        """Upload the next part.

        The part number is reserved before the first await, so concurrent
        calls are numbered in the order they were made. The SHA-1 is computed
        in a worker thread.

        Args:
            data: Part content
            timeout: Request timeout in seconds; defaults to the session's
                upload timeout

        Returns:
            The acknowledged part

        Raises:
            SessionStateError: If the session is not open
            B2SessionError: If the upload failed after retries
        """
        part_timeout = timeout if timeout is not None else self._timeout
        part_number = self._reserve()

        async def attempt(auth):
            async with self._part_urls.lease(self.file_id) as url:
                return await self._client.upload_part(url, info, data, timeout=part_timeout)

        with self._log_context():
            try:
                sha1 = await asyncio.to_thread(self._digest, data)
                info = NewPartInfo(
                    part_number=part_number,
                    content_length=len(data),
                    content_sha1=sha1,
                    encryption=self._encryption,
                )
                part = await self._policy.execute(endpoints.UPLOAD_PART, attempt)
                descriptor = self._check_part(info, part)
            except BaseException as e:
                self._part_failed(part_number, e)
                raise

            self._complete(descriptor)
            logger.debug(
                "Part uploaded",
                extra={"part_number": part_number, "size_bytes": len(data)},
            )
            return descriptor

    def _begin_finish(self) -> list[PartDescriptor]:
        with self._lock:
            if self._status is not SessionStatus.OPEN:
                raise SessionStateError(f"Cannot finish a session that is {self._status.value}")
            if self._in_flight:
                raise SessionStateError(f"{len(self._in_flight)} part(s) are still uploading")
            if not self._slots:
                raise SessionStateError("Cannot finish a large file without parts")
            if any(slot is None for slot in self._slots):
                raise SessionStateError("Part list has gaps")
            self._status = SessionStatus.FINISHING
            return list(self._slots)

    def _end_finish(self, status: SessionStatus) -> None:
        with self._lock:
            if self._status is SessionStatus.FINISHING:
                self._status = status

    def _mark_finished(self) -> None:
        with self._lock:
            overtaken = self._status is SessionStatus.CANCELLED
            self._status = SessionStatus.FINISHED
        if overtaken:
            # The finished object exists on the service, so the cancel lost the race
            logger.warning("Large file finished after cancel was requested, it was not cancelled")
        self._part_urls.discard(self.file_id)

    async def _verify_remote_parts(
        self, parts: list[PartDescriptor], timeout: Optional[float]
    ) -> None:
        remote: dict[int, PartInfo] = {}
        start: Optional[int] = None
        while True:
            page = await self._policy.execute(
                endpoints.LIST_PARTS,
                lambda auth: self._client.list_parts(
                    auth, self.file_id, start_part_number=start, timeout=timeout
                ),
            )
            for part in page.parts:
                remote[part.part_number] = part
            if page.next_part_number is None:
                break
            start = page.next_part_number

        if set(remote) != {part.part_number for part in parts}:
            raise PartMismatchError(
                f"Service holds parts {sorted(remote)} but {len(parts)} were uploaded",
                operation=endpoints.LIST_PARTS.name,
            )
        for part in parts:
            stored = remote[part.part_number]
            if stored.content_sha1 != part.content_sha1 or stored.content_length != part.content_length:
                raise PartMismatchError(
                    f"Part {part.part_number} differs from the uploaded content",
                    operation=endpoints.LIST_PARTS.name,
                )

    async def _recover_finished(self, timeout: Optional[float]) -> Optional[FileInfo]:
        try:
            info = await self._policy.execute(
                endpoints.GET_FILE_INFO,
                lambda auth: self._client.get_file_info(auth, self.file_id, timeout=timeout),
            )
        except B2SessionError as e:
            logger.warning("Could not look up file after ambiguous finish", extra={"error": str(e)})
            return None
        return info if info.action == "upload" else None

    async def finish(self, *, timeout: Optional[float] = None) -> FileInfo:
        """Assemble the uploaded parts into the final file.

        Args:
            timeout: Request timeout in seconds for each call made

        Returns:
            Metadata of the finished file

        Raises:
            SessionStateError: If the session is not open, has no parts or has
                parts still uploading. No network call is made.
            B2SessionError: If finishing failed. Transient failures leave the
                session open, anything else leaves it failed.
        """
        parts = self._begin_finish()
        with self._log_context():
            try:
                if self._verify_parts:
                    await self._verify_remote_parts(parts, timeout)
                file = await self._policy.execute(
                    endpoints.FINISH_LARGE_FILE,
                    lambda auth: self._client.finish_large_file(
                        auth,
                        self.file_id,
                        [(p.part_number, p.content_sha1) for p in parts],
                        timeout=timeout,
                    ),
                )
                total = sum(p.content_length for p in parts)
                if self._verify_parts and file.content_length != total:
                    raise PartMismatchError(
                        f"Finished file has {file.content_length} bytes, {total} were uploaded",
                        operation=endpoints.FINISH_LARGE_FILE.name,
                    )
            except PermanentError as e:
                if e.status == 400 and self._finish_was_ambiguous:
                    recovered = await self._recover_finished(timeout)
                    if recovered is not None:
                        logger.info("Large file was already finished")
                        self._mark_finished()
                        return recovered
                self._end_finish(SessionStatus.FAILED)
                logger.error("Finishing large file failed", extra={"error": str(e)})
                raise
            except ProtocolViolationError as e:
                self._end_finish(SessionStatus.FAILED)
                logger.error("Finishing large file failed", extra={"error": str(e)})
                raise
            except BaseException as e:
                if isinstance(e, TransientError):
                    self._finish_was_ambiguous = True
                self._end_finish(SessionStatus.OPEN)
                logger.warning("Finishing large file interrupted, session reopened", extra={"error": str(e)})
                raise

            self._mark_finished()
            logger.info(
                "Large file finished",
                extra={"part_count": len(parts), "size_bytes": file.content_length},
            )
            return file

    async def cancel(self, *, timeout: Optional[float] = None) -> Optional[CancelledFileInfo]:
        """Cancel the large file.

        The session ends cancelled whether or not the service call succeeds;
        a failed call is logged and the service may keep the parts until its
        own cleanup runs. A finish already in flight that still succeeds
        moves the session to finished instead.

        Returns:
            The service response, or None if the cancel call failed

        Raises:
            SessionStateError: If the session is already finished or cancelled
        """
        with self._lock:
            if self._status in (SessionStatus.FINISHED, SessionStatus.CANCELLED):
                raise SessionStateError(f"Cannot cancel a session that is {self._status.value}")
            self._status = SessionStatus.CANCELLED

        with self._log_context():
            try:
                result = await self._policy.execute(
                    endpoints.CANCEL_LARGE_FILE,
                    lambda auth: self._client.cancel_large_file(auth, self.file_id, timeout=timeout),
                )
            except B2SessionError as e:
                logger.warning(
                    "Cancelling large file failed, parts may remain on the service",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
                return None
            finally:
                self._part_urls.discard(self.file_id)

            logger.info("Large file cancelled")
            return result
