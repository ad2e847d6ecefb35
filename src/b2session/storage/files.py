"""Uploading files from the local filesystem."""

import asyncio
import hashlib
import logging
import mimetypes
from pathlib import Path
from typing import TYPE_CHECKING, Mapping, Optional, Union

from b2session.core.exceptions import SessionStateError
from b2session.models.files import DEFAULT_CONTENT_TYPE, FileInfo, ServerSideEncryption
from b2session.session.large_file import SessionStatus

if TYPE_CHECKING:
    from b2session.session.manager import B2Session

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 8192


def sha1_file_range(path: Union[str, Path], start: int, end: int) -> str:
    """Hex SHA-1 of the bytes ``[start, end)`` of a file, read in 8 KiB chunks."""
    digest = hashlib.sha1()
    remaining = end - start
    with open(path, "rb") as f:
        f.seek(start)
        while remaining > 0 and (chunk := f.read(min(READ_CHUNK_SIZE, remaining))):
            digest.update(chunk)
            remaining -= len(chunk)
    return digest.hexdigest()


def read_range(path: Union[str, Path], start: int, length: int) -> bytes:
    """Read ``length`` bytes of a file starting at ``start``."""
    with open(path, "rb") as f:
        f.seek(start)
        return f.read(length)


def plan_parts(size: int, part_size: int) -> list[tuple[int, int]]:
    """Split ``size`` bytes into ``(offset, length)`` parts of ``part_size``.

    The last part holds the remainder.
    """
    if part_size <= 0:
        raise ValueError("part_size must be positive")
    return [(offset, min(part_size, size - offset)) for offset in range(0, size, part_size)]


def guess_content_type(path: Path) -> str:
    content_type, _ = mimetypes.guess_type(path.name)
    return content_type or DEFAULT_CONTENT_TYPE


async def upload_from_path(
    session: "B2Session",
    path: Union[str, Path],
    *,
    file_name: Optional[str] = None,
    bucket_id: Optional[str] = None,
    content_type: Optional[str] = None,
    file_info: Optional[Mapping[str, str]] = None,
    encryption: Optional[ServerSideEncryption] = None,
    part_size: Optional[int] = None,
    max_concurrency: Optional[int] = None,
) -> FileInfo:
    """Upload a local file.

    Files no larger than the part size are uploaded in one request. Larger
    files are uploaded as a large file whose parts are read in a worker thread
    and sent with bounded concurrency. If the large file upload fails it is
    cancelled before the error is re-raised.

    Args:
        session: Session to upload through
        path: Local file path
        file_name: Name in the bucket; defaults to the local file name
        bucket_id: Target bucket; defaults to the key's restricted bucket
        content_type: MIME type; guessed from the file extension when omitted
        file_info: Custom ``X-Bz-Info-*`` metadata
        encryption: Server-side encryption settings
        part_size: Part size in bytes; defaults to the recommended part size
        max_concurrency: Parts uploaded at once; defaults to settings

    Returns:
        Metadata of the stored file

    Raises:
        ValueError: If ``part_size`` is below the service minimum
        B2SessionError: If the upload failed
    """
    path = Path(path)
    size = (await asyncio.to_thread(path.stat)).st_size
    auth = await session.authorization()
    part_size = part_size or auth.recommended_part_size
    if part_size < auth.absolute_minimum_part_size:
        raise ValueError(
            f"part_size {part_size} is below the minimum of {auth.absolute_minimum_part_size}"
        )

    name = file_name or path.name
    content_type = content_type or guess_content_type(path)

    if size <= part_size:
        data = await asyncio.to_thread(path.read_bytes)
        return await session.upload_bytes(
            data,
            name,
            bucket_id=bucket_id,
            content_type=content_type,
            file_info=file_info,
            encryption=encryption,
        )

    large_file = await session.start_large_file(
        name,
        bucket_id=bucket_id,
        content_type=content_type,
        file_info=file_info,
        encryption=encryption,
    )
    parts = plan_parts(size, part_size)
    logger.info(
        "Uploading file as large file",
        extra={
            "path": str(path),
            "file_id": large_file.file_id,
            "size_bytes": size,
            "part_count": len(parts),
        },
    )

    semaphore = asyncio.Semaphore(max_concurrency or session.settings.MAX_CONCURRENT_PART_UPLOADS)
    tasks: list[asyncio.Task] = []
    try:
        for offset, length in parts:
            await semaphore.acquire()
            if any(task.done() and not task.cancelled() and task.exception() for task in tasks):
                semaphore.release()
                break
            data = await asyncio.to_thread(read_range, path, offset, length)
            # upload_part reserves its number before its first await, and
            # tasks start in creation order, so part numbers follow offsets
            task = asyncio.create_task(large_file.upload_part(data))
            task.add_done_callback(lambda _: semaphore.release())
            tasks.append(task)
        await asyncio.gather(*tasks)
        return await large_file.finish()
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if large_file.status not in (SessionStatus.FINISHED, SessionStatus.CANCELLED):
            try:
                await large_file.cancel()
            except SessionStateError as e:
                logger.warning("Could not cancel large file", extra={"error": str(e)})
        raise
