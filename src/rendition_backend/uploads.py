"""
Resumable multipart upload sessions.

This module owns the upload session state machine and the completion protocol:
- Session creation against a storage-side multipart upload
- Presigned part URLs for direct client-to-storage uploads
- Retry-safe completion (commit, copy, version, enqueue, mark completed)
- Best-effort abort and the expiry reaper

States move ``initiated -> uploading -> completed`` or
``initiated|uploading -> aborted`` and never leave a terminal state. Every state
change is a compare-and-set in the database, so concurrent part-URL calls
cannot corrupt the session.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, Iterable, Optional
from uuid import uuid4

from omegaconf import DictConfig

from .database import Database, UploadSession, utcnow
from .errors import ConflictError, NotFoundError, StorageError, ValidationError
from .job_queue import JobQueue
from .models import MAX_PART_NUMBER, CompletedPart, CompletionStep, UploadState, UploadTarget
from .storage import StorageGateway
from .utils import asset_type_for_mime, is_allowed_upload, sanitize_filename

logger = logging.getLogger(__name__)

DEFAULT_PART_SIZE = 5 * 1024 * 1024
PART_URL_STATES = (UploadState.INITIATED, UploadState.UPLOADING)


@dataclass(frozen=True)
class CompletionResult:
    asset_id: str
    version_id: str


class UploadSessionManager:
    """
    Coordinates upload sessions between clients, storage and the render queue.

    Thread Safety:
        State transitions are atomic in the database. ``complete`` and
        ``abort`` additionally hold a per-session lock so duplicate calls in
        one process run one after the other; the second sees the first's
        recorded progress. Version numbers are allocated inside a database
        write transaction, which serializes them per asset across processes.

    Attributes:
        part_size: Fixed part size handed to clients
        max_parts: Storage backend's maximum part count
        session_ttl: Lifetime of a session from creation; never extended
    """

    def __init__(
        self,
        database: Database,
        storage: StorageGateway,
        queue: JobQueue,
        work_queue: str = "preview",
        part_size: int = DEFAULT_PART_SIZE,
        max_parts: int = MAX_PART_NUMBER,
        session_ttl: timedelta = timedelta(hours=24),
        temp_prefix: str = "uploads",
        final_prefix: str = "assets",
        reaper_aborts_remote: bool = True,
    ) -> None:
        self.database = database
        self.storage = storage
        self.queue = queue
        self.work_queue = work_queue
        self.part_size = part_size
        self.max_parts = min(max_parts, MAX_PART_NUMBER)
        self.session_ttl = session_ttl
        self.temp_prefix = temp_prefix
        self.final_prefix = final_prefix
        self.reaper_aborts_remote = reaper_aborts_remote
        self._lock = Lock()
        self._session_locks: Dict[str, Lock] = {}

    @classmethod
    def from_config(
        cls,
        config: DictConfig,
        database: Database,
        storage: StorageGateway,
        queue: JobQueue,
    ) -> "UploadSessionManager":
        uploads = config.uploads
        return cls(
            database=database,
            storage=storage,
            queue=queue,
            work_queue=config.queue.work_queue,
            part_size=int(uploads.part_size),
            max_parts=int(uploads.max_parts),
            session_ttl=timedelta(hours=float(uploads.session_ttl_hours)),
            temp_prefix=uploads.temp_prefix,
            final_prefix=uploads.final_prefix,
            reaper_aborts_remote=bool(uploads.reaper_aborts_remote),
        )

    def _session_lock(self, session_id: str) -> Lock:
        with self._lock:
            return self._session_locks.setdefault(session_id, Lock())

    def _release_session_lock(self, session_id: str) -> None:
        # Only for sessions in a terminal state, which no caller can leave
        with self._lock:
            self._session_locks.pop(session_id, None)

    def part_count_for(self, total_size: int) -> int:
        return math.ceil(total_size / self.part_size)

    def get_session(self, session_id: str) -> UploadSession:
        session = self.database.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Upload session {session_id} not found")
        return session

    def create_session(
        self,
        target: UploadTarget,
        file_name: str,
        mime: str,
        total_size: int,
        created_by: str,
        asset_id: Optional[str] = None,
    ) -> UploadSession:
        """
        Open a storage-side multipart upload and persist an ``initiated`` session.

        Raises:
            ValidationError: Bad sizes, a disallowed file type, missing asset id
                for new_version, or a file needing more parts than the backend
                allows
            NotFoundError: new_version against an unknown asset
            StorageError: The gateway refused; nothing is persisted
        """
        target = UploadTarget(target)
        if not file_name:
            raise ValidationError("fileName must not be empty")
        if not is_allowed_upload(mime, file_name):
            raise ValidationError(f"File type not allowed: {mime}")
        if total_size <= 0:
            raise ValidationError("totalSize must be positive")
        if target == UploadTarget.NEW_VERSION:
            if not asset_id:
                raise ValidationError("assetId is required when target is new_version")
            if self.database.get_asset(asset_id) is None:
                raise NotFoundError(f"Asset {asset_id} not found")
        else:
            asset_id = None

        part_count = self.part_count_for(total_size)
        if part_count > self.max_parts:
            raise ValidationError(
                f"totalSize {total_size} needs {part_count} parts of {self.part_size} bytes; "
                f"the limit is {self.max_parts}"
            )

        session_id = uuid4().hex
        key_temp = f"{self.temp_prefix}/{session_id}/{sanitize_filename(file_name)}"
        s3_upload_id = self.storage.create_multipart_upload(key_temp, mime)

        now = utcnow()
        session = UploadSession(
            id=session_id,
            target=target,
            asset_id=asset_id,
            file_name=file_name,
            mime=mime,
            total_size=total_size,
            part_size=self.part_size,
            part_count=part_count,
            s3_upload_id=s3_upload_id,
            bucket=self.storage.bucket,
            key_temp=key_temp,
            received_bytes=0,
            state=UploadState.INITIATED,
            completion_step=CompletionStep.PENDING,
            final_key=None,
            result_asset_id=None,
            result_version_id=None,
            created_by=created_by,
            created_at=now,
            expires_at=now + self.session_ttl,
        )
        self.database.create_session(session)
        logger.info(f"Upload session {session_id} initiated ({part_count} parts, target={target.value})")
        return session

    def request_part_url(self, session_id: str, part_number: int) -> str:
        """
        Presign an upload URL for one part; the first call moves the session
        to ``uploading``.

        Raises:
            ValidationError: Part number outside ``[1, part_count]``
            ConflictError: Session is completed or aborted
        """
        if not 1 <= part_number <= self.max_parts:
            raise ValidationError(f"partNumber must be between 1 and {self.max_parts}")

        session = self.get_session(session_id)
        if part_number > session.part_count:
            raise ValidationError(f"partNumber {part_number} exceeds the session's {session.part_count} parts")

        updated = self.database.transition_session(session_id, PART_URL_STATES, UploadState.UPLOADING)
        if updated is None:
            current = self.get_session(session_id)
            raise ConflictError(f"Upload session is in {current.state.value} state", state=current.state.value)
        if session.state == UploadState.INITIATED:
            logger.info(f"Upload session {session_id} is uploading")

        return self.storage.presign_part_url(updated.key_temp, updated.s3_upload_id, part_number)

    def complete(
        self,
        session_id: str,
        parts: Iterable[CompletedPart],
        sha256: Optional[str] = None,
    ) -> CompletionResult:
        """
        Finish an upload and hand the new version to the render pipeline.

        Steps run in order and each is recorded on the session once done:
        commit the multipart upload, copy it to its permanent key, create the
        asset version, enqueue the render job. Only then does the session flip
        to ``completed``. A failure leaves it ``uploading`` and a retry resumes
        from the first unrecorded step. Calling again after completion returns
        the stored result with no side effects.

        Raises:
            ConflictError: Session is not uploading (and not completed)
            StorageError: Commit or copy failed, e.g. an incomplete parts list
            QueueError: The render job could not be enqueued
        """
        part_list = list(parts)
        with self._session_lock(session_id):
            session = self.get_session(session_id)

            if session.state == UploadState.COMPLETED:
                self._release_session_lock(session_id)
                return self._result_of(session)
            if session.state != UploadState.UPLOADING:
                if session.state.is_terminal:
                    self._release_session_lock(session_id)
                raise ConflictError(f"Upload session is in {session.state.value} state", state=session.state.value)
            if not part_list:
                raise ValidationError("parts must not be empty")

            # Another process may finish this session while a step is in
            # flight; after each step the recorded row decides what runs next
            if not session.completion_step.reached(CompletionStep.COMMITTED):
                self.storage.complete_multipart_upload(
                    session.key_temp,
                    session.s3_upload_id,
                    [{"PartNumber": part.part_number, "ETag": part.etag} for part in part_list],
                )
                session = self._advance(session_id, CompletionStep.COMMITTED)
                if session.state == UploadState.COMPLETED:
                    return self._finished_elsewhere(session)

            if not session.completion_step.reached(CompletionStep.COPIED):
                final_key = f"{self.final_prefix}/{session_id}/{sanitize_filename(session.file_name)}"
                self.storage.copy_object(session.key_temp, final_key)
                session = self._advance(session_id, CompletionStep.COPIED, final_key=final_key)
                if session.state == UploadState.COMPLETED:
                    return self._finished_elsewhere(session)

            if not session.completion_step.reached(CompletionStep.VERSIONED):
                version = self.database.create_version_for_session(
                    session,
                    asset_type_for_mime(session.mime),
                    sha256=sha256,
                )
                logger.info(f"Created version {version.version} ({version.id}) of asset {version.asset_id}")
                session = self.get_session(session_id)

            result = self._result_of(session)

            if not session.completion_step.reached(CompletionStep.ENQUEUED):
                self.queue.enqueue(self.work_queue, {"versionId": result.version_id})
                self._advance(session_id, CompletionStep.ENQUEUED)

            completed = self.database.transition_session(
                session_id,
                (UploadState.UPLOADING,),
                UploadState.COMPLETED,
                received_bytes=session.total_size,
            )
            if completed is None:
                current = self.get_session(session_id)
                if current.state == UploadState.COMPLETED:
                    return self._finished_elsewhere(current)
                raise ConflictError(f"Upload session is in {current.state.value} state", state=current.state.value)
            self._release_session_lock(session_id)

        logger.info(f"Upload session {session_id} completed -> version {result.version_id}")
        return result

    def _advance(self, session_id: str, step: CompletionStep, final_key: Optional[str] = None) -> UploadSession:
        session = self.database.record_completion_step(session_id, step, final_key=final_key)
        if session is None:
            raise NotFoundError(f"Upload session {session_id} not found")
        if session.state not in (UploadState.UPLOADING, UploadState.COMPLETED):
            raise ConflictError(f"Upload session is in {session.state.value} state", state=session.state.value)
        return session

    def _finished_elsewhere(self, session: UploadSession) -> CompletionResult:
        logger.info(f"Upload session {session.id} was completed by another caller")
        self._release_session_lock(session.id)
        return self._result_of(session)

    def _result_of(self, session: UploadSession) -> CompletionResult:
        if not session.result_asset_id or not session.result_version_id:
            raise ConflictError(f"Upload session {session.id} has no recorded version", state=session.state.value)
        return CompletionResult(asset_id=session.result_asset_id, version_id=session.result_version_id)

    def abort(self, session_id: str) -> None:
        """
        Cancel an upload. The storage-side abort is best effort: its failure is
        logged and the session is marked ``aborted`` regardless.

        Raises:
            ConflictError: Session already completed or aborted
        """
        with self._session_lock(session_id):
            session = self.get_session(session_id)
            if session.state.is_terminal:
                raise ConflictError(f"Upload session is in {session.state.value} state", state=session.state.value)

            try:
                self.storage.abort_multipart_upload(session.key_temp, session.s3_upload_id)
            except StorageError as exc:
                logger.warning(f"Abort of multipart upload for session {session_id} failed: {exc}")

            aborted = self.database.transition_session(session_id, PART_URL_STATES, UploadState.ABORTED)
            if aborted is None:
                current = self.get_session(session_id)
                raise ConflictError(f"Upload session is in {current.state.value} state", state=current.state.value)
            self._release_session_lock(session_id)

        logger.info(f"Upload session {session_id} aborted")

    def reap_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete sessions past ``expires_at``.

        With ``reaper_aborts_remote`` the still-open storage-side uploads of
        those sessions are aborted first (best effort). Render jobs already
        enqueued are never touched.

        Returns:
            Number of session rows deleted
        """
        expired = self.database.list_expired_sessions(now)
        if not expired:
            return 0

        if self.reaper_aborts_remote:
            for session in expired:
                if session.state.is_terminal:
                    continue
                try:
                    self.storage.abort_multipart_upload(session.key_temp, session.s3_upload_id)
                except StorageError as exc:
                    logger.warning(f"Reaper could not abort multipart upload for session {session.id}: {exc}")

        deleted = self.database.delete_sessions([session.id for session in expired])
        with self._lock:
            for session in expired:
                self._session_locks.pop(session.id, None)
        logger.info(f"Reaped {deleted} expired upload sessions")
        return deleted
