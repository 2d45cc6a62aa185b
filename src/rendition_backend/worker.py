"""
Rendition worker process.

A single-threaded loop: block on the work queue for a bounded time, process one
job fully, repeat. Scale out by running more processes; the queue's atomic pop
gives each message to one worker.

Any exception while processing a job is caught at the job boundary and the job
is written to the dead-letter queue; it is never redelivered automatically. A
queue-level error sleeps for a fixed backoff and the loop carries on. A worker
that dies between pop and finish loses that message.

Usage:
    rendition-worker run
    rendition-worker reap
    rendition-worker replay --limit 100
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
import time
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from omegaconf import DictConfig, OmegaConf

from .configuration import configure_logging, make_runtime_config
from .database import Database
from .errors import QueueError, ValidationError
from .job_queue import JobQueue, build_redis_client
from .pipeline import RenditionPipeline
from .storage import StorageGateway, build_s3_client
from .uploads import UploadSessionManager

logger = logging.getLogger(__name__)


class RenditionWorker:
    def __init__(
        self,
        queue: JobQueue,
        pipeline: RenditionPipeline,
        work_queue: str = "preview",
        dead_letter_queue: str = "preview:dlq",
        dequeue_timeout: float = 5,
        error_backoff: float = 1.0,
    ) -> None:
        self.queue = queue
        self.pipeline = pipeline
        self.work_queue = work_queue
        self.dead_letter_queue = dead_letter_queue
        self.dequeue_timeout = dequeue_timeout
        self.error_backoff = error_backoff
        self.stop_event = threading.Event()

    def run(self, max_jobs: Optional[int] = None) -> int:
        """
        Process jobs until stopped.

        Args:
            max_jobs: Return after this many jobs (successful or dead-lettered)

        Returns:
            Number of jobs processed
        """
        processed = 0
        logger.info(f"Worker started, waiting for jobs on {self.work_queue}")
        while not self.stop_event.is_set():
            try:
                payload = self.queue.dequeue(self.work_queue, self.dequeue_timeout)
            except QueueError as exc:
                logger.error(f"Error in main loop: {exc}")
                self.stop_event.wait(self.error_backoff)
                continue

            if payload is None:
                continue

            self.process_job(payload)
            processed += 1
            if max_jobs is not None and processed >= max_jobs:
                break

        logger.info(f"Worker stopped after {processed} jobs")
        return processed

    def stop(self) -> None:
        self.stop_event.set()

    def process_job(self, payload: Dict[str, Any]) -> bool:
        """
        Run one render job; failures go to the dead-letter queue.

        Returns:
            True if the job finished, False if it was dead-lettered
        """
        version_id = None
        started = time.monotonic()
        try:
            if isinstance(payload, dict):
                version_id = payload.get("versionId")
            logger.info(f"Processing render job for version {version_id}")
            if not version_id:
                raise ValidationError(f"Render job has no versionId: {payload!r}")
            outcome = self.pipeline.process(version_id)
        except Exception as exc:
            logger.error(f"Error processing job {version_id}: {exc}")
            self._dead_letter(version_id, exc, traceback.format_exc())
            return False

        logger.info(f"Render job for version {version_id} {outcome.value} in {time.monotonic() - started:.1f}s")
        return True

    def _dead_letter(self, version_id: Optional[str], exc: Exception, stack: str) -> None:
        entry = {
            "versionId": version_id,
            "error": str(exc),
            "stack": stack,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.queue.enqueue(self.dead_letter_queue, entry)
        except QueueError as queue_exc:
            # Nowhere left to put it; the log line is the only record
            logger.critical(f"Dead-letter push failed for version {version_id}: {queue_exc}; entry={entry}")

    def replay_dead_letters(self, limit: int = 100) -> int:
        """Move up to ``limit`` dead-letter entries back onto the work queue, oldest first."""
        replayed = 0
        while replayed < limit:
            entry = self.queue.pop(self.dead_letter_queue)
            if entry is None:
                break
            version_id = entry.get("versionId")
            if not version_id:
                logger.warning(f"Dropping dead-letter entry without versionId: {entry!r}")
                continue
            self.queue.enqueue(self.work_queue, {"versionId": version_id})
            replayed += 1
        logger.info(f"Replayed {replayed} dead-letter entries onto {self.work_queue}")
        return replayed


def build_worker(config: DictConfig, queue: JobQueue, database: Database, storage: StorageGateway) -> RenditionWorker:
    return RenditionWorker(
        queue=queue,
        pipeline=RenditionPipeline.from_config(config, database, storage),
        work_queue=config.queue.work_queue,
        dead_letter_queue=config.queue.dead_letter_queue,
        dequeue_timeout=float(config.worker.dequeue_timeout_seconds),
        error_backoff=float(config.worker.error_backoff_seconds),
    )


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="rendition-worker", description="Rendition pipeline worker")
    parser.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Config override in OmegaConf dotlist form, e.g. worker.dequeue_timeout_seconds=2",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)
    subcommands.add_parser("run", help="Process render jobs until interrupted")
    subcommands.add_parser("reap", help="Delete expired upload sessions once")
    replay = subcommands.add_parser("replay", help="Move dead-letter entries back to the work queue")
    replay.add_argument("--limit", type=int, default=100)
    return parser.parse_args(argv)


def _dotlist_to_overrides(dotlist: List[str]) -> Dict[str, Any]:
    return OmegaConf.to_container(OmegaConf.from_dotlist(dotlist))  # type: ignore[return-value]


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    config = make_runtime_config(_dotlist_to_overrides(args.overrides))
    configure_logging(config)

    database = Database(Path(config.database.path))
    storage = StorageGateway(
        build_s3_client(config.storage),
        bucket=config.storage.bucket,
        presign_ttl=int(config.storage.presign_ttl_seconds),
    )
    queue = JobQueue(build_redis_client(config.queue), key_prefix=config.queue.key_prefix)

    try:
        if args.command == "reap":
            manager = UploadSessionManager.from_config(config, database, storage, queue)
            manager.reap_expired()
            return 0

        worker = build_worker(config, queue, database, storage)
        if args.command == "replay":
            worker.replay_dead_letters(limit=args.limit)
            return 0

        signal.signal(signal.SIGTERM, lambda *_: worker.stop())
        signal.signal(signal.SIGINT, lambda *_: worker.stop())
        worker.run()
        return 0
    finally:
        queue.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
