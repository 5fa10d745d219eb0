import json
import logging
import shutil
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config import Settings
from ..errors import RemoteResultError, RemoteStatusError, TrainingConflictError
from ..remote import Completed, Failed, RemoteJobClient, Unknown
from ..schemas import TrainingConfig, TrainingExample, TrainingJob
from ..session import Session
from .poller import PollScheduler
from .validation import validate_config, validate_examples

logger = logging.getLogger(__name__)


def estimate_progress(elapsed: float, config: TrainingConfig, seconds_per_step: float, cap: float) -> float:
    """Percent done from wall-clock time alone; never reaches 100 on its own."""
    total = config.epochs * max(config.image_count, 1) * seconds_per_step
    if total <= 0:
        return cap
    return max(0.0, min(cap, elapsed / total * 100.0))


class TrainingManager:
    def __init__(
        self,
        session: Session,
        remote: RemoteJobClient,
        settings: Settings,
        scheduler: Optional[PollScheduler] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.session = session
        self.remote = remote
        self.settings = settings
        self.scheduler = scheduler or PollScheduler(interval=settings.poll_interval)
        self.clock = clock
        self.base_dir = Path(settings.data_dir).absolute()
        (self.base_dir / "jobs").mkdir(parents=True, exist_ok=True)
        self._submit_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._job_locks: Dict[str, threading.Lock] = {}

    # Paths helpers
    def get_job_dir(self, job_id: str) -> Path:
        return self.base_dir / "jobs" / job_id

    def get_job_log_path(self, job_id: str) -> Path:
        return self.get_job_dir(job_id) / "train.log"

    def get_job_request_path(self, job_id: str) -> Path:
        return self.get_job_dir(job_id) / "request.json"

    def _job_lock(self, job_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._job_locks.setdefault(job_id, threading.Lock())

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self.clock(), timezone.utc).isoformat()

    def get(self, job_id: str) -> Optional[TrainingJob]:
        job = self.session.models.get(job_id)
        if job is not None:
            return job
        current = self.session.current_training
        if current is not None and current.request_id == job_id:
            return current
        return None

    def _save(self, job: TrainingJob):
        job.updated_at = self._now_iso()
        with self.session.store.lock:
            self.session.models.upsert(job)
            current = self.session.current_training
            if current is not None and current.request_id == job.request_id:
                self.session.set_current_training(job)

    def start_training(
        self,
        model_name: str,
        config: TrainingConfig,
        examples: Sequence[TrainingExample],
        **options,
    ) -> TrainingJob:
        validate_config(model_name, config)
        validate_examples(examples, self.settings)
        config = config.model_copy(update={"image_count": len(examples)})

        with self._submit_lock:
            if self.session.is_training():
                raise TrainingConflictError(
                    f"Training already in progress: {self.session.current_training.request_id}"
                )

            steps = config.epochs * len(examples)
            logger.info("Submitting training '%s': %d images, %d steps", model_name, len(examples), steps)
            archive_url = self.remote.upload_archive(examples)
            request_id = self.remote.submit_training(archive_url, steps, **options)

            now = self._now_iso()
            job = TrainingJob(
                model_name=model_name.strip(),
                model_id=request_id,
                lora_id=request_id,
                request_id=request_id,
                training_config=config,
                status="training",
                created_at=now,
                updated_at=now,
                remote_status="IN_QUEUE",
                training_data=[ex.model_copy(update={"image_data": None}) for ex in examples],
            )
            with self.session.store.lock:
                self.session.models.upsert(job)
                self.session.set_current_training(job)
            self._write_request(job, archive_url, steps, options)

        self.scheduler.start(request_id, self.tick)
        return job

    def _write_request(self, job: TrainingJob, archive_url: str, steps: int, options: Dict[str, Any]):
        path = self.get_job_request_path(job.request_id)
        payload = {
            "model_name": job.model_name,
            "archive_url": archive_url,
            "steps": steps,
            "options": options,
            "training_config": job.training_config.to_json(),
            "created_at": job.created_at,
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        except OSError as e:
            logger.error("[JOB %s] Could not write %s: %s", job.request_id, path, e)

    def _write_logs(self, job_id: str, lines: List[str]):
        # the remote returns the full log every time, so the file is rewritten
        if not lines:
            return
        path = self.get_job_log_path(job_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as e:
            logger.error("[JOB %s] Could not write %s: %s", job_id, path, e)

    def job_logs(self, job_id: str) -> List[str]:
        path = self.get_job_log_path(job_id)
        if not path.exists():
            return []
        try:
            return path.read_text(encoding="utf-8", errors="ignore").splitlines()
        except OSError as e:
            logger.error("[JOB %s] Could not read %s: %s", job_id, path, e)
            return []

    def _progress(self, job: TrainingJob) -> float:
        try:
            started = datetime.fromisoformat(job.created_at).timestamp()
        except ValueError:
            return job.progress
        estimate = estimate_progress(
            self.clock() - started,
            job.training_config,
            self.settings.seconds_per_step,
            self.settings.max_progress,
        )
        return max(job.progress, estimate)

    def tick(self, job_id: str) -> Optional[TrainingJob]:
        """Run one poll step for ``job_id`` and persist whatever changed."""
        with self._job_lock(job_id):
            job = self.get(job_id)
            if job is None:
                logger.warning("Poll for unknown job %s", job_id)
                return None
            if job.is_terminal:
                return job

            try:
                status = self.remote.poll_status(job_id)
            except RemoteStatusError as e:
                logger.warning("[JOB %s] Status check failed: %s", job_id, e)
                return job

            job = job.model_copy(deep=True)
            job.remote_status = status.raw_status
            self._write_logs(job_id, status.logs)

            if isinstance(status, Completed):
                try:
                    result = self.remote.fetch_result(job_id)
                except RemoteResultError as e:
                    logger.error("[JOB %s] Completed but result unavailable: %s", job_id, e)
                    job.warning = f"Could not get training result: {e}"
                    job.progress = self._progress(job)
                else:
                    job.status = "completed"
                    job.adapter_url = result.adapter_file_url
                    job.model_id = result.adapter_file_url
                    job.lora_id = result.adapter_file_url
                    job.progress = 100.0
                    job.warning = None
                    logger.info("[JOB %s] Completed. Adapter: %s", job_id, result.adapter_file_url)
            elif isinstance(status, Failed):
                job.status = "failed"
                job.error = status.error or "Training failed"
                logger.error("[JOB %s] Failed: %s", job_id, job.error)
            else:
                if isinstance(status, Unknown):
                    logger.warning("[JOB %s] Unrecognised remote status %r", job_id, status.raw_status)
                job.progress = self._progress(job)

            self._save(job)

        if job.is_terminal:
            self.scheduler.stop(job_id)
            self._enforce_retention(max_keep=self.settings.max_job_dirs)
        return job

    def recover(self) -> List[str]:
        """Resume polling for every job the store still has in training."""
        pending: Dict[str, TrainingJob] = {}
        current = self.session.current_training
        if current is not None:
            stored = self.session.models.get(current.request_id)
            if stored is None:
                self.session.models.upsert(current)
            elif stored.status != current.status:
                self.session.set_current_training(stored)
                current = stored
            if current.status == "training":
                pending[current.request_id] = current
        for job in self.session.models.in_training():
            pending.setdefault(job.request_id, job)

        for job_id in pending:
            logger.info("Resuming poll for %s", job_id)
            self.scheduler.start(job_id, self.tick)
        return list(pending)

    def status_payload(self, job: TrainingJob) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": job.status,
            "falStatus": job.remote_status,
            "progress": round(job.progress, 1),
            "logs": self.job_logs(job.request_id),
        }
        if job.status == "completed":
            payload["result"] = {"modelId": job.model_id, "loraId": job.lora_id}
        if job.warning:
            payload["warning"] = job.warning
        if job.error:
            payload["error"] = job.error
        return payload

    def shutdown(self):
        self.scheduler.stop_all()

    # Retention: keep only the most recent N job folders, never deleting active ones
    def _enforce_retention(self, max_keep: int = 6):
        jobs_root = self.base_dir / "jobs"
        if not jobs_root.exists():
            return
        entries = [p for p in jobs_root.iterdir() if p.is_dir()]
        if len(entries) <= max_keep:
            return

        active_ids = {j.request_id for j in self.session.models.in_training()}
        entries.sort(key=lambda p: p.stat().st_mtime, reverse=True)

        keep = set(active_ids)
        for p in entries:
            if len(keep) >= max_keep:
                break
            keep.add(p.name)

        for p in entries:
            if p.name in keep:
                continue
            try:
                shutil.rmtree(p)
                logger.info("[RETENTION] Removed old job folder: %s", p)
            except OSError as e:
                logger.error("[RETENTION] Failed to remove %s: %s", p, e)
