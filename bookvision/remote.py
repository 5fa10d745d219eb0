"""Thin client for the fal.ai storage, queue and synchronous run APIs."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import requests

from .config import Settings
from .errors import (
    RemoteError,
    RemoteGenerationError,
    RemoteResultError,
    RemoteStatusError,
    RemoteSubmissionError,
)
from .schemas import TrainingExample
from .training.archive import build_archive

logger = logging.getLogger(__name__)


@dataclass
class Queued:
    position: Optional[int] = None
    logs: List[str] = field(default_factory=list)
    raw_status: str = "IN_QUEUE"


@dataclass
class InProgress:
    logs: List[str] = field(default_factory=list)
    raw_status: str = "IN_PROGRESS"


@dataclass
class Completed:
    logs: List[str] = field(default_factory=list)
    raw_status: str = "COMPLETED"


@dataclass
class Failed:
    error: str = ""
    logs: List[str] = field(default_factory=list)
    raw_status: str = "FAILED"


@dataclass
class Unknown:
    raw_status: str = ""
    logs: List[str] = field(default_factory=list)


RemoteStatus = Union[Queued, InProgress, Completed, Failed, Unknown]

FAILED_STATES = {"FAILED", "ERROR", "CANCELLED", "CANCELED"}


@dataclass
class TrainingResult:
    adapter_file_url: str
    config_file_url: Optional[str] = None


def app_root(endpoint: str) -> str:
    """Queue request urls live under owner/alias only, without any sub-path."""
    parts = endpoint.strip("/").split("/")
    return "/".join(parts[:2])


def _log_lines(payload: Dict[str, Any]) -> List[str]:
    lines = []
    for entry in payload.get("logs") or []:
        if isinstance(entry, dict):
            msg = entry.get("message")
            if msg:
                lines.append(str(msg))
        elif entry:
            lines.append(str(entry))
    return lines


def decode_status(payload: Dict[str, Any]) -> RemoteStatus:
    raw = str(payload.get("status") or "").upper()
    logs = _log_lines(payload)
    if raw in ("IN_QUEUE", "QUEUED"):
        return Queued(position=payload.get("queue_position"), logs=logs, raw_status=raw)
    if raw == "IN_PROGRESS":
        return InProgress(logs=logs, raw_status=raw)
    if raw == "COMPLETED":
        if payload.get("error"):
            return Failed(error=str(payload["error"]), logs=logs, raw_status=raw)
        return Completed(logs=logs, raw_status=raw)
    if raw in FAILED_STATES:
        return Failed(error=str(payload.get("error") or raw), logs=logs, raw_status=raw)
    return Unknown(raw_status=raw, logs=logs)


def decode_result(payload: Any) -> TrainingResult:
    data = payload.get("data", payload) if isinstance(payload, dict) else None
    lora = data.get("diffusers_lora_file") if isinstance(data, dict) else None
    url = lora.get("url") if isinstance(lora, dict) else None
    if not url:
        raise RemoteResultError("Training result has no diffusers_lora_file.url")
    config_file = data.get("config_file")
    return TrainingResult(
        adapter_file_url=url,
        config_file_url=config_file.get("url") if isinstance(config_file, dict) else None,
    )


class RemoteJobClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.http = session or requests.Session()

    def _headers(self, error_cls=RemoteError) -> Dict[str, str]:
        if not self.settings.fal_key:
            raise error_cls("FAL_KEY environment variable is not set")
        return {"Authorization": f"Key {self.settings.fal_key}"}

    def _request(self, method: str, url: str, error_cls, **kwargs) -> requests.Response:
        headers = {**self._headers(error_cls), **kwargs.pop("headers", {})}
        try:
            r = self.http.request(method, url, headers=headers, timeout=self.settings.request_timeout, **kwargs)
        except requests.RequestException as e:
            raise error_cls(f"{method} {url} failed: {e}") from e
        return r

    def _json(self, r: requests.Response, error_cls) -> Any:
        try:
            r.raise_for_status()
            return r.json()
        except requests.HTTPError as e:
            raise error_cls(f"Remote returned {r.status_code}: {r.text[:200]}") from e
        except ValueError as e:
            raise error_cls(f"Remote returned invalid JSON: {e}") from e

    # Storage
    def upload_archive(self, examples: Sequence[TrainingExample]) -> str:
        archive = build_archive(examples)
        initiate = self._request(
            "POST",
            f"{self.settings.storage_url}/storage/upload/initiate",
            RemoteSubmissionError,
            params={"storage_type": "fal-cdn-v3"},
            json={"content_type": "application/zip", "file_name": "training_data.zip"},
        )
        info = self._json(initiate, RemoteSubmissionError)
        upload_url = info.get("upload_url") if isinstance(info, dict) else None
        file_url = info.get("file_url") if isinstance(info, dict) else None
        if not upload_url or not file_url:
            raise RemoteSubmissionError("Storage upload initiate returned no upload_url/file_url")
        try:
            put = self.http.put(
                upload_url,
                data=archive,
                headers={"Content-Type": "application/zip"},
                timeout=self.settings.request_timeout,
            )
            put.raise_for_status()
        except requests.RequestException as e:
            raise RemoteSubmissionError(f"Archive upload failed: {e}") from e
        logger.info("Uploaded training archive (%d bytes) to %s", len(archive), file_url)
        return file_url

    # Queue
    def submit_training(self, archive_url: str, steps: int, **options) -> str:
        body = {
            "images_data_url": archive_url,
            "steps": int(steps),
            "create_masks": True,
            "is_style": False,
        }
        body.update({k: v for k, v in options.items() if v is not None})
        r = self._request(
            "POST", f"{self.settings.queue_url}/{self.settings.training_endpoint}", RemoteSubmissionError, json=body
        )
        data = self._json(r, RemoteSubmissionError)
        request_id = data.get("request_id") if isinstance(data, dict) else None
        if not request_id:
            raise RemoteSubmissionError("Queue submit returned no request_id")
        logger.info("Submitted training request %s (%d steps)", request_id, steps)
        return str(request_id)

    def poll_status(self, request_id: str) -> RemoteStatus:
        root = app_root(self.settings.training_endpoint)
        r = self._request(
            "GET",
            f"{self.settings.queue_url}/{root}/requests/{request_id}/status",
            RemoteStatusError,
            params={"logs": 1},
        )
        if r.status_code == 404:
            return Failed(error=f"Remote job {request_id} not found", raw_status="NOT_FOUND")
        data = self._json(r, RemoteStatusError)
        if not isinstance(data, dict):
            raise RemoteStatusError("Status payload is not an object")
        return decode_status(data)

    def fetch_result(self, request_id: str) -> TrainingResult:
        root = app_root(self.settings.training_endpoint)
        r = self._request("GET", f"{self.settings.queue_url}/{root}/requests/{request_id}", RemoteResultError)
        return decode_result(self._json(r, RemoteResultError))

    # Synchronous inference
    def run(self, endpoint: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        r = self._request("POST", f"{self.settings.run_url}/{endpoint}", RemoteGenerationError, json=arguments)
        data = self._json(r, RemoteGenerationError)
        if not isinstance(data, dict):
            raise RemoteGenerationError("Inference payload is not an object")
        return data
