import logging
from typing import List, Optional

from .schemas import GeneratedArtifact, TrainingJob
from .store import PersistentStore

logger = logging.getLogger(__name__)


class ContentCatalog:
    """Generated images/videos in insertion order, persisted on every change."""

    def __init__(self, store: PersistentStore):
        self.store = store
        self.items: List[GeneratedArtifact] = []

    def load(self) -> List[GeneratedArtifact]:
        self.items = self.store.load_generated_content()
        return self.items

    def _persist(self):
        self.store.save_generated_content(self.items)

    def add(self, artifact: GeneratedArtifact) -> GeneratedArtifact:
        with self.store.lock:
            self.items.append(artifact)
            self._persist()
        logger.info("Added %s %s", artifact.type, artifact.id)
        return artifact

    def remove(self, artifact_id: str) -> bool:
        with self.store.lock:
            kept = [a for a in self.items if a.id != artifact_id]
            if len(kept) == len(self.items):
                return False
            self.items = kept
            self._persist()
        logger.info("Removed content %s", artifact_id)
        return True

    def get(self, artifact_id: str) -> Optional[GeneratedArtifact]:
        for a in self.items:
            if a.id == artifact_id:
                return a
        return None

    def list(self) -> List[GeneratedArtifact]:
        return list(self.items)

    def recent(self, n: int = 10) -> List[GeneratedArtifact]:
        return list(reversed(self.items))[: max(0, n)]

    def clear(self):
        with self.store.lock:
            self.items = []
            self._persist()

    def __len__(self):
        return len(self.items)


class ModelCatalog:
    """Trained models keyed by the remote request id."""

    def __init__(self, store: PersistentStore):
        self.store = store
        self.items: List[TrainingJob] = []

    def load(self) -> List[TrainingJob]:
        self.items = self.store.load_trained_models()
        return self.items

    def _persist(self):
        self.store.save_trained_models(self.items)

    def upsert(self, job: TrainingJob) -> TrainingJob:
        with self.store.lock:
            for i, existing in enumerate(self.items):
                if existing.request_id == job.request_id:
                    self.items[i] = job
                    break
            else:
                self.items.append(job)
            self._persist()
        return job

    def get(self, request_id: str) -> Optional[TrainingJob]:
        for m in self.items:
            if m.request_id == request_id:
                return m
        return None

    def find_by_model_id(self, model_id: str) -> Optional[TrainingJob]:
        for m in self.items:
            if model_id in (m.model_id, m.request_id):
                return m
        return None

    def remove(self, request_id: str) -> bool:
        with self.store.lock:
            kept = [m for m in self.items if m.request_id != request_id and m.model_id != request_id]
            if len(kept) == len(self.items):
                return False
            self.items = kept
            self._persist()
        return True

    def list(self) -> List[TrainingJob]:
        return list(self.items)

    def in_training(self) -> List[TrainingJob]:
        return [m for m in self.items if m.status == "training"]

    def latest_completed(self) -> Optional[TrainingJob]:
        for m in reversed(self.items):
            if m.status == "completed":
                return m
        return None

    def clear(self):
        with self.store.lock:
            self.items = []
            self._persist()

    def __len__(self):
        return len(self.items)
