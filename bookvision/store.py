"""JSON key-value store on local disk.

Every value is written as one file under ``<data_dir>/store/<namespace>-<key>.json``.
Loads never raise: a missing, unreadable or corrupt record comes back as the
caller's default, so every load must be treated as possibly empty.
"""
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, List, Optional

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from .errors import PersistenceError
from .schemas import TABS, GeneratedArtifact, TrainingExample, TrainingJob

logger = logging.getLogger(__name__)

TRAINING_DATA = "training-data"
TRAINED_MODELS = "trained-models"
GENERATED_CONTENT = "generated-content"
ACTIVE_TAB = "active-tab"
CURRENT_TRAINING = "current-training"

ALL_KEYS = (TRAINING_DATA, TRAINED_MODELS, GENERATED_CONTENT, ACTIVE_TAB, CURRENT_TRAINING)

_EXAMPLES = TypeAdapter(List[TrainingExample])
_MODELS = TypeAdapter(List[TrainingJob])
_CONTENT = TypeAdapter(List[GeneratedArtifact])


class PersistentStore:
    def __init__(self, base_dir: str, namespace: str = "book-vision"):
        self.base_dir = Path(base_dir).absolute() / "store"
        self.namespace = namespace
        self.lock = threading.RLock()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def namespaced(self, key: str) -> str:
        return f"{self.namespace}-{key}"

    def path_for(self, key: str) -> Path:
        return self.base_dir / f"{self.namespaced(key)}.json"

    # Raw access
    def _write(self, key: str, value: Any):
        path = self.path_for(key)
        tmp = path.with_suffix(".tmp")
        try:
            text = json.dumps(value, indent=2, ensure_ascii=False)
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, path)
        except (TypeError, ValueError, OSError) as e:
            raise PersistenceError(f"Failed to save {self.namespaced(key)}: {e}") from e

    def _read(self, key: str) -> Any:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8") or "null")
        except (ValueError, OSError) as e:
            raise PersistenceError(f"Failed to load {self.namespaced(key)}: {e}") from e

    def save(self, key: str, value: Any) -> bool:
        with self.lock:
            try:
                self._write(key, value)
                return True
            except PersistenceError as e:
                logger.error("%s", e)
                return False

    def load(self, key: str, default: Any = None) -> Any:
        with self.lock:
            try:
                data = self._read(key)
            except PersistenceError as e:
                logger.error("%s", e)
                return default
        return default if data is None else data

    def remove(self, key: str):
        with self.lock:
            try:
                self.path_for(key).unlink(missing_ok=True)
            except OSError as e:
                logger.error("Failed to remove %s: %s", self.namespaced(key), e)

    def clear(self):
        with self.lock:
            for key in ALL_KEYS:
                self.remove(key)

    def _load_typed(self, key: str, adapter: TypeAdapter, default: Any) -> Any:
        data = self.load(key)
        if data is None:
            return default
        try:
            return adapter.validate_python(data)
        except PydanticValidationError as e:
            logger.error("Discarding corrupt record %s: %s", self.namespaced(key), e)
            return default

    # Training examples. Image bytes are dropped; only name/size/type survive.
    def save_training_data(self, examples: List[TrainingExample]) -> bool:
        return self.save(TRAINING_DATA, [e.to_json() for e in examples])

    def load_training_data(self) -> List[TrainingExample]:
        return self._load_typed(TRAINING_DATA, _EXAMPLES, [])

    # Trained models
    def save_trained_models(self, models: List[TrainingJob]) -> bool:
        return self.save(TRAINED_MODELS, [m.to_json() for m in models])

    def load_trained_models(self) -> List[TrainingJob]:
        return self._load_typed(TRAINED_MODELS, _MODELS, [])

    # Generated content
    def save_generated_content(self, content: List[GeneratedArtifact]) -> bool:
        return self.save(GENERATED_CONTENT, [c.to_json() for c in content])

    def load_generated_content(self) -> List[GeneratedArtifact]:
        return self._load_typed(GENERATED_CONTENT, _CONTENT, [])

    # In-flight training snapshot
    def save_current_training(self, job: Optional[TrainingJob]) -> bool:
        return self.save(CURRENT_TRAINING, job.to_json() if job is not None else None)

    def load_current_training(self) -> Optional[TrainingJob]:
        data = self.load(CURRENT_TRAINING)
        if data is None:
            return None
        try:
            return TrainingJob.model_validate(data)
        except PydanticValidationError as e:
            logger.error("Discarding corrupt current training record: %s", e)
            return None

    # Active tab
    def save_active_tab(self, tab: str) -> bool:
        return self.save(ACTIVE_TAB, tab)

    def load_active_tab(self) -> str:
        tab = self.load(ACTIVE_TAB, "data")
        return tab if tab in TABS else "data"

    def clear_all_data(self):
        self.clear()
