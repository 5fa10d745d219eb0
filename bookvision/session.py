import logging
from typing import List, Optional

from .assets import AssetStore, sniff_image
from .catalog import ContentCatalog, ModelCatalog
from .errors import NotFoundError, ValidationError
from .schemas import TABS, ImageMeta, SessionSummary, TrainingExample, TrainingJob
from .store import PersistentStore

logger = logging.getLogger(__name__)


class Session:
    """Session-scoped state: examples, catalogs, tab and the in-flight job.

    Nothing is loaded until ``initialize()`` is called; the training manager's
    ``recover()`` is expected to run right after it.
    """

    def __init__(self, store: PersistentStore, assets: Optional[AssetStore] = None):
        self.store = store
        self.assets = assets
        self.models = ModelCatalog(store)
        self.content = ContentCatalog(store)
        self.training_data: List[TrainingExample] = []
        self.active_tab = "data"
        self.current_training: Optional[TrainingJob] = None

    def initialize(self):
        self.training_data = self.store.load_training_data()
        self.models.load()
        self.content.load()
        self.active_tab = self.store.load_active_tab()
        self.current_training = self.store.load_current_training()
        logger.info(
            "Session loaded: %d examples, %d models, %d generated items",
            len(self.training_data), len(self.models), len(self.content),
        )

    # Current training
    def set_current_training(self, job: Optional[TrainingJob]):
        with self.store.lock:
            self.current_training = job
            self.store.save_current_training(job)

    def is_training(self) -> bool:
        return self.current_training is not None and self.current_training.status == "training"

    def selected_model(self) -> Optional[TrainingJob]:
        return self.models.latest_completed()

    # Training examples
    def examples(self) -> List[TrainingExample]:
        return list(self.training_data)

    def _persist_examples(self):
        self.store.save_training_data(self.training_data)

    def add_example(self, data: bytes, filename: str, content_type: str = "", description: str = "") -> TrainingExample:
        mime = sniff_image(data)
        url = self.assets.save_upload(data, filename) if self.assets is not None else ""
        example = TrainingExample(
            image=ImageMeta(name=filename, size=len(data), type=content_type or mime),
            image_url=url,
            description=description,
            image_data=data,
        )
        with self.store.lock:
            self.training_data.append(example)
            self._persist_examples()
        return example

    def update_description(self, example_id: str, description: str) -> TrainingExample:
        with self.store.lock:
            for ex in self.training_data:
                if ex.id == example_id:
                    ex.description = description
                    self._persist_examples()
                    return ex
        raise NotFoundError(f"Unknown example {example_id}")

    def remove_example(self, example_id: str) -> bool:
        with self.store.lock:
            for ex in self.training_data:
                if ex.id == example_id:
                    self.training_data.remove(ex)
                    self._persist_examples()
                    if self.assets is not None:
                        self.assets.delete_upload(ex.image_url)
                    return True
        return False

    def clear_examples(self):
        with self.store.lock:
            for ex in self.training_data:
                if self.assets is not None:
                    self.assets.delete_upload(ex.image_url)
            self.training_data = []
            self._persist_examples()

    # Tabs
    def set_active_tab(self, tab: str):
        if tab not in TABS:
            raise ValidationError(f"Unknown tab: {tab}")
        self.active_tab = tab
        self.store.save_active_tab(tab)

    def summary(self) -> SessionSummary:
        return SessionSummary(
            training_images=len(self.training_data),
            trained_models=len(self.models),
            generated_items=len(self.content),
            active_tab=self.active_tab,
            current_training=self.current_training,
        )

    def clear_all(self):
        with self.store.lock:
            self.store.clear_all_data()
            self.training_data = []
            self.models.items = []
            self.content.items = []
            self.active_tab = "data"
            self.current_training = None
        logger.info("Cleared all session data")
