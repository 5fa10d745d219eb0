from datetime import datetime, timezone
from typing import Optional, List, Literal
import uuid

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


TrainingStatus = Literal["training", "completed", "failed"]
ContentType = Literal["image", "video"]
TabType = Literal["data", "training", "generation"]

TABS = ("data", "training", "generation")
TERMINAL_STATUSES = ("completed", "failed")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


class Record(BaseModel):
    # camelCase on the wire, snake_case in Python; either spelling is accepted.
    # NaN/inf are refused: they cannot be written back out as JSON.
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
        allow_inf_nan=False,
    )

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class TrainingConfig(Record):
    epochs: int
    learning_rate: float
    batch_size: int
    resolution: int
    image_count: int = 0


class ImageMeta(Record):
    name: str
    size: int
    type: str
    last_modified: Optional[int] = None


class TrainingExample(Record):
    id: str = Field(default_factory=new_id)
    image: Optional[ImageMeta] = None
    image_url: str = ""
    description: str = ""
    # never persisted; gone after a store round trip
    image_data: Optional[bytes] = Field(default=None, exclude=True, repr=False)


class TrainingJob(Record):
    model_name: str
    model_id: str
    lora_id: str
    request_id: str
    training_config: TrainingConfig
    status: TrainingStatus = "training"
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    adapter_url: Optional[str] = None
    progress: float = 0.0
    error: Optional[str] = None
    warning: Optional[str] = None
    remote_status: Optional[str] = None
    training_data: List[TrainingExample] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class GenerationConfig(Record):
    steps: int = 20
    guidance_scale: float = 7.5
    width: int = 512
    height: int = 512
    seed: int = -1


class GeneratedArtifact(Record):
    id: str = Field(default_factory=new_id)
    type: ContentType
    url: str
    prompt: str
    negative_prompt: str = ""
    config: GenerationConfig = Field(default_factory=GenerationConfig)
    result_seed: Optional[int] = None
    model_id: str
    created_at: str = Field(default_factory=utc_now_iso)
    filename: str = ""


class GenerationRequest(Record):
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None
    steps: Optional[int] = None
    guidance_scale: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    seed: Optional[int] = None
    type: Optional[str] = None
    model_id: Optional[str] = None
    lora_id: Optional[str] = None


class SessionSummary(Record):
    training_images: int
    trained_models: int
    generated_items: int
    active_tab: str
    current_training: Optional[TrainingJob] = None


class ActiveTabUpdate(Record):
    tab: str


class DescriptionUpdate(Record):
    description: str
