import math
from typing import Sequence

from ..config import Settings
from ..errors import ValidationError
from ..schemas import TrainingConfig, TrainingExample


def validate_config(model_name: str, config: TrainingConfig):
    if not model_name or not model_name.strip():
        raise ValidationError("Model name is required")
    for name in ("epochs", "learning_rate", "batch_size", "resolution"):
        value = getattr(config, name)
        if value is None or not math.isfinite(value) or value <= 0:
            raise ValidationError(f"{name} must be a positive number")


def validate_examples(examples: Sequence[TrainingExample], settings: Settings):
    if len(examples) < settings.min_examples:
        raise ValidationError(
            f"At least {settings.min_examples} images are required, got {len(examples)}"
        )
    for i, ex in enumerate(examples):
        text = (ex.description or "").strip()
        if len(text) < settings.min_description_length:
            raise ValidationError(
                f"Description for image {i} must be at least {settings.min_description_length} characters long"
            )
        if len(text) > settings.max_description_length:
            raise ValidationError(
                f"Description for image {i} must be less than {settings.max_description_length} characters"
            )
        if not ex.image_data:
            raise ValidationError(f"Image data for example {i} is not available; upload it again")
