import logging
from typing import Any, Dict, Optional

from ..catalog import ModelCatalog
from ..config import Settings
from ..errors import RemoteError, RemoteGenerationError, ValidationError
from ..remote import RemoteJobClient
from ..schemas import GeneratedArtifact, GenerationConfig, GenerationRequest

logger = logging.getLogger(__name__)

RANDOM_SEED = -1
DEFAULT_NEGATIVE_PROMPT = "blurry, low quality, distorted, deformed"
VIDEO_FRAMES = 16
VIDEO_FPS = 8


def _first_image_url(images: Any) -> Optional[str]:
    if not images:
        return None
    first = images[0]
    if isinstance(first, dict):
        return first.get("url")
    return str(first) if first else None


class GenerationManager:
    """Stateless translation between a generation form and the inference API."""

    def __init__(self, remote: RemoteJobClient, settings: Settings, models: Optional[ModelCatalog] = None):
        self.remote = remote
        self.settings = settings
        self.models = models

    def validate(self, req: GenerationRequest):
        if not req.prompt or not req.prompt.strip() or not req.type or not req.model_id or not req.lora_id:
            raise ValidationError("Missing required generation parameters")
        if req.type not in ("image", "video"):
            raise ValidationError('Invalid content type. Must be "image" or "video"')
        if self.models is not None:
            known = self.models.find_by_model_id(req.model_id)
            if known is not None and known.status != "completed":
                raise ValidationError(f"Model {known.model_name} has not finished training")

    def build_config(self, req: GenerationRequest) -> GenerationConfig:
        defaults = GenerationConfig()
        return GenerationConfig(
            steps=req.steps or defaults.steps,
            guidance_scale=req.guidance_scale or defaults.guidance_scale,
            width=req.width or defaults.width,
            height=req.height or defaults.height,
            seed=RANDOM_SEED if req.seed is None else req.seed,
        )

    def build_arguments(self, req: GenerationRequest, config: GenerationConfig) -> Dict[str, Any]:
        args: Dict[str, Any] = {
            "prompt": req.prompt,
            "negative_prompt": req.negative_prompt or DEFAULT_NEGATIVE_PROMPT,
            "num_inference_steps": config.steps,
            "guidance_scale": config.guidance_scale,
            "image_size": {"width": config.width, "height": config.height},
            "loras": [{"path": req.lora_id, "scale": self.settings.lora_scale}],
        }
        # -1 lets the remote service pick a random seed
        if config.seed != RANDOM_SEED:
            args["seed"] = config.seed
        if req.type == "video":
            args["num_frames"] = VIDEO_FRAMES
            args["fps"] = VIDEO_FPS
        else:
            args["num_images"] = 1
        return args

    def generate(self, req: GenerationRequest) -> GeneratedArtifact:
        artifact, _ = self.generate_with_response(req)
        return artifact

    def generate_with_response(self, req: GenerationRequest):
        self.validate(req)
        config = self.build_config(req)
        args = self.build_arguments(req, config)
        endpoint = self.settings.video_endpoint if req.type == "video" else self.settings.image_endpoint

        logger.info("Generating %s with %s (seed=%s)", req.type, endpoint, args.get("seed", "random"))
        try:
            raw = self.remote.run(endpoint, args)
        except RemoteError as e:
            logger.error("Generation error: %s", e)
            raise RemoteGenerationError(str(e)) from e

        if req.type == "video":
            video = raw.get("video") or {}
            url = video.get("url") if isinstance(video, dict) else None
            filename = "generated-video.mp4"
        else:
            url = _first_image_url(raw.get("images"))
            filename = "generated-image.png"
        if not url:
            raise RemoteGenerationError(f"Inference response has no {req.type} url")

        artifact = GeneratedArtifact(
            type=req.type,
            url=url,
            prompt=req.prompt,
            negative_prompt=args["negative_prompt"],
            config=config,
            result_seed=raw.get("seed"),
            model_id=req.model_id,
            filename=filename,
        )
        return artifact, raw

    @staticmethod
    def response_payload(artifact: GeneratedArtifact, raw: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": True,
            "type": artifact.type,
            "seed": raw.get("seed"),
            "prompt": artifact.prompt,
            "content": artifact.to_json(),
        }
        if artifact.type == "video":
            video = raw.get("video") or {}
            payload["video"] = {
                "url": artifact.url,
                "duration": video.get("duration") or 2,
                "fps": video.get("fps") or VIDEO_FPS,
            }
        else:
            payload["images"] = raw.get("images") or [{"url": artifact.url}]
        return payload
