import logging
import math
import os
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.datastructures import UploadFile as StarletteUploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

from .assets import AssetStore, content_type_for  # noqa: E402
from .config import Settings  # noqa: E402
from .errors import NotFoundError, RemoteError, TrainingConflictError, ValidationError  # noqa: E402
from .generation.manager import GenerationManager  # noqa: E402
from .remote import RemoteJobClient  # noqa: E402
from .schemas import (  # noqa: E402
    ActiveTabUpdate,
    DescriptionUpdate,
    GeneratedArtifact,
    GenerationRequest,
    ImageMeta,
    TrainingConfig,
    TrainingExample,
    TrainingJob,
    utc_now_iso,
)
from .session import Session  # noqa: E402
from .store import PersistentStore  # noqa: E402
from .training.archive import decode_data_url, extension_for  # noqa: E402
from .training.manager import TrainingManager  # noqa: E402
from .training.poller import PollScheduler  # noqa: E402

TRAINING_FAILED = "Training failed. Please try again."
GENERATION_FAILED = "Generation failed. Please try again."


@dataclass
class Services:
    settings: Settings
    store: PersistentStore
    assets: AssetStore
    session: Session
    remote: RemoteJobClient
    training: TrainingManager
    generation: GenerationManager


def build_services(
    settings: Optional[Settings] = None,
    remote: Optional[RemoteJobClient] = None,
    scheduler: Optional[PollScheduler] = None,
) -> Services:
    settings = settings or Settings()
    os.makedirs(settings.data_dir, exist_ok=True)
    store = PersistentStore(settings.data_dir, namespace=settings.storage_namespace)
    assets = AssetStore(settings.data_dir)
    session = Session(store, assets)
    remote = remote or RemoteJobClient(settings)
    training = TrainingManager(session, remote, settings, scheduler=scheduler)
    generation = GenerationManager(remote, settings, models=session.models)
    return Services(settings, store, assets, session, remote, training, generation)


def services_of(request: Request) -> Services:
    return request.app.state.services


api = APIRouter()


def _form_number(form, name: str, cast):
    raw = form.get(name)
    if raw is None or str(raw).strip() == "":
        raise ValidationError("Missing required training parameters")
    try:
        value = cast(str(raw))
    except ValueError as e:
        raise ValidationError(f"Invalid value for {name}: {raw!r}") from e
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be a positive number")
    return value


async def _examples_from_form(form, image_count: int):
    examples = []
    for i in range(image_count):
        description = str(form.get(f"description_{i}") or "")
        upload = form.get(f"image_{i}")
        if isinstance(upload, StarletteUploadFile):
            data = await upload.read()
            mime = upload.content_type or "image/png"
            name = upload.filename or f"image{i}.{extension_for(mime)}"
        else:
            image_url = form.get(f"image_url_{i}")
            if not image_url:
                raise ValidationError(f"Missing image for example {i}")
            try:
                mime, data = decode_data_url(str(image_url))
            except ValidationError as e:
                raise ValidationError(f"Invalid data URL format for image {i}") from e
            name = f"image{i}.{extension_for(mime)}"
        examples.append(
            TrainingExample(
                image=ImageMeta(name=name, size=len(data), type=mime),
                description=description,
                image_data=data,
            )
        )
    return examples


@api.post("/train-model")
async def train_model(request: Request):
    """
    Start a LoRA training job from a multipart form.

    Fields: model_name, epochs, learning_rate, batch_size, resolution,
    image_count, then image_url_{i} (data URL) or image_{i} (file) plus
    description_{i} for each example.
    """
    svc = services_of(request)
    form = await request.form()
    model_name = str(form.get("model_name") or "")
    config = TrainingConfig(
        epochs=_form_number(form, "epochs", int),
        learning_rate=_form_number(form, "learning_rate", float),
        batch_size=_form_number(form, "batch_size", int),
        resolution=_form_number(form, "resolution", int),
        image_count=_form_number(form, "image_count", int),
    )
    if config.image_count < 0:
        raise ValidationError("image_count must not be negative")
    examples = await _examples_from_form(form, config.image_count)
    logger.info("Received training request: model_name=%s, images=%d", model_name, len(examples))

    try:
        job = svc.training.start_training(model_name, config, examples)
    except RemoteError as e:
        logger.error("Training error: %s", e)
        return JSONResponse({"error": TRAINING_FAILED}, status_code=500)

    return {
        "success": True,
        "modelName": job.model_name,
        "modelId": job.model_id,
        "loraId": job.lora_id,
        "requestId": job.request_id,
        "trainingConfig": job.training_config.to_json(),
        "status": job.status,
        "message": "LoRA training started successfully",
    }


@api.get("/training-status")
def training_status(request: Request, requestId: Optional[str] = None):
    if not requestId:
        raise ValidationError("Missing requestId parameter")
    svc = services_of(request)
    job = svc.training.tick(requestId)
    if job is None:
        raise NotFoundError(f"Unknown requestId {requestId}")
    return svc.training.status_payload(job)


@api.get("/logs/{job_id}", response_class=PlainTextResponse)
def logs(request: Request, job_id: str, tail: int = 2000):
    path = services_of(request).training.get_job_log_path(job_id)
    if not path.exists():
        raise HTTPException(status_code=404, detail="No logs for job")
    data = path.read_text(encoding="utf-8", errors="ignore")
    if tail > 0 and len(data) > tail:
        return data[-tail:]
    return data


@api.post("/generate-content")
def generate_content(request: Request, body: GenerationRequest):
    svc = services_of(request)
    try:
        artifact, raw = svc.generation.generate_with_response(body)
    except RemoteError:
        return JSONResponse({"error": GENERATION_FAILED}, status_code=500)
    svc.session.content.add(artifact)
    return svc.generation.response_payload(artifact, raw)


@api.get("/storage")
def storage_list(request: Request, type: Optional[str] = None):
    session = services_of(request).session
    if type == "models":
        return {"models": [m.to_json() for m in session.models.list()]}
    if type == "content":
        return {"content": [c.to_json() for c in session.content.list()]}
    raise ValidationError("Invalid type parameter")


@api.post("/storage")
async def storage_save(request: Request, type: Optional[str] = None):
    session = services_of(request).session
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Body must be valid JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Body must be a JSON object")
    body = {**body, "createdAt": utc_now_iso()}
    try:
        if type == "model":
            model = session.models.upsert(TrainingJob.model_validate(body))
            return {"success": True, "model": model.to_json()}
        if type == "content":
            content = session.content.add(GeneratedArtifact.model_validate(body))
            return {"success": True, "content": content.to_json()}
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {type} record: {e.error_count()} field error(s)") from e
    raise ValidationError("Invalid type parameter")


@api.delete("/storage")
def storage_delete(request: Request, type: Optional[str] = None, id: Optional[str] = None):
    if not id:
        raise ValidationError("ID parameter required")
    session = services_of(request).session
    if type == "model":
        removed = session.models.remove(id)
    elif type == "content":
        removed = session.content.remove(id)
    else:
        raise ValidationError("Invalid type parameter")
    if not removed:
        raise NotFoundError(f"Unknown {type} {id}")
    return {"success": True}


@api.get("/training-data")
def list_training_data(request: Request):
    return {"trainingData": [e.to_json() for e in services_of(request).session.examples()]}


@api.post("/training-data")
async def add_training_data(
    request: Request,
    image: UploadFile = File(...),
    description: str = Form(""),
):
    data = await image.read()
    example = services_of(request).session.add_example(
        data, image.filename or "image.png", image.content_type or "", description
    )
    return example.to_json()


@api.patch("/training-data/{example_id}")
def update_training_data(request: Request, example_id: str, body: DescriptionUpdate):
    return services_of(request).session.update_description(example_id, body.description).to_json()


@api.delete("/training-data/{example_id}")
def remove_training_data(request: Request, example_id: str):
    if not services_of(request).session.remove_example(example_id):
        raise NotFoundError(f"Unknown example {example_id}")
    return {"success": True}


@api.delete("/training-data")
def clear_training_data(request: Request):
    services_of(request).session.clear_examples()
    return {"success": True}


@api.get("/session")
def session_summary(request: Request):
    return services_of(request).session.summary().to_json()


@api.put("/session/active-tab")
def set_active_tab(request: Request, body: ActiveTabUpdate):
    session = services_of(request).session
    session.set_active_tab(body.tab)
    return {"activeTab": session.active_tab}


@api.delete("/session")
def clear_session(request: Request):
    services_of(request).session.clear_all()
    return {"success": True}


@api.get("/uploads/{filename:path}")
def uploads(request: Request, filename: str):
    path = services_of(request).assets.resolve(filename)
    if path is None:
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(
        str(path),
        media_type=content_type_for(filename),
        headers={"Cache-Control": "public, max-age=31536000"},
    )


def _describe_validation(errors) -> str:
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "Invalid request: " + "; ".join(parts) if parts else "Invalid request"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def create_app(
    settings: Optional[Settings] = None,
    remote: Optional[RemoteJobClient] = None,
    scheduler: Optional[PollScheduler] = None,
) -> FastAPI:
    services = build_services(settings, remote, scheduler)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Book Vision service")
        services.session.initialize()
        resumed = services.training.recover()
        if resumed:
            logger.info("Resumed polling for %d training job(s)", len(resumed))
        if services.settings.asset_max_age_days > 0:
            services.assets.cleanup_old_files(services.settings.asset_max_age_days * 24 * 60 * 60)
        yield
        services.training.shutdown()
        logger.info("Service shutdown completed")

    app = FastAPI(title="Book Vision API", version="0.1.0", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TrainingConflictError)
    async def _conflict(request: Request, exc: TrainingConflictError):
        return _error(409, str(exc))

    @app.exception_handler(ValidationError)
    async def _invalid(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError):
        return _error(400, _describe_validation(exc.errors()))

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(StarletteHTTPException)
    async def _http(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.get("/health")
    def health():
        return {
            "status": "healthy",
            "timestamp": utc_now_iso(),
            "polling": services.training.scheduler.active(),
        }

    app.include_router(api, prefix="/api")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")), log_config=None)
