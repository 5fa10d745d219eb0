import json

import pytest

from bookvision.errors import (
    RemoteResultError,
    RemoteStatusError,
    RemoteSubmissionError,
    TrainingConflictError,
    ValidationError,
)
from bookvision.remote import Completed, Failed, InProgress, Queued, TrainingResult, Unknown
from bookvision.schemas import TrainingConfig, TrainingJob
from bookvision.session import Session
from bookvision.training.manager import TrainingManager, estimate_progress

ADAPTER = "https://cdn.test/lora.safetensors"


@pytest.fixture
def config():
    return TrainingConfig(epochs=10, learning_rate=1e-4, batch_size=1, resolution=512)


@pytest.fixture
def manager(session, remote, settings, scheduler, clock):
    remote.upload_archive.return_value = "https://cdn.test/data.zip"
    remote.submit_training.return_value = "req-1"
    return TrainingManager(session, remote, settings, scheduler=scheduler, clock=clock)


def test_estimate_progress_is_capped():
    cfg = TrainingConfig(epochs=2, learning_rate=1e-4, batch_size=1, resolution=512, image_count=10)
    assert estimate_progress(0, cfg, 2.0, 95) == 0
    assert estimate_progress(20, cfg, 2.0, 95) == pytest.approx(50.0)
    assert estimate_progress(10_000, cfg, 2.0, 95) == 95


def test_start_training_persists_job_before_any_poll(manager, remote, session, store, scheduler, make_examples, config):
    job = manager.start_training("three-body", config, make_examples(10))

    assert job.status == "training"
    assert job.request_id == job.model_id == job.lora_id == "req-1"
    assert job.training_config.image_count == 10
    remote.submit_training.assert_called_once_with("https://cdn.test/data.zip", 100)
    remote.poll_status.assert_not_called()
    assert scheduler.started == ["req-1"]

    # visible to a fresh reader of the store
    fresh = Session(store)
    fresh.initialize()
    assert fresh.current_training.request_id == "req-1"
    assert [m.request_id for m in fresh.models.list()] == ["req-1"]
    assert all(ex.image_data is None for ex in fresh.current_training.training_data)

    request = json.loads(manager.get_job_request_path("req-1").read_text())
    assert request["steps"] == 100
    assert request["archive_url"] == "https://cdn.test/data.zip"


def test_too_few_examples_never_reach_remote(manager, remote, session, make_examples, config):
    with pytest.raises(ValidationError, match="10"):
        manager.start_training("three-body", config, make_examples(9))
    remote.upload_archive.assert_not_called()
    remote.submit_training.assert_not_called()
    assert session.current_training is None


@pytest.mark.parametrize("description", ["short", "x" * 501, "   padded   "])
def test_description_length_is_checked(manager, remote, make_examples, config, description):
    with pytest.raises(ValidationError):
        manager.start_training("three-body", config, make_examples(10, description=description))
    remote.submit_training.assert_not_called()


def test_examples_without_bytes_are_rejected(manager, remote, make_examples, config):
    examples = make_examples(10)
    examples[3].image_data = None
    with pytest.raises(ValidationError, match="upload it again"):
        manager.start_training("three-body", config, examples)


@pytest.mark.parametrize("field", ["epochs", "learning_rate", "batch_size", "resolution"])
@pytest.mark.parametrize("value", [0, -1, float("nan"), float("inf")])
def test_non_positive_config_is_rejected(manager, remote, make_examples, config, field, value):
    bad = config.model_copy(update={field: value})
    with pytest.raises(ValidationError, match=field):
        manager.start_training("three-body", bad, make_examples(10))
    remote.upload_archive.assert_not_called()
    remote.submit_training.assert_not_called()


def test_second_training_is_a_conflict(manager, remote, make_examples, config):
    manager.start_training("first", config, make_examples(10))
    with pytest.raises(TrainingConflictError):
        manager.start_training("second", config, make_examples(10))
    assert remote.submit_training.call_count == 1


def test_submission_failure_leaves_no_job(manager, remote, session, make_examples, config):
    remote.submit_training.side_effect = RemoteSubmissionError("503")
    with pytest.raises(RemoteSubmissionError):
        manager.start_training("three-body", config, make_examples(10))
    assert session.current_training is None
    assert session.models.list() == []


def test_progress_is_monotonic_and_below_100(manager, remote, clock, make_examples, config):
    manager.start_training("three-body", config, make_examples(10))
    remote.poll_status.return_value = InProgress(logs=["step"])

    seen = []
    for _ in range(6):
        clock.advance(100)
        seen.append(manager.tick("req-1").progress)

    assert seen == sorted(seen)
    assert all(p < 100 for p in seen)
    assert seen[-1] > 0


def test_completion_fetches_result_once(manager, remote, session, scheduler, make_examples, config):
    manager.start_training("three-body", config, make_examples(10))
    remote.poll_status.return_value = Completed(logs=["done"])
    remote.fetch_result.return_value = TrainingResult(adapter_file_url=ADAPTER)

    job = manager.tick("req-1")
    again = manager.tick("req-1")

    assert remote.fetch_result.call_count == 1
    assert job.status == again.status == "completed"
    assert job.model_id == job.lora_id == job.adapter_url == ADAPTER
    assert job.progress == 100
    assert session.current_training.status == "completed"
    assert session.models.get("req-1").model_id == ADAPTER
    assert scheduler.stopped == ["req-1"]
    assert manager.job_logs("req-1") == ["done"]


def test_result_fetch_failure_keeps_training(manager, remote, session, scheduler, make_examples, config):
    manager.start_training("three-body", config, make_examples(10))
    remote.poll_status.return_value = Completed()
    remote.fetch_result.side_effect = RemoteResultError("no adapter url")

    job = manager.tick("req-1")

    assert job.status == "training"
    assert "no adapter url" in job.warning
    assert session.is_training()
    assert scheduler.stopped == []

    remote.fetch_result.side_effect = None
    remote.fetch_result.return_value = TrainingResult(adapter_file_url=ADAPTER)
    job = manager.tick("req-1")
    assert job.status == "completed"
    assert job.warning is None


def test_remote_failure_marks_job_failed(manager, remote, session, scheduler, make_examples, config):
    manager.start_training("three-body", config, make_examples(10))
    remote.poll_status.return_value = Failed(error="CUDA out of memory")

    job = manager.tick("req-1")

    assert job.status == "failed"
    assert job.error == "CUDA out of memory"
    assert session.models.get("req-1").status == "failed"
    assert not session.is_training()
    assert scheduler.stopped == ["req-1"]
    remote.fetch_result.assert_not_called()


def test_status_check_error_leaves_job_unchanged(manager, remote, make_examples, config):
    manager.start_training("three-body", config, make_examples(10))
    remote.poll_status.side_effect = RemoteStatusError("timeout")

    job = manager.tick("req-1")

    assert job.status == "training"
    assert job.remote_status == "IN_QUEUE"
    assert job.progress == 0


def test_queued_and_unknown_keep_polling(manager, remote, scheduler, make_examples, config):
    manager.start_training("three-body", config, make_examples(10))
    remote.poll_status.return_value = Queued(position=2)
    assert manager.tick("req-1").remote_status == "IN_QUEUE"
    remote.poll_status.return_value = Unknown(raw_status="WARMING_UP")
    assert manager.tick("req-1").remote_status == "WARMING_UP"
    assert scheduler.stopped == []


def test_tick_for_unknown_job(manager, remote):
    assert manager.tick("nope") is None
    remote.poll_status.assert_not_called()


def test_recover_resumes_in_training_jobs(store, remote, settings, scheduler, clock):
    cfg = TrainingConfig(epochs=1, learning_rate=1e-4, batch_size=1, resolution=512, image_count=10)
    training = TrainingJob(model_name="a", model_id="r1", lora_id="r1", request_id="r1", training_config=cfg)
    done = TrainingJob(
        model_name="b", model_id="r2", lora_id="r2", request_id="r2", training_config=cfg, status="completed"
    )
    store.save_trained_models([done])
    store.save_current_training(training)

    session = Session(store)
    session.initialize()
    manager = TrainingManager(session, remote, settings, scheduler=scheduler, clock=clock)

    assert manager.recover() == ["r1"]
    assert scheduler.started == ["r1"]
    assert session.models.get("r1") is not None
    # idempotent
    manager.recover()
    assert scheduler.started == ["r1"]


def test_recover_prefers_catalog_status(store, remote, settings, scheduler, clock):
    cfg = TrainingConfig(epochs=1, learning_rate=1e-4, batch_size=1, resolution=512)
    stale = TrainingJob(model_name="a", model_id="r1", lora_id="r1", request_id="r1", training_config=cfg)
    finished = stale.model_copy(update={"status": "completed"})
    store.save_trained_models([finished])
    store.save_current_training(stale)

    session = Session(store)
    session.initialize()
    manager = TrainingManager(session, remote, settings, scheduler=scheduler, clock=clock)

    assert manager.recover() == []
    assert session.current_training.status == "completed"


def test_status_payload(manager, remote, make_examples, config):
    manager.start_training("three-body", config, make_examples(10))
    remote.poll_status.return_value = Completed(logs=["line 1", "line 2"])
    remote.fetch_result.return_value = TrainingResult(adapter_file_url=ADAPTER)

    payload = manager.status_payload(manager.tick("req-1"))

    assert payload == {
        "status": "completed",
        "falStatus": "COMPLETED",
        "progress": 100.0,
        "logs": ["line 1", "line 2"],
        "result": {"modelId": ADAPTER, "loraId": ADAPTER},
    }


def test_retention_keeps_active_job_dirs(manager, session, make_examples, config):
    manager.start_training("three-body", config, make_examples(10))
    for i in range(5):
        manager.get_job_dir(f"old-{i}").mkdir(parents=True)

    manager._enforce_retention(max_keep=2)

    remaining = {p.name for p in (manager.base_dir / "jobs").iterdir()}
    assert "req-1" in remaining
    assert len(remaining) == 2


def test_job_dir_write_failure_still_records_job(manager, remote, session, scheduler, make_examples, config):
    # a plain file where the job directory should be makes every side-file write fail
    manager.get_job_dir("req-1").write_text("blocked")

    job = manager.start_training("three-body", config, make_examples(10))

    assert job.status == "training"
    assert session.current_training.request_id == "req-1"
    assert session.models.get("req-1").status == "training"
    assert scheduler.started == ["req-1"]

    remote.poll_status.return_value = Failed(error="CUDA out of memory", logs=["oom"])
    job = manager.tick("req-1")

    assert job.status == "failed"
    assert session.models.get("req-1").status == "failed"
    assert manager.status_payload(job)["logs"] == []
