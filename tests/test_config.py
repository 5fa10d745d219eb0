import logging

from bookvision.config import Settings


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("FAL_API_KEY", "fallback-key")
    monkeypatch.delenv("FAL_KEY", raising=False)
    monkeypatch.setenv("POLL_INTERVAL", "1.5")
    monkeypatch.setenv("MIN_TRAINING_EXAMPLES", "3")

    settings = Settings()

    assert settings.data_dir == str(tmp_path)
    assert settings.fal_key == "fallback-key"
    assert settings.poll_interval == 1.5
    assert settings.min_examples == 3


def test_video_endpoint_on_image_model_is_flagged(caplog):
    with caplog.at_level(logging.WARNING, logger="bookvision.config"):
        Settings(fal_key="k", image_endpoint="fal-ai/flux-lora", video_endpoint="fal-ai/flux-lora")
    assert any("FAL_VIDEO_ENDPOINT" in r.getMessage() for r in caplog.records)

    caplog.clear()
    with caplog.at_level(logging.WARNING, logger="bookvision.config"):
        Settings(fal_key="k", image_endpoint="fal-ai/flux-lora", video_endpoint="owner/lora-video")
    assert not any("FAL_VIDEO_ENDPOINT" in r.getMessage() for r in caplog.records)
