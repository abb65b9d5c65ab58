import pytest

from settings import Settings, discover_api_keys, load_settings

ENV_NAMES = [
    "GOOGLE_API", "GOOGLE_API_2", "GOOGLE_API_3", "GOOGLE_API_4", "GOOGLE_API_TWO", "GOOGLE_API_THREE",
    "GEMINI_MODEL", "GEMINI_TEMPERATURE", "GEMINI_MAX_OUTPUT_TOKENS", "REQUESTS_PER_MINUTE", "REQUESTS_PER_DAY",
    "RENDER_SCALE", "OCR_LANGUAGES", "MAX_PDF_BYTES", "DOWNLOAD_TIMEOUT",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_NAMES:
        # setenv first so teardown also removes values loaded from .env files
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return str(tmp_path / "missing.env")


def test_api_keys_are_collected_in_order_without_duplicates(monkeypatch, clean_env):
    monkeypatch.setenv("GOOGLE_API", "key-1")
    monkeypatch.setenv("GOOGLE_API_2", "key-2")
    monkeypatch.setenv("GOOGLE_API_4", "unreachable")
    monkeypatch.setenv("GOOGLE_API_TWO", "key-2")
    monkeypatch.setenv("GOOGLE_API_THREE", "key-3")

    assert discover_api_keys() == ["key-1", "key-2", "key-3"]


def test_defaults(clean_env):
    settings = load_settings(clean_env)
    assert settings.api_keys == ()
    assert settings.model_name == "gemini-2.0-flash"
    assert settings.render_scale == 2.0
    assert settings.requests_per_minute == 15
    assert settings.max_pdf_bytes == 10 * 1024 * 1024


def test_environment_overrides(monkeypatch, clean_env):
    monkeypatch.setenv("GEMINI_MODEL", "gemini-1.5-pro")
    monkeypatch.setenv("RENDER_SCALE", "3")
    monkeypatch.setenv("REQUESTS_PER_MINUTE", "60")
    monkeypatch.setenv("OCR_LANGUAGES", "eng+deu")

    settings = load_settings(clean_env)
    assert settings.model_name == "gemini-1.5-pro"
    assert settings.render_scale == 3.0
    assert settings.requests_per_minute == 60
    assert settings.ocr_languages == "eng+deu"


def test_env_file_is_loaded(clean_env, tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("GOOGLE_API=from-file\nGEMINI_TEMPERATURE=0.2\n")

    settings = load_settings(str(env_file))
    assert settings.api_keys == ("from-file",)
    assert settings.temperature == 0.2


def test_invalid_number_names_the_variable(monkeypatch, clean_env):
    monkeypatch.setenv("REQUESTS_PER_DAY", "lots")
    with pytest.raises(ValueError, match="REQUESTS_PER_DAY"):
        load_settings(clean_env)


def test_render_scale_below_two_is_rejected():
    with pytest.raises(ValueError):
        Settings(render_scale=1.5)


def test_api_keys_are_not_shown_in_repr():
    assert "secret" not in repr(Settings(api_keys=("secret",)))
