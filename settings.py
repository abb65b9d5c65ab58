import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from constants import MAX_PDF_BYTES, RENDER_SCALE, sys_instructions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration for the analyzer, normally built from '.env' by load_settings()
    """
    api_keys: tuple = field(default=(), repr=False)
    model_name: str = "gemini-2.0-flash"
    system_instructions: str = field(default=sys_instructions, repr=False)
    temperature: float = 0.7
    max_output_tokens: int = 8192
    requests_per_minute: int = 15
    requests_per_day: int = 1500
    render_scale: float = RENDER_SCALE
    ocr_languages: str = "eng"
    max_pdf_bytes: int = MAX_PDF_BYTES
    download_timeout: float = 60.0

    def __post_init__(self):
        if self.render_scale < 2:
            raise ValueError(f"render_scale must be at least 2, got {self.render_scale}")


def discover_api_keys() -> list:
    """
    Collects the Gemini API keys from the environment.

    Keys are read from GOOGLE_API, GOOGLE_API_2, GOOGLE_API_3, ... until the first gap, plus the older
    GOOGLE_API_TWO and GOOGLE_API_THREE names.

    :return: list of unique keys, in discovery order
    """
    api_keys = []
    key_index = 1
    while True:
        if key_index == 1:
            key = os.getenv("GOOGLE_API")
        else:
            key = os.getenv(f"GOOGLE_API_{key_index}")

        if not key:
            break

        api_keys.append(key)
        key_index += 1

    # Numbered keys spelled out, kept for older .env files
    for name in ("GOOGLE_API_TWO", "GOOGLE_API_THREE"):
        if os.getenv(name):
            api_keys.append(os.getenv(name))

    # Remove duplicates while maintaining order
    unique_keys = []
    for key in api_keys:
        if key not in unique_keys:
            unique_keys.append(key)
    return unique_keys


def _env_number(name: str, default, cast):
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return cast(value.strip())
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a {cast.__name__}, got {value!r}") from None


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Loads the '.env' file (if any) and builds the Settings from the environment.

    :param env_file: optional path of the .env file, defaults to python-dotenv's lookup
    :return: Settings
    """
    load_dotenv(env_file)

    settings = Settings(
        api_keys=tuple(discover_api_keys()),
        model_name=os.getenv("GEMINI_MODEL") or Settings.model_name,
        temperature=_env_number("GEMINI_TEMPERATURE", Settings.temperature, float),
        max_output_tokens=_env_number("GEMINI_MAX_OUTPUT_TOKENS", Settings.max_output_tokens, int),
        requests_per_minute=_env_number("REQUESTS_PER_MINUTE", Settings.requests_per_minute, int),
        requests_per_day=_env_number("REQUESTS_PER_DAY", Settings.requests_per_day, int),
        render_scale=_env_number("RENDER_SCALE", Settings.render_scale, float),
        ocr_languages=os.getenv("OCR_LANGUAGES") or Settings.ocr_languages,
        max_pdf_bytes=_env_number("MAX_PDF_BYTES", Settings.max_pdf_bytes, int),
        download_timeout=_env_number("DOWNLOAD_TIMEOUT", Settings.download_timeout, float),
    )
    logger.debug("Loaded settings: %s (%d API keys)", settings, len(settings.api_keys))
    return settings
