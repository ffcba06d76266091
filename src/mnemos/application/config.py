from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from mnemos.consts import APP_NAME
from mnemos.domain.constants import (
    DEFAULT_INVALIDATION_TIMEOUT,
    DEFAULT_MAX_WRITE_RETRIES,
    UNDO_HISTORY_LIMIT,
)


def config_files() -> list[Path]:
    return [
        Path.home() / f".config/{APP_NAME}/config.toml",
        Path.home() / f".{APP_NAME}.toml",
    ]


class EngineConfig(BaseSettings):
    """
    Process configuration for mnemos.
    Supports loading from:
    1. Environment variables (MNEMOS_*)
    2. Config file (~/.config/mnemos/config.toml)
    3. Manual overrides (CLI)
    """

    model_config = SettingsConfigDict(
        env_prefix="MNEMOS_",
        extra="ignore",
    )

    # Storage
    backend: Literal["memory", "sqlite"] = "sqlite"
    db_path: Path = Field(
        default_factory=lambda: Path.home() / f".local/share/{APP_NAME}/{APP_NAME}.db"
    )

    # Settings provider (YAML file with user defaults and project overrides)
    settings_file: Path | None = None

    # Cache invalidation
    invalidation_url: str | None = None
    invalidation_timeout: float = Field(default=DEFAULT_INVALIDATION_TIMEOUT, gt=0)

    # Concurrency
    max_write_retries: int = Field(default=DEFAULT_MAX_WRITE_RETRIES, ge=0)

    # Ratings kept per project for undo
    undo_history_limit: int = Field(default=UNDO_HISTORY_LIMIT, ge=1)

    verbose: int = 1

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        from pydantic_settings import TomlConfigSettingsSource

        # Find the first existing file
        toml_file = None
        for f in config_files():
            if f.exists():
                toml_file = f
                break

        # Earlier sources win: CLI overrides, then environment, then the file
        if toml_file:
            return (
                init_settings,
                env_settings,
                TomlConfigSettingsSource(settings_cls, toml_file=toml_file),
            )
        return (
            init_settings,
            env_settings,
        )

    @field_validator("db_path", "settings_file", mode="before")
    @classmethod
    def resolve_path(cls, v: Any) -> Path | None:
        if v is None or v == "":
            return None
        return Path(v).expanduser().resolve()


def resolve_config(cli_overrides: dict[str, Any] | None = None) -> EngineConfig:
    """
    Multi-layered configuration resolution.
    1. Defaults in EngineConfig
    2. ~/.config/mnemos/config.toml (if exists)
    3. Environment variables (MNEMOS_*)
    4. cli_overrides (passed from Typer)
    """
    overrides = {k: v for k, v in (cli_overrides or {}).items() if v is not None}
    return EngineConfig(**overrides)
