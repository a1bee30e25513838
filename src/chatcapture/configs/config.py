"""Settings for the capture pipeline, loaded with pydantic-settings.

Sources, strongest first:

* an override YAML named by ``CHATCAPTURE_CONFIGMAP_FILE`` (a mounted
  ConfigMap in a deployment, a scratch file in tests);
* ``CHATCAPTURE_*`` environment variables, ``__`` between nested keys
  (``CHATCAPTURE_BATCH__MAX_BATCH_SIZE=10``);
* a ``.env`` file at the project root;
* the checked-in ``configs/config.yaml``;
* keyword arguments and field defaults;
* file secrets.

``get_app_config()`` builds a fresh ``AppConfig`` each time, so edits to
either YAML file apply on the next call.
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from .system import (
    APIConfig,
    BatchConfig,
    CacheConfig,
    DedupConfig,
    HostConfig,
    LoggingConfig,
    RemoteStoreConfig,
    RetryConfig,
    TracingConfig,
)

PROJECT_ROOT = Path(__file__).resolve().parents[3]
STATIC_CONFIG_FILE = PROJECT_ROOT / "configs" / "config.yaml"
DOTENV_FILE_PATH = PROJECT_ROOT / ".env"

ENV_PREFIX = "CHATCAPTURE_"
ENV_DELIMITER = "__"
DEFAULT_ENCODING = "utf-8"

_configmap_env = os.environ.get(f"{ENV_PREFIX}CONFIGMAP_FILE")
CONFIGMAP_CONFIG_FILE: Optional[Path] = Path(_configmap_env) if _configmap_env else None


class AppConfig(BaseSettings):
    """Every tunable of the capture pipeline, grouped by component."""

    model_config = SettingsConfigDict(
        env_file=DOTENV_FILE_PATH,
        env_file_encoding=DEFAULT_ENCODING,
        env_nested_delimiter=ENV_DELIMITER,
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        extra="ignore",
        yaml_file=STATIC_CONFIG_FILE,
        yaml_file_encoding=DEFAULT_ENCODING,
    )

    remote_store: RemoteStoreConfig = Field(
        default_factory=RemoteStoreConfig,
        description="Where captured records are delivered and how to authenticate",
    )
    host: HostConfig = Field(
        default_factory=HostConfig,
        description="URL patterns and title rules of the observed chat host",
    )
    batch: BatchConfig = Field(
        default_factory=BatchConfig, description="Debounce and size flush triggers"
    )
    retry: RetryConfig = Field(
        default_factory=RetryConfig, description="Read and write retry policies"
    )
    dedup: DedupConfig = Field(
        default_factory=DedupConfig, description="Bound of the message id ledger"
    )
    cache: CacheConfig = Field(
        default_factory=CacheConfig,
        description="Backend holding known chats and spilled batches",
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    tracing: TracingConfig = Field(default_factory=TracingConfig)
    api: APIConfig = Field(
        default_factory=APIConfig, description="Status and event stream server"
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        static_yaml = YamlConfigSettingsSource(settings_cls)
        ordered = [
            env_settings,
            dotenv_settings,
            static_yaml,
            init_settings,
            file_secret_settings,
        ]

        override = CONFIGMAP_CONFIG_FILE
        if override is not None and override.is_file():
            ordered.insert(
                0, YamlConfigSettingsSource(settings_cls, yaml_file=override)
            )

        return tuple(ordered)


def get_app_config() -> AppConfig:
    """Load settings from every source; never cached."""
    return AppConfig()
