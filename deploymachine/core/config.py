# core/config.py

"""
Application Configuration

Settings are read, by increasing precedence, from field defaults,
config.defaults.json, config.json, DEPLOYMACHINE_* environment variables and
keyword arguments. The JSON files may contain /* ... */ comments.
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, Tuple, Type

from pydantic import AliasChoices, Field
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from deploymachine.models.hook import HookConfig

CONFIG_DIR_ENV = "DEPLOYMACHINE_CONFIG_DIR"
_COMMENT_RE = re.compile(r"/\*[\s\S]*?\*/")


def read_commented_json(path: Path) -> Dict[str, Any]:
    """Read a JSON object that may contain block comments, {} if missing"""
    if not path.is_file():
        return {}
    contents = _COMMENT_RE.sub("", path.read_text(encoding="utf-8"))
    data = json.loads(contents)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return {key.lower(): value for key, value in data.items()}


class JsonFileSettingsSource(PydanticBaseSettingsSource):
    """Settings source backed by one optional JSON file"""

    def __init__(self, settings_cls: Type[BaseSettings], filename: str):
        super().__init__(settings_cls)
        config_dir = Path(os.environ.get(CONFIG_DIR_ENV, "."))
        self.path = config_dir / filename
        self._data = read_commented_json(self.path)

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return self._data.get(field_name), field_name, False

    def __call__(self) -> Dict[str, Any]:
        return {
            name: self._data[name]
            for name in self.settings_cls.model_fields
            if name in self._data
        }


class Settings(BaseSettings):
    app_name: str = "Deploy Machine"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"

    # Webhook listener
    host: str = "0.0.0.0"
    port: int = Field(3240, validation_alias=AliasChoices("DEPLOYMACHINE_PORT", "PORT", "port"))
    hook_secret: str = ""
    hook_path: str = "/github/callback"
    post_receive_hooks: Dict[str, HookConfig] = {}

    # Periodic checks
    periodic_hooks: Dict[str, HookConfig] = {}
    periodic_interval: int = Field(1200, gt=0, description="Seconds between two periodic checks")
    periodic_scheduled: bool = False

    # Task queue
    data_folder: str = "data"
    max_running_jobs: int = 1

    # Deploy keys, name -> private SSH key
    deploy_keys: Dict[str, str] = {}
    default_deploy_key: str = "KEY_MAIN"

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYMACHINE_",
        case_sensitive=False,
    )

    @classmethod
    def settings_customise_sources(
            cls,
            settings_cls: Type[BaseSettings],
            init_settings: PydanticBaseSettingsSource,
            env_settings: PydanticBaseSettingsSource,
            dotenv_settings: PydanticBaseSettingsSource,
            file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            JsonFileSettingsSource(settings_cls, "config.json"),
            JsonFileSettingsSource(settings_cls, "config.defaults.json"),
        )

    # Directory Settings
    @property
    def tasks_folder(self) -> Path:
        return Path(self.data_folder) / "tasks"

    @property
    def deploykeys_folder(self) -> Path:
        return Path(self.data_folder) / "deploykeys"

    @property
    def repositories_folder(self) -> Path:
        return Path(self.data_folder) / "repositories"

    @property
    def repositories_bak_folder(self) -> Path:
        return Path(self.data_folder) / "repositories-bak"


settings = Settings()
