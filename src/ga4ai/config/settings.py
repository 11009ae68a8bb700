#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
from pydantic import (
    Field,
    HttpUrl,
    AfterValidator,
    BaseModel,
    ConfigDict,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import (
    Optional,
    Union,
    Annotated,
    Self,
    List,
    Dict,
    Any,
)
from pathlib import Path
from yaml import safe_load, add_representer, dump
from contextvars import ContextVar
from os import environ
from importlib.util import find_spec


def _resolve_token_file(token: Optional[str]) -> Optional[str]:
    if token is None:
        return None
    return (
        Path(token[1:]).expanduser().read_text().strip()
        if token.startswith("@")
        else token
    )


def _expand_path(path: Optional[str]) -> Optional[str]:
    return str(Path(path).expanduser()) if path else path


DEFAULT_PROPERTY_ID = "358809672"

DEFAULT_PROPERTY_ALIASES = {
    "independent arabic": "194176332",
    "arabnews english": "197199756",
    "asharq al awsat": "221805438",
    "sayidaty": "362050402",
    "hia": "362081617",
    "manga arabia": "376107957",
    "srmg": "379470462",
}


class HttpRetry(BaseModel):
    """Configuration for HTTP retry behavior with exponential backoff"""

    max_retries: Optional[int] = Field(
        default=3,
        description="Maximum number of retry attempts for rate-limited requests",
    )
    initial_delay: Optional[float] = Field(
        default=1.0, description="Initial delay in seconds before first retry"
    )
    max_delay: Optional[float] = Field(
        default=60.0, description="Maximum delay in seconds between retries"
    )
    backoff_multiplier: Optional[float] = Field(
        default=2.0, description="Multiplier for exponential backoff"
    )
    model_config = ConfigDict(validate_assignment=True)


class AnalyticsServer(BaseModel):
    """How to launch the analytics MCP server over stdio"""

    command: str = Field(default="pipx")
    args: Optional[List[str]] = Field(default_factory=lambda: ["run", "analytics-mcp"])
    env: Optional[Dict[str, str]] = Field(default_factory=dict)
    credentials_path: Annotated[Optional[str], AfterValidator(_expand_path)] = Field(
        default=None, description="Service account json, exported to the server"
    )
    project_id: Optional[str] = Field(default=None)
    connect_timeout: Optional[float] = Field(
        default=60.0, description="Seconds allowed for spawning and initializing"
    )
    call_timeout: Optional[float] = Field(
        default=30.0, description="Seconds allowed for a single operation call"
    )
    model_config = ConfigDict(validate_assignment=True)

    @property
    def server_env(self) -> Dict[str, str]:
        env = dict(self.env or {})
        if self.credentials_path:
            env["GOOGLE_APPLICATION_CREDENTIALS"] = self.credentials_path
        if self.project_id:
            env["GOOGLE_PROJECT_ID"] = self.project_id
        return env


class OpenAi(BaseModel):
    api_key: Annotated[Optional[str], AfterValidator(_resolve_token_file)] = None
    model: Optional[str] = Field(default="gpt-4o")
    org: Optional[str] = Field(default=None)
    temperature: Optional[float] = Field(default=0.3)
    refinement_temperature: Optional[float] = Field(default=0.2)
    timeout: Optional[float] = Field(
        default=30.0, description="Seconds allowed for one interpretation call"
    )
    model_config = ConfigDict(validate_assignment=True)


class Refinement(BaseModel):
    enabled: Optional[bool] = Field(
        default=True, description="Ask the interpretation service to fix failed specs"
    )
    max_attempts: Optional[int] = Field(default=3, ge=1)
    model_config = ConfigDict(validate_assignment=True)


class Composite(BaseModel):
    section_timeout: Optional[float] = Field(
        default=90.0, description="Upper bound in seconds for one composite section"
    )
    model_config = ConfigDict(validate_assignment=True)


class Properties(BaseModel):
    default_property_id: Optional[str] = Field(default=DEFAULT_PROPERTY_ID)
    aliases: Optional[Dict[str, str]] = Field(
        default_factory=lambda: dict(DEFAULT_PROPERTY_ALIASES)
    )
    model_config = ConfigDict(validate_assignment=True)


class Activity(BaseModel):
    uri: Optional[Union[HttpUrl, str]] = Field(
        default=None, description="Base uri of the activity sink, if any"
    )
    token: Annotated[Optional[str], AfterValidator(_resolve_token_file)] = None
    max_entries: Optional[int] = Field(default=10000, ge=1)
    http_retry: Optional[HttpRetry] = Field(default_factory=HttpRetry)
    model_config = ConfigDict(validate_assignment=True)


class Settings(BaseSettings):
    analytics_server: Optional[AnalyticsServer] = Field(
        default_factory=AnalyticsServer
    )
    openai: Optional[OpenAi] = Field(default_factory=OpenAi)
    refinement: Optional[Refinement] = Field(default_factory=Refinement)
    composite: Optional[Composite] = Field(default_factory=Composite)
    properties: Optional[Properties] = Field(default_factory=Properties)
    activity: Optional[Activity] = Field(default_factory=Activity)
    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        env_prefix="GA4AI_",
        extra="ignore",
        use_enum_values=True,
    )

    def with_overrides(self, overrides: Dict[str, Any]) -> Self:
        def set_values(aparts: List[str], value: Any, obj: Any):
            if len(aparts) == 1 and hasattr(obj, aparts[0]):
                setattr(obj, aparts[0], value)
            elif hasattr(obj, aparts[0]):
                set_values(aparts[1:], value, getattr(obj, aparts[0]))

        for aparts, value in [
            (attr.split("."), value)
            for attr, value in overrides.items()
            if value is not None
        ]:
            set_values(aparts, value, self)

        return self


_settings: ContextVar[Settings] = ContextVar("settings", default=None)


# the default config is ~/.config/ga4ai/config.yaml, use it if it exists
def default_config() -> Path:
    _top = "ga4ai"
    if (_spec := find_spec(__name__)) and _spec.name:
        _top = _spec.name.split(".")[0]
    return (
        Path(environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
        / _top
        / "config.yaml"
    )


# configures the settings using the given config file and overwrites the global
# settings instance if force is True
def configure(cfg: Union[str, Path] = None, force=False) -> ContextVar[Settings]:
    global _settings
    if force and isinstance(_settings.get(), Settings):
        old = _settings.get()
        try:
            _settings.set(None)
            configure(cfg, force=False)
        except Exception:
            # don't replace the old if there is an issue setting the new value
            _settings.set(old)
            raise

    if isinstance(cfg, str):
        cfg = Path(cfg)

    if cfg is None:
        cfg = default_config()

    if not cfg.exists():
        cfg.parent.mkdir(parents=True, exist_ok=True)
        cfg.touch()

    with cfg.open() as f:
        s = safe_load(f)
        _settings.set(Settings.model_validate(s if s else {}))

    return _settings


# Get the current settings instance if one has been configured. If not try
# to configure it using the default config file. If that fails, create a new
# empty settings instance.
def instance() -> Settings | None:
    global _settings
    if not isinstance(_settings.get(), Settings):
        try:
            configure()  # use default config, if exists
        except FileNotFoundError:
            # no default config, create a new default one
            _settings.set(Settings())
    return _settings.get()


def write_settings(
    cfg: Path = None, inst: Settings = None, dry_run: bool = False
) -> str | None:
    if cfg is None:
        cfg = default_config()

    if not isinstance(inst, Settings):
        inst = instance()

    d = inst.model_dump(
        exclude_none=True, mode="json", exclude_unset=True, by_alias=True
    )
    add_representer(
        str,
        lambda dumper, data: dumper.represent_scalar(
            "tag:yaml.org,2002:str", data, style=('"' if "@" in data else None)
        ),
    )
    if dry_run:
        return dump(d)

    if not cfg.exists() or not cfg.parent.exists():
        cfg.parent.mkdir(parents=True, exist_ok=True)

    with cfg.open("w") as f:
        dump(d, f)
