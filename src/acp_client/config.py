"""Client configuration.

Values come from, in increasing precedence: field defaults, a ``.env`` file,
the process environment and explicit overrides (the command line).
"""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, Field, field_validator

from . import __version__
from .adapters import AUTO, parse_endpoint
from .framing import FRAMINGS
from .meta import AGENT_METHODS, PROTOCOL_VERSION
from .persistence import SESSION_FILE

ENV_FILE = ".env"

# environment key -> (section, field)
_ENV_FIELDS = {
    "ACP_AGENT_COMMAND": (None, "agent_command"),
    "ACP_AGENT_ARGS": (None, "agent_args"),
    "ACP_MODELS": (None, "models"),
    "ACP_MODEL_ENV": (None, "model_env"),
    "ACP_FRAMING": (None, "framing"),
    "ACP_CONNECT": (None, "connect"),
    "ACP_ADAPTER_FILE": (None, "adapter_file"),
    "ACP_CWD": (None, "cwd"),
    "ACP_SESSION_FILE": (None, "session_file"),
    "ACP_LOG_LEVEL": (None, "log_level"),
    "ACP_LOG_FILE": (None, "log_file"),
    "ACP_AUTH_REQUIRED": ("auth", "required"),
    "ACP_AUTH_METHOD": ("auth", "method"),
    "ACP_AUTH_METHOD_ID": ("auth", "method_id"),
    "ACP_CREDENTIAL_ENV": ("auth", "credential_env"),
}


class AuthConfig(BaseModel):
    required: bool = False
    method: Literal["authenticate", "session/auth"] = AGENT_METHODS["authenticate"]
    method_id: Optional[str] = None
    credential_env: str = "CLAUDE_API_KEY"
    api_key: Optional[str] = Field(default=None, repr=False)


class ClientConfig(BaseModel):
    agent_command: str = "npx"
    agent_args: List[str] = Field(default_factory=lambda: ["-y", "@zed-industries/claude-code-acp"])
    models: List[str] = Field(default_factory=lambda: ["default"], min_length=1)
    model_env: str = "ACP_MODEL"
    framing: str = "newline"
    # "auto" or HOST:PORT of a running adapter; unset spawns agent_command
    connect: Optional[str] = None
    adapter_file: Optional[str] = None
    cwd: str = Field(default_factory=os.getcwd)
    mcp_servers: List[Dict[str, Any]] = Field(default_factory=list)
    protocol_version: int = PROTOCOL_VERSION
    client_name: str = "acpclient"
    client_version: str = __version__
    session_file: str = SESSION_FILE
    log_level: str = "WARNING"
    log_file: Optional[str] = None
    auth: AuthConfig = Field(default_factory=AuthConfig)

    @field_validator("agent_args", mode="before")
    @classmethod
    def _split_args(cls, value: Any) -> Any:
        return shlex.split(value) if isinstance(value, str) else value

    @field_validator("models", mode="before")
    @classmethod
    def _split_models(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [m.strip() for m in value.split(",") if m.strip()]
        return value

    @field_validator("framing")
    @classmethod
    def _known_framing(cls, value: str) -> str:
        if value.lower() not in FRAMINGS:
            raise ValueError(f"unknown framing {value!r}; expected one of {', '.join(FRAMINGS)}")
        return value.lower()

    @field_validator("connect")
    @classmethod
    def _known_endpoint(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if value.lower() == AUTO:
            return AUTO
        try:
            parse_endpoint(value)
        except ValueError as e:
            raise ValueError(str(e)) from None
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    def agent_args_for(self, model: str) -> List[str]:
        return [arg.replace("{model}", model) for arg in self.agent_args]

    def agent_env(self, model: str) -> Dict[str, str]:
        env = {self.model_env: model}
        if self.auth.api_key:
            env[self.auth.credential_env] = self.auth.api_key
        return env


def load_config(
    env_file: Optional[str] = ENV_FILE,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> ClientConfig:
    """Build a `ClientConfig`.

    ``overrides`` keys are `ClientConfig` field names, or ``auth_<field>`` for
    `AuthConfig` fields; ``None`` values are ignored.

    Raises:
        pydantic.ValidationError: a value does not fit its field.
    """
    values: Dict[str, Optional[str]] = {}
    if env_file and Path(env_file).is_file():
        values.update(dotenv_values(env_file))
    values.update(os.environ if environ is None else environ)

    data: Dict[str, Any] = {}
    auth: Dict[str, Any] = {}
    for key, (section, name) in _ENV_FIELDS.items():
        value = values.get(key)
        if value:
            (auth if section == "auth" else data)[name] = value

    for name, value in (overrides or {}).items():
        if value is None:
            continue
        if name.startswith("auth_"):
            auth[name[len("auth_"):]] = value
        else:
            data[name] = value

    credential_env = auth.get("credential_env") or AuthConfig.model_fields["credential_env"].default
    if "api_key" not in auth and values.get(credential_env):
        auth["api_key"] = values[credential_env]
    data["auth"] = auth
    return ClientConfig.model_validate(data)
