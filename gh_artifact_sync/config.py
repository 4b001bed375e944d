"""Configuration objects for gh-artifact-sync.

All settings come from environment variables prefixed with
`GH_ARTIFACT_SYNC_` and are validated once at startup, for example:

    export GH_ARTIFACT_SYNC_BRANCH=main
    export GH_ARTIFACT_SYNC_OUTPUT=/srv/builds/site-{HEAD_SHA}
    export GH_ARTIFACT_SYNC_SYMLINK=/srv/site
"""

from pathlib import Path
from typing import Any

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigException
from .retry import RetryPolicy

__all__ = [
    "Config",
    "ENV_PREFIX",
    "SHA_PLACEHOLDER",
]

ENV_PREFIX = "GH_ARTIFACT_SYNC_"
SHA_PLACEHOLDER = "{HEAD_SHA}"
DEFAULT_API_URL = "https://api.github.com"
DEFAULT_LOG_LEVEL = "info"


def _variable(loc: tuple[int | str, ...]) -> str:
    """Return the environment variable behind a validation error location."""
    if not loc:
        return f"{ENV_PREFIX}*"
    name = str(loc[0])
    if name.startswith(ENV_PREFIX):
        return name
    return f"{ENV_PREFIX}{name.upper()}"


class Config(BaseSettings):
    """Validated process configuration."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_ignore_empty=True,
        str_strip_whitespace=True,
        populate_by_name=True,
        frozen=True,
    )

    branch: str = Field(min_length=1)
    """Name of the tracked branch."""

    artifact: str = Field(min_length=1)
    """Name of the artifact to mirror."""

    output: str = Field(min_length=1)
    """Output directory template containing `{HEAD_SHA}`."""

    symlink: Path
    """Fixed path of the published symlink."""

    addr: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)

    secret: SecretStr
    """Key used to sign webhook deliveries."""

    token: SecretStr
    """API token used for all calls to the CI provider."""

    log_level: str = Field(
        default=DEFAULT_LOG_LEVEL, validation_alias=f"{ENV_PREFIX}LOG"
    )
    retain: int = Field(default=3, ge=0)
    """Number of previous outputs kept next to the live one."""

    retry_attempts: int = Field(default=8, ge=1)
    retry_delay: float = Field(default=5.0, ge=0)
    retry_max_delay: float = Field(default=300.0, ge=0)
    api_url: str = DEFAULT_API_URL

    @field_validator("output")
    @classmethod
    def _check_output(cls, value: str) -> str:
        if SHA_PLACEHOLDER not in value:
            raise ValueError(f"must contain the {SHA_PLACEHOLDER} placeholder")
        return value

    @field_validator("symlink", mode="before")
    @classmethod
    def _check_symlink(cls, value: Any) -> Any:
        if not str(value).strip():
            raise ValueError("must not be empty")
        if SHA_PLACEHOLDER in str(value):
            raise ValueError(f"is a fixed path and must not contain {SHA_PLACEHOLDER}")
        return value

    @field_validator("secret", "token", mode="before")
    @classmethod
    def _check_secret(cls, value: Any) -> Any:
        if isinstance(value, str):
            if not (value := value.strip()):
                raise ValueError("must not be empty")
        return value

    @field_validator("api_url")
    @classmethod
    def _check_api_url(cls, value: str) -> str:
        return value.rstrip("/") or DEFAULT_API_URL

    @classmethod
    def from_env(cls) -> "Config":
        """Build a configuration from the process environment.

        Raises:
            ConfigException: If a variable is missing or invalid.
        """
        try:
            return cls()  # type: ignore[call-arg]
        except ValidationError as err:
            problems = [
                f"{_variable(error['loc'])}: {error['msg']}" for error in err.errors()
            ]
            raise ConfigException("; ".join(problems)) from err

    def output_path(self, sha: str) -> Path:
        """Return the output directory for a commit."""
        return Path(self.output.replace(SHA_PLACEHOLDER, sha))

    def retry_policy(self) -> RetryPolicy:
        """Return the retry policy for fetching an artifact."""
        try:
            return RetryPolicy(
                max_attempts=self.retry_attempts,
                base_delay=self.retry_delay,
                max_delay=self.retry_max_delay,
            )
        except ValueError as err:
            raise ConfigException(str(err)) from err
