from __future__ import annotations

from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

WireShape = Literal["anthropic", "openai"]


class ProtocolFamily(str, Enum):
    """
    Upstream wire schema declared per provider.
    """

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    AZURE = "azure"
    BEDROCK = "bedrock"

    @property
    def wire_shape(self) -> WireShape:
        # Bedrock carries Anthropic bodies, Azure carries OpenAI chat bodies.
        if self in (ProtocolFamily.ANTHROPIC, ProtocolFamily.BEDROCK):
            return "anthropic"
        return "openai"


class CliFamily(str, Enum):
    """
    The coding-assistant CLI a proxy session serves.
    """

    CLAUDE = "claude"
    CODEX = "codex"
    OPENCODE = "opencode"

    @property
    def wire_shape(self) -> WireShape:
        if self is CliFamily.CLAUDE:
            return "anthropic"
        return "openai"


class ModelRole(str, Enum):
    DEFAULT = "default"
    REASONING = "reasoning"
    HAIKU = "haiku"
    OPUS = "opus"
    SONNET = "sonnet"


class Provider(BaseModel):
    """
    One upstream endpoint from the configuration snapshot.

    Field aliases follow the JSON document keys (`auth_token`, `type`);
    the credential is a SecretStr so it never shows up in repr or logs.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., description="Unique provider identifier within the snapshot")
    base_url: str = Field(..., description="Base address of the upstream API")
    credential: SecretStr = Field(
        ..., alias="auth_token", description="Opaque upstream credential"
    )
    protocol: ProtocolFamily = Field(
        ProtocolFamily.ANTHROPIC, alias="type", description="Declared protocol family"
    )
    model: Optional[str] = Field(None, description="Default model override")
    reasoning_model: Optional[str] = Field(None, description="Model used when thinking is enabled")
    haiku_model: Optional[str] = Field(None, description="Fast/background tier model")
    opus_model: Optional[str] = Field(None, description="Strongest tier model")
    sonnet_model: Optional[str] = Field(None, description="Balanced tier model")
    env_vars: Dict[str, str] = Field(default_factory=dict)
    claude_env_vars: Dict[str, str] = Field(default_factory=dict)
    codex_env_vars: Dict[str, str] = Field(default_factory=dict)
    opencode_env_vars: Dict[str, str] = Field(default_factory=dict)
    retryable_status_codes: Optional[List[int]] = Field(
        None, description="Per-provider override of the retryable status set"
    )
    custom_headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("id", "base_url")
    @classmethod
    def _require_non_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("credential")
    @classmethod
    def _require_credential(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("must not be empty")
        return value

    def model_for_role(self, role: ModelRole) -> Optional[str]:
        value = {
            ModelRole.DEFAULT: self.model,
            ModelRole.REASONING: self.reasoning_model,
            ModelRole.HAIKU: self.haiku_model,
            ModelRole.OPUS: self.opus_model,
            ModelRole.SONNET: self.sonnet_model,
        }[role]
        return value or None

    def env_vars_for(self, cli_family: CliFamily) -> Dict[str, str]:
        """
        Environment overrides for one CLI family: the family-specific map
        when it has entries, otherwise the generic `env_vars` map.
        """
        specific = {
            CliFamily.CLAUDE: self.claude_env_vars,
            CliFamily.CODEX: self.codex_env_vars,
            CliFamily.OPENCODE: self.opencode_env_vars,
        }[cli_family]
        return dict(specific) if specific else dict(self.env_vars)


__all__ = ["CliFamily", "ModelRole", "ProtocolFamily", "Provider", "WireShape"]
