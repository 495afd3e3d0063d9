"""Dev container orchestration utilities."""

from .credentials import host_token
from .devcontainer import create_default_config, ensure_agent_feature, has_config
from .runtime import ContainerRuntime, ContainerUpResult, OutputCallback, notify

__all__ = [
    "ContainerRuntime",
    "ContainerUpResult",
    "OutputCallback",
    "create_default_config",
    "ensure_agent_feature",
    "has_config",
    "host_token",
    "notify",
]
