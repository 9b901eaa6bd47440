"""Secret bundle stores."""

from agentlab.adapters.secrets.bundle import FileSecretStore

__all__ = ["FileSecretStore"]
