"""VPS provisioning orchestrator built around ansible-playbook."""

from .runner import ProvisionRunner
from .store import ConfigStore

__all__ = ["ProvisionRunner", "ConfigStore"]
