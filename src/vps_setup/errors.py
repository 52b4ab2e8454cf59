from __future__ import annotations

from typing import Iterable, Optional


class VpsSetupError(Exception):
    """Base class for errors surfaced to command logic."""


class ValidationError(VpsSetupError):
    def __init__(self, kind: str, errors: Iterable[str]):
        self.kind = kind
        self.errors = list(errors)
        super().__init__(f"Invalid {kind}: {', '.join(self.errors)}")


class NotFoundError(VpsSetupError):
    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f'{kind.capitalize()} "{name}" not found')


class AlreadyExistsError(VpsSetupError):
    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f'{kind.capitalize()} "{name}" already exists')


class ProvisioningError(VpsSetupError):
    """A run that was attempted (or refused) against a server."""

    def __init__(self, message: str, *, result=None):
        self.result = result
        super().__init__(message)


class ToolNotFoundError(ProvisioningError):
    pass


class ToolPathError(ProvisioningError):
    def __init__(self, path, message: Optional[str] = None):
        self.path = path
        super().__init__(message or f"Playbook not found at {path}")


class ConnectivityError(ProvisioningError):
    pass


class ExecutionError(ProvisioningError):
    pass


class SecretError(VpsSetupError):
    """A secret reference in profile overrides could not be resolved."""
