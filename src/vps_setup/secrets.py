"""Secret references inside profile overrides.

An override value may be a reference instead of a literal::

    db_password: {aws_secret: prod/db, key: password}
    api_token: {env_var: DEPLOY_TOKEN, default: ""}

References are replaced just before the run variables are written, so the
stored profile never holds the secret itself.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional
import base64
import json
import logging
import os

from .errors import SecretError

try:  # pragma: no cover
    import boto3  # type: ignore
except ImportError:  # pragma: no cover
    boto3 = None

logger = logging.getLogger(__name__)

AWS_REF = "aws_secret"
ENV_REF = "env_var"


def is_secret_reference(value: Any) -> bool:
    return isinstance(value, dict) and (AWS_REF in value or ENV_REF in value)


class SecretResolver:
    """Replaces ``aws_secret`` and ``env_var`` references in override mappings.

    Secrets Manager lookups are cached per (secret id, key) for the lifetime
    of the resolver, so a batch run fetches each secret once.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = environ
        self._cache: dict[tuple[str, Optional[str]], Any] = {}

    def resolve(self, overrides: Mapping[str, Any]) -> dict[str, Any]:
        return {name: self._walk(value, name) for name, value in overrides.items()}

    def _walk(self, value: Any, path: str) -> Any:
        if is_secret_reference(value):
            if AWS_REF in value:
                return self._from_aws(value, path)
            return self._from_env(value, path)
        if isinstance(value, dict):
            return {k: self._walk(v, f"{path}.{k}") for k, v in value.items()}
        if isinstance(value, list):
            return [self._walk(v, f"{path}[{i}]") for i, v in enumerate(value)]
        return value

    def _from_env(self, ref: dict[str, Any], path: str) -> Any:
        environ = os.environ if self.environ is None else self.environ
        variable = str(ref[ENV_REF])
        if variable in environ:
            return environ[variable]
        if "default" in ref:
            return ref["default"]
        raise SecretError(f"Override {path} needs environment variable {variable}, which is not set")

    def _from_aws(self, ref: dict[str, Any], path: str) -> Any:
        if boto3 is None:
            raise SecretError(
                f"Override {path} references an AWS secret but boto3 is not installed (pip install vps-setup[aws])"
            )
        secret_id = str(ref[AWS_REF])
        key = None if ref.get("key") is None else str(ref["key"])
        if (secret_id, key) not in self._cache:
            logger.debug("Fetching secret %s for override %s", secret_id, path)
            text = fetch_secret_text(boto3.client("secretsmanager"), secret_id)
            self._cache[(secret_id, key)] = select_field(text, key)
        return self._cache[(secret_id, key)]


def fetch_secret_text(client, secret_id: str) -> str:
    response = client.get_secret_value(SecretId=secret_id)
    if response.get("SecretString") is not None:
        return response["SecretString"]
    if response.get("SecretBinary") is not None:
        return base64.b64decode(response["SecretBinary"]).decode()
    raise SecretError(f"Secret {secret_id} has no SecretString or SecretBinary")


def select_field(text: str, key: Optional[str]) -> Any:
    """Pick ``key`` out of a JSON secret; plain-text secrets are returned whole."""

    if key is None:
        return text
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return text
    if not isinstance(payload, dict):
        return text
    if key not in payload:
        raise SecretError(f"Secret field {key!r} not present")
    return payload[key]
