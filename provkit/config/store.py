"""
YAML config file (``~/.provkit/config.yaml``).

Layout::

    providers:
      qwen:
        oauth_credentials:
          - id: default
            client_id: ...
            access_token: ...
            refresh_token: ...
            expires_at: "2025-01-01T00:00:00Z"
            scopes: [model.completion]
      openai:
        api_keys: [sk-1, sk-2]

Writes are atomic: the document goes to a temp file in the same directory,
is chmod'ed 0600 and then renamed over the target.
"""

import os
import tempfile
import threading
from pathlib import Path
from typing import Any

import yaml

from provkit.errors import CredentialPersistenceError
from provkit.types import OAuthCredentialSet, ProviderConfig
from provkit.utils.logging import get_logger

logger = get_logger(__name__)


def atomic_write(path: str | Path, data: str, mode: int = 0o600) -> None:
    """Write ``data`` to ``path`` so readers never observe a partial file."""
    target = Path(path).expanduser()
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent)
        )
    except OSError as e:
        raise CredentialPersistenceError(f"failed to write {target}: {e}") from e

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, target)
    except OSError as e:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise CredentialPersistenceError(f"failed to write {target}: {e}") from e


class ConfigStore:
    """Load and persist the provider config document."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        return data if isinstance(data, dict) else {}

    def save(self, data: dict[str, Any]) -> None:
        text = yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
        with self._lock:
            atomic_write(self.path, text)
        logger.debug("config_saved", path=str(self.path))

    def provider_configs(self) -> dict[str, ProviderConfig]:
        providers = self.load().get("providers") or {}
        return {
            name: ProviderConfig.from_mapping(name, section)
            for name, section in providers.items()
            if isinstance(section, dict)
        }

    def save_oauth_credentials(
        self, provider: str, credentials: list[OAuthCredentialSet]
    ) -> None:
        """Replace the oauth_credentials list of one provider section."""
        with self._lock:
            data = self.load()
            providers = data.setdefault("providers", {})
            section = providers.setdefault(provider, {})
            section["oauth_credentials"] = [
                _credential_to_yaml(cred) for cred in credentials
            ]
            text = yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
            atomic_write(self.path, text)
        logger.info(
            "oauth_credentials_saved", provider=provider, count=len(credentials), path=str(self.path)
        )

    def update_oauth_credential(self, provider: str, credential: OAuthCredentialSet) -> None:
        """Insert or replace one credential set by id."""
        with self._lock:
            data = self.load()
            section = data.setdefault("providers", {}).setdefault(provider, {})
            existing = section.get("oauth_credentials") or []
            replaced = False
            for i, item in enumerate(existing):
                if isinstance(item, dict) and item.get("id") == credential.id:
                    existing[i] = _credential_to_yaml(credential)
                    replaced = True
            if not replaced:
                existing.append(_credential_to_yaml(credential))
            section["oauth_credentials"] = existing
            text = yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
            atomic_write(self.path, text)


def _credential_to_yaml(cred: OAuthCredentialSet) -> dict[str, Any]:
    item = cred.model_dump()
    if not item.get("client_secret"):
        item.pop("client_secret", None)
    return item


__all__ = ["ConfigStore", "atomic_write"]
