"""Credential storage for API keys and attribution tokens.

WHAT:
    - CredentialScope: structured {purpose, project_id} key
    - CredentialStore: narrow get/save/delete interface
    - EncryptedFileCredentialStore: Fernet-encrypted JSON file (mode 0600)
    - CredentialResolver: read-through cache with per-project -> global fallback

WHY:
    A refresh cycle reads one key per project; the resolver keeps that to one
    store read per scope until the credential is rewritten. Secrets are
    encrypted at rest and never logged (only their length).

REFERENCES:
    - subbuddy/security.py (build_cipher, encrypt_secret, decrypt_secret)
    - subbuddy/services/refresh_scheduler.py (resolves subscription keys)
"""

from __future__ import annotations

import json
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from cryptography.fernet import Fernet

from subbuddy.security import decrypt_secret, encrypt_secret
from subbuddy.services.attribution_client import normalize_token
from subbuddy.telemetry import LogFn, app_log

CATEGORY = "Keychain"


class CredentialPurpose(str, Enum):
    subscription_key = "revenuecat-api-key"
    text_gen_key = "openai-api-key"
    attribution_token = "appsflyer-token"


@dataclass(frozen=True)
class CredentialScope:
    """What a secret is for, and (optionally) which project it belongs to."""

    purpose: CredentialPurpose
    project_id: Optional[str] = None

    def __post_init__(self):
        if self.purpose is CredentialPurpose.attribution_token and not self.project_id:
            raise ValueError("Attribution tokens are always scoped to a project")
        if self.purpose is CredentialPurpose.text_gen_key and self.project_id:
            raise ValueError("The text-generation key is global")

    @classmethod
    def subscription(cls, project_id: Optional[str] = None) -> "CredentialScope":
        return cls(CredentialPurpose.subscription_key, project_id)

    @classmethod
    def text_gen(cls) -> "CredentialScope":
        return cls(CredentialPurpose.text_gen_key)

    @classmethod
    def attribution(cls, project_id: str) -> "CredentialScope":
        return cls(CredentialPurpose.attribution_token, project_id)

    def storage_key(self) -> str:
        if self.project_id:
            return f"{self.purpose.value}-{self.project_id}"
        return self.purpose.value


class CredentialStore(ABC):
    """Opaque secret store keyed by CredentialScope."""

    @abstractmethod
    def get(self, scope: CredentialScope) -> Optional[str]:
        ...

    @abstractmethod
    def save(self, scope: CredentialScope, secret: str) -> bool:
        ...

    @abstractmethod
    def delete(self, scope: CredentialScope) -> bool:
        ...


class EncryptedFileCredentialStore(CredentialStore):
    """JSON file of {storage_key: Fernet ciphertext}, readable by the owner only."""

    def __init__(self, path: Path, cipher: Fernet, log: LogFn = app_log):
        self.path = Path(path)
        self._cipher = cipher
        self._log = log
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            self._log(f"Credential file unreadable: {e}", "error", CATEGORY)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, sort_keys=True)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self.path)

    def get(self, scope: CredentialScope) -> Optional[str]:
        key = scope.storage_key()
        with self._lock:
            ciphertext = self._read().get(key)
        if not ciphertext:
            return None
        try:
            return decrypt_secret(self._cipher, ciphertext, context=key)
        except ValueError:
            self._log(f"Stored credential for {key} could not be decrypted", "error", CATEGORY)
            return None

    def save(self, scope: CredentialScope, secret: str) -> bool:
        key = scope.storage_key()
        try:
            ciphertext = encrypt_secret(self._cipher, secret, context=key)
            with self._lock:
                data = self._read()
                data[key] = ciphertext
                self._write(data)
        except (OSError, ValueError) as e:
            self._log(f"Failed to save credential {key}: {e}", "error", CATEGORY)
            return False
        self._log(f"Saved credential {key} (length={len(secret)})", "info", CATEGORY)
        return True

    def delete(self, scope: CredentialScope) -> bool:
        key = scope.storage_key()
        try:
            with self._lock:
                data = self._read()
                if key not in data:
                    return True
                del data[key]
                self._write(data)
        except OSError as e:
            self._log(f"Failed to delete credential {key}: {e}", "error", CATEGORY)
            return False
        self._log(f"Deleted credential {key}", "info", CATEGORY)
        return True


class CredentialResolver:
    """Read-through cache in front of a CredentialStore.

    Every write goes through `save`/`delete` here so the cached entry for
    that scope is invalidated in the same call.
    """

    def __init__(self, store: CredentialStore, log: LogFn = app_log):
        self.store = store
        self._log = log
        self._cache: Dict[CredentialScope, Optional[str]] = {}

    def get(self, scope: CredentialScope) -> Optional[str]:
        if scope not in self._cache:
            self._cache[scope] = self.store.get(scope)
        return self._cache[scope]

    def subscription_key(self, project_id: str) -> Optional[str]:
        """Project key, falling back to the global key from single-project setups."""
        return self.get(CredentialScope.subscription(project_id)) or self.get(CredentialScope.subscription())

    def text_gen_key(self) -> Optional[str]:
        return self.get(CredentialScope.text_gen())

    def attribution_token(self, project_id: str) -> Optional[str]:
        return self.get(CredentialScope.attribution(project_id))

    def save(self, scope: CredentialScope, secret: Optional[str]) -> bool:
        """Save a secret; an empty value deletes it instead."""
        if scope.purpose is CredentialPurpose.attribution_token:
            secret = normalize_token(secret)
        else:
            secret = (secret or "").strip()
        if not secret:
            return self.delete(scope)
        self.invalidate(scope)
        return self.store.save(scope, secret)

    def delete(self, scope: CredentialScope) -> bool:
        self.invalidate(scope)
        return self.store.delete(scope)

    def forget_project(self, project_id: str) -> None:
        """Delete every per-project credential."""
        self.delete(CredentialScope.subscription(project_id))
        self.delete(CredentialScope.attribution(project_id))

    def invalidate(self, scope: Optional[CredentialScope] = None) -> None:
        if scope is None:
            self._cache.clear()
        else:
            self._cache.pop(scope, None)
