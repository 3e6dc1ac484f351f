"""GitHub credential lookup backed by the key-value store."""
from __future__ import annotations

import logging
import os
from typing import Optional

from attrs import define

from marks_vault.automation.ports import GitHubCredentials
from marks_vault.automation.store.interface import KeyValueStoreProtocol

logger = logging.getLogger(__name__)

CREDENTIALS_STORAGE_KEY = "github_credentials"


@define(slots=True)
class KeyValueCredentialStore:
    """Reads ``{"token", "username"}`` from the store, falling back to an env token."""

    store: KeyValueStoreProtocol
    token_env: Optional[str] = "GITHUB_TOKEN"

    async def get_github_credentials(self) -> Optional[GitHubCredentials]:
        data = await self.store.get(CREDENTIALS_STORAGE_KEY)
        if isinstance(data, dict) and data.get("token"):
            return GitHubCredentials(token=str(data["token"]), username=data.get("username"))
        if self.token_env:
            token = os.environ.get(self.token_env)
            if token:
                logger.debug("使用环境变量 %s 中的GitHub凭据", self.token_env)
                return GitHubCredentials(token=token)
        return None

    async def save_github_credentials(self, credentials: GitHubCredentials) -> None:
        payload = {"token": credentials.token}
        if credentials.username:
            payload["username"] = credentials.username
        await self.store.set(CREDENTIALS_STORAGE_KEY, payload)

    async def clear_github_credentials(self) -> None:
        await self.store.remove(CREDENTIALS_STORAGE_KEY)


__all__ = ["CREDENTIALS_STORAGE_KEY", "KeyValueCredentialStore"]
