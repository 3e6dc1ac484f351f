"""GitHub REST client used by the backup and push handlers."""
from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from marks_vault.automation.errors import CredentialError, GitHubAPIError, TransientError
from marks_vault.automation.ports import GitHubCredentials, RemoteEntry, RemoteFile

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"


class GitHubClient:
    """Thin async wrapper over the contents and repos endpoints.

    HTTP failures are mapped onto the engine's error taxonomy: 401 becomes a
    :class:`CredentialError`, 429/5xx and transport errors become a
    :class:`TransientError`, everything else a :class:`GitHubAPIError`.
    """

    def __init__(
        self,
        base_url: str = GITHUB_API,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def validate_credentials(self, credentials: GitHubCredentials) -> str:
        data = await self._request("GET", "/user", credentials)
        login = (data or {}).get("login")
        if not login:
            raise CredentialError("GitHub凭据无效或已过期: 无法获取用户信息")
        return str(login)

    async def repo_exists(self, credentials: GitHubCredentials, owner: str, repo: str) -> bool:
        data = await self._request("GET", f"/repos/{owner}/{repo}", credentials, allow_missing=True)
        return data is not None

    async def create_repo(
        self,
        credentials: GitHubCredentials,
        repo: str,
        private: bool = True,
        description: str = "",
    ) -> None:
        await self._request(
            "POST",
            "/user/repos",
            credentials,
            json={"name": repo, "private": private, "description": description, "auto_init": True},
        )
        logger.info("已创建GitHub仓库: %s", repo)

    async def get_file(
        self, credentials: GitHubCredentials, owner: str, repo: str, path: str
    ) -> Optional[RemoteFile]:
        data = await self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", credentials, allow_missing=True)
        if data is None:
            return None
        if isinstance(data, list):
            raise GitHubAPIError(f"路径是目录而不是文件: {path}")
        content = base64.b64decode(data.get("content") or "").decode("utf-8")
        return RemoteFile(path=path, content=content, sha=data.get("sha"))

    async def put_file(
        self,
        credentials: GitHubCredentials,
        owner: str,
        repo: str,
        path: str,
        content: str,
        message: str,
        sha: Optional[str] = None,
    ) -> None:
        body: Dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
        }
        if sha:
            body["sha"] = sha
        await self._request("PUT", f"/repos/{owner}/{repo}/contents/{path}", credentials, json=body)

    async def delete_file(
        self,
        credentials: GitHubCredentials,
        owner: str,
        repo: str,
        path: str,
        message: str,
        sha: str,
    ) -> None:
        await self._request(
            "DELETE",
            f"/repos/{owner}/{repo}/contents/{path}",
            credentials,
            json={"message": message, "sha": sha},
        )

    async def list_directory(
        self, credentials: GitHubCredentials, owner: str, repo: str, path: str = ""
    ) -> List[RemoteEntry]:
        data = await self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", credentials, allow_missing=True)
        if not data:
            return []
        if not isinstance(data, list):
            data = [data]
        return [
            RemoteEntry(name=item["name"], path=item["path"], type=item.get("type", "file"), sha=item.get("sha"))
            for item in data
        ]

    # ---- internal ----
    def _headers(self, credentials: GitHubCredentials) -> Dict[str, str]:
        return {
            "Accept": "application/vnd.github.v3+json",
            "Authorization": f"Bearer {credentials.token}",
        }

    async def _request(
        self,
        method: str,
        path: str,
        credentials: GitHubCredentials,
        json: Optional[Dict[str, Any]] = None,
        allow_missing: bool = False,
    ) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, headers=self._headers(credentials), json=json)
        except httpx.TimeoutException as exc:
            raise TransientError(f"GitHub请求timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"GitHub network error: {exc}") from exc

        status = response.status_code
        if status == 401:
            raise CredentialError("GitHub凭据无效或已过期: 401 Unauthorized")
        if status == 404 and allow_missing:
            return None
        if status == 429 or (status == 403 and response.headers.get("x-ratelimit-remaining") == "0"):
            raise TransientError(f"GitHub rate limit exceeded ({status})")
        if status >= 500:
            raise TransientError(f"GitHub服务暂时不可用(temporarily unavailable): {status}")
        if status == 404:
            raise GitHubAPIError(f"GitHub资源 not found: {path}", status_code=status)
        if status >= 400:
            raise GitHubAPIError(f"GitHub请求失败({status}): {self._error_message(response)}", status_code=status)
        if status == 204 or not response.content:
            return {}
        return response.json()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return str(response.json().get("message") or response.text)
        except ValueError:
            return response.text


__all__ = ["GITHUB_API", "GitHubClient"]
