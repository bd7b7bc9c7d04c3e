"""Best-effort replica of the snapshot as a JSON file in a GitHub repository.

Writes go through :meth:`MirrorPublisher.compare_and_swap`: the file SHA read
beforehand is sent back with the upsert, so GitHub rejects the write when
someone else changed the file in between. Nothing here merges or retries.
"""

from __future__ import annotations

import base64
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import requests

from env_validation import DEFAULT_GITHUB_API_URL, ConfigurationError, get_env_float
from schemas import strip_credentials

LOGGER = logging.getLogger("training_sync.mirror")

GITHUB_API_VERSION = "2022-11-28"
PUBLISH_COMMIT_MESSAGE = "feat: Update application data [via Admin Panel]"


class MirrorError(Exception):
    """GitHub rejected a request; ``message`` is safe to show the admin verbatim."""

    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class MirrorConflictError(MirrorError):
    """The file changed after its SHA was read."""


@dataclass(frozen=True)
class MirrorTarget:
    owner: str
    repo: str
    path: str
    token: str = field(repr=False)

    def __post_init__(self) -> None:
        if not (self.owner and self.repo and self.path and self.token):
            raise ConfigurationError("Missing GitHub configuration parameters.")

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any], token: Optional[str] = None) -> "MirrorTarget":
        return cls(
            owner=str(settings.get("githubOwner") or ""),
            repo=str(settings.get("githubRepo") or ""),
            path=str(settings.get("githubPath") or ""),
            token=str(token if token is not None else settings.get("githubPat") or ""),
        )


@dataclass
class PublishResult:
    success: bool
    message: str
    commit: Optional[str] = None
    status_code: int = 200


def encode_content(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def decode_content(encoded: str) -> str:
    # GitHub wraps inline base64 at 60 columns; b64decode drops the newlines.
    return base64.b64decode(encoded).decode("utf-8")


class MirrorPublisher:
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.session = session or requests.Session()
        self.api_url = (api_url or os.getenv("GITHUB_API_URL") or DEFAULT_GITHUB_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else get_env_float("MIRROR_TIMEOUT_SECONDS", 60.0)

    def contents_url(self, target: MirrorTarget) -> str:
        return f"{self.api_url}/repos/{target.owner}/{target.repo}/contents/{target.path.lstrip('/')}"

    def blob_url(self, target: MirrorTarget, sha: str) -> str:
        return f"{self.api_url}/repos/{target.owner}/{target.repo}/git/blobs/{sha}"

    @staticmethod
    def _headers(token: str) -> Dict[str, str]:
        return {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github.v3+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
            "User-Agent": "Cyber-Training-Dashboard-Sync",
            "Cache-Control": "no-cache",
        }

    @staticmethod
    def _error_message(response: requests.Response, fallback: str) -> str:
        try:
            detail = (response.json() or {}).get("message")
        except ValueError:
            detail = response.text
        return f"GitHub API Error ({response.status_code}): {detail or fallback}"

    def _send(self, method: str, url: str, token: str, **kwargs: Any) -> requests.Response:
        try:
            return self.session.request(
                method, url, headers=self._headers(token), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            LOGGER.warning("GitHub %s %s failed: %s", method, url, exc)
            raise MirrorError(f"GitHub request failed: {exc}", status_code=502) from exc

    # ------------------------------------------------------------------
    # read side
    # ------------------------------------------------------------------
    def get_file_metadata(self, target: MirrorTarget, *, allow_missing: bool = True) -> Optional[Dict[str, Any]]:
        response = self._send("GET", self.contents_url(target), target.token)
        if response.ok:
            return response.json()
        if response.status_code == 404 and allow_missing:
            return None
        message = self._error_message(
            response,
            "Could not fetch file metadata. Check owner, repo, path, and token permissions.",
        )
        LOGGER.error("GitHub Contents API error: %s", message)
        raise MirrorError(message, status_code=response.status_code)

    def get_file_sha(self, target: MirrorTarget) -> Optional[str]:
        """Current blob SHA of the mirrored file, ``None`` if it does not exist yet."""
        metadata = self.get_file_metadata(target)
        if metadata is None:
            return None
        return metadata.get("sha")

    def fetch(self, target: MirrorTarget) -> Any:
        """Download and parse the mirrored file. Issues GET requests only."""
        metadata = self.get_file_metadata(target, allow_missing=False) or {}

        encoded = metadata.get("content")
        if not encoded and metadata.get("sha"):
            # Files over 1 MB come back without inline content.
            response = self._send("GET", self.blob_url(target, metadata["sha"]), target.token)
            if not response.ok:
                message = self._error_message(response, "Could not fetch large file content.")
                LOGGER.error("GitHub Blobs API error: %s", message)
                raise MirrorError(message, status_code=response.status_code)
            encoded = response.json().get("content")
        elif not encoded:
            raise MirrorError(
                "Invalid response from GitHub Contents API. No content or SHA found.", status_code=404
            )

        if not encoded:
            raise MirrorError("File appears to be empty.", status_code=404)

        text = decode_content(encoded)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise MirrorError(
                f"The file '{target.path}' from your repository is not valid JSON. "
                f"Please check the file's syntax. Details: {exc}",
                status_code=400,
            ) from exc

    # ------------------------------------------------------------------
    # write side
    # ------------------------------------------------------------------
    def compare_and_swap(
        self,
        target: MirrorTarget,
        content: str,
        expected_sha: Optional[str],
        message: str,
    ) -> str:
        """Upsert ``content`` only if the file still has ``expected_sha``.

        ``expected_sha=None`` means "create"; GitHub refuses it if the file
        appeared meanwhile. Returns the new commit SHA.
        """
        body: Dict[str, Any] = {"message": message, "content": encode_content(content)}
        if expected_sha:
            body["sha"] = expected_sha

        response = self._send("PUT", self.contents_url(target), target.token, json=body)
        if response.ok:
            return response.json()["commit"]["sha"]

        error = self._error_message(response, "Failed to publish file.")
        LOGGER.error("GitHub Contents API PUT error: %s", error)
        if response.status_code == 409 or (response.status_code == 422 and "sha" in error.lower()):
            raise MirrorConflictError(error, status_code=response.status_code)
        raise MirrorError(error, status_code=response.status_code)

    def publish(
        self,
        snapshot: Mapping[str, Any],
        target: MirrorTarget,
        message: str = PUBLISH_COMMIT_MESSAGE,
    ) -> PublishResult:
        try:
            sha = self.get_file_sha(target)
            content = json.dumps(strip_credentials(snapshot), indent=2, ensure_ascii=False)
            commit = self.compare_and_swap(target, content, sha, message)
        except MirrorError as exc:
            return PublishResult(success=False, message=exc.message, status_code=exc.status_code)

        LOGGER.info("Published %s/%s:%s at %s", target.owner, target.repo, target.path, commit)
        return PublishResult(
            success=True,
            message=f"Successfully published to commit {commit[:7]}",
            commit=commit,
        )
