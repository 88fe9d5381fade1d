"""Persistence store for catalogue items, artifacts and their sources.

Deep module: callers hand records in and get nothing (or an error) back.
Retry logic, auth headers and the filesystem fallback for artifacts are
handled internally.

Two implementations of ``DocumentStore`` live here:
  - ``DocumentAPIClient`` talks to a REST backend.
  - ``InMemoryDocumentStore`` keeps everything in process (local runs, tests)
    and can export artifacts as Markdown files.
"""

import logging
import os
import re
import threading
import time
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, Optional, Protocol

import requests

from errors import StoreError
from models import Artifact, PendingItem, new_id

logger = logging.getLogger("docforge.agent.store")


class DocumentStore(Protocol):
    """Operations the pipeline needs from persistence.

    ``replace_catalogue`` deletes every item of the scope before inserting
    the new ones; the other operations append or update single records.
    Implementations must be safe to call from several worker threads.
    """

    def replace_catalogue(self, scope_id: str, items: list[PendingItem]) -> None: ...

    def mark_completed(self, item_id: str) -> None: ...

    def save_artifact(self, artifact: Artifact) -> None: ...

    def add_sources(self, artifact_id: str, paths: list[str]) -> None: ...


def source_records(artifact_id: str, paths: list[str]) -> list[Dict[str, str]]:
    """Source reference rows for *paths*, one per unique path."""
    return [
        {
            "id": new_id(),
            "artifact_id": artifact_id,
            "address": path,
            "name": PurePosixPath(path).name,
        }
        for path in dict.fromkeys(paths)
    ]


class DocumentAPIClient:
    """DocumentStore backed by the documentation REST API.

    Args:
        api_url: Base URL of the API. Defaults to ``DOC_API_URL`` env var.
        api_token: Bearer token for authentication. Defaults to ``DOC_API_TOKEN``
                   env var. When empty, requests are sent without auth (dev mode).
        fallback_dir: If saving an artifact fails after all retries, write its
                      content here instead of raising.
        sleep: Injected so tests can skip retry delays.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_token: Optional[str] = None,
        fallback_dir: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_url = (api_url or os.getenv("DOC_API_URL") or "").rstrip("/")
        if not self.api_url:
            raise StoreError(
                "DOC_API_URL not set and no api_url argument provided. "
                "Set DOC_API_URL to the documentation backend base URL "
                "(e.g. http://localhost:8000)."
            )
        self.api_token = api_token or os.getenv("DOC_API_TOKEN", "")
        self.fallback_dir = fallback_dir
        self.max_retries = 3
        self.timeout = 30
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        """Build request headers, including auth if a token is configured."""
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    # ----- DocumentStore ---------------------------------------------------

    def replace_catalogue(self, scope_id: str, items: list[PendingItem]) -> None:
        self._request(
            "PUT",
            f"/api/catalogues/{scope_id}/items",
            {"items": [item.to_dict() for item in items]},
        )
        logger.info("Replaced catalogue", extra={"scope_id": scope_id, "items": len(items)})

    def mark_completed(self, item_id: str) -> None:
        self._request("PATCH", f"/api/catalogue-items/{item_id}", {"is_completed": True})

    def save_artifact(self, artifact: Artifact) -> None:
        try:
            self._request("POST", "/api/artifacts", artifact.to_dict())
        except StoreError as exc:
            if self.fallback_dir is None or 400 <= exc.status_code < 500:
                raise
            self._fallback_to_file(artifact, self.fallback_dir)

    def add_sources(self, artifact_id: str, paths: list[str]) -> None:
        if not paths:
            return
        self._request(
            "POST",
            f"/api/artifacts/{artifact_id}/sources",
            {"sources": source_records(artifact_id, paths)},
        )

    def health_check(self) -> bool:
        """Check if API is healthy."""
        try:
            response = requests.get(f"{self.api_url}/health", timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException:
            return False

    # ----- internal --------------------------------------------------------

    def _request(self, method: str, path: str, payload: Dict[str, Any]) -> Any:
        """Send one JSON request with retry.

        Client errors (4xx except 429) fail immediately; 5xx, 429 and
        connection errors are retried with exponential backoff, five times
        longer for 429.
        """
        endpoint = f"{self.api_url}{path}"
        for attempt in range(self.max_retries):
            try:
                logger.debug("%s %s (attempt %d/%d)", method, endpoint, attempt + 1, self.max_retries)
                response = requests.request(
                    method,
                    endpoint,
                    json=payload,
                    timeout=self.timeout,
                    headers=self._headers(),
                )
                response.raise_for_status()
                return response.json() if response.content else None

            except requests.exceptions.HTTPError as exc:
                status = exc.response.status_code if exc.response is not None else 0
                logger.warning("HTTP %d from %s %s: %s", status, method, path, exc)

                if 400 <= status < 500 and status != 429:
                    raise StoreError(f"{method} {path} failed with {status}: {exc}", status_code=status) from exc

                if attempt < self.max_retries - 1:
                    wait = (2 ** attempt) * (5 if status == 429 else 1)
                    logger.info("Retrying in %ds", wait)
                    self._sleep(wait)
                else:
                    raise StoreError(
                        f"{method} {path} failed after {self.max_retries} attempts: {exc}", status_code=status,
                    ) from exc

            except requests.exceptions.RequestException as exc:
                logger.warning("Request failed: %s: %s", type(exc).__name__, exc)

                if attempt < self.max_retries - 1:
                    wait = 2 ** attempt
                    logger.info("Retrying in %ds", wait)
                    self._sleep(wait)
                else:
                    raise StoreError(f"{method} {path} failed after {self.max_retries} attempts: {exc}") from exc
        return None

    def _fallback_to_file(self, artifact: Artifact, directory: Path) -> None:
        """Write artifact content to disk when the API is unreachable."""
        file_path = directory / f"{_safe_filename(artifact.title)}-{artifact.id[:8]}.md"
        try:
            logger.info("Fallback: writing to %s", file_path)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(artifact.content, encoding="utf-8")
        except OSError as exc:
            logger.error("Fallback write failed: %s", exc)
            raise StoreError(f"Both API and file fallback failed: {exc}") from exc


class InMemoryDocumentStore:
    """Thread-safe in-process DocumentStore."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.items: dict[str, PendingItem] = {}
        self.artifacts: dict[str, Artifact] = {}
        self.sources: dict[str, list[Dict[str, str]]] = {}

    def replace_catalogue(self, scope_id: str, items: list[PendingItem]) -> None:
        with self._lock:
            self.items = {k: v for k, v in self.items.items() if v.document_id != scope_id}
            for item in items:
                self.items[item.id] = item

    def mark_completed(self, item_id: str) -> None:
        with self._lock:
            item = self.items.get(item_id)
            if item is None:
                raise StoreError(f"Unknown catalogue item: {item_id}", status_code=404)
            item.is_completed = True

    def save_artifact(self, artifact: Artifact) -> None:
        with self._lock:
            self.artifacts[artifact.id] = artifact

    def add_sources(self, artifact_id: str, paths: list[str]) -> None:
        with self._lock:
            self.sources.setdefault(artifact_id, []).extend(source_records(artifact_id, paths))

    def pending_items(self, scope_id: str) -> list[PendingItem]:
        with self._lock:
            return [i for i in self.items.values() if i.document_id == scope_id and not i.is_completed]

    def export(self, directory: Path) -> list[Path]:
        """Write every artifact as ``<url>.md`` under *directory*."""
        directory.mkdir(parents=True, exist_ok=True)
        written: list[Path] = []
        with self._lock:
            artifacts = list(self.artifacts.values())
            by_id = dict(self.items)
        for artifact in artifacts:
            item = by_id.get(artifact.item_id)
            stem = _safe_filename(item.url if item else artifact.title)
            path = directory / f"{stem}.md"
            path.write_text(artifact.content, encoding="utf-8")
            written.append(path)
        return written


def _safe_filename(name: str) -> str:
    return re.sub(r"[^\w.-]+", "-", name).strip("-") or "document"
