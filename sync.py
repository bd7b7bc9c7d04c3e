"""Debounced persistence of the Record Store to cache, remote store and mirror.

A burst of edits arms one timer; when it fires a save cycle writes the full
snapshot to the local cache, the four remote partitions concurrently, and
finally publishes to the mirror. Cycles are not serialized against each
other; each key write is a full overwrite, so the newest write wins.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Mapping, Optional, Set

from api_client import ApiError
from env_validation import ConfigurationError, get_env_float
from local_cache import LocalDurableCache
from record_store import RecordStore
from schemas import GithubSyncStatus

logger = logging.getLogger(__name__)

MIRROR_NOT_CONFIGURED = "GitHub sync is not configured."

StatusListener = Callable[[GithubSyncStatus], None]
MirrorPublish = Callable[[Mapping[str, Any], Mapping[str, Any]], Awaitable[Mapping[str, Any]]]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ImportResult:
    remote_saved: bool
    remote_error: Optional[str]
    mirror: GithubSyncStatus


class SyncOrchestrator:
    """Owns the save cycle for one :class:`RecordStore`.

    Must be created inside a running event loop; the store's handlers are
    expected to run on that loop too.
    """

    def __init__(
        self,
        store: RecordStore,
        remote: Any,
        cache: LocalDurableCache,
        publisher: Optional[MirrorPublish] = None,
        *,
        debounce_seconds: Optional[float] = None,
    ) -> None:
        self.store = store
        self.remote = remote
        self.cache = cache
        self._publish_mirror: MirrorPublish = publisher or remote.publish_mirror
        self.debounce_seconds = (
            debounce_seconds if debounce_seconds is not None else get_env_float("SYNC_DEBOUNCE_SECONDS", 1.0)
        )
        self.status = GithubSyncStatus()

        self._loop = asyncio.get_running_loop()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._sequence = 0
        self._status_listeners: List[StatusListener] = []
        self._closed = False
        self._unsubscribe = store.subscribe(self._on_change)

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------
    def _on_change(self, keys: FrozenSet[str], urgent: bool) -> None:
        if self._closed:
            return
        if urgent:
            logger.debug("Urgent change to %s; saving now", ", ".join(sorted(keys)))
            self._cancel_timer()
            self._fire()
        else:
            self.schedule()

    def schedule(self) -> None:
        """(Re)arm the debounce timer."""
        if self._closed:
            return
        self._cancel_timer()
        self._timer = self._loop.call_later(self.debounce_seconds, self._fire)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def _fire(self) -> asyncio.Task:
        self._timer = None
        self._sequence += 1
        task = self._loop.create_task(self._run_cycle(self._sequence))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Save cycle failed", exc_info=exc)

    # ------------------------------------------------------------------
    # save cycle
    # ------------------------------------------------------------------
    async def _run_cycle(self, sequence: int) -> None:
        snapshot = self.store.snapshot_payload()
        self.cache.save(snapshot)

        partitions = self.store.partitions()
        results = await asyncio.gather(
            *(self.remote.write_key(key, value) for key, value in partitions.items()),
            return_exceptions=True,
        )
        for key, result in zip(partitions, results):
            if isinstance(result, Exception):
                logger.error("Failed to save %s to the remote store: %s", key, result)

        await self._publish(sequence, snapshot)

    async def _publish(self, sequence: int, snapshot: Mapping[str, Any]) -> None:
        settings = self.store.settings
        if not settings.mirror_configured():
            self._set_status(sequence, GithubSyncStatus(status="idle", message=MIRROR_NOT_CONFIGURED))
            return

        self._set_status(sequence, GithubSyncStatus(status="syncing", timestamp=self.status.timestamp))
        try:
            result = await self._publish_mirror(settings.to_payload(), snapshot)
        except ApiError as exc:
            logger.warning("Mirror publish failed: %s", exc.message)
            self._set_status(sequence, GithubSyncStatus(status="error", message=exc.message))
            return

        if not isinstance(result, Mapping):
            self._set_status(sequence, GithubSyncStatus(status="error", message="Mirror publish failed."))
        elif result.get("success"):
            self._set_status(
                sequence,
                GithubSyncStatus(status="success", timestamp=_utc_now_iso(), message=result.get("message")),
            )
        else:
            self._set_status(
                sequence,
                GithubSyncStatus(status="error", message=result.get("message") or "Mirror publish failed."),
            )

    def _set_status(self, sequence: int, status: GithubSyncStatus) -> None:
        if sequence < self._sequence:
            logger.debug("Dropping %s status from superseded cycle %d", status.status, sequence)
            return
        self.status = status
        for listener in list(self._status_listeners):
            listener(status)

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        self._status_listeners.append(listener)

        def remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def flush(self) -> GithubSyncStatus:
        """Run a save cycle now instead of waiting for the timer."""
        self._cancel_timer()
        await self._fire()
        return self.status

    def close(self) -> None:
        """Stop reacting to changes. In-flight cycles keep running."""
        self._closed = True
        self._cancel_timer()
        self._unsubscribe()

    async def drain(self) -> None:
        """Wait until no timer is armed and no cycle is in flight."""
        while self._timer is not None or self._tasks:
            if self._tasks:
                await asyncio.wait(list(self._tasks))
            else:
                await asyncio.sleep(max(0.0, self._timer.when() - self._loop.time()))
                await asyncio.sleep(0)

    # ------------------------------------------------------------------
    # bulk paths
    # ------------------------------------------------------------------
    async def apply_import(self, payload: Mapping[str, Any]) -> ImportResult:
        """Replace everything with ``payload`` and persist it to every store.

        Validation errors propagate before anything changes. The remote
        write is one transaction; its failure is reported, not raised, and
        does not stop the mirror publish.
        """
        self.store.import_snapshot(payload, notify=False)
        self._cancel_timer()
        self._sequence += 1
        sequence = self._sequence

        snapshot = self.store.snapshot_payload()
        self.cache.save(snapshot)

        remote_error: Optional[str] = None
        try:
            await self.remote.write_all(self.store.partitions())
        except ApiError as exc:
            remote_error = exc.message
            logger.error("Failed to save imported snapshot to the remote store: %s", exc.message)

        await self._publish(sequence, snapshot)
        return ImportResult(remote_saved=remote_error is None, remote_error=remote_error, mirror=self.status)

    async def pull_from_mirror(self) -> ImportResult:
        """Fetch the mirrored snapshot through the server proxy and import it."""
        settings = self.store.settings
        if not settings.mirror_configured():
            raise ConfigurationError(MIRROR_NOT_CONFIGURED)
        data: Dict[str, Any] = await self.remote.fetch_mirror(
            settings.github_owner, settings.github_repo, settings.github_path, settings.github_pat
        )
        logger.info("Pulled snapshot from %s/%s:%s", settings.github_owner, settings.github_repo, settings.github_path)
        return await self.apply_import(data)
