"""Best-effort deletion of stored media and its sibling variants."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from lotmedia.lib import observability
from lotmedia.lib.exceptions import MediaError, PartialCleanupFailure
from lotmedia.lib.storage.base import StorageBackend
from lotmedia.lib.storage.keys import key_from_url, sibling_keys

logger = logging.getLogger(__name__)


@dataclass
class DeletionReport:
    deleted: int = 0
    failed: list[str] = field(default_factory=list)


class DeletionCoordinator:
    """Delete assets on whichever tier holds them.

    Nothing here raises for storage trouble: record deletion must not fail
    because an image could not be cleaned up.
    """

    def __init__(self, remote: StorageBackend, local: StorageBackend) -> None:
        self._remote = remote
        self._local = local

    def _backends(self) -> list[StorageBackend]:
        backends = [self._local]
        if self._remote.enabled:
            backends.insert(0, self._remote)
        return backends

    def _base_urls(self) -> list[str]:
        urls = []
        if self._remote.enabled:
            urls.extend(getattr(self._remote, "url_bases", ()))
        urls.append(getattr(self._local, "url_prefix", ""))
        return [u for u in urls if u]

    def to_key(self, item) -> str:
        """Accept a key, a URL, an upload descriptor or a mapping with ``key``/``url``."""
        if isinstance(item, dict):
            item = item.get("key") or item.get("url")
        elif not isinstance(item, str) and hasattr(item, "key"):
            item = item.key
        return key_from_url(item, self._base_urls())

    async def _delete_everywhere(self, key: str) -> bool:
        ok = True
        for backend in self._backends():
            try:
                await backend.delete(key)
            except MediaError as exc:
                logger.warning("Deleting %s from %s failed: %s", key, backend.kind.value, exc.message)
                ok = False
        return ok

    async def delete(self, key_or_url) -> None:
        """Delete one asset and its derived variants. Missing keys succeed."""
        key = self.to_key(key_or_url)
        if not key:
            return
        with observability.storage_span("delete", key=key):
            if not await self._delete_everywhere(key):
                observability.warning("Could not fully delete {key}", key=key)

            failed = [s for s in sibling_keys(key) if not await self._delete_everywhere(s)]
            if failed:
                self._report_partial(PartialCleanupFailure(key, failed))

    async def delete_many(self, keys_or_urls: Iterable) -> DeletionReport:
        """Delete several assets, reporting per-key failures instead of raising."""
        primaries = list(dict.fromkeys(k for k in (self.to_key(i) for i in keys_or_urls) if k))
        report = DeletionReport()
        if not primaries:
            return report

        siblings = {key: sibling_keys(key) for key in primaries}
        all_keys = list(dict.fromkeys(primaries + [s for group in siblings.values() for s in group]))

        with observability.storage_span("delete_many", count=len(primaries)):
            failed: set[str] = set()
            if self._remote.enabled:
                failed |= await self._delete_remote_batch(all_keys)
            for key in all_keys:
                try:
                    await self._local.delete(key)
                except MediaError as exc:
                    logger.warning("Local delete of %s failed: %s", key, exc.message)
                    failed.add(key)

        for key in primaries:
            if key in failed:
                report.failed.append(key)
            else:
                report.deleted += 1
            missed = [s for s in siblings[key] if s in failed]
            if missed:
                self._report_partial(PartialCleanupFailure(key, missed))

        if report.failed:
            observability.warning(
                "Batch delete removed {deleted} asset(s), {failed} failed",
                deleted=report.deleted,
                failed=len(report.failed),
            )
        return report

    async def _delete_remote_batch(self, keys: list[str]) -> set[str]:
        batch_delete = getattr(self._remote, "delete_many", None)
        if batch_delete is not None:
            try:
                return set(await batch_delete(keys))
            except MediaError as exc:
                logger.warning("Remote batch delete failed, deleting keys one by one: %s", exc.message)

        failed: set[str] = set()
        for key in keys:
            try:
                await self._remote.delete(key)
            except MediaError:
                failed.add(key)
        return failed

    @staticmethod
    def _report_partial(exc: PartialCleanupFailure) -> None:
        observability.warning("Partial cleanup: {detail}", detail=exc.message)
