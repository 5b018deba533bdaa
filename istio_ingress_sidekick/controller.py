import asyncio
import logging
import time
from typing import AsyncGenerator, Final, Iterable

from .config import Settings
from .errors import NotFoundError, RetryableError, SidekickError
from .k8s import Store
from .models import INGRESS_CLASS_ANNOTATION, Ingress, IngressStatus, Secret
from .reconciler import IngressReconciler
from .workqueue import WorkQueue

log: Final = logging.getLogger(__name__)

FINALIZER: Final = "istio-ingress-sidekick.io/cleanup"


def secret_refs(ing: Ingress) -> list[tuple[str, str]]:
    return sorted({(tls.secret_namespace or ing.namespace, tls.secret_name) for tls in ing.spec.tls})


class IngressWatcher:
    def __init__(self, store: Store) -> None:
        self.store: Final = store

    async def lookup(self) -> dict[str, str]:
        """Maps each ingress key to its resourceVersion joined with those of the TLS secrets it references."""
        ingresses: Final = await asyncio.to_thread(self.store.list, Ingress)
        secrets: Final = await asyncio.to_thread(self.secret_versions, ingresses)
        return {
            ing.key: ",".join([ing.metadata.resource_version or "", *(secrets.get(ref, "") for ref in secret_refs(ing))])
            for ing in ingresses
        }

    def secret_versions(self, ingresses: Iterable[Ingress]) -> dict[tuple[str, str], str]:
        versions: dict[tuple[str, str], str] = {}
        for namespace in sorted({namespace for ing in ingresses for namespace, _ in secret_refs(ing)}):
            for secret in self.store.list(Secret, namespace):
                versions[(namespace, secret.name)] = secret.metadata.resource_version or ""
        return versions

    async def monitor(self, sleep_time: float, resync: float) -> AsyncGenerator[list[str], None]:
        """Yields the keys whose ingress or TLS secrets changed since the last poll, and every key once per resync."""
        old_versions: dict[str, str] = {}
        last_resync = time.monotonic()
        while True:
            new_versions = await self.lookup()

            if time.monotonic() - last_resync >= resync:
                log.info("Resyncing %d ingresses", len(new_versions))
                changed = sorted(new_versions)
                last_resync = time.monotonic()
            else:
                changed = sorted(key for key, version in new_versions.items() if old_versions.get(key) != version)

            if changed:
                yield changed
            else:
                log.debug("No change")
            old_versions = new_versions

            log.debug("Sleeping %.1f seconds", sleep_time)
            await asyncio.sleep(sleep_time)


class Controller:
    def __init__(self, store: Store, reconciler: IngressReconciler, settings: Settings) -> None:
        self.store = store
        self.reconciler = reconciler
        self.settings = settings
        self.queue: Final = WorkQueue()

    def is_ours(self, ing: Ingress) -> bool:
        return ing.annotations.get(INGRESS_CLASS_ANNOTATION, self.settings.INGRESS_CLASS) == self.settings.INGRESS_CLASS

    def _set_finalizers(self, ing: Ingress, finalizers: list[str]) -> Ingress:
        updated: Final = ing.model_copy(deep=True)
        updated.metadata.finalizers = finalizers or None
        return self.store.update(updated)

    def sync(self, key: str) -> None:
        namespace, _, name = key.partition("/")
        try:
            ing = self.store.get(Ingress, namespace, name)
        except NotFoundError:
            log.debug("%s is gone", key)
            return

        if not self.is_ours(ing):
            log.debug("%s belongs to another ingress class", key)
            return

        finalizers: Final = ing.metadata.finalizers or []
        if ing.metadata.deletion_timestamp:
            if FINALIZER in finalizers:
                log.info("%s: finalizing", key)
                self.reconciler.finalize(ing)
                self._set_finalizers(ing, [f for f in finalizers if f != FINALIZER])
            return

        if FINALIZER not in finalizers:
            ing = self._set_finalizers(ing, [*finalizers, FINALIZER])

        original: Final = ing.status.model_copy(deep=True)
        try:
            self.reconciler.reconcile(ing)
        except Exception:
            try:
                self._write_status(ing, original)
            except SidekickError as e:
                log.warning("%s: unable to record the failed status: %s", key, e)
            raise
        self._write_status(ing, original)

    def _write_status(self, ing: Ingress, original: IngressStatus) -> None:
        if ing.status != original:
            self.store.update_status(ing)

    async def worker(self, index: int) -> None:
        while True:
            key = await self.queue.get()
            try:
                await asyncio.to_thread(self.sync, key)
            except RetryableError as e:
                delay = self.queue.add_rate_limited(key)
                log.info("%s: %s, retrying in %.1f seconds", key, e, delay)
            except SidekickError as e:
                delay = self.queue.add_rate_limited(key)
                log.error("%s: %s, retrying in %.1f seconds", key, e, delay)
            except Exception:
                delay = self.queue.add_rate_limited(key)
                log.exception("%s: unexpected error in worker %d, retrying in %.1f seconds", key, index, delay)
            else:
                self.queue.forget(key)
            finally:
                self.queue.done(key)

    async def run(self, watcher: IngressWatcher, sleep_time: float, resync: float) -> None:
        workers: Final = [
            asyncio.create_task(self.worker(index), name=f"worker-{index}") for index in range(self.settings.WORKERS)
        ]
        try:
            async for keys in watcher.monitor(sleep_time, resync):
                log.info("Queueing %s", ", ".join(keys))
                for key in keys:
                    self.queue.add(key)
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            self.queue.shutdown()
