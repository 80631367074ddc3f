"""Mirror orchestration: seed, process the queue to completion, admit discovered links."""

import itertools
import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from speculum.config import MAX_RETRY_WAIT, MirrorConfig
from speculum.errors import FetchError, HttpStatusError, MirrorError
from speculum.fetcher import Fetcher
from speculum.registry import CrawlRegistry, UrlFilter
from speculum.resource import ChildRef, Resource
from speculum.storage import clean_directory, normalize_url, prepare_directories

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


def allow_all(parsed_url: object) -> bool:
    return True


def is_retryable(e: BaseException) -> bool:
    """Transport failures, timeouts and transient server statuses are worth another attempt."""
    if isinstance(e, HttpStatusError):
        return e.status in RETRYABLE_STATUS
    return isinstance(e, FetchError)


class Orchestrator:
    """
    Owns one crawl: the registry and queue, the connection pool and the
    lifecycle. start() blocks until the queue is drained or stop() is called.
    With workers > 1 each worker dequeues on its own; every registry mutation
    happens under one lock.
    """

    def __init__(
        self,
        config: MirrorConfig,
        url_filter: UrlFilter | None = None,
        *,
        fetcher: Fetcher | None = None,
        on_finish: Callable[[bool], None] | None = None,
        on_resource: Callable[[Resource, bool], None] | None = None,
    ) -> None:
        self.config = config
        self.registry = CrawlRegistry(url_filter or allow_all)
        self.on_finish = on_finish
        self.on_resource = on_resource
        self._fetcher = fetcher
        self._lock = threading.Condition(threading.RLock())
        self._running = False
        self._halted = False
        self._in_flight = 0
        self._tmp_counter = itertools.count(1)
        self._tmp_prefix = f"speculum-tmp-{uuid.uuid4().hex[:8]}"

    @property
    def running(self) -> bool:
        return self._running

    @property
    def halted(self) -> bool:
        """True if stop() cut the crawl short."""
        return self._halted

    def _make_fetcher(self) -> Fetcher:
        c = self.config
        return Fetcher(
            header_timeout=c.header_timeout,
            body_timeout=c.body_timeout,
            headers={"User-Agent": c.user_agent},
            max_connections=c.max_connections,
            max_keepalive=c.max_keepalive,
            keepalive_expiry=c.keepalive_expiry,
        )

    # lifecycle

    def start(self) -> None:
        """
        Prepare directories, seed the entry URL and process until done.
        Raises StartupError (before any fetch) if the directories cannot be prepared.
        """
        with self._lock:
            if self._running:
                raise MirrorError("already running")
            self._running = True
            self._halted = False
        try:
            if self.config.clean_local:
                logger.info("Cleaning %s", self.config.local_root)
                clean_directory(self.config.local_root)
            prepare_directories(self.config.staging_dir, self.config.local_root)
        except MirrorError:
            self._running = False
            raise
        if self._fetcher is None:
            self._fetcher = self._make_fetcher()
        self._seed()
        self._run()

    def stop(self) -> None:
        """Let the resource in flight finish, then dequeue nothing more."""
        with self._lock:
            if not self._running:
                raise MirrorError("not running")
            self._halted = True
            self._lock.notify_all()

    def _seed(self) -> None:
        url = self.config.entry_url
        with self._lock:
            res = self.get_resource(url)
            res.expected_mime = "text/html"
            res.expected_local_path = res.calculate_local_path(url, "text/html")
            if not self.registry.query_filter(url):
                logger.warning("Entry url rejected by filter: %s", url)
                self.registry.mark_finished(res, ok=False)
                return
            self.registry.claim_path(res.expected_local_path, url)
            self.registry.enqueue(res)

    def _finish(self, completed: bool) -> None:
        logger.info(
            "Crawl %s: %s",
            "finished" if completed else "stopped",
            self.registry.url_stats(),
        )
        self._running = False
        try:
            if self.on_finish:
                self.on_finish(completed)
        finally:
            if self._fetcher is not None:
                self._fetcher.close()

    # processing loop

    def _run(self) -> None:
        workers = self.config.workers
        if workers == 1:
            self._worker()
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="speculum") as ex:
                futures = [ex.submit(self._worker) for _ in range(workers)]
                for fut in futures:
                    fut.result()
        self._finish(completed=not self._halted)

    def _next(self) -> Resource | None:
        """Next resource to process; None once halted or nothing is left anywhere."""
        with self._lock:
            while True:
                if self._halted:
                    return None
                res = self.registry.dequeue()
                if res is not None:
                    self._in_flight += 1
                    return res
                if self._in_flight == 0:
                    self._lock.notify_all()
                    return None
                self._lock.wait()

    def _worker(self) -> None:
        while True:
            res = self._next()
            if res is None:
                return
            ok = False
            try:
                ok = self._process(res)
            finally:
                with self._lock:
                    self._in_flight -= 1
                    self.registry.mark_finished(res, ok)
                    self._lock.notify_all()
            if self.on_resource:
                self.on_resource(res, ok)

    def _process(self, res: Resource) -> bool:
        """Run one pipeline, retrying per configuration. Never raises for a per-resource failure."""
        logger.debug("now processing %s", res.linked_url)
        while True:
            try:
                res.process(self._fetcher)
            except MirrorError as e:
                if is_retryable(e) and res.retries < self.config.max_retries:
                    wait = self._retry_wait(e, res.retries)
                    logger.info("Retrying %s in %.1fs: %s", res.linked_url, wait, e)
                    time.sleep(wait)
                    res.reset_for_retry()
                    continue
                logger.warning("Skipped %s: %s", res.linked_url, e)
                return False
            except Exception:
                logger.exception("Skipped %s: unexpected error", res.linked_url)
                return False
            logger.info("Saved %s -> %s", res.linked_url, res.local_path)
            return True

    def _retry_wait(self, e: MirrorError, attempt: int) -> float:
        retry_after = e.retry_after if isinstance(e, HttpStatusError) else None
        if retry_after is not None:
            return min(retry_after, MAX_RETRY_WAIT)
        return min(self.config.retry_backoff ** attempt, MAX_RETRY_WAIT)

    # called by resources while they run

    def get_resource(self, url: str) -> Resource:
        with self._lock:
            return self.registry.get_or_create(url, lambda u: Resource(u, self))

    def admit(self, references: Iterable[ChildRef]) -> int:
        """Queue every discovered reference not already queued or finished. Returns how many were added."""
        added = 0
        seen = 0
        with self._lock:
            for ref in references:
                seen += 1
                if self.registry.is_queued(ref.url) or self.registry.is_processed(ref.url):
                    continue
                res = self.get_resource(ref.url)
                res.expected_local_path = ref.local_path
                res.expected_mime = ref.mime
                self.registry.enqueue(res)
                added += 1
            self._lock.notify_all()
        logger.debug("added %s / %s resource urls", added, seen)
        return added

    def register_alias(self, url: str, res: Resource) -> bool:
        with self._lock:
            return self.registry.register_alias(url, res)

    def query_filter(self, url: str) -> bool:
        with self._lock:
            return self.registry.query_filter(url)

    def skip_file(self, local_path: Path, url: str) -> bool:
        """True if local_path already belongs to a different URL."""
        with self._lock:
            return not self.registry.claim_path(local_path, url)

    def record_download(self, nbytes: int, seconds: float) -> None:
        with self._lock:
            self.registry.stats.add_download(nbytes, nbytes / seconds if seconds > 0 else 0.0)

    def allocate_temp_name(self) -> Path:
        """A staging path no other resource of this or any concurrent crawl will get."""
        with self._lock:
            n = next(self._tmp_counter)
        return self.config.staging_dir / f"{self._tmp_prefix}-{n}"

    # reporting

    def is_url_queued(self, url: str) -> bool:
        with self._lock:
            return self.registry.is_queued(url)

    def is_url_processed(self, url: str) -> bool:
        with self._lock:
            return self.registry.is_processed(url)

    def url_stats(self) -> dict[str, int]:
        with self._lock:
            return self.registry.url_stats()

    def filter_analysis(self) -> dict[str, list[tuple[str, int]]]:
        with self._lock:
            return self.registry.filter_analysis()

    def status_of(self, url: str) -> str | None:
        """'queued', 'downloaded', 'skipped' or None for a URL never queued."""
        key = normalize_url(url)
        with self._lock:
            for name in ("queued", "downloaded", "skipped"):
                if key in getattr(self.registry, name):
                    return name
        return None
