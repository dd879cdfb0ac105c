"""
Batched and prioritized cache-aware fetching for prefetch and warm-up.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .core import TagLike
from .fetcher import StaleWhileRevalidateFetcher
from .scheduler import Scheduler, SystemScheduler

logger = logging.getLogger("cache.orchestrator")

# Pause between sequential prefetches (seconds)
DEFAULT_PREFETCH_DELAY = 0.1


class Priority(Enum):
    """Prefetch priority. Lower rank runs first."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


@dataclass
class BatchQuery:
    """One fetch in a batch."""
    key: str
    fetcher: Callable[[], Any]
    ttl: Optional[float] = None
    tags: Optional[Iterable[TagLike]] = None


@dataclass
class BatchResult:
    """Outcome of one batched fetch. Exactly one of data/error is meaningful."""
    key: str
    data: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PrefetchConfig:
    """A key to warm, with its priority and an optional gate."""
    key: str
    fetcher: Callable[[], Any]
    priority: Union[Priority, str] = Priority.MEDIUM
    condition: Optional[Callable[[], bool]] = None
    ttl: Optional[float] = None
    tags: Optional[Iterable[TagLike]] = None

    def __post_init__(self):
        if not isinstance(self.priority, Priority):
            self.priority = Priority(str(self.priority).lower())


@dataclass
class PrefetchSummary:
    """What a prefetch run did with each key."""
    fetched: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    filtered: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "fetched": self.fetched,
            "skipped": self.skipped,
            "failed": self.failed,
            "filtered": self.filtered,
        }


class BatchOrchestrator:
    """
    Runs many fetches through a StaleWhileRevalidateFetcher.

    - batch_queries(): bounded-concurrency batches
    - prefetch(): priority-ordered, sequential, throttled warm-up
    """

    def __init__(
        self,
        fetcher: StaleWhileRevalidateFetcher,
        scheduler: Optional[Scheduler] = None,
        prefetch_delay: float = DEFAULT_PREFETCH_DELAY,
    ):
        self.fetcher = fetcher
        self._scheduler = scheduler or SystemScheduler()
        self.prefetch_delay = prefetch_delay

    def batch_queries(
        self,
        queries: Sequence[BatchQuery],
        max_concurrency: int = 5,
        fail_fast: bool = False,
    ) -> List[BatchResult]:
        """
        Fetch queries in batches of max_concurrency, each batch concurrently.

        Args:
            queries: Fetches to run, results come back in the same order
            max_concurrency: Batch size
            fail_fast: Raise the first error (in input order) and skip later
                batches. The failing batch itself still runs to completion.

        Returns:
            One BatchResult per query
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        results: List[BatchResult] = []
        for start in range(0, len(queries), max_concurrency):
            batch = queries[start:start + max_concurrency]

            with ThreadPoolExecutor(
                max_workers=len(batch), thread_name_prefix="cache-batch"
            ) as executor:
                futures = [
                    executor.submit(
                        self.fetcher.fetch_with_cache, q.key, q.fetcher, ttl=q.ttl, tags=q.tags
                    )
                    for q in batch
                ]

                for query, future in zip(batch, futures):
                    try:
                        results.append(BatchResult(key=query.key, data=future.result()))
                    except Exception as e:
                        if fail_fast:
                            logger.warning(f"Batch aborted on {query.key}: {e}")
                            raise
                        logger.warning(f"Batch query failed for {query.key}: {e}")
                        results.append(BatchResult(key=query.key, error=e))

        return results

    def prefetch(self, configs: Sequence[PrefetchConfig]) -> PrefetchSummary:
        """
        Warm keys one at a time, highest priority first.

        Configs whose condition is false are dropped, keys already fresh are
        skipped, failures are logged and skipped. Between consecutive configs
        the orchestrator sleeps prefetch_delay seconds so warming many keys
        doesn't flood the backend.
        """
        summary = PrefetchSummary()

        eligible: List[PrefetchConfig] = []
        for config in configs:
            if config.condition is None or self._check(config):
                eligible.append(config)
            else:
                summary.filtered.append(config.key)

        ordered = sorted(eligible, key=lambda c: c.priority.rank)
        store = self.fetcher.store

        for i, config in enumerate(ordered):
            try:
                # peek, not has: a stale copy must survive as the fallback
                entry = store.peek(config.key)
                if entry is not None and entry.is_fresh(store.now()):
                    summary.skipped.append(config.key)
                else:
                    self.fetcher.fetch_with_cache(
                        config.key, config.fetcher, ttl=config.ttl, tags=config.tags
                    )
                    summary.fetched.append(config.key)
            except Exception as e:
                logger.warning(f"Prefetch failed for {config.key}: {e}")
                summary.failed.append(config.key)

            if i < len(ordered) - 1:
                self._scheduler.sleep(self.prefetch_delay)

        logger.info(
            f"Prefetch done: {len(summary.fetched)} fetched, "
            f"{len(summary.skipped)} already fresh, {len(summary.failed)} failed"
        )
        return summary

    @staticmethod
    def _check(config: PrefetchConfig) -> bool:
        try:
            return bool(config.condition())
        except Exception as e:
            logger.warning(f"Prefetch condition failed for {config.key}: {e}")
            return False


class CacheWarmer:
    """Named warm-up strategies, run on demand."""

    def __init__(self):
        self._strategies: Dict[str, Callable[[], Any]] = {}

    def register(self, name: str, strategy: Callable[[], Any]) -> None:
        self._strategies[name] = strategy

    @property
    def strategies(self) -> List[str]:
        return sorted(self._strategies)

    def warm_up(self, name: str) -> bool:
        """
        Run a strategy. Failures are logged, not raised.

        Returns:
            True if the strategy ran without error
        """
        strategy = self._strategies.get(name)
        if strategy is None:
            logger.warning(f"Unknown cache warm-up strategy: {name}")
            return False
        try:
            strategy()
            logger.info(f"Cache warm-up complete: {name}")
            return True
        except Exception as e:
            logger.error(f"Cache warm-up failed for strategy {name}: {e}")
            return False
