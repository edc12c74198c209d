from dataclasses import dataclass, field

from prometheus_client import Counter, Histogram, Summary


LOADER_CACHE_HITS = Counter(
    name="batchloader_cache_hits",
    documentation="Loader cache hits",
    labelnames=["loader"],
)
LOADER_CACHE_MISSES = Counter(
    name="batchloader_cache_misses",
    documentation="Loader cache misses",
    labelnames=["loader"],
)
LOADER_BATCH_SIZE = Histogram(
    name="batchloader_batch_size",
    documentation="Number of keys passed to the fetch function",
    labelnames=["loader"],
    buckets=(1, 2, 5, 10, 25, 50, 100, 250, 500, 1000, float("inf")),
)
LOADER_FETCH_TIME = Summary(
    name="batchloader_fetch_time",
    documentation="Fetch function time (seconds)",
    labelnames=["loader"],
)


@dataclass
class LoaderMetrics:
    """Reports loader activity into Prometheus metrics

    :param name: value of the ``loader`` label
    """

    name: str
    hits_counter: Counter = LOADER_CACHE_HITS
    misses_counter: Counter = LOADER_CACHE_MISSES
    batch_size: Histogram = LOADER_BATCH_SIZE
    fetch_time: Summary = LOADER_FETCH_TIME
    _labels: dict = field(default_factory=dict, init=False, repr=False)

    def _child(self, metric):  # type: ignore
        # filled from several threads without a lock, labels() returns
        # the same child for the same label values
        try:
            return self._labels[metric]
        except KeyError:
            child = self._labels[metric] = metric.labels(self.name)
            return child

    def track(self, hits: int, misses: int) -> None:
        if hits:
            self._child(self.hits_counter).inc(hits)
        if misses:
            self._child(self.misses_counter).inc(misses)

    def observe_batch(self, size: int, duration: float) -> None:
        self._child(self.batch_size).observe(size)
        self._child(self.fetch_time).observe(duration)
