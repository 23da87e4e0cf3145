"""Prometheus metrics for crawl runs."""

from prometheus_client import Counter, Histogram, Info

# Application info
app_info = Info("shopcrawl", "Shopcrawl application info")
app_info.info({"version": "0.1.0", "name": "shopcrawl"})

# Fetch metrics
crawl_pages_total = Counter(
    "crawl_pages_total",
    "Total number of category pages processed",
    ["status"],
)

crawl_fetch_errors_total = Counter(
    "crawl_fetch_errors_total",
    "Total number of failed page fetches",
    ["error_type"],
)

crawl_fetch_duration_seconds = Histogram(
    "crawl_fetch_duration_seconds",
    "Time spent fetching a single page",
    ["backend"],
    buckets=[0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 45.0],
)

# Ingest metrics
crawl_products_upserted_total = Counter(
    "crawl_products_upserted_total",
    "Total number of products handed to the ingest store",
)

crawl_subcategories_discovered_total = Counter(
    "crawl_subcategories_discovered_total",
    "Total number of subcategories discovered while crawling",
)


def record_page(status: str):
    """Record a processed page (ok, empty, blocked, error)."""
    crawl_pages_total.labels(status=status).inc()


def record_fetch_error(error_type: str):
    """Record a fatal fetch error by exception class name."""
    crawl_fetch_errors_total.labels(error_type=error_type).inc()


def record_fetch_duration(backend: str, seconds: float):
    """Record how long a fetch took."""
    crawl_fetch_duration_seconds.labels(backend=backend).observe(seconds)


def record_upserted(count: int):
    """Record products sent to the ingest store."""
    if count > 0:
        crawl_products_upserted_total.inc(count)


def record_subcategories(count: int):
    """Record discovered subcategories."""
    if count > 0:
        crawl_subcategories_discovered_total.inc(count)
