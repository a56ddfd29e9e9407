import logging
import time
from contextlib import contextmanager
from importlib.metadata import PackageNotFoundError, version

from prometheus_client import CollectorRegistry, Gauge, generate_latest, write_to_textfile
from uvicorn.config import LOGGING_CONFIG

from .allocator import ReconcileResult

logging.config.dictConfig(LOGGING_CONFIG)

logger = logging.getLogger("uvicorn.error")

NAMESPACE = "subid_ldap"

try:
    VERSION = version("subid-ldap")
except PackageNotFoundError:
    VERSION = "unknown"

registry = CollectorRegistry()

build_info = Gauge("build_info", "Build information", ["version"], namespace=NAMESPACE, registry=registry)
error = Gauge("error", "Indicates an error was encountered", namespace=NAMESPACE, registry=registry)
run_duration = Gauge("run_duration_seconds", "Last runtime duration in seconds", namespace=NAMESPACE, registry=registry)
last_run = Gauge("last_run_timestamp_seconds", "Last timestamp of execution", namespace=NAMESPACE, registry=registry)
subid_total = Gauge("subid_total", "Total number of subid entries", namespace=NAMESPACE, registry=registry)
subid_added = Gauge("subid_added", "Number of subid entries added", namespace=NAMESPACE, registry=registry)
subid_removed = Gauge("subid_removed", "Number of subid entries removed", namespace=NAMESPACE, registry=registry)
subid_skipped = Gauge(
    "subid_skipped", "Number of subid file lines skipped as unparsable", namespace=NAMESPACE, registry=registry
)
subid_unassigned = Gauge(
    "subid_unassigned", "Number of users left without a subid for lack of capacity", namespace=NAMESPACE, registry=registry
)


def reset_metrics() -> None:
    build_info.labels(version=VERSION).set(1)
    for gauge in (error, subid_total, subid_added, subid_removed, subid_skipped, subid_unassigned):
        gauge.set(0)


def record_result(total: int, result: ReconcileResult) -> None:
    subid_total.set(total)
    subid_added.set(result.added)
    subid_removed.set(result.removed)
    subid_skipped.set(result.skipped)
    subid_unassigned.set(len(result.unassigned))
    if result.capacity_exhausted:
        error.set(1)


@contextmanager
def observe_run():
    """Time a sync pass and flag the error gauge if it raises."""
    started = time.time()
    last_run.set(started)
    try:
        yield
    except Exception:
        error.set(1)
        raise
    finally:
        run_duration.set(time.time() - started)


def render_metrics() -> bytes:
    return generate_latest(registry)


def write_metrics(path: str) -> None:
    try:
        write_to_textfile(path, registry)
    except OSError as e:
        logger.error(f"Failed to write metrics file {path}: {e}")


reset_metrics()
