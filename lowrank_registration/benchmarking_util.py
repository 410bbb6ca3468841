import contextlib
import logging
import time
from typing import Generator


@contextlib.contextmanager
def debug_timing(span_name: str) -> Generator[None, None, None]:
    """Log the wall time spent in this context at debug level."""
    start_time = time.perf_counter()
    yield
    logging.debug(f"{span_name}: {time.perf_counter() - start_time:0.3f}s")
