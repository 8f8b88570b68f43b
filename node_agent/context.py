"""Debug tracing of the nested steps of a lifecycle run.

Each step logs when it begins and ends, with its duration and the path of
enclosing steps, e.g. `Release 1.30.2 > Install kubelet`.
"""

from collections.abc import Iterator
import contextvars
from contextlib import contextmanager
import logging
import time

_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


_steps: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "steps", default=()
)


@contextmanager
def trace_context(name: str) -> Iterator[None]:
    """Trace a step nested in the current one."""
    token = _steps.set((*_steps.get(), name))
    label = " > ".join(_steps.get())
    start = time.monotonic()
    _LOGGER.debug("[Trace] begin %s", label)
    try:
        yield
    except BaseException:
        _LOGGER.debug("[Trace] failed %s (%0.2fs)", label, time.monotonic() - start)
        raise
    else:
        _LOGGER.debug("[Trace] end %s (%0.2fs)", label, time.monotonic() - start)
    finally:
        _steps.reset(token)
