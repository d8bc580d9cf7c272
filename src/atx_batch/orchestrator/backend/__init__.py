"""Process runner implementations."""

from atx_batch.orchestrator.backend.base import (
    TIMEOUT_EXIT_CODE,
    ProcessRunner,
    ProcessRunRequest,
    ProcessRunResult,
)
from atx_batch.orchestrator.backend.cli_backend import (
    ProcessRunError,
    SubprocessRunner,
    run_subprocess_with_cancel,
)

__all__ = [
    "TIMEOUT_EXIT_CODE",
    "ProcessRunError",
    "ProcessRunRequest",
    "ProcessRunResult",
    "ProcessRunner",
    "SubprocessRunner",
    "run_subprocess_with_cancel",
]
