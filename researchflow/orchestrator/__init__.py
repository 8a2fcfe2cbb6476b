"""Retry policy, cycle orchestration, scheduling and operator operations.

Public API
----------
* :class:`~researchflow.orchestrator.retry.RetryExecutor`: bounded retries
  with exponential backoff and jitter around one async operation.
* :func:`~researchflow.orchestrator.scheduler.compute_due_schedules` /
  :func:`~researchflow.orchestrator.scheduler.dispatch_due_schedules` /
  :func:`~researchflow.orchestrator.scheduler.run_dispatch_loop`: schedule
  due calculation and the automatic dispatcher.
* :mod:`researchflow.orchestrator.runs`: run creation, stop flag, schedules,
  focus questions and ticker import.

The stage-dependent modules (:mod:`~researchflow.orchestrator.cycle`,
:mod:`~researchflow.orchestrator.invoker`,
:mod:`~researchflow.orchestrator.runner`) are imported from their own
modules; :mod:`researchflow.stages` depends on the retry executor above.
"""

from researchflow.orchestrator.retry import RetryExecutor, backoff_seconds
from researchflow.orchestrator.runs import (
    create_run,
    enqueue_focus_questions,
    get_schedule,
    import_tickers,
    set_stop_flag,
    upsert_schedule,
)
from researchflow.orchestrator.scheduler import (
    DispatchResult,
    compute_due_schedules,
    compute_next_trigger,
    dispatch_due_schedules,
    run_dispatch_loop,
)

__all__ = [
    # Retry policy
    "RetryExecutor",
    "backoff_seconds",
    # Scheduling
    "DispatchResult",
    "compute_due_schedules",
    "compute_next_trigger",
    "dispatch_due_schedules",
    "run_dispatch_loop",
    # Operator operations
    "create_run",
    "set_stop_flag",
    "upsert_schedule",
    "get_schedule",
    "enqueue_focus_questions",
    "import_tickers",
]
