"""Stage invocation seam used by the cycle orchestrator.

The orchestrator never calls a consumer directly.  It goes through a
:class:`StageInvoker`, which returns a :class:`StageResponse` carrying an
HTTP-equivalent status.  :class:`LocalStageInvoker` runs the consumers
in-process and maps their outcomes and exceptions onto those statuses:

* halted outcome → 409
* :class:`~researchflow.core.exceptions.ResearchflowError` → its
  ``status_code`` (404 for an unknown run, 403 for missing capabilities,
  500 for configuration errors…)
* anything else → 502, as for a failed transport call

A remote transport could implement the same protocol without touching the
orchestrator.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from researchflow.core.auth import Capabilities
from researchflow.core.exceptions import ResearchflowError
from researchflow.core.models import StageName
from researchflow.stages.base import StageConsumer, StageOutcome

__all__ = ["StageResponse", "StageInvoker", "LocalStageInvoker"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageResponse:
    """Result of one stage invocation as seen by the orchestrator."""

    stage: StageName
    status_code: int
    outcome: StageOutcome | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def halted(self) -> bool:
        return self.status_code == 409


class StageInvoker(Protocol):
    """Anything able to run one batch of a stage for a run."""

    async def invoke(
        self,
        stage: StageName,
        run_id: str,
        limit: int,
        *,
        client_meta: Mapping[str, Any] | None = None,
    ) -> StageResponse: ...


class LocalStageInvoker:
    """In-process :class:`StageInvoker` backed by consumer instances.

    Args:
        consumers: Consumer per stage.
        capabilities: Capabilities passed to every consumer call.
    """

    def __init__(
        self,
        consumers: Mapping[StageName, StageConsumer],
        capabilities: Capabilities,
    ) -> None:
        self._consumers = dict(consumers)
        self._capabilities = capabilities

    async def invoke(
        self,
        stage: StageName,
        run_id: str,
        limit: int,
        *,
        client_meta: Mapping[str, Any] | None = None,
    ) -> StageResponse:
        consumer = self._consumers.get(stage)
        if consumer is None:
            return StageResponse(stage, 500, error=f"No consumer registered for {stage}")
        try:
            outcome = await consumer.consume(
                run_id, limit, capabilities=self._capabilities, client_meta=client_meta
            )
        except ResearchflowError as exc:
            logger.warning("Stage %s invocation failed: %s", stage, exc)
            return StageResponse(stage, exc.status_code, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Stage %s invocation crashed.", stage)
            return StageResponse(stage, 502, error=f"{type(exc).__name__}: {exc}")
        return StageResponse(stage, outcome.status_code, outcome=outcome)
