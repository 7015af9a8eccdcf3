"""Load a plan from text, asking the model to repair it when it is unreadable."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Literal

from ..errors import BackendUnavailable
from .deserializer import ParseFailure, ParseSuccess, deserialize
from .model import Plan, utcnow

__all__ = ["Corrector", "LoadOutcome", "LoadSource", "RecoveryManager"]

LOGGER = logging.getLogger(__name__)

Corrector = Callable[[str], Awaitable[str]]
LoadSource = Literal["new", "parsed", "corrected", "fallback"]


@dataclass(slots=True, frozen=True)
class LoadOutcome:
    """The loaded plan plus how it was obtained."""

    plan: Plan
    source: LoadSource
    attempts: int = 0
    failure: ParseFailure | None = None
    warnings: tuple[str, ...] = ()

    @property
    def fell_back(self) -> bool:
        return self.source == "fallback"


class RecoveryManager:
    """Turns stored text into a :class:`Plan`, never failing the session.

    A :class:`ParseFailure` triggers up to ``max_attempts`` corrective requests
    through ``corrector``. When those run out the manager returns a fresh
    empty plan and logs the fallback.
    """

    def __init__(self, corrector: Corrector | None = None, *, max_attempts: int = 1) -> None:
        self._corrector = corrector
        self._max_attempts = max(0, int(max_attempts))

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def load(self, raw_text: str | bytes | None, correct_attempts: int | None = None) -> Plan:
        """Return the plan for ``raw_text``; see :meth:`load_with_outcome`."""

        outcome = await self.load_with_outcome(raw_text, correct_attempts)
        return outcome.plan

    async def load_with_outcome(
        self,
        raw_text: str | bytes | None,
        correct_attempts: int | None = None,
        *,
        now: datetime | None = None,
    ) -> LoadOutcome:
        """Parse ``raw_text``, running the corrective loop on failure.

        Args:
            raw_text: Stored document, or ``None`` when the session has no plan yet.
            correct_attempts: Overrides the configured retry budget.
            now: Time used for defaulted timestamps.

        Returns:
            A :class:`LoadOutcome`; its plan is always valid.

        Raises:
            BackendUnavailable: when the corrector cannot reach the model for a
                reason other than a timeout.
        """

        moment = now or utcnow()
        if raw_text is None:
            return LoadOutcome(plan=Plan.empty(now=moment), source="new")

        result = deserialize(raw_text, now=moment)
        if isinstance(result, ParseSuccess):
            return LoadOutcome(plan=result.plan, source="parsed", warnings=result.warnings)

        budget = self._max_attempts if correct_attempts is None else max(0, int(correct_attempts))
        failure = result
        attempts = 0
        while attempts < budget and self._corrector is not None:
            attempts += 1
            LOGGER.info(
                "Plan unreadable (%s); corrective attempt %s of %s",
                failure.reason,
                attempts,
                budget,
            )
            try:
                reply = await self._corrector(failure.corrective_prompt)
            except BackendUnavailable as exc:
                if not exc.is_timeout:
                    raise
                LOGGER.info("Corrective attempt %s timed out", attempts)
                continue
            corrected = deserialize(reply, now=moment)
            if isinstance(corrected, ParseSuccess):
                return LoadOutcome(
                    plan=corrected.plan,
                    source="corrected",
                    attempts=attempts,
                    warnings=corrected.warnings,
                )
            failure = corrected

        LOGGER.warning(
            "Falling back to an empty plan after %s corrective attempt(s): %s",
            attempts,
            failure.diagnosis,
        )
        return LoadOutcome(plan=Plan.empty(now=moment), source="fallback", attempts=attempts, failure=failure)
