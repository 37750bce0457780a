"""
Best-effort side effects: attempt, record outcome, continue.

Each step runs inside a SAVEPOINT so a failing write rolls back only its own
changes and leaves the surrounding transaction usable.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

log = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    name: str
    ok: bool
    error: str | None = None


@dataclass
class BestEffort:
    session: AsyncSession
    context: str = ""
    outcomes: list[StepOutcome] = field(default_factory=list)

    async def run(self, name: str, step: Callable[[], Awaitable[Any]]) -> Any:
        """Run step in a savepoint. Returns its result, or None if it failed."""
        try:
            async with self.session.begin_nested():
                result = await step()
        except Exception as e:
            log.warning("Best-effort step %s failed%s: %s",
                        name, f" ({self.context})" if self.context else "", e)
            self.outcomes.append(StepOutcome(name=name, ok=False, error=str(e)))
            return None
        self.outcomes.append(StepOutcome(name=name, ok=True))
        return result

    @property
    def failed_steps(self) -> list[str]:
        return [o.name for o in self.outcomes if not o.ok]
