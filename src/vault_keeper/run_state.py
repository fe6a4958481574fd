"""
Run-log for round synchronization.

The controller carries an explicit RunState through every step and persists
it after each completed chain step, so a run interrupted by a crash or a
halt can be resumed exactly where it stopped.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import ChainStep, SyncStage

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass(slots=True)
class RunState:
    """
    Explicit state of one synchronization run.

    Attributes:
        run_id: Unique identifier of the run
        target_round: Round every chain must reach (also the target epoch)
        yield_amount: Signed yield booked by this run
        chain_steps: Last step completed per chain, in registry order
        stage: Current stage of the run
        price: Global price per share, once computed (reused verbatim on resume)
        aggregate: Verified inputs the price was computed from
        halt_reason: Why the run last halted, if it did
    """
    run_id: str
    target_round: int
    yield_amount: int
    chain_steps: dict[str, ChainStep]
    stage: SyncStage = SyncStage.IDLE
    price: int | None = None
    aggregate: dict[str, int] | None = None
    halt_reason: str | None = None
    started_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @classmethod
    def new(cls, target_round: int, yield_amount: int, chains: list[str]) -> "RunState":
        return cls(
            run_id=uuid.uuid4().hex[:12],
            target_round=target_round,
            yield_amount=yield_amount,
            chain_steps={name: ChainStep.NONE for name in chains},
        )

    @property
    def is_complete(self) -> bool:
        return self.stage is SyncStage.COMPLETE

    def reached(self, chain: str, step: ChainStep) -> bool:
        """Whether the chain already completed ``step`` (or a later one)."""
        return self.chain_steps[chain].rank >= step.rank

    def mark(self, chain: str, step: ChainStep) -> None:
        """Record that the chain completed ``step``; steps never move backwards."""
        if step.rank < self.chain_steps[chain].rank:
            raise ValueError(
                f"{chain}: cannot move from {self.chain_steps[chain].value} back to {step.value}"
            )
        self.chain_steps[chain] = step
        self.updated_at = _now()

    def enter(self, stage: SyncStage) -> None:
        self.stage = stage
        self.halt_reason = None
        self.updated_at = _now()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "run_id": self.run_id,
            "target_round": self.target_round,
            "yield_amount": self.yield_amount,
            "stage": self.stage.value,
            "chain_steps": {name: step.value for name, step in self.chain_steps.items()},
            "price": self.price,
            "aggregate": self.aggregate,
            "halt_reason": self.halt_reason,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunState":
        return cls(
            run_id=data["run_id"],
            target_round=int(data["target_round"]),
            yield_amount=int(data["yield_amount"]),
            chain_steps={name: ChainStep(step) for name, step in data["chain_steps"].items()},
            stage=SyncStage(data["stage"]),
            price=None if data.get("price") is None else int(data["price"]),
            aggregate=data.get("aggregate"),
            halt_reason=data.get("halt_reason"),
            started_at=data.get("started_at", _now()),
            updated_at=data.get("updated_at", _now()),
        )


class RunStateStore:
    """
    JSON-file persistence for the run-log.

    The file holds the current run (complete or not) and a bounded history
    of completed runs. Writes go to a temporary file that replaces the
    previous one, so a crash never leaves a truncated log.
    """

    def __init__(self, path: str | Path, max_history: int = 50):
        """
        Initialize the store.

        Args:
            path: Location of the run-log file
            max_history: Number of completed runs to keep
        """
        self.path = Path(path)
        self.max_history = max_history

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"current": None, "history": []}
        with self.path.open() as file:
            return json.load(file)

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w") as file:
            json.dump(data, file, indent=2)
        tmp_path.replace(self.path)

    def load(self) -> RunState | None:
        """
        Load the current run.

        Returns:
            The last run recorded, or None if there is none
        """
        current = self._read().get("current")
        return RunState.from_dict(current) if current else None

    def load_incomplete(self) -> RunState | None:
        """The current run if it has not completed yet."""
        state = self.load()
        return state if state and not state.is_complete else None

    def save(self, state: RunState) -> None:
        """Persist the run; completed runs are also appended to the history."""
        data = self._read()
        data["current"] = state.to_dict()

        if state.is_complete:
            history = [h for h in data.get("history", []) if h.get("run_id") != state.run_id]
            history.append(state.to_dict())
            data["history"] = history[-self.max_history:]

        self._write(data)
        logger.debug(f"Run {state.run_id} saved ({state.stage.value})")

    def history(self) -> list[RunState]:
        """Completed runs, oldest first."""
        return [RunState.from_dict(h) for h in self._read().get("history", [])]
