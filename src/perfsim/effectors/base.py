"""Common shape of every fault effector."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, ValidationError

from perfsim.config import Settings
from perfsim.core import SimulationValidationError
from perfsim.events import EventLog
from perfsim.models import Simulation, SimulationType
from perfsim.storage import StateStore
from perfsim.tracker import SimulationTracker

ModelT = TypeVar("ModelT", bound=BaseModel)


class Effector(ABC):
    """Owns one simulation type's side effect.

    Subclasses implement ``start``.  ``stop`` and ``cleanup`` default to a
    plain tracker transition / no-op; ``perform_if_active`` returns ``None``
    unless the type does real work inside probe requests.
    """

    simulation_type: ClassVar[SimulationType]

    def __init__(
        self,
        store: StateStore,
        tracker: SimulationTracker,
        event_log: EventLog,
        settings: Settings,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._events = event_log
        self._settings = settings

    @abstractmethod
    def start(self, params: BaseModel | dict[str, Any]) -> Simulation:
        """Validate *params* and begin the simulation."""

    def stop(self, simulation_id: str) -> Simulation | None:
        return self._tracker.stop_simulation(
            simulation_id, f"{self.simulation_type.value} simulation stopped by user"
        )

    def cleanup(self, simulation_id: str) -> None:
        """Undo side effects of a simulation that expired on its own."""

    def perform_if_active(self) -> BaseModel | None:
        """Do this type's per-probe work, or return ``None`` when inactive."""
        return None

    def get_active_simulations(self) -> list[Simulation]:
        return self._tracker.get_active_simulations_by_type(self.simulation_type)

    def has_active_simulations(self) -> bool:
        return bool(self.get_active_simulations())

    def _check_duration(self, seconds: float, field: str = "duration_seconds") -> None:
        limit = self._settings.max_simulation_duration_seconds
        if seconds > limit:
            raise SimulationValidationError(f"{field} must be between 1 and {limit}")


def parse_params(model: type[ModelT], params: BaseModel | dict[str, Any]) -> ModelT:
    """Validate *params* into *model*, raising :class:`SimulationValidationError`."""
    if isinstance(params, model):
        return params
    if isinstance(params, BaseModel):
        params = params.model_dump()
    try:
        return model.model_validate(params)
    except ValidationError as exc:
        raise SimulationValidationError.from_pydantic(exc) from exc


__all__ = ["Effector", "parse_params"]
