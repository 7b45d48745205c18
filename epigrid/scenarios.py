"""Scenario hooks: perturbations applied once per step by the driver.

A scenario is any callable

    scenario(habitat, state, time, timestep) -> None

called after each advance with the post-step time (days). It may mutate
habitat data (active mask, budgets) or the state itself.
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence

import numpy as np

from epigrid.errors import ConfigurationError
from epigrid.habitat import GridHabitat
from epigrid.state import EpiState

ScenarioFn = Callable[[GridHabitat, EpiState, float, float], None]


class NoScenario:
    """Leaves everything untouched."""

    def __call__(self, habitat: GridHabitat, state: EpiState,
                 time: float, timestep: float) -> None:
        return None


class SimpleScenario:
    """Wraps a plain function with the scenario signature."""

    def __init__(self, fn: ScenarioFn):
        if not callable(fn):
            raise ConfigurationError("SimpleScenario needs a callable")
        self.fn = fn

    def __call__(self, habitat: GridHabitat, state: EpiState,
                 time: float, timestep: float) -> None:
        self.fn(habitat, state, time, timestep)


class LockdownScenario:
    """Deactivate cells for start <= time < end, then restore their flags.

    While inactive, cells neither export nor import virus; local
    transmission continues.
    """

    def __init__(self, cells: Sequence[int], start: float, end: float):
        if end <= start:
            raise ConfigurationError(
                f"lockdown end ({end}) must be after start ({start})")
        self.cells = np.asarray(cells, dtype=np.int64)
        self.start = float(start)
        self.end = float(end)
        self._saved: Optional[np.ndarray] = None

    @property
    def in_force(self) -> bool:
        return self._saved is not None

    def __call__(self, habitat: GridHabitat, state: EpiState,
                 time: float, timestep: float) -> None:
        if self.start <= time < self.end:
            if self._saved is None:
                self._saved = habitat.active[self.cells].copy()
                habitat.active[self.cells] = False
        elif self._saved is not None:
            habitat.active[self.cells] = self._saved
            self._saved = None
