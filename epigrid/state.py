"""Abundance state: host counts by (class, age) and virus pools by cell.

EpiState.human  int64   (n_states, J)   n_states = num_classes × A
EpiState.virus  float64 (N_VIRUS_POOLS, J), rows indexed by VirusPool
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence, Union

import numpy as np

from epigrid.compiler import CompiledOperators
from epigrid.errors import ConfigurationError
from epigrid.habitat import GridHabitat
from epigrid.types import N_VIRUS_POOLS, VirusPool, state_index


@dataclass
class EpiState:
    human: np.ndarray   # (n_states, J) int64
    virus: np.ndarray   # (N_VIRUS_POOLS, J) float64

    @property
    def n_states(self) -> int:
        return self.human.shape[0]

    @property
    def n_subcommunities(self) -> int:
        return self.human.shape[1]

    def total_hosts(self) -> int:
        return int(self.human.sum())

    def copy(self) -> 'EpiState':
        return EpiState(human=self.human.copy(), virus=self.virus.copy())


def empty_state(ops: CompiledOperators, habitat: GridHabitat) -> EpiState:
    J = habitat.n_subcommunities
    return EpiState(
        human=np.zeros((ops.n_states, J), dtype=np.int64),
        virus=np.zeros((N_VIRUS_POOLS, J), dtype=np.float64),
    )


def _per_age_counts(value: Union[int, Sequence[int]], A: int, name: str) -> np.ndarray:
    counts = np.atleast_1d(np.asarray(value, dtype=np.int64))
    if counts.size == 1 and A > 1:
        # A single count lands in age category 0
        out = np.zeros(A, dtype=np.int64)
        out[0] = counts[0]
        return out
    if counts.shape != (A,):
        raise ConfigurationError(
            f"initial abundance for '{name}' must be a count or {A} per-age "
            f"counts, got shape {counts.shape}")
    return counts


def distribute_initial(ops: CompiledOperators, habitat: GridHabitat,
                       abundances: Mapping[str, Union[int, Sequence[int]]],
                       rng: np.random.Generator) -> EpiState:
    """Scatter per-class totals over active cells in proportion to budget.

    Args:
        ops: Compiled operators (supplies class names and A).
        habitat: Grid habitat.
        abundances: Class name → total count (age 0) or per-age counts.
            Classes not listed start empty.
        rng: Random generator for the multinomial split.

    Returns:
        New EpiState with empty virus pools.
    """
    state = empty_state(ops, habitat)
    weights = np.where(habitat.active, habitat.budget, 0.0)
    if weights.sum() <= 0:
        raise ConfigurationError("no active cell with positive budget")
    weights = weights / weights.sum()
    A = ops.age_categories
    for name, value in abundances.items():
        if name not in ops.class_names:
            raise ConfigurationError(
                f"unknown class '{name}' in initial abundances; "
                f"classes are {ops.class_names}")
        if np.any(np.asarray(value) < 0):
            raise ConfigurationError(f"initial abundance for '{name}' is negative")
        cls = ops.class_names.index(name)
        for a, count in enumerate(_per_age_counts(value, A, name)):
            if count > 0:
                state.human[state_index(a, cls, A)] = rng.multinomial(count, weights)
    return state


def seed_hosts(state: EpiState, ops: CompiledOperators, name: str,
               count: int, cell: int = 0, age: int = 0) -> EpiState:
    """Add `count` hosts of class `name` to one cell."""
    if name not in ops.class_names:
        raise ConfigurationError(f"unknown class '{name}'; classes are {ops.class_names}")
    if count < 0:
        raise ConfigurationError(f"cannot seed a negative count ({count})")
    if not (0 <= age < ops.age_categories):
        raise ConfigurationError(f"age category {age} out of range")
    idx = state_index(age, ops.class_names.index(name), ops.age_categories)
    state.human[idx, cell] += int(count)
    return state


def seed_virus(state: EpiState, amount: float, cell: int = 0,
               pool: VirusPool = VirusPool.ENVIRONMENT) -> EpiState:
    """Add virus to one pool of one cell."""
    if amount < 0 or not np.isfinite(amount):
        raise ConfigurationError(f"virus amount must be finite and >= 0, got {amount}")
    state.virus[int(pool), cell] += float(amount)
    return state


def class_totals(human: np.ndarray, ops: CompiledOperators) -> np.ndarray:
    """Sum age categories: (n_states, ...) → (num_classes, ...)."""
    A = ops.age_categories
    return human.reshape((ops.num_classes, A) + human.shape[1:]).sum(axis=1)


def living_population(human: np.ndarray, ops: CompiledOperators) -> np.ndarray:
    """Hosts in every class except the terminal one, per cell."""
    alive = (ops.num_classes - 1) * ops.age_categories
    return human[:alive].sum(axis=0)
