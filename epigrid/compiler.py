"""Compile rate parameter sets into sparse per-capita operators.

Three square matrices share one flat state index (class-major,
index = cls*A + age) and are laid out [to, from]:

  transition        linear stage progression + demographic death routing
  transition_force  beta_force on the Susceptible → class-1 block;
                      multiplied at run time by the direct-virus pressure
  transition_virus  beta_env on the same block; multiplied at run time
                      by the environmental-reservoir pressure

Plus the per-state virus_growth vector (shedding) and births vector.

Entries are assembled in a dict keyed by (to, from) with *set* semantics,
so an edge written at the same position as a death-routing entry replaces
it. The dict is emitted in sorted key order, which makes compilation
deterministic down to the CSR data/indices/indptr arrays.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property
from typing import Dict, Iterable, Mapping, Optional, Tuple

import numpy as np
from scipy import sparse

from epigrid.errors import ConfigurationError
from epigrid.params import RateParameterSet
from epigrid.types import EdgeSpec, TransitionEdge, state_index


Entries = Dict[Tuple[int, int], float]


# ═══════════════════════════════════════════════════════════════════════
# COMPILED OPERATORS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CompiledOperators:
    """Immutable operator bundle consumed by the step engine."""
    births: np.ndarray                   # (n,) per-capita births by source state
    virus_growth: np.ndarray             # (n,) per-capita shedding
    virus_decay: float
    transition: sparse.csr_matrix        # (n, n) [to, from]
    transition_force: sparse.csr_matrix  # (n, n) [to, from]
    transition_virus: sparse.csr_matrix  # (n, n) [to, from]
    age_mixing: np.ndarray               # (A, A)
    freq_vs_density_force: float
    freq_vs_density_env: float
    env_virus_scale: float
    age_categories: int
    num_classes: int
    class_names: Tuple[str, ...]

    def __post_init__(self):
        n = self.age_categories * self.num_classes
        for name in ('transition', 'transition_force', 'transition_virus'):
            shape = getattr(self, name).shape
            if shape != (n, n):
                raise ConfigurationError(
                    f"{name} must be ({n}, {n}) for {self.num_classes} classes x "
                    f"{self.age_categories} age categories, got {shape}"
                )
        for name in ('births', 'virus_growth'):
            if getattr(self, name).shape != (n,):
                raise ConfigurationError(
                    f"{name} must have length {n}, got {getattr(self, name).shape}"
                )
        if len(self.class_names) != self.num_classes:
            raise ConfigurationError(
                f"{len(self.class_names)} class names for {self.num_classes} classes"
            )

    @property
    def n_states(self) -> int:
        return self.age_categories * self.num_classes

    @property
    def dead_class(self) -> int:
        return self.num_classes - 1

    # Dense views for the step engine; n is small (classes × ages).
    @cached_property
    def transition_dense(self) -> np.ndarray:
        return self.transition.toarray()

    @cached_property
    def force_dense(self) -> np.ndarray:
        return self.transition_force.toarray()

    @cached_property
    def virus_dense(self) -> np.ndarray:
        return self.transition_virus.toarray()


# ═══════════════════════════════════════════════════════════════════════
# MATRIX BUILDERS
# ═══════════════════════════════════════════════════════════════════════

def _to_csr(entries: Entries, n: int) -> sparse.csr_matrix:
    """Sorted (to, from) → value dict as an n×n CSR matrix."""
    keys = sorted(entries)
    rows = np.array([k[0] for k in keys], dtype=np.int64)
    cols = np.array([k[1] for k in keys], dtype=np.int64)
    data = np.array([entries[k] for k in keys], dtype=np.float64)
    mat = sparse.coo_matrix((data, (rows, cols)), shape=(n, n)).tocsr()
    mat.sort_indices()
    return mat


def check_edges(edges: Iterable[TransitionEdge], num_classes: int) -> None:
    """Reject out-of-range class indices, self-loops and duplicate edges.

    Raises:
        ConfigurationError: On the first malformed edge.
    """
    seen = set()
    for edge in edges:
        for end in (edge.source, edge.target):
            if not (0 <= end < num_classes):
                raise ConfigurationError(
                    f"edge {edge.source}->{edge.target} ({edge.rate}) references "
                    f"class {end}; valid classes are 0..{num_classes - 1}"
                )
        if edge.source == edge.target:
            raise ConfigurationError(
                f"edge {edge.source}->{edge.target} ({edge.rate}) is a self-loop"
            )
        key = (edge.source, edge.target)
        if key in seen:
            raise ConfigurationError(
                f"duplicate edge {edge.source}->{edge.target}"
            )
        seen.add(key)


def build_transition_matrix(death: np.ndarray, edges: EdgeSpec,
                            stage_rates: Mapping[str, np.ndarray],
                            age_categories: int,
                            num_classes: int) -> sparse.csr_matrix:
    """Linear per-capita operator: death routing then stage edges.

    Args:
        death: (A, C) per-capita death rates; column c is routed from
            class c to the last (Dead) class for every c < last.
        edges: Directed edges between classes.
        stage_rates: Rate name → (A,) per-age values.
        age_categories: A.
        num_classes: C.
    """
    A = age_categories
    last = num_classes - 1
    entries: Entries = {}
    for c in range(last):
        for a in range(A):
            entries[(state_index(a, last, A), state_index(a, c, A))] = float(death[a, c])
    for edge in edges:
        if edge.rate not in stage_rates:
            raise ConfigurationError(f"edge {edge.source}->{edge.target} "
                                     f"uses missing stage rate '{edge.rate}'")
        rate = np.asarray(stage_rates[edge.rate], dtype=np.float64)
        if rate.shape != (A,):
            raise ConfigurationError(
                f"stage rate '{edge.rate}' must have one value per age "
                f"category ({A}), got shape {rate.shape}")
        if not np.all(np.isfinite(rate)) or np.any(rate < 0):
            raise ConfigurationError(
                f"stage rate '{edge.rate}' must be finite and >= 0")
        for a in range(A):
            entries[(state_index(a, edge.target, A),
                     state_index(a, edge.source, A))] = float(rate[a])
    return _to_csr(entries, A * num_classes)


def build_infection_matrix(beta: np.ndarray, age_categories: int,
                           num_classes: int) -> sparse.csr_matrix:
    """beta on the diagonal of the Susceptible (0) → class-1 block."""
    A = age_categories
    entries: Entries = {
        (state_index(a, 1, A), state_index(a, 0, A)): float(beta[a])
        for a in range(A)
    }
    return _to_csr(entries, A * num_classes)


def build_virus_vector(virus_growth: Mapping[str, np.ndarray],
                       class_names: Tuple[str, ...],
                       age_categories: int) -> np.ndarray:
    """Per-state shedding rates; each class's rates scattered into its block.

    Classes listed more than once (or sharing a block) are summed.
    """
    A = age_categories
    out = np.zeros(A * len(class_names))
    for name, rates in virus_growth.items():
        if name not in class_names:
            raise ConfigurationError(
                f"shedding class '{name}' not in {class_names}"
            )
        cls = class_names.index(name)
        out[cls * A:(cls + 1) * A] += rates
    return out


# ═══════════════════════════════════════════════════════════════════════
# ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

def compile_operators(params: RateParameterSet,
                      edges: Optional[EdgeSpec] = None,
                      age_categories: Optional[int] = None,
                      num_classes: Optional[int] = None) -> CompiledOperators:
    """Compile a parameter set into CompiledOperators.

    Args:
        params: Validated rate parameter set.
        edges: Edge list; defaults to the model's own table.
        age_categories: Override for A; must match the parameter arrays.
        num_classes: Override for C; must match the parameter arrays.

    Returns:
        CompiledOperators with three n×n CSR matrices (n = A·C).

    Raises:
        ConfigurationError: Malformed edges or dimension mismatches.
    """
    A = params.age_categories if age_categories is None else int(age_categories)
    C = params.num_classes if num_classes is None else int(num_classes)
    if A != params.age_categories:
        raise ConfigurationError(
            f"age_categories={A} but parameters carry {params.age_categories}"
        )
    if C != params.num_classes:
        raise ConfigurationError(
            f"num_classes={C} but {params.kind.value} has {params.num_classes}"
        )
    if C < 2:
        raise ConfigurationError("a model needs at least two classes")
    edges = params.edges if edges is None else tuple(edges)
    check_edges(edges, C)

    class_names = params.class_names
    return CompiledOperators(
        births=params.birth.T.ravel().copy(),
        virus_growth=build_virus_vector(params.virus_growth, class_names, A),
        virus_decay=float(params.virus_decay),
        transition=build_transition_matrix(params.death, edges,
                                           params.stage_rates, A, C),
        transition_force=build_infection_matrix(params.beta_force, A, C),
        transition_virus=build_infection_matrix(params.beta_env, A, C),
        age_mixing=np.array(params.age_mixing, dtype=np.float64),
        freq_vs_density_force=params.freq_vs_density_force,
        freq_vs_density_env=params.freq_vs_density_env,
        env_virus_scale=params.env_virus_scale,
        age_categories=A,
        num_classes=C,
        class_names=class_names,
    )


def named_index(ops: CompiledOperators, name: str, age: int = 0) -> int:
    """Flat index of a named class at an age category."""
    if name not in ops.class_names:
        raise KeyError(f"no class '{name}'. Classes: {ops.class_names}")
    return state_index(age, ops.class_names.index(name), ops.age_categories)
