"""Core data types for epigrid.

This module is the SINGLE SOURCE OF TRUTH for:
  - ModelKind: the named compartment graphs
  - MODEL_CLASSES / MODEL_EDGES / SHEDDING_CLASSES: per-model tables
  - TransitionEdge: one directed edge of a compartment graph
  - VirusPool: rows of the virus state array
  - state_index() / class_block(): (age, class) → flat state index

State layout: the flat state vector is class-major. Class c occupies the
contiguous block [c*A, (c+1)*A) where A is the number of age categories,
so index = c*A + a.

Class conventions (all models):
  - class 0 is susceptible
  - class 1 is the first infection-facing class (Exposed or Infected)
  - the last class is the terminal "Dead" sink
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, Tuple

import numpy as np


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class ModelKind(str, Enum):
    """Named compartment graphs.

    SIS      S → I → S                      (+ death sink D)
    SIR      S → I → R                      (+ death sink D)
    SEIR     S → E → I → R                  (+ death sink D)
    SEIRS    S → E → I → R → S              (+ death sink D)
    SEI2HRD  S → E → A → Sy → H → R/D
    SEI3HRD  S → E → A/P → Sy → H → R/D
    """
    SIS = "SIS"
    SIR = "SIR"
    SEIR = "SEIR"
    SEIRS = "SEIRS"
    SEI2HRD = "SEI2HRD"
    SEI3HRD = "SEI3HRD"


class VirusPool(IntEnum):
    """Rows of EpiState.virus."""
    ENVIRONMENT = 0   # Persistent reservoir (decays at virus_decay)
    FORCE       = 1   # Virus shed during the last step, after dispersal


N_VIRUS_POOLS = len(VirusPool)


# ═══════════════════════════════════════════════════════════════════════
# EDGES
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TransitionEdge:
    """Directed edge source → target at the named stage rate.

    source/target are 0-based class indices; rate is a key into
    RateParameterSet.stage_rates.
    """
    source: int
    target: int
    rate: str


EdgeSpec = Tuple[TransitionEdge, ...]


def _edges(*triples) -> EdgeSpec:
    return tuple(TransitionEdge(s, t, r) for s, t, r in triples)


# ═══════════════════════════════════════════════════════════════════════
# PER-MODEL TABLES
# ═══════════════════════════════════════════════════════════════════════

MODEL_CLASSES: Dict[ModelKind, Tuple[str, ...]] = {
    ModelKind.SIS: ("Susceptible", "Infected", "Dead"),
    ModelKind.SIR: ("Susceptible", "Infected", "Recovered", "Dead"),
    ModelKind.SEIR: ("Susceptible", "Exposed", "Infected", "Recovered", "Dead"),
    ModelKind.SEIRS: ("Susceptible", "Exposed", "Infected", "Recovered", "Dead"),
    ModelKind.SEI2HRD: (
        "Susceptible", "Exposed", "Asymptomatic", "Symptomatic",
        "Hospitalised", "Recovered", "Dead",
    ),
    ModelKind.SEI3HRD: (
        "Susceptible", "Exposed", "Asymptomatic", "Presymptomatic",
        "Symptomatic", "Hospitalised", "Recovered", "Dead",
    ),
}

MODEL_EDGES: Dict[ModelKind, EdgeSpec] = {
    ModelKind.SIS: _edges(
        (1, 0, "sigma"),
    ),
    ModelKind.SIR: _edges(
        (1, 2, "sigma"),
    ),
    ModelKind.SEIR: _edges(
        (1, 2, "mu"),
        (2, 3, "sigma"),
    ),
    ModelKind.SEIRS: _edges(
        (1, 2, "mu"),
        (2, 3, "sigma"),
        (3, 0, "epsilon"),         # waning immunity
    ),
    ModelKind.SEI2HRD: _edges(
        (1, 2, "mu_1"),            # E  → A   incubation
        (2, 3, "mu_2"),            # A  → Sy  symptoms develop
        (3, 4, "hospitalisation"), # Sy → H
        (2, 5, "sigma_1"),         # A  → R
        (3, 5, "sigma_2"),         # Sy → R
        (4, 5, "sigma_hospital"),  # H  → R
        (3, 6, "death_home"),      # Sy → D
        (4, 6, "death_hospital"),  # H  → D
    ),
    ModelKind.SEI3HRD: _edges(
        (1, 2, "mu_1"),            # E  → A
        (1, 3, "mu_2"),            # E  → P
        (3, 4, "mu_3"),            # P  → Sy
        (4, 5, "hospitalisation"), # Sy → H
        (2, 6, "sigma_1"),         # A  → R
        (4, 6, "sigma_2"),         # Sy → R
        (5, 6, "sigma_hospital"),  # H  → R
        (4, 7, "death_home"),      # Sy → D
        (5, 7, "death_hospital"),  # H  → D
    ),
}

# Classes that shed virus (keys of RateParameterSet.virus_growth)
SHEDDING_CLASSES: Dict[ModelKind, Tuple[str, ...]] = {
    ModelKind.SIS: ("Infected",),
    ModelKind.SIR: ("Infected",),
    ModelKind.SEIR: ("Infected",),
    ModelKind.SEIRS: ("Infected",),
    ModelKind.SEI2HRD: ("Asymptomatic", "Symptomatic"),
    ModelKind.SEI3HRD: ("Asymptomatic", "Presymptomatic", "Symptomatic"),
}


def required_rates(kind: ModelKind) -> Tuple[str, ...]:
    """Stage-rate names referenced by a model's edge table, in edge order."""
    seen = []
    for edge in MODEL_EDGES[kind]:
        if edge.rate not in seen:
            seen.append(edge.rate)
    return tuple(seen)


def class_position(kind: ModelKind, name: str) -> int:
    """0-based class index of a named class in a model.

    Raises:
        KeyError: If the model has no class with that name.
    """
    names = MODEL_CLASSES[kind]
    if name not in names:
        raise KeyError(f"{kind.value} has no class '{name}'. Classes: {names}")
    return names.index(name)


# ═══════════════════════════════════════════════════════════════════════
# STATE INDEXING
# ═══════════════════════════════════════════════════════════════════════

def state_index(age: int, cls: int, age_categories: int) -> int:
    """Flat state index of (age category, class)."""
    return cls * age_categories + age


def class_block(cls: int, age_categories: int) -> np.ndarray:
    """Flat indices of one class across all age categories."""
    start = cls * age_categories
    return np.arange(start, start + age_categories)


def state_labels(class_names: Tuple[str, ...], age_categories: int) -> Tuple[str, ...]:
    """Human-readable label per flat state index ('Susceptible' or 'Susceptible[2]')."""
    if age_categories == 1:
        return tuple(class_names)
    return tuple(
        f"{name}[{a}]" for name in class_names for a in range(age_categories)
    )
