"""Grid habitat: subcommunities, budgets, active mask and virus dispersal.

A rectangular grid of equal-area cells. Cells are numbered row-major
(cell = row * ncols + col). Each cell carries a host budget (the weight
used when distributing initial abundances) and an active flag that
scenarios may toggle.

Dispersal convention:
  D[j, k] = fraction of virus shed at cell j that lands in cell k.
  Rows sum to 1, so dispersal conserves virus; received = D.T @ shed.

Kernel: Gaussian exp(-d² / (2σ²)) on centre-to-centre distance. Weights
below `threshold` are dropped before rows are normalised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import numpy as np

from epigrid.errors import ConfigurationError


# ═══════════════════════════════════════════════════════════════════════
# DISTANCES & KERNEL
# ═══════════════════════════════════════════════════════════════════════

def grid_distance_matrix(shape: Tuple[int, int],
                         cell_size_km: float) -> np.ndarray:
    """Pairwise centre-to-centre distances (km) between grid cells.

    Args:
        shape: (rows, cols).
        cell_size_km: Side length of one square cell.

    Returns:
        (J, J) symmetric distance matrix, J = rows × cols.
    """
    rows, cols = shape
    r, c = np.divmod(np.arange(rows * cols), cols)
    dr = r[:, None] - r[None, :]
    dc = c[:, None] - c[None, :]
    return np.sqrt(dr * dr + dc * dc) * cell_size_km


def gaussian_dispersal(distances: np.ndarray, sigma_km: float,
                       threshold: float = 1e-10) -> np.ndarray:
    """Row-stochastic Gaussian dispersal matrix.

    Args:
        distances: (J, J) distance matrix (km).
        sigma_km: Kernel standard deviation (km). 0 keeps all virus local.
        threshold: Unnormalised weights below this are set to zero.

    Returns:
        (J, J) matrix with rows summing to 1.
    """
    if sigma_km < 0:
        raise ConfigurationError(f"dispersal sigma must be >= 0, got {sigma_km}")
    if not (0.0 <= threshold < 1.0):
        raise ConfigurationError(
            f"dispersal threshold must be in [0, 1), got {threshold}")
    J = distances.shape[0]
    if sigma_km == 0:
        return np.eye(J)
    kernel = np.exp(-(distances ** 2) / (2.0 * sigma_km ** 2))
    kernel[kernel < threshold] = 0.0
    # Diagonal weight is exp(0) = 1, so no row is empty
    return kernel / kernel.sum(axis=1, keepdims=True)


# ═══════════════════════════════════════════════════════════════════════
# HABITAT
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class GridHabitat:
    """Mutable habitat collaborator read by the step engine.

    Scenarios may change `active` (and budgets) between steps. Everything
    else is fixed after construction.
    """
    shape: Tuple[int, int]
    cell_size_km: float
    budget: np.ndarray           # (J,) host budget weight per cell
    active: np.ndarray           # (J,) bool
    dispersal: np.ndarray        # (J, J) row-stochastic
    names: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        J = self.shape[0] * self.shape[1]
        self.budget = np.asarray(self.budget, dtype=np.float64)
        self.active = np.asarray(self.active, dtype=bool)
        self.dispersal = np.asarray(self.dispersal, dtype=np.float64)
        if self.budget.shape != (J,):
            raise ConfigurationError(
                f"budget must have one entry per cell ({J}), got {self.budget.shape}")
        if self.active.shape != (J,):
            raise ConfigurationError(
                f"active must have one entry per cell ({J}), got {self.active.shape}")
        if self.dispersal.shape != (J, J):
            raise ConfigurationError(
                f"dispersal must be ({J}, {J}), got {self.dispersal.shape}")
        if not np.allclose(self.dispersal.sum(axis=1), 1.0):
            raise ConfigurationError("dispersal rows must sum to 1")
        if not self.names:
            self.names = tuple(f"cell_{j}" for j in range(J))

    @property
    def n_subcommunities(self) -> int:
        return self.shape[0] * self.shape[1]

    @property
    def area_km2(self) -> float:
        return self.n_subcommunities * self.cell_size_km ** 2

    def effective_dispersal(self) -> np.ndarray:
        """Dispersal with cross-cell links of inactive cells cut.

        Mass that would have left (or entered) an inactive cell stays
        in the source cell, so rows still sum to 1.
        """
        if self.active.all():
            return self.dispersal
        D = self.dispersal.copy()
        inactive = ~self.active
        off_diag = ~np.eye(self.n_subcommunities, dtype=bool)
        cut = (inactive[:, None] | inactive[None, :]) & off_diag
        lost = np.where(cut, D, 0.0).sum(axis=1)
        D[cut] = 0.0
        D[np.diag_indices_from(D)] += lost
        return D

    def copy(self) -> 'GridHabitat':
        return GridHabitat(
            shape=tuple(self.shape),
            cell_size_km=self.cell_size_km,
            budget=self.budget.copy(),
            active=self.active.copy(),
            dispersal=self.dispersal.copy(),
            names=tuple(self.names),
        )


def make_grid_habitat(shape: Tuple[int, int],
                      area_km2: float,
                      total_budget: float = 1.0,
                      dispersal_km: float = 0.0,
                      threshold: float = 1e-10,
                      active: Optional[Sequence[bool]] = None) -> GridHabitat:
    """Build an equal-area grid habitat with a Gaussian virus kernel.

    Args:
        shape: (rows, cols).
        area_km2: Total area; each cell has area_km2 / (rows × cols).
        total_budget: Host budget shared equally among cells.
        dispersal_km: Gaussian kernel sigma (km).
        threshold: Kernel weight cutoff.
        active: Optional per-cell active flags (default all active).

    Returns:
        GridHabitat.
    """
    rows, cols = int(shape[0]), int(shape[1])
    if rows < 1 or cols < 1:
        raise ConfigurationError(f"grid shape must be positive, got {shape}")
    if area_km2 <= 0:
        raise ConfigurationError(f"area_km2 must be > 0, got {area_km2}")
    J = rows * cols
    cell_size = float(np.sqrt(area_km2 / J))
    distances = grid_distance_matrix((rows, cols), cell_size)
    return GridHabitat(
        shape=(rows, cols),
        cell_size_km=cell_size,
        budget=np.full(J, float(total_budget) / J),
        active=np.ones(J, dtype=bool) if active is None else np.asarray(active, bool),
        dispersal=gaussian_dispersal(distances, dispersal_km, threshold),
    )
