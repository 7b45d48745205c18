"""State advance engine: one stochastic time step of the epidemic.

Per step, vectorised over subcommunities (cells):

  1. Shedding        shed[a, j] = Σ_c virus_growth[c, a] · n[c, a, j] · dt
  2. Dispersal       received = Dᵀ · shed   (D with inactive links cut)
                     → stored in the FORCE pool
  3. Reservoir       env ← env · exp(−virus_decay · dt)
                           + env_virus_scale · Σ_a received[a]
  4. Pressures       p_force[a] = blend(M · received, N)
                     p_env      = blend(env, N)
                     blend(x, N, f) = f·x/N + (1 − f)·x,  0 where N = 0
                     N = living hosts (all classes except the terminal one)
  5. Rates           R[:, s, j] = T[:, s] + F[:, s]·p_force[s, j] + V[:, s]·p_env[j]
  6. Transitions     competing risks per source state:
                       leavers ~ Binomial(n, 1 − exp(−Σ_t R[t, s]·dt))
                       split over targets by sequential conditional binomials
  7. Births          Poisson(Σ_s births[s]·n[s]·dt) into (Susceptible, age 0)
  8. Checks          counts ≥ 0, hosts conserved apart from births,
                     virus pools finite

Hosts are only ever moved between states by step 6; the Dead class has
no outgoing rates, so it is a sink.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np

from epigrid.compiler import CompiledOperators
from epigrid.errors import ConfigurationError, InvariantViolation
from epigrid.habitat import GridHabitat
from epigrid.perf import PerfMonitor
from epigrid.state import EpiState, living_population
from epigrid.types import VirusPool, state_index

_NULL_PERF = PerfMonitor(enabled=False)


# ═══════════════════════════════════════════════════════════════════════
# VIRUS
# ═══════════════════════════════════════════════════════════════════════

def shed_virus(human: np.ndarray, ops: CompiledOperators, dt: float) -> np.ndarray:
    """Virus shed per age category and cell during one step.

    Returns:
        (A, J) shed virus.
    """
    per_state = ops.virus_growth[:, None] * human * dt
    A, C = ops.age_categories, ops.num_classes
    return per_state.reshape(C, A, human.shape[1]).sum(axis=0)


def disperse_virus(shed: np.ndarray, habitat: GridHabitat) -> np.ndarray:
    """Redistribute shed virus between cells.

    received[a, k] = Σ_j D[j, k] · shed[a, j]
    """
    return shed @ habitat.effective_dispersal()


def update_environment(env: np.ndarray, received_total: np.ndarray,
                       ops: CompiledOperators, dt: float) -> np.ndarray:
    """Decay the reservoir and add the dispersed shedding."""
    return env * np.exp(-ops.virus_decay * dt) + ops.env_virus_scale * received_total


# ═══════════════════════════════════════════════════════════════════════
# PRESSURE & RATES
# ═══════════════════════════════════════════════════════════════════════

def infection_pressure(x: np.ndarray, N: np.ndarray, freq_vs_density: float) -> np.ndarray:
    """Blend frequency- and density-dependent transmission.

    f·x/N + (1 − f)·x, evaluated per cell; 0 where N = 0.

    Args:
        x: (..., J) virus amount.
        N: (J,) living hosts.
        freq_vs_density: f in [0, 1].
    """
    x = np.asarray(x, dtype=np.float64)
    N = np.asarray(N, dtype=np.float64)
    with np.errstate(divide='ignore', invalid='ignore'):
        freq = np.where(N > 0, x / np.where(N > 0, N, 1.0), 0.0)
    out = freq_vs_density * freq + (1.0 - freq_vs_density) * x
    return np.where(N > 0, out, 0.0)


def transition_rates(ops: CompiledOperators, p_force: np.ndarray,
                     p_env: np.ndarray) -> np.ndarray:
    """Per-cell effective rate tensor.

    Args:
        ops: Compiled operators.
        p_force: (A, J) direct-virus pressure per age category.
        p_env: (J,) environmental pressure.

    Returns:
        (n, n, J) rates [to, from, cell]; diagonal is zero.

    Raises:
        InvariantViolation: If any rate is NaN, infinite or negative.
    """
    pf_state = np.tile(p_force, (ops.num_classes, 1))       # (n, J)
    R = (ops.transition_dense[:, :, None]
         + ops.force_dense[:, :, None] * pf_state[None, :, :]
         + ops.virus_dense[:, :, None] * p_env[None, None, :])
    idx = np.arange(ops.n_states)
    R[idx, idx, :] = 0.0
    if not np.all(np.isfinite(R)):
        raise InvariantViolation("non-finite transition rate")
    if np.any(R < 0):
        raise InvariantViolation("negative transition rate")
    return R


# ═══════════════════════════════════════════════════════════════════════
# HOST MOVEMENT
# ═══════════════════════════════════════════════════════════════════════

def apply_transitions(human: np.ndarray, R: np.ndarray, dt: float,
                      rng: np.random.Generator) -> np.ndarray:
    """Move hosts between states under competing risks.

    For each (source state, cell), the number leaving is binomial with
    probability 1 − exp(−total_rate·dt). Leavers are allocated to targets
    by sequential conditional binomials, which is an exact multinomial
    draw with probabilities proportional to the target rates.

    Args:
        human: (n, J) int64 counts.
        R: (n, n, J) rates [to, from, cell].
        dt: Step length (days).
        rng: Random generator.

    Returns:
        (n, J) new counts; column totals equal the input's.
    """
    n = human.shape[0]
    total_rate = R.sum(axis=0)                              # (n_from, J)
    p_leave = -np.expm1(-total_rate * dt)
    leavers = rng.binomial(human, np.clip(p_leave, 0.0, 1.0))

    # Last target with a positive rate takes whatever remains
    positive = R > 0
    last_target = np.where(positive.any(axis=0),
                           n - 1 - np.argmax(positive[::-1], axis=0), -1)

    remaining = leavers.copy()
    remaining_rate = total_rate.copy()
    inflow = np.zeros_like(human)
    for t in range(n):
        rate_t = R[t]
        if not rate_t.any():
            continue
        with np.errstate(divide='ignore', invalid='ignore'):
            p = np.where(remaining_rate > 0, rate_t / remaining_rate, 0.0)
        p = np.where(last_target == t, 1.0, np.clip(p, 0.0, 1.0))
        moved = rng.binomial(remaining, p)
        remaining -= moved
        remaining_rate = remaining_rate - rate_t
        inflow[t] += moved.sum(axis=0)

    return human - leavers + inflow


def apply_births(human: np.ndarray, parents: np.ndarray,
                 ops: CompiledOperators, dt: float,
                 rng: np.random.Generator) -> Tuple[np.ndarray, int]:
    """Add Poisson newborns to (Susceptible, age 0) in every cell.

    Args:
        human: (n, J) counts receiving the newborns (modified in place).
        parents: (n, J) counts the birth hazard is computed from.

    Returns:
        (updated counts, total newborns).
    """
    expected = (ops.births[:, None] * parents).sum(axis=0) * dt
    if not np.any(expected > 0):
        return human, 0
    newborns = rng.poisson(expected)
    human[state_index(0, 0, ops.age_categories)] += newborns
    return human, int(newborns.sum())


# ═══════════════════════════════════════════════════════════════════════
# CHECKS
# ═══════════════════════════════════════════════════════════════════════

def check_dimensions(state: EpiState, ops: CompiledOperators,
                     habitat: GridHabitat) -> None:
    """Raise ConfigurationError if state, operators and habitat disagree."""
    J = habitat.n_subcommunities
    if state.human.shape != (ops.n_states, J):
        raise ConfigurationError(
            f"human abundances are {state.human.shape}; operators and habitat "
            f"need ({ops.n_states}, {J})")
    if state.virus.shape != (len(VirusPool), J):
        raise ConfigurationError(
            f"virus abundances are {state.virus.shape}; need ({len(VirusPool)}, {J})")
    if ops.age_mixing.shape != (ops.age_categories, ops.age_categories):
        raise ConfigurationError(
            f"age_mixing is {ops.age_mixing.shape} for {ops.age_categories} age categories")


def check_state(state: EpiState, expected_total: Optional[int] = None) -> None:
    """Raise InvariantViolation on negative counts, lost hosts or bad virus."""
    if np.any(state.human < 0):
        raise InvariantViolation("negative host count")
    if expected_total is not None and int(state.human.sum()) != expected_total:
        raise InvariantViolation(
            f"host total {int(state.human.sum())} != expected {expected_total}")
    if not np.all(np.isfinite(state.virus)) or np.any(state.virus < 0):
        raise InvariantViolation("virus pool is negative or non-finite")


# ═══════════════════════════════════════════════════════════════════════
# STEP
# ═══════════════════════════════════════════════════════════════════════

def epi_step(state: EpiState, ops: CompiledOperators, habitat: GridHabitat,
             dt: float, rng: np.random.Generator,
             check_invariants: bool = True,
             perf: Optional[PerfMonitor] = None) -> EpiState:
    """Advance the state by one step of length dt (days), in place.

    Args:
        state: Abundance state; mutated and returned.
        ops: Compiled operators.
        habitat: Habitat (active mask and dispersal are read each step).
        dt: Step length in days (> 0).
        rng: Random generator.
        check_invariants: Verify positivity and conservation afterwards.
        perf: Optional PerfMonitor for per-component timing.

    Returns:
        The same EpiState.

    Raises:
        ConfigurationError: Dimension mismatch or dt <= 0 (before mutation).
        InvariantViolation: A runtime check failed.
    """
    if not dt > 0:
        raise ConfigurationError(f"timestep must be > 0, got {dt}")
    check_dimensions(state, ops, habitat)
    perf = perf or _NULL_PERF

    human = state.human
    total_before = int(human.sum())

    with perf.track('virus'):
        shed = shed_virus(human, ops, dt)
        received = disperse_virus(shed, habitat)
        virus = np.empty_like(state.virus)
        virus[VirusPool.FORCE] = received.sum(axis=0)
        virus[VirusPool.ENVIRONMENT] = update_environment(
            state.virus[VirusPool.ENVIRONMENT], virus[VirusPool.FORCE], ops, dt)

    with perf.track('rates'):
        N = living_population(human, ops)
        p_force = infection_pressure(ops.age_mixing @ received, N,
                                     ops.freq_vs_density_force)
        p_env = infection_pressure(virus[VirusPool.ENVIRONMENT], N,
                                   ops.freq_vs_density_env)
        R = transition_rates(ops, p_force, p_env)
    # Nothing is written back until the rates are known to be valid
    state.virus = virus

    with perf.track('transitions'):
        parents = human
        human = apply_transitions(parents, R, dt, rng)

    with perf.track('births'):
        human, n_born = apply_births(human, parents, ops, dt, rng)

    state.human = human
    if check_invariants:
        with perf.track('checks'):
            check_state(state, total_before + n_born)
    return state
