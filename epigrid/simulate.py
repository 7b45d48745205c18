"""Simulation driver: step loop, recording, cancellation, replicates.

run_simulation() advances one state for `duration` days in steps of
`timestep`, calling the scenario hook after every step and writing a
frame every `record_interval` days:

  frame 0  initial condition (time 0)
  frame k  post-step state at step k · (record_interval / timestep)

run_replicates() runs independent copies (own state, habitat and RNG
stream, shared read-only operators), optionally on a thread pool, and
stacks the trajectories on a trailing replicate axis.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

import numpy as np

from epigrid.compiler import CompiledOperators
from epigrid.dynamics import check_dimensions, check_state, epi_step
from epigrid.errors import ConfigurationError
from epigrid.habitat import GridHabitat
from epigrid.perf import PerfMonitor
from epigrid.rng import create_rng_hierarchy, replicate_rng
from epigrid.scenarios import NoScenario, ScenarioFn
from epigrid.state import EpiState

BuildFn = Callable[[np.random.Generator], Tuple[EpiState, GridHabitat]]

_REL_TOL = 1e-9


# ═══════════════════════════════════════════════════════════════════════
# RESULT
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationResult:
    """Recorded trajectory of one run (or a stacked ensemble)."""
    class_names: Tuple[str, ...] = ()
    age_categories: int = 1
    timestep: float = 1.0
    steps_completed: int = 0
    # (n_frames,) days
    times: Optional[np.ndarray] = None
    # (n_states, J, n_frames[, n_replicates]) int64
    abundances: Optional[np.ndarray] = None
    # (N_VIRUS_POOLS, J, n_frames[, n_replicates]) float64
    virus: Optional[np.ndarray] = None
    final_state: Optional[EpiState] = None
    final_states: List[EpiState] = field(default_factory=list)
    cancelled: bool = False
    n_replicates: int = 1
    config_hash: str = ''

    @property
    def n_frames(self) -> int:
        return 0 if self.times is None else len(self.times)

    def class_series(self, name: str) -> np.ndarray:
        """Total of one class over ages and cells, per frame (and replicate)."""
        if self.abundances is None:
            raise ValueError("run was not recorded (record_interval=None)")
        if name not in self.class_names:
            raise KeyError(f"no class '{name}'. Classes: {self.class_names}")
        A = self.age_categories
        cls = self.class_names.index(name)
        return self.abundances[cls * A:(cls + 1) * A].sum(axis=(0, 1))

    def save(self, path: Union[str, Path]) -> Path:
        """Write the trajectory and metadata to a compressed .npz file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        arrays = {
            'class_names': np.array(self.class_names),
            'age_categories': np.int64(self.age_categories),
            'timestep': np.float64(self.timestep),
            'steps_completed': np.int64(self.steps_completed),
            'cancelled': np.bool_(self.cancelled),
            'n_replicates': np.int64(self.n_replicates),
            'config_hash': np.array(self.config_hash),
        }
        if self.times is not None:
            arrays['times'] = self.times
            arrays['abundances'] = self.abundances
            arrays['virus'] = self.virus
        if self.final_state is not None:
            arrays['final_human'] = self.final_state.human
            arrays['final_virus'] = self.final_state.virus
        np.savez_compressed(path, **arrays)
        # numpy appends .npz when missing
        return path if path.suffix == '.npz' else path.with_name(path.name + '.npz')


# ═══════════════════════════════════════════════════════════════════════
# SCHEDULE
# ═══════════════════════════════════════════════════════════════════════

def _whole_multiple(value: float, step: float) -> Optional[int]:
    ratio = value / step
    k = int(round(ratio))
    if k < 1 or abs(ratio - k) > _REL_TOL * max(1.0, ratio):
        return None
    return k


def validate_schedule(duration: float, timestep: float,
                      record_interval: Optional[float] = None
                      ) -> Tuple[int, Optional[int]]:
    """Check run timing before any step is taken.

    Returns:
        (n_steps, steps_per_frame); steps_per_frame is None when not recording.

    Raises:
        ConfigurationError: Non-positive values, or duration/record_interval
            not a whole multiple of timestep.
    """
    if not timestep > 0:
        raise ConfigurationError(f"timestep must be > 0, got {timestep}")
    if not duration > 0:
        raise ConfigurationError(f"duration must be > 0, got {duration}")
    n_steps = _whole_multiple(duration, timestep)
    if n_steps is None:
        raise ConfigurationError(
            f"duration ({duration}) must be a whole multiple of timestep ({timestep})")
    if record_interval is None:
        return n_steps, None
    if not record_interval > 0:
        raise ConfigurationError(f"record_interval must be > 0, got {record_interval}")
    stride = _whole_multiple(record_interval, timestep)
    if stride is None:
        raise ConfigurationError(
            f"record_interval ({record_interval}) must be a whole multiple of "
            f"timestep ({timestep})")
    return n_steps, stride


# ═══════════════════════════════════════════════════════════════════════
# SINGLE RUN
# ═══════════════════════════════════════════════════════════════════════

def run_simulation(
    state: EpiState,
    ops: CompiledOperators,
    habitat: GridHabitat,
    duration: float,
    timestep: float,
    record_interval: Optional[float] = None,
    scenario: Optional[ScenarioFn] = None,
    rng: Optional[np.random.Generator] = None,
    should_stop: Optional[Callable[[int, float], bool]] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    check_invariants: bool = True,
    perf: Optional[PerfMonitor] = None,
    verbose: bool = False,
) -> SimulationResult:
    """Advance `state` in place for `duration` days.

    Args:
        state: Initial abundances; holds the final state on return.
        ops: Compiled operators.
        habitat: Habitat; scenarios may mutate it.
        duration: Total simulated time (days).
        timestep: Step length (days).
        record_interval: Days between frames; None records nothing.
        scenario: Hook called after each step as
            scenario(habitat, state, time, timestep).
        rng: Random generator; a fresh unseeded one if None.
        should_stop: Polled before each step as should_stop(step, time);
            returning True ends the run early with cancelled=True.
        progress_callback: Called after each step as (step, n_steps).
        check_invariants: Forwarded to epi_step.
        perf: Optional PerfMonitor; timings accumulate across calls.
        verbose: Print progress at each recorded frame, and the stage
            timing at the end when perf is enabled.

    Returns:
        SimulationResult.

    Raises:
        ConfigurationError: Bad schedule or dimensions (before stepping).
        InvariantViolation: From the step engine.
    """
    n_steps, stride = validate_schedule(duration, timestep, record_interval)
    check_dimensions(state, ops, habitat)
    if check_invariants:
        check_state(state)
    rng = rng if rng is not None else np.random.default_rng()
    scenario = scenario if scenario is not None else NoScenario()
    perf = perf if perf is not None else PerfMonitor(enabled=False)

    recording = stride is not None
    if recording:
        n_frames = n_steps // stride + 1
        abundances = np.zeros(state.human.shape + (n_frames,), dtype=np.int64)
        virus = np.zeros(state.virus.shape + (n_frames,), dtype=np.float64)
        abundances[..., 0] = state.human
        virus[..., 0] = state.virus

    cancelled = False
    steps_done = 0
    for step in range(1, n_steps + 1):
        if should_stop is not None and should_stop(steps_done, steps_done * timestep):
            cancelled = True
            break

        epi_step(state, ops, habitat, timestep, rng,
                 check_invariants=check_invariants, perf=perf)
        time = step * timestep

        with perf.track('scenario'):
            scenario(habitat, state, time, timestep)
        steps_done = step

        if recording and step % stride == 0:
            with perf.track('record'):
                frame = step // stride
                abundances[..., frame] = state.human
                virus[..., frame] = state.virus
            if verbose:
                print(f"  Day {time:g}/{duration:g}: hosts={state.total_hosts()}, "
                      f"reservoir={state.virus[0].sum():.3g}")

        if progress_callback is not None:
            progress_callback(step, n_steps)

    result = SimulationResult(
        class_names=ops.class_names,
        age_categories=ops.age_categories,
        timestep=float(timestep),
        steps_completed=steps_done,
        final_state=state,
        cancelled=cancelled,
    )
    if recording:
        kept = steps_done // stride + 1
        result.times = np.arange(kept) * float(record_interval)
        result.abundances = abundances[..., :kept]
        result.virus = virus[..., :kept]
    if cancelled and verbose:
        print(f"  Cancelled after {steps_done}/{n_steps} steps")
    if verbose and perf.enabled:
        print(perf.report())
    return result


# ═══════════════════════════════════════════════════════════════════════
# REPLICATES
# ═══════════════════════════════════════════════════════════════════════

def run_replicates(
    build: BuildFn,
    ops: CompiledOperators,
    duration: float,
    timestep: float,
    n_replicates: int,
    seed: int = 0,
    record_interval: Optional[float] = None,
    scenario_factory: Optional[Callable[[], ScenarioFn]] = None,
    parallel_workers: int = 1,
    check_invariants: bool = True,
    progress_callback: Optional[Callable[[int, int], None]] = None,
    perf: Optional[PerfMonitor] = None,
    verbose: bool = False,
) -> SimulationResult:
    """Run independent replicates and stack their trajectories.

    Args:
        build: Called once per replicate with that replicate's generator;
            returns a fresh (state, habitat) pair.
        ops: Compiled operators, shared read-only.
        duration, timestep, record_interval: As for run_simulation().
        n_replicates: Number of replicates (>= 1).
        seed: Master seed; replicate r uses stream 'replicate_r'.
        scenario_factory: Builds a fresh scenario per replicate (scenarios
            may hold state).
        parallel_workers: >1 runs replicates on a thread pool.
        progress_callback: Called as (replicates_done, n_replicates).
        perf: Optional PerfMonitor; receives the summed timings of all
            replicates.

    Returns:
        SimulationResult with a trailing replicate axis on abundances and
        virus, and per-replicate final states in final_states.
    """
    if n_replicates < 1:
        raise ConfigurationError(f"n_replicates must be >= 1, got {n_replicates}")
    if parallel_workers < 1:
        raise ConfigurationError(f"parallel_workers must be >= 1, got {parallel_workers}")
    validate_schedule(duration, timestep, record_interval)
    rngs = create_rng_hierarchy(seed, n_replicates)
    enabled = perf is not None and perf.enabled
    monitors = [PerfMonitor(enabled=enabled) for _ in range(n_replicates)]

    def one(r: int) -> SimulationResult:
        rng = replicate_rng(rngs, r)
        state, habitat = build(rng)
        scenario = scenario_factory() if scenario_factory is not None else None
        res = run_simulation(state, ops, habitat, duration, timestep,
                             record_interval=record_interval, scenario=scenario,
                             rng=rng, check_invariants=check_invariants,
                             perf=monitors[r])
        if verbose:
            print(f"  Replicate {r + 1}/{n_replicates} done")
        return res

    results: List[SimulationResult] = []
    if parallel_workers > 1 and n_replicates > 1:
        with ThreadPoolExecutor(max_workers=parallel_workers) as pool:
            futures = [pool.submit(one, r) for r in range(n_replicates)]
            for i, fut in enumerate(futures):
                results.append(fut.result())
                if progress_callback is not None:
                    progress_callback(i + 1, n_replicates)
    else:
        for r in range(n_replicates):
            results.append(one(r))
            if progress_callback is not None:
                progress_callback(r + 1, n_replicates)

    if perf is not None:
        for monitor in monitors:
            perf.merge(monitor)

    first = results[0]
    ensemble = SimulationResult(
        class_names=first.class_names,
        age_categories=first.age_categories,
        timestep=first.timestep,
        steps_completed=first.steps_completed,
        final_states=[res.final_state for res in results],
        n_replicates=n_replicates,
    )
    if first.times is not None:
        ensemble.times = first.times
        ensemble.abundances = np.stack([res.abundances for res in results], axis=-1)
        ensemble.virus = np.stack([res.virus for res in results], axis=-1)
    return ensemble
