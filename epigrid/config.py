"""Configuration system for epigrid.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → sweep overrides

Sections map one-to-one onto dataclasses; unknown keys are ignored so
older files keep loading. validate_config() raises ConfigurationError
naming the offending field. build_simulation() turns a validated config
into the objects the driver needs; run_from_config() runs it.

Defaults reproduce the high-transmission SEI3HRD scenario: 5 million
susceptibles on a 4×4 grid, 100 exposed and 1000 units of environmental
virus seeded in cell 0.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import numpy as np
import yaml

from epigrid.compiler import CompiledOperators, compile_operators
from epigrid.errors import ConfigurationError
from epigrid.habitat import GridHabitat, make_grid_habitat
from epigrid.params import (
    RateParameterSet,
    make_rate_parameters,
    sei2hrd_rates,
    sei3hrd_rates,
)
from epigrid.rng import create_rng_hierarchy, replicate_rng
from epigrid.simulate import (
    SimulationResult,
    run_replicates,
    run_simulation,
    validate_schedule,
)
from epigrid.state import EpiState, distribute_initial, seed_hosts, seed_virus
from epigrid.types import MODEL_CLASSES, ModelKind, VirusPool
from epigrid.utils import config_hash


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationSection:
    """Run timing and control."""
    duration_days: float = 365.0
    timestep_days: float = 1.0
    record_interval_days: Optional[float] = 1.0   # None = final state only
    seed: int = 42
    replicates: int = 1
    parallel_workers: int = 1
    check_invariants: bool = True


@dataclass
class HabitatSection:
    """Equal-area grid and virus dispersal kernel."""
    grid: List[int] = field(default_factory=lambda: [4, 4])
    area_km2: float = 525_000.0
    total_budget: float = 1.0
    dispersal_km: float = 500.0          # Gaussian kernel sigma
    dispersal_threshold: float = 1e-10
    inactive_cells: List[int] = field(default_factory=list)


@dataclass
class DiseaseSection:
    """Compartment model and per-day rates.

    birth/death: scalar (all classes and ages), per-class list, or an
    [age][class] nested list. Dead hosts never give birth, so the
    terminal birth column is always zero. beta_*: scalar or per-age list.
    virus_growth: scalar (every shedding class) or {class: rate}.
    Stage rates come from `rates` directly, or for SEI2HRD/SEI3HRD from
    `clinical` probabilities and durations; explicit rates win.
    """
    model: str = 'SEI3HRD'
    age_categories: int = 1
    birth: Any = 0.0
    death: Any = 0.0
    age_mixing: Optional[List[List[float]]] = None
    virus_growth: Any = 1e-3
    virus_decay: float = 1.0 / 3.0
    beta_force: Any = 1e3
    beta_env: Any = 1e3
    rates: Dict[str, Any] = field(default_factory=dict)
    clinical: Dict[str, Any] = field(default_factory=lambda: {
        'prob_sym': 1.0,
        'prob_hosp': 0.2,
        'cfr_home': 1.0,
        'cfr_hosp': 1.0,
        'T_lat': 3.0,
        'T_asym': 5.0,
        'T_presym': 1.5,
        'T_sym': 5.0,
        'T_hosp': 5.0,
        'T_rec': 11.0,
    })
    freq_vs_density_force: float = 1.0
    freq_vs_density_env: float = 1.0
    env_virus_scale: float = 1.0


@dataclass
class InitialSection:
    """Initial abundances.

    abundances: class → total (or per-age list), scattered over active
    cells in proportion to budget. host_seeds / virus_seeds are then added
    to single cells.
    """
    abundances: Dict[str, Any] = field(
        default_factory=lambda: {'Susceptible': 5_000_000})
    host_seeds: List[Dict[str, Any]] = field(default_factory=lambda: [
        {'class': 'Exposed', 'count': 100, 'cell': 0, 'age': 0},
    ])
    virus_seeds: List[Dict[str, Any]] = field(default_factory=lambda: [
        {'pool': 'ENVIRONMENT', 'amount': 1000.0, 'cell': 0},
    ])


@dataclass
class OutputSection:
    directory: str = 'results'
    save: bool = False
    verbose: bool = False


@dataclass
class SimulationConfig:
    """Complete validated configuration."""
    simulation: SimulationSection = field(default_factory=SimulationSection)
    habitat: HabitatSection = field(default_factory=HabitatSection)
    disease: DiseaseSection = field(default_factory=DiseaseSection)
    initial: InitialSection = field(default_factory=InitialSection)
    output: OutputSection = field(default_factory=OutputSection)


_CLINICAL_KEYS = {
    ModelKind.SEI2HRD: ('prob_sym', 'prob_hosp', 'cfr_home', 'cfr_hosp',
                        'T_lat', 'T_asym', 'T_sym', 'T_hosp', 'T_rec'),
    ModelKind.SEI3HRD: ('prob_sym', 'prob_hosp', 'cfr_home', 'cfr_hosp',
                        'T_lat', 'T_asym', 'T_presym', 'T_sym', 'T_hosp', 'T_rec'),
}


# ═══════════════════════════════════════════════════════════════════════
# LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base (in place) and return base.

    Nested dicts merge key by key; any other value replaces the base value.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Build a section dataclass from a dict, ignoring unknown keys."""
    valid = {f.name for f in dataclasses.fields(section_cls)}
    return section_cls(**{k: v for k, v in data.items() if k in valid})


def _yaml_to_config(data: Dict) -> SimulationConfig:
    section_map = {
        'simulation': SimulationSection,
        'habitat': HabitatSection,
        'disease': DiseaseSection,
        'initial': InitialSection,
        'output': OutputSection,
    }
    sections = {}
    for key, cls in section_map.items():
        if isinstance(data.get(key), dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()
    return SimulationConfig(**sections)


def _read_yaml(path: Path) -> Dict:
    with open(path) as f:
        return yaml.safe_load(f) or {}


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    sweep_overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load, merge and validate YAML configuration.

    Merge order: base → scenario → sweep overrides.

    Args:
        base_path: Base configuration YAML.
        scenario_path: Optional override YAML; skipped if missing.
        sweep_overrides: Optional nested dict applied last.

    Returns:
        Validated SimulationConfig.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ConfigurationError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")
    config_dict = _read_yaml(base_path)

    if scenario_path is not None and Path(scenario_path).exists():
        deep_merge(config_dict, _read_yaml(Path(scenario_path)))
    if sweep_overrides is not None:
        deep_merge(config_dict, sweep_overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """SimulationConfig with every default value."""
    config = SimulationConfig()
    validate_config(config)
    return config


# ═══════════════════════════════════════════════════════════════════════
# VALIDATION
# ═══════════════════════════════════════════════════════════════════════

def validate_config(config: SimulationConfig) -> None:
    """Check cross-field constraints. Raises ConfigurationError on failure.

    Rate-level checks (shapes, signs, blend ranges) are repeated by
    make_rate_parameters() when the config is built; here they are caught
    early with the config field name in the message.
    """
    sim = config.simulation
    try:
        validate_schedule(sim.duration_days, sim.timestep_days,
                          sim.record_interval_days)
    except ConfigurationError as exc:
        raise ConfigurationError(f"simulation: {exc}") from None
    if sim.replicates < 1:
        raise ConfigurationError(
            f"simulation.replicates must be >= 1, got {sim.replicates}")
    if sim.parallel_workers < 1:
        raise ConfigurationError(
            f"simulation.parallel_workers must be >= 1, got {sim.parallel_workers}")
    if sim.seed < 0:
        raise ConfigurationError(f"simulation.seed must be >= 0, got {sim.seed}")

    hab = config.habitat
    if len(hab.grid) != 2 or any(int(g) < 1 for g in hab.grid):
        raise ConfigurationError(
            f"habitat.grid must be two positive integers, got {hab.grid}")
    n_cells = int(hab.grid[0]) * int(hab.grid[1])
    if hab.area_km2 <= 0:
        raise ConfigurationError(f"habitat.area_km2 must be > 0, got {hab.area_km2}")
    if hab.total_budget <= 0:
        raise ConfigurationError(
            f"habitat.total_budget must be > 0, got {hab.total_budget}")
    if hab.dispersal_km < 0:
        raise ConfigurationError(
            f"habitat.dispersal_km must be >= 0, got {hab.dispersal_km}")
    if not (0.0 <= hab.dispersal_threshold < 1.0):
        raise ConfigurationError(
            f"habitat.dispersal_threshold must be in [0, 1), "
            f"got {hab.dispersal_threshold}")
    for cell in hab.inactive_cells:
        if not (0 <= int(cell) < n_cells):
            raise ConfigurationError(
                f"habitat.inactive_cells entry {cell} outside 0..{n_cells - 1}")
    if len(set(hab.inactive_cells)) >= n_cells:
        raise ConfigurationError("habitat.inactive_cells leaves no active cell")

    dis = config.disease
    valid_models = {k.value for k in ModelKind}
    if dis.model not in valid_models:
        raise ConfigurationError(
            f"disease.model must be one of {sorted(valid_models)}, got '{dis.model}'")
    kind = ModelKind(dis.model)
    if dis.age_categories < 1:
        raise ConfigurationError(
            f"disease.age_categories must be >= 1, got {dis.age_categories}")
    for name in ('freq_vs_density_force', 'freq_vs_density_env'):
        value = getattr(dis, name)
        if not (0.0 <= value <= 1.0):
            raise ConfigurationError(f"disease.{name} must be in [0, 1], got {value}")
    if dis.virus_decay < 0:
        raise ConfigurationError(
            f"disease.virus_decay must be >= 0, got {dis.virus_decay}")
    if dis.env_virus_scale < 0:
        raise ConfigurationError(
            f"disease.env_virus_scale must be >= 0, got {dis.env_virus_scale}")
    if dis.clinical:
        if kind not in _CLINICAL_KEYS:
            if not dis.rates:
                raise ConfigurationError(
                    f"disease.clinical is only supported for SEI2HRD/SEI3HRD; "
                    f"give disease.rates for {kind.value}")
        else:
            missing = set(_CLINICAL_KEYS[kind]) - set(dis.clinical)
            if missing:
                raise ConfigurationError(
                    f"disease.clinical missing {sorted(missing)} for {kind.value}")
    elif not dis.rates:
        raise ConfigurationError("disease.rates or disease.clinical required")

    classes = MODEL_CLASSES[kind]
    for name in config.initial.abundances:
        if name not in classes:
            raise ConfigurationError(
                f"initial.abundances: unknown class '{name}' for {kind.value}")
    for seed in config.initial.host_seeds:
        if seed.get('class') not in classes:
            raise ConfigurationError(
                f"initial.host_seeds: unknown class '{seed.get('class')}' "
                f"for {kind.value}")
        if not (0 <= int(seed.get('cell', 0)) < n_cells):
            raise ConfigurationError(
                f"initial.host_seeds: cell {seed.get('cell')} outside 0..{n_cells - 1}")
        if int(seed.get('count', 0)) < 0:
            raise ConfigurationError("initial.host_seeds: count must be >= 0")
    pools = {p.name for p in VirusPool}
    for seed in config.initial.virus_seeds:
        if str(seed.get('pool', 'ENVIRONMENT')).upper() not in pools:
            raise ConfigurationError(
                f"initial.virus_seeds: pool must be one of {sorted(pools)}, "
                f"got '{seed.get('pool')}'")
        if not (0 <= int(seed.get('cell', 0)) < n_cells):
            raise ConfigurationError(
                f"initial.virus_seeds: cell {seed.get('cell')} outside 0..{n_cells - 1}")
        if float(seed.get('amount', 0.0)) < 0:
            raise ConfigurationError("initial.virus_seeds: amount must be >= 0")


# ═══════════════════════════════════════════════════════════════════════
# BUILDING
# ═══════════════════════════════════════════════════════════════════════

def _demographic_matrix(value: Any, n_ages: int, n_classes: int,
                        name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=np.float64)
    if arr.ndim == 0:
        return np.full((n_ages, n_classes), float(arr))
    if arr.ndim == 1:
        return np.tile(arr, (n_ages, 1))
    if arr.ndim == 2:
        return arr
    raise ConfigurationError(f"disease.{name} must be a scalar, list or [age][class] list")


def _living_births(birth: np.ndarray) -> np.ndarray:
    """Dead hosts do not reproduce: zero the terminal column."""
    birth = np.array(birth, dtype=np.float64)
    birth[:, -1] = 0.0
    return birth


def build_rate_parameters(disease: DiseaseSection) -> RateParameterSet:
    """RateParameterSet from the disease section."""
    kind = ModelKind(disease.model)
    A = int(disease.age_categories)
    C = len(MODEL_CLASSES[kind])

    stage_rates: Dict[str, Any] = {}
    if disease.clinical and kind in _CLINICAL_KEYS:
        clinical = {k: disease.clinical[k] for k in _CLINICAL_KEYS[kind]}
        helper = sei3hrd_rates if kind is ModelKind.SEI3HRD else sei2hrd_rates
        stage_rates.update(helper(**clinical))
    stage_rates.update(disease.rates)

    return make_rate_parameters(
        kind,
        birth=_living_births(_demographic_matrix(disease.birth, A, C, 'birth')),
        death=_demographic_matrix(disease.death, A, C, 'death'),
        virus_growth=disease.virus_growth,
        virus_decay=disease.virus_decay,
        beta_force=disease.beta_force,
        beta_env=disease.beta_env,
        stage_rates=stage_rates,
        age_mixing=disease.age_mixing,
        freq_vs_density_force=disease.freq_vs_density_force,
        freq_vs_density_env=disease.freq_vs_density_env,
        env_virus_scale=disease.env_virus_scale,
    )


def build_habitat(habitat: HabitatSection) -> GridHabitat:
    shape = (int(habitat.grid[0]), int(habitat.grid[1]))
    active = np.ones(shape[0] * shape[1], dtype=bool)
    active[[int(c) for c in habitat.inactive_cells]] = False
    return make_grid_habitat(
        shape,
        area_km2=habitat.area_km2,
        total_budget=habitat.total_budget,
        dispersal_km=habitat.dispersal_km,
        threshold=habitat.dispersal_threshold,
        active=active,
    )


def build_initial_state(initial: InitialSection, ops: CompiledOperators,
                        habitat: GridHabitat,
                        rng: np.random.Generator) -> EpiState:
    state = distribute_initial(ops, habitat, initial.abundances, rng)
    for seed in initial.host_seeds:
        seed_hosts(state, ops, seed['class'], int(seed.get('count', 0)),
                   cell=int(seed.get('cell', 0)), age=int(seed.get('age', 0)))
    for seed in initial.virus_seeds:
        pool = VirusPool[str(seed.get('pool', 'ENVIRONMENT')).upper()]
        seed_virus(state, float(seed.get('amount', 0.0)),
                   cell=int(seed.get('cell', 0)), pool=pool)
    return state


def build_simulation(config: SimulationConfig) -> Tuple[
        RateParameterSet, CompiledOperators, GridHabitat, EpiState,
        Dict[str, np.random.Generator]]:
    """Construct everything a run needs from a validated config.

    Returns:
        (params, ops, habitat, initial state, RNG streams). The initial
        state is drawn from the 'global' stream; replicate r steps with
        'replicate_r'.
    """
    params = build_rate_parameters(config.disease)
    ops = compile_operators(params)
    habitat = build_habitat(config.habitat)
    rngs = create_rng_hierarchy(config.simulation.seed, config.simulation.replicates)
    state = build_initial_state(config.initial, ops, habitat, rngs['global'])
    return params, ops, habitat, state, rngs


def run_from_config(
    config: SimulationConfig,
    progress_callback: Optional[Callable[[int, int], None]] = None,
) -> SimulationResult:
    """Build and run a configured simulation (or replicate ensemble).

    Saves an .npz under output.directory when output.save is set.
    """
    params, ops, habitat, state, rngs = build_simulation(config)
    sim = config.simulation
    verbose = config.output.verbose
    if verbose:
        print(f"{params.kind.value}: {habitat.n_subcommunities} cells, "
              f"{state.total_hosts()} hosts, {sim.duration_days:g} days")

    if sim.replicates == 1:
        result = run_simulation(
            state, ops, habitat, sim.duration_days, sim.timestep_days,
            record_interval=sim.record_interval_days,
            rng=replicate_rng(rngs, 0),
            progress_callback=progress_callback,
            check_invariants=sim.check_invariants,
            verbose=verbose,
        )
    else:
        result = run_replicates(
            lambda rng: (state.copy(), habitat.copy()),
            ops, sim.duration_days, sim.timestep_days, sim.replicates,
            seed=sim.seed,
            record_interval=sim.record_interval_days,
            parallel_workers=sim.parallel_workers,
            check_invariants=sim.check_invariants,
            progress_callback=progress_callback,
            verbose=verbose,
        )

    result.config_hash = config_hash(config)
    if config.output.save:
        path = Path(config.output.directory) / f"epigrid_{result.config_hash[:12]}.npz"
        saved = result.save(path)
        if verbose:
            print(f"Saved {saved}")
    return result
