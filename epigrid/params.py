"""Rate parameter sets for all compartment models.

One generic tagged variant, RateParameterSet = {kind, stage-rate table,
edge list}, replaces a family of per-model structs. All models share a
single validator that returns a structured ValidationResult:

  - errors   → ConfigurationError raised at construction
  - warnings → UserWarning emitted, construction continues

All rates are per day. Arrays indexed by age category have length A;
birth/death are [age_category, disease_class].

Single-age input (1-D birth/death of length num_classes, scalar rates)
and multi-age input (2-D birth/death, per-age rate vectors) go through the
same constructor. Single-age death is built from `death` itself.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import numpy as np

from epigrid.errors import ConfigurationError
from epigrid.types import (
    MODEL_CLASSES,
    MODEL_EDGES,
    SHEDDING_CLASSES,
    EdgeSpec,
    ModelKind,
    required_rates,
)

RateLike = Union[float, np.ndarray, List[float]]


# ═══════════════════════════════════════════════════════════════════════
# VALIDATION RESULT
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Finding:
    """One violated invariant."""
    severity: str      # 'error' (fatal) or 'warning' (advisory)
    invariant: str     # short machine-readable tag, e.g. 'age_mixing_shape'
    message: str


@dataclass
class ValidationResult:
    """Findings collected by validate_rate_parameters()."""
    findings: List[Finding] = field(default_factory=list)

    def error(self, invariant: str, message: str) -> None:
        self.findings.append(Finding('error', invariant, message))

    def warn(self, invariant: str, message: str) -> None:
        self.findings.append(Finding('warning', invariant, message))

    @property
    def errors(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == 'error']

    @property
    def warnings(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == 'warning']

    @property
    def ok(self) -> bool:
        return not self.errors

    def invariants(self) -> List[str]:
        return [f.invariant for f in self.findings]

    def raise_for_errors(self) -> None:
        """Raise ConfigurationError listing every fatal finding."""
        if self.errors:
            raise ConfigurationError(
                "; ".join(f"{f.invariant}: {f.message}" for f in self.errors)
            )

    def emit_warnings(self, stacklevel: int = 3) -> None:
        for f in self.warnings:
            warnings.warn(f"{f.invariant}: {f.message}", UserWarning,
                          stacklevel=stacklevel)


# ═══════════════════════════════════════════════════════════════════════
# PARAMETER SET
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RateParameterSet:
    """Per-capita rates (d⁻¹) of one compartment model.

    Build with make_rate_parameters() or one of the per-model constructors
    (sir_parameters, ..., sei3hrd_parameters); they validate and freeze
    the arrays.
    """
    kind: ModelKind
    birth: np.ndarray                        # (A, C) d⁻¹
    death: np.ndarray                        # (A, C) d⁻¹ into the Dead sink
    age_mixing: np.ndarray                   # (A, A) contact weights
    virus_growth: Mapping[str, np.ndarray]   # shedding class → (A,) d⁻¹
    virus_decay: float                       # d⁻¹
    beta_force: np.ndarray                   # (A,) direct transmission
    beta_env: np.ndarray                     # (A,) environmental transmission
    stage_rates: Mapping[str, np.ndarray]    # rate name → (A,) d⁻¹
    freq_vs_density_force: float = 1.0       # 1 = frequency, 0 = density
    freq_vs_density_env: float = 1.0
    env_virus_scale: float = 1.0             # shed virus → reservoir fraction

    @property
    def class_names(self) -> Tuple[str, ...]:
        return MODEL_CLASSES[self.kind]

    @property
    def num_classes(self) -> int:
        return len(MODEL_CLASSES[self.kind])

    @property
    def age_categories(self) -> int:
        return int(self.birth.shape[0])

    @property
    def edges(self) -> EdgeSpec:
        return MODEL_EDGES[self.kind]

    def validate(self) -> ValidationResult:
        return validate_rate_parameters(self)


# ═══════════════════════════════════════════════════════════════════════
# VALIDATOR
# ═══════════════════════════════════════════════════════════════════════

def _check_rates(result: ValidationResult, name: str, values: np.ndarray,
                 n_ages: int) -> None:
    if values.ndim != 1 or values.shape[0] != n_ages:
        result.error(
            'rate_length',
            f"{name} must have one value per age category ({n_ages}), "
            f"got shape {values.shape}",
        )
    if not np.all(np.isfinite(values)) or np.any(values < 0):
        result.error('rate_non_negative', f"{name} must be finite and >= 0")


def validate_rate_parameters(params: RateParameterSet) -> ValidationResult:
    """Check every invariant of a parameter set.

    Fatal:
      - birth and death have the same 2-D shape
      - one birth/death column per model class
      - age_mixing is square with one row per age category
      - blend scalars lie in [0, 1]
      - all rates finite and non-negative, one value per age category
      - every stage rate referenced by the model's edges is present
      - shedding rates belong to the model's shedding classes
    Advisory:
      - zero transmission rates
      - stage rates not referenced by any edge
    """
    result = ValidationResult()
    kind = params.kind
    n_classes = len(MODEL_CLASSES[kind])

    birth, death = params.birth, params.death
    if birth.ndim != 2 or birth.shape != death.shape:
        result.error(
            'birth_death_shape',
            f"birth and death shapes differ: {birth.shape} vs {death.shape}",
        )
        return result
    if birth.shape[1] != n_classes:
        result.error(
            'class_count',
            f"{kind.value} has {n_classes} classes, birth/death have "
            f"{birth.shape[1]} columns",
        )
    n_ages = birth.shape[0]
    if n_ages < 1:
        result.error('age_categories', "at least one age category required")
        return result
    for name, arr in (('birth', birth), ('death', death)):
        if not np.all(np.isfinite(arr)) or np.any(arr < 0):
            result.error('rate_non_negative', f"{name} must be finite and >= 0")

    mix = params.age_mixing
    if mix.ndim != 2 or mix.shape[0] != n_ages or mix.shape[0] != mix.shape[1]:
        result.error(
            'age_mixing_shape',
            f"age_mixing must be ({n_ages}, {n_ages}), got {mix.shape}",
        )
    elif not np.all(np.isfinite(mix)) or np.any(mix < 0):
        result.error('age_mixing_non_negative',
                     "age_mixing must be finite and >= 0")

    for name in ('freq_vs_density_force', 'freq_vs_density_env'):
        value = getattr(params, name)
        if not (0.0 <= value <= 1.0):
            result.error(name, f"{name} must be in [0, 1], got {value}")

    if not np.isfinite(params.virus_decay) or params.virus_decay < 0:
        result.error('virus_decay',
                     f"virus_decay must be finite and >= 0, got {params.virus_decay}")
    if not np.isfinite(params.env_virus_scale) or params.env_virus_scale < 0:
        result.error('env_virus_scale',
                     f"env_virus_scale must be finite and >= 0, "
                     f"got {params.env_virus_scale}")

    # Transmission
    for name in ('beta_force', 'beta_env'):
        values = getattr(params, name)
        _check_rates(result, name, values, n_ages)
    if np.any(params.beta_force == 0) or np.any(params.beta_env == 0):
        result.warn('transmission_nonzero', "Transmission rates are zero.")

    # Stage rates
    needed = required_rates(kind)
    for name in needed:
        if name not in params.stage_rates:
            result.error('missing_rate',
                         f"{kind.value} requires stage rate '{name}'")
            continue
        _check_rates(result, name, params.stage_rates[name], n_ages)
    for name in params.stage_rates:
        if name not in needed:
            result.warn('unused_rate',
                        f"stage rate '{name}' is not used by {kind.value}")

    # Shedding
    shedders = SHEDDING_CLASSES[kind]
    for name, values in params.virus_growth.items():
        if name not in shedders:
            result.error(
                'shedding_class',
                f"'{name}' does not shed virus in {kind.value}; "
                f"shedding classes are {shedders}",
            )
            continue
        _check_rates(result, f"virus_growth[{name}]", values, n_ages)

    return result


# ═══════════════════════════════════════════════════════════════════════
# CONSTRUCTION
# ═══════════════════════════════════════════════════════════════════════

def _per_age(value: RateLike, n_ages: int) -> np.ndarray:
    """Coerce a scalar or per-age sequence to a float array of length n_ages."""
    arr = np.atleast_1d(np.asarray(value, dtype=np.float64))
    if arr.size == 1 and n_ages > 1:
        return np.full(n_ages, float(arr[0]))
    return arr.reshape(-1) if arr.ndim > 1 and 1 in arr.shape else arr


def _frozen(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, dtype=np.float64, copy=True)
    arr.flags.writeable = False
    return arr


def make_rate_parameters(
    kind: Union[ModelKind, str],
    birth: Any,
    death: Any,
    virus_growth: Union[RateLike, Mapping[str, RateLike]],
    virus_decay: float,
    beta_force: RateLike,
    beta_env: RateLike,
    stage_rates: Mapping[str, RateLike],
    age_mixing: Optional[Any] = None,
    freq_vs_density_force: float = 1.0,
    freq_vs_density_env: float = 1.0,
    env_virus_scale: float = 1.0,
) -> RateParameterSet:
    """Build, validate and freeze a RateParameterSet.

    Args:
        kind: Model name or ModelKind.
        birth: (C,) single age category, or (A, C) per age category.
        death: Same shape as birth.
        virus_growth: Mapping shedding-class → rate(s), or one rate applied
            to every shedding class of the model.
        virus_decay: Reservoir decay rate (d⁻¹).
        beta_force: Direct transmission rate(s).
        beta_env: Environmental transmission rate(s).
        stage_rates: Mapping rate name → rate(s) for the model's edges.
        age_mixing: (A, A) mixing weights; homogeneous (all ones) if None.
        freq_vs_density_force: Blend in [0, 1]; 1 = frequency dependent.
        freq_vs_density_env: Blend in [0, 1] for the environmental route.
        env_virus_scale: Fraction of shed virus entering the reservoir.

    Returns:
        Validated, read-only RateParameterSet.

    Raises:
        ConfigurationError: On any fatal finding.
    """
    try:
        kind = ModelKind(kind)
    except ValueError:
        raise ConfigurationError(
            f"unknown model '{kind}'; expected one of "
            f"{[k.value for k in ModelKind]}"
        ) from None

    birth = np.asarray(birth, dtype=np.float64)
    death = np.asarray(death, dtype=np.float64)
    for name, arr in (('birth', birth), ('death', death)):
        if arr.ndim not in (1, 2):
            raise ConfigurationError(
                f"{name} must be a (classes,) or (ages, classes) array, "
                f"got shape {arr.shape}")
    if birth.ndim == 1:
        birth = birth.reshape(1, -1)
    if death.ndim == 1:
        death = death.reshape(1, -1)
    n_ages = birth.shape[0]

    if age_mixing is None:
        age_mixing = np.ones((n_ages, n_ages))
    age_mixing = np.atleast_2d(np.asarray(age_mixing, dtype=np.float64))

    if isinstance(virus_growth, Mapping):
        growth = {name: _per_age(v, n_ages) for name, v in virus_growth.items()}
    else:
        growth = {name: _per_age(virus_growth, n_ages)
                  for name in SHEDDING_CLASSES[kind]}

    params = RateParameterSet(
        kind=kind,
        birth=birth,
        death=death,
        age_mixing=age_mixing,
        virus_growth=growth,
        virus_decay=float(virus_decay),
        beta_force=_per_age(beta_force, n_ages),
        beta_env=_per_age(beta_env, n_ages),
        stage_rates={name: _per_age(v, n_ages) for name, v in stage_rates.items()},
        freq_vs_density_force=float(freq_vs_density_force),
        freq_vs_density_env=float(freq_vs_density_env),
        env_virus_scale=float(env_virus_scale),
    )

    result = validate_rate_parameters(params)
    result.raise_for_errors()
    result.emit_warnings(stacklevel=3)

    return RateParameterSet(
        kind=params.kind,
        birth=_frozen(params.birth),
        death=_frozen(params.death),
        age_mixing=_frozen(params.age_mixing),
        virus_growth=MappingProxyType(
            {k: _frozen(v) for k, v in params.virus_growth.items()}),
        virus_decay=params.virus_decay,
        beta_force=_frozen(params.beta_force),
        beta_env=_frozen(params.beta_env),
        stage_rates=MappingProxyType(
            {k: _frozen(v) for k, v in params.stage_rates.items()}),
        freq_vs_density_force=params.freq_vs_density_force,
        freq_vs_density_env=params.freq_vs_density_env,
        env_virus_scale=params.env_virus_scale,
    )


# ═══════════════════════════════════════════════════════════════════════
# PER-MODEL CONSTRUCTORS
# ═══════════════════════════════════════════════════════════════════════

def sis_parameters(birth, death, virus_growth, virus_decay, beta_force,
                   beta_env, sigma, **kwargs) -> RateParameterSet:
    """SIS: Infected → Susceptible at sigma."""
    return make_rate_parameters(
        ModelKind.SIS, birth, death, virus_growth, virus_decay,
        beta_force, beta_env, {'sigma': sigma}, **kwargs,
    )


def sir_parameters(birth, death, virus_growth, virus_decay, beta_force,
                   beta_env, sigma, **kwargs) -> RateParameterSet:
    """SIR: Infected → Recovered at sigma."""
    return make_rate_parameters(
        ModelKind.SIR, birth, death, virus_growth, virus_decay,
        beta_force, beta_env, {'sigma': sigma}, **kwargs,
    )


def seir_parameters(birth, death, virus_growth, virus_decay, beta_force,
                    beta_env, mu, sigma, **kwargs) -> RateParameterSet:
    """SEIR: Exposed → Infected at mu, Infected → Recovered at sigma."""
    return make_rate_parameters(
        ModelKind.SEIR, birth, death, virus_growth, virus_decay,
        beta_force, beta_env, {'mu': mu, 'sigma': sigma}, **kwargs,
    )


def seirs_parameters(birth, death, virus_growth, virus_decay, beta_force,
                     beta_env, mu, sigma, epsilon, **kwargs) -> RateParameterSet:
    """SEIRS: SEIR plus waning immunity Recovered → Susceptible at epsilon."""
    return make_rate_parameters(
        ModelKind.SEIRS, birth, death, virus_growth, virus_decay,
        beta_force, beta_env, {'mu': mu, 'sigma': sigma, 'epsilon': epsilon},
        **kwargs,
    )


def sei2hrd_parameters(birth, death, virus_growth_asymp, virus_growth_symp,
                       virus_decay, beta_force, beta_env, sigma_1, sigma_2,
                       sigma_hospital, mu_1, mu_2, hospitalisation,
                       death_home, death_hospital, **kwargs) -> RateParameterSet:
    """SEI2HRD with asymptomatic and symptomatic shedding."""
    return make_rate_parameters(
        ModelKind.SEI2HRD, birth, death,
        {'Asymptomatic': virus_growth_asymp, 'Symptomatic': virus_growth_symp},
        virus_decay, beta_force, beta_env,
        {
            'mu_1': mu_1, 'mu_2': mu_2, 'hospitalisation': hospitalisation,
            'sigma_1': sigma_1, 'sigma_2': sigma_2,
            'sigma_hospital': sigma_hospital,
            'death_home': death_home, 'death_hospital': death_hospital,
        },
        **kwargs,
    )


def sei3hrd_parameters(birth, death, virus_growth_asymp, virus_growth_presymp,
                       virus_growth_symp, virus_decay, beta_force, beta_env,
                       sigma_1, sigma_2, sigma_hospital, mu_1, mu_2, mu_3,
                       hospitalisation, death_home, death_hospital,
                       **kwargs) -> RateParameterSet:
    """SEI3HRD with asymptomatic, presymptomatic and symptomatic shedding."""
    return make_rate_parameters(
        ModelKind.SEI3HRD, birth, death,
        {
            'Asymptomatic': virus_growth_asymp,
            'Presymptomatic': virus_growth_presymp,
            'Symptomatic': virus_growth_symp,
        },
        virus_decay, beta_force, beta_env,
        {
            'mu_1': mu_1, 'mu_2': mu_2, 'mu_3': mu_3,
            'hospitalisation': hospitalisation,
            'sigma_1': sigma_1, 'sigma_2': sigma_2,
            'sigma_hospital': sigma_hospital,
            'death_home': death_home, 'death_hospital': death_hospital,
        },
        **kwargs,
    )


# ═══════════════════════════════════════════════════════════════════════
# CLINICAL PARAMETERISATION
# ═══════════════════════════════════════════════════════════════════════

def _check_clinical(probs: Dict[str, Any], durations: Dict[str, Any]) -> None:
    for name, p in probs.items():
        p = np.asarray(p, dtype=np.float64)
        if np.any(p < 0) or np.any(p > 1) or not np.all(np.isfinite(p)):
            raise ConfigurationError(f"{name} must be a probability in [0, 1]")
    for name, t in durations.items():
        t = np.asarray(t, dtype=np.float64)
        if np.any(t <= 0) or not np.all(np.isfinite(t)):
            raise ConfigurationError(f"{name} must be a positive duration (days)")


def sei2hrd_rates(prob_sym, prob_hosp, cfr_home, cfr_hosp,
                  T_lat, T_asym, T_sym, T_hosp, T_rec) -> Dict[str, np.ndarray]:
    """SEI2HRD stage rates from clinical probabilities and durations (days).

    Probabilities may be scalars or per-age vectors.
    """
    _check_clinical(
        {'prob_sym': prob_sym, 'prob_hosp': prob_hosp,
         'cfr_home': cfr_home, 'cfr_hosp': cfr_hosp},
        {'T_lat': T_lat, 'T_asym': T_asym, 'T_sym': T_sym,
         'T_hosp': T_hosp, 'T_rec': T_rec},
    )
    p_s, p_h = np.asarray(prob_sym, float), np.asarray(prob_hosp, float)
    cfr_home, cfr_hosp = np.asarray(cfr_home, float), np.asarray(cfr_hosp, float)
    return {
        'mu_1': np.asarray(1.0 / T_lat),
        'mu_2': p_s / T_asym,
        'hospitalisation': p_h / T_sym,
        'sigma_1': (1.0 - p_s) / T_asym,
        'sigma_2': (1.0 - p_h) * (1.0 - cfr_home) / T_rec,
        'sigma_hospital': (1.0 - cfr_hosp) / T_hosp,
        'death_home': cfr_home * 2.0 / T_hosp,
        'death_hospital': cfr_hosp / T_hosp,
    }


def sei3hrd_rates(prob_sym, prob_hosp, cfr_home, cfr_hosp,
                  T_lat, T_asym, T_presym, T_sym, T_hosp,
                  T_rec) -> Dict[str, np.ndarray]:
    """SEI3HRD stage rates from clinical probabilities and durations (days).

    Exposed split: (1 − prob_sym) → Asymptomatic, prob_sym → Presymptomatic.
    """
    _check_clinical(
        {'prob_sym': prob_sym, 'prob_hosp': prob_hosp,
         'cfr_home': cfr_home, 'cfr_hosp': cfr_hosp},
        {'T_lat': T_lat, 'T_asym': T_asym, 'T_presym': T_presym,
         'T_sym': T_sym, 'T_hosp': T_hosp, 'T_rec': T_rec},
    )
    p_s, p_h = np.asarray(prob_sym, float), np.asarray(prob_hosp, float)
    cfr_home, cfr_hosp = np.asarray(cfr_home, float), np.asarray(cfr_hosp, float)
    return {
        'mu_1': (1.0 - p_s) / T_lat,
        'mu_2': p_s / T_lat,
        'mu_3': np.asarray(1.0 / T_presym),
        'hospitalisation': p_h / T_sym,
        'sigma_1': np.asarray(1.0 / T_asym),
        'sigma_2': (1.0 - p_h) * (1.0 - cfr_home) / T_rec,
        'sigma_hospital': (1.0 - cfr_hosp) / T_hosp,
        'death_home': cfr_home * 2.0 / T_hosp,
        'death_hospital': cfr_hosp / T_hosp,
    }
