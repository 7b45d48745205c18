"""Tests for epigrid.dynamics — the stochastic step engine."""

import numpy as np
import pytest

from epigrid.compiler import compile_operators
from epigrid.dynamics import (
    apply_births,
    apply_transitions,
    check_state,
    disperse_virus,
    epi_step,
    infection_pressure,
    shed_virus,
    transition_rates,
    update_environment,
)
from epigrid.errors import ConfigurationError, InvariantViolation
from epigrid.habitat import make_grid_habitat
from epigrid.params import sir_parameters
from epigrid.perf import PerfMonitor
from epigrid.state import empty_state, seed_hosts, seed_virus
from epigrid.types import VirusPool


def _sir_ops(beta=5.0, birth=None, death=None, **kwargs):
    birth = np.zeros(4) if birth is None else birth
    death = np.zeros(4) if death is None else death
    params = sir_parameters(birth, death, 1.0, 0.5, beta, beta, sigma=0.2,
                            **kwargs)
    return compile_operators(params)


@pytest.fixture
def ops():
    return _sir_ops()


@pytest.fixture
def habitat():
    return make_grid_habitat((2, 2), area_km2=400.0, dispersal_km=10.0)


@pytest.fixture
def state(ops, habitat):
    st = empty_state(ops, habitat)
    st.human[0] = [1000, 1000, 1000, 1000]
    seed_hosts(st, ops, 'Infected', 20, cell=0)
    return st


# ── Virus ────────────────────────────────────────────────────────────

class TestVirus:
    def test_shedding_per_infected(self, ops, state):
        shed = shed_virus(state.human, ops, dt=0.5)
        assert shed.shape == (1, 4)
        np.testing.assert_allclose(shed[0], [10.0, 0.0, 0.0, 0.0])

    def test_dispersal_conserves_virus(self, habitat):
        shed = np.array([[10.0, 0.0, 3.0, 0.0]])
        received = disperse_virus(shed, habitat)
        assert received.sum() == pytest.approx(13.0)
        assert received[0, 1] > 0

    def test_inactive_cell_neither_exports_nor_imports(self, habitat):
        habitat.active[0] = False
        received = disperse_virus(np.array([[10.0, 4.0, 0.0, 0.0]]), habitat)
        assert received[0, 0] == pytest.approx(10.0)
        assert received[0, 1:].sum() == pytest.approx(4.0)

    def test_environment_update(self, ops):
        env = np.array([100.0, 0.0])
        new = update_environment(env, np.array([1.0, 2.0]), ops, dt=2.0)
        np.testing.assert_allclose(new, [100.0 * np.exp(-1.0) + 1.0, 2.0])

    def test_env_virus_scale(self):
        ops = _sir_ops(env_virus_scale=0.25)
        new = update_environment(np.zeros(1), np.array([8.0]), ops, dt=1.0)
        assert new[0] == pytest.approx(2.0)


# ── Pressure & rates ─────────────────────────────────────────────────

class TestInfectionPressure:
    def test_frequency_dependent(self):
        out = infection_pressure(np.array([10.0, 10.0]), np.array([100, 50]), 1.0)
        np.testing.assert_allclose(out, [0.1, 0.2])

    def test_density_dependent(self):
        out = infection_pressure(np.array([10.0]), np.array([100]), 0.0)
        np.testing.assert_allclose(out, [10.0])

    def test_blend(self):
        out = infection_pressure(np.array([10.0]), np.array([100]), 0.5)
        np.testing.assert_allclose(out, [0.5 * 0.1 + 0.5 * 10.0])

    def test_empty_cell_is_zero(self):
        out = infection_pressure(np.array([[5.0, 5.0]]), np.array([0, 10]), 0.3)
        assert out[0, 0] == 0.0
        assert out[0, 1] > 0

    def test_per_age_broadcast(self):
        x = np.array([[1.0, 2.0], [3.0, 4.0]])
        out = infection_pressure(x, np.array([1.0, 2.0]), 1.0)
        np.testing.assert_allclose(out, [[1.0, 1.0], [3.0, 2.0]])


class TestTransitionRates:
    def test_pressure_scales_infection(self, ops):
        R = transition_rates(ops, p_force=np.array([[0.1, 0.0]]),
                             p_env=np.array([0.0, 0.2]))
        assert R.shape == (4, 4, 2)
        # S → I in each cell: beta_force*p_force + beta_env*p_env
        assert R[1, 0, 0] == pytest.approx(5.0 * 0.1)
        assert R[1, 0, 1] == pytest.approx(5.0 * 0.2)
        # I → R unaffected by pressure
        assert R[2, 1, 0] == pytest.approx(0.2)
        assert np.all(R[np.arange(4), np.arange(4), :] == 0.0)

    def test_nan_pressure_raises(self, ops):
        with pytest.raises(InvariantViolation, match="non-finite"):
            transition_rates(ops, np.array([[np.nan]]), np.array([0.0]))

    def test_negative_pressure_raises(self, ops):
        with pytest.raises(InvariantViolation, match="negative"):
            transition_rates(ops, np.array([[-1.0]]), np.array([0.0]))


# ── Host movement ────────────────────────────────────────────────────

class TestApplyTransitions:
    def test_columns_conserved(self):
        rng = np.random.default_rng(0)
        human = np.array([[500, 20], [30, 0], [0, 7]], dtype=np.int64)
        R = np.zeros((3, 3, 2))
        R[1, 0] = 0.3
        R[2, 1] = 0.5
        R[0, 2] = 0.1
        out = apply_transitions(human, R, 1.0, rng)
        np.testing.assert_array_equal(out.sum(axis=0), human.sum(axis=0))
        assert np.all(out >= 0)

    def test_no_rates_no_movement(self):
        human = np.array([[5], [6]], dtype=np.int64)
        out = apply_transitions(human, np.zeros((2, 2, 1)), 1.0,
                                np.random.default_rng(0))
        np.testing.assert_array_equal(out, human)

    def test_competing_risks_split(self):
        human = np.array([[100_000], [0], [0]], dtype=np.int64)
        R = np.zeros((3, 3, 1))
        R[1, 0, 0] = 1.0
        R[2, 0, 0] = 3.0
        out = apply_transitions(human, R, 100.0, np.random.default_rng(7))
        assert out[0, 0] == 0
        assert out[1, 0] == pytest.approx(25_000, abs=1500)
        assert out[1, 0] + out[2, 0] == 100_000

    def test_leaving_probability(self):
        human = np.array([[200_000], [0]], dtype=np.int64)
        R = np.zeros((2, 2, 1))
        R[1, 0, 0] = np.log(2.0)       # half leave per unit time
        out = apply_transitions(human, R, 1.0, np.random.default_rng(11))
        assert out[1, 0] == pytest.approx(100_000, abs=2000)


class TestBirths:
    def test_newborns_susceptible_age_zero(self):
        ops = _sir_ops(birth=np.array([0.1, 0.1, 0.1, 0.0]))
        parents = np.array([[1000], [0], [0], [50]], dtype=np.int64)
        human, n_born = apply_births(parents.copy(), parents, ops, 1.0,
                                     np.random.default_rng(3))
        assert n_born > 0
        assert human[0, 0] == 1000 + n_born
        assert human[3, 0] == 50

    def test_no_birth_rates(self, ops):
        parents = np.array([[1000], [0], [0], [0]], dtype=np.int64)
        human, n_born = apply_births(parents.copy(), parents, ops, 1.0,
                                     np.random.default_rng(3))
        assert n_born == 0
        np.testing.assert_array_equal(human, parents)


# ── Full step ────────────────────────────────────────────────────────

class TestEpiStep:
    def test_conservation_without_demography(self, ops, habitat, state):
        rng = np.random.default_rng(42)
        total = state.total_hosts()
        for _ in range(30):
            epi_step(state, ops, habitat, 1.0, rng)
            assert state.total_hosts() == total
            assert np.all(state.human >= 0)

    def test_sinks_monotone(self, ops, habitat, state):
        rng = np.random.default_rng(5)
        prev_r = prev_s = None
        for _ in range(30):
            epi_step(state, ops, habitat, 1.0, rng)
            s, r = state.human[0].sum(), state.human[2].sum()
            if prev_r is not None:
                assert r >= prev_r
                assert s <= prev_s
            prev_r, prev_s = r, s

    def test_infection_spreads(self, ops, habitat, state):
        rng = np.random.default_rng(1)
        for _ in range(20):
            epi_step(state, ops, habitat, 1.0, rng)
        assert state.human[0].sum() < 4000

    def test_zero_transmission_blocks_infection(self, habitat):
        with pytest.warns(UserWarning):
            ops = _sir_ops(beta=0.0)
        st = empty_state(ops, habitat)
        st.human[0] = 1000
        seed_hosts(st, ops, 'Infected', 50, cell=0)
        seed_virus(st, 1e6, cell=0)
        rng = np.random.default_rng(9)
        for _ in range(20):
            epi_step(st, ops, habitat, 1.0, rng)
        assert st.human[0].sum() == 4000

    def test_force_pool_holds_dispersed_shedding(self, ops, habitat, state):
        shed_total = 20 * 1.0 * 1.0
        epi_step(state, ops, habitat, 1.0, np.random.default_rng(0))
        assert state.virus[VirusPool.FORCE].sum() == pytest.approx(shed_total)
        assert state.virus[VirusPool.ENVIRONMENT].sum() == pytest.approx(shed_total)

    def test_reservoir_decays(self, ops, habitat):
        st = empty_state(ops, habitat)
        st.human[0] = 10
        seed_virus(st, 100.0, cell=2)
        epi_step(st, ops, habitat, 2.0, np.random.default_rng(0))
        assert st.virus[VirusPool.ENVIRONMENT, 2] == pytest.approx(100.0 * np.exp(-1.0))

    def test_births_increase_population(self, habitat):
        ops = _sir_ops(birth=np.array([0.05, 0.0, 0.0, 0.0]))
        st = empty_state(ops, habitat)
        st.human[0] = 1000
        epi_step(st, ops, habitat, 1.0, np.random.default_rng(2))
        assert st.total_hosts() > 4000

    def test_deaths_route_to_dead(self, habitat):
        ops = _sir_ops(death=np.array([0.5, 0.0, 0.0, 0.0]))
        st = empty_state(ops, habitat)
        st.human[0] = 1000
        epi_step(st, ops, habitat, 1.0, np.random.default_rng(2))
        assert st.human[3].sum() > 0
        assert st.total_hosts() == 4000

    def test_reproducible(self, ops, habitat, state):
        a, b = state.copy(), state.copy()
        epi_step(a, ops, habitat, 1.0, np.random.default_rng(123))
        epi_step(b, ops, habitat, 1.0, np.random.default_rng(123))
        np.testing.assert_array_equal(a.human, b.human)
        np.testing.assert_array_equal(a.virus, b.virus)

    def test_dimension_mismatch_before_mutation(self, ops, state):
        other = make_grid_habitat((3, 3), area_km2=900.0)
        before = state.copy()
        with pytest.raises(ConfigurationError):
            epi_step(state, ops, other, 1.0, np.random.default_rng(0))
        np.testing.assert_array_equal(state.human, before.human)
        np.testing.assert_array_equal(state.virus, before.virus)

    def test_bad_timestep(self, ops, habitat, state):
        with pytest.raises(ConfigurationError, match="timestep"):
            epi_step(state, ops, habitat, 0.0, np.random.default_rng(0))

    def test_perf_components_tracked(self, ops, habitat, state):
        perf = PerfMonitor(enabled=True)
        epi_step(state, ops, habitat, 1.0, np.random.default_rng(0), perf=perf)
        assert {'virus', 'rates', 'transitions', 'births', 'checks'} <= set(perf.calls)


    def test_failed_rate_check_leaves_state_untouched(self, ops, habitat, state):
        state.virus[VirusPool.ENVIRONMENT, 0] = -1e6
        human, virus = state.human.copy(), state.virus.copy()
        with pytest.raises(InvariantViolation, match="negative transition rate"):
            epi_step(state, ops, habitat, 1.0, np.random.default_rng(0))
        np.testing.assert_array_equal(state.human, human)
        np.testing.assert_array_equal(state.virus, virus)


class TestAgeMixing:
    """Cross-age mixing carries one cohort's shedding onto the other."""

    @pytest.fixture
    def ops(self):
        z = np.zeros((2, 4))
        with pytest.warns(UserWarning, match="Transmission rates are zero"):
            params = sir_parameters(z, z, 1.0, 0.5, [5.0, 5.0], 0.0,
                                    sigma=0.2,
                                    age_mixing=[[0.0, 1.0], [1.0, 0.0]])
        return compile_operators(params)

    def test_infected_age_one_infects_age_zero_only(self, ops, habitat):
        st = empty_state(ops, habitat)
        st.human[0] = 1000                      # Susceptible, age 0
        st.human[1] = 1000                      # Susceptible, age 1
        seed_hosts(st, ops, 'Infected', 50, cell=0, age=1)
        epi_step(st, ops, habitat, 1.0, np.random.default_rng(2))
        assert st.human[0, 0] < 1000
        assert st.human[2, 0] > 0               # Infected, age 0
        assert st.human[1].tolist() == [1000] * 4
        assert st.human.sum() == 4 * 2000 + 50


class TestCheckState:
    def test_negative_count(self, ops, habitat):
        st = empty_state(ops, habitat)
        st.human[0, 0] = -1
        with pytest.raises(InvariantViolation, match="negative"):
            check_state(st)

    def test_lost_hosts(self, ops, habitat):
        st = empty_state(ops, habitat)
        st.human[0, 0] = 10
        with pytest.raises(InvariantViolation, match="expected"):
            check_state(st, expected_total=11)

    def test_bad_virus(self, ops, habitat):
        st = empty_state(ops, habitat)
        st.virus[0, 0] = np.inf
        with pytest.raises(InvariantViolation, match="virus"):
            check_state(st)
