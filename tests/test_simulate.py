"""Tests for epigrid.simulate — driver, recording, cancellation, replicates."""

import numpy as np
import pytest

from epigrid.compiler import compile_operators
from epigrid.errors import ConfigurationError
from epigrid.habitat import make_grid_habitat
from epigrid.params import seir_parameters
from epigrid.perf import PerfMonitor
from epigrid.simulate import (
    SimulationResult,
    run_replicates,
    run_simulation,
    validate_schedule,
)
from epigrid.state import empty_state, seed_hosts, seed_virus


@pytest.fixture
def ops():
    params = seir_parameters(np.zeros(5), np.zeros(5), 0.5, 0.5, 20.0, 20.0,
                             mu=0.3, sigma=0.2)
    return compile_operators(params)


@pytest.fixture
def habitat():
    return make_grid_habitat((2, 2), area_km2=400.0, dispersal_km=10.0)


@pytest.fixture
def state(ops, habitat):
    st = empty_state(ops, habitat)
    st.human[0] = 500
    seed_hosts(st, ops, 'Exposed', 10, cell=0)
    seed_virus(st, 50.0, cell=0)
    return st


# ── Schedule ─────────────────────────────────────────────────────────

class TestValidateSchedule:
    def test_whole_multiples(self):
        assert validate_schedule(10.0, 0.5, 2.0) == (20, 4)
        assert validate_schedule(365, 1, None) == (365, None)

    def test_float_tolerance(self):
        assert validate_schedule(1.0, 0.1, 0.3) == (10, 3)

    def test_misaligned_record_interval(self):
        with pytest.raises(ConfigurationError, match="record_interval"):
            validate_schedule(10.0, 1.0, 1.5)

    def test_misaligned_duration(self):
        with pytest.raises(ConfigurationError, match="duration"):
            validate_schedule(10.5, 1.0)

    @pytest.mark.parametrize("args", [(0.0, 1.0), (10.0, 0.0), (10.0, -1.0)])
    def test_non_positive(self, args):
        with pytest.raises(ConfigurationError):
            validate_schedule(*args)

    def test_record_shorter_than_step(self):
        with pytest.raises(ConfigurationError):
            validate_schedule(10.0, 1.0, 0.5)


# ── Single run ───────────────────────────────────────────────────────

class TestRunSimulation:
    def test_frame_layout(self, ops, habitat, state):
        initial = state.human.copy()
        res = run_simulation(state, ops, habitat, duration=20.0, timestep=1.0,
                             record_interval=5.0, rng=np.random.default_rng(0))
        assert isinstance(res, SimulationResult)
        assert res.abundances.shape == (5, 4, 5)
        np.testing.assert_array_equal(res.times, [0.0, 5.0, 10.0, 15.0, 20.0])
        np.testing.assert_array_equal(res.abundances[..., 0], initial)
        np.testing.assert_array_equal(res.abundances[..., -1], res.final_state.human)
        assert res.virus.shape == (2, 4, 5)
        assert res.steps_completed == 20
        assert not res.cancelled

    def test_frames_at_aligned_ticks(self, ops, habitat, state):
        """Frame k matches the state after step k * stride."""
        seen = {}

        def remember(hab, st, time, dt):
            seen[time] = st.human.copy()

        res = run_simulation(state, ops, habitat, 12.0, 1.0, record_interval=3.0,
                             scenario=remember, rng=np.random.default_rng(1))
        for k, t in enumerate(res.times[1:], start=1):
            np.testing.assert_array_equal(res.abundances[..., k], seen[t])

    def test_misaligned_fails_before_stepping(self, ops, habitat, state):
        before = state.human.copy()
        calls = []
        with pytest.raises(ConfigurationError):
            run_simulation(state, ops, habitat, 10.0, 1.0, record_interval=2.5,
                           scenario=lambda *a: calls.append(a))
        assert calls == []
        np.testing.assert_array_equal(state.human, before)

    def test_no_recording(self, ops, habitat, state):
        res = run_simulation(state, ops, habitat, 5.0, 1.0,
                             rng=np.random.default_rng(0))
        assert res.abundances is None
        assert res.times is None
        assert res.final_state is state
        assert res.steps_completed == 5

    def test_scenario_called_each_step(self, ops, habitat, state):
        calls = []
        run_simulation(state, ops, habitat, 3.0, 0.5,
                       scenario=lambda h, s, t, dt: calls.append((t, dt)),
                       rng=np.random.default_rng(0))
        assert [c[0] for c in calls] == [0.5, 1.0, 1.5, 2.0, 2.5, 3.0]
        assert all(c[1] == 0.5 for c in calls)

    def test_cancellation_truncates(self, ops, habitat, state):
        res = run_simulation(state, ops, habitat, 20.0, 1.0, record_interval=2.0,
                             should_stop=lambda step, time: step >= 7,
                             rng=np.random.default_rng(0))
        assert res.cancelled
        assert res.steps_completed == 7
        # Frames at t = 0, 2, 4, 6
        np.testing.assert_array_equal(res.times, [0.0, 2.0, 4.0, 6.0])
        assert res.abundances.shape[-1] == 4

    def test_progress_callback(self, ops, habitat, state):
        progress = []
        run_simulation(state, ops, habitat, 4.0, 1.0,
                       progress_callback=lambda s, n: progress.append((s, n)),
                       rng=np.random.default_rng(0))
        assert progress == [(1, 4), (2, 4), (3, 4), (4, 4)]

    def test_population_conserved(self, ops, habitat, state):
        total = state.total_hosts()
        res = run_simulation(state, ops, habitat, 30.0, 1.0, record_interval=1.0,
                             rng=np.random.default_rng(3))
        np.testing.assert_array_equal(res.abundances.sum(axis=(0, 1)),
                                      np.full(31, total))

    def test_class_series(self, ops, habitat, state):
        res = run_simulation(state, ops, habitat, 10.0, 1.0, record_interval=1.0,
                             rng=np.random.default_rng(4))
        s = res.class_series("Susceptible")
        assert s.shape == (11,)
        assert s[0] == 2000
        assert np.all(np.diff(s) <= 0)
        assert np.all(np.diff(res.class_series("Recovered")) >= 0)

    def test_perf_and_verbose(self, ops, habitat, state, capsys):
        perf = PerfMonitor(enabled=True)
        run_simulation(state, ops, habitat, 2.0, 1.0, record_interval=1.0,
                       rng=np.random.default_rng(0), perf=perf, verbose=True)
        assert 'scenario' in perf.calls
        assert 'record' in perf.calls
        assert "Day 2/2" in capsys.readouterr().out


class TestSave:
    def test_npz_contents(self, ops, habitat, state, tmp_path):
        res = run_simulation(state, ops, habitat, 4.0, 1.0, record_interval=2.0,
                             rng=np.random.default_rng(0))
        res.config_hash = "abc123"
        path = res.save(tmp_path / "out" / "run")
        assert path.name == "run.npz"
        data = np.load(path)
        np.testing.assert_array_equal(data['abundances'], res.abundances)
        np.testing.assert_array_equal(data['times'], [0.0, 2.0, 4.0])
        assert list(data['class_names']) == list(ops.class_names)
        assert str(data['config_hash']) == "abc123"
        np.testing.assert_array_equal(data['final_human'], res.final_state.human)


# ── Replicates ───────────────────────────────────────────────────────

class TestRunReplicates:
    def test_stacked_axis(self, ops, habitat, state):
        res = run_replicates(lambda rng: (state.copy(), habitat.copy()), ops,
                             10.0, 1.0, n_replicates=3, seed=7,
                             record_interval=5.0)
        assert res.n_replicates == 3
        assert res.abundances.shape == state.human.shape + (3, 3)
        assert len(res.final_states) == 3
        # All replicates start from the same state
        for r in range(3):
            np.testing.assert_array_equal(res.abundances[..., 0, r], state.human)

    def test_input_state_untouched(self, ops, habitat, state):
        before = state.human.copy()
        run_replicates(lambda rng: (state.copy(), habitat.copy()), ops,
                       5.0, 1.0, n_replicates=2)
        np.testing.assert_array_equal(state.human, before)

    def test_reproducible_and_parallel_equivalent(self, ops, habitat, state):
        build = lambda rng: (state.copy(), habitat.copy())
        serial = run_replicates(build, ops, 10.0, 1.0, n_replicates=4, seed=3,
                                record_interval=1.0)
        threaded = run_replicates(build, ops, 10.0, 1.0, n_replicates=4, seed=3,
                                  record_interval=1.0, parallel_workers=3)
        np.testing.assert_array_equal(serial.abundances, threaded.abundances)

    def test_replicates_differ(self, ops, habitat, state):
        res = run_replicates(lambda rng: (state.copy(), habitat.copy()), ops,
                             20.0, 1.0, n_replicates=2, seed=11,
                             record_interval=20.0)
        assert not np.array_equal(res.abundances[..., -1, 0],
                                  res.abundances[..., -1, 1])

    def test_scenario_factory_fresh_per_replicate(self, ops, habitat, state):
        made = []

        def factory():
            calls = []
            made.append(calls)
            return lambda h, s, t, dt: calls.append(t)

        run_replicates(lambda rng: (state.copy(), habitat.copy()), ops,
                       3.0, 1.0, n_replicates=2, scenario_factory=factory)
        assert len(made) == 2
        assert made[0] == [1.0, 2.0, 3.0]
        assert made[1] == [1.0, 2.0, 3.0]

    def test_perf_sums_replicates(self, ops, habitat, state):
        perf = PerfMonitor(enabled=True)
        run_replicates(lambda rng: (state.copy(), habitat.copy()), ops,
                       4.0, 1.0, n_replicates=3, parallel_workers=2, perf=perf)
        assert perf.steps == 12
        assert perf.calls['scenario'] == 12

    def test_bad_counts(self, ops, habitat, state):
        build = lambda rng: (state.copy(), habitat.copy())
        with pytest.raises(ConfigurationError):
            run_replicates(build, ops, 5.0, 1.0, n_replicates=0)
        with pytest.raises(ConfigurationError):
            run_replicates(build, ops, 5.0, 1.0, n_replicates=2,
                           parallel_workers=0)
