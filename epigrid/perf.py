"""Wall-clock time spent in each stage of an epidemic run.

epi_step times its own stages (STEP_STAGES); run_simulation adds the
scenario hook and frame recording (DRIVER_STAGES). Replicates each get a
private monitor which run_replicates folds into the caller's with merge(),
so ensemble timings add up across worker threads.

A disabled monitor's track() yields immediately and records nothing.
"""

import time
from contextlib import contextmanager
from typing import Dict

STEP_STAGES = ('virus', 'rates', 'transitions', 'births', 'checks')
DRIVER_STAGES = ('scenario', 'record')


class PerfMonitor:
    """Seconds and call counts per stage."""

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self.seconds: Dict[str, float] = {}
        self.calls: Dict[str, int] = {}

    @contextmanager
    def track(self, stage: str):
        if not self.enabled:
            yield
            return
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.seconds[stage] = self.seconds.get(stage, 0.0) + time.perf_counter() - t0
            self.calls[stage] = self.calls.get(stage, 0) + 1

    def merge(self, other: 'PerfMonitor') -> None:
        """Add another monitor's timings to this one."""
        for stage, secs in other.seconds.items():
            self.seconds[stage] = self.seconds.get(stage, 0.0) + secs
            self.calls[stage] = self.calls.get(stage, 0) + other.calls[stage]

    @property
    def steps(self) -> int:
        """Number of epi_step calls seen (each tracks 'virus' once)."""
        return self.calls.get('virus', 0)

    def breakdown(self) -> Dict[str, Dict[str, float]]:
        """Per stage: total seconds, ms per step and share of tracked time.

        Known stages come first in run order, then any others by name.
        """
        total = sum(self.seconds.values())
        known = [s for s in STEP_STAGES + DRIVER_STAGES if s in self.seconds]
        extra = sorted(set(self.seconds) - set(known))
        per_step = max(self.steps, 1)
        return {
            stage: {
                'seconds': self.seconds[stage],
                'ms_per_step': 1000.0 * self.seconds[stage] / per_step,
                'share': self.seconds[stage] / total if total > 0 else 0.0,
            }
            for stage in known + extra
        }

    def report(self) -> str:
        lines = [f"Stage timing over {self.steps} steps",
                 f"{'stage':<12} {'seconds':>9} {'ms/step':>9} {'share':>6}"]
        for stage, row in self.breakdown().items():
            lines.append(f"{stage:<12} {row['seconds']:>9.4f} "
                         f"{row['ms_per_step']:>9.3f} {row['share']:>6.1%}")
        return '\n'.join(lines)
