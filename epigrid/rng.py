"""Seeded RNG streams for reproducible runs and replicate ensembles.

SeedSequence → PCG64, one child per stream:
  - 'global'        initial distribution of hosts
  - 'replicate_<r>' dynamics of replicate r

The same master seed replays bit-exactly, and the stream of replicate r
does not depend on how many replicates are requested.
"""

from __future__ import annotations

from typing import Dict

import numpy as np


def _generator(seed_seq: np.random.SeedSequence) -> np.random.Generator:
    return np.random.Generator(np.random.PCG64(seed_seq))


def create_rng_hierarchy(master_seed: int,
                         n_replicates: int = 1) -> Dict[str, np.random.Generator]:
    """Independent generators for setup and each replicate.

    Args:
        master_seed: Non-negative integer seed.
        n_replicates: Number of replicate streams.

    Returns:
        {'global': ..., 'replicate_0': ..., ...}
    """
    if n_replicates < 0:
        raise ValueError(f"n_replicates must be >= 0, got {n_replicates}")
    root = np.random.SeedSequence(master_seed)
    global_seq, replicate_root = root.spawn(2)
    rngs: Dict[str, np.random.Generator] = {'global': _generator(global_seq)}
    for r, child in enumerate(replicate_root.spawn(n_replicates)):
        rngs[f'replicate_{r}'] = _generator(child)
    return rngs


def replicate_rng(rngs: Dict[str, np.random.Generator],
                  replicate: int) -> np.random.Generator:
    """Stream of one replicate.

    Raises:
        KeyError: If the replicate has no stream.
    """
    key = f'replicate_{replicate}'
    if key not in rngs:
        n = sum(1 for k in rngs if k.startswith('replicate_'))
        raise KeyError(f"No RNG stream for replicate {replicate} ({n} available)")
    return rngs[key]
