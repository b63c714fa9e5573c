"""Seeded random variate source for reproducible replicates.

Uses NumPy's SeedSequence → PCG64 hierarchy to guarantee:
  - Statistical independence between per-replicate streams
  - Bit-exact replay with the same master seed
  - Replicate i's stream does not depend on how many replicates run,
    nor on the order in which workers execute them

Every stochastic step draws from a RandomVariateSource passed in
explicitly; there is no module-level generator.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Union

import numpy as np
from scipy.stats import truncnorm

from ecolysis.errors import InvalidParameter

ArrayLike = Union[float, Sequence[float], np.ndarray]


def replicate_seed(master_seed: int, replicate: int) -> np.random.SeedSequence:
    """Seed sequence for one replicate.

    Equivalent to ``SeedSequence(master_seed).spawn(n)[replicate]`` for any
    n > replicate, so a worker can rebuild its stream from two integers.
    """
    return np.random.SeedSequence(master_seed, spawn_key=(replicate,))


def spawn_sources(master_seed: int, n_replicates: int) -> List['RandomVariateSource']:
    """Create independent variate sources for replicates 0..n-1."""
    return [RandomVariateSource(replicate_seed(master_seed, i))
            for i in range(n_replicates)]


class RandomVariateSource:
    """Uniform, normal, Poisson and binomial draws from one PCG64 stream.

    Args:
        seed: Integer seed or SeedSequence.

    Raises (from sampling methods):
        InvalidParameter: Negative variance/rate, probability outside
            [0, 1], or an unsatisfiable truncation bound.
    """

    def __init__(self, seed: Union[int, np.random.SeedSequence]):
        if not isinstance(seed, np.random.SeedSequence):
            seed = np.random.SeedSequence(seed)
        self._rng = np.random.Generator(np.random.PCG64(seed))

    # ── uniform ──────────────────────────────────────────────────────

    def uniform(self, size=None):
        """Uniform(0, 1)."""
        return self._rng.random(size)

    def integers(self, low: int, high: int, size=None):
        return self._rng.integers(low, high, size=size)

    # ── normal ───────────────────────────────────────────────────────

    def normal(
        self,
        mean: float,
        sd: float,
        lower: Optional[float] = None,
        upper: Optional[float] = None,
    ) -> float:
        """Normal(mean, sd), optionally truncated to [lower, upper].

        With sd == 0 the mean is returned, provided it lies within the bounds.
        """
        if not np.isfinite(mean):
            raise InvalidParameter('normal.mean', "must be finite", mean)
        if not sd >= 0:
            raise InvalidParameter('normal.sd', "must be >= 0", sd)
        lo = -np.inf if lower is None else float(lower)
        hi = np.inf if upper is None else float(upper)
        if lo > hi:
            raise InvalidParameter(
                'normal.bounds', "lower bound exceeds upper bound", (lo, hi))
        if sd == 0:
            if not (lo <= mean <= hi):
                raise InvalidParameter(
                    'normal.mean',
                    f"outside truncation bounds [{lo}, {hi}] with zero variance",
                    mean)
            return float(mean)
        if lower is None and upper is None:
            return float(self._rng.normal(mean, sd))
        if lo == hi:
            return lo
        a = (lo - mean) / sd
        b = (hi - mean) / sd
        value = float(truncnorm.rvs(a, b, loc=mean, scale=sd, random_state=self._rng))
        # guard against round-off at the bounds
        return min(max(value, lo), hi)

    def correlated_rates(
        self,
        means: ArrayLike,
        sds: ArrayLike,
        correlation: float = 0.0,
        lower: float = 0.0,
        upper: float = np.inf,
    ) -> np.ndarray:
        """One environmental draw of a per-stage rate vector.

        Rates are jointly normal with pairwise correlation ``correlation``
        (equicorrelation, in [0, 1]) and are clipped to [lower, upper].
        Stages with sd == 0 return their mean exactly.
        """
        means = np.asarray(means, dtype=np.float64)
        sds = np.asarray(sds, dtype=np.float64)
        if np.any(~(sds >= 0)):
            raise InvalidParameter('rates.sd', "must be >= 0", sds.tolist())
        if not (0.0 <= correlation <= 1.0):
            raise InvalidParameter('rates.correlation', "must be in [0, 1]", correlation)
        if not np.any(sds > 0):
            return np.clip(means, lower, upper)
        k = len(means)
        if correlation == 0.0 or k == 1:
            z = self._rng.standard_normal(k)
        else:
            # shared + idiosyncratic components give pairwise correlation rho
            shared = self._rng.standard_normal()
            own = self._rng.standard_normal(k)
            z = np.sqrt(correlation) * shared + np.sqrt(1.0 - correlation) * own
        return np.clip(means + sds * z, lower, upper)

    # ── counts ───────────────────────────────────────────────────────

    def poisson(self, lam: ArrayLike, size=None):
        """Poisson(lam); lam may be an array."""
        lam_arr = np.asarray(lam, dtype=np.float64)
        if np.any(~(lam_arr >= 0)):
            raise InvalidParameter('poisson.lambda', "must be >= 0", lam)
        return self._rng.poisson(lam_arr, size=size)

    def binomial(self, n, p, size=None):
        """Binomial(n, p); n and p may be arrays."""
        n_arr = np.asarray(n)
        p_arr = np.asarray(p, dtype=np.float64)
        if np.any(n_arr < 0):
            raise InvalidParameter('binomial.n', "must be >= 0", n)
        if np.any(~((p_arr >= 0) & (p_arr <= 1))):
            raise InvalidParameter('binomial.p', "must be in [0, 1]", p)
        return self._rng.binomial(n_arr, p_arr, size=size)

    # ── selection ────────────────────────────────────────────────────

    def permutation(self, n):
        return self._rng.permutation(n)

    def multivariate_hypergeometric(self, counts, nsample: int) -> np.ndarray:
        """Draw ``nsample`` items without replacement from per-class counts."""
        counts = np.asarray(counts, dtype=np.int64)
        if np.any(counts < 0):
            raise InvalidParameter('hypergeometric.counts', "must be >= 0",
                                   counts.tolist())
        if not (0 <= nsample <= counts.sum()):
            raise InvalidParameter('hypergeometric.nsample',
                                   f"must be in [0, {int(counts.sum())}]", nsample)
        return self._rng.multivariate_hypergeometric(counts, int(nsample))

    def choice(
        self,
        n: int,
        size: int,
        replace: bool = False,
        weights: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """Indices drawn from range(n), optionally weighted."""
        p = None
        if weights is not None:
            w = np.asarray(weights, dtype=np.float64)
            if np.any(~(w >= 0)) or w.sum() <= 0:
                raise InvalidParameter('choice.weights',
                                       "must be non-negative with positive sum")
            p = w / w.sum()
        return self._rng.choice(n, size=size, replace=replace, p=p)

    # ── checkpointing ────────────────────────────────────────────────

    def state(self) -> dict:
        """Capture full bit-generator state."""
        return self._rng.bit_generator.state

    def restore(self, state: dict) -> None:
        self._rng.bit_generator.state = state
