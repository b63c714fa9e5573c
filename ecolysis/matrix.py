"""Deterministic stage-structured (Lefkovitch) matrix projection.

The mean projection matrix A follows the same step order as the
population-level simulator, so n(t+1) = A n(t) is the expectation of one
stochastic step in the absence of density dependence and catastrophes:

  1. survive:        s_j n_j survivors in stage j
  2. reproduce:      survivors of stage j produce f_j offspring each → stage 0
  3. transition:     a fraction a_j of survivors moves to successor(j)

  A[0, j]            += s_j f_j
  A[successor(j), j] += s_j a_j
  A[j, j]            += s_j (1 − a_j)

Example (3 stages):

  [ 40]   [0    0     0.72]   [ 72.0]
  [ 20] → [0.5  0.35  0   ] → [ 27.0]
  [100]   [0    0.35  0.9 ]   [ 97.0]
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from ecolysis.config import DemographySection
from ecolysis.errors import InvalidParameter


def projection_matrix(demography: DemographySection) -> np.ndarray:
    """Build the K×K mean projection matrix from life-history means."""
    k = demography.n_stages
    s = np.asarray(demography.survival, dtype=np.float64)
    f = np.asarray(demography.fecundity, dtype=np.float64)
    a = np.asarray(demography.advance_probability, dtype=np.float64)

    A = np.zeros((k, k), dtype=np.float64)
    for j in range(k):
        A[0, j] += s[j] * f[j]
        succ = int(demography.successor[j])
        if succ == j:
            A[j, j] += s[j]
        else:
            A[succ, j] += s[j] * a[j]
            A[j, j] += s[j] * (1.0 - a[j])
    return A


def _check_square(matrix: np.ndarray) -> None:
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        raise InvalidParameter('matrix', "must be square", matrix.shape)


def project_vector(matrix: np.ndarray, vector: Sequence[float]) -> np.ndarray:
    """One projection step: A @ n.

    Raises:
        InvalidParameter: If the matrix is not square or the vector length
            does not match the number of stages.
    """
    matrix = np.asarray(matrix, dtype=np.float64)
    vector = np.asarray(vector, dtype=np.float64)
    _check_square(matrix)
    if vector.shape != (matrix.shape[0],):
        raise InvalidParameter(
            'vector', f"length must match matrix size {matrix.shape[0]}",
            vector.shape)
    return matrix @ vector


def deterministic_projection(
    matrix: np.ndarray,
    initial: Sequence[float],
    steps: int,
) -> np.ndarray:
    """Project ``initial`` for ``steps`` steps.

    Returns:
        (steps + 1, K) array; row 0 is the initial vector.
    """
    if steps < 0:
        raise InvalidParameter('steps', "must be >= 0", steps)
    current = np.asarray(initial, dtype=np.float64)
    out = np.empty((steps + 1, len(current)), dtype=np.float64)
    out[0] = current
    for t in range(1, steps + 1):
        current = project_vector(matrix, current)
        out[t] = current
    return out


def _dominant(eigvals: np.ndarray) -> int:
    return int(np.argmax(np.abs(eigvals)))


def growth_rate(matrix: np.ndarray) -> float:
    """Asymptotic growth rate λ (dominant eigenvalue)."""
    matrix = np.asarray(matrix, dtype=np.float64)
    _check_square(matrix)
    eigvals = np.linalg.eigvals(matrix)
    return float(np.real(eigvals[_dominant(eigvals)]))


def stable_stage_distribution(matrix: np.ndarray) -> np.ndarray:
    """Dominant right eigenvector, normalized to sum 1."""
    matrix = np.asarray(matrix, dtype=np.float64)
    _check_square(matrix)
    eigvals, eigvecs = np.linalg.eig(matrix)
    w = np.abs(np.real(eigvecs[:, _dominant(eigvals)]))
    total = w.sum()
    return w / total if total > 0 else w


def reproductive_values(matrix: np.ndarray) -> np.ndarray:
    """Dominant left eigenvector, scaled so stage 0 has value 1."""
    matrix = np.asarray(matrix, dtype=np.float64)
    _check_square(matrix)
    eigvals, eigvecs = np.linalg.eig(matrix.T)
    v = np.abs(np.real(eigvecs[:, _dominant(eigvals)]))
    return v / v[0] if v[0] > 0 else v
