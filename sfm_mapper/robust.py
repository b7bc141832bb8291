from typing import Optional, Sequence
import numpy as np

import gtsam


def make_spd(cov: np.ndarray, eps: float = 1e-9) -> np.ndarray:
    """Jitter a covariance to be SPD if needed.

    Odometry sources sometimes report nearly singular covariances; diagonal
    jitter is grown until a Cholesky factorisation succeeds.
    """
    cov = np.array(cov, dtype=float)
    dim = cov.shape[0]
    cov = 0.5 * (cov + cov.T)
    jitter = eps
    for _ in range(8):
        try:
            np.linalg.cholesky(cov + np.eye(dim) * jitter)
            return cov + np.eye(dim) * jitter
        except np.linalg.LinAlgError:
            jitter *= 10.0
    return cov + np.eye(dim) * jitter


def gaussian_from_covariance(cov: np.ndarray):
    """Create a GTSAM Gaussian noise model from a square covariance.

    Ensures:
      - symmetric positive-definite (via jitter)
      - float64 dtype
      - contiguous row-major memory
    """
    cov = make_spd(cov)
    cov = np.array(cov, dtype=np.float64, order="C")
    return gtsam.noiseModel.Gaussian.Covariance(cov)


def diagonal(sigmas: Sequence[float]):
    sig = np.asarray(sigmas, dtype=np.float64)
    if sig.ndim != 1 or np.any(sig <= 0.0):
        raise ValueError(f"Sigmas must be a flat vector of positive values, got {sigmas}")
    return gtsam.noiseModel.Diagonal.Sigmas(sig)


def pose_sigmas(rotation_sigma: float, translation_sigma: float):
    """Diagonal Pose3 noise in GTSAM tangent order (rx, ry, rz, tx, ty, tz)."""
    return diagonal([rotation_sigma] * 3 + [translation_sigma] * 3)


def pixel_noise(sigma: float):
    if sigma <= 0.0:
        raise ValueError(f"Pixel sigma must be positive, got {sigma}")
    return gtsam.noiseModel.Isotropic.Sigma(2, float(sigma))


def robustify(base, kind: Optional[str] = None, k: Optional[float] = None):
    """Wrap a base noise model with a robust kernel.

    kind: 'huber' | 'cauchy' | 'none' | None
    k: tuning constant (default: Huber 1.345, Cauchy 1.0)
    """
    if not kind or kind.lower() == "none":
        return base
    kind = kind.lower()
    if kind == "huber":
        k = 1.345 if k is None else k
        loss = gtsam.noiseModel.mEstimator.Huber(k)
    elif kind == "cauchy":
        k = 1.0 if k is None else k
        loss = gtsam.noiseModel.mEstimator.Cauchy(k)
    else:
        raise ValueError(f"Unsupported robust kernel: {kind}")
    return gtsam.noiseModel.Robust.Create(loss, base)
