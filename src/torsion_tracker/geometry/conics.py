# ----------------------------------------------------------------------
# Conic utilities: ellipse <-> conic matrix, inside tests, least-squares fits
# ----------------------------------------------------------------------
import numpy as np
from scipy.optimize import least_squares

from torsion_tracker.geometry.ellipse2D import Ellipse2D


def ellipse_to_conic(e: Ellipse2D) -> np.ndarray:
    """
    Convert Ellipse2D to 3x3 image conic Q (primal form), s.t. x^T Q x = 0 for boundary points x~(u,v,1).
    Q is scaled so that x^T Q x < 0 inside the ellipse.
    """
    a, b = float(e.major), float(e.minor)
    theta = np.deg2rad(float(e.angle_deg))

    c, s = np.cos(theta), np.sin(theta)
    R2 = np.array([[c, -s],
                   [s,  c]], dtype=np.float64)
    A = R2 @ np.diag([a, b])
    H = np.array([[A[0, 0], A[0, 1], e.cx],
                  [A[1, 0], A[1, 1], e.cy],
                  [0,       0,       1   ]], dtype=np.float64)
    C0 = np.diag([1.0, 1.0, -1.0])  # unit circle conic
    Hinv = np.linalg.inv(H)
    Q = Hinv.T @ C0 @ Hinv
    return 0.5 * (Q + Q.T)


def points_inside_ellipse(e: Ellipse2D, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    """Vectorised inside test; xs and ys broadcast against each other. Empty ellipses contain nothing."""
    xs, ys = np.broadcast_arrays(np.asarray(xs, dtype=np.float64), np.asarray(ys, dtype=np.float64))
    if e.is_empty:
        return np.zeros(xs.shape, dtype=bool)
    Q = ellipse_to_conic(e)
    val = (Q[0, 0] * xs * xs + 2 * Q[0, 1] * xs * ys + Q[1, 1] * ys * ys
           + 2 * Q[0, 2] * xs + 2 * Q[1, 2] * ys + Q[2, 2])
    return val < 0.0


def conic_to_ellipse(coeffs) -> Ellipse2D:
    """
    A x^2 + B xy + C y^2 + D x + E y + F = 0  ->  Ellipse2D.
    Raises numpy.linalg.LinAlgError when the conic is not a real ellipse.
    """
    A, B, C, D, E, F = (float(v) for v in coeffs)
    if B * B - 4 * A * C >= 0:
        raise np.linalg.LinAlgError("conic is not an ellipse")
    x0, y0 = np.linalg.solve(np.array([[2 * A, B], [B, 2 * C]]), np.array([-D, -E]))
    f0 = F + 0.5 * (D * x0 + E * y0)
    M = np.array([[A, B / 2], [B / 2, C]])
    if f0 > 0:
        M, f0 = -M, -f0
    lam, vec = np.linalg.eigh(M)
    if np.any(lam <= 0) or f0 >= 0:
        raise np.linalg.LinAlgError("conic is an imaginary ellipse")
    radii = np.sqrt(-f0 / lam)
    # smallest eigenvalue -> largest radius
    angle = np.degrees(np.arctan2(vec[1, 0], vec[0, 0]))
    return Ellipse2D(float(x0), float(y0), float(radii[0]), float(radii[1]), float(angle))


def fit_ellipse_direct(points: np.ndarray) -> Ellipse2D:
    """
    Direct least-squares ellipse fit (Halir & Flusser, numerically stable Fitzgibbon).
    Points are normalised (mean-centred, isotropically scaled) before fitting.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(pts) < 6:
        raise np.linalg.LinAlgError(f"need at least 6 points for an ellipse fit, got {len(pts)}")

    mean = pts.mean(axis=0)
    scale = np.sqrt(np.mean(np.sum((pts - mean) ** 2, axis=1))) or 1.0
    x = (pts[:, 0] - mean[0]) / scale
    y = (pts[:, 1] - mean[1]) / scale

    D1 = np.column_stack([x * x, x * y, y * y])
    D2 = np.column_stack([x, y, np.ones_like(x)])
    S1 = D1.T @ D1
    S2 = D1.T @ D2
    S3 = D2.T @ D2
    T = -np.linalg.solve(S3, S2.T)
    M = S1 + S2 @ T
    M = np.vstack([M[2] / 2.0, -M[1], M[0] / 2.0])
    eigval, eigvec = np.linalg.eig(M)
    eigvec = np.real(eigvec)
    cond = 4 * eigvec[0] * eigvec[2] - eigvec[1] ** 2
    candidates = np.flatnonzero(cond > 0)
    if candidates.size == 0:
        raise np.linalg.LinAlgError("no elliptical solution")
    a1 = eigvec[:, candidates[0]]
    coeffs = np.concatenate([a1, T @ a1])

    e = conic_to_ellipse(coeffs)
    return Ellipse2D(e.cx * scale + mean[0], e.cy * scale + mean[1],
                     e.major * scale, e.minor * scale, e.angle_deg)


def _radial_residuals(p: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    cx, cy, a, b, theta = p
    c, s = np.cos(theta), np.sin(theta)
    u = c * (xs - cx) + s * (ys - cy)
    v = -s * (xs - cx) + c * (ys - cy)
    phi = np.arctan2(v, u)
    r = np.hypot(u, v)
    r_boundary = a * b / np.sqrt((b * np.cos(phi)) ** 2 + (a * np.sin(phi)) ** 2 + 1e-12)
    return r - r_boundary


def refine_ellipse_geometric(points: np.ndarray, initial: Ellipse2D, max_nfev: int = 50) -> Ellipse2D:
    """
    Geometric refinement of an ellipse: minimise the radial distance of each point to the boundary.
    Deterministic (no random restarts); returns `initial` when the optimiser does not converge.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    p0 = np.array([initial.cx, initial.cy, initial.major, initial.minor, np.radians(initial.angle_deg)])
    if len(pts) < len(p0) or initial.is_empty:
        return initial
    res = least_squares(_radial_residuals, p0, args=(pts[:, 0], pts[:, 1]), method="lm", max_nfev=max_nfev)
    if not res.success or not np.all(np.isfinite(res.x)):
        return initial
    cx, cy, a, b, theta = res.x
    return Ellipse2D(float(cx), float(cy), abs(float(a)), abs(float(b)), float(np.degrees(theta)))


def fit_circle(points: np.ndarray) -> Ellipse2D:
    """Algebraic least-squares circle (Kasa): x^2 + y^2 + D x + E y + F = 0."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(pts) < 3:
        raise np.linalg.LinAlgError(f"need at least 3 points for a circle fit, got {len(pts)}")
    x, y = pts[:, 0], pts[:, 1]
    A = np.column_stack([x, y, np.ones_like(x)])
    (D, E, F), *_ = np.linalg.lstsq(A, -(x * x + y * y), rcond=None)
    cx, cy = -D / 2.0, -E / 2.0
    r2 = cx * cx + cy * cy - F
    if r2 <= 0:
        raise np.linalg.LinAlgError("degenerate circle fit")
    return Ellipse2D.circle(cx, cy, np.sqrt(r2))
