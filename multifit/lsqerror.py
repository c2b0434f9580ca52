# This program is in the public domain
r"""
Numerical derivatives and least squares error analysis.

The objective is wrapped in a problem object, which must define the
following methods:

    ============ ============================================
    getp()       get the current parameter vector
    setp(p)      set a new parameter vector
    nllf(p)      negative log likelihood function, $\chi^2/2$
    residuals()  weighted residuals at the current point
    ============ ============================================

:func:`gradient` computes the gradient of a scalar function by central
differences.  It is used to check analytic gradients.

:func:`jacobian` computes the Jacobian matrix $J$ of the residuals by
forward differences.  If the problem has analytic derivatives with respect
to the fitting parameters then these should be used instead.

:func:`hessian` computes the Hessian matrix $H$ of nllf by forward
differences.

:func:`jacobian_cov` takes the Jacobian and computes the covariance matrix
$C$.  :func:`hessian_cov` takes the Hessian and computes $C$.

:func:`corr` uses the off-diagonal elements of $C$ to compute correlation
coefficients $R^2_{ij}$ between the parameters, and :func:`stderr`
returns the uncertainty $\sigma_i$ from the diagonal of $C$.

Step sizes are relative to the parameter value, or to *scale* when it is
given.  Fits here pass the initial parameter errors as the scale, since
parameter values near zero say nothing about the natural step size.
"""

__all__ = ["gradient", "jacobian", "hessian", "jacobian_cov", "hessian_cov", "corr", "max_correlation", "stderr"]

import numpy as np

DEFAULT_STEP = 1e-4


def _step_sizes(p, step, scale):
    step = DEFAULT_STEP if step is None else step
    if scale is not None:
        h = np.asarray(scale, "d") * step
    else:
        h = abs(p) * step
    h = np.array(h, "d")
    h[h == 0] = step
    return h


def gradient(f, p, step=None, scale=None):
    """
    Returns the central difference gradient of scalar function *f* at *p*.

    Two evaluations of *f* are made per dimension.
    """
    p = np.asarray(p, "d")
    h = _step_sizes(p, step, scale)
    ee = np.diag(h)
    g = np.empty(len(p), "d")
    for i in range(len(p)):
        g[i] = (f(p + ee[i, :]) - f(p - ee[i, :])) / (2.0 * h[i])
    return g


def jacobian(problem, p=None, step=None, scale=None):
    """
    Returns the derivative of the residuals wrt the fit parameters at point p.

    The current point is preserved.

    Note that the problem.residuals() method should not reuse memory for the
    returned value otherwise the derivative calculation (f(x+dx) - f(x))/dx
    will always be zero.
    """
    p_init = problem.getp()
    if p is None:
        p = p_init
    p = np.asarray(p, "d")

    def f(p):
        problem.setp(p)
        return np.reshape(problem.residuals(), -1)

    J = _jacobian_forward(f, p, _step_sizes(p, step, scale))
    problem.setp(p_init)
    return J


def _jacobian_forward(f, p, h):
    ee = np.diag(h)
    fx = np.array(f(p))
    J = []
    for i in range(len(p)):
        fx_plus = f(p + ee[i, :])
        J.append((fx_plus - fx) / h[i])
    return np.vstack(J).T


def hessian(problem, p=None, step=None, scale=None):
    """
    Returns the second derivative of nllf wrt the fit parameters at point p.

    The current point is preserved.
    """
    p_init = problem.getp()
    if p is None:
        p = p_init
    p = np.asarray(p, "d")
    H = _hessian_forward(problem.nllf, p, _step_sizes(p, step, scale))
    problem.setp(p_init)
    return H


def _hessian_forward(f, p, h):
    """
    Forward difference Hessian.
    """
    n = len(p)
    fx = f(p)
    ee = np.diag(h)

    g = np.empty(n, "d")
    for i in range(n):
        g[i] = f(p + ee[i, :])
    H = np.empty((n, n), "d")
    for i in range(n):
        for j in range(i, n):
            fx_ij = f(p + ee[i, :] + ee[j, :])
            H[i, j] = (fx_ij - g[i] - g[j] + fx) / (h[i] * h[j])
            H[j, i] = H[i, j]
    return H


def jacobian_cov(J, tol=1e-8):
    """
    Given Jacobian J, return the covariance matrix inv(J'J).

    We provide some protection against singular matrices by setting
    singular values smaller than tolerance *tol* to the tolerance
    value.
    """
    # J = U S V', so inv(J'J) = V inv(S S) V'
    u, s, vh = np.linalg.svd(J, 0)
    s[s <= tol] = tol
    JTJinv = np.dot(vh.T.conj() / s**2, vh)
    return JTJinv


def hessian_cov(H, tol=1e-15):
    """
    Given Hessian H, return the covariance matrix inv(H).

    Singular values smaller than *tol* relative to the largest are treated
    as zero (see np.linalg.pinv for details).
    """
    return np.linalg.pinv(H, rcond=tol, hermitian=True)


def corr(C):
    """
    Convert covariance matrix $C$ to correlation matrix $R^2$.

    Uses $R = D^{-1} C D^{-1}$ where $D$ is the square root of the diagonal
    of the covariance matrix, or the standard error of each variable.
    """
    Dinv = np.diag(1.0 / stderr(C))
    return np.dot(Dinv, np.dot(C, Dinv))


def max_correlation(Rsq):
    """
    Return the maximum correlation coefficient for any pair of variables
    in correlation matrix Rsq.
    """
    return np.max(np.tril(Rsq, k=-1))


def stderr(C):
    r"""
    Return parameter uncertainty from the covariance matrix C.

    This is just the square root of the diagonal, without any correction
    for covariance.  The residuals are already weighted by the measurement
    uncertainty, so no $\sqrt{\chi^2_N}$ scaling is applied.
    """
    return np.sqrt(np.diag(C))


class _LineProblem(object):
    # residuals of y = a*x + b against a fixed data set
    def __init__(self, p):
        self.x = np.array([1.0, 2.0, 3.0, 4.0])
        self.y = np.array([3.1, 4.9, 7.2, 8.8])
        self.p = np.array(p, "d")

    def getp(self):
        return self.p.copy()

    def setp(self, p):
        self.p = np.array(p, "d")

    def residuals(self):
        return self.y - (self.p[0] * self.x + self.p[1])

    def nllf(self, p=None):
        if p is not None:
            self.setp(p)
        r = self.residuals()
        return 0.5 * np.dot(r, r)


def test_gradient():
    f = lambda p: (1.0 - p[0]) ** 2 + 10 * (p[1] - p[0] ** 2) ** 2
    p = np.array([0.5, 0.0])
    g = gradient(f, p, scale=[1.0, 1.0])
    expected = [-2 * (1 - p[0]) - 40 * p[0] * (p[1] - p[0] ** 2), 20 * (p[1] - p[0] ** 2)]
    assert np.allclose(g, expected, rtol=1e-6)


def test_jacobian_hessian():
    problem = _LineProblem([2.0, 1.0])
    J = jacobian(problem)
    assert np.allclose(J, -np.vstack((problem.x, np.ones(4))).T)
    # current point preserved
    assert problem.getp().tolist() == [2.0, 1.0]

    H = hessian(problem, p=[1.0, 0.5], scale=[1.0, 1.0])
    assert problem.getp().tolist() == [2.0, 1.0]
    assert np.allclose(H, np.dot(J.T, J), rtol=1e-4)

    C = jacobian_cov(J)
    assert np.allclose(C, hessian_cov(H), rtol=1e-3)
    assert np.allclose(np.diag(corr(C)), 1.0)
    assert stderr(C).shape == (2,)
