r"""
Chi-square objective for a gradient based minimizer.

:class:`ChisqFunction` wraps a :class:`multifit.evaluator.ModelEvaluator`
as a scalar function of the combined parameter vector
$p = [p_\text{linear}, p_\text{nonlinear}]$:

.. math::

    f(p) = \tfrac12 r^T r, \qquad r = d/\sigma - m(p)/\sigma

with gradient $\nabla f = -[L^T r, N^T r]$ where $L$ and $N$ are the
weighted derivative matrices of the model.

The minimizer calls the value and gradient many times at the same point.
Pushing a parameter vector into the evaluator throws away its cached
products, so the adapter only does so when the parameters have changed.

The adapter also provides the problem interface used by
:mod:`multifit.lsqerror` (*getp*, *setp*, *nllf*, *residuals*), so that
numeric derivatives and parameter uncertainties can be computed from it.
"""

__all__ = ["ChisqFunction"]

import numpy as np

from .options import ConfigurationError


class ChisqFunction(object):
    """
    Value and gradient of half the chi-square of the model in *evaluator*.

    Counters *nfev* and *ngev* record the number of value and gradient
    evaluations.
    """

    def __init__(self, evaluator):
        self.evaluator = evaluator
        self.n_linear = evaluator.linear_parameter_size
        self.n_nonlinear = evaluator.nonlinear_parameter_size
        if self.n_linear + self.n_nonlinear == 0:
            raise ConfigurationError("model has no parameters to fit")
        self._dirty = True
        self.nfev = 0
        self.ngev = 0

    @property
    def n_parameters(self):
        return self.n_linear + self.n_nonlinear

    def _check_size(self, params):
        params = np.asarray(params, "d")
        if params.ndim != 1 or len(params) != self.n_parameters:
            raise ConfigurationError(
                "expected %d parameters (%d linear, %d nonlinear) but got %d"
                % (self.n_parameters, self.n_linear, self.n_nonlinear, params.size)
            )
        return params

    def _differs(self, params):
        # linear segment first, stopping at the first difference
        current = (self.evaluator.linear_parameters, self.evaluator.nonlinear_parameters)
        offset = 0
        for segment in current:
            for k, value in enumerate(segment):
                if params[offset + k] != value:
                    return True
            offset += len(segment)
        return False

    def _update(self, params):
        params = self._check_size(params)
        if not self._dirty:
            self._dirty = self._differs(params)
        if self._dirty:
            self.evaluator.set_linear_parameters(params[: self.n_linear])
            self.evaluator.set_nonlinear_parameters(params[self.n_linear :])
            # clean only once a later comparison finds nothing changed
            self._dirty = self._differs(params)

    def value(self, params):
        """Return half the sum of squared weighted residuals at *params*."""
        self._update(params)
        self.nfev += 1
        r = self.evaluator.residuals()
        return 0.5 * np.dot(r, r)

    __call__ = value

    def gradient(self, params):
        """Return the gradient of :meth:`value` at *params*."""
        self._update(params)
        self.ngev += 1
        r = self.evaluator.residuals()
        dlinear = self.evaluator.compute_linear_parameter_derivative()
        dnonlinear = self.evaluator.compute_nonlinear_parameter_derivative()
        return np.hstack((-np.dot(dlinear.T, r), -np.dot(dnonlinear.T, r)))

    def jacobian(self, params=None):
        """
        Return the analytic Jacobian of the residuals, $-[L, N]$, at
        *params*, or at the current point if *params* is None.
        """
        if params is not None:
            self._update(params)
        dlinear = self.evaluator.compute_linear_parameter_derivative()
        dnonlinear = self.evaluator.compute_nonlinear_parameter_derivative()
        return -np.hstack((dlinear, dnonlinear))

    # Problem interface for lsqerror
    def getp(self):
        return np.hstack((self.evaluator.linear_parameters, self.evaluator.nonlinear_parameters))

    def setp(self, p):
        self._update(p)

    def nllf(self, p=None):
        if p is None:
            p = self.getp()
        return self.value(p)

    def residuals(self):
        return self.evaluator.residuals()

    def numpoints(self):
        return self.evaluator.n_pixels

    def dof(self):
        return max(self.numpoints() - self.n_parameters, 1)

    def chisq(self):
        """Normalized chi-square at the current point."""
        r = self.residuals()
        return np.dot(r, r) / self.dof()

    def labels(self):
        model = self.evaluator.model
        linear = getattr(model, "linear_labels", None)
        if linear is None:
            linear = ["linear%d" % k for k in range(self.n_linear)]
        nonlinear = getattr(model, "nonlinear_labels", None)
        if nonlinear is None:
            nonlinear = ["nonlinear%d" % k for k in range(self.n_nonlinear)]
        return list(linear) + list(nonlinear)

    def __repr__(self):
        return "ChisqFunction(%r)" % self.evaluator
