# This program is in the public domain
"""
Interfaces to the minimizer.

The fitters minimize :class:`multifit.objective.ChisqFunction` using
:func:`scipy.optimize.minimize`.  The minimizer works on the parameter
offsets measured in units of the initial errors, $u = (p - p_0)/\\delta p$,
so that all parameters have a similar natural scale regardless of their
units.  Points passed to monitors and returned in the result are always
ordinary parameter vectors.

:class:`AnalyticFit` hands the analytic gradient of the objective to the
minimizer.  :class:`NumericFit` gives the minimizer the function value only
and lets it estimate gradients by finite differences, which is useful when
the model derivatives are suspect.

The *strategy* option controls the minimizer:

    ======== =========== ==============================================
    strategy method      parameter uncertainty
    ======== =========== ==============================================
    0        L-BFGS-B    Jacobian of the residuals at the minimum
    1        BFGS        Jacobian of the residuals at the minimum
    2        BFGS        numerical Hessian of the objective at the minimum
    ======== =========== ==============================================
"""

__all__ = [
    "AnalyticFit",
    "NumericFit",
    "FitDriver",
    "GradientCheck",
    "check_gradient",
    "fit",
    "register",
    "FITTERS",
]

from dataclasses import dataclass
from time import perf_counter
from typing import Any, List, Tuple

import numpy as np
from scipy.optimize import OptimizeResult, minimize

from . import lsqerror
from . import monitor
from .logger import logger, setup_console_logging
from .objective import ChisqFunction
from .options import DEFAULT_POLICY, ConfigurationError, FitPolicy

STRATEGY_METHODS = {0: "L-BFGS-B", 1: "BFGS", 2: "BFGS"}


class ConsoleMonitor(monitor.TimedUpdate):
    """
    Log fit progress through the package logger.
    """

    def __init__(self, problem, progress=1, improvement=30):
        monitor.TimedUpdate.__init__(self, progress=progress, improvement=improvement)
        self.problem = problem

    def _chisq(self, value):
        return 2.0 * value / self.problem.dof()

    def _log_pars(self, x):
        for label, value in zip(self.problem.labels(), x):
            logger.info("%20s = %g", label, value)

    def show_progress(self, progress):
        logger.info("step %d cost %g", progress.step, self._chisq(progress.value))

    def show_improvement(self, progress):
        self._log_pars(progress.point)

    def final(self, progress):
        logger.info("step %d cost %g [final]", progress.step, self._chisq(progress.value))
        self._log_pars(progress.point)
        logger.info("time %.3g s", progress.time)


class StepMonitor(monitor.Monitor):
    """
    Collect information at every step of the fit and save it to a file.

    *fid* is the file to save the information to
    *fields* is the list of "step|time|value|point" fields to save

    The point field should be last in the list.
    """

    FIELDS = ["step", "time", "value", "point"]

    def __init__(self, problem, fid, fields=FIELDS):
        if any(f not in self.FIELDS for f in fields):
            raise ValueError("invalid monitor field")
        self.fid = fid
        self.fields = fields
        self.problem = problem
        self._pattern = "%%(%s)s\n" % (")s %(".join(fields))
        fid.write("# " + " ".join(fields) + "\n")

    def update(self, progress):
        point = " ".join("%.15g" % v for v in progress.point)
        time = "%g" % progress.time
        step = "%d" % progress.step
        value = "%.15g" % (2.0 * progress.value / self.problem.dof())
        out = self._pattern % dict(point=point, time=time, value=value, step=step)
        self.fid.write(out)

    __call__ = update


class MonitorRunner(object):
    """
    Adaptor which allows the minimizer callback to feed progress monitors.
    """

    def __init__(self, monitors):
        self.monitors = monitors
        self._start = perf_counter()
        self.progress = None

    def update(self, step, point, value):
        self.progress = monitor.Progress(step=step, time=perf_counter() - self._start, point=point, value=value)
        for M in self.monitors:
            M(self.progress)

    __call__ = update

    def final(self, point, value):
        step = 0 if self.progress is None else self.progress.step
        best = monitor.Progress(step=step, time=perf_counter() - self._start, point=point, value=value)
        for M in self.monitors:
            monitor_final = getattr(M, "final", None)
            if monitor_final is not None:
                monitor_final(best)


def _check_errors(errors, n):
    """
    Return *errors* as a vector of *n* finite positive parameter scales.
    """
    errors = np.asarray(errors, "d").reshape(-1)
    if len(errors) != n:
        raise ConfigurationError("expected %d initial errors but got %d" % (n, len(errors)))
    if not np.all(np.isfinite(errors) & (errors > 0)):
        raise ConfigurationError("initial errors must be finite and positive: %s" % errors)
    return errors


class FitBase(object):
    """
    FitBase defines the interface from the objective to the minimizer.

    The *name* attribute is the display name of the fitter, and *id* is the
    short name used to select it in :func:`fit`.

    The *settings* attribute is a list of pairs (name, default) for the
    options in :data:`multifit.options.FIT_FIELDS`.  These are the default
    configuration source for the fit.

    Each fitter takes a :class:`multifit.objective.ChisqFunction` in its
    constructor.  The :meth:`solve` method runs the minimizer and the
    :meth:`cov` method estimates the parameter covariance at a point.
    """

    name: str
    """Display name for the fit method"""
    id: str
    """Short name for the fit method."""
    settings: List[Tuple[str, Any]] = list(DEFAULT_POLICY.items())
    """Available fitting options and their default values."""
    analytic_gradient: bool = False
    """True if the minimizer is given the gradient from :meth:`gradient`."""

    def __init__(self, problem):
        self.problem = problem

    def solve(self, monitors, errors, policy):
        """
        Minimize the objective starting from the current point.

        Returns the scipy result with *x* converted back to parameter values.
        """
        problem = self.problem
        p0 = problem.getp()

        def to_p(u):
            return p0 + u * errors

        def f(u):
            return problem.value(to_p(u))

        jac = None
        if self.analytic_gradient:

            def jac(u):
                return self.gradient(to_p(u), errors)

        step = [0]

        def callback(intermediate_result):
            step[0] += 1
            monitors(step=step[0], point=to_p(intermediate_result.x), value=intermediate_result.fun)

        result = minimize(
            f,
            np.zeros_like(p0),
            jac=jac,
            method=STRATEGY_METHODS[policy["strategy"]],
            tol=policy["tolerance"],
            options=dict(maxiter=policy["iterationMax"]),
            callback=callback,
        )
        result.x = to_p(result.x)
        return result

    def cov(self, x, errors):
        """
        Covariance of the parameters at *x* from the numerical Jacobian of
        the residuals.
        """
        J = lsqerror.jacobian(self.problem, x, scale=errors)
        return lsqerror.jacobian_cov(J)


class AnalyticFit(FitBase):
    """
    Quasi-Newton minimizer using the analytic model derivatives.
    """

    name = "Analytic gradient"
    id = "analytic"
    analytic_gradient = True

    def gradient(self, p, errors):
        """Gradient with respect to the parameters scaled by *errors*."""
        return self.problem.gradient(p) * errors

    def cov(self, x, errors):
        return lsqerror.jacobian_cov(self.problem.jacobian(x))


class NumericFit(FitBase):
    """
    Quasi-Newton minimizer with finite difference gradients.
    """

    name = "Numeric gradient"
    id = "numeric"


@dataclass
class GradientCheck:
    """
    Numeric and analytic gradients of the objective at the same point.

    *ratio* is numeric/analytic, with nan or inf where the analytic
    gradient is zero.
    """

    point: np.ndarray
    numeric: np.ndarray
    analytic: np.ndarray
    ratio: np.ndarray


def check_gradient(evaluator, errors, step=lsqerror.DEFAULT_STEP):
    """
    Compare the analytic gradient of the objective with central differences.

    Steps are *step* times the initial *errors*.  The comparison is logged
    and returned.  The evaluator is left at the parameters it started with.
    """
    problem = ChisqFunction(evaluator)
    errors = _check_errors(errors, problem.n_parameters)
    x0 = problem.getp()
    try:
        numeric = lsqerror.gradient(problem.value, x0, step=step, scale=errors)
        analytic = problem.gradient(x0)
    finally:
        problem.setp(x0)
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = numeric / analytic
    logger.info("numeric gradient: %s", numeric)
    logger.info("analytic gradient: %s", analytic)
    logger.info("difference: %s", ratio)
    return GradientCheck(point=x0, numeric=numeric, analytic=analytic, ratio=ratio)


class FitDriver(object):
    """
    Run a fit of the model held by *evaluator*.

    *initial_errors* gives the expected uncertainty of each parameter, in
    linear then nonlinear order.  It sets the scale of the minimizer steps
    and of the finite difference steps.

    *policy* is a :class:`multifit.options.FitPolicy`; any extra keyword
    *options* override its values.  Without a policy the defaults come from
    *fitclass.settings*.
    """

    def __init__(self, fitclass=None, evaluator=None, initial_errors=None, monitors=None, policy=None, **options):
        self.fitclass = AnalyticFit if fitclass is None else fitclass
        self.evaluator = evaluator
        self.problem = ChisqFunction(evaluator)
        self.errors = _check_errors(initial_errors, self.problem.n_parameters)
        defaults = dict(self.fitclass.settings) if policy is None else policy.as_dict()
        self.policy = FitPolicy(options, defaults=defaults)
        self.monitors = [ConsoleMonitor(self.problem)] if monitors is None else monitors
        self.fitter = None
        self.result = None
        self._cov = None

    def fit(self):
        """
        Run the minimizer and return a :class:`scipy.optimize.OptimizeResult`.

        Failure to converge is reported as *success=False* rather than as an
        exception.  On return the evaluator holds the best parameters.
        """
        self._cov = None
        policy = self.policy
        problem = self.problem
        gradient_check = None
        if policy["checkGradient"]:
            gradient_check = check_gradient(self.evaluator, self.errors)

        fitter = self.fitclass(problem)
        self.fitter = fitter
        self.monitor_runner = MonitorRunner(self.monitors)
        logger.info(
            "%s fit of %d parameters to %d pixels in %d frames",
            fitter.name,
            problem.n_parameters,
            self.evaluator.n_pixels,
            len(self.evaluator.frames),
        )
        solution = fitter.solve(self.monitor_runner, self.errors, policy)
        x = np.asarray(solution.x, "d")
        problem.setp(x)
        if solution.success:
            logger.info("fit converged after %d iterations: %s", solution.nit, solution.message)
        else:
            logger.warning("fit did not converge after %d iterations: %s", solution.nit, solution.message)
        self.result = x, solution.fun
        self.monitor_runner.final(point=x, value=solution.fun)

        n_linear = problem.n_linear
        result = OptimizeResult(
            x=x,
            dx=self.stderr(),
            fun=solution.fun,
            success=bool(solution.success),
            status=solution.status,
            message=solution.message,
            nit=solution.nit,
            nfev=solution.nfev,
            njev=solution.get("njev", 0),
        )
        # Non-standard result
        result.linear_parameters = x[:n_linear].copy()
        result.nonlinear_parameters = x[n_linear:].copy()
        result.model = self.evaluator.model
        result.method = self.fitclass.id
        result.gradient_check = gradient_check
        result.policy = policy.as_dict()
        return result

    def cov(self):
        r"""
        Return an estimate of the covariance of the fit.

        With strategy 2 this is the inverse of the numerical Hessian of
        $\chi^2/2$ at the minimum.  Otherwise it is computed from the
        Jacobian of the residuals, which is analytic for :class:`AnalyticFit`.
        """
        if self._cov is None:
            x = self.problem.getp() if self.result is None else self.result[0]
            if self.policy["strategy"] == 2:
                H = lsqerror.hessian(self.problem, x, scale=self.errors)
                self._cov = lsqerror.hessian_cov(H)
            else:
                fitter = self.fitter if self.fitter is not None else self.fitclass(self.problem)
                self._cov = fitter.cov(x, self.errors)
        return self._cov

    def stderr(self):
        """
        Return an estimate of the standard error of the fit parameters.
        """
        with np.errstate(invalid="ignore"):
            return lsqerror.stderr(self.cov())

    def chisq(self):
        return self.problem.chisq()

    def show_err(self):
        """
        Log the parameter uncertainties from the covariance matrix.
        """
        err = self.stderr()
        logger.info("=== Uncertainty from curvature:     name   value   (unc.) ===")
        for k, v, dv in zip(self.problem.labels(), self.problem.getp(), err):
            logger.info("%40s   %-15g %-15g", k, v, dv)


FITTERS = []
FIT_AVAILABLE_IDS = []


def register(fitter):
    """
    Register a new fitter, if it is not already there.
    """
    if fitter in FITTERS:
        return
    if fitter.id in FIT_AVAILABLE_IDS:
        raise ValueError("There is already a fitter registered as %r" % fitter.id)
    FITTERS.append(fitter)
    FIT_AVAILABLE_IDS.append(fitter.id)


register(AnalyticFit)
register(NumericFit)

FIT_DEFAULT_ID = AnalyticFit.id


def fit(evaluator, initial_errors, method=FIT_DEFAULT_ID, verbose=False, monitors=None, **options):
    """
    Simplified fit interface.

    Given an evaluator with frames assigned, the initial parameter errors,
    the name of a fitter and the fit options, it will run the fit and return
    the best value and standard error of the parameters.  If *verbose* is
    true, then progress is logged to the console along with the parameter
    standard errors at the end of the fit, otherwise it is completely silent.

    Returns a scipy *OptimizeResult* object containing "x" and "dx", plus
    the linear and nonlinear segments of the best point, and the gradient
    check if *checkGradient* was requested.
    """
    if method not in FIT_AVAILABLE_IDS:
        raise ConfigurationError("unknown fit method %r not one of %s" % (method, ", ".join(sorted(FIT_AVAILABLE_IDS))))
    for fitclass in FITTERS:
        if fitclass.id == method:
            break

    monitors = [] if monitors is None else list(monitors)
    driver = FitDriver(
        fitclass=fitclass, evaluator=evaluator, initial_errors=initial_errors, monitors=monitors, **options
    )
    if verbose:
        setup_console_logging("info")
        monitors.append(ConsoleMonitor(driver.problem))
    result = driver.fit()
    if verbose:
        logger.info("final chisq %g", driver.chisq())
        driver.show_err()
    return result


def test_fitters():
    """
    Run the fit tests to make sure they work.
    """
    from .frame import Exposure
    from .evaluator import ModelEvaluator
    from .models import AffineWcs, GaussianModel, GaussianPsf

    truth = np.array([100.0, 0.0, 0.0, 1.5])
    psf, wcs = GaussianPsf(1.0), AffineWcs(offset=(15.0, 15.0))
    image = GaussianModel(*truth).render(psf, wcs, (31, 31))
    exposure = Exposure(image, np.ones((31, 31)), psf=psf, wcs=wcs)

    errors = [10.0, 0.1, 0.1, 0.1]
    for method in FIT_AVAILABLE_IDS:
        model = GaussianModel(flux=90.0, x=0.2, y=-0.1, radius=1.3)
        evaluator = ModelEvaluator(model, [exposure])
        result = fit(evaluator, errors, method=method, tolerance=1e-10)
        assert np.allclose(result.x, truth, rtol=1e-4, atol=1e-4), (method, result.x)
        assert result.method == method
        assert np.all(result.dx > 0)
        assert np.array_equal(evaluator.linear_parameters, result.linear_parameters)
        assert np.array_equal(evaluator.nonlinear_parameters, result.nonlinear_parameters)
