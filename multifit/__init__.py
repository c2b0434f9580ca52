# This program is in the public domain
"""
Multifit: simultaneous model fitting across multiple frames

This package evaluates a parametric model against the pixels of several
independent exposures at once.  The pixels contributing to each exposure
are packed into shared flat buffers, the model image and its derivatives
with respect to the linear and nonlinear parameters are cached until the
parameters change, and a gradient-based minimizer is driven over the
inverse-variance weighted residuals.

See :mod:`multifit.evaluator` for the evaluator, :mod:`multifit.objective`
for the objective function wrapper and :mod:`multifit.fitters` for the
fitting engines.
"""

__version__ = "0.1.0"
