"""
Interface between models and the evaluator.

A model is projected onto each exposure separately.  The projection knows
how to compute, for the pixels in its footprint, the model image and the
derivatives of the model image with respect to the linear and nonlinear
parameters.  The evaluator hands each projection views onto its own rows
of the shared buffers, so a projection never sees another frame's pixels.

Summary of the model attributes used by the evaluator::

    linear_parameter_size: int
    nonlinear_parameter_size: int
    linear_parameters: Vector          # written by the evaluator
    nonlinear_parameters: Vector       # written by the evaluator
    compute_projection_footprint(psf, wcs) -> Footprint
    make_projection(psf, wcs, footprint) -> Projection

A model which cannot project onto an exposure, e.g., because the WCS
puts it nowhere near the image, raises :class:`ProjectionError` and the
exposure is left out of the fit.
"""

__all__ = ["Model", "Projection", "ProjectionBase", "ProjectionError"]

from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np

if TYPE_CHECKING:
    from .footprint import Footprint


class ProjectionError(RuntimeError):
    """
    The model cannot be projected onto an exposure.
    """


@runtime_checkable
class Projection(Protocol):
    """
    Projection of a model onto one exposure.
    """

    footprint: "Footprint"

    def set_buffers(self, model_image, linear_derivative, nonlinear_derivative):
        """
        Bind the output buffers for this projection.  Each buffer has one
        row per footprint pixel.
        """
        raise NotImplementedError()

    def compute_model_image(self):
        """
        Write the model image for the footprint pixels into the model image
        buffer.
        """
        raise NotImplementedError()

    def compute_linear_parameter_derivative(self):
        """
        Write the derivative of the model image with respect to each linear
        parameter into the linear derivative buffer, one column per
        parameter.
        """
        raise NotImplementedError()

    def compute_nonlinear_parameter_derivative(self):
        """
        Write the derivative of the model image with respect to each
        nonlinear parameter into the nonlinear derivative buffer, one column
        per parameter.  This must not rely on compute_model_image having
        been called for the current parameters.
        """
        raise NotImplementedError()


@runtime_checkable
class Model(Protocol):
    """
    Parametric model which can be projected onto exposures.
    """

    linear_parameter_size: int
    nonlinear_parameter_size: int
    linear_parameters: np.ndarray
    nonlinear_parameters: np.ndarray

    def compute_projection_footprint(self, psf, wcs):
        """Return the footprint of the model on an exposure."""
        raise NotImplementedError()

    def make_projection(self, psf, wcs, footprint):
        """Return a :class:`Projection` of the model restricted to *footprint*."""
        raise NotImplementedError()


class ProjectionBase(object):
    """
    Buffer bookkeeping shared by projection implementations.

    Subclasses fill *self.model_image*, *self.linear_derivative* and
    *self.nonlinear_derivative* in their compute methods, and read the
    current parameter values from *self.model*.
    """

    def __init__(self, model, footprint):
        self.model = model
        self.footprint = footprint
        self.model_image = None
        self.linear_derivative = None
        self.nonlinear_derivative = None

    def set_buffers(self, model_image, linear_derivative, nonlinear_derivative):
        npix = self.footprint.npix
        expected = [
            ("model image", model_image, (npix,)),
            ("linear derivative", linear_derivative, (npix, self.model.linear_parameter_size)),
            ("nonlinear derivative", nonlinear_derivative, (npix, self.model.nonlinear_parameter_size)),
        ]
        for label, buffer, shape in expected:
            if buffer.shape != shape:
                raise ValueError("%s buffer has shape %s but projection needs %s" % (label, buffer.shape, shape))
        self.model_image = model_image
        self.linear_derivative = linear_derivative
        self.nonlinear_derivative = nonlinear_derivative

    def compute_model_image(self):
        raise NotImplementedError()

    def compute_linear_parameter_derivative(self):
        raise NotImplementedError()

    def compute_nonlinear_parameter_derivative(self):
        raise NotImplementedError()
