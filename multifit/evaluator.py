# This program is in the public domain
r"""
Evaluate a model against the pixels of many exposures at once.

The :class:`ModelEvaluator` projects a model onto each exposure in a list,
keeps those exposures which have enough usable pixels, and packs their
pixels end to end into flat buffers::

    data[N], variance[N], sigma[N]          filled once per frame assignment
    model_image[N]                          rewritten on recompute
    linear_derivative[N, n_linear]          rewritten on recompute
    nonlinear_derivative[N, n_nonlinear]    rewritten on recompute

Each accepted exposure becomes a :class:`multifit.frame.Frame` owning a
contiguous block of rows in every buffer.  The frame's projection writes
into views onto that block only.

The three derived products are cached independently.  Setting either
parameter vector marks all three as stale; computing one of them marks
only that one as valid.  The products handed back to the caller are
weighted by the pixel noise, $x_k / \sigma_k$, so that the sum of squared
weighted residuals is $\chi^2$.
"""

__all__ = [
    "ModelEvaluator",
    "MODEL_IMAGE",
    "LINEAR_PARAMETER_DERIVATIVE",
    "NONLINEAR_PARAMETER_DERIVATIVE",
    "ALL_PRODUCTS",
]

import weakref

import numpy as np

from .footprint import DEFAULT_BAD_MASK_PLANES, clip_and_mask, compress_image, get_plane_bitmask
from .frame import Frame
from .logger import logger
from .options import ConfigurationError
from .projection import Projection, ProjectionError

MODEL_IMAGE = 0x1
LINEAR_PARAMETER_DERIVATIVE = 0x2
NONLINEAR_PARAMETER_DERIVATIVE = 0x4
ALL_PRODUCTS = MODEL_IMAGE | LINEAR_PARAMETER_DERIVATIVE | NONLINEAR_PARAMETER_DERIVATIVE


# id(model) -> weak reference to the evaluator bound to it
_BOUND_MODELS = {}


def _bind_model(model, evaluator):
    key = id(model)
    ref = _BOUND_MODELS.get(key)
    owner = ref() if ref is not None else None
    if owner is not None and owner._model is model:
        raise ConfigurationError(
            "model is already bound to another evaluator; use assign_frames on that evaluator to change exposures"
        )

    def release(dead, key=key):
        if _BOUND_MODELS.get(key) is dead:
            del _BOUND_MODELS[key]

    _BOUND_MODELS[key] = weakref.ref(evaluator, release)


def _readonly(array):
    view = array.view()
    view.flags.writeable = False
    return view


def _apply_weights(buffer, frames, sigma):
    weighted = np.array(buffer, "d")
    for frame in frames:
        frame.apply_weights(weighted, sigma)
    return _readonly(weighted)


class ModelEvaluator(object):
    """
    Model image and parameter derivatives over a set of exposures.

    *model* follows the :class:`multifit.projection.Model` protocol.  The
    evaluator takes over the model's parameter vectors: from here on the
    parameters should be changed with :meth:`set_linear_parameters` and
    :meth:`set_nonlinear_parameters` so that cached products are
    invalidated.
    A model can be bound to only one live evaluator at a time; a second
    evaluator on the same model raises :class:`ConfigurationError`.

    *exposures*, if given, is passed to :meth:`assign_frames`.

    *n_min_pix* is the rejection threshold.  An exposure contributes only
    if more than *n_min_pix* of its footprint pixels survive clipping and
    masking.

    *bad_mask_planes* are the mask planes which exclude a pixel.
    """

    def __init__(self, model, exposures=None, n_min_pix=0, bad_mask_planes=DEFAULT_BAD_MASK_PLANES):
        _bind_model(model, self)
        self._model = model
        self._bitmask = get_plane_bitmask(*bad_mask_planes)
        self.n_min_pix = n_min_pix
        self._linear = np.array(model.linear_parameters, "d").reshape(-1)
        self._nonlinear = np.array(model.nonlinear_parameters, "d").reshape(-1)
        # Projections read the parameters from the model, so point the
        # model at the storage owned by the evaluator.
        model.linear_parameters = self._linear
        model.nonlinear_parameters = self._nonlinear
        self._reset()
        if exposures is not None:
            self.assign_frames(exposures)

    # noinspection PyAttributeOutsideInit
    def _reset(self):
        n_linear, n_nonlinear = len(self._linear), len(self._nonlinear)
        self._frames = []
        self._data = np.empty(0, "d")
        self._variance = np.empty(0, "d")
        self._sigma = np.empty(0, "d")
        self._weighted_data = np.empty(0, "d")
        self._model_image_buffer = np.empty(0, "d")
        self._linear_derivative_buffer = np.empty((0, n_linear), "d")
        self._nonlinear_derivative_buffer = np.empty((0, n_nonlinear), "d")
        self._model_image = None
        self._linear_derivative = None
        self._nonlinear_derivative = None
        self._valid_products = 0

    # noinspection PyAttributeOutsideInit
    def assign_frames(self, exposures, n_min_pix=None):
        """
        Set the list of exposures used to evaluate the model.

        This resets the evaluator completely.  For each exposure the model
        footprint is computed, clipped to the image and stripped of masked
        pixels.  If more than *n_min_pix* pixels remain (default: the
        current :attr:`n_min_pix`), the exposure is accepted and a
        projection is made for it.  Exposures for which the model raises
        :class:`multifit.projection.ProjectionError` are skipped.
        The threshold used is kept as :attr:`n_min_pix` for later calls.

        Data and variance vectors are built by concatenating the pixels of
        the accepted exposures in the order given.

        If anything fails the evaluator is left empty, with no frames and
        no pixels, and the exception is raised to the caller.
        """
        exposures = list(exposures)
        threshold = self.n_min_pix if n_min_pix is None else n_min_pix
        self._reset()
        model = self._model
        n_linear, n_nonlinear = self.linear_parameter_size, self.nonlinear_parameter_size

        accepted = []
        for index, exposure in enumerate(exposures):
            try:
                footprint = model.compute_projection_footprint(exposure.psf, exposure.wcs)
                footprint = clip_and_mask(
                    footprint, exposure.shape, mask=exposure.mask, bitmask=self._bitmask, variance=exposure.variance
                )
                # ignore exposures with too few contributing pixels
                if footprint.npix <= threshold:
                    logger.debug(
                        "exposure %d rejected: %d pixels, need more than %d", index, footprint.npix, threshold
                    )
                    continue
                projection = model.make_projection(exposure.psf, exposure.wcs, footprint)
            except ProjectionError as exc:
                logger.debug("exposure %d rejected: %s", index, exc)
                continue
            if not isinstance(projection, Projection):
                raise TypeError("model.make_projection returned %r, which is not a Projection" % projection)
            accepted.append((exposure, footprint, projection))

        n_pixels = sum(footprint.npix for _, footprint, _ in accepted)
        data = np.empty(n_pixels, "d")
        variance = np.empty(n_pixels, "d")
        model_image = np.zeros(n_pixels, "d")
        linear_derivative = np.zeros((n_pixels, n_linear), "d")
        nonlinear_derivative = np.zeros((n_pixels, n_nonlinear), "d")

        frames = []
        pixel_start = 0
        for exposure, footprint, projection in accepted:
            frame = Frame(exposure, footprint, projection, pixel_offset=pixel_start)
            rows = frame.pixels
            compress_image(footprint, exposure.image, exposure.variance, data[rows], variance[rows])
            projection.set_buffers(model_image[rows], linear_derivative[rows], nonlinear_derivative[rows])
            frames.append(frame)
            pixel_start = frame.pixel_end
        assert pixel_start == n_pixels

        sigma = np.sqrt(variance)
        weighted_data = _apply_weights(data, frames, sigma)

        self._frames = frames
        self._data = data
        self._variance = variance
        self._sigma = sigma
        self._weighted_data = weighted_data
        self._model_image_buffer = model_image
        self._linear_derivative_buffer = linear_derivative
        self._nonlinear_derivative_buffer = nonlinear_derivative
        self.n_min_pix = threshold
        logger.debug("assigned %d of %d exposures with %d pixels", len(frames), len(exposures), n_pixels)

    def _weight(self, buffer):
        return _apply_weights(buffer, self._frames, self._sigma)

    def set_linear_parameters(self, values):
        """
        Copy new linear parameter values into the model.  All cached
        products become invalid, even if the values have not changed.
        """
        values = np.asarray(values, "d").reshape(-1)
        if len(values) != len(self._linear):
            raise ConfigurationError("expected %d linear parameters but got %d" % (len(self._linear), len(values)))
        self._linear[:] = values
        self._valid_products = 0

    def set_nonlinear_parameters(self, values):
        """
        Copy new nonlinear parameter values into the model.  All cached
        products become invalid, even if the values have not changed.
        """
        values = np.asarray(values, "d").reshape(-1)
        if len(values) != len(self._nonlinear):
            raise ConfigurationError(
                "expected %d nonlinear parameters but got %d" % (len(self._nonlinear), len(values))
            )
        self._nonlinear[:] = values
        self._valid_products = 0

    def compute_model_image(self):
        """
        Compute the value of the model at every contributing pixel of every
        exposure, divided by the pixel sigma.
        """
        if not (self._valid_products & MODEL_IMAGE):
            for frame in self._frames:
                frame.projection.compute_model_image()
            self._model_image = self._weight(self._model_image_buffer)
            self._valid_products |= MODEL_IMAGE
        return self._model_image

    def compute_linear_parameter_derivative(self):
        """
        Compute the derivative of the model with respect to its linear
        parameters as an [n_pixels x n_linear] matrix, with each row
        divided by the pixel sigma.
        """
        if not (self._valid_products & LINEAR_PARAMETER_DERIVATIVE):
            for frame in self._frames:
                frame.projection.compute_linear_parameter_derivative()
            self._linear_derivative = self._weight(self._linear_derivative_buffer)
            self._valid_products |= LINEAR_PARAMETER_DERIVATIVE
        return self._linear_derivative

    def compute_nonlinear_parameter_derivative(self):
        """
        Compute the derivative of the model with respect to its nonlinear
        parameters as an [n_pixels x n_nonlinear] matrix, with each row
        divided by the pixel sigma.
        """
        if not (self._valid_products & NONLINEAR_PARAMETER_DERIVATIVE):
            for frame in self._frames:
                frame.projection.compute_nonlinear_parameter_derivative()
            self._nonlinear_derivative = self._weight(self._nonlinear_derivative_buffer)
            self._valid_products |= NONLINEAR_PARAMETER_DERIVATIVE
        return self._nonlinear_derivative

    def residuals(self):
        """Weighted residuals (data - model) / sigma at the current parameters."""
        return self._weighted_data - self.compute_model_image()

    def is_valid(self, product):
        """True if the cached *product* (e.g., MODEL_IMAGE) is up to date."""
        return (self._valid_products & product) == product

    @property
    def valid_products(self):
        return self._valid_products

    @property
    def model(self):
        return self._model

    @property
    def frames(self):
        return tuple(self._frames)

    @property
    def exposures(self):
        """Accepted exposures, in buffer order."""
        return [frame.exposure for frame in self._frames]

    @property
    def linear_parameter_size(self):
        return len(self._linear)

    @property
    def nonlinear_parameter_size(self):
        return len(self._nonlinear)

    @property
    def n_pixels(self):
        return len(self._data)

    @property
    def linear_parameters(self):
        return _readonly(self._linear)

    @property
    def nonlinear_parameters(self):
        return _readonly(self._nonlinear)

    @property
    def data(self):
        return _readonly(self._data)

    @property
    def variance(self):
        return _readonly(self._variance)

    @property
    def sigma(self):
        return _readonly(self._sigma)

    @property
    def weighted_data(self):
        """Data divided by sigma."""
        return self._weighted_data

    @property
    def raw_model_image(self):
        """Unweighted model image as last computed by the projections."""
        return _readonly(self._model_image_buffer)

    @property
    def raw_linear_derivative(self):
        return _readonly(self._linear_derivative_buffer)

    @property
    def raw_nonlinear_derivative(self):
        return _readonly(self._nonlinear_derivative_buffer)

    def __repr__(self):
        return "ModelEvaluator(model=%r, frames=%d, pixels=%d)" % (self._model, len(self._frames), self.n_pixels)
