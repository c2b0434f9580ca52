r"""
Reference model family.

:class:`GaussianModel` is a single circular Gaussian source.  Its one
linear parameter is the total flux; its nonlinear parameters are the sky
position *x*, *y* and the intrinsic *radius*.  The exposure PSF is a
:class:`GaussianPsf`, which broadens the profile in quadrature, and the
exposure WCS is an :class:`AffineWcs`, which scales and shifts sky
coordinates onto the pixel grid.

On an exposure with WCS scale $s$ and PSF width $\sigma_p$, the source has
pixel centre $(p_x, p_y)$ and effective width $w^2 = s^2 r^2 + \sigma_p^2$,
so that

.. math::

    I(X, Y) = \frac{F}{2\pi w^2} \exp\left(-\frac{(X-p_x)^2 + (Y-p_y)^2}{2w^2}\right)

The model is linear in the flux, so it is suitable for checking gradient
computations against finite differences.
"""

__all__ = ["AffineWcs", "GaussianPsf", "GaussianModel", "GaussianProjection"]

import numpy as np

from .footprint import Footprint
from .projection import ProjectionBase, ProjectionError


class AffineWcs(object):
    """
    Sky to pixel transform *pixel = scale * sky + offset*.

    *offset* is the (x, y) pixel position of the sky origin.
    """

    def __init__(self, offset=(0.0, 0.0), scale=1.0):
        if scale == 0 or not np.isfinite(scale):
            raise ValueError("wcs scale must be finite and nonzero")
        self.offset = (float(offset[0]), float(offset[1]))
        self.scale = float(scale)

    def sky_to_pixel(self, x, y):
        return self.scale * x + self.offset[0], self.scale * y + self.offset[1]

    def __repr__(self):
        return "AffineWcs(offset=%s, scale=%g)" % (self.offset, self.scale)


class GaussianPsf(object):
    """Circular Gaussian PSF of width *sigma* pixels."""

    def __init__(self, sigma):
        if not sigma > 0:
            raise ValueError("psf sigma must be positive")
        self.sigma = float(sigma)

    def __repr__(self):
        return "GaussianPsf(sigma=%g)" % self.sigma


class GaussianModel(object):
    """
    Circular Gaussian source with total *flux* at sky position (*x*, *y*)
    with intrinsic width *radius*.

    *n_sigma* sets the size of the footprint box, measured in effective
    widths from the centre.
    """

    linear_parameter_size = 1
    nonlinear_parameter_size = 3
    linear_labels = ["flux"]
    nonlinear_labels = ["x", "y", "radius"]

    def __init__(self, flux=1.0, x=0.0, y=0.0, radius=1.0, n_sigma=5.0):
        self.linear_parameters = np.array([flux], "d")
        self.nonlinear_parameters = np.array([x, y, radius], "d")
        self.n_sigma = n_sigma

    def _geometry(self, psf, wcs):
        x, y, radius = self.nonlinear_parameters
        px, py = wcs.sky_to_pixel(x, y)
        wsq = (wcs.scale * radius) ** 2 + psf.sigma**2
        return px, py, wsq

    def compute_projection_footprint(self, psf, wcs):
        if not isinstance(psf, GaussianPsf) or not isinstance(wcs, AffineWcs):
            raise ProjectionError("GaussianModel needs a GaussianPsf and an AffineWcs, not %r and %r" % (psf, wcs))
        px, py, wsq = self._geometry(psf, wcs)
        if not (np.isfinite(px) and np.isfinite(py) and np.isfinite(wsq)):
            raise ProjectionError("source does not project to a finite pixel position")
        half = int(np.ceil(self.n_sigma * np.sqrt(wsq)))
        xc, yc = int(np.rint(px)), int(np.rint(py))
        return Footprint.from_bbox(yc - half, xc - half, yc + half + 1, xc + half + 1)

    def make_projection(self, psf, wcs, footprint):
        return GaussianProjection(self, psf, wcs, footprint)

    def render(self, psf, wcs, shape):
        """
        Return the model image over a whole exposure of the given *shape*,
        e.g., for simulating data.
        """
        projection = GaussianProjection(self, psf, wcs, Footprint.from_bbox(0, 0, shape[0], shape[1]))
        npix = projection.footprint.npix
        projection.set_buffers(np.empty(npix), np.empty((npix, 1)), np.empty((npix, 3)))
        projection.compute_model_image()
        return projection.model_image.reshape(shape)

    def __repr__(self):
        return "GaussianModel(flux=%g, x=%g, y=%g, radius=%g)" % (
            (self.linear_parameters[0],) + tuple(self.nonlinear_parameters)
        )


class GaussianProjection(ProjectionBase):
    """
    :class:`GaussianModel` restricted to the pixels of one exposure.
    """

    def __init__(self, model, psf, wcs, footprint):
        ProjectionBase.__init__(self, model, footprint)
        self.psf = psf
        self.wcs = wcs
        self._X = footprint.x.astype("d")
        self._Y = footprint.y.astype("d")

    def _profile(self):
        px, py, wsq = self.model._geometry(self.psf, self.wcs)
        dx, dy = self._X - px, self._Y - py
        dsq = dx**2 + dy**2
        g = np.exp(-0.5 * dsq / wsq) / (2 * np.pi * wsq)
        return dx, dy, dsq, wsq, g

    def compute_model_image(self):
        flux = self.model.linear_parameters[0]
        *_, g = self._profile()
        self.model_image[:] = flux * g

    def compute_linear_parameter_derivative(self):
        *_, g = self._profile()
        self.linear_derivative[:, 0] = g

    def compute_nonlinear_parameter_derivative(self):
        flux = self.model.linear_parameters[0]
        radius = self.model.nonlinear_parameters[2]
        scale = self.wcs.scale
        dx, dy, dsq, wsq, g = self._profile()
        image = flux * g
        self.nonlinear_derivative[:, 0] = image * dx * scale / wsq
        self.nonlinear_derivative[:, 1] = image * dy * scale / wsq
        self.nonlinear_derivative[:, 2] = image * (0.5 * dsq / wsq**2 - 1.0 / wsq) * 2.0 * scale**2 * radius
