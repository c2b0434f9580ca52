"""
Exposures and frames.

An :class:`Exposure` is the raw observation handed to the evaluator: the
image and variance planes, an optional mask, the PSF and the WCS, plus the
filter and frame identity.  Reading these from disk is somebody else's job.

A :class:`Frame` is an exposure that has been accepted by the evaluator.
It records where the exposure's contributing pixels live in the evaluator's
flat buffers, and holds the projection of the model onto the exposure.
"""

__all__ = ["Exposure", "Frame"]

from dataclasses import dataclass
from typing import Any, Optional

import numpy as np


@dataclass(eq=False)
class Exposure:
    """
    One observed image.

    *image* and *variance* are 2-D arrays of the same shape.  *mask*, if
    given, is an integer array of mask plane bits (see
    :data:`multifit.footprint.MASK_PLANES`).  *psf* and *wcs* are passed
    through to the model untouched.
    """

    image: np.ndarray
    variance: np.ndarray
    mask: Optional[np.ndarray] = None
    psf: Any = None
    wcs: Any = None
    filter_index: int = 0
    frame_index: int = 0

    def __post_init__(self):
        self.image = np.asarray(self.image)
        self.variance = np.asarray(self.variance)
        if self.image.ndim != 2:
            raise ValueError("exposure image should be two dimensional")
        if self.variance.shape != self.image.shape:
            raise ValueError("exposure variance shape %s does not match image %s"
                             % (self.variance.shape, self.image.shape))
        if self.mask is not None:
            self.mask = np.asarray(self.mask)
            if self.mask.shape != self.image.shape:
                raise ValueError("exposure mask shape %s does not match image %s"
                                 % (self.mask.shape, self.image.shape))

    @property
    def shape(self):
        return self.image.shape


class Frame(object):
    """
    An exposure accepted into an evaluator.

    The frame owns rows [*pixel_offset*, *pixel_offset* + *pixel_count*) of
    every evaluator buffer.  The offsets are fixed when the frame is created
    and are only replaced by assigning a new set of exposures.
    """

    def __init__(self, exposure, footprint, projection, pixel_offset, filter_index=None, frame_index=None):
        self.exposure = exposure
        self.footprint = footprint
        self.projection = projection
        self.pixel_offset = pixel_offset
        self.pixel_count = footprint.npix
        self.filter_index = exposure.filter_index if filter_index is None else filter_index
        self.frame_index = exposure.frame_index if frame_index is None else frame_index

    @property
    def pixel_end(self):
        return self.pixel_offset + self.pixel_count

    @property
    def pixels(self):
        """Slice selecting this frame's rows of the evaluator buffers."""
        return slice(self.pixel_offset, self.pixel_end)

    def apply_weights(self, array, sigma):
        """
        Divide this frame's rows of *array* by the matching entries of the
        full-length *sigma* vector, in place.

        *array* may be a vector or a matrix with one row per pixel.
        """
        rows = array[self.pixels]
        weights = sigma[self.pixels]
        if rows.ndim == 1:
            rows /= weights
        else:
            rows /= weights[:, None]
        return array

    def __repr__(self):
        return "Frame(filter=%d, frame=%d, pixels=[%d:%d])" % (
            self.filter_index,
            self.frame_index,
            self.pixel_offset,
            self.pixel_end,
        )
