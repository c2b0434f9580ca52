"""
Pixel footprints.

A :class:`Footprint` is an ordered set of pixel coordinates on an image.
The model decides which pixels of an exposure could see its light; before
those pixels are used the footprint is clipped to the image bounds and
stripped of pixels flagged in the mask or carrying an unusable variance
(:func:`clip_and_mask`).  The surviving pixels are then pulled out of the
image and variance planes into flat vectors (:func:`compress_image`).

Mask planes follow the usual convention of one bit per defect type::

    >>> get_plane_bitmask("BAD", "SAT") == MASK_PLANES["BAD"] | MASK_PLANES["SAT"]
    True
"""

__all__ = [
    "Footprint",
    "MASK_PLANES",
    "DEFAULT_BAD_MASK_PLANES",
    "get_plane_bitmask",
    "clip_and_mask",
    "compress_image",
]

import numpy as np

from .options import ConfigurationError

MASK_PLANES = dict(
    BAD=0x1,
    SAT=0x2,
    INTRP=0x4,
    CR=0x8,
    EDGE=0x10,
    DETECTED=0x20,
)

#: Pixels with any of these planes set never contribute to a fit.
DEFAULT_BAD_MASK_PLANES = ("BAD", "INTRP", "SAT", "CR", "EDGE")


def get_plane_bitmask(*names):
    """Return the bit mask covering all the named mask planes."""
    bitmask = 0
    for name in names:
        try:
            bitmask |= MASK_PLANES[name]
        except KeyError:
            raise ConfigurationError("unknown mask plane %r; use %s" % (name, "|".join(sorted(MASK_PLANES))))
    return bitmask


class Footprint(object):
    """
    Set of pixel coordinates, stored as parallel *y* (row) and *x* (column)
    integer arrays.

    Coordinates are sorted in row-major order and duplicates removed, so two
    footprints covering the same pixels compare equal and compress the
    image in the same order.
    """

    def __init__(self, y, x):
        y = np.asarray(y, dtype=int).ravel()
        x = np.asarray(x, dtype=int).ravel()
        if y.shape != x.shape:
            raise ValueError("footprint needs the same number of y and x coordinates")
        if len(y):
            pairs = np.unique(np.vstack((y, x)).T, axis=0)
            y, x = pairs[:, 0], pairs[:, 1]
        self.y, self.x = y, x

    @classmethod
    def from_bbox(cls, y0, x0, y1, x1):
        """
        Footprint covering the box of rows [*y0*, *y1*) and columns [*x0*, *x1*).
        """
        yy, xx = np.mgrid[y0:y1, x0:x1]
        return cls(yy, xx)

    @classmethod
    def from_mask(cls, selected):
        """Footprint covering the True pixels of a 2-D boolean array."""
        y, x = np.nonzero(np.asarray(selected, dtype=bool))
        return cls(y, x)

    @property
    def npix(self):
        return len(self.y)

    def bbox(self):
        """Return (y0, x0, y1, x1) of the smallest box enclosing the footprint."""
        if self.npix == 0:
            return (0, 0, 0, 0)
        return (self.y.min(), self.x.min(), self.y.max() + 1, self.x.max() + 1)

    def select(self, keep):
        """Return the footprint restricted to the pixels where *keep* is True."""
        keep = np.asarray(keep, dtype=bool)
        return Footprint(self.y[keep], self.x[keep])

    def __len__(self):
        return self.npix

    def __eq__(self, other):
        if not isinstance(other, Footprint):
            return NotImplemented
        return np.array_equal(self.y, other.y) and np.array_equal(self.x, other.x)

    def __repr__(self):
        return "Footprint(npix=%d, bbox=%s)" % (self.npix, self.bbox())


def clip_and_mask(footprint, shape, mask=None, bitmask=0, variance=None):
    """
    Return the part of *footprint* which can contribute to a fit.

    Pixels outside an image of the given *shape* are dropped.  If *mask* is
    given, pixels with any bit of *bitmask* set are dropped.  If *variance*
    is given, pixels whose variance is not positive and finite are dropped
    since they cannot be weighted.
    """
    ny, nx = shape
    y, x = footprint.y, footprint.x
    keep = (y >= 0) & (y < ny) & (x >= 0) & (x < nx)
    yk, xk = y[keep], x[keep]
    if mask is not None and bitmask:
        good = (np.asarray(mask)[yk, xk] & bitmask) == 0
        yk, xk = yk[good], xk[good]
    if variance is not None:
        var = np.asarray(variance)[yk, xk]
        good = np.isfinite(var) & (var > 0)
        yk, xk = yk[good], xk[good]
    return Footprint(yk, xk)


def compress_image(footprint, image, variance, data_out=None, variance_out=None):
    """
    Gather the footprint pixels of *image* and *variance* into vectors.

    If *data_out* and *variance_out* are given, the pixels are written into
    them (they must have length footprint.npix), otherwise new vectors are
    returned.
    """
    y, x = footprint.y, footprint.x
    data = np.asarray(image)[y, x]
    var = np.asarray(variance)[y, x]
    if data_out is None:
        return data.astype("d"), var.astype("d")
    data_out[:] = data
    variance_out[:] = var
    return data_out, variance_out


def test_clip_and_mask():
    fp = Footprint.from_bbox(-1, -1, 3, 3)
    assert fp.npix == 16
    mask = np.zeros((2, 4), dtype=int)
    mask[0, 1] = MASK_PLANES["CR"]
    mask[1, 0] = MASK_PLANES["DETECTED"]
    variance = np.ones((2, 4))
    variance[1, 2] = 0.0
    clipped = clip_and_mask(fp, (2, 4), mask=mask, bitmask=get_plane_bitmask(*DEFAULT_BAD_MASK_PLANES))
    # 2 rows x 3 columns inside the image, less the cosmic ray
    assert clipped.npix == 5
    assert (0, 1) not in set(zip(clipped.y, clipped.x))
    assert (1, 0) in set(zip(clipped.y, clipped.x))
    clipped = clip_and_mask(clipped, (2, 4), variance=variance)
    assert clipped.npix == 4


def test_compress_image():
    image = np.arange(12.0).reshape(3, 4)
    variance = image + 1
    fp = Footprint([2, 0, 1], [3, 1, 1])
    data, var = compress_image(fp, image, variance)
    # row-major order regardless of the input order
    assert data.tolist() == [1.0, 5.0, 11.0]
    assert var.tolist() == [2.0, 6.0, 12.0]
