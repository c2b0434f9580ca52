"""
Residual plots.

Residuals are shown frame by frame on the pixel grid of each exposure,
cut down to the bounding box of the frame footprint.  Pixels outside the
footprint, or dropped from it by the mask, are left blank.
"""

__all__ = ["residual_image", "plot_residuals"]

import numpy as np


def residual_image(evaluator, frame, residuals=None):
    """
    Return the weighted residuals of *frame* as a 2-D array covering the
    bounding box of its footprint, with nan for pixels not in the fit.

    *residuals* is the full residual vector from the evaluator, if already
    computed.
    """
    if residuals is None:
        residuals = evaluator.residuals()
    footprint = frame.footprint
    y0, x0, y1, x1 = footprint.bbox()
    image = np.full((y1 - y0, x1 - x0), np.nan)
    image[footprint.y - y0, footprint.x - x0] = residuals[frame.pixels]
    return image


def plot_residuals(evaluator, fig=None, cmap="RdBu_r"):
    """
    Show (data - model)/sigma for every frame in the evaluator.

    The colour scale is symmetric about zero and shared across frames.
    Returns the matplotlib figure.
    """
    from matplotlib import pyplot as plt

    frames = evaluator.frames
    if fig is None:
        fig = plt.figure()
    if not frames:
        return fig
    residuals = evaluator.residuals()
    limit = np.max(np.abs(residuals)) if len(residuals) else 1.0
    limit = limit if limit > 0 else 1.0
    ncols = int(np.ceil(np.sqrt(len(frames))))
    nrows = int(np.ceil(len(frames) / ncols))
    for k, frame in enumerate(frames):
        ax = fig.add_subplot(nrows, ncols, k + 1)
        y0, x0, y1, x1 = frame.footprint.bbox()
        im = ax.imshow(
            residual_image(evaluator, frame, residuals),
            origin="lower",
            extent=(x0 - 0.5, x1 - 0.5, y0 - 0.5, y1 - 0.5),
            cmap=cmap,
            vmin=-limit,
            vmax=limit,
            interpolation="nearest",
        )
        ax.set_title("filter %d frame %d" % (frame.filter_index, frame.frame_index))
    fig.colorbar(im, ax=fig.axes, label="residual / sigma")
    return fig
