import numpy as np
import pytest

from multifit.evaluator import (
    ALL_PRODUCTS,
    LINEAR_PARAMETER_DERIVATIVE,
    MODEL_IMAGE,
    NONLINEAR_PARAMETER_DERIVATIVE,
    ModelEvaluator,
)
from multifit.footprint import MASK_PLANES
from multifit.frame import Exposure
from multifit.models import AffineWcs, GaussianModel, GaussianPsf
from multifit.options import ConfigurationError
from multifit.tests.ramp import RampModel, ramp_exposure


def test_two_frames():
    exposures = [ramp_exposure(5, frame_index=0), ramp_exposure(3, frame_index=1)]
    evaluator = ModelEvaluator(RampModel(), exposures, n_min_pix=2)
    assert evaluator.n_pixels == 8
    assert len(evaluator.frames) == 2
    assert evaluator.compute_linear_parameter_derivative().shape == (8, 1)
    assert evaluator.compute_nonlinear_parameter_derivative().shape == (8, 1)

    evaluator.set_linear_parameters([2.0])
    evaluator.set_nonlinear_parameters([0.5])
    assert evaluator.valid_products == 0
    image = evaluator.compute_model_image()
    assert image.shape == (8,)
    assert evaluator.valid_products == MODEL_IMAGE
    assert evaluator.is_valid(MODEL_IMAGE)
    assert not evaluator.is_valid(LINEAR_PARAMETER_DERIVATIVE)
    assert not evaluator.is_valid(NONLINEAR_PARAMETER_DERIVATIVE)
    # model matches the data it was generated from
    assert np.allclose(evaluator.residuals(), 0.0)


def test_frame_slices_tile_buffer():
    exposures = [ramp_exposure(n, frame_index=k) for k, n in enumerate([4, 7, 1, 5])]
    evaluator = ModelEvaluator(RampModel(), exposures)
    frames = evaluator.frames
    assert [frame.frame_index for frame in frames] == [0, 1, 2, 3]
    assert frames[0].pixel_offset == 0
    for prev, frame in zip(frames[:-1], frames[1:]):
        assert frame.pixel_offset == prev.pixel_end
    assert frames[-1].pixel_end == evaluator.n_pixels
    assert sum(frame.pixel_count for frame in frames) == evaluator.n_pixels == 17


def test_min_pixel_threshold():
    exposures = [ramp_exposure(3, frame_index=0), ramp_exposure(4, frame_index=1)]
    evaluator = ModelEvaluator(RampModel(), exposures, n_min_pix=3)
    # exactly n_min_pix pixels is not enough
    assert [frame.frame_index for frame in evaluator.frames] == [1]
    assert evaluator.n_pixels == 4
    assert evaluator.exposures == [exposures[1]]

    evaluator.assign_frames(exposures, n_min_pix=2)
    assert [frame.frame_index for frame in evaluator.frames] == [0, 1]
    assert evaluator.n_pixels == 7
    assert evaluator.n_min_pix == 2

    # the new threshold applies to later assignments
    evaluator.assign_frames(exposures)
    assert [frame.frame_index for frame in evaluator.frames] == [0, 1]


def test_sigma_weighting():
    exposures = [ramp_exposure(5), ramp_exposure(3, variance=4.0)]
    evaluator = ModelEvaluator(RampModel(a=1.5, b=0.25), exposures)
    sigma = np.sqrt(evaluator.variance)
    assert np.array_equal(evaluator.sigma, sigma)
    assert np.allclose(evaluator.weighted_data, evaluator.data / sigma)

    image = evaluator.compute_model_image()
    assert np.allclose(image, evaluator.raw_model_image / sigma)
    linear = evaluator.compute_linear_parameter_derivative()
    assert np.allclose(linear, evaluator.raw_linear_derivative / sigma[:, None])
    nonlinear = evaluator.compute_nonlinear_parameter_derivative()
    assert np.allclose(nonlinear, evaluator.raw_nonlinear_derivative / sigma[:, None])


def test_nonlinear_weighting_covers_all_columns():
    # more nonlinear than linear parameters, so every nonlinear column
    # must be weighted, not just the first n_linear of them
    psf, wcs = GaussianPsf(1.0), AffineWcs(offset=(8.0, 8.0))
    shape = (17, 17)
    variance = np.full(shape, 9.0)
    exposure = Exposure(np.zeros(shape), variance, psf=psf, wcs=wcs)
    evaluator = ModelEvaluator(GaussianModel(flux=10.0, radius=0.5, n_sigma=3), [exposure])
    assert evaluator.nonlinear_parameter_size > evaluator.linear_parameter_size
    nonlinear = evaluator.compute_nonlinear_parameter_derivative()
    assert nonlinear.shape == (evaluator.n_pixels, 3)
    assert np.allclose(nonlinear, evaluator.raw_nonlinear_derivative / 3.0)


def test_products_cached_until_parameters_change():
    model = RampModel(a=1.0, b=0.1)
    evaluator = ModelEvaluator(model, [ramp_exposure(5), ramp_exposure(3)])
    first = evaluator.compute_model_image().copy()
    evaluator.compute_model_image()
    evaluator.compute_linear_parameter_derivative()
    evaluator.compute_linear_parameter_derivative()
    evaluator.compute_nonlinear_parameter_derivative()
    # one call per frame for each product
    assert model.calls == dict(image=2, linear=2, nonlinear=2)
    assert evaluator.valid_products == ALL_PRODUCTS
    assert np.array_equal(evaluator.compute_model_image(), first)

    # setting parameters invalidates everything, even with equal values
    evaluator.set_linear_parameters(evaluator.linear_parameters.copy())
    assert evaluator.valid_products == 0
    evaluator.compute_nonlinear_parameter_derivative()
    assert evaluator.valid_products == NONLINEAR_PARAMETER_DERIVATIVE
    assert model.calls["nonlinear"] == 4

    evaluator.set_nonlinear_parameters([0.2])
    assert evaluator.valid_products == 0
    assert not np.array_equal(evaluator.compute_model_image(), first)


def test_parameters_shared_with_model():
    model = RampModel(a=1.0, b=0.1)
    evaluator = ModelEvaluator(model, [ramp_exposure(5)])
    evaluator.set_linear_parameters([3.0])
    evaluator.set_nonlinear_parameters([-0.5])
    assert model.linear_parameters[0] == 3.0
    assert model.nonlinear_parameters[0] == -0.5
    assert evaluator.linear_parameters.tolist() == [3.0]
    with pytest.raises(ValueError):
        evaluator.linear_parameters[0] = 1.0


def test_returned_products_are_read_only():
    evaluator = ModelEvaluator(RampModel(), [ramp_exposure(5)])
    for product in (
        evaluator.compute_model_image(),
        evaluator.compute_linear_parameter_derivative(),
        evaluator.compute_nonlinear_parameter_derivative(),
        evaluator.data,
        evaluator.weighted_data,
    ):
        assert not product.flags.writeable


def test_parameter_length_mismatch():
    evaluator = ModelEvaluator(RampModel(), [ramp_exposure(5)])
    with pytest.raises(ConfigurationError):
        evaluator.set_linear_parameters([1.0, 2.0])
    with pytest.raises(ConfigurationError):
        evaluator.set_nonlinear_parameters([])


def test_projection_error_excludes_frame():
    exposures = [
        ramp_exposure(5, frame_index=0),
        ramp_exposure(4, frame_index=1, wcs=False),
        ramp_exposure(3, frame_index=2),
    ]
    evaluator = ModelEvaluator(RampModel(), exposures)
    assert [frame.frame_index for frame in evaluator.frames] == [0, 2]
    assert evaluator.n_pixels == 8


def test_masked_pixels_dropped():
    exposure = ramp_exposure(6)
    mask = np.zeros((1, 6), dtype=int)
    mask[0, 1] = MASK_PLANES["SAT"]
    mask[0, 4] = MASK_PLANES["DETECTED"]
    exposure.mask = mask
    exposure.variance[0, 2] = 0.0
    evaluator = ModelEvaluator(RampModel(), [exposure])
    assert evaluator.n_pixels == 4
    assert evaluator.frames[0].footprint.x.tolist() == [0, 3, 4, 5]
    assert np.all(evaluator.sigma > 0)

    evaluator = ModelEvaluator(RampModel(), [exposure], bad_mask_planes=("SAT", "DETECTED"))
    assert evaluator.frames[0].footprint.x.tolist() == [0, 3, 5]


class _BrokenModel(RampModel):
    broken = False

    def make_projection(self, psf, wcs, footprint):
        if self.broken:
            raise RuntimeError("cannot project")
        return RampModel.make_projection(self, psf, wcs, footprint)


def test_failed_assignment_leaves_evaluator_empty():
    model = _BrokenModel()
    evaluator = ModelEvaluator(model, [ramp_exposure(5)])
    evaluator.compute_model_image()
    assert evaluator.n_pixels == 5

    model.broken = True
    with pytest.raises(RuntimeError):
        evaluator.assign_frames([ramp_exposure(5), ramp_exposure(3)])
    assert evaluator.n_pixels == 0
    assert evaluator.frames == ()
    assert evaluator.valid_products == 0
    assert evaluator.compute_model_image().shape == (0,)
    assert evaluator.compute_linear_parameter_derivative().shape == (0, 1)


def test_no_frames():
    evaluator = ModelEvaluator(RampModel())
    assert evaluator.n_pixels == 0
    assert evaluator.residuals().shape == (0,)
    evaluator.assign_frames([ramp_exposure(2)], n_min_pix=2)
    assert evaluator.n_pixels == 0


def test_model_bound_to_one_evaluator():
    model = RampModel(a=1.0, b=0.0)
    first = ModelEvaluator(model, [ramp_exposure(5)])
    with pytest.raises(ConfigurationError):
        ModelEvaluator(model, [ramp_exposure(3)])

    # the first evaluator still drives the model
    first.set_linear_parameters([5.0])
    assert model.linear_parameters[0] == 5.0
    assert np.allclose(first.compute_model_image(), 5.0 / np.sqrt(first.variance))

    # once released, the model can be bound again
    del first
    second = ModelEvaluator(model, [ramp_exposure(3)])
    second.set_linear_parameters([2.0])
    assert model.linear_parameters[0] == 2.0
    assert second.n_pixels == 3
