import numpy as np
import pytest

from multifit import lsqerror
from multifit.evaluator import ALL_PRODUCTS, MODEL_IMAGE, ModelEvaluator
from multifit.frame import Exposure
from multifit.models import AffineWcs, GaussianModel, GaussianPsf
from multifit.objective import ChisqFunction
from multifit.options import ConfigurationError
from multifit.tests.ramp import RampModel, ramp_exposure


def _gaussian_evaluator():
    psf, wcs = GaussianPsf(1.2), AffineWcs(offset=(12.0, 11.0), scale=1.5)
    shape = (24, 24)
    exposures = []
    for k, sigma in enumerate([1.0, 1.5]):
        psf_k = GaussianPsf(psf.sigma * sigma)
        image = GaussianModel(flux=50.0, x=0.1, y=-0.2, radius=1.0).render(psf_k, wcs, shape)
        variance = np.full(shape, 0.5 + k)
        exposures.append(Exposure(image, variance, psf=psf_k, wcs=wcs, frame_index=k))
    model = GaussianModel(flux=40.0, x=0.3, y=0.1, radius=1.2)
    return ModelEvaluator(model, exposures)


def test_value_is_half_chisq():
    evaluator = ModelEvaluator(RampModel(), [ramp_exposure(5), ramp_exposure(3)])
    f = ChisqFunction(evaluator)
    p = np.array([1.5, 0.25])
    value = f.value(p)
    r = evaluator.weighted_data - evaluator.compute_model_image()
    assert value == 0.5 * np.dot(r, r)
    assert f(p) == value
    assert f.nllf(p) == value


def test_repeated_value_identical():
    model = RampModel()
    evaluator = ModelEvaluator(model, [ramp_exposure(5), ramp_exposure(3)])
    f = ChisqFunction(evaluator)
    p = np.array([1.5, 0.25])
    first = f.value(p)
    for _ in range(3):
        assert f.value(p.copy()) == first
    # the model image was computed once per frame and then reused
    assert model.calls["image"] == 2
    assert evaluator.is_valid(MODEL_IMAGE)


def test_gradient_follows_parameters():
    evaluator = ModelEvaluator(RampModel(), [ramp_exposure(5), ramp_exposure(3)])
    f = ChisqFunction(evaluator)
    p1, p2 = np.array([1.0, 0.1]), np.array([3.0, -0.2])
    f.value(p1)
    g = f.gradient(p2)
    assert evaluator.linear_parameters.tolist() == [3.0]
    assert evaluator.nonlinear_parameters.tolist() == [-0.2]

    fresh = ChisqFunction(ModelEvaluator(RampModel(), [ramp_exposure(5), ramp_exposure(3)]))
    assert np.array_equal(g, fresh.gradient(p2))


def test_change_in_last_element_detected():
    evaluator = ModelEvaluator(RampModel(), [ramp_exposure(5)])
    f = ChisqFunction(evaluator)
    f.value([1.0, 0.1])
    f.value([1.0, 0.1])
    assert evaluator.valid_products == MODEL_IMAGE
    f.value([1.0, 0.2])
    assert evaluator.nonlinear_parameters.tolist() == [0.2]
    f.value([2.0, 0.2])
    assert evaluator.linear_parameters.tolist() == [2.0]


def test_value_and_gradient_share_cache():
    model = RampModel()
    evaluator = ModelEvaluator(model, [ramp_exposure(5)])
    f = ChisqFunction(evaluator)
    p = [1.2, 0.3]
    f.value(p)
    f.gradient(p)
    f.value(p)
    f.gradient(p)
    assert evaluator.valid_products == ALL_PRODUCTS
    assert model.calls == dict(image=1, linear=1, nonlinear=1)
    assert (f.nfev, f.ngev) == (2, 2)


def test_nan_parameters_always_pushed():
    model = RampModel()
    evaluator = ModelEvaluator(model, [ramp_exposure(5)])
    f = ChisqFunction(evaluator)
    p = [1.0, np.nan]
    f.value(p)
    f.value(p)
    # nan never compares equal, so the products are recomputed each time
    assert model.calls["image"] == 2


def test_gradient_matches_central_difference():
    evaluator = _gaussian_evaluator()
    f = ChisqFunction(evaluator)
    p = f.getp()
    analytic = f.gradient(p)
    numeric = lsqerror.gradient(f.value, p, scale=[1.0, 0.01, 0.01, 0.01])
    atol = 1e-8 * np.max(np.abs(analytic))
    assert np.allclose(numeric, analytic, rtol=1e-4, atol=atol)


def test_ramp_gradient_matches_central_difference():
    evaluator = ModelEvaluator(RampModel(), [ramp_exposure(5), ramp_exposure(3)])
    f = ChisqFunction(evaluator)
    p = np.array([1.3, 0.7])
    numeric = lsqerror.gradient(f.value, p, scale=[0.1, 0.1])
    assert np.allclose(numeric, f.gradient(p), rtol=1e-4)


def test_jacobian_matches_numeric():
    evaluator = _gaussian_evaluator()
    f = ChisqFunction(evaluator)
    p = f.getp()
    analytic = f.jacobian()
    numeric = lsqerror.jacobian(f, p, scale=[1e-2, 1e-4, 1e-4, 1e-4])
    assert analytic.shape == (evaluator.n_pixels, 4)
    assert np.allclose(numeric, analytic, rtol=1e-3, atol=1e-4 * np.max(np.abs(analytic)))
    # current point preserved
    assert np.array_equal(f.getp(), p)


def test_problem_interface():
    evaluator = ModelEvaluator(RampModel(), [ramp_exposure(5), ramp_exposure(3)])
    f = ChisqFunction(evaluator)
    assert f.labels() == ["a", "b"]
    assert f.numpoints() == 8
    assert f.dof() == 6
    f.setp([2.0, 0.5])
    assert np.array_equal(f.getp(), [2.0, 0.5])
    assert np.allclose(f.residuals(), 0.0)
    assert f.chisq() == pytest.approx(0.0, abs=1e-20)


def test_parameter_count_checked():
    evaluator = ModelEvaluator(RampModel(), [ramp_exposure(5)])
    f = ChisqFunction(evaluator)
    with pytest.raises(ConfigurationError):
        f.value([1.0, 2.0, 3.0])
    with pytest.raises(ConfigurationError):
        f.gradient([1.0])


class _EmptyModel(RampModel):
    linear_parameter_size = 0
    nonlinear_parameter_size = 0

    def __init__(self):
        RampModel.__init__(self)
        self.linear_parameters = np.empty(0)
        self.nonlinear_parameters = np.empty(0)


def test_no_parameters():
    with pytest.raises(ConfigurationError):
        ChisqFunction(ModelEvaluator(_EmptyModel()))
