import json
import logging

import numpy as np
import pytest

from multifit import logger as logger_module
from multifit.footprint import Footprint, clip_and_mask, get_plane_bitmask
from multifit.frame import Exposure, Frame
from multifit.options import DEFAULT_POLICY, ConfigurationError, FitPolicy


def test_policy_from_file(tmp_path):
    path = tmp_path / "fit.json"
    path.write_text(json.dumps(dict(strategy=2, checkGradient="yes")))
    policy = FitPolicy.from_file(str(path))
    assert policy["strategy"] == 2
    assert policy["checkGradient"] is True
    assert policy["tolerance"] == DEFAULT_POLICY["tolerance"]
    assert "iterationMax" in policy

    path.write_text("[1, 2]")
    with pytest.raises(ConfigurationError):
        FitPolicy.from_file(str(path))
    path.write_text("{strategy: 1")
    with pytest.raises(ConfigurationError):
        FitPolicy.from_file(str(path))


def test_configuration_error_is_value_error():
    with pytest.raises(ValueError):
        FitPolicy(dict(iterationMax="many"))


def test_unknown_mask_plane():
    assert get_plane_bitmask() == 0
    with pytest.raises(ConfigurationError):
        get_plane_bitmask("BAD", "GHOST")


def test_footprint_order_and_bbox():
    fp = Footprint([3, 1, 1, 3], [0, 4, 2, 0])
    assert fp.npix == 3
    assert list(zip(fp.y, fp.x)) == [(1, 2), (1, 4), (3, 0)]
    assert fp.bbox() == (1, 0, 4, 5)
    assert fp == Footprint.from_mask(np.isin(np.arange(25).reshape(5, 5), [7, 9, 15]))
    assert Footprint([], []).bbox() == (0, 0, 0, 0)
    assert clip_and_mask(fp, (2, 3)).npix == 1


def test_exposure_shapes():
    with pytest.raises(ValueError):
        Exposure(np.zeros(4), np.ones(4))
    with pytest.raises(ValueError):
        Exposure(np.zeros((2, 2)), np.ones((2, 3)))
    with pytest.raises(ValueError):
        Exposure(np.zeros((2, 2)), np.ones((2, 2)), mask=np.zeros((3, 2), int))


def test_frame_weights():
    exposure = Exposure(np.zeros((1, 2)), np.ones((1, 2)), filter_index=2, frame_index=5)
    frame = Frame(exposure, Footprint([0, 0], [0, 1]), projection=None, pixel_offset=1)
    assert (frame.filter_index, frame.frame_index) == (2, 5)
    assert frame.pixels == slice(1, 3)
    sigma = np.array([10.0, 2.0, 4.0, 10.0])
    vector = np.ones(4)
    frame.apply_weights(vector, sigma)
    assert vector.tolist() == [1.0, 0.5, 0.25, 1.0]
    matrix = np.ones((4, 3))
    frame.apply_weights(matrix, sigma)
    assert matrix[:, 2].tolist() == [1.0, 0.5, 0.25, 1.0]


def test_console_logging():
    with pytest.raises(ValueError):
        logger_module.setup_console_logging("chatty")
    handler = logger_module.setup_console_logging("debug")
    assert handler is logger_module.setup_console_logging("warning")
    assert handler.level == logging.WARNING
    assert sum(h is handler for h in logger_module.logger.handlers) == 1
