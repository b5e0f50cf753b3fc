"""
Tests for the structural model and parameter transforms.
"""

import numpy as np
import pytest

from sdfit.model import (
    ParameterTransform,
    StructuralModel,
    transform_derivative,
    transform_to_phi,
    transform_to_psi,
)


class TestStructuralModel:
    """Test evaluation and derivatives of theta * K / (1 + delta * x)."""

    def test_evaluate_reference_values(self):
        model = StructuralModel(75.0)
        pred = model.evaluate(1.0, 0.05, [1, 5, 20, 50, 100])
        expected = [75 / 1.05, 75 / 1.25, 75 / 2.0, 75 / 3.5, 75 / 6.0]
        np.testing.assert_allclose(pred, expected)

    def test_zero_delta_is_flat(self):
        model = StructuralModel(75.0)
        np.testing.assert_allclose(model.evaluate(1.2, 0.0, [1, 50, 100]), [90.0, 90.0, 90.0])

    def test_scale_constant(self):
        assert StructuralModel(10.0).evaluate(2.0, 0.0, [1])[0] == 20.0

    def test_jacobian_matches_finite_differences(self):
        model = StructuralModel()
        x = np.array([1.0, 5.0, 20.0, 50.0, 100.0])
        theta, delta = 1.3, 0.07
        jac = model.jacobian(theta, delta, x)
        h = 1e-7
        d_theta = (model.evaluate(theta + h, delta, x) - model.evaluate(theta - h, delta, x)) / (2 * h)
        d_delta = (model.evaluate(theta, delta + h, x) - model.evaluate(theta, delta - h, x)) / (2 * h)
        assert jac.shape == (5, 2)
        np.testing.assert_allclose(jac[:, 0], d_theta, rtol=1e-6)
        np.testing.assert_allclose(jac[:, 1], d_delta, rtol=1e-6)

    def test_evaluate_batch_matches_loop(self):
        model = StructuralModel()
        x = np.array([1.0, 20.0, 100.0])
        psi = np.array([[1.0, 0.05], [0.8, 0.2], [1.5, 0.0]])
        batch = model.evaluate_batch(psi, x)
        assert batch.shape == (3, 3)
        for row, (theta, delta) in zip(batch, psi):
            np.testing.assert_allclose(row, model.evaluate(theta, delta, x))

    def test_in_domain(self):
        x = [1.0, 5.0, 100.0]
        assert StructuralModel.in_domain(0.0, x)
        assert StructuralModel.in_domain(-0.009, x)
        assert not StructuralModel.in_domain(-0.011, x)
        np.testing.assert_array_equal(StructuralModel.in_domain(np.array([0.1, -0.5]), x), [True, False])


class TestParameterTransforms:
    """Test the phi <-> psi maps."""

    @pytest.mark.parametrize("transform", list(ParameterTransform))
    def test_inverse(self, transform):
        phi = np.array([-1.5, -0.2, 0.0, 0.7, 2.0])
        np.testing.assert_allclose(transform.to_phi(transform.to_psi(phi)), phi, atol=1e-8)

    @pytest.mark.parametrize("transform", list(ParameterTransform))
    def test_derivative(self, transform):
        phi = np.array([-1.0, 0.3, 1.2])
        h = 1e-6
        numeric = (transform.to_psi(phi + h) - transform.to_psi(phi - h)) / (2 * h)
        np.testing.assert_allclose(transform.derivative(phi), numeric, rtol=1e-6)

    def test_domains(self):
        assert ParameterTransform.NORMAL.in_domain(-3.0)
        assert not ParameterTransform.LOG_NORMAL.in_domain(0.0)
        assert ParameterTransform.LOGIT.in_domain(0.5)
        assert not ParameterTransform.PROBIT.in_domain(1.0)
        assert not ParameterTransform.NORMAL.in_domain(float("nan"))

    def test_columnwise_helpers(self):
        transforms = (ParameterTransform.NORMAL, ParameterTransform.LOG_NORMAL)
        phi = np.array([[1.0, 0.0], [2.0, np.log(0.05)]])
        psi = transform_to_psi(transforms, phi)
        np.testing.assert_allclose(psi, [[1.0, 1.0], [2.0, 0.05]])
        np.testing.assert_allclose(transform_to_phi(transforms, psi), phi)
        np.testing.assert_allclose(transform_derivative(transforms, phi), [[1.0, 1.0], [1.0, 0.05]])

    def test_enum_values(self):
        assert ParameterTransform("log_normal") is ParameterTransform.LOG_NORMAL
        assert ParameterTransform.PROBIT.value == "probit"
