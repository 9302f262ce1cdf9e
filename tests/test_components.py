"""
test_components.py
~~~~~~~~~~~~~~~~~~

Unit tests for activations, losses, encoders and metrics.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from nnbench.activations import get_activation
from nnbench.encoders import Identity, OneHot, Threshold, get_encoder
from nnbench.errors import InvalidDataset, InvalidSpec, ShapeMismatch
from nnbench.losses import CrossEntropy, MeanSquaredError, get_loss
from nnbench.metrics import Accuracy, get_metric


@pytest.mark.unit
class TestActivations:
    """Test activation values and derivatives."""

    @pytest.mark.parametrize('name', ['sigmoid', 'relu', 'leaky_relu', 'tanh', 'linear'])
    def test_prime_matches_finite_difference(self, name):
        """Test each elementwise derivative numerically (away from 0)."""
        activation = get_activation(name)
        z = np.array([-2.0, -0.7, 0.3, 1.9])
        eps = 1e-6

        numeric = (activation.call(z + eps) - activation.call(z - eps)) / (2 * eps)

        assert np.allclose(activation.prime(z), numeric, atol=1e-6)

    def test_sigmoid_is_stable_for_large_inputs(self):
        """Test that extreme inputs saturate without overflow warnings."""
        with np.errstate(over='raise'):
            out = get_activation('sigmoid').call(np.array([-1000.0, 0.0, 1000.0]))
        assert np.allclose(out, [0.0, 0.5, 1.0])

    def test_softmax_rows_sum_to_one(self):
        """Test softmax normalization, including large logits."""
        out = get_activation('softmax').call(np.array([[1.0, 2.0, 3.0], [1000.0, 0.0, 0.0]]))

        assert np.allclose(out.sum(axis=1), 1.0)
        assert np.allclose(out[1], [1.0, 0.0, 0.0])

    def test_aliases_and_unknown(self):
        """Test name lookup."""
        assert get_activation(' Logistic ').name == 'sigmoid'
        assert get_activation('identity').name == 'linear'
        with pytest.raises(InvalidSpec):
            get_activation('swish')


@pytest.mark.unit
class TestLosses:
    """Test loss values and gradients."""

    def test_mse_value_and_gradient(self):
        """Test half summed squared error averaged over the batch."""
        predictions = np.array([[1.0, 0.0], [0.5, 0.5]])
        targets = np.array([[0.0, 0.0], [0.5, 1.5]])
        loss = MeanSquaredError()

        assert loss.value(predictions, targets) == pytest.approx(0.5)
        assert np.allclose(loss.gradient(predictions, targets), [[0.5, 0.0], [0.0, -0.5]])

    def test_cross_entropy(self):
        """Test cross-entropy on probability rows."""
        predictions = np.array([[0.5, 0.5], [0.25, 0.75]])
        targets = np.array([[1.0, 0.0], [0.0, 1.0]])

        value = CrossEntropy().value(predictions, targets)

        assert value == pytest.approx(-(np.log(0.5) + np.log(0.75)) / 2)

    def test_cross_entropy_clips_zero_probability(self):
        """Test that a zero probability gives a large but finite loss."""
        value = CrossEntropy().value(np.array([[0.0, 1.0]]), np.array([[1.0, 0.0]]))
        assert np.isfinite(value)

    def test_shape_mismatch(self):
        """Test that predictions and targets must have equal shapes."""
        with pytest.raises(ShapeMismatch):
            MeanSquaredError().value(np.zeros((2, 1)), np.zeros((2, 2)))

    def test_names(self):
        """Test loss lookup."""
        assert isinstance(get_loss('Mean Squared Error'), MeanSquaredError)
        assert isinstance(get_loss('categorical_crossentropy'), CrossEntropy)
        with pytest.raises(InvalidSpec):
            get_loss('hinge')


@pytest.mark.unit
class TestEncoders:
    """Test output encoders."""

    def test_one_hot_round_trip(self):
        """Test label encoding and argmax decoding."""
        encoder = OneHot(2)
        labels = np.array([[0.0], [2.0], [1.0]])

        encoded = encoder.encode(labels)

        assert encoded.shape == (3, 3)
        assert np.array_equal(encoded.argmax(axis=1), [0, 2, 1])
        assert np.array_equal(encoder.decode(encoded), labels)
        assert encoder.output_units(labels) == 3

    @pytest.mark.parametrize('labels', [[[3.0]], [[-1.0]], [[0.5]], [[0.0, 1.0]]])
    def test_one_hot_rejects_bad_labels(self, labels):
        """Test out-of-range, fractional and multi-column labels."""
        with pytest.raises(InvalidDataset):
            OneHot(2).encode(np.array(labels))

    def test_threshold(self):
        """Test binary decoding at the cutoff."""
        decoded = Threshold(0.5).decode(np.array([[0.49], [0.5], [0.9]]))
        assert np.array_equal(decoded, [[0.0], [1.0], [1.0]])

    def test_identity_output_units(self):
        """Test that identity needs one unit per output value."""
        assert Identity().output_units(np.zeros((4, 3))) == 3

    def test_get_encoder(self):
        """Test lookup and inference of the one-hot label range."""
        assert get_encoder('one_hot', {'max': 4}).max_label == 4
        assert get_encoder('One Hot', None, np.array([[0.0], [6.0]])).max_label == 6
        assert isinstance(get_encoder(None), Identity)
        assert get_encoder('threshold', {'cutoff': 0.7}).cutoff == 0.7
        with pytest.raises(InvalidSpec):
            get_encoder('one_hot')
        with pytest.raises(InvalidSpec):
            get_encoder('one_hot', {'max': 'ten'})
        with pytest.raises(InvalidSpec):
            get_encoder('binary')


@pytest.mark.unit
class TestAccuracy:
    """Test the accuracy metric."""

    def test_exact_matches(self):
        """Test the fraction of fully matching examples."""
        decoded = np.array([[1.0, 0.0], [1.0, 1.0], [0.0, 0.0], [1.0, 0.0]])
        expected = np.array([[1.0, 0.0], [1.0, 0.0], [0.0, 0.0], [0.0, 0.0]])

        assert Accuracy().value(decoded, expected) == 0.5

    def test_tolerance(self):
        """Test matching within a tolerance."""
        metric = Accuracy(tolerance=0.1)
        assert metric.value(np.array([[0.95], [0.5]]), np.array([[1.0], [1.0]])) == 0.5

    def test_check_against_minimum(self):
        """Test the satisfaction check."""
        metric = Accuracy(min_score=0.9)
        assert metric.check(0.9)
        assert not metric.check(0.89)

    def test_invalid_arguments(self):
        """Test argument validation."""
        with pytest.raises(InvalidSpec):
            Accuracy(min_score=1.5)
        with pytest.raises(InvalidSpec):
            get_metric('accuracy', {'min': 'high'})
        with pytest.raises(InvalidSpec):
            get_metric('f1')

    def test_shape_mismatch(self):
        """Test that decoded and expected shapes must agree."""
        with pytest.raises(ShapeMismatch):
            Accuracy().value(np.zeros((3, 1)), np.zeros((3, 2)))

    def test_get_metric_defaults(self):
        """Test that the default minimum is a perfect score."""
        metric = get_metric('accuracy')
        assert metric.min_score == 1.0
        assert metric.tolerance == 0.0
