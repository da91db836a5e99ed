"""Tests for ssRBM energy, conditional means, samplers, and phase statistics."""

import math

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from jax import Array

from spikeslab.models import MAX_VISIBLE_TRIALS, SpikeSlabRBM, spike_slab_rbm

jax.config.update("jax_platform_name", "cpu")

# Tolerances
RTOL = 1e-4
ATOL = 1e-5


@pytest.fixture(params=[(5, 3, 2), (8, 4, 3)])
def model(request: pytest.FixtureRequest) -> SpikeSlabRBM:
    """Create ssRBMs with non-uniform slab precision."""
    n_vis, n_hid, pool = request.param
    precision = 1.0 + 0.5 * jnp.arange(pool * n_hid).reshape(pool, n_hid)
    return spike_slab_rbm(n_vis, n_hid, pool, precision, 50.0)


@pytest.fixture
def key() -> Array:
    """Random key for tests."""
    return jax.random.PRNGKey(7)


def random_params(model: SpikeSlabRBM, key: Array) -> Array:
    """Parameters with visible-scale weights, varied biases and precisions."""
    keys = jax.random.split(key, 3)
    params = model.initialize(keys[0], shape=1.0)
    weights, _, _ = model.reset(params)
    spike_bias = jax.random.normal(keys[1], (model.n_hidden,))
    precision = jax.random.uniform(keys[2], (model.n_visible,), minval=0.5, maxval=2.0)
    return model.join_params(weights, spike_bias, precision)


def with_spike_bias(model: SpikeSlabRBM, params: Array, value: float) -> Array:
    weights, spike_bias, precision = model.reset(params)
    return model.join_params(weights, jnp.full_like(spike_bias, value), precision)


class TestFreeEnergy:
    """Test the slab-marginalized free energy."""

    def test_closed_form_at_origin(self) -> None:
        """Test F(0) = -0.5 log(2 pi) - softplus(b) for a single unit."""
        model = spike_slab_rbm(3, 1, 1, [[1.0]], 10.0)
        params = with_spike_bias(
            model, model.initialize(jax.random.PRNGKey(1)), 0.3
        )
        fe = model.free_energy(params, jnp.zeros(3))
        expected = -0.5 * math.log(2 * math.pi) - math.log1p(math.exp(0.3))
        assert jnp.allclose(fe, expected, rtol=RTOL, atol=ATOL)

    def test_matches_explicit_sum(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test against an element-by-element evaluation of the formula."""
        params = random_params(model, key)
        x = jax.random.normal(jax.random.PRNGKey(3), (model.n_visible,))

        weights, spike_bias, precision = (np.asarray(a) for a in model.reset(params))
        alpha = np.asarray(model.slab_precision)
        xv = np.asarray(x)

        expected = 0.5 * float(np.sum(precision * xv**2))
        for i in range(model.n_hidden):
            gate = spike_bias[i]
            for k in range(model.pool_size):
                expected -= 0.5 * math.log(2 * math.pi / alpha[k, i])
                gate += float(xv @ weights[i][:, k]) ** 2 / (2 * alpha[k, i])
            expected -= math.log1p(math.exp(gate))

        assert jnp.allclose(model.free_energy(params, x), expected, rtol=RTOL, atol=1e-4)

    def test_deterministic_and_finite(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test repeated and jitted evaluations agree and are finite."""
        params = random_params(model, key)
        x = jax.random.normal(key, (model.n_visible,))
        fe = model.free_energy(params, x)
        assert fe.shape == ()
        assert jnp.isfinite(fe)
        assert model.free_energy(params, x) == fe
        assert jnp.allclose(jax.jit(model.free_energy)(params, x), fe, rtol=RTOL)

    def test_bias_gradient_is_negative_spike_mean(
        self, model: SpikeSlabRBM, key: Array
    ) -> None:
        """Test dF/db = -p(h=1|v), tying the energy to the inference engine."""
        params = random_params(model, key)
        x = jax.random.normal(key, (model.n_visible,))
        grad = jax.grad(model.free_energy)(params, x)
        _, bias_grad, precision_grad = model.reset(grad)
        assert jnp.allclose(bias_grad, -model.spike_mean(params, x), rtol=RTOL, atol=ATOL)
        assert jnp.allclose(precision_grad, 0.5 * x**2, rtol=RTOL, atol=ATOL)

    def test_mean_free_energy(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test batch mean agrees with the per-point values."""
        params = random_params(model, key)
        xs = jax.random.normal(key, (6, model.n_visible))
        per_point = jnp.array([model.free_energy(params, x) for x in xs])
        assert jnp.allclose(model.mean_free_energy(params, xs), per_point.mean(), rtol=RTOL)

    def test_rejects_wrong_shape(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test the visible vector must have length n_visible."""
        params = random_params(model, key)
        with pytest.raises(ValueError, match="visible"):
            model.free_energy(params, jnp.zeros(model.n_visible + 1))
        with pytest.raises(ValueError, match="visible"):
            model.free_energy(params, jnp.zeros((model.n_visible, 1)))


class TestConditionalMeans:
    """Test closed-form conditional means."""

    def test_spike_mean_in_unit_interval(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test spike probabilities lie strictly inside (0, 1)."""
        params = random_params(model, key)
        for x_key in jax.random.split(key, 5):
            x = jax.random.normal(x_key, (model.n_visible,))
            probs = model.spike_mean(params, x)
            assert probs.shape == (model.n_hidden,)
            assert jnp.all((probs > 0) & (probs < 1))

    def test_slab_mean_formula(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test column i equals spike[i] * diag(alpha_i)^-1 W_i^T v."""
        params = random_params(model, key)
        x = jax.random.normal(key, (model.n_visible,))
        spike = jnp.arange(model.n_hidden, dtype=jnp.float32) % 2
        weights, _, _ = model.reset(params)
        alpha = model.slab_precision_matrix

        slab = model.slab_mean(params, x, spike)
        assert slab.shape == (model.pool_size, model.n_hidden)
        for i in range(model.n_hidden):
            expected = spike[i] * (weights[i].T @ x) / alpha[:, i]
            assert jnp.allclose(slab[:, i], expected, rtol=RTOL, atol=ATOL)
            if spike[i] == 0:
                assert jnp.all(slab[:, i] == 0)

    def test_visible_mean_formula(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test E[v|h] = diag(lambda)^-1 sum_i W_i s_i h_i."""
        params = random_params(model, key)
        hid_key, slab_key = jax.random.split(key)
        spike = jax.random.bernoulli(hid_key, 0.5, (model.n_hidden,)).astype(float)
        slab = jax.random.normal(slab_key, (model.pool_size, model.n_hidden))
        weights, _, precision = model.reset(params)

        expected = sum(weights[i] @ slab[:, i] * spike[i] for i in range(model.n_hidden))
        mean = model.visible_mean(params, model.join_hidden(spike, slab))
        assert jnp.allclose(mean, expected / precision, rtol=RTOL, atol=ATOL)

    def test_visible_mean_rejects_wrong_length(
        self, model: SpikeSlabRBM, key: Array
    ) -> None:
        """Test the hidden vector must hold H + P*H entries."""
        params = random_params(model, key)
        with pytest.raises(ValueError, match="hidden"):
            model.visible_mean(params, jnp.zeros(model.n_hidden))

    def test_hidden_mean_uses_sampled_spike(
        self, model: SpikeSlabRBM, key: Array
    ) -> None:
        """Test hidden_mean pairs spike means with slab means from a spike draw."""
        params = random_params(model, key)
        x = jax.random.normal(key, (model.n_visible,))
        probs = model.spike_mean(params, x)
        spike = model.sample_spike(key, probs)

        spike_part, slab_part = model.split_hidden(model.hidden_mean(key, params, x))
        assert jnp.allclose(spike_part, probs)
        assert jnp.allclose(slab_part, model.slab_mean(params, x, spike))

    def test_expected_hidden(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test expected slabs are spike probabilities times conditional slab means."""
        params = random_params(model, key)
        x = jax.random.normal(key, (model.n_visible,))
        probs = model.spike_mean(params, x)
        full = model.slab_mean(params, x, jnp.ones(model.n_hidden))

        spike_part, slab_part = model.split_hidden(model.expected_hidden(params, x))
        assert jnp.allclose(spike_part, probs)
        assert jnp.allclose(slab_part, probs[None, :] * full, rtol=RTOL, atol=ATOL)

    def test_reconstruction_error(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test reconstruction error is a finite non-negative scalar."""
        params = random_params(model, key)
        xs = jax.random.normal(key, (10, model.n_visible))
        error = model.reconstruction_error(params, xs)
        assert error.shape == ()
        assert jnp.isfinite(error)
        assert error >= 0


class TestSampling:
    """Test stochastic draws."""

    def test_sample_spike_binary(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test spike draws are 0/1 and respect extreme probabilities."""
        probs = jnp.linspace(0.0, 1.0, model.n_hidden)
        spike = model.sample_spike(key, probs)
        assert jnp.all((spike == 0) | (spike == 1))
        assert spike[0] == 0
        assert spike[-1] == 1

    def test_sample_slab_moments(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test slab draws have mean slab_mean and variance 1/slab_precision."""
        mean = jnp.full((model.pool_size, model.n_hidden), 2.0)
        keys = jax.random.split(key, 20000)
        draws = jax.vmap(model.sample_slab, in_axes=(0, None))(keys, mean)
        assert draws.shape == (20000, model.pool_size, model.n_hidden)
        assert jnp.allclose(draws.mean(axis=0), mean, atol=0.05)
        assert jnp.allclose(
            draws.var(axis=0), 1.0 / model.slab_precision_matrix, rtol=0.1
        )

    def test_sample_slab_rejects_wrong_shape(
        self, model: SpikeSlabRBM, key: Array
    ) -> None:
        """Test slab means must be pool_size x n_hidden."""
        with pytest.raises(ValueError, match="slab_mean"):
            model.sample_slab(key, jnp.zeros((model.n_hidden, model.pool_size + 1)))

    def test_sample_hidden(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test hidden draws have binary spikes and the flat hidden length."""
        params = random_params(model, key)
        x = jax.random.normal(key, (model.n_visible,))
        hidden = model.sample_hidden(key, params, x)
        assert hidden.shape == (model.hidden_dim,)
        spike, _ = model.split_hidden(hidden)
        assert jnp.all((spike == 0) | (spike == 1))

    def test_sample_visible_accepts_first_draw(
        self, model: SpikeSlabRBM, key: Array
    ) -> None:
        """Test sampling stops after one draw when the radius is generous."""
        params = random_params(model, key)
        hidden = model.sample_hidden(key, params, jnp.ones(model.n_visible))
        result = model.sample_visible(key, params, hidden)
        assert result.sample.shape == (model.n_visible,)
        assert bool(result.accepted)
        assert int(result.n_draws) == 1
        assert jnp.linalg.norm(result.sample) < model.radius

    def test_sample_visible_exhausts_trials(self, key: Array) -> None:
        """Test an unreachable radius makes exactly MAX_VISIBLE_TRIALS draws and flags rejection."""
        model = spike_slab_rbm(4, 2, 2, jnp.ones((2, 2)), 1e-6)
        params = model.initialize(key)
        hidden = model.sample_hidden(key, params, jnp.ones(4))
        result = model.sample_visible(key, params, hidden)
        assert not bool(result.accepted)
        assert int(result.n_draws) == MAX_VISIBLE_TRIALS
        assert jnp.all(jnp.isfinite(result.sample))

    def test_sample_visible_stops_at_first_acceptance(self, key: Array) -> None:
        """Test draws stop as soon as one lands inside the radius."""
        model = spike_slab_rbm(3, 1, 1, [[1.0]], 1.5)
        params = model.initialize(key)
        hidden = jnp.zeros(model.hidden_dim)
        sampler = jax.jit(model.sample_visible)
        for draw_key in jax.random.split(key, 50):
            result = sampler(draw_key, params, hidden)
            n_draws = int(result.n_draws)
            assert 1 <= n_draws <= MAX_VISIBLE_TRIALS
            if bool(result.accepted):
                assert jnp.linalg.norm(result.sample) < model.radius
            else:
                assert n_draws == MAX_VISIBLE_TRIALS

    def test_acceptance_rate(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test the acceptance rate is a fraction."""
        params = random_params(model, key)
        xs = jax.random.normal(key, (8, model.n_visible))
        rate = model.acceptance_rate(key, params, xs)
        assert 0.0 <= float(rate) <= 1.0


class TestPhases:
    """Test positive and negative phase statistics."""

    def test_layout_and_content(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test statistics use the parameter layout and the documented formulas."""
        params = random_params(model, key)
        x = jax.random.normal(key, (model.n_visible,))
        probs = model.spike_mean(params, x)
        spike = model.sample_spike(key, probs)
        slab = model.slab_mean(params, x, spike)

        for phase in (model.positive_phase, model.negative_phase):
            stats = phase(key, params, x)
            assert stats.shape == params.shape
            weight_stats, bias_stats, precision_stats = model.reset(stats)
            for i in range(model.n_hidden):
                expected = jnp.outer(x, slab[:, i]) * spike[i]
                assert jnp.allclose(weight_stats[i], expected, rtol=RTOL, atol=ATOL)
            assert jnp.allclose(bias_stats, probs)
            assert jnp.allclose(precision_stats, -0.5 * x**2)

    def test_silent_gates_contribute_no_weight_statistics(
        self, model: SpikeSlabRBM, key: Array
    ) -> None:
        """Test weight statistics vanish when no spike fires."""
        params = with_spike_bias(model, random_params(model, key), -60.0)
        x = 0.1 * jax.random.normal(key, (model.n_visible,))
        weight_stats, _, _ = model.reset(model.positive_phase(key, params, x))
        assert jnp.all(weight_stats == 0)

    def test_active_gates(self, model: SpikeSlabRBM, key: Array) -> None:
        """Test weight statistics equal outer(v, slab mean) when every spike fires."""
        params = with_spike_bias(model, random_params(model, key), 60.0)
        x = jax.random.normal(key, (model.n_visible,))
        weights, _, _ = model.reset(params)
        alpha = model.slab_precision_matrix
        weight_stats, _, _ = model.reset(model.negative_phase(key, params, x))
        for i in range(model.n_hidden):
            expected = jnp.outer(x, (weights[i].T @ x) / alpha[:, i])
            assert jnp.allclose(weight_stats[i], expected, rtol=RTOL, atol=ATOL)
