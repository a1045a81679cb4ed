"""
Unit tests for the Jahmm model.

Tests cover:
- Parameter setting and validation
- Inference (score, posteriors, Viterbi path)
- Baum-Welch training (monotonicity, stopping, failure handling)
- Transition re-estimation and the p_0 stationarity equation
- Seeding from an external estimator
- Serialization to and from dictionaries
"""
import warnings

import pytest
import numpy as np

from jahmm.core.emission import zinm_prob
from jahmm.core.errors import BaumWelchError, RootBracketError, SeedError
from jahmm.core.hmm import block_fwdb
from jahmm.core.model import (
    FitStatus,
    Jahmm,
    P0Equation,
    SeedEstimate,
    default_transitions,
    initial_categories,
    seed_model,
    update_trans,
)
from jahmm.core.observations import ChIP, MISSING


@pytest.fixture
def model(sticky_transmat, zinm_params):
    a, pi, p = zinm_params
    return Jahmm(n_states=2).set_params(sticky_transmat, a, pi, p)


class TestJahmmInitialization:
    """Test Jahmm construction and set_params."""

    def test_default_initialization(self):
        model = Jahmm()
        assert model.n_states == 2
        assert model.transmat_ is None
        assert model.p_ is None
        assert model.status_ is None

    def test_set_params(self, model, zinm_params):
        a, pi, p = zinm_params
        assert model.a_ == a
        assert model.pi_ == pi
        np.testing.assert_array_equal(model.p_, p)
        np.testing.assert_array_equal(model.startprob_, [0.5, 0.5])

    def test_inconsistent_ratio_warns(self, sticky_transmat):
        p = np.array([[0.5, 0.25, 0.25], [0.5, 0.4, 0.1]])
        with pytest.warns(UserWarning, match="inconsistent"):
            Jahmm(n_states=2).set_params(sticky_transmat, 1.0, 0.5, p)

    def test_rejects_wrong_shapes(self, sticky_transmat, zinm_params):
        a, pi, p = zinm_params
        with pytest.raises(ValueError):
            Jahmm(n_states=3).set_params(sticky_transmat, a, pi, p)
        with pytest.raises(ValueError):
            Jahmm(n_states=2).set_params(sticky_transmat, a, pi, p[:, :1])

    def test_requires_parameters(self, alternating_counts):
        with pytest.raises(ValueError):
            Jahmm().predict(alternating_counts)

    def test_rejects_channel_mismatch(self, model):
        with pytest.raises(ValueError):
            model.score(np.array([[1, 2, 3]]))


class TestInference:
    """Test score, predict_proba and predict."""

    def test_score_matches_forward_backward(self, model, alternating_counts, zinm_params):
        a, pi, p = zinm_params
        pem = zinm_prob(alternating_counts, a, pi, p)
        phi = np.empty_like(pem)
        expected, _ = block_fwdb(model.transmat_, model.startprob_, pem, phi, [5])

        assert model.score(alternating_counts) == pytest.approx(expected)

    def test_score_adds_over_fragments(self, model, alternating_counts):
        total = model.score(alternating_counts, lengths=[2, 3])
        parts = model.score(alternating_counts[:2]) + model.score(alternating_counts[2:])
        assert total == pytest.approx(parts)

    def test_accepts_chip_instance(self, model, alternating_counts):
        chip = ChIP(alternating_counts, [2, 3])
        assert model.score(chip) == pytest.approx(
            model.score(alternating_counts, lengths=[2, 3]))

    def test_predict_proba_rows_sum_to_one(self, model, alternating_counts):
        phi = model.predict_proba(alternating_counts)
        assert phi.shape == (5, 2)
        np.testing.assert_allclose(phi.sum(axis=1), 1.0)

    def test_predict(self, model, alternating_counts):
        path = model.predict(alternating_counts)

        assert path.shape == (5,)
        assert set(path.tolist()) <= {0, 1}
        # High-count rows are far more likely under the enriched state.
        assert path[1] == 1
        assert path[3] == 1
        assert model.path_ is path

    def test_predict_with_missing_row(self, model, alternating_counts):
        y = alternating_counts.copy()
        y[2] = MISSING
        path = model.predict(y)
        assert np.all(path >= 0)


class TestUpdateTrans:
    """Test transition re-estimation."""

    def test_rows_are_normalized(self):
        Q = np.array([[0.9, 0.1], [0.1, 0.9]])
        new_Q = update_trans(Q, np.array([[3.0, 1.0], [2.0, 6.0]]))
        np.testing.assert_allclose(new_Q, [[0.75, 0.25], [0.25, 0.75]])

    def test_empty_row_keeps_previous_transitions(self):
        Q = np.array([[0.9, 0.1], [0.3, 0.7]])
        new_Q = update_trans(Q, np.array([[2.0, 2.0], [0.0, 0.0]]))

        np.testing.assert_allclose(new_Q, [[0.5, 0.5], [0.3, 0.7]])
        assert not np.any(np.isnan(new_Q))

    def test_does_not_modify_input(self):
        Q = np.array([[0.9, 0.1], [0.3, 0.7]])
        update_trans(Q, np.array([[1.0, 0.0], [0.0, 1.0]]))
        np.testing.assert_array_equal(Q, [[0.9, 0.1], [0.3, 0.7]])


class TestP0Equation:
    """Test the M-step equation for p_0."""

    def test_derivative_matches_finite_difference(self):
        eq = P0Equation(a=1.5, pi=0.5, A=3.0, B=2.0, C=1.5, D=4.0, E=6.0)
        h = 1e-6
        for p0 in (0.1, 0.3, 0.6):
            numeric = (eq.f(p0 + h) - eq.f(p0 - h)) / (2 * h)
            assert eq.df(p0) == pytest.approx(numeric, rel=1e-5)

    def test_no_mass_is_undefined(self):
        eq = P0Equation(a=1.0, pi=1.0, A=0.0, B=0.0, C=1.5, D=0.0, E=0.0)
        assert np.isnan(eq.f(0.5))

    def test_solution_sums_to_one(self):
        """At the root, p_0 * C + sum of the ChIP categories is 1."""
        from jahmm.core.rootfind import solve_unit_interval

        eq = P0Equation(a=2.0, pi=0.8, A=3.0, B=2.0, C=1.5, D=4.0, E=6.0)
        p0 = solve_unit_interval(eq.f, eq.df)
        total = p0 * eq.C + eq.E / eq.normconst(p0)
        assert total == pytest.approx(1.0, abs=1e-6)


class TestFit:
    """Test Baum-Welch training."""

    def test_loglik_never_decreases(self, model, alternating_counts):
        model.fit(alternating_counts)
        history = np.array(model.monitor_.history)

        assert model.status_ is FitStatus.CONVERGED
        assert len(history) == model.n_iter_ <= model.n_iter
        assert np.all(np.isfinite(history))
        assert np.all(np.diff(history) >= -1e-6)

    def test_fitted_parameters_are_valid(self, model, alternating_counts):
        model.fit(alternating_counts)

        np.testing.assert_allclose(model.transmat_.sum(axis=1), 1.0)
        np.testing.assert_allclose(model.p_.sum(axis=1), 1.0, atol=1e-5)
        # The ratio p_1 / p_0 is preserved by the M-step.
        np.testing.assert_allclose(model.p_[:, 1] / model.p_[:, 0], 0.5)
        assert model.pem_.shape == (5, 2)
        assert np.all(model.pem_ <= 0)
        np.testing.assert_allclose(model.phi_.sum(axis=1), 1.0)
        assert model.loglik_ == model.monitor_.history[-1]

    def test_rejects_empty_iteration_budget(self, model, alternating_counts, zinm_params):
        """Training needs at least one iteration; the model is left untouched."""
        model.n_iter = 0
        with pytest.raises(ValueError, match="n_iter"):
            model.fit(alternating_counts)

        assert model.status_ is None
        assert model.phi_ is None
        assert model.loglik_ is None
        np.testing.assert_array_equal(model.p_, zinm_params[2])

    def test_stops_at_iteration_cap(self, model, alternating_counts):
        model.n_iter = 1
        model.fit(alternating_counts)

        assert model.status_ is FitStatus.ITERATING
        assert model.n_iter_ == 1
        assert len(model.monitor_.history) == 1

    def test_missing_rows_do_not_break_training(self, model, alternating_counts):
        y = np.vstack([alternating_counts, [[MISSING, 3]], alternating_counts])
        model.fit(y, lengths=[6, 5])

        assert model.status_ is not FitStatus.FAILED
        assert not np.any(np.isnan(model.phi_))
        assert np.all(np.isnan(model.pem_[5]))

    def test_verbose_reports_status(self, model, alternating_counts, capsys):
        model.n_iter = 3
        model.fit(alternating_counts, verbose=True)
        captured = capsys.readouterr()
        assert "Baum-Welch" in captured.out

    def test_failure_restores_parameters(self, sticky_transmat, alternating_counts):
        """A state without posterior mass makes the M-step fail cleanly."""
        p = np.array([[0.5, 0.25, 0.25], [0.0, 0.3, 0.7]])
        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            model = Jahmm(n_states=2).set_params(sticky_transmat, 1.0, 1.0, p)

        with pytest.raises(BaumWelchError) as excinfo:
            model.fit(alternating_counts)

        assert isinstance(excinfo.value.__cause__, RootBracketError)
        assert model.status_ is FitStatus.FAILED
        np.testing.assert_array_equal(model.transmat_, sticky_transmat)
        np.testing.assert_array_equal(model.p_, p)
        assert model.pem_ is None
        assert model.phi_ is None
        assert model.loglik_ is None


class TestSeeding:
    """Test seed_model and its helpers."""

    def test_initial_categories(self):
        cats = initial_categories(3, 3, 0.4)

        np.testing.assert_allclose(cats.sum(axis=1), 1.0)
        ratios = cats[:, 1] / cats[:, 0]
        np.testing.assert_allclose(ratios, ratios[0])
        # Enrichment grows with the state index.
        assert np.all(np.diff(cats[:, 2]) > 0)

    def test_default_transitions(self):
        Q = default_transitions(3, stay=0.8)
        np.testing.assert_allclose(Q.sum(axis=1), 1.0)
        np.testing.assert_allclose(np.diag(Q), 0.8)
        np.testing.assert_array_equal(default_transitions(1), [[1.0]])

    def test_seed_model(self, alternating_counts):
        seen = []

        def seeder(control):
            seen.append(control.copy())
            return SeedEstimate(a=2.0, pi=0.7, p=0.4)

        y = np.vstack([alternating_counts, [[MISSING, 3]]])
        with warnings.catch_warnings():
            warnings.simplefilter('error')
            model = seed_model(2, y, seeder)

        assert model.a_ == 2.0
        assert model.pi_ == 0.7
        assert model.p_.shape == (2, 3)
        np.testing.assert_allclose(model.transmat_, default_transitions(2))
        # The control channel reaches the seeder without missing values.
        np.testing.assert_array_equal(seen[0], [0, 5, 0, 5, 0])

    def test_seed_model_custom_transitions(self, alternating_counts, sticky_transmat):
        model = seed_model(2, alternating_counts, lambda c: SeedEstimate(a=1.0),
                           transmat=sticky_transmat)
        np.testing.assert_array_equal(model.transmat_, sticky_transmat)

    def test_seed_failure(self, alternating_counts):
        with pytest.raises(SeedError):
            seed_model(2, alternating_counts, lambda c: SeedEstimate(a=1.0, ok=False))
        with pytest.raises(SeedError):
            seed_model(2, alternating_counts, lambda c: None)

    def test_seeded_model_trains(self, alternating_counts):
        model = seed_model(2, alternating_counts, lambda c: SeedEstimate(a=1.0, pi=0.5, p=0.5))
        model.fit(alternating_counts)
        assert model.status_ is not FitStatus.FAILED


class TestSerialization:
    """Test to_dict / from_dict."""

    def test_round_trip(self, model):
        model.loglik_ = -12.5
        restored = Jahmm.from_dict(model.to_dict())

        assert restored.n_states == model.n_states
        np.testing.assert_allclose(restored.transmat_, model.transmat_)
        np.testing.assert_allclose(restored.p_, model.p_)
        assert restored.a_ == model.a_
        assert restored.pi_ == model.pi_
        assert restored.loglik_ == -12.5

    def test_dict_is_plain_python(self, model):
        d = model.to_dict()
        assert isinstance(d['transmat_'], list)
        assert isinstance(d['p_'], list)
        assert d['model_type'] == 'jahmm_zinm'

    def test_unfitted_round_trip(self):
        restored = Jahmm.from_dict(Jahmm(n_states=3).to_dict())
        assert restored.n_states == 3
        assert restored.transmat_ is None
