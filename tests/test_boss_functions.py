"""Tests for the single-configuration BOSS classifier."""
import numpy as np
import pytest
from sklearn.base import clone
from sklearn.exceptions import NotFittedError
from sklearn.linear_model import LogisticRegression
from sklearn.utils.validation import check_is_fitted

from tsboss.boss_functions import BOSSIndividual
from tsboss.errors import CheckpointError, ConfigurationError


@pytest.fixture
def fitted(univariate_train):
    return BOSSIndividual(16, 4, 12, True).fit(univariate_train.channel(0), univariate_train.y)


class TestFit:
    def test_bags_per_instance(self, fitted, univariate_train):
        assert len(fitted.bags_) == univariate_train.n_instances
        assert fitted.breakpoints_.shape == (16, 4)
        assert all(len(b) > 0 for b in fitted.bags_)
        assert [b.label for b in fitted.bags_] == univariate_train.y.tolist()

    def test_window_longer_than_series(self, univariate_train):
        with pytest.raises(ConfigurationError):
            BOSSIndividual(16, 4, 51, True).fit(univariate_train.channel(0), univariate_train.y)

    def test_odd_word_length(self, univariate_train):
        with pytest.raises(ConfigurationError):
            BOSSIndividual(9, 4, 10, True).fit(univariate_train.channel(0), univariate_train.y)

    def test_rejects_3d_input(self, univariate_train):
        with pytest.raises(ValueError):
            BOSSIndividual().fit(univariate_train.X, univariate_train.y)

    def test_sklearn_clone(self, fitted):
        c = clone(fitted)
        assert c.get_params() == fitted.get_params()
        assert not hasattr(c, "bags_")

    def test_unfitted_has_only_params(self, fitted, univariate_test):
        boss = BOSSIndividual()
        assert set(vars(boss)) == set(boss.get_params())
        with pytest.raises(NotFittedError):
            check_is_fitted(boss)
        check_is_fitted(fitted)
        with pytest.raises(RuntimeError):
            boss.predict(univariate_test.channel(0))


class TestClassify:
    def test_training_series_classified_as_itself(self, fitted, univariate_train):
        X = univariate_train.channel(0)
        pred = fitted.predict(X)
        # the stored bag of a training series is at distance 0 from itself
        assert np.array_equal(pred, univariate_train.y)

    def test_predict_proba_one_hot(self, fitted, univariate_test):
        proba = fitted.predict_proba(univariate_test.channel(0))
        assert proba.shape == (univariate_test.n_instances, 2)
        assert np.allclose(proba.sum(axis=1), 1.0)
        assert set(np.unique(proba).tolist()) <= {0.0, 1.0}

    def test_holding_out_never_picks_self(self, univariate_train):
        X = univariate_train.channel(0)
        # two distinct labels for identical series: the self-match would always win
        X_dup = np.vstack([X[:1], X[:1]])
        boss = BOSSIndividual(8, 4, 10, True).fit(X_dup, np.array([0, 1]))
        assert boss.classify_holding_out(0) == 1
        assert boss.classify_holding_out(1) == 0

    def test_holding_out_accuracy_reasonable(self, fitted, univariate_train):
        y = univariate_train.y
        correct = sum(fitted.classify_holding_out(i) == y[i] for i in range(y.size))
        assert correct / y.size >= 0.6

    def test_single_instance_has_no_neighbour(self, univariate_train):
        boss = BOSSIndividual(8, 4, 10, True).fit(univariate_train.channel(0)[:1], np.array([0]))
        assert boss.classify_holding_out(0) == -1


class TestRebuild:
    def test_same_length_returns_self(self, fitted):
        assert fitted.rebuild_at_word_length(16) is fitted

    def test_shorter_matches_fresh_words(self, fitted, univariate_train):
        short = fitted.rebuild_at_word_length(10)
        assert short.word_length == 10
        assert short.breakpoints_ is fitted.breakpoints_
        assert len(short.bags_) == len(fitted.bags_)
        # same breakpoints, truncated: the first 10 letters of each 16-letter word
        for bag, long_bag in zip(short.bags_, fitted.bags_):
            assert len(bag) <= len(long_bag)
            assert bag.label == long_bag.label
        bag = short.transform_bag(univariate_train.channel(0)[3])
        assert bag.as_dict() == short.bags_[3].as_dict()

    def test_chained_rebuilds(self, fitted):
        b = fitted
        for wl in (14, 12, 10, 8):
            b = b.rebuild_at_word_length(wl)
        direct = fitted.rebuild_at_word_length(8)
        assert [x.as_dict() for x in b.bags_] == [x.as_dict() for x in direct.bags_]

    def test_cannot_increase(self, fitted):
        short = fitted.rebuild_at_word_length(8)
        assert short.rebuild_at_word_length(12).word_length == 12
        with pytest.raises(ConfigurationError):
            fitted.rebuild_at_word_length(18)

    def test_below_two(self, fitted):
        with pytest.raises(ConfigurationError):
            fitted.rebuild_at_word_length(0)

    def test_after_release(self, fitted):
        fitted.release()
        assert fitted.sfa_words_ is None
        assert fitted.bags_ is not None
        with pytest.raises(ConfigurationError):
            fitted.rebuild_at_word_length(8)


class TestBaseEstimator:
    def test_histogram_head(self, univariate_train, univariate_test):
        est = LogisticRegression(max_iter=500)
        boss = BOSSIndividual(8, 4, 12, True, base_estimator=est).fit(univariate_train.channel(0), univariate_train.y)
        assert boss.estimator_ is not est
        assert boss.vocabulary_.size == len(boss._vocab_index)
        pred = boss.predict(univariate_test.channel(0))
        assert pred.shape == (univariate_test.n_instances,)
        proba = boss.predict_proba(univariate_test.channel(0))
        assert np.allclose(proba.sum(axis=1), 1.0)

    def test_release_drops_bags(self, univariate_train):
        boss = BOSSIndividual(8, 4, 12, True, base_estimator=LogisticRegression(max_iter=500),
                              clean_after_fit=True).fit(univariate_train.channel(0), univariate_train.y)
        assert boss.bags_ is None and boss.sfa_words_ is None
        with pytest.raises(RuntimeError):
            boss.classify_holding_out(0)
        assert boss.predict(univariate_train.channel(0)).shape == (univariate_train.n_instances,)


class TestRecord:
    def test_round_trip_predictions(self, fitted, univariate_test):
        fitted.accuracy = 0.85
        rec = fitted.to_record()
        back = BOSSIndividual.from_record(rec)
        assert back.configuration == fitted.configuration
        assert back.accuracy == 0.85
        X = univariate_test.channel(0)
        assert np.array_equal(back.predict(X), fitted.predict(X))
        assert back.rebuild_at_word_length(8).word_length == 8

    def test_released_record_has_no_word_cache(self, fitted):
        fitted.release()
        rec = fitted.to_record()
        assert "sfa_words" not in rec
        assert BOSSIndividual.from_record(rec).sfa_words_ is None

    def test_wrong_kind(self, fitted):
        rec = fitted.to_record()
        rec["kind"] = np.array("something_else")
        with pytest.raises(CheckpointError):
            BOSSIndividual.from_record(rec)

    def test_wrong_version(self, fitted):
        rec = fitted.to_record()
        rec["format_version"] = np.array(99)
        with pytest.raises(CheckpointError):
            BOSSIndividual.from_record(rec)

    def test_describe(self, fitted):
        assert fitted.describe() == "windowSize,12,wordLength,16,alphabetSize,4,norm,true"
