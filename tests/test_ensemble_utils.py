"""Tests for the time budget, checkpoint manager and weighted-voting aggregator."""
import json

import numpy as np
import pytest
from sklearn.linear_model import LogisticRegression
from sklearn.tree import DecisionTreeClassifier

from tsboss.boss_functions import BOSSIndividual
from tsboss.ensemble_functions import BOSS
from tsboss.ensemble_utils import (
    METADATA_FILE,
    CheckpointManager,
    CrossValidatedWeightedVoting,
    TimeLimit,
    TrainingClock,
    checkpoint_folder_name,
    to_nanoseconds,
)
from tsboss.errors import CheckpointError


def _configurations(clf):
    return [[m.configuration for m in members] for members in clf.classifiers_]


class TestTimeLimit:
    def test_units(self):
        assert to_nanoseconds(TimeLimit.MINUTE) == 60 * 10**9
        assert to_nanoseconds(TimeLimit.MINUTE, 2) == 120 * 10**9
        assert to_nanoseconds(TimeLimit.HOUR, 3) == 3 * 3600 * 10**9
        assert to_nanoseconds(TimeLimit.DAY) == 86400 * 10**9

    def test_unit_by_name(self):
        assert to_nanoseconds("hour", 1) == 3600 * 10**9

    def test_raw_nanoseconds(self):
        assert to_nanoseconds(12345) == 12345

    def test_invalid(self):
        with pytest.raises(ValueError):
            to_nanoseconds(-1)
        with pytest.raises(ValueError):
            to_nanoseconds(10, 2)

    def test_set_time_limit(self):
        clf = BOSS().set_time_limit(TimeLimit.MINUTE, 5)
        assert clf.contract
        assert clf.contract_time_ns == 5 * 60 * 10**9


class TestTrainingClock:
    def test_carry_over_and_overhead(self):
        clock = TrainingClock()
        clock.carry_over(10**12)
        assert clock.elapsed_ns() >= 10**12
        clock.add_overhead(10**12)
        assert clock.elapsed_ns() < 10**11


@pytest.fixture
def member(univariate_train):
    return BOSSIndividual(12, 4, 14, False, clean_after_fit=True).fit(
        univariate_train.channel(0), univariate_train.y)


class TestCheckpointManager:
    def test_folder_name(self):
        assert checkpoint_folder_name("GunPoint", 3, "Random50") == "GunPoint3Random50BOSSser"

    def test_save_and_load(self, tmp_path, member, univariate_test):
        mgr = CheckpointManager(tmp_path / "ck")
        spent = mgr.save({"n_classifiers": [1]}, member=member, channel=0, position=0)
        assert spent >= 0
        assert mgr.exists()
        assert mgr.member_path(0, 0).is_file()
        assert not (tmp_path / "ck" / "RandomBOSStemp.json").exists()

        meta = mgr.load_metadata()
        assert meta["n_classifiers"] == [1]
        loaded = mgr.load_members(meta["n_classifiers"])
        assert len(loaded) == 1 and len(loaded[0]) == 1
        back = loaded[0][0]
        assert back.configuration == member.configuration
        X = univariate_test.channel(0)
        assert np.array_equal(back.predict(X), member.predict(X))

    def test_estimator_sidecar(self, tmp_path, univariate_train, univariate_test):
        boss = BOSSIndividual(8, 4, 12, True, base_estimator=LogisticRegression(max_iter=500),
                              clean_after_fit=True).fit(univariate_train.channel(0), univariate_train.y)
        mgr = CheckpointManager(tmp_path)
        mgr.save({}, member=boss, channel=0, position=0)
        assert mgr.estimator_path(0, 0).is_file()
        back = mgr.load_member(0, 0)
        X = univariate_test.channel(0)
        assert np.array_equal(back.predict(X), boss.predict(X))

    def test_wrong_kind(self, tmp_path):
        mgr = CheckpointManager(tmp_path)
        (tmp_path / METADATA_FILE).write_text(json.dumps({"kind": "other", "format_version": 1}))
        with pytest.raises(CheckpointError):
            mgr.load_metadata()

    def test_wrong_version(self, tmp_path):
        mgr = CheckpointManager(tmp_path)
        mgr.save({})
        record = json.loads((tmp_path / METADATA_FILE).read_text())
        record["format_version"] = 2
        (tmp_path / METADATA_FILE).write_text(json.dumps(record))
        with pytest.raises(CheckpointError):
            mgr.load_metadata()

    def test_write_failure_is_skipped(self, tmp_path, member):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        mgr = CheckpointManager(blocker)
        mgr.save({"n_classifiers": [1]}, member=member, channel=0, position=0)
        assert not mgr.exists()

    def test_missing_member_rewritten(self, tmp_path, member):
        mgr = CheckpointManager(tmp_path)
        mgr.save({"n_classifiers": [1]}, member=member, channel=0, position=0)
        mgr.member_path(0, 0).unlink()
        mgr.save({"n_classifiers": [2]}, member=member, channel=0, position=1, members=[[member, member]])
        assert mgr.member_path(0, 0).is_file() and mgr.member_path(0, 1).is_file()
        assert len(mgr.load_members(mgr.load_metadata()["n_classifiers"])[0]) == 2
        assert list(tmp_path.glob("*.tmp")) == []

    def test_prune_unreferenced(self, tmp_path, member):
        mgr = CheckpointManager(tmp_path)
        mgr.save({}, member=member, channel=0, position=0)
        mgr.save({}, member=member, channel=0, position=1)
        assert mgr.prune([1]) == 1
        assert mgr.member_path(0, 0).is_file()
        assert not mgr.member_path(0, 1).exists()

    def test_cleanup(self, tmp_path, member):
        mgr = CheckpointManager(tmp_path / "ck")
        mgr.save({}, member=member, channel=0, position=0)
        mgr.cleanup()
        assert not (tmp_path / "ck").exists()


class TestEnsembleCheckpointing:
    def test_random_strategy_files(self, tmp_path, univariate_train):
        clf = BOSS(random_ensemble_selection=True, ensemble_size=3, seed=4,
                   checkpoint_path=str(tmp_path), cleanup_checkpoint_files=False)
        clf.fit(univariate_train)
        folder = tmp_path / "Synthetic4Random3BOSSser"
        assert sorted(p.name for p in folder.glob("*.npz")) == [
            "BOSSIndividual0-0.npz", "BOSSIndividual0-1.npz", "BOSSIndividual0-2.npz"]
        meta = json.loads((folder / METADATA_FILE).read_text())
        assert meta["n_classifiers"] == [3]
        assert meta["kind"] == "boss_ensemble"

    def test_cleanup_on_success(self, tmp_path, univariate_train):
        BOSS(random_ensemble_selection=True, ensemble_size=2, checkpoint_path=str(tmp_path)).fit(univariate_train)
        assert list(tmp_path.iterdir()) == []

    def test_restore_finished_run(self, tmp_path, univariate_train, univariate_test):
        kwargs = dict(random_ensemble_selection=True, ensemble_size=3, seed=9,
                      checkpoint_path=str(tmp_path), cleanup_checkpoint_files=False)
        first = BOSS(**kwargs).fit(univariate_train)
        second = BOSS(**kwargs).fit(univariate_train)
        assert _configurations(second) == _configurations(first)
        assert np.array_equal(second.predict(univariate_test.X), first.predict(univariate_test.X))

    def test_contract_resume_is_deterministic(self, tmp_path, univariate_train, univariate_test, monkeypatch):
        def make(checkpoint_path=None):
            clf = BOSS(seed=7, max_ensemble_size=6, checkpoint_path=checkpoint_path,
                       cleanup_checkpoint_files=False)
            return clf.set_time_limit(TimeLimit.HOUR)

        reference = make().fit(univariate_train)
        assert reference.n_classifiers_ == [6]

        original_fit = BOSSIndividual.fit
        calls = {"n": 0}

        def interrupted_fit(self, X, y):
            calls["n"] += 1
            if calls["n"] > 3:
                raise RuntimeError("interrupted")
            return original_fit(self, X, y)

        monkeypatch.setattr(BOSSIndividual, "fit", interrupted_fit)
        with pytest.raises(RuntimeError, match="interrupted"):
            make(str(tmp_path)).fit(univariate_train)
        monkeypatch.setattr(BOSSIndividual, "fit", original_fit)

        folder = tmp_path / f"Synthetic7RandomContract{3600 * 10**9}BOSSser"
        meta = json.loads((folder / METADATA_FILE).read_text())
        assert meta["n_classifiers"] == [3]

        resumed = make(str(tmp_path)).fit(univariate_train)
        assert _configurations(resumed) == _configurations(reference)
        assert np.array_equal(resumed.predict(univariate_test.X), reference.predict(univariate_test.X))

    def test_restore_after_failed_member_write(self, tmp_path, univariate_train, univariate_test, monkeypatch):
        kwargs = dict(random_ensemble_selection=True, ensemble_size=4, seed=2,
                      checkpoint_path=str(tmp_path), cleanup_checkpoint_files=False)
        original_savez = np.savez
        calls = {"n": 0}

        def flaky_savez(*args, **kwds):
            calls["n"] += 1
            if calls["n"] == 2:
                raise OSError("disk full")
            return original_savez(*args, **kwds)

        monkeypatch.setattr(np, "savez", flaky_savez)
        first = BOSS(**kwargs).fit(univariate_train)
        monkeypatch.setattr(np, "savez", original_savez)

        folder = tmp_path / "Synthetic2Random4BOSSser"
        assert sorted(p.name for p in folder.glob("*.npz")) == [
            f"BOSSIndividual0-{i}.npz" for i in range(4)]
        assert list(folder.glob("*.tmp")) == []
        assert json.loads((folder / METADATA_FILE).read_text())["n_classifiers"] == [4]

        second = BOSS(**kwargs).fit(univariate_train)
        assert _configurations(second) == _configurations(first)
        assert np.array_equal(second.predict(univariate_test.X), first.predict(univariate_test.X))

    def test_channel_mismatch_on_restore(self, tmp_path, univariate_train, multivariate_train):
        kwargs = dict(random_ensemble_selection=True, ensemble_size=2, seed=1,
                      checkpoint_path=str(tmp_path), cleanup_checkpoint_files=False)
        BOSS(**kwargs).fit(univariate_train)
        mv = multivariate_train
        mv.name = univariate_train.name
        with pytest.raises(CheckpointError):
            BOSS(**kwargs).fit(mv)


class TestCrossValidatedWeightedVoting:
    @pytest.fixture
    def blobs(self, rng):
        X = np.vstack([rng.normal(0, 1, (30, 4)), rng.normal(3, 1, (30, 4))])
        y = np.repeat([0, 1], 30)
        return X, y

    def test_weights_are_powered_cv_accuracy(self, blobs):
        X, y = blobs
        agg = CrossValidatedWeightedVoting(n_folds=5, alpha=4, seed=0)
        agg.set_members([LogisticRegression(), DecisionTreeClassifier(random_state=0)])
        agg.fit(X, y)
        assert np.allclose(agg.weights_, agg.cv_accuracies_ ** 4)
        assert np.all(agg.cv_accuracies_ > 0.8)
        assert np.mean(agg.predict(X) == y) > 0.9

    def test_proba_rows_sum_to_one(self, blobs):
        X, y = blobs
        agg = CrossValidatedWeightedVoting(n_folds=3)
        agg.set_members([LogisticRegression()])
        proba = agg.fit(X, y).predict_proba(X[:5])
        assert np.allclose(proba.sum(axis=1), 1.0)

    def test_tiny_class_uses_uniform_weights(self, blobs):
        X, y = blobs
        y = y.copy()
        y[0] = 2
        agg = CrossValidatedWeightedVoting(n_folds=10)
        agg.set_members([LogisticRegression(), DecisionTreeClassifier(random_state=0)])
        agg.fit(X, y)
        assert np.allclose(agg.weights_, 1.0)

    def test_requires_members(self, blobs):
        with pytest.raises(ValueError):
            CrossValidatedWeightedVoting().fit(*blobs)
