"""Tests for the membership inference audit."""

import pytest
import pandas as pd
import numpy as np

from synthcert import GaussianCopulaModel, InferenceAuditor, InferenceResult
from synthcert.exceptions import InsufficientDataError, SchemaMismatchError
from synthcert.inference import exact_copy_rate, print_inference_report


def test_shuffled_original_is_indistinguishable(source_table):
    """A permutation of the source carries no membership signal."""
    shuffled = source_table.sample(frac=1.0, random_state=0).reset_index(drop=True)

    rates = [InferenceAuditor(seed=s).run_attack(source_table, shuffled).attack_success_rate for s in range(5)]

    # every row and its copy land on the same side of the split, so each pair scores one of two
    assert rates == pytest.approx([0.5] * 5)
    assert exact_copy_rate(source_table, shuffled) == 1.0


def test_copied_rows_do_not_lower_the_rate(source_table):
    """Half the release copied from the source must not push the rate below a coin flip."""
    fake = GaussianCopulaModel(seed=4).fit(source_table).sample(500)
    leaky = pd.concat([source_table.sample(500, random_state=1), fake], ignore_index=True)

    rates = [InferenceAuditor(seed=s).run_attack(source_table, leaky).attack_success_rate for s in range(3)]

    assert np.mean(rates) >= 0.45
    assert exact_copy_rate(source_table, leaky) == pytest.approx(0.5)


def test_identical_rows_report_baseline():
    table = pd.DataFrame({'x': [1.0] * 6, 'y': ['a'] * 6})

    result = InferenceAuditor().run_attack(table, table.copy())

    assert result.attack_success_rate == 0.5
    assert result.auc is None
    assert result.n_train == 0


def test_copula_sample_passes(source_table):
    synthetic = GaussianCopulaModel(seed=1).fit(source_table).sample(1000)

    result = InferenceAuditor(seed=0).run_attack(source_table, synthetic)

    assert 0.40 <= result.attack_success_rate <= 0.60
    assert result.baseline == 0.5
    assert result.threshold == 0.55
    assert result.columns == ('age', 'state', 'income')


def test_obviously_different_data_is_detected(source_table):
    np.random.seed(3)
    fake = pd.DataFrame({
        'age': np.random.randint(60, 100, 1000),
        'state': np.random.choice(['WA', 'OR'], 1000),
        'income': np.random.normal(200000, 5000, 1000),
    })

    result = InferenceAuditor(seed=0).run_attack(source_table, fake)

    assert result.attack_success_rate > 0.9
    assert not result.passed
    assert result.advantage > 0.4


def test_fixed_seed_is_reproducible(source_table):
    synthetic = GaussianCopulaModel(seed=2).fit(source_table).sample(800)
    auditor = InferenceAuditor()

    a = auditor.run_attack(source_table, synthetic, seed=11)
    b = auditor.run_attack(source_table, synthetic, seed=11)

    assert a.attack_success_rate == pytest.approx(b.attack_success_rate)
    assert a.auc == pytest.approx(b.auc)
    assert a.n_train == b.n_train and a.n_test == b.n_test
    assert a.seed == 11


def test_classes_are_balanced(source_table):
    synthetic = GaussianCopulaModel(seed=2).fit(source_table).sample(400)

    result = InferenceAuditor(test_size=0.25).run_attack(source_table, synthetic)

    assert result.n_train + result.n_test == 800
    # the split is by group of identical rows, so the test share is close to but not exactly 25%
    assert abs(result.n_test - 200) <= 10


def test_logistic_classifier(source_table):
    synthetic = GaussianCopulaModel(seed=2).fit(source_table).sample(1000)

    result = InferenceAuditor(classifier="logistic").run_attack(source_table, synthetic)

    assert result.classifier == "logistic"
    assert 0.0 <= result.attack_success_rate <= 1.0


def test_sensitive_columns_subset(source_table):
    synthetic = GaussianCopulaModel(seed=2).fit(source_table).sample(500)

    result = InferenceAuditor().run_attack(source_table, synthetic, sensitive_columns=['income'])

    assert result.columns == ('income',)


def test_mismatched_columns_raise(source_table):
    other = source_table.rename(columns={'income': 'salary'})

    with pytest.raises(SchemaMismatchError):
        InferenceAuditor().run_attack(source_table, other)
    with pytest.raises(SchemaMismatchError):
        InferenceAuditor().run_attack(source_table, source_table, sensitive_columns=['zip'])


def test_mismatched_kinds_raise(source_table):
    other = source_table.assign(age=source_table['age'].astype(str))

    with pytest.raises(SchemaMismatchError, match="numeric in one table"):
        InferenceAuditor().run_attack(source_table, other)


def test_too_few_rows_raise(source_table):
    with pytest.raises(InsufficientDataError):
        InferenceAuditor().run_attack(source_table, source_table.head(1))


def test_invalid_parameters():
    with pytest.raises(ValueError):
        InferenceAuditor(threshold=0.3)
    with pytest.raises(ValueError):
        InferenceAuditor(test_size=1.0)
    with pytest.raises(ValueError):
        InferenceAuditor(classifier="svm")


def test_exact_copy_rate():
    a = pd.DataFrame({'x': [1, 2, 3], 'y': ['a', 'b', 'c']})
    b = pd.DataFrame({'x': [1, 2, 9, 9], 'y': ['a', 'z', 'c', 'c']})

    assert exact_copy_rate(a, b) == 0.25
    assert exact_copy_rate(a, b, ['x']) == 0.5
    assert exact_copy_rate(a, b.iloc[0:0]) == 0.0


def test_exact_copy_rate_with_missing_values():
    a = pd.DataFrame({'x': [1.0, np.nan], 'y': ['a|b', None]})
    b = pd.DataFrame({'x': [np.nan, 1.0, 1.0], 'y': [None, 'a|b', 'a']})

    assert exact_copy_rate(a, b) == pytest.approx(2 / 3)


def test_result_roundtrip():
    result = InferenceResult(
        attack_success_rate=0.52, threshold=0.55, columns=('a', 'b'), auc=0.51,
        n_train=700, n_test=300, seed=3,
    )

    data = result.to_dict()

    assert data['passed'] is True
    assert data['advantage'] == pytest.approx(0.02)
    assert InferenceResult.from_dict(data) == result


def test_print_inference_report(capsys):
    result = InferenceResult(attack_success_rate=0.61, threshold=0.55, columns=('a',))

    print_inference_report(result)

    out = capsys.readouterr().out
    assert "Membership Inference Attack Report" in out
    assert "FAILED" in out
