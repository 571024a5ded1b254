"""Tests for re-identification and QI linkage risk."""

import pytest
import pandas as pd

from synthcert import ReidentificationRisk, compute_qi_linkage_risk, compute_reidentification_risk
from synthcert.risk import print_risk_report


@pytest.fixture
def released():
    return pd.DataFrame({
        'band': ['a'] * 6 + ['b'] * 3 + ['c'],
        'zip': ['1'] * 6 + ['2'] * 3 + ['3'],
    })


def test_uniqueness_and_sample_k(released):
    risk = compute_reidentification_risk(released, ['band', 'zip'])

    assert risk.n_rows == 10
    assert risk.n_classes == 3
    assert risk.uniqueness_rate == pytest.approx(0.1)
    assert risk.final_k == 1
    assert risk.sampling_fraction == 1.0
    assert risk.extrapolated_k == 1.0
    assert risk.max_risk == 1.0
    # (6 * 1/6 + 3 * 1/3 + 1) / 10
    assert risk.average_risk == pytest.approx(0.3)


def test_population_size_extrapolates_k(released):
    risk = compute_reidentification_risk(released, ['band'], population_size=1000)

    assert risk.sampling_fraction == pytest.approx(0.01)
    assert risk.extrapolated_k == pytest.approx(100.0)
    assert risk.max_risk == pytest.approx(0.01)
    assert risk.population_size == 1000


def test_population_smaller_than_release_warns(released):
    with pytest.warns(UserWarning, match="population_size"):
        risk = compute_reidentification_risk(released, ['band'], population_size=5)

    assert risk.population_size == 10


def test_empty_release():
    empty = pd.DataFrame({'band': []})

    risk = compute_reidentification_risk(empty, ['band'])

    assert risk.n_rows == 0
    assert risk.final_k == 0
    assert risk.uniqueness_rate == 0.0


def test_no_quasi_identifiers(released):
    risk = compute_reidentification_risk(released, [])

    assert risk.n_classes == 1
    assert risk.final_k == 10
    assert risk.uniqueness_rate == 0.0


def test_qi_linkage_risk(released):
    source = pd.DataFrame({
        'band': ['a'] * 20 + ['b'] * 2 + ['d'] * 4,
        'zip': ['1'] * 20 + ['2'] * 2 + ['4'] * 4,
    })

    linkage = compute_qi_linkage_risk(source, released, ['band', 'zip'], k=5)

    assert linkage['unique_real_qi_combinations'] == 3
    assert linkage['unique_synth_qi_combinations'] == 3
    assert linkage['n_exact_qi_matches'] == 2
    # b|2 is rare in the source, c|3 is absent from it
    assert linkage['k_anonymity_violations'] == 2
    assert linkage['n_linkage_risky_combinations'] == 1
    assert linkage['linkage_risk_rate'] == pytest.approx(1 / 3)


def test_qi_linkage_skips_missing_columns(released):
    linkage = compute_qi_linkage_risk(released, released, ['nope'])

    assert 'warning' in linkage


def test_risk_includes_linkage_when_source_given(released):
    risk = compute_reidentification_risk(released, ['band'], original=released, k=2)

    assert risk.linkage['qi_columns'] == ['band']
    assert risk.linkage['k_parameter'] == 2


def test_roundtrip(released):
    risk = compute_reidentification_risk(released, ['band', 'zip'], population_size=50)

    assert ReidentificationRisk.from_dict(risk.to_dict()) == risk


def test_print_risk_report(released, capsys):
    risk = compute_reidentification_risk(released, ['band'], population_size=100, original=released)

    print_risk_report(risk)

    out = capsys.readouterr().out
    assert "Re-identification Risk Report" in out
    assert "Extrapolated k" in out
    assert "QI Linkage" in out


def test_missing_qi_values_form_their_own_class():
    released = pd.DataFrame({'zip': ['1'] * 3 + [None] * 2, 'band': ['a|b'] * 5})
    source = pd.DataFrame({'zip': [None] * 4, 'band': ['a|b'] * 4})

    risk = compute_reidentification_risk(released, ['zip', 'band'], original=source, k=5)

    assert risk.n_classes == 2
    assert risk.final_k == 2
    assert risk.linkage['n_exact_qi_matches'] == 1
    assert risk.linkage['n_linkage_risky_combinations'] == 1
