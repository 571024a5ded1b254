#!/usr/bin/env python3
"""Basic example showing how to certify a synthetic release."""

import logging

import pandas as pd
import numpy as np

from synthcert import CertificationConfig, PrivacyService
from synthcert.anonymity import print_enforcement_report
from synthcert.budget import print_budget_status
from synthcert.certificate import print_certificate_report
from synthcert.inference import print_inference_report

def create_sample_data(n=1000):
    """Generate some fake data to work with."""
    np.random.seed(42)
    age = np.random.randint(18, 80, n)
    data = pd.DataFrame({
        'age': age,
        'state': np.random.choice(['CA', 'NY', 'TX', 'FL', 'IL'], n),
        'income': (20000 + 800 * age + np.random.normal(0, 8000, n)).clip(0),
    })
    return data

def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    print("=" * 80)
    print("synthcert Example")
    print("=" * 80)
    print()

    print("Creating sample data...")
    data = create_sample_data(n=1000)
    print(f"Original data shape: {data.shape}")
    print(f"Columns: {list(data.columns)}")
    print()

    service = PrivacyService(seed=42)

    print("=" * 80)
    print("Step 1: Fit the correlation model and sample")
    print("=" * 80)
    handle = service.fit_correlation_model(data)
    synthetic = service.sample_from_model(handle, n=len(data))
    print(f"Synthetic data shape: {synthetic.shape}")
    print(synthetic.head())
    print()

    print("=" * 80)
    print("Step 2: Enforce 5-anonymity on age and state")
    print("=" * 80)
    released, report = service.enforce_anonymity(synthetic, ['age', 'state'], 5)
    print_enforcement_report(report)
    print()

    print("=" * 80)
    print("Step 3: Spend privacy budget")
    print("=" * 80)
    service.create_ledger("D1", total_budget=10.0)
    ok, message, state = service.consume_budget("D1", 1.0, "sample", "example")
    print(message)
    print_budget_status(state)
    print()

    print("=" * 80)
    print("Step 4: Membership inference attack")
    print("=" * 80)
    result = service.run_membership_attack(data, synthetic)
    print_inference_report(result)
    print()

    print("=" * 80)
    print("Step 5: Fidelity")
    print("=" * 80)
    service.evaluate_fidelity(data, synthetic, verbose=True)
    print()

    print("=" * 80)
    print("Step 6: Certificate")
    print("=" * 80)
    config = CertificationConfig(
        epsilon=1.0,
        target_k=5,
        population_size=100000,
        quasi_identifiers=('age', 'state'),
        dataset_id="D1",
        actor="example",
    )
    _, certificate = service.certify(data, synthetic, config)
    print_certificate_report(certificate)

if __name__ == "__main__":
    main()
