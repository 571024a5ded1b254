"""Shared test fixtures for synthcert tests."""

import pytest
import pandas as pd
import numpy as np


@pytest.fixture
def sample_data():
    """Create sample dataset for testing."""
    np.random.seed(42)
    n = 1000
    data = pd.DataFrame({
        'age': np.random.randint(18, 80, n),
        'income': np.random.normal(50000, 20000, n).clip(0),
        'state': np.random.choice(['CA', 'NY', 'TX', 'FL', 'IL'], n),
        'education': np.random.choice(['HS', 'BS', 'MS', 'PhD'], n),
        'married': np.random.choice([True, False], n),
        'target': np.random.choice(['A', 'B', 'C'], n)
    })
    return data


@pytest.fixture
def source_table():
    """1,000 people: age, state and an income that rises with age."""
    np.random.seed(42)
    n = 1000
    age = np.random.randint(18, 80, n)
    income = 20000 + 800 * age + np.random.normal(0, 8000, n)
    data = pd.DataFrame({
        'age': age,
        'state': np.random.choice(['CA', 'NY', 'TX', 'FL', 'IL'], n),
        'income': income.clip(0),
    })
    return data


@pytest.fixture
def small_data():
    """Create small dataset for quick tests."""
    np.random.seed(42)
    n = 100
    data = pd.DataFrame({
        'x': np.random.randint(0, 10, n),
        'y': np.random.choice(['A', 'B'], n),
        'z': np.random.normal(0, 1, n)
    })
    return data


@pytest.fixture
def numeric_data():
    """Three numeric columns, x2 strongly correlated with x1."""
    np.random.seed(42)
    n = 500
    x1 = np.random.normal(0, 1, n)
    data = pd.DataFrame({
        'x1': x1,
        'x2': 5 + 2 * (0.8 * x1 + 0.6 * np.random.normal(0, 1, n)),
        'x3': np.random.randint(0, 100, n)
    })
    return data


@pytest.fixture
def categorical_data():
    """Create categorical-only dataset."""
    np.random.seed(42)
    n = 200
    data = pd.DataFrame({
        'cat1': np.random.choice(['A', 'B', 'C'], n),
        'cat2': np.random.choice(['X', 'Y'], n),
        'cat3': np.random.choice(['1', '2', '3', '4'], n)
    })
    return data


@pytest.fixture
def skewed_qi_data():
    """Ages and zip codes with a long tail of rare values."""
    np.random.seed(7)
    n = 300
    zips = np.random.choice(['10001', '10002', '10003'], n, p=[0.5, 0.3, 0.2]).astype(object)
    zips[:6] = ['99901', '99902', '99903', '99904', '99905', '99906']
    data = pd.DataFrame({
        'age': np.random.randint(20, 70, n),
        'zip': zips,
        'score': np.random.normal(0, 1, n),
    })
    return data
