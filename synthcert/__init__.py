"""synthcert - privacy-certified synthetic tabular data.

Samples synthetic rows from a Gaussian copula, enforces k-anonymity on the
release, accounts for differential-privacy budget per dataset, audits the
release with a membership-inference attack and wraps the outcome in a
privacy certificate.
"""

import logging

from .anonymity import AnonymityEnforcer, EnforcementReport, PassRecord
from .budget import BudgetLedger, BudgetState, ConsumeResult, LedgerStore
from .certificate import CertificateAssembler, PrivacyCertificate, derive_compliance
from .config import CertificationConfig, load_config
from .copula import GaussianCopulaModel, compare_correlations, latent_correlation
from .exceptions import (
    BudgetExhaustedError,
    DegenerateCorrelationError,
    InsufficientDataError,
    SchemaMismatchError,
    SynthCertError,
)
from .inference import InferenceAuditor, InferenceResult
from .metrics import compute_fidelity_metrics
from .risk import ReidentificationRisk, compute_qi_linkage_risk, compute_reidentification_risk
from .service import PrivacyService

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "1.0.0"
__all__ = [
    "GaussianCopulaModel",
    "latent_correlation",
    "compare_correlations",
    "AnonymityEnforcer",
    "EnforcementReport",
    "PassRecord",
    "BudgetLedger",
    "BudgetState",
    "ConsumeResult",
    "LedgerStore",
    "InferenceAuditor",
    "InferenceResult",
    "ReidentificationRisk",
    "compute_reidentification_risk",
    "compute_qi_linkage_risk",
    "compute_fidelity_metrics",
    "CertificationConfig",
    "load_config",
    "CertificateAssembler",
    "PrivacyCertificate",
    "derive_compliance",
    "PrivacyService",
    "SynthCertError",
    "InsufficientDataError",
    "DegenerateCorrelationError",
    "SchemaMismatchError",
    "BudgetExhaustedError",
]
