"""High-level service over models, ledgers and certificates."""

import logging
import threading
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pandas as pd

from .anonymity import AnonymityEnforcer, EnforcementReport
from .budget import BudgetState, LedgerStore
from .certificate import CertificateAssembler, PrivacyCertificate
from .config import CertificationConfig
from .copula import GaussianCopulaModel
from .exceptions import BudgetExhaustedError
from .inference import InferenceAuditor, InferenceResult
from .metrics import compute_fidelity_metrics, print_fidelity_report

logger = logging.getLogger(__name__)


class PrivacyService:
    """One entry point for the whole workflow.

    Fitted models are kept behind opaque handles, ledgers live in a shared
    LedgerStore and every certificate issued here can be fetched again by id.

    Args:
        seed: Default seed for fitted models and membership attacks
        enforcer: AnonymityEnforcer to use (default settings if None)
        auditor: InferenceAuditor to use (default settings if None)
    """

    def __init__(
        self,
        seed: int = 0,
        enforcer: Optional[AnonymityEnforcer] = None,
        auditor: Optional[InferenceAuditor] = None,
    ):
        self.seed = seed
        self.enforcer = enforcer or AnonymityEnforcer()
        self.auditor = auditor or InferenceAuditor(seed=seed)
        self.ledgers = LedgerStore()
        self.assembler = CertificateAssembler(self.ledgers, self.enforcer, auditor)
        self._models: Dict[str, GaussianCopulaModel] = {}
        self._certificates: Dict[str, PrivacyCertificate] = {}
        self._lock = threading.Lock()

    # ---------------- correlation model ----------------

    def fit_correlation_model(self, table: pd.DataFrame, **model_kwargs: Any) -> str:
        """Fit a Gaussian copula on ``table`` and return its handle."""
        model_kwargs.setdefault('seed', self.seed)
        model = GaussianCopulaModel(**model_kwargs).fit(table)
        handle = uuid.uuid4().hex
        with self._lock:
            self._models[handle] = model
        logger.info("Fitted correlation model %s on %d rows x %d columns", handle, len(table), table.shape[1])
        return handle

    def get_model(self, handle: str) -> GaussianCopulaModel:
        with self._lock:
            try:
                return self._models[handle]
            except KeyError:
                raise KeyError(f"Unknown model handle '{handle}'") from None

    def sample_from_model(self, handle: str, n: int, seed: Optional[int] = None) -> pd.DataFrame:
        return self.get_model(handle).sample(n, seed=seed)

    # ---------------- anonymity ----------------

    def enforce_anonymity(
        self,
        table: pd.DataFrame,
        quasi_identifiers: Sequence[str],
        target_k: int,
    ) -> Tuple[pd.DataFrame, EnforcementReport]:
        return self.enforcer.enforce(table, quasi_identifiers, target_k)

    # ---------------- budget ----------------

    def create_ledger(self, dataset_id: str, total_budget: float, **kwargs: Any) -> BudgetState:
        return self.ledgers.create(dataset_id, total_budget, **kwargs).get_status()

    def consume_budget(
        self,
        dataset_id: str,
        epsilon: float,
        operation_label: str,
        actor: str = "unknown",
    ) -> Tuple[bool, str, BudgetState]:
        """Consume epsilon; a refusal comes back as (False, reason, unchanged state)."""
        try:
            return self.ledgers.consume(dataset_id, epsilon, operation_label, actor).as_tuple()
        except BudgetExhaustedError as e:
            return False, str(e), self.ledgers.status(dataset_id)

    def get_budget_status(self, dataset_id: str) -> BudgetState:
        return self.ledgers.status(dataset_id)

    def reset_budget(self, dataset_id: str, actor: str, reason: str) -> BudgetState:
        return self.ledgers.get(dataset_id).reset(actor, reason)

    # ---------------- audits ----------------

    def run_membership_attack(
        self,
        original: pd.DataFrame,
        synthetic: pd.DataFrame,
        sensitive_columns: Optional[List[str]] = None,
        seed: Optional[int] = None,
    ) -> InferenceResult:
        return self.auditor.run_attack(original, synthetic, sensitive_columns, seed=seed)

    def evaluate_fidelity(
        self,
        real_data: pd.DataFrame,
        synthetic_data: pd.DataFrame,
        verbose: bool = True,
    ) -> Dict[str, Any]:
        """Compare real and synthetic data to measure fidelity."""
        metrics = compute_fidelity_metrics(real_data, synthetic_data)
        if verbose:
            print_fidelity_report(metrics, verbose=verbose)
        return metrics

    # ---------------- certificates ----------------

    def certify(
        self,
        original: pd.DataFrame,
        synthetic: pd.DataFrame,
        config: Union[CertificationConfig, Dict[str, Any], None] = None,
    ) -> Tuple[pd.DataFrame, PrivacyCertificate]:
        """Certify ``synthetic`` and keep the certificate; returns the released table too."""
        released, certificate = self.assembler.certify(original, synthetic, config)
        with self._lock:
            self._certificates[certificate.certificate_id] = certificate
        return released, certificate

    def generate_certificate(
        self,
        original: pd.DataFrame,
        synthetic: pd.DataFrame,
        config: Union[CertificationConfig, Dict[str, Any], None] = None,
    ) -> PrivacyCertificate:
        return self.certify(original, synthetic, config)[1]

    def get_certificate(self, certificate_id: str) -> PrivacyCertificate:
        with self._lock:
            try:
                return self._certificates[certificate_id]
            except KeyError:
                raise KeyError(f"No certificate with id '{certificate_id}'") from None
