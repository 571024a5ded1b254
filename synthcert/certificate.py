"""Privacy certificate: one auditable record of what was done to a release and how it held up."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd

from .anonymity import AnonymityEnforcer, EnforcementReport, apply_generalization, min_class_size
from .budget import SCHEMA_VERSION, BudgetState, LedgerStore
from .config import CertificationConfig
from .inference import InferenceAuditor, InferenceResult
from .risk import ReidentificationRisk, compute_reidentification_risk
from .schema import column_kinds, require_columns

logger = logging.getLogger(__name__)

REGIME_ANONYMOUS = "anonymous"
REGIME_DE_IDENTIFIED = "de_identified"
REGIME_SAFE_HARBOR = "safe_harbor"


def derive_compliance(
    epsilon: float,
    achieved_k: int,
    anonymous_epsilon: float = 1.0,
    deidentified_k: int = 5,
) -> Dict[str, bool]:
    """Fixed regulatory rules: small epsilon is anonymous, large k is de-identified, both is safe harbor."""
    anonymous = epsilon <= anonymous_epsilon
    de_identified = achieved_k >= deidentified_k
    return {
        REGIME_ANONYMOUS: anonymous,
        REGIME_DE_IDENTIFIED: de_identified,
        REGIME_SAFE_HARBOR: anonymous and de_identified,
    }


@dataclass(frozen=True)
class PrivacyCertificate:
    certificate_id: str
    created_at: str
    epsilon: float
    delta: float
    enforcement: EnforcementReport
    inference: Optional[InferenceResult]
    risk: ReidentificationRisk
    compliance: Dict[str, bool]
    budget: Optional[BudgetState] = None
    config: Dict[str, Any] = field(default_factory=dict)
    schema_version: str = SCHEMA_VERSION

    @property
    def achieved_k(self) -> int:
        return self.enforcement.final_k

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schema_version': self.schema_version,
            'certificate_id': self.certificate_id,
            'created_at': self.created_at,
            'epsilon': self.epsilon,
            'delta': self.delta,
            'enforcement': self.enforcement.to_dict(),
            'budget': self.budget.to_dict() if self.budget is not None else None,
            'inference': self.inference.to_dict() if self.inference is not None else None,
            'risk': self.risk.to_dict(),
            'compliance': dict(self.compliance),
            'config': dict(self.config),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrivacyCertificate":
        budget = data.get('budget')
        inference = data.get('inference')
        return cls(
            certificate_id=str(data['certificate_id']),
            created_at=str(data['created_at']),
            epsilon=float(data['epsilon']),
            delta=float(data.get('delta', 1e-6)),
            enforcement=EnforcementReport.from_dict(data['enforcement']),
            inference=InferenceResult.from_dict(inference) if inference else None,
            risk=ReidentificationRisk.from_dict(data.get('risk', {})),
            compliance={k: bool(v) for k, v in data.get('compliance', {}).items()},
            budget=BudgetState.from_dict(budget) if budget else None,
            config=dict(data.get('config', {})),
            schema_version=str(data.get('schema_version', SCHEMA_VERSION)),
        )

    def compliance_summary(self) -> List[str]:
        """One human-readable line per regime plus the attack and k-anonymity outcomes."""
        anonymous_epsilon = self.config.get('anonymous_epsilon', 1.0)
        deidentified_k = self.config.get('deidentified_k', 5)
        lines = []

        verdict = "PASS" if self.compliance.get(REGIME_ANONYMOUS) else "FAIL"
        op = "<=" if self.compliance.get(REGIME_ANONYMOUS) else ">"
        lines.append(f"anonymous: {verdict} (epsilon {self.epsilon:.4g} {op} {anonymous_epsilon:g})")

        verdict = "PASS" if self.compliance.get(REGIME_DE_IDENTIFIED) else "FAIL"
        op = ">=" if self.compliance.get(REGIME_DE_IDENTIFIED) else "<"
        lines.append(f"de_identified: {verdict} (achieved k {self.achieved_k} {op} {deidentified_k})")

        if self.compliance.get(REGIME_SAFE_HARBOR):
            lines.append("safe_harbor: PASS (anonymous and de-identified)")
        else:
            failed = [r for r in (REGIME_ANONYMOUS, REGIME_DE_IDENTIFIED) if not self.compliance.get(r)]
            lines.append(f"safe_harbor: FAIL (not {' and not '.join(failed)})")

        if self.inference is None:
            lines.append("membership attack: NOT RUN (fewer than 2 released rows)")
        else:
            verdict = "PASS" if self.inference.passed else "FAIL"
            lines.append(
                f"membership attack: {verdict} (success rate {self.inference.attack_success_rate:.4f}, "
                f"threshold {self.inference.threshold:.2f})"
            )

        verdict = "PASS" if self.enforcement.compliant else "FAIL"
        lines.append(
            f"k-anonymity: {verdict} (target {self.enforcement.target_k}, achieved {self.enforcement.final_k}, "
            f"{self.enforcement.rows_suppressed} rows suppressed)"
        )
        return lines


class CertificateAssembler:
    """Run every check over a (source, synthetic) pair and assemble a PrivacyCertificate.

    Component errors propagate unchanged (InsufficientDataError, SchemaMismatchError,
    BudgetExhaustedError, KeyError for an unknown dataset id). Enforcement itself
    never aborts: an unreachable k is reported in the certificate. The budget is
    consumed only after the attack and risk checks have succeeded, so a failed
    certification does not spend epsilon.
    """

    def __init__(
        self,
        ledger_store: Optional[LedgerStore] = None,
        enforcer: Optional[AnonymityEnforcer] = None,
        auditor: Optional[InferenceAuditor] = None,
    ) -> None:
        self.ledger_store = ledger_store if ledger_store is not None else LedgerStore()
        self.enforcer = enforcer if enforcer is not None else AnonymityEnforcer()
        self.auditor = auditor

    @staticmethod
    def _attack_columns(
        original: pd.DataFrame,
        released: pd.DataFrame,
        config: CertificationConfig,
    ) -> Optional[List[str]]:
        if config.sensitive_columns is not None:
            return list(config.sensitive_columns)
        kinds_o = column_kinds(original)
        kinds_r = column_kinds(released)
        return [c for c in original.columns if c in kinds_r and kinds_r[c] == kinds_o[c]]

    def _auditor_for(self, config: CertificationConfig) -> InferenceAuditor:
        if self.auditor is not None:
            return self.auditor
        return InferenceAuditor(threshold=config.attack_threshold, seed=config.seed)

    def certify(
        self,
        original: pd.DataFrame,
        synthetic: pd.DataFrame,
        config: Union[CertificationConfig, Dict[str, Any], None] = None,
    ) -> Tuple[pd.DataFrame, PrivacyCertificate]:
        """Certify a synthetic table; returns the released (enforced) table and its certificate."""
        if config is None:
            config = CertificationConfig()
        elif isinstance(config, dict):
            config = CertificationConfig.from_dict(config)

        qi = list(config.quasi_identifiers)
        require_columns(synthetic, qi, "synthetic table")

        if config.apply_enforcement:
            released, enforcement = self.enforcer.enforce(synthetic, qi, config.target_k)
        else:
            k = min_class_size(synthetic, qi)
            released = synthetic.copy()
            enforcement = EnforcementReport(
                target_k=config.target_k,
                quasi_identifiers=tuple(qi),
                initial_k=k,
                final_k=k,
                rows_in=len(synthetic),
                rows_out=len(synthetic),
            )

        inference: Optional[InferenceResult] = None
        if len(released) >= 2:
            columns = self._attack_columns(original, released, config)
            inference = self._auditor_for(config).run_attack(
                original, released, sensitive_columns=columns, seed=config.seed
            )
        else:
            logger.warning(
                "Release has %d rows after enforcement; membership attack skipped", len(released)
            )

        # linkage compares QI tuples, so the source goes through the same bands and merges
        risk = compute_reidentification_risk(
            released, qi, population_size=config.population_size,
            original=apply_generalization(original, enforcement), k=config.target_k,
        )

        budget: Optional[BudgetState] = None
        epsilon = config.epsilon
        if config.dataset_id is not None:
            result = self.ledger_store.consume(
                config.dataset_id, config.epsilon, config.operation_label, config.actor
            )
            budget = result.state
            epsilon = budget.spent

        compliance = derive_compliance(
            epsilon, enforcement.final_k,
            anonymous_epsilon=config.anonymous_epsilon,
            deidentified_k=config.deidentified_k,
        )
        certificate = PrivacyCertificate(
            certificate_id=str(uuid.uuid4()),
            created_at=datetime.now(timezone.utc).isoformat(),
            epsilon=float(epsilon),
            delta=config.delta,
            enforcement=enforcement,
            inference=inference,
            risk=risk,
            compliance=compliance,
            budget=budget,
            config=config.to_dict(),
        )
        logger.info(
            "Issued certificate %s: epsilon=%.4g, k=%d, compliance=%s",
            certificate.certificate_id, certificate.epsilon, enforcement.final_k,
            compliance,
        )
        return released, certificate

    def generate_certificate(
        self,
        original: pd.DataFrame,
        synthetic: pd.DataFrame,
        config: Union[CertificationConfig, Dict[str, Any], None] = None,
    ) -> PrivacyCertificate:
        _, certificate = self.certify(original, synthetic, config)
        return certificate


def print_certificate_report(certificate: PrivacyCertificate) -> None:
    """Print formatted certificate report."""
    print("=" * 80)
    print("Privacy Certificate")
    print("=" * 80)

    print(f"\nCertificate ID: {certificate.certificate_id}")
    print(f"Issued: {certificate.created_at}")
    print(f"Schema version: {certificate.schema_version}")

    print(f"\nPrivacy Budget:")
    print(f"  Epsilon: {certificate.epsilon:.4f}")
    print(f"  Delta: {certificate.delta:.2e}")
    if certificate.budget is not None:
        b = certificate.budget
        print(f"  Dataset: {b.dataset_id} ({b.composition})")
        print(f"  Spent: {b.spent:.4f} of {b.total_budget:.4f}, remaining {b.remaining:.4f}")

    e = certificate.enforcement
    print(f"\nk-Anonymity:")
    print(f"  Target k: {e.target_k}, achieved k: {e.final_k}")
    print(f"  Passes: {', '.join(e.passes_applied) or '(none)'}")
    print(f"  Rows: {e.rows_in:,} in, {e.rows_out:,} out")

    r = certificate.risk
    print(f"\nRe-identification Risk:")
    print(f"  Uniqueness rate: {r.uniqueness_rate:.4f}")
    print(f"  Extrapolated k: {r.extrapolated_k:.1f}")
    print(f"  Max risk: {r.max_risk:.4f}, average risk: {r.average_risk:.4f}")

    if certificate.inference is not None:
        i = certificate.inference
        print(f"\nMembership Inference:")
        print(f"  Attack success rate: {i.attack_success_rate:.4f} (threshold {i.threshold:.2f})")
        print(f"  Exact copy rate: {i.exact_copy_rate:.4f}")

    print(f"\nCompliance:")
    for line in certificate.compliance_summary():
        print(f"  {line}")

    print("\n" + "=" * 80)
