"""
PHI Access Decision Engine

Decides whether a caller may perform an action on a resource and writes
an access log entry for every decision that touches a patient.

Policy is an ordered list of rules. Each rule returns ALLOW, DENY or
ABSTAIN; the first rule that does not abstain decides. When every rule
abstains the request is denied (fail-closed).

Default policy, in order:
    admin                        -> allow
    compliance_officer + read    -> allow
    provider + patient_id        -> allow iff an active assignment exists, else deny
    patient + read               -> allow iff the patient record is the caller's, else deny
    (nothing matched)            -> deny
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from . import metrics
from .audit import AuditLogger
from .directory import Directory, SqliteDirectory
from .logging_config import ops_log
from .models import AccessDecision, Identity, Role

READ_ONLY_ACTIONS = frozenset({"read", "view", "list", "search"})

DEFAULT_DENY_REASON = "Access denied"
DENIED_PREFIX = "DENIED:"


class RuleOutcome(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"
    ABSTAIN = "ABSTAIN"


@dataclass(frozen=True)
class AccessRequest:
    """One authorization question, as seen by the policy rules."""
    identity: Identity
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    patient_id: Optional[str] = None

    def is_read_only(self) -> bool:
        return self.action in READ_ONLY_ACTIONS


@dataclass(frozen=True)
class RuleResult:
    outcome: RuleOutcome
    reason: Optional[str] = None


class PolicyRule(ABC):
    """A single named access rule. Must not raise for ordinary input."""

    name = "rule"

    @abstractmethod
    def evaluate(self, request: AccessRequest, directory: Directory) -> RuleResult:
        pass

    def _allow(self, reason: str) -> RuleResult:
        return RuleResult(RuleOutcome.ALLOW, reason)

    def _deny(self, reason: str = DEFAULT_DENY_REASON) -> RuleResult:
        return RuleResult(RuleOutcome.DENY, reason)

    def _abstain(self) -> RuleResult:
        return RuleResult(RuleOutcome.ABSTAIN)


class AdminRule(PolicyRule):
    name = "admin"

    def evaluate(self, request: AccessRequest, directory: Directory) -> RuleResult:
        if request.identity.has_role(Role.ADMIN):
            return self._allow("Admin access")
        return self._abstain()


class ComplianceReadRule(PolicyRule):
    name = "compliance_read"

    def evaluate(self, request: AccessRequest, directory: Directory) -> RuleResult:
        if request.identity.has_role(Role.COMPLIANCE_OFFICER) and request.is_read_only():
            return self._allow("Compliance audit access")
        return self._abstain()


class AssignedProviderRule(PolicyRule):
    """
    Providers reach a patient only through an active care-team assignment.

    Denies outright when the assignment is missing, so a provider who is
    also a patient does not fall through to the patient rule.
    """
    name = "assigned_provider"

    def evaluate(self, request: AccessRequest, directory: Directory) -> RuleResult:
        identity = request.identity
        if not (identity.has_role(Role.PROVIDER) and request.patient_id):
            return self._abstain()
        if identity.provider_id and directory.get_active_assignment(identity.provider_id, request.patient_id):
            return self._allow("Assigned provider access")
        return self._deny()


class PatientOwnRecordRule(PolicyRule):
    name = "patient_own_record"

    def evaluate(self, request: AccessRequest, directory: Directory) -> RuleResult:
        if not (request.identity.has_role(Role.PATIENT) and request.is_read_only()):
            return self._abstain()
        patient = directory.get_patient_by_user_id(request.identity.user_id)
        if patient and request.patient_id and patient["id"] == request.patient_id:
            return self._allow("Patient accessing own records")
        return self._deny()


DEFAULT_RULES = (AdminRule(), ComplianceReadRule(), AssignedProviderRule(), PatientOwnRecordRule())


class AccessDecisionEngine:
    """
    Evaluates the policy rules and records the decision.

    Usage:
        engine = AccessDecisionEngine()
        decision = engine.authorize(identity, "read", "clinical_note", patient_id=pid)
        if not decision.allowed:
            ...
    """

    def __init__(
        self,
        directory: Optional[Directory] = None,
        audit_logger: Optional[AuditLogger] = None,
        rules: Optional[Sequence[PolicyRule]] = None
    ):
        self.directory = directory or SqliteDirectory()
        self.audit = audit_logger or AuditLogger()
        self.rules: List[PolicyRule] = list(rules if rules is not None else DEFAULT_RULES)

    def decide(self, request: AccessRequest) -> AccessDecision:
        """Evaluate the rules without logging."""
        roles = tuple(request.identity.roles)
        for rule in self.rules:
            result = rule.evaluate(request, self.directory)
            if result.outcome == RuleOutcome.ALLOW:
                return AccessDecision(True, result.reason, roles, rule.name)
            if result.outcome == RuleOutcome.DENY:
                return AccessDecision(False, result.reason or DEFAULT_DENY_REASON, roles, rule.name)
        return AccessDecision(False, DEFAULT_DENY_REASON, roles, None)

    def authorize(
        self,
        identity: Identity,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        patient_id: Optional[str] = None
    ) -> AccessDecision:
        """
        Decide and, when patient_id is given, write exactly one access log
        entry before returning.

        A failed log write is reported to operations and counted; it never
        changes the decision.
        """
        request = AccessRequest(identity, action, resource_type, resource_id, patient_id)
        decision = self.decide(request)

        if patient_id:
            logged_action = action if decision.allowed else f"{DENIED_PREFIX}{action}"
            try:
                self.audit.record(
                    user_id=identity.user_id,
                    resource_type=resource_type,
                    action=logged_action,
                    patient_id=patient_id,
                    resource_id=resource_id,
                    reason=decision.reason,
                    request=identity.request,
                )
            except Exception as e:
                metrics.increment(metrics.AUDIT_WRITE_FAILURES)
                ops_log.audit_write_failed(identity.user_id, logged_action, resource_type, e)

        ops_log.access_decision(identity.user_id, action, resource_type, decision.allowed, decision.rule)
        return decision
