from __future__ import annotations

from collections.abc import Iterable, Mapping

from phasegate.models import SEVERITY_ORDER, Finding, Outcome, Severity, Verdict

DEFAULT_ACTION = Outcome.WARN


def highest_severity(findings: Iterable[Finding]) -> Severity | None:
    present = {finding.severity for finding in findings}
    for severity in SEVERITY_ORDER:
        if severity in present:
            return severity
    return None


def evaluate(
    findings: Iterable[Finding],
    gate_rules: Mapping[Severity, Outcome] | Iterable[tuple[Severity, Outcome]],
) -> Verdict:
    """Map findings to a verdict using the action configured for the top severity.

    The decision depends only on the highest severity present, so findings that
    share it can never disagree. Severities without a rule fall back to WARN and
    an empty finding list always passes.
    """
    findings = tuple(findings)
    pairs = gate_rules.items() if isinstance(gate_rules, Mapping) else gate_rules
    rules = {Severity.parse(severity): Outcome.parse(action) for severity, action in pairs}
    top = highest_severity(findings)
    if top is None:
        return Verdict(outcome=Outcome.PASS)

    action = rules.get(top, DEFAULT_ACTION)
    if action is Outcome.PASS:
        return Verdict(outcome=Outcome.PASS)
    triggering = tuple(finding for finding in findings if finding.severity == top)
    return Verdict(outcome=action, triggering=triggering)
