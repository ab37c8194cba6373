from typing import List, Optional, Sequence

from common.schemas import Alert, Incident, Rule, severity_rank


def matches(rule: Rule, incident: Incident) -> bool:
    """
    A rule matches when its vector filter (if any) equals the incident's
    vector AND the incident is at least as severe as its minimum (if any).
    Nothing else in the rule's condition is considered.
    """
    cond = rule.when
    if cond.vector is not None and cond.vector != incident.vector:
        return False
    if cond.severity is not None and severity_rank(incident.severity) < severity_rank(cond.severity):
        return False
    return True


def evaluate(incident: Incident, rules: Sequence[Rule]) -> List[Rule]:
    """Every matching rule, in ruleset order. No first-match-wins."""
    return [r for r in rules if matches(r, incident)]


def build_alerts(incident: Incident, matched: Sequence[Rule], origin: Optional[str] = None) -> List[Alert]:
    alerts: List[Alert] = []
    base = incident.model_dump(by_alias=True)
    for rule in matched:
        data = dict(base)
        if rule.severity is not None:
            data["severity"] = rule.severity
        data.update(rule=rule.name, actions=list(rule.actions), origin=origin)
        alerts.append(Alert.model_validate(data))
    return alerts
