"""Load Rule objects from YAML.

Structure (type, name, account scope) is checked at load time; the
per-kind parameters are only checked when the rule is evaluated, so one
bad rule never stops the others from loading.
"""

from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from sharewatch.rules.models import Rule, RuleParamsError, RuleType


def load_rules(path: str | Path) -> list[Rule]:
    """Load the ``rules:`` list from a YAML file."""
    text = Path(path).read_text(encoding="utf-8")
    return load_rules_from_string(text)


def load_rules_from_string(text: str) -> list[Rule]:
    data = yaml.safe_load(text)
    if data is None:
        return []
    if not isinstance(data, dict):
        raise ValueError("Rules YAML must be a mapping")
    return parse_rules(data.get("rules") or [])


def parse_rules(rules_data: Any) -> list[Rule]:
    if not isinstance(rules_data, list):
        raise ValueError("'rules' must be a list")

    rules: list[Rule] = []
    seen: set[str] = set()
    for index, r in enumerate(rules_data):
        if not isinstance(r, dict):
            raise ValueError(f"Rule #{index + 1} must be a mapping")
        rule = _parse_rule(r, index)
        if rule.id in seen:
            raise ValueError(f"Duplicate rule id: {rule.id}")
        seen.add(rule.id)
        rules.append(rule)
    return rules


def _parse_rule(r: dict, index: int) -> Rule:
    try:
        rule_type = RuleType(r.get("type"))
    except ValueError as exc:
        raise ValueError(f"Rule #{index + 1}: unknown type {r.get('type')!r}") from exc

    params = r.get("params") or {}
    if not isinstance(params, dict):
        raise ValueError(f"Rule #{index + 1}: 'params' must be a mapping")

    name = str(r.get("name") or rule_type.value)
    account = r.get("account")
    return Rule(
        id=str(r.get("id") or f"{rule_type.value}-{index + 1}"),
        name=name,
        type=rule_type,
        params=MappingProxyType(dict(params)),
        account=str(account) if account is not None else None,
        active=bool(r.get("active", True)),
    )


def check_params(rule: Rule) -> str | None:
    """Return the parameter problem for ``rule``, or None if it is valid."""
    try:
        rule.typed_params()
    except RuleParamsError as exc:
        return str(exc)
    return None
