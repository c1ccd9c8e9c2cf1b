"""Side-effect classification for replay safety.

Classifies what a node's original execution did to the outside world from:
- Side effects declared in the node's metadata (``sideEffects``)
- Keywords in the tool name
- Keywords in the node's output text

Declared effects take precedence; keyword matching only adds categories a
node did not declare.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from agenttrace.graph.schemas import Node, ToolNodeData
from agenttrace.replay.schemas import SideEffect, SideEffectCategory, SideEffectSeverity

logger = logging.getLogger(__name__)


@dataclass
class SideEffectRule:
    """Keywords for one category and the effect they imply."""

    category: SideEffectCategory
    keywords: list[str]
    severity: SideEffectSeverity
    reversible: bool
    external_dependency: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "keywords": self.keywords,
            "severity": self.severity.value,
            "reversible": self.reversible,
            "external_dependency": self.external_dependency,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SideEffectRule:
        return cls(
            category=SideEffectCategory(data["category"]),
            keywords=list(data.get("keywords", [])),
            severity=SideEffectSeverity(data.get("severity", "warning")),
            reversible=data.get("reversible", False),
            external_dependency=data.get("external_dependency", False),
        )


def _default_rules() -> list[SideEffectRule]:
    return [
        SideEffectRule(
            category=SideEffectCategory.PAYMENT,
            keywords=[
                "payment",
                "charge",
                "billing",
                "invoice",
                "transaction",
                "stripe",
                "paypal",
                "credit_card",
                "debit",
            ],
            severity=SideEffectSeverity.CRITICAL,
            reversible=False,
            external_dependency=True,
        ),
        SideEffectRule(
            category=SideEffectCategory.EMAIL,
            keywords=[
                "send_email",
                "email",
                "notification",
                "mail",
                "smtp",
                "email sent",
                "notification sent",
                "mail delivered",
            ],
            severity=SideEffectSeverity.WARNING,
            reversible=False,
            external_dependency=False,
        ),
        SideEffectRule(
            category=SideEffectCategory.DATABASE_WRITE,
            keywords=[
                "insert",
                "update",
                "delete",
                "save",
                "write",
                "create",
                "database",
                "db",
                "persist",
                "store",
            ],
            severity=SideEffectSeverity.WARNING,
            reversible=True,
            external_dependency=False,
        ),
        SideEffectRule(
            category=SideEffectCategory.API_CALL,
            keywords=[
                "api",
                "http",
                "request",
                "fetch",
                "call",
                "endpoint",
                "external",
                "third_party",
                "webhook",
            ],
            severity=SideEffectSeverity.WARNING,
            reversible=False,
            external_dependency=True,
        ),
        SideEffectRule(
            category=SideEffectCategory.EXTERNAL_SERVICE,
            keywords=[
                "aws",
                "azure",
                "gcp",
                "slack",
                "discord",
                "teams",
                "github",
                "gitlab",
                "jira",
                "confluence",
            ],
            severity=SideEffectSeverity.WARNING,
            reversible=False,
            external_dependency=True,
        ),
    ]


@dataclass
class SideEffectConfig:
    """Keyword rules used by the classifier."""

    rules: list[SideEffectRule] = field(default_factory=_default_rules)
    scan_output_text: bool = True

    def rule_for(self, category: SideEffectCategory) -> SideEffectRule | None:
        return next((r for r in self.rules if r.category == category), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rules": [r.to_dict() for r in self.rules],
            "scan_output_text": self.scan_output_text,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SideEffectConfig:
        rules = data.get("rules")
        return cls(
            rules=(
                [SideEffectRule.from_dict(r) for r in rules] if rules is not None else _default_rules()
            ),
            scan_output_text=data.get("scan_output_text", True),
        )


class SideEffectClassifier:
    """
    Classifies side effects of nodes.

    Tool names are matched by substring (``send_email`` matches ``email``);
    output text is matched on whole words so ``feedback`` does not match
    ``db``.
    """

    def __init__(self, config: SideEffectConfig | None = None):
        self.config = config or SideEffectConfig()
        self._text_patterns = {
            rule.category: re.compile(
                r"\b(" + "|".join(re.escape(k) for k in rule.keywords) + r")\b",
                re.IGNORECASE,
            )
            for rule in self.config.rules
            if rule.keywords
        }

    def classify(self, node: Node) -> list[SideEffect]:
        """All side effects of one node, at most one per category."""
        effects = self._declared_effects(node)
        seen = {e.category for e in effects}

        tool_name = node.data.tool_name.lower() if isinstance(node.data, ToolNodeData) else ""
        output = node.output_text() if self.config.scan_output_text else ""

        for rule in self.config.rules:
            if rule.category in seen:
                continue

            matched = next((k for k in rule.keywords if tool_name and k in tool_name), None)
            source = "tool name"
            if matched is None and output:
                pattern = self._text_patterns.get(rule.category)
                match = pattern.search(output) if pattern else None
                matched = match.group(1).lower() if match else None
                source = "output"
            if matched is None:
                continue

            effects.append(
                SideEffect(
                    category=rule.category,
                    severity=rule.severity,
                    reversible=rule.reversible,
                    external_dependency=rule.external_dependency,
                    source_node_id=node.id,
                    description=f"{node.name}: '{matched}' in {source}",
                )
            )
            seen.add(rule.category)

        return effects

    def classify_all(self, nodes: list[Node]) -> list[SideEffect]:
        effects: list[SideEffect] = []
        for node in nodes:
            effects.extend(self.classify(node))
        return effects

    def _declared_effects(self, node: Node) -> list[SideEffect]:
        declared = node.metadata.get("sideEffects", node.metadata.get("side_effects"))
        if not declared:
            return []
        if not isinstance(declared, list):
            declared = [declared]

        effects: list[SideEffect] = []
        for item in declared:
            if isinstance(item, str):
                item = {"category": item}
            if not isinstance(item, dict):
                logger.warning(f"Ignoring malformed side effect on node {node.id}: {item!r}")
                continue
            try:
                category = SideEffectCategory(item.get("category", item.get("type")))
            except ValueError:
                logger.warning(f"Ignoring unknown side effect category on node {node.id}: {item}")
                continue
            if any(e.category == category for e in effects):
                continue

            rule = self.config.rule_for(category)
            defaults = {
                "severity": rule.severity if rule else SideEffectSeverity.WARNING,
                "reversible": rule.reversible if rule else False,
                "external_dependency": rule.external_dependency if rule else False,
            }
            fields = {
                "severity": item.get("severity", defaults["severity"]),
                "reversible": item.get("reversible", defaults["reversible"]),
                "external_dependency": item.get(
                    "externalDependency",
                    item.get("external_dependency", defaults["external_dependency"]),
                ),
            }
            description = item.get("description", f"{node.name}: declared {category}")

            try:
                effect = SideEffect(
                    category=category,
                    severity=SideEffectSeverity(fields["severity"]),
                    reversible=fields["reversible"],
                    external_dependency=fields["external_dependency"],
                    source_node_id=node.id,
                    description=str(description),
                    declared=True,
                )
            except (ValueError, ValidationError) as e:
                logger.warning(
                    f"Malformed side effect {item} on node {node.id}, using {category} defaults: {e}"
                )
                effect = SideEffect(
                    category=category,
                    source_node_id=node.id,
                    description=f"{node.name}: declared {category}",
                    declared=True,
                    **defaults,
                )
            effects.append(effect)
        return effects
