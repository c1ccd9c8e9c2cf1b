"""Tests for side-effect classification and replay safety modes."""

from __future__ import annotations

import pytest

from agenttrace.replay.safety import analyze_safety, determine_replay_mode
from agenttrace.replay.schemas import (
    ReplayMode,
    SideEffect,
    SideEffectCategory,
    SideEffectSeverity,
)
from agenttrace.replay.side_effects import (
    SideEffectClassifier,
    SideEffectConfig,
    SideEffectRule,
)


@pytest.fixture
def classifier() -> SideEffectClassifier:
    return SideEffectClassifier()


def _categories(effects):
    return [e.category for e in effects]


class TestSideEffectClassifier:
    def test_tool_name_substring(self, classifier, make_node):
        node = make_node("t", kind="tool", tool_name="send_email", output="Email sent to bob")
        effects = classifier.classify(node)

        assert _categories(effects) == [SideEffectCategory.EMAIL]
        assert effects[0].severity == SideEffectSeverity.WARNING
        assert effects[0].reversible is False
        assert effects[0].source_node_id == node.id
        assert effects[0].declared is False

    def test_payment_is_critical_and_irreversible(self, classifier, make_node):
        node = make_node("t", kind="tool", tool_name="stripe_charge", output="ok")
        (effect,) = classifier.classify(node)

        assert effect.category == SideEffectCategory.PAYMENT
        assert effect.is_blocking is True
        assert effect.external_dependency is True

    def test_output_text_matches_whole_words(self, classifier, make_node):
        assert classifier.classify(make_node("a", response="Thanks for the feedback")) == []

        effects = classifier.classify(make_node("b", response="I will update the record"))
        assert _categories(effects) == [SideEffectCategory.DATABASE_WRITE]

    def test_output_scan_can_be_disabled(self, make_node):
        classifier = SideEffectClassifier(SideEffectConfig(scan_output_text=False))
        assert classifier.classify(make_node("b", response="I will update the record")) == []

    def test_plain_llm_node_has_no_effects(self, classifier, make_node):
        assert classifier.classify(make_node("a", response="Hello")) == []

    def test_one_effect_per_category(self, classifier, make_node):
        node = make_node("t", kind="tool", tool_name="email_notification", output="email sent")
        assert _categories(classifier.classify(node)) == [SideEffectCategory.EMAIL]

    def test_declared_effects_take_precedence(self, classifier, make_node):
        node = make_node(
            "t",
            kind="tool",
            tool_name="stripe_charge",
            metadata={"sideEffects": [{"category": "payment", "severity": "warning", "reversible": True}]},
        )
        (effect,) = classifier.classify(node)

        assert effect.declared is True
        assert effect.severity == SideEffectSeverity.WARNING
        assert effect.is_blocking is False

    def test_declared_string_uses_rule_defaults(self, classifier, make_node):
        node = make_node("a", response="done", metadata={"side_effects": ["payment"]})
        (effect,) = classifier.classify(node)

        assert effect.category == SideEffectCategory.PAYMENT
        assert effect.severity == SideEffectSeverity.CRITICAL
        assert effect.declared is True

    def test_invalid_declared_fields_fall_back_to_rule(self, classifier, make_node):
        node = make_node(
            "t",
            kind="tool",
            tool_name="checkout",
            metadata={"sideEffects": [{"category": "payment", "severity": "high", "reversible": "maybe"}]},
        )
        (effect,) = classifier.classify(node)

        assert effect.category == SideEffectCategory.PAYMENT
        assert effect.severity == SideEffectSeverity.CRITICAL
        assert effect.reversible is False
        assert effect.declared is True

    def test_unknown_declared_category_ignored(self, classifier, make_node):
        node = make_node("a", response="done", metadata={"sideEffects": ["teleport", 42]})
        assert classifier.classify(node) == []

    def test_custom_rules(self, make_node):
        config = SideEffectConfig(
            rules=[
                SideEffectRule(
                    category=SideEffectCategory.EXTERNAL_SERVICE,
                    keywords=["salesforce"],
                    severity=SideEffectSeverity.CRITICAL,
                    reversible=False,
                    external_dependency=True,
                )
            ]
        )
        classifier = SideEffectClassifier(config)
        node = make_node("t", kind="tool", tool_name="salesforce_upsert")
        assert classifier.classify(node)[0].is_blocking


def _effect(severity, reversible=False, external=False):
    return SideEffect(
        category=SideEffectCategory.API_CALL,
        severity=severity,
        reversible=reversible,
        external_dependency=external,
        source_node_id="n",
    )


class TestDetermineReplayMode:
    def test_no_effects_is_safe(self):
        assert determine_replay_mode([]) == ReplayMode.SAFE

    def test_local_effect_is_simulation(self):
        assert determine_replay_mode([_effect(SideEffectSeverity.WARNING)]) == ReplayMode.SIMULATION

    def test_external_effect_is_warning(self):
        effects = [_effect(SideEffectSeverity.WARNING), _effect(SideEffectSeverity.WARNING, external=True)]
        assert determine_replay_mode(effects) == ReplayMode.WARNING

    def test_critical_irreversible_is_blocked(self):
        effects = [_effect(SideEffectSeverity.WARNING, external=True), _effect(SideEffectSeverity.CRITICAL)]
        assert determine_replay_mode(effects) == ReplayMode.BLOCKED

    def test_critical_reversible_is_not_blocked(self):
        assert determine_replay_mode([_effect(SideEffectSeverity.CRITICAL, reversible=True)]) == ReplayMode.SIMULATION


class TestAnalyzeSafety:
    @pytest.fixture
    def snapshot(self, make_node, make_snapshot):
        return make_snapshot(
            [
                make_node("pay", kind="tool", sequence=0, tool_name="stripe_charge", output="charged"),
                make_node("notify", kind="tool", sequence=1, tool_name="send_email", output="sent"),
                make_node("reply", sequence=2, response="All done"),
            ]
        )

    def test_only_nodes_from_start_are_considered(self, snapshot):
        assert analyze_safety(snapshot, "reply").mode == ReplayMode.SAFE
        assert analyze_safety(snapshot, "notify").mode == ReplayMode.SIMULATION

    def test_blocked_analysis(self, snapshot):
        analysis = analyze_safety(snapshot, "pay")

        assert analysis.mode == ReplayMode.BLOCKED
        assert analysis.start_node_id == snapshot.get_node_by_run("pay").id
        assert {e.category for e in analysis.side_effects} == {
            SideEffectCategory.PAYMENT,
            SideEffectCategory.EMAIL,
        }
        assert "Use simulation mode for testing without side effects" in analysis.recommendations
        assert any("irreversible" in w for w in analysis.warnings)

    def test_safe_recommendation(self, snapshot):
        analysis = analyze_safety(snapshot, "reply")
        assert analysis.recommendations == ["Safe to replay - no side effects detected"]
        assert analysis.warnings == []

    def test_unknown_start_node(self, snapshot):
        analysis = analyze_safety(snapshot, "missing")
        assert analysis.mode == ReplayMode.SAFE
        assert analysis.side_effects == []
        assert "missing" in analysis.warnings[0]
