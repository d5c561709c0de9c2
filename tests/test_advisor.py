"""Tests for rule optimization suggestions."""

from __future__ import annotations

from case_automation.automation.advisor import RuleOptimizationAdvisor
from case_automation.core.models import CASE, MAIL_RULE, TASK


def _override(store, rule_id: str, final_case: str, inferred: str | None, title: str) -> None:
    store.create(
        TASK,
        {
            "title": title,
            "case_id": final_case,
            "manual_override": True,
            "extracted_data": {
                "rule_id": rule_id,
                "inferred_case": {"id": inferred, "case_number": f"N-{inferred}"},
            },
        },
    )


def _seed(store) -> None:
    store.create(
        MAIL_RULE,
        {"id": "rule-1", "name": "USPTO actions", "catch_config": {"subject_regex": "USPTO"}},
    )
    store.create(MAIL_RULE, {"id": "rule-2", "name": "Renewals", "catch_config": {}})
    store.create(CASE, {"id": "case-9", "case_number": "P-2024-009", "title": "Acme widget"})
    store.create(CASE, {"id": "case-7", "case_number": "T-7", "title": "Brand"})

    for index in range(4):
        _override(store, "rule-1", "case-9", "case-1", f"OA {index}")
    _override(store, "rule-2", "case-7", "case-2", "Renewal 1")
    _override(store, "rule-2", "case-7", "case-3", "Renewal 2")
    # Single occurrence, below the threshold.
    _override(store, "rule-2", "case-9", "case-2", "Renewal 3")
    # Override that kept the inferred case.
    _override(store, "rule-1", "case-1", "case-1", "Same")
    store.create(TASK, {"title": "Normal", "case_id": "case-1", "manual_override": False})
    store.create(TASK, {"title": "Normal 2", "case_id": "case-1"})


def test_suggestions_grouped_and_sorted(store) -> None:
    _seed(store)

    report = RuleOptimizationAdvisor(store).get_suggestions()

    assert [s.rule_id for s in report.suggestions] == ["rule-1", "rule-2"]
    first = report.suggestions[0]
    assert first.override_count == 4
    assert len(first.examples) == 3
    assert first.examples[0].original_case == "N-case-1"
    assert first.suggested_case_number == "P-2024-009"
    assert first.suggested_regex == "(?:P-2024-009|USPTO)"
    assert first.message == (
        "Users have manually linked 4 emails to case P-2024-009 (Acme widget). "
        "Consider updating the rule's subject regex."
    )
    second = report.suggestions[1]
    assert second.current_subject_regex == ""
    assert second.suggested_regex == "(?:T-7|.*)"


def test_stats_use_rounded_percentage(store) -> None:
    _seed(store)

    report = RuleOptimizationAdvisor(store).get_suggestions()

    assert report.total_tasks == 10
    assert report.total_overrides == 8
    assert report.override_rate == 80


def test_limit_and_missing_case(store) -> None:
    _seed(store)
    store.delete(CASE, "case-7")

    report = RuleOptimizationAdvisor(store).get_suggestions(limit=5)

    assert [s.rule_id for s in report.suggestions] == ["rule-1"]
    assert len(RuleOptimizationAdvisor(store).get_suggestions(limit=0).suggestions) == 0


def test_empty_store(store) -> None:
    report = RuleOptimizationAdvisor(store).get_suggestions()
    assert report.total_tasks == 0
    assert report.override_rate == 0
    assert report.to_dict() == {
        "success": True,
        "stats": {"total_tasks": 0, "total_overrides": 0, "override_rate": 0},
        "suggestions": [],
    }
