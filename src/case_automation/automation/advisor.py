"""Read-only analytics over manual case overrides."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from case_automation.core.interfaces import EntityStore, Record
from case_automation.core.models import (
    CASE,
    MAIL_RULE,
    TASK,
    OptimizationReport,
    OptimizationSuggestion,
    OverrideExample,
)

LOGGER = logging.getLogger(__name__)

MIN_OVERRIDES = 2
MAX_EXAMPLES = 3
DEFAULT_LIMIT = 10
# Number of most recent tasks considered for the override rate.
STATS_WINDOW = 1000
UNKNOWN_RULE = "Unknown Rule"


@dataclass(slots=True)
class _OverridePattern:
    rule_id: str
    target_case_id: str
    count: int = 0
    examples: list[OverrideExample] = field(default_factory=list)


class RuleOptimizationAdvisor:
    """Suggest subject regex refinements from tasks users re-linked by hand."""

    def __init__(self, store: EntityStore) -> None:
        self._store = store

    def get_suggestions(self, limit: int = DEFAULT_LIMIT) -> OptimizationReport:
        overridden = self._store.filter(TASK, {"manual_override": True})
        rules = {rule["id"]: rule for rule in self._store.list(MAIL_RULE)}

        patterns = self._group_overrides(overridden)
        significant = sorted(
            (p for p in patterns.values() if p.count >= MIN_OVERRIDES),
            key=lambda p: p.count,
            reverse=True,
        )

        suggestions: list[OptimizationSuggestion] = []
        for pattern in significant:
            rule = rules.get(pattern.rule_id)
            if rule is None:
                continue
            target_case = self._store.get(CASE, pattern.target_case_id)
            if target_case is None:
                LOGGER.debug("Skipping override pattern for missing case %s", pattern.target_case_id)
                continue
            suggestions.append(_build_suggestion(pattern, rule, target_case))

        recent = self._store.list(TASK, order_by="-created_date", limit=STATS_WINDOW)
        total_overrides = sum(1 for task in recent if task.get("manual_override"))
        override_rate = (
            math.floor(total_overrides / len(recent) * 100 + 0.5) if recent else 0
        )

        LOGGER.info(
            "Found %d rule suggestion(s) from %d override(s)",
            len(suggestions),
            total_overrides,
        )
        return OptimizationReport(
            total_tasks=len(recent),
            total_overrides=total_overrides,
            override_rate=override_rate,
            suggestions=tuple(suggestions[:limit]),
        )

    @staticmethod
    def _group_overrides(tasks: list[Record]) -> dict[tuple[str, str], _OverridePattern]:
        patterns: dict[tuple[str, str], _OverridePattern] = {}
        for task in tasks:
            extracted: Mapping[str, Any] = task.get("extracted_data") or {}
            rule_id = extracted.get("rule_id")
            if not rule_id:
                continue
            inferred_case: Mapping[str, Any] = extracted.get("inferred_case") or {}
            original_case_id = task.get("original_inferred_case_id") or inferred_case.get("id")
            final_case_id = task.get("case_id")
            if original_case_id == final_case_id:
                continue

            key = (rule_id, final_case_id)
            pattern = patterns.setdefault(
                key, _OverridePattern(rule_id=rule_id, target_case_id=final_case_id)
            )
            pattern.count += 1
            if len(pattern.examples) < MAX_EXAMPLES:
                pattern.examples.append(
                    OverrideExample(
                        task_id=task["id"],
                        mail_subject=task.get("title"),
                        original_case=inferred_case.get("case_number"),
                    )
                )
        return patterns


def _build_suggestion(
    pattern: _OverridePattern, rule: Record, target_case: Record
) -> OptimizationSuggestion:
    catch_config: Mapping[str, Any] = rule.get("catch_config") or {}
    current_regex = catch_config.get("subject_regex") or ""
    case_number = str(target_case.get("case_number") or "")
    return OptimizationSuggestion(
        rule_id=pattern.rule_id,
        rule_name=rule.get("name") or UNKNOWN_RULE,
        current_subject_regex=current_regex,
        suggested_case_number=case_number,
        suggested_regex=f"(?:{case_number}|{current_regex or '.*'})",
        override_count=pattern.count,
        examples=tuple(pattern.examples),
        message=(
            f"Users have manually linked {pattern.count} emails to case "
            f"{case_number} ({target_case.get('title')}). "
            "Consider updating the rule's subject regex."
        ),
    )


__all__ = ["RuleOptimizationAdvisor"]
