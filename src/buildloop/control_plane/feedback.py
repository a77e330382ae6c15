"""
Feedback enrichment for the inner verification loop.

A failed QA report is folded into the next BuildSpec revision as one new
feedback block. The merge is deterministic and append-only:
- ``content`` is carried over unchanged
- every earlier feedback block is carried over unchanged, in order
- exactly one block is appended, tagged with the iteration that failed

Must-fix items come from critical/high issues, prioritized fixes from medium
ones; an issue's suggestion is preferred over its message.
"""

from __future__ import annotations

from typing import Any

import structlog

from buildloop.domain.models import BuildSpec, FeedbackBlock, QAReport, QAStatus


class FeedbackEnricher:
    """Produce BuildSpec revision N+1 from revision N and a failing QA report."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def build_block(
        self, report: QAReport, *, iteration: int, qa_report_ref: str
    ) -> FeedbackBlock:
        return FeedbackBlock(
            iteration=iteration,
            qa_report_ref=qa_report_ref,
            issues=report.issues,
            feedback_text=report.feedback_text,
            must_fix=report.must_fix,
            prioritized_fixes=report.prioritized_fixes,
            failed_checks=report.failed_checks,
        )

    def enrich(
        self,
        spec: BuildSpec,
        report: QAReport,
        *,
        iteration: int,
        qa_report_ref: str,
    ) -> BuildSpec:
        if report.status is not QAStatus.FAIL:
            raise ValueError("only failing QA reports can enrich a build spec")
        if report.execution_id != spec.execution_id:
            raise ValueError(
                f"QA report belongs to {report.execution_id}, spec to {spec.execution_id}"
            )
        if report.revision != spec.revision:
            raise ValueError(
                f"QA report judged revision {report.revision}, current spec is {spec.revision}"
            )
        if any(block.iteration >= iteration for block in spec.feedback):
            raise ValueError(f"iteration {iteration} does not follow the existing feedback blocks")

        block = self.build_block(report, iteration=iteration, qa_report_ref=qa_report_ref)
        enriched = BuildSpec(
            execution_id=spec.execution_id,
            revision=spec.revision + 1,
            content=spec.content,
            feedback=(*spec.feedback, block),
            previous_qa_report_ref=qa_report_ref,
        )
        self._logger.info(
            "build_spec_enriched",
            execution_id=spec.execution_id,
            from_revision=spec.revision,
            to_revision=enriched.revision,
            iteration=iteration,
            issue_count=len(block.issues),
            must_fix_count=len(block.must_fix),
        )
        return enriched


__all__ = ["FeedbackEnricher"]
