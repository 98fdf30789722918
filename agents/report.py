"""Post-incident report compiler (markdown and JSON)."""
from __future__ import annotations

import json
import re
from datetime import datetime
from textwrap import dedent
from typing import Any, Dict, List, Literal, Optional
from core.config import settings
from core.errors import ServiceError, ValidationError
from core.llm import InferencePort
from core.logging import get_logger
from incidents.models import IncidentRecord, Message, MessageRole, utcnow
from incidents.store import IncidentRepository

logger = get_logger(__name__)

ReportFormat = Literal["markdown", "json"]

REPORT_VERSION = "1.0.0"
GENERATOR_NAME = "Incident Response Assistant"

# Leading "1." style numbering already present in stored steps
STEP_NUMBER = re.compile(r"^\s*\d+\.\s*")

SUMMARY_SYSTEM_PROMPT = (
    "You are an expert at writing professional incident reports for technical stakeholders."
)

RECOMMENDATIONS_SECTION = dedent(
    """
    ## Recommendations

    Based on this incident, the following recommendations are made:

    ### Immediate Actions
    - Review and implement all remediation steps
    - Verify all affected systems are fully operational
    - Update runbooks with new learnings

    ### Short-term Improvements (1-2 weeks)
    - Enhance monitoring for early detection
    - Implement additional alerting
    - Document incident response procedures

    ### Long-term Improvements (1-3 months)
    - Architectural changes to prevent recurrence
    - Automated remediation for common issues
    - Team training on incident patterns
    """
).strip()


def _display_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


def _display_duration(minutes: int) -> str:
    hours = minutes // 60
    return f"{hours}h {minutes % 60}m" if hours > 0 else f"{minutes}m"


class ReportCompiler:
    """Assembles a post-incident report from stored incident state."""

    def __init__(
        self,
        repository: IncidentRepository,
        inference: InferencePort,
        history_limit: Optional[int] = None,
        excerpt_chars: Optional[int] = None
    ):
        self.repository = repository
        self.inference = inference
        self.history_limit = settings.report_history_limit if history_limit is None else history_limit
        self.excerpt_chars = settings.report_excerpt_chars if excerpt_chars is None else excerpt_chars

    async def generate(self, incident_id: str, report_format: ReportFormat = "markdown") -> str:
        """
        Generate a report document.

        Args:
            incident_id: Incident identifier
            report_format: "markdown" (default, includes an AI executive summary) or "json"

        Returns:
            Report document text

        Raises:
            ValidationError: Unknown format
            NotFoundError: Unknown incident
            ServiceError: Executive summary generation failed
        """
        if report_format not in ("markdown", "json"):
            raise ValidationError(f"Unsupported report format: {report_format!r}")

        record = await self.repository.get(incident_id)
        logger.info("Generating incident report", incident_id=incident_id, format=report_format)

        if report_format == "json":
            return self.render_json(record)

        summary = await self.executive_summary(record)
        return self.render_markdown(record, summary)

    def _summary_prompt(self, record: IncidentRecord, now: datetime) -> str:
        end = record.end_time or now
        duration_minutes = max(int((end - record.start_time).total_seconds() // 60), 0)

        lines: List[str] = [
            "Generate a concise executive summary for this incident report:",
            "",
            f"Incident: {record.title}",
            f"Severity: {record.severity.value}",
            f"Duration: {duration_minutes} minutes",
            f"Status: {record.status.value}",
            f"Description: {record.description}",
        ]
        if record.affected_systems:
            lines.append(f"Affected Systems: {', '.join(record.affected_systems)}")
        if record.root_cause:
            lines.append(f"Root Cause: {record.root_cause}")

        lines.extend(["", "Conversation highlights:"])
        for message in record.history[:self.history_limit]:
            lines.append(f"{message.role.value}: {message.content[:self.excerpt_chars]}")

        lines.append(dedent(
            """
            Write a 2-3 paragraph executive summary that:
            1. Describes what happened and the impact
            2. Explains the root cause and resolution
            3. Highlights key learnings and next steps

            Keep it professional and concise for stakeholders."""
        ))
        return "\n".join(lines)

    async def executive_summary(self, record: IncidentRecord, now: Optional[datetime] = None) -> str:
        """One inference call condensing metadata and early conversation."""
        prompt = self._summary_prompt(record, now or utcnow())
        try:
            summary = await self.inference.infer(
                [
                    {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.4,
                max_tokens=1024,
            )
        except ServiceError as exc:
            logger.error("Executive summary generation failed", incident_id=record.id, error=str(exc))
            raise
        return summary.strip()

    def render_markdown(
        self,
        record: IncidentRecord,
        executive_summary: str,
        now: Optional[datetime] = None
    ) -> str:
        """Deterministic fixed-section markdown rendering."""
        now = now or utcnow()
        end = record.end_time or now
        duration_minutes = max(int((end - record.start_time).total_seconds() // 60), 0)
        affected = ", ".join(record.affected_systems) if record.affected_systems else "None specified"

        sections: List[str] = [
            "# Post-Incident Report",
            f"## {record.title}",
            f"**Incident ID:** {record.id}  \n**Generated:** {_display_time(now)}",
            "---",
            "## Executive Summary",
            executive_summary or "_No executive summary available._",
            "---",
            "## Incident Details",
            "\n".join([
                "| Field | Value |",
                "|-------|-------|",
                f"| **Incident ID** | {record.id} |",
                f"| **Severity** | {record.severity.value.upper()} |",
                f"| **Status** | {record.status.value} |",
                f"| **Start Time** | {_display_time(record.start_time)} |",
                f"| **End Time** | {_display_time(record.end_time) if record.end_time else 'Ongoing'} |",
                f"| **Duration** | {_display_duration(duration_minutes)} |",
                f"| **Affected Systems** | {affected} |",
            ]),
            "### Description",
            record.description,
            "---",
            "## Timeline",
        ]

        if record.timeline:
            for event in record.timeline:
                offset = max(int((event.timestamp - record.start_time).total_seconds() // 60), 0)
                block = (
                    f"### {event.timestamp.strftime('%H:%M:%S')} (+{offset}m)\n"
                    f"**Type:** {event.type.value}  \n"
                    f"**Description:** {event.description}"
                )
                if event.data:
                    block += f"\n\n```json\n{json.dumps(event.data, indent=2, default=str)}\n```"
                sections.append(block)
        else:
            sections.append("No timeline events recorded.")

        sections.extend(["---", "## Root Cause Analysis"])
        sections.append(
            record.root_cause or "Root cause analysis was not completed or documented."
        )

        sections.extend(["---", "## Remediation"])
        if record.remediation_steps:
            numbered = "\n".join(
                f"{index}. {STEP_NUMBER.sub('', step)}"
                for index, step in enumerate(record.remediation_steps, start=1)
            )
            sections.append(f"The following steps were taken to resolve the incident:\n\n{numbered}")
        else:
            sections.append("No remediation steps were documented.")

        sections.extend([
            "---",
            "## Conversation Log",
            "This section contains the investigation conversation between engineers and the AI assistant.",
        ])
        if record.history:
            sections.extend(self._render_message(message) for message in record.history)
        else:
            sections.append("No conversation history available.")

        sections.extend([
            "---",
            RECOMMENDATIONS_SECTION,
            "---",
            "## Metadata",
            f"**Report Format:** Markdown  \n**Generator:** {GENERATOR_NAME} {REPORT_VERSION}",
        ])

        return "\n\n".join(sections) + "\n"

    @staticmethod
    def _render_message(message: Message) -> str:
        author = "Engineer" if message.role == MessageRole.USER else "AI Assistant"
        return f"### {author} - {message.timestamp.strftime('%H:%M:%S')}\n\n{message.content}"

    @staticmethod
    def build_json_report(record: IncidentRecord) -> Dict[str, Any]:
        """
        Structured report derived purely from stored state.

        Unset optional fields are rendered as null. The ``incident``,
        ``timeline`` and ``conversation`` sections together carry every
        record field.
        """
        data = record.to_dict()
        timeline = data.pop("timeline")
        conversation = data.pop("history")
        duration_ms = (
            int((record.end_time - record.start_time).total_seconds() * 1000)
            if record.end_time
            else None
        )
        return {
            "metadata": {
                "report_id": f"REPORT-{record.id}",
                "generator": GENERATOR_NAME,
                "version": REPORT_VERSION,
            },
            "incident": {**data, "duration_ms": duration_ms},
            "timeline": timeline,
            "conversation": conversation,
        }

    @classmethod
    def render_json(cls, record: IncidentRecord) -> str:
        return json.dumps(cls.build_json_report(record), indent=2)

    @staticmethod
    def record_from_json_report(report: Dict[str, Any]) -> IncidentRecord:
        """Rebuild the incident record carried by a JSON report."""
        incident = {key: value for key, value in report["incident"].items() if key != "duration_ms"}
        return IncidentRecord.from_dict({
            **incident,
            "timeline": report["timeline"],
            "history": report["conversation"],
        })
