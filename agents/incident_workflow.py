"""Staged incident analysis: triage → root cause → remediation → monitoring."""
from __future__ import annotations

import asyncio
import json
import re
import uuid
from textwrap import dedent
from typing import Any, Dict, List, Optional
from langgraph.graph import StateGraph, END
from core.config import settings
from core.errors import NotFoundError, ParseError
from core.llm import InferencePort
from core.logging import bind_incident_context, clear_incident_context, get_logger
from incidents.checkpoints import CheckpointStore, RunStatus, WorkflowRun
from incidents.models import IncidentStatus, Severity, TimelineEventType, utcnow
from .conversation import ConversationEngine
from .state import IncidentPipelineState, PostIncidentSummary, WorkflowParams
from .steps import WorkflowStep

logger = get_logger(__name__)

NUMBERED_LINE = re.compile(r"^\d+\.")

INITIAL_ANALYSIS_SYSTEM_PROMPT = (
    "You are an incident response expert. Provide quick, actionable initial assessment."
)
ROOT_CAUSE_SYSTEM_PROMPT = (
    "You are a senior SRE performing root cause analysis. "
    "Be thorough but concise. Focus on actionable insights."
)
REMEDIATION_SYSTEM_PROMPT = (
    "You are creating an incident remediation runbook. "
    "Be specific, include commands, and consider safety/rollback."
)
MONITORING_SYSTEM_PROMPT = (
    "You are an observability expert. Recommend practical, actionable monitoring improvements."
)

INITIAL_ANALYSIS_QUESTIONS = dedent(
    """
    Provide:
    1. What systems are likely affected?
    2. What is the immediate impact?
    3. What should be the first diagnostic step?"""
)

ROOT_CAUSE_PROMPT = dedent(
    """\
    Based on this incident information, perform deep root cause analysis:

    Severity: {severity}
    Description: {description}
    Initial Analysis: {initial_analysis}

    Identify:
    1. Most likely root cause
    2. Contributing factors
    3. Why existing monitoring didn't catch this earlier
    4. Similar past incidents (if any patterns exist)"""
)

REMEDIATION_PROMPT = dedent(
    """\
    Create a detailed remediation plan for this incident:

    Severity: {severity}
    Description: {description}
    Root Cause: {root_cause}

    Provide:
    1. Immediate mitigation steps (to stop the bleeding)
    2. Short-term fixes (to restore service)
    3. Long-term solutions (to prevent recurrence)
    4. Rollback plan (if mitigation fails)
    5. Success criteria for each step

    Format as a numbered checklist with specific commands/actions where possible."""
)

MONITORING_PROMPT = dedent(
    """\
    Based on this incident, recommend monitoring improvements:

    Severity: {severity}
    Root Cause: {root_cause}

    Provide:
    1. New alerts that should be created
    2. Existing alerts that should be tuned
    3. New metrics to track
    4. Dashboard improvements
    5. SLO/SLA considerations"""
)


def extract_remediation_steps(plan: Any) -> List[str]:
    """
    Pull numbered checklist lines (``1.``, ``2.`` ...) out of a remediation plan.

    Raises:
        ParseError: When the plan is not text
    """
    if not isinstance(plan, str):
        raise ParseError(f"Remediation plan is not text: {type(plan).__name__}")
    return [
        line.strip()
        for line in plan.splitlines()
        if NUMBERED_LINE.match(line.strip())
    ]


def format_delay(seconds: float) -> str:
    """Human phrasing for the verification delay."""
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g} seconds"


class IncidentWorkflow:
    """
    Durable analysis pipeline for new incidents.

    Step order is a LangGraph state graph; durability comes from the run's
    step log. Re-entering the graph for an interrupted run replays recorded
    outputs and continues with the first step that has none.
    """

    def __init__(
        self,
        conversation: ConversationEngine,
        inference: InferencePort,
        checkpoints: CheckpointStore,
        verification_delay: Optional[float] = None,
        skip_verification_if_resolved: Optional[bool] = None,
        step_attempts: Optional[int] = None,
        retry_min_wait: Optional[float] = None,
        retry_max_wait: Optional[float] = None
    ):
        self.conversation = conversation
        self.repository = conversation.repository
        self.inference = inference
        self.checkpoints = checkpoints
        self.verification_delay = (
            settings.verification_delay_seconds if verification_delay is None else verification_delay
        )
        self.skip_verification_if_resolved = (
            settings.verification_skip_if_resolved
            if skip_verification_if_resolved is None
            else skip_verification_if_resolved
        )
        self.step_attempts = step_attempts
        self.retry_min_wait = retry_min_wait
        self.retry_max_wait = retry_max_wait
        self._tasks: Dict[str, asyncio.Task] = {}
        self.graph = self._build_graph()
        logger.info("Incident workflow initialized", verification_delay=self.verification_delay)

    def _build_graph(self):
        """
        Build the LangGraph workflow.

        Returns:
            Compiled StateGraph
        """
        workflow = StateGraph(IncidentPipelineState)

        workflow.add_node("initial-analysis", self._initial_analysis_node)
        workflow.add_node("update-initial-analysis", self._post_initial_analysis_node)
        workflow.add_node("root-cause-analysis", self._root_cause_node)
        workflow.add_node("generate-remediation", self._remediation_node)
        workflow.add_node("update-remediation-plan", self._write_back_node)
        workflow.add_node("monitoring-recommendations", self._monitoring_node)
        workflow.add_node("post-incident-summary", self._summary_node)
        workflow.add_node("wait-for-mitigation", self._wait_node)
        workflow.add_node("verify-mitigation", self._verify_node)

        workflow.set_entry_point("initial-analysis")
        workflow.add_edge("initial-analysis", "update-initial-analysis")
        workflow.add_edge("update-initial-analysis", "root-cause-analysis")
        workflow.add_edge("root-cause-analysis", "generate-remediation")
        workflow.add_edge("generate-remediation", "update-remediation-plan")
        workflow.add_edge("update-remediation-plan", "monitoring-recommendations")
        workflow.add_edge("monitoring-recommendations", "post-incident-summary")

        # Only critical incidents get the delayed mitigation check
        workflow.add_conditional_edges(
            "post-incident-summary",
            self._needs_verification,
            {
                "verify": "wait-for-mitigation",
                "end": END
            }
        )
        workflow.add_edge("wait-for-mitigation", "verify-mitigation")
        workflow.add_edge("verify-mitigation", END)

        return workflow.compile()

    # ------------------------------------------------------------------
    # Run management
    # ------------------------------------------------------------------

    def create_run(self, params: WorkflowParams) -> WorkflowRun:
        """Persist a new run so it can be resumed even if it never got to start."""
        run = WorkflowRun(
            run_id=uuid.uuid4().hex,
            incident_id=params["incident_id"],
            params=dict(params),
        )
        self.checkpoints.save(run)
        logger.info("Workflow run created", run_id=run.run_id, incident_id=run.incident_id)
        return run

    def launch(self, run_id: str) -> asyncio.Task:
        """Execute a run in the background. Launching an active run returns its task."""
        task = self._tasks.get(run_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self.run(run_id), name=f"incident-workflow-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run_id, None))
        return task

    async def start(self, params: WorkflowParams) -> str:
        """Create and launch a run; returns its id immediately."""
        run = self.create_run(params)
        self.launch(run.run_id)
        return run.run_id

    async def resume_pending(self) -> List[str]:
        """Relaunch every run left unfinished by a previous process."""
        resumed = []
        for run in self.checkpoints.pending_runs():
            if run.run_id in self._tasks:
                continue
            logger.info(
                "Resuming workflow run",
                run_id=run.run_id,
                incident_id=run.incident_id,
                completed_steps=list(run.outputs)
            )
            self.launch(run.run_id)
            resumed.append(run.run_id)
        return resumed

    async def wait_idle(self) -> None:
        """Wait for every active run to finish."""
        while any(not task.done() for task in self._tasks.values()):
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel active runs. Their step logs stay pending for the next resume."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def run(self, run_id: str) -> Optional[PostIncidentSummary]:
        """
        Execute (or resume) one run to completion or permanent failure.

        Returns:
            The post-incident summary, or None if the run failed
        """
        run = self.checkpoints.load(run_id)
        if run is None:
            raise ValueError(f"Workflow run not found: {run_id}")
        if run.status != RunStatus.RUNNING:
            return run.outputs.get("post-incident-summary")

        bind_incident_context(run.incident_id, run_id=run_id)
        state: IncidentPipelineState = {
            "run_id": run_id,
            "incident_id": run.incident_id,
            "severity": run.params.get("severity", ""),
            "description": run.params.get("description", ""),
            "logs": run.params.get("logs"),
            "metrics": run.params.get("metrics"),
        }

        try:
            logger.info("Starting analysis workflow", severity=state["severity"])
            final_state = await self.graph.ainvoke(state)
        except Exception as exc:  # pylint: disable=broad-except
            await self._fail(run_id, exc)
            return None
        finally:
            clear_incident_context()

        run = self.checkpoints.load(run_id)
        run.status = RunStatus.COMPLETED
        run.current_step = None
        self.checkpoints.save(run)
        logger.info("Analysis workflow completed", run_id=run_id, incident_id=run.incident_id)
        return final_state.get("summary")

    async def _fail(self, run_id: str, exc: Exception) -> None:
        """Mark a run failed and make the failure visible on the incident timeline."""
        run = self.checkpoints.load(run_id)
        step = run.current_step
        run.status = RunStatus.FAILED
        run.error = str(exc)
        self.checkpoints.save(run)

        logger.error(
            "Analysis workflow halted",
            run_id=run_id,
            incident_id=run.incident_id,
            step=step,
            error=str(exc)
        )

        try:
            async with self.repository.mutate(run.incident_id) as record:
                record.add_event(
                    TimelineEventType.UPDATE,
                    f"Automated analysis halted at step: {step or 'unknown'}",
                    {"run_id": run_id, "step": step, "error": str(exc)},
                )
        except NotFoundError:
            logger.warning("Incident missing while recording workflow failure", run_id=run_id)

    def _step(self, state: IncidentPipelineState) -> WorkflowStep:
        return WorkflowStep(
            self.checkpoints,
            state["run_id"],
            attempts=self.step_attempts,
            min_wait=self.retry_min_wait,
            max_wait=self.retry_max_wait,
        )

    async def _ask(self, system_prompt: str, prompt: str, temperature: float, max_tokens: int) -> str:
        return await self.inference.infer(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    async def _initial_analysis_node(self, state: IncidentPipelineState) -> Dict[str, Any]:
        lines = [
            "Analyze this incident and provide initial assessment:",
            "",
            f"Severity: {state['severity']}",
            f"Description: {state['description']}",
        ]
        if state.get("logs"):
            lines.append(f"Logs:\n{state['logs']}")
        if state.get("metrics") is not None:
            lines.append(f"Metrics:\n{json.dumps(state['metrics'], indent=2, default=str)}")
        lines.append(INITIAL_ANALYSIS_QUESTIONS)
        prompt = "\n".join(lines)

        analysis = await self._step(state).do(
            "initial-analysis",
            lambda: self._ask(INITIAL_ANALYSIS_SYSTEM_PROMPT, prompt, 0.3, 1024)
        )
        return {"initial_analysis": analysis}

    async def _post_initial_analysis_node(self, state: IncidentPipelineState) -> Dict[str, Any]:
        await self._step(state).do(
            "update-initial-analysis",
            lambda: self.conversation.post_system_message(
                state["incident_id"],
                f"Initial automated analysis completed:\n\n{state['initial_analysis']}",
                dedupe_key=f"{state['run_id']}:update-initial-analysis",
                description="Initial automated analysis posted",
                data={"run_id": state["run_id"], "step": "initial-analysis"},
            )
        )
        return {}

    async def _root_cause_node(self, state: IncidentPipelineState) -> Dict[str, Any]:
        prompt = ROOT_CAUSE_PROMPT.format(
            severity=state["severity"],
            description=state["description"],
            initial_analysis=state["initial_analysis"],
        )

        root_cause = await self._step(state).do(
            "root-cause-analysis",
            lambda: self._ask(ROOT_CAUSE_SYSTEM_PROMPT, prompt, 0.4, 1536)
        )
        return {"root_cause": root_cause}

    async def _remediation_node(self, state: IncidentPipelineState) -> Dict[str, Any]:
        prompt = REMEDIATION_PROMPT.format(
            severity=state["severity"],
            description=state["description"],
            root_cause=state["root_cause"],
        )

        plan = await self._step(state).do(
            "generate-remediation",
            lambda: self._ask(REMEDIATION_SYSTEM_PROMPT, prompt, 0.5, 2048)
        )
        return {"remediation_plan": plan}

    async def _write_back_node(self, state: IncidentPipelineState) -> Dict[str, Any]:
        try:
            steps = extract_remediation_steps(state.get("remediation_plan"))
        except ParseError as exc:
            logger.warning("Could not parse remediation plan", error=str(exc))
            steps = []

        async def write_back() -> List[str]:
            record = await self.repository.get(state["incident_id"])
            if record.root_cause == state["root_cause"] and record.remediation_steps == steps:
                return steps
            await self.conversation.update_status(
                state["incident_id"],
                root_cause=state["root_cause"],
                remediation_steps=steps,
            )
            return steps

        recorded = await self._step(state).do("update-remediation-plan", write_back)
        return {"remediation_steps": recorded}

    async def _monitoring_node(self, state: IncidentPipelineState) -> Dict[str, Any]:
        prompt = MONITORING_PROMPT.format(
            severity=state["severity"],
            root_cause=state["root_cause"],
        )

        monitoring = await self._step(state).do(
            "monitoring-recommendations",
            lambda: self._ask(MONITORING_SYSTEM_PROMPT, prompt, 0.6, 1536)
        )
        return {"monitoring": monitoring}

    async def _summary_node(self, state: IncidentPipelineState) -> Dict[str, Any]:
        async def assemble() -> PostIncidentSummary:
            return {
                "incident_id": state["incident_id"],
                "run_id": state["run_id"],
                "severity": state["severity"],
                "description": state["description"],
                "initial_analysis": state["initial_analysis"],
                "root_cause": state["root_cause"],
                "remediation": state["remediation_plan"],
                "remediation_steps": list(state.get("remediation_steps") or []),
                "monitoring": state["monitoring"],
                "timestamp": utcnow().isoformat(),
            }

        summary = await self._step(state).do("post-incident-summary", assemble)
        return {"summary": summary}

    @staticmethod
    def _needs_verification(state: IncidentPipelineState) -> str:
        return "verify" if state.get("severity") == Severity.CRITICAL.value else "end"

    async def _wait_node(self, state: IncidentPipelineState) -> Dict[str, Any]:
        await self._step(state).sleep("wait-for-mitigation", self.verification_delay)
        return {}

    async def _verify_node(self, state: IncidentPipelineState) -> Dict[str, Any]:
        incident_id = state["incident_id"]
        dedupe_key = f"{state['run_id']}:verify-mitigation"

        async def verify() -> Dict[str, Any]:
            record = await self.repository.get(incident_id)
            if self.skip_verification_if_resolved and record.status in (
                IncidentStatus.RESOLVED,
                IncidentStatus.MONITORING,
            ):
                async with self.repository.mutate(incident_id) as current:
                    if not current.has_event_key(dedupe_key):
                        current.add_event(
                            TimelineEventType.UPDATE,
                            "Mitigation check skipped: incident already "
                            f"{record.status.value}",
                            {"run_id": state["run_id"], "dedupe_key": dedupe_key},
                        )
                logger.info("Skipping mitigation check", status=record.status.value)
                return {"posted": False, "skipped": True, "status": record.status.value}

            posted = await self.conversation.post_system_message(
                incident_id,
                f"[Automated Check] {format_delay(self.verification_delay)} have passed. "
                "Please verify that mitigation steps have been applied and are effective.",
                dedupe_key=dedupe_key,
                description="Mitigation verification requested",
                data={"run_id": state["run_id"], "step": "verify-mitigation"},
            )
            return {"posted": posted, "skipped": False, "status": record.status.value}

        verification = await self._step(state).do("verify-mitigation", verify)
        return {"verification": verification}
