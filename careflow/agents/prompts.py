"""Per-step task messages built from the accumulated pipeline state."""
from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Mapping

from careflow.core.models import AgentStep, ArtifactSlot, PipelineState


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _records(value: Any) -> List[Mapping[str, Any]]:
    if not isinstance(value, (list, tuple)):
        return []
    return [item for item in value if isinstance(item, Mapping)]


def _clinical_documentation(state: PipelineState) -> List[str]:
    return [
        "Process the following patient encounter transcript and generate a structured clinical note.",
        "",
        f"Patient ID: {state.patient_id}",
        f"Provider ID: {state.provider_id}",
        "",
        "Transcript:",
        '"""',
        state.transcript or "",
        '"""',
        "",
        "First retrieve the patient's medical record for context, then analyse the transcript, "
        "extract all medical entities and create a comprehensive clinical note.",
    ]


def _medical_translator(state: PipelineState) -> List[str]:
    return [
        "Translate the clinical documentation into patient-friendly language.",
        "",
        f"Patient ID: {state.patient_id}",
        f"Clinical Note ID: {state.clinical_note_id or 'not available'}",
        "",
        "Retrieve the clinical note and patient context, then save a complete translation with a "
        "simplified summary, diagnosis explanations, medication guides, risk warnings, lifestyle "
        "recommendations and follow-up instructions.",
    ]


def _predictive_analytics(state: PipelineState) -> List[str]:
    lines = [
        "Perform a comprehensive risk assessment for this patient based on their health data "
        "and recent clinical encounter.",
        "",
        f"Patient ID: {state.patient_id}",
        f"Provider ID: {state.provider_id}",
    ]
    if state.clinical_note:
        complaint = state.clinical_note.get("chief_complaint") or "a clinical encounter"
        lines += ["", f'Recent clinical context: the patient was just seen for "{complaint}".']
    lines += [
        "",
        "Retrieve the patient's health data and recent clinical notes, then:",
        "1. Score every relevant risk category",
        "2. Predict likely conditions with probabilities",
        "3. Recommend evidence-based next steps with guideline citations",
        "4. Raise alerts for critical or warning-level findings",
        "5. Save the complete risk assessment",
    ]
    return lines


def _research_synthesis(state: PipelineState) -> List[str]:
    lines = [
        "Search and synthesise medical research relevant to this patient's conditions and "
        "recent clinical findings.",
        "",
        f"Patient ID: {state.patient_id}",
    ]
    if state.clinical_note:
        complaint = state.clinical_note.get("chief_complaint") or "clinical encounter"
        lines.append(f'Clinical context: patient was seen for "{complaint}".')
    if state.risk_assessment:
        level = _mapping(state.risk_assessment.get("overall_risk")).get("level", "unknown")
        lines.append(f'Risk assessment: overall risk level is "{level}".')
    lines += [
        "",
        "Identify common findings, contradictions, evidence for current or proposed treatments, "
        "gaps in research and the clinical implications for this patient.",
    ]
    return lines


def _workflow_automation(state: PipelineState) -> List[str]:
    lines = [
        "Based on the complete clinical encounter results, create the appropriate workflow "
        "actions for this patient.",
        "",
        f"Patient ID: {state.patient_id}",
        f"Provider ID: {state.provider_id}",
    ]
    if state.clinical_note_id:
        lines.append(f"Clinical Note ID: {state.clinical_note_id}")
    note = state.clinical_note
    if note:
        lines.append(f"Chief complaint: {note.get('chief_complaint') or 'Not specified'}")
        diagnoses = [
            {key: item.get(key) for key in ("diagnosis", "icd_code", "severity")}
            for item in _records(note.get("assessment"))
        ]
        if diagnoses:
            lines.append(f"Diagnoses: {json.dumps(diagnoses, default=str)}")
    risk = state.risk_assessment
    if risk:
        overall = _mapping(risk.get("overall_risk"))
        lines.append(
            f"Risk level: {overall.get('level', 'unknown')} (score: {overall.get('score', 'N/A')})"
        )
        recommendations = _records(risk.get("recommendations"))
        if recommendations:
            lines.append(f"Recommendations: {json.dumps(recommendations[:5], default=str)}")
    if state.artifact(ArtifactSlot.RESEARCH_RESULTS):
        lines.append("A research synthesis is available for this encounter.")
    lines += [
        "",
        "1. Check the provider's schedule and book an appropriate follow-up appointment",
        "2. If the patient is insured, draft an insurance claim with diagnosis and procedure codes",
        "3. Order any lab tests recommended by the risk assessment and clinical findings",
    ]
    return lines


_BUILDERS: Dict[AgentStep, Callable[[PipelineState], List[str]]] = {
    AgentStep.CLINICAL_DOCUMENTATION: _clinical_documentation,
    AgentStep.MEDICAL_TRANSLATOR: _medical_translator,
    AgentStep.PREDICTIVE_ANALYTICS: _predictive_analytics,
    AgentStep.RESEARCH_SYNTHESIS: _research_synthesis,
    AgentStep.WORKFLOW_AUTOMATION: _workflow_automation,
}


def build_task_message(step: AgentStep, state: PipelineState) -> str:
    """Return the first user turn for ``step`` given everything produced so far."""
    return "\n".join(_BUILDERS[step](state))
