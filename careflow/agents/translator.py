"""Medical translator agent: clinical note in, patient-friendly explanation out."""
from __future__ import annotations

from typing import Any, Dict

from careflow.core.models import AgentConfig, AgentContext, ArtifactSlot, ToolDefinition, ToolOutput
from careflow.services.records import ClinicalRecords

SYSTEM_PROMPT = """You are the Medical Translator Agent. You rewrite clinical documentation so that a patient with no medical background can understand it.

Workflow:
1. Call `get_clinical_note` to retrieve the clinical documentation.
2. Call `get_patient_context` for the patient's name, allergies and existing conditions.
3. Work through every diagnosis, procedure and medication in the note.
4. Call `save_translation` with a simplified summary, diagnosis explanations, medication guides, risk warnings, lifestyle recommendations and follow-up instructions.

Guidelines:
- Aim for a 6th-grade reading level and explain any medical term you keep.
- Be warm and factual. Address the patient by name when possible.
- Always mention allergies next to any new medication and flag possible interactions prominently."""

_NOTE_ID_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "note_id": {
            "type": "string",
            "description": "Clinical note identifier; defaults to the note produced earlier in this pipeline",
        },
    },
}

_PATIENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {"patient_id": {"type": "string"}},
}

_TRANSLATION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "note_id": {"type": "string"},
        "simplified_summary": {"type": "string", "description": "Plain-language summary of the visit"},
        "diagnosis_explanations": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "original_term": {"type": "string"},
                    "simplified_explanation": {"type": "string"},
                    "what_it_means": {"type": "string"},
                    "what_to_do": {"type": "string"},
                },
            },
        },
        "medication_guides": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "medication_name": {"type": "string"},
                    "purpose": {"type": "string"},
                    "how_to_take": {"type": "string"},
                    "common_side_effects": {"type": "array", "items": {"type": "string"}},
                    "warnings": {"type": "array", "items": {"type": "string"}},
                    "when_to_call_doctor": {"type": "string"},
                },
            },
        },
        "risk_warnings": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "warning": {"type": "string"},
                    "severity": {"type": "string", "enum": ["info", "caution", "urgent"]},
                    "action": {"type": "string"},
                },
            },
        },
        "lifestyle_recommendations": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "category": {
                        "type": "string",
                        "enum": ["diet", "exercise", "sleep", "stress", "general"],
                    },
                    "recommendation": {"type": "string"},
                    "details": {"type": "string"},
                },
            },
        },
        "follow_up_instructions": {"type": "string"},
    },
    "required": ["simplified_summary", "diagnosis_explanations", "medication_guides"],
}


def _resolve_note_id(payload: Dict[str, Any], context: AgentContext) -> str:
    note_id = payload.get("note_id") or context.pipeline_state.clinical_note_id
    if not note_id:
        raise ValueError("No clinical note id given and none produced earlier in this pipeline")
    return note_id


def build_translator_agent(records: ClinicalRecords, model: str) -> AgentConfig:
    async def get_clinical_note(payload: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        return await records.get_clinical_note(_resolve_note_id(payload, context))

    async def get_patient_context(payload: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        patient = await records.get_patient(payload.get("patient_id") or context.patient_id)
        return {
            key: patient.get(key)
            for key in ("name", "date_of_birth", "allergies", "medications", "chronic_conditions")
        }

    async def save_translation(payload: Dict[str, Any], context: AgentContext) -> ToolOutput:
        translation = {
            "note_id": _resolve_note_id(payload, context),
            "simplified_summary": payload["simplified_summary"],
            "diagnosis_explanations": payload["diagnosis_explanations"],
            "medication_guides": payload["medication_guides"],
            "risk_warnings": payload.get("risk_warnings", []),
            "lifestyle_recommendations": payload.get("lifestyle_recommendations", []),
            "follow_up_instructions": payload.get("follow_up_instructions", ""),
        }
        return ToolOutput(
            payload={"message": "Translation saved successfully", "note_id": translation["note_id"]},
            artifacts={ArtifactSlot.TRANSLATION.value: translation},
        )

    return AgentConfig(
        name="Medical Translator Agent",
        description="Rewrites clinical notes as patient-friendly explanations.",
        model=model,
        system_prompt=SYSTEM_PROMPT,
        tools=(
            ToolDefinition(
                name="get_clinical_note",
                description="Retrieve the clinical note to translate into patient-friendly language.",
                input_schema=_NOTE_ID_SCHEMA,
                handler=get_clinical_note,
            ),
            ToolDefinition(
                name="get_patient_context",
                description="Get patient demographics, medications and allergies for a personalised translation.",
                input_schema=_PATIENT_SCHEMA,
                handler=get_patient_context,
            ),
            ToolDefinition(
                name="save_translation",
                description="Save the complete patient-friendly translation with all sections.",
                input_schema=_TRANSLATION_SCHEMA,
                handler=save_translation,
            ),
        ),
        max_iterations=8,
        temperature=0.3,
    )
