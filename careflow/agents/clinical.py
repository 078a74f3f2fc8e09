"""Clinical documentation agent: transcript in, structured SOAP note out."""
from __future__ import annotations

from typing import Any, Dict

from careflow.core.models import AgentConfig, AgentContext, ArtifactSlot, ToolDefinition, ToolOutput
from careflow.services.records import ClinicalRecords

SYSTEM_PROMPT = """You are the Clinical Documentation Agent, an expert medical scribe.

You turn patient encounter transcripts into structured, accurate clinical documentation.

Workflow:
1. Always call `get_patient_record` first to learn the patient's conditions, medications, allergies and history.
2. Analyse the transcript against that context.
3. Extract every medical entity (symptoms, diagnoses, medications, procedures, lab tests, vital signs) with a confidence score.
4. Build a SOAP note: chief complaint, history of present illness, physical exam findings, assessment with ICD-10 codes and severity, plan with priorities, prescriptions.
5. Call `create_clinical_note` to save the note.
6. Reply with a short summary of what was documented.

Confidence scores: 0.95+ explicitly stated, 0.8-0.94 strongly implied, 0.6-0.79 possibly mentioned.

Never fabricate information that is not in the transcript. Flag possible interactions with existing medications."""

_ENTITY_TYPES = ["symptom", "diagnosis", "medication", "procedure", "lab_test", "vital_sign"]

NOTE_TYPES = [
    "progress_note",
    "initial_consultation",
    "follow_up",
    "discharge_summary",
    "procedure_note",
]

_PATIENT_RECORD_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "patient_id": {
            "type": "string",
            "description": "Patient identifier; defaults to the patient of the current encounter",
        },
    },
}

_CLINICAL_NOTE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "patient_id": {"type": "string"},
        "provider_id": {"type": "string"},
        "note_type": {"type": "string", "enum": NOTE_TYPES},
        "chief_complaint": {"type": "string", "description": "Primary reason for the visit"},
        "history_of_present_illness": {"type": "string"},
        "physical_exam": {"type": "string"},
        "assessment": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "diagnosis": {"type": "string"},
                    "icd_code": {"type": "string"},
                    "severity": {"type": "string", "enum": ["mild", "moderate", "severe"]},
                    "notes": {"type": "string"},
                },
                "required": ["diagnosis"],
            },
        },
        "plan": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "treatment": {"type": "string"},
                    "priority": {"type": "string", "enum": ["routine", "urgent", "emergent"]},
                    "details": {"type": "string"},
                },
                "required": ["treatment"],
            },
        },
        "extracted_entities": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": _ENTITY_TYPES},
                    "value": {"type": "string"},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                    "context": {"type": "string"},
                },
                "required": ["type", "value"],
            },
        },
        "prescriptions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "medication": {"type": "string"},
                    "dosage": {"type": "string"},
                    "frequency": {"type": "string"},
                    "duration": {"type": "string"},
                    "instructions": {"type": "string"},
                },
                "required": ["medication"],
            },
        },
    },
    "required": ["note_type", "chief_complaint", "assessment", "plan", "extracted_entities"],
}


def build_clinical_agent(records: ClinicalRecords, model: str) -> AgentConfig:
    async def get_patient_record(payload: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        patient = await records.get_patient(payload.get("patient_id") or context.patient_id)
        return {
            **patient,
            "vital_signs": patient.get("vital_signs", [])[-3:],
            "medical_history": patient.get("medical_history", [])[-5:],
        }

    async def create_clinical_note(payload: Dict[str, Any], context: AgentContext) -> ToolOutput:
        note = {
            "patient_id": payload.get("patient_id") or context.patient_id,
            "provider_id": payload.get("provider_id") or context.provider_id,
            "note_type": payload["note_type"],
            "chief_complaint": payload["chief_complaint"],
            "history_of_present_illness": payload.get("history_of_present_illness", ""),
            "physical_exam": payload.get("physical_exam", ""),
            "assessment": payload["assessment"],
            "plan": payload["plan"],
            "extracted_entities": payload["extracted_entities"],
            "prescriptions": payload.get("prescriptions", []),
            "transcript": context.pipeline_state.transcript or "",
        }
        saved = await records.create_clinical_note(note)
        return ToolOutput(
            payload={
                "note_id": saved["id"],
                "message": "Clinical note created successfully",
                "verification_status": saved["verification_status"],
            },
            artifacts={
                ArtifactSlot.CLINICAL_NOTE_ID.value: saved["id"],
                ArtifactSlot.CLINICAL_NOTE.value: {
                    key: note[key]
                    for key in (
                        "chief_complaint",
                        "assessment",
                        "plan",
                        "extracted_entities",
                        "prescriptions",
                    )
                },
            },
        )

    return AgentConfig(
        name="Clinical Documentation Agent",
        description="Processes encounter transcripts into structured SOAP clinical notes.",
        model=model,
        system_prompt=SYSTEM_PROMPT,
        tools=(
            ToolDefinition(
                name="get_patient_record",
                description=(
                    "Retrieve the patient's medical record: demographics, chronic conditions, "
                    "medications, allergies, recent vital signs and history. Call this first."
                ),
                input_schema=_PATIENT_RECORD_SCHEMA,
                handler=get_patient_record,
            ),
            ToolDefinition(
                name="create_clinical_note",
                description=(
                    "Save a structured SOAP clinical note once the transcript has been analysed "
                    "and all medical entities extracted."
                ),
                input_schema=_CLINICAL_NOTE_SCHEMA,
                handler=create_clinical_note,
            ),
        ),
        max_iterations=8,
        temperature=0.1,
    )
