"""Predictive analytics agent: scores clinical risk and raises alerts."""
from __future__ import annotations

from typing import Any, Dict

from careflow.core.models import ARTIFACTS_KEY, AgentConfig, AgentContext, ArtifactSlot, ToolDefinition
from careflow.services.records import ClinicalRecords

SYSTEM_PROMPT = """You are the Predictive Analytics Agent, a clinical risk specialist.

Workflow:
1. Call `get_patient_health_data` for vital sign history, conditions, medications and risk factors.
2. Call `get_recent_clinical_notes` for the current clinical context.
3. Score each relevant category (cardiovascular, metabolic, respiratory, oncological, ...) from 0 to 100 with a level and the contributing factors.
4. Predict likely conditions with probabilities, timeframes and preventive actions.
5. Recommend next steps citing clinical guidelines (AHA, ADA, WHO, ...).
6. Raise alerts for critical or warning-level findings.
7. Call `create_risk_assessment` to save the assessment, then summarise the key risks.

Base every score on data returned by the tools. State your confidence honestly."""

_RISK_LEVELS = ["low", "moderate", "high", "critical"]

_PATIENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {"patient_id": {"type": "string"}},
}

_RECENT_NOTES_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "patient_id": {"type": "string"},
        "limit": {"type": "integer", "minimum": 1, "maximum": 20, "description": "Defaults to 3"},
    },
}

_RISK_ASSESSMENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "patient_id": {"type": "string"},
        "risk_scores": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "category": {"type": "string"},
                    "score": {"type": "number", "minimum": 0, "maximum": 100},
                    "level": {"type": "string", "enum": _RISK_LEVELS},
                    "factors": {"type": "array", "items": {"type": "string"}},
                    "evidence": {"type": "string"},
                },
                "required": ["category", "score", "level"],
            },
        },
        "overall_risk": {
            "type": "object",
            "properties": {
                "score": {"type": "number", "minimum": 0, "maximum": 100},
                "level": {"type": "string", "enum": _RISK_LEVELS},
            },
            "required": ["score", "level"],
        },
        "confidence_level": {"type": "number", "minimum": 0, "maximum": 1},
        "predictions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "condition": {"type": "string"},
                    "probability": {"type": "number", "minimum": 0, "maximum": 1},
                    "timeframe": {"type": "string"},
                    "risk_factors": {"type": "array", "items": {"type": "string"}},
                    "preventive_actions": {"type": "array", "items": {"type": "string"}},
                },
            },
        },
        "recommendations": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {
                        "type": "string",
                        "enum": ["lifestyle", "medication", "screening", "referral", "monitoring"],
                    },
                    "recommendation": {"type": "string"},
                    "priority": {"type": "string", "enum": ["routine", "important", "urgent"]},
                    "evidence": {"type": "string"},
                },
            },
        },
        "alerts": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ["critical", "warning", "info"]},
                    "message": {"type": "string"},
                    "category": {"type": "string"},
                    "requires_action": {"type": "boolean"},
                    "suggested_action": {"type": "string"},
                },
                "required": ["type", "message"],
            },
        },
    },
    "required": [
        "risk_scores",
        "overall_risk",
        "confidence_level",
        "predictions",
        "recommendations",
        "alerts",
    ],
}


def build_predictive_agent(records: ClinicalRecords, model: str) -> AgentConfig:
    async def get_patient_health_data(payload: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        return await records.get_patient(payload.get("patient_id") or context.patient_id)

    async def get_recent_clinical_notes(payload: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        notes = await records.list_clinical_notes(
            payload.get("patient_id") or context.patient_id, limit=payload.get("limit", 3)
        )
        return {
            "note_count": len(notes),
            "notes": [
                {
                    "chief_complaint": note.get("chief_complaint"),
                    "assessment": note.get("assessment", []),
                    "plan": note.get("plan", []),
                    "entities": note.get("extracted_entities", []),
                    "prescriptions": note.get("prescriptions", []),
                    "date": note.get("created_at"),
                }
                for note in notes
            ],
        }

    async def create_risk_assessment(payload: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        assessment = {
            **payload,
            "patient_id": payload.get("patient_id") or context.patient_id,
            "assessed_by": context.provider_id,
            "alerts": [{**alert, "acknowledged": False} for alert in payload["alerts"]],
        }
        saved = await records.create_risk_assessment(assessment)
        return {
            "assessment_id": saved["id"],
            "overall_risk": payload["overall_risk"],
            "alert_count": len(payload["alerts"]),
            "critical_alerts": sum(1 for alert in payload["alerts"] if alert["type"] == "critical"),
            "message": "Risk assessment created successfully",
            ARTIFACTS_KEY: {
                ArtifactSlot.RISK_ASSESSMENT_ID.value: saved["id"],
                ArtifactSlot.RISK_ASSESSMENT.value: assessment,
            },
        }

    return AgentConfig(
        name="Predictive Analytics Agent",
        description="Scores patient risk by category, predicts conditions and raises clinical alerts.",
        model=model,
        system_prompt=SYSTEM_PROMPT,
        tools=(
            ToolDefinition(
                name="get_patient_health_data",
                description=(
                    "Retrieve the full vital sign history, chronic conditions, medications, "
                    "risk factors and allergies needed for risk scoring."
                ),
                input_schema=_PATIENT_SCHEMA,
                handler=get_patient_health_data,
            ),
            ToolDefinition(
                name="get_recent_clinical_notes",
                description="Get the patient's most recent clinical notes, newest first.",
                input_schema=_RECENT_NOTES_SCHEMA,
                handler=get_recent_clinical_notes,
            ),
            ToolDefinition(
                name="create_risk_assessment",
                description=(
                    "Save a risk assessment with per-category scores, predictions, "
                    "recommendations and alerts."
                ),
                input_schema=_RISK_ASSESSMENT_SCHEMA,
                handler=create_risk_assessment,
            ),
        ),
        max_iterations=8,
        temperature=0.1,
    )
