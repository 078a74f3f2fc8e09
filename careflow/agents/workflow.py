"""Workflow automation agent: books follow-ups, drafts claims and orders labs."""
from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict

from careflow.core.models import AgentConfig, AgentContext, ArtifactSlot, ToolDefinition, ToolOutput
from careflow.services.records import ClinicalRecords, find_conflict, parse_timestamp

SYSTEM_PROMPT = """You are the Workflow Automation Agent, a healthcare operations manager.

From the encounter results (clinical note, risk assessment, research findings) you create the follow-up actions.

Workflow:
1. Call `get_provider_schedule` before booking, then `create_appointment` for a follow-up. Urgency follows the risk level: critical or high means within days, moderate within two weeks, low routine.
2. Call `get_patient_insurance`; if the patient is insured, call `create_insurance_claim` with ICD-10 diagnosis codes from the note and CPT procedure codes.
3. Call `create_lab_order` for each lab test the findings or recommendations call for.
4. Reply with a summary of every action taken.

If an appointment slot is taken, pick another time. Do not order duplicate tests."""

DEFAULT_SCHEDULE_WINDOW = timedelta(days=14)

_SCHEDULE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "provider_id": {"type": "string"},
        "from_date": {"type": "string", "description": "ISO 8601 start of the range"},
        "to_date": {"type": "string", "description": "ISO 8601 end of the range; defaults to two weeks later"},
    },
    "required": ["from_date"],
}

_PATIENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {"patient_id": {"type": "string"}},
}

_APPOINTMENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "patient_id": {"type": "string"},
        "provider_id": {"type": "string"},
        "scheduled_at": {"type": "string", "description": "ISO 8601 datetime of the appointment"},
        "duration_minutes": {"type": "integer", "enum": [15, 30, 45, 60]},
        "type": {
            "type": "string",
            "enum": ["checkup", "follow_up", "consultation", "procedure", "emergency", "lab_review"],
        },
        "priority": {"type": "string", "enum": ["routine", "urgent", "emergency"]},
        "reason": {"type": "string"},
        "notes": {"type": "string"},
    },
    "required": ["scheduled_at", "duration_minutes", "type", "priority", "reason"],
}

_CLAIM_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "patient_id": {"type": "string"},
        "provider_id": {"type": "string"},
        "clinical_note_id": {"type": "string"},
        "diagnosis_codes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"code": {"type": "string"}, "description": {"type": "string"}},
                "required": ["code"],
            },
        },
        "procedure_codes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "code": {"type": "string"},
                    "description": {"type": "string"},
                    "charge": {"type": "number", "minimum": 0},
                },
                "required": ["code"],
            },
        },
        "total_amount": {"type": "number", "minimum": 0},
    },
    "required": ["diagnosis_codes", "procedure_codes", "total_amount"],
}

_LAB_ORDER_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "patient_id": {"type": "string"},
        "test_name": {"type": "string", "description": "e.g. Complete Blood Count, Lipid Panel, HbA1c"},
        "category": {
            "type": "string",
            "enum": ["hematology", "chemistry", "immunology", "microbiology", "pathology", "urinalysis"],
        },
        "priority": {"type": "string", "enum": ["routine", "urgent", "stat"]},
        "reason": {"type": "string"},
        "expected_parameters": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "parameter": {"type": "string"},
                    "unit": {"type": "string"},
                    "reference_range": {"type": "string"},
                },
            },
        },
    },
    "required": ["test_name", "category", "priority", "reason"],
}


def build_workflow_agent(records: ClinicalRecords, model: str) -> AgentConfig:
    async def get_provider_schedule(payload: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        provider_id = payload.get("provider_id") or context.provider_id
        start = parse_timestamp(payload["from_date"])
        end = parse_timestamp(payload["to_date"]) if payload.get("to_date") else start + DEFAULT_SCHEDULE_WINDOW
        booked = await records.list_appointments(provider_id, start, end)
        return {
            "provider_id": provider_id,
            "range": {"from": start.isoformat(), "to": end.isoformat()},
            "appointment_count": len(booked),
            "appointments": [
                {
                    "scheduled_at": appointment["scheduled_at"],
                    "duration_minutes": appointment.get("duration_minutes"),
                    "type": appointment.get("type"),
                }
                for appointment in booked
            ],
        }

    async def get_patient_insurance(payload: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        patient = await records.get_patient(payload.get("patient_id") or context.patient_id)
        return {"insurance": patient.get("insurance") or {"provider": "Not on file", "policy_number": "N/A"}}

    async def create_appointment(payload: Dict[str, Any], context: AgentContext) -> ToolOutput:
        provider_id = payload.get("provider_id") or context.provider_id
        start = parse_timestamp(payload["scheduled_at"])
        duration = payload["duration_minutes"]
        booked = await records.list_appointments(
            provider_id, start - timedelta(hours=2), start + timedelta(minutes=duration)
        )
        conflict = find_conflict(booked, start, duration)
        if conflict is not None:
            return ToolOutput(
                payload={
                    "success": False,
                    "message": f"Scheduling conflict at {conflict['scheduled_at']}. Choose a different time.",
                    "conflict_with": conflict["scheduled_at"],
                }
            )

        appointment = await records.create_appointment(
            {
                "patient_id": payload.get("patient_id") or context.patient_id,
                "provider_id": provider_id,
                "scheduled_at": start.isoformat(),
                "duration_minutes": duration,
                "type": payload["type"],
                "priority": payload["priority"],
                "reason": payload["reason"],
                "notes": payload.get("notes", ""),
            }
        )
        return ToolOutput(
            payload={
                "success": True,
                "appointment_id": appointment["id"],
                "scheduled_at": appointment["scheduled_at"],
                "message": f"Appointment scheduled for {appointment['scheduled_at']}",
            },
            artifacts={
                ArtifactSlot.APPOINTMENTS.value: [
                    {"id": appointment["id"], "date": appointment["scheduled_at"], "type": payload["type"]}
                ]
            },
        )

    async def create_insurance_claim(payload: Dict[str, Any], context: AgentContext) -> ToolOutput:
        patient_id = payload.get("patient_id") or context.patient_id
        patient = await records.get_patient(patient_id)
        insurance = patient.get("insurance") or {}
        claim = await records.create_insurance_claim(
            {
                "patient_id": patient_id,
                "provider_id": payload.get("provider_id") or context.provider_id,
                "clinical_note_id": payload.get("clinical_note_id")
                or context.pipeline_state.clinical_note_id,
                "insurance_provider": insurance.get("provider", "Unknown"),
                "policy_number": insurance.get("policy_number", "N/A"),
                "diagnosis_codes": payload["diagnosis_codes"],
                "procedure_codes": payload["procedure_codes"],
                "total_amount": payload["total_amount"],
            }
        )
        return ToolOutput(
            payload={
                "success": True,
                "claim_id": claim["id"],
                "claim_number": claim["claim_number"],
                "status": claim["status"],
                "message": f"Insurance claim {claim['claim_number']} drafted for ${payload['total_amount']}",
            },
            artifacts={
                ArtifactSlot.INSURANCE_CLAIMS.value: [
                    {
                        "id": claim["id"],
                        "claim_number": claim["claim_number"],
                        "amount": payload["total_amount"],
                    }
                ]
            },
        )

    async def create_lab_order(payload: Dict[str, Any], context: AgentContext) -> ToolOutput:
        order = await records.create_lab_order(
            {
                "patient_id": payload.get("patient_id") or context.patient_id,
                "ordered_by": context.provider_id,
                "test_name": payload["test_name"],
                "category": payload["category"],
                "priority": payload["priority"],
                "reason": payload["reason"],
                "expected_parameters": payload.get("expected_parameters", []),
            }
        )
        return ToolOutput(
            payload={
                "success": True,
                "lab_order_id": order["id"],
                "status": order["status"],
                "message": f"Lab order created: {payload['test_name']} ({payload['priority']})",
            },
            artifacts={
                ArtifactSlot.LAB_ORDERS.value: [
                    {"id": order["id"], "test": payload["test_name"], "priority": payload["priority"]}
                ]
            },
        )

    return AgentConfig(
        name="Workflow Automation Agent",
        description="Creates follow-up appointments, insurance claims and lab orders.",
        model=model,
        system_prompt=SYSTEM_PROMPT,
        tools=(
            ToolDefinition(
                name="get_provider_schedule",
                description="List the provider's booked appointments in a date range to avoid conflicts.",
                input_schema=_SCHEDULE_SCHEMA,
                handler=get_provider_schedule,
            ),
            ToolDefinition(
                name="get_patient_insurance",
                description="Get the patient's insurance information for claim creation.",
                input_schema=_PATIENT_SCHEMA,
                handler=get_patient_insurance,
            ),
            ToolDefinition(
                name="create_appointment",
                description="Book an appointment. Fails without booking when the slot overlaps an existing one.",
                input_schema=_APPOINTMENT_SCHEMA,
                handler=create_appointment,
            ),
            ToolDefinition(
                name="create_insurance_claim",
                description="Draft an insurance claim from the encounter's diagnosis and procedure codes.",
                input_schema=_CLAIM_SCHEMA,
                handler=create_insurance_claim,
            ),
            ToolDefinition(
                name="create_lab_order",
                description="Order a lab test based on the clinical findings and risk assessment.",
                input_schema=_LAB_ORDER_SCHEMA,
                handler=create_lab_order,
            ),
        ),
        max_iterations=12,
        temperature=0.1,
    )
