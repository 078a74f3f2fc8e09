"""Clinical record store consumed by the agents' tool handlers."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from careflow.core.models import utcnow


class RecordNotFoundError(KeyError):
    """Raised when a requested record does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Record not found"


class ClinicalRecords(Protocol):
    """Persistence operations the agent tools rely on."""

    async def get_patient(self, patient_id: str) -> Dict[str, Any]: ...

    async def create_clinical_note(self, note: Dict[str, Any]) -> Dict[str, Any]: ...

    async def get_clinical_note(self, note_id: str) -> Dict[str, Any]: ...

    async def list_clinical_notes(self, patient_id: str, limit: int = 5) -> List[Dict[str, Any]]: ...

    async def create_risk_assessment(self, assessment: Dict[str, Any]) -> Dict[str, Any]: ...

    async def search_papers(
        self, query: str, category: Optional[str] = None, limit: int = 5
    ) -> List[Dict[str, Any]]: ...

    async def get_paper(self, paper_id: str) -> Dict[str, Any]: ...

    async def list_appointments(
        self, provider_id: str, start: datetime, end: datetime
    ) -> List[Dict[str, Any]]: ...

    async def create_appointment(self, appointment: Dict[str, Any]) -> Dict[str, Any]: ...

    async def create_insurance_claim(self, claim: Dict[str, Any]) -> Dict[str, Any]: ...

    async def create_lab_order(self, order: Dict[str, Any]) -> Dict[str, Any]: ...


def _new_id() -> str:
    return uuid.uuid4().hex


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp, treating naive values as UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True)
class InMemoryClinicalRecords:
    """Process-local record store, seeded explicitly by callers and tests."""

    patients: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    notes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    risk_assessments: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    papers: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    appointments: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    insurance_claims: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    lab_orders: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def add_patient(self, patient: Dict[str, Any]) -> str:
        patient_id = patient.get("id") or _new_id()
        self.patients[patient_id] = {**patient, "id": patient_id}
        return patient_id

    def add_paper(self, paper: Dict[str, Any]) -> str:
        paper_id = paper.get("id") or _new_id()
        self.papers[paper_id] = {**paper, "id": paper_id}
        return paper_id

    async def get_patient(self, patient_id: str) -> Dict[str, Any]:
        return dict(self._require(self.patients, patient_id, "Patient"))

    async def create_clinical_note(self, note: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert(
            self.notes,
            {**note, "verification_status": "pending", "created_at": utcnow().isoformat()},
        )

    async def get_clinical_note(self, note_id: str) -> Dict[str, Any]:
        return dict(self._require(self.notes, note_id, "Clinical note"))

    async def list_clinical_notes(self, patient_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        notes = [note for note in self.notes.values() if note.get("patient_id") == patient_id]
        notes.sort(key=lambda note: note["created_at"], reverse=True)
        return [dict(note) for note in notes[:limit]]

    async def create_risk_assessment(self, assessment: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert(
            self.risk_assessments, {**assessment, "created_at": utcnow().isoformat()}
        )

    async def search_papers(
        self, query: str, category: Optional[str] = None, limit: int = 5
    ) -> List[Dict[str, Any]]:
        terms = query.lower().split()
        scored = []
        for paper in self.papers.values():
            if category and paper.get("category") != category:
                continue
            haystack = " ".join(
                [paper.get("title", ""), paper.get("abstract", ""), *paper.get("keywords", [])]
            ).lower()
            score = sum(1 for term in terms if term in haystack)
            if score:
                scored.append((score, paper))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [dict(paper) for _, paper in scored[:limit]]

    async def get_paper(self, paper_id: str) -> Dict[str, Any]:
        return dict(self._require(self.papers, paper_id, "Paper"))

    async def list_appointments(
        self, provider_id: str, start: datetime, end: datetime
    ) -> List[Dict[str, Any]]:
        booked = [
            appointment
            for appointment in self.appointments.values()
            if appointment["provider_id"] == provider_id
            and start <= parse_timestamp(appointment["scheduled_at"]) < end
        ]
        booked.sort(key=lambda appointment: appointment["scheduled_at"])
        return [dict(appointment) for appointment in booked]

    async def create_appointment(self, appointment: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert(self.appointments, {**appointment, "status": "scheduled"})

    async def create_insurance_claim(self, claim: Dict[str, Any]) -> Dict[str, Any]:
        claim_id = _new_id()
        return self._insert(
            self.insurance_claims,
            {**claim, "claim_number": f"CLM-{claim_id[:10].upper()}", "status": "draft"},
            record_id=claim_id,
        )

    async def create_lab_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert(self.lab_orders, {**order, "status": "ordered"})

    @staticmethod
    def _require(table: Dict[str, Dict[str, Any]], record_id: str, kind: str) -> Dict[str, Any]:
        record = table.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"{kind} not found: {record_id}")
        return record

    @staticmethod
    def _insert(
        table: Dict[str, Dict[str, Any]],
        record: Dict[str, Any],
        record_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        record_id = record_id or _new_id()
        table[record_id] = {**record, "id": record_id}
        return dict(table[record_id])


def find_conflict(
    booked: List[Dict[str, Any]], start: datetime, duration_minutes: int
) -> Optional[Dict[str, Any]]:
    """Return the first booked appointment overlapping the requested slot."""
    end = start + timedelta(minutes=duration_minutes)
    for appointment in booked:
        booked_start = parse_timestamp(appointment["scheduled_at"])
        booked_end = booked_start + timedelta(minutes=appointment.get("duration_minutes", 30))
        if booked_start < end and start < booked_end:
            return appointment
    return None
