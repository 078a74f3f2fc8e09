"""Research synthesis agent: finds and summarises literature relevant to the patient."""
from __future__ import annotations

from typing import Any, Dict

from careflow.core.models import AgentConfig, AgentContext, ArtifactSlot, ToolDefinition, ToolOutput
from careflow.services.records import ClinicalRecords

SYSTEM_PROMPT = """You are the Research Synthesis Agent, an evidence-based medicine specialist.

Workflow:
1. Call `get_patient_conditions` to learn what the patient is being treated for.
2. Call `search_research_papers` with targeted queries for each relevant condition and treatment. Run several searches.
3. Call `get_paper_details` on the most relevant results.
4. Synthesise: common findings, contradictions, evidence per treatment, gaps in research and clinical implications for this patient.
5. Call `save_research_synthesis` with the synthesis.

Only cite papers returned by the tools. Grade evidence as strong, moderate, weak or emerging."""

PAPER_CATEGORIES = [
    "Cardiology",
    "Neurology",
    "Oncology",
    "Endocrinology",
    "Pulmonology",
    "Immunology",
    "Infectious Disease",
    "General Medicine",
]

_PATIENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {"patient_id": {"type": "string"}},
}

_SEARCH_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "minLength": 1, "description": "Medical terms, conditions or treatments"},
        "category": {"type": "string", "enum": PAPER_CATEGORIES},
        "limit": {"type": "integer", "minimum": 1, "maximum": 20, "description": "Defaults to 5"},
    },
    "required": ["query"],
}

_PAPER_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {"paper_id": {"type": "string"}},
    "required": ["paper_id"],
}

_SYNTHESIS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "patient_id": {"type": "string"},
        "search_queries": {"type": "array", "items": {"type": "string"}},
        "papers_analyzed": {"type": "integer", "minimum": 0},
        "synthesis": {
            "type": "object",
            "properties": {
                "common_findings": {"type": "array", "items": {"type": "string"}},
                "contradictions": {"type": "array", "items": {"type": "string"}},
                "treatment_evidence": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "treatment": {"type": "string"},
                            "evidence_level": {
                                "type": "string",
                                "enum": ["strong", "moderate", "weak", "emerging"],
                            },
                            "supporting_papers": {"type": "integer"},
                            "summary": {"type": "string"},
                        },
                    },
                },
                "gaps_in_research": {"type": "array", "items": {"type": "string"}},
                "clinical_implications": {"type": "string"},
            },
        },
        "relevant_paper_ids": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["synthesis", "papers_analyzed"],
}


def build_research_agent(records: ClinicalRecords, model: str) -> AgentConfig:
    async def get_patient_conditions(payload: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        patient = await records.get_patient(payload.get("patient_id") or context.patient_id)
        return {
            "chronic_conditions": patient.get("chronic_conditions", []),
            "medications": patient.get("medications", []),
            "risk_factors": patient.get("risk_factors", []),
            "medical_history": patient.get("medical_history", [])[-5:],
        }

    async def search_research_papers(payload: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        papers = await records.search_papers(
            payload["query"], category=payload.get("category"), limit=payload.get("limit", 5)
        )
        return {
            "result_count": len(papers),
            "papers": [
                {
                    "id": paper["id"],
                    "title": paper.get("title"),
                    "authors": paper.get("authors", []),
                    "journal": paper.get("journal"),
                    "abstract": (paper.get("abstract") or "")[:500],
                    "key_findings": paper.get("key_findings", []),
                    "category": paper.get("category"),
                }
                for paper in papers
            ],
        }

    async def get_paper_details(payload: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        return await records.get_paper(payload["paper_id"])

    async def save_research_synthesis(payload: Dict[str, Any], context: AgentContext) -> ToolOutput:
        results = {
            "papers_analyzed": payload["papers_analyzed"],
            "search_queries": payload.get("search_queries", []),
            "synthesis": payload["synthesis"],
            "relevant_paper_ids": payload.get("relevant_paper_ids", []),
        }
        return ToolOutput(
            payload={"message": "Research synthesis saved", "papers_analyzed": results["papers_analyzed"]},
            artifacts={ArtifactSlot.RESEARCH_RESULTS.value: results},
        )

    return AgentConfig(
        name="Research Synthesis Agent",
        description="Searches the literature and synthesises evidence relevant to the patient.",
        model=model,
        system_prompt=SYSTEM_PROMPT,
        tools=(
            ToolDefinition(
                name="get_patient_conditions",
                description="Get the patient's chronic conditions, medications and risk factors.",
                input_schema=_PATIENT_SCHEMA,
                handler=get_patient_conditions,
            ),
            ToolDefinition(
                name="search_research_papers",
                description="Search research papers by query terms, optionally filtered by category.",
                input_schema=_SEARCH_SCHEMA,
                handler=search_research_papers,
            ),
            ToolDefinition(
                name="get_paper_details",
                description="Retrieve the full details of one research paper.",
                input_schema=_PAPER_SCHEMA,
                handler=get_paper_details,
            ),
            ToolDefinition(
                name="save_research_synthesis",
                description="Save the final research synthesis after analysing all relevant papers.",
                input_schema=_SYNTHESIS_SCHEMA,
                handler=save_research_synthesis,
            ),
        ),
        max_iterations=10,
        temperature=0.2,
    )
