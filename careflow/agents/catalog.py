"""Step name to agent configuration lookup, validated once at startup."""
from __future__ import annotations

from typing import Dict, Iterator, Mapping

from careflow.agents.clinical import build_clinical_agent
from careflow.agents.predictive import build_predictive_agent
from careflow.agents.research import build_research_agent
from careflow.agents.translator import build_translator_agent
from careflow.agents.workflow import build_workflow_agent
from careflow.core.models import AgentConfig, AgentStep
from careflow.core.tools import ToolRegistry, ToolRegistryError
from careflow.services.records import ClinicalRecords


class AgentCatalog:
    """Immutable set of agent configurations keyed by pipeline step."""

    def __init__(self, agents: Mapping[AgentStep, AgentConfig]) -> None:
        for step, agent in agents.items():
            if agent.max_iterations < 1:
                raise ToolRegistryError(f"Agent '{agent.name}' must allow at least one iteration")
            # Building a registry rejects duplicate names and malformed schemas.
            ToolRegistry(agent.tools)
        self._agents: Dict[AgentStep, AgentConfig] = dict(agents)

    def get(self, step: AgentStep) -> AgentConfig:
        return self._agents[step]

    def __contains__(self, step: object) -> bool:
        return step in self._agents

    def __iter__(self) -> Iterator[AgentStep]:
        return iter(self._agents)

    def __len__(self) -> int:
        return len(self._agents)


def build_default_catalog(records: ClinicalRecords, model: str) -> AgentCatalog:
    return AgentCatalog(
        {
            AgentStep.CLINICAL_DOCUMENTATION: build_clinical_agent(records, model),
            AgentStep.MEDICAL_TRANSLATOR: build_translator_agent(records, model),
            AgentStep.PREDICTIVE_ANALYTICS: build_predictive_agent(records, model),
            AgentStep.RESEARCH_SYNTHESIS: build_research_agent(records, model),
            AgentStep.WORKFLOW_AUTOMATION: build_workflow_agent(records, model),
        }
    )
