"""
Storyloop role agents.

One agent per pipeline role:
- RequirementAnalyzerAgent / EpicStoryAgent: analysis and decomposition
- ScrumMasterAgent: runs the phase engine
- DeveloperAgent / FileGeneratorAgent: implement a Task, write its files
- CodeReviewerAgent / TesterAgent: reject or accept work with Failures
- Manifest, packaging, publishing, deployment and verification steps
- IssueResolverAgent: best-effort escalation of failures
"""

from storyloop.agents.analysis import EpicStoryAgent, RequirementAnalyzerAgent
from storyloop.agents.base import AgentResult, BaseAgent
from storyloop.agents.developer import DeveloperAgent, FileGeneratorAgent
from storyloop.agents.escalation import IssueResolverAgent
from storyloop.agents.reviewer import CodeReviewerAgent
from storyloop.agents.scrum import ScrumMasterAgent
from storyloop.agents.steps import (
    DeployerAgent,
    ManifestBuilderAgent,
    PackagerAgent,
    PublisherAgent,
    VerifierAgent,
)
from storyloop.agents.tester import TesterAgent

AGENT_CLASSES = {
    agent.role_id: agent
    for agent in (
        RequirementAnalyzerAgent,
        EpicStoryAgent,
        ScrumMasterAgent,
        DeveloperAgent,
        FileGeneratorAgent,
        CodeReviewerAgent,
        TesterAgent,
        ManifestBuilderAgent,
        PackagerAgent,
        PublisherAgent,
        DeployerAgent,
        VerifierAgent,
        IssueResolverAgent,
    )
}

__all__ = [
    "AGENT_CLASSES",
    "AgentResult",
    "BaseAgent",
    "CodeReviewerAgent",
    "DeployerAgent",
    "DeveloperAgent",
    "EpicStoryAgent",
    "FileGeneratorAgent",
    "IssueResolverAgent",
    "ManifestBuilderAgent",
    "PackagerAgent",
    "PublisherAgent",
    "RequirementAnalyzerAgent",
    "ScrumMasterAgent",
    "TesterAgent",
    "VerifierAgent",
]
