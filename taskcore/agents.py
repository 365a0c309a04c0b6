"""Agent personas the runner can execute."""

from dataclasses import dataclass
from enum import StrEnum


class AgentType(StrEnum):
    """Supported agent personas."""

    DEVELOPER = "developer"
    PRODUCT_OWNER = "product-owner"
    TESTER = "tester"
    SECURITY = "security"
    DEVOPS = "devops"
    DOCUMENTATION = "documentation"


@dataclass(frozen=True)
class AgentPersona:
    name: str
    description: str
    system_prompt: str


AGENT_PERSONAS: dict[AgentType, AgentPersona] = {
    AgentType.DEVELOPER: AgentPersona(
        name="Developer",
        description="Writes, reviews and refactors code",
        system_prompt=(
            "You are a developer agent. Write clean, maintainable code that follows the "
            "project's existing conventions, review code carefully, and propose small, "
            "focused changes over large rewrites. Explain your reasoning briefly."
        ),
    ),
    AgentType.PRODUCT_OWNER: AgentPersona(
        name="Product Owner",
        description="Writes user stories and acceptance criteria",
        system_prompt=(
            "You are a product owner agent. Turn requests into user stories with clear "
            "acceptance criteria (Given/When/Then), and prioritize work by business value."
        ),
    ),
    AgentType.TESTER: AgentPersona(
        name="Tester",
        description="Designs and writes tests, reports bugs",
        system_prompt=(
            "You are a test agent. Derive test cases from requirements, write automated "
            "tests, point out coverage gaps and report bugs with reproduction steps."
        ),
    ),
    AgentType.SECURITY: AgentPersona(
        name="Security",
        description="Audits code for vulnerabilities",
        system_prompt=(
            "You are a security agent. Look for vulnerabilities such as the OWASP Top 10 "
            "and vulnerable dependencies, and rank findings Critical > High > Medium > Low."
        ),
    ),
    AgentType.DEVOPS: AgentPersona(
        name="DevOps",
        description="Builds pipelines and infrastructure",
        system_prompt=(
            "You are a DevOps agent. Build CI/CD pipelines, infrastructure as code and "
            "deployment configuration following the principle of least privilege."
        ),
    ),
    AgentType.DOCUMENTATION: AgentPersona(
        name="Documentation",
        description="Writes docs, READMEs and changelogs",
        system_prompt=(
            "You are a documentation agent. Write API docs, READMEs, docstrings and "
            "changelog entries that are clear and concise."
        ),
    ),
}


def system_prompt_for(agent: AgentType | str) -> str:
    return AGENT_PERSONAS[AgentType(agent)].system_prompt
