"""
Agent identity models.

WHAT: Agent cards and counterpart references used for discovery
WHY: Buyers find sellers by capability tag and talk to them by endpoint
HOW: Pydantic v2 models mirroring the A2A agent card shape
"""

from pydantic import BaseModel, Field


class AgentSkill(BaseModel):
    """A capability advertised on an agent card."""

    id: str
    name: str
    description: str = ""
    tags: list[str] = Field(default_factory=list)


class AgentCard(BaseModel):
    """Public description of an agent."""

    agent_id: str
    name: str
    description: str = ""
    url: str
    version: str = "1.0.0"
    capabilities: list[str] = Field(default_factory=list)
    skills: list[AgentSkill] = Field(default_factory=list)
    address: str | None = None  # settlement account

    def to_counterpart(self) -> "CounterpartRef":
        return CounterpartRef(
            agent_id=self.agent_id,
            endpoint=self.url,
            capabilities=list(self.capabilities),
            name=self.name,
            address=self.address,
        )


class CounterpartRef(BaseModel):
    """Where to reach a discovered agent."""

    agent_id: str
    endpoint: str
    capabilities: list[str] = Field(default_factory=list)
    name: str | None = None
    address: str | None = None
