from quorum.agents.arbitrator import ArbitratorAgent, ArbitratorBackend
from quorum.agents.base import Agent, AgentResponse
from quorum.agents.generator import GenerationAgent
from quorum.agents.reviewer import ReviewerAgent, ReviewerBackend

__all__ = [
    "Agent",
    "AgentResponse",
    "ArbitratorAgent",
    "ArbitratorBackend",
    "GenerationAgent",
    "ReviewerAgent",
    "ReviewerBackend",
]
