"""Agent engine interface."""

from .engine import AgentEngine, EchoAgentEngine

__all__ = ["AgentEngine", "EchoAgentEngine"]
