"""
relaymcp core module.

Contains the conversation transcript and the query orchestrator.
"""

from relaymcp.core.orchestrator import Orchestrator, OrchestratorError
from relaymcp.core.transcript import Message, Transcript

__all__ = ["Message", "Orchestrator", "OrchestratorError", "Transcript"]
