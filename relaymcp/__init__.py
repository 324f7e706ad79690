"""
relaymcp - Multi-server MCP client that lets a chat model call tools.

Connects to any number of MCP tool providers (stdio subprocesses or SSE
push streams), exposes their tools and resources to a chat-completion
model as one namespaced function catalog, and folds tool results back
into the conversation.

Architecture:
- Transport binding per provider (stdio or SSE)
- Provider session: handshake, tools, resources
- Capability catalog: ``<provider>__<name>`` namespace
- Orchestrator: model turn -> dispatch -> bounded follow-up round
- Interactive loop: prompt_toolkit + rich
"""

__version__ = "0.3.0"
__license__ = "Apache-2.0"
