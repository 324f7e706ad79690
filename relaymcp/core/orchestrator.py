"""
relaymcp Orchestrator - Model turns, tool dispatch, and the follow-up round.

process_query(text):
1. Seed a fresh transcript with the user's text
2. Ask the model, offering every catalog capability as a function
3. Dispatch the model's tool calls in order, one at a time
4. Fold each result back as an (assistant call, tool result) pair
5. Ask the model again, at most ``max_tool_rounds`` times
6. Return the accumulated output, newline-joined

Nothing survives between queries.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from relaymcp.core.transcript import Transcript
from relaymcp.mcp.executor import DispatchOutcome, ProviderPool
from relaymcp.mcp.schema import (
    InvocationRequest,
    InvocationResult,
    ListResourcesRoute,
    ReadResourceRoute,
    ToolRoute,
)
from relaymcp.providers.base import Provider, ProviderResponse, ToolCallRequest

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ROUNDS = 1


class OrchestratorError(Exception):
    """Raised when a query cannot be processed at all."""

    pass


def render_trace(outcome: DispatchOutcome) -> str:
    """Operator-facing trace for one dispatched call. Binary parts become placeholders."""
    route = outcome.route
    args = json.dumps(outcome.arguments, ensure_ascii=False)

    if isinstance(route, ToolRoute):
        header = f"[Calling tool {route.name} on server {route.provider} with args {args}]"
    elif isinstance(route, ReadResourceRoute):
        header = f"[Reading resource {route.resource} on server {route.provider} with args {args}]"
    elif isinstance(route, ListResourcesRoute):
        header = f"[Listing resources on server {route.provider}]"
    else:
        header = f"[Calling {outcome.request.qualified_name}]"

    lines = [header]
    for part in outcome.result.content:
        lines.append(part.placeholder() if part.is_binary else (part.text or ""))
    return "\n".join(lines)


def collapse_result(result: InvocationResult) -> str:
    """Text-only form of a result for the transcript."""
    pieces = [part.placeholder() if part.is_binary else (part.text or "") for part in result.content]
    text = "\n".join(p for p in pieces if p)
    return text or "(empty result)"


class Orchestrator:
    """
    Drives one query at a time through the model and the provider pool.

    Example:
        >>> orchestrator = Orchestrator(pool, provider)
        >>> answer = await orchestrator.process_query("What is 100 RMB in USD?")
    """

    def __init__(
        self,
        pool: ProviderPool,
        provider: Provider,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        **completion_kwargs: Any,
    ):
        if max_tool_rounds < 1:
            raise ValueError("max_tool_rounds must be at least 1")
        self.pool = pool
        self.provider = provider
        self.max_tool_rounds = max_tool_rounds
        self.completion_kwargs = completion_kwargs

    async def process_query(self, text: str) -> str:
        """
        Answer one operator query.

        Tool failures are folded into the output and transcript as error
        text. Failures of the chat-completion call itself propagate.
        """
        if not self.pool.has_active_sessions():
            raise OrchestratorError("Not connected to any server")

        transcript = Transcript(text)
        tools = self.pool.catalog.function_descriptors()
        output: List[str] = []

        response = await self._complete(transcript, tools)
        rounds = 0
        while True:
            calls: List[ToolCallRequest] = []
            for choice in response.choices:
                if choice.content:
                    output.append(choice.content)
                calls.extend(choice.tool_calls)

            if not calls:
                break
            if rounds >= self.max_tool_rounds:
                logger.warning(
                    "Dropping %d tool call(s): limit of %d tool round(s) reached",
                    len(calls),
                    self.max_tool_rounds,
                )
                break

            for index, call in enumerate(calls):
                if not call.id:
                    call = ToolCallRequest(id=f"call_{rounds}_{index}", name=call.name, arguments=call.arguments)
                outcome = await self.pool.dispatch(InvocationRequest(
                    qualified_name=call.name,
                    arguments_json=call.arguments,
                    correlation_id=call.id,
                ))
                output.append(render_trace(outcome))
                transcript.add_tool_exchange(call, collapse_result(outcome.result))

            rounds += 1
            response = await self._complete(transcript, tools)

        return "\n".join(output)

    async def _complete(self, transcript: Transcript, tools: List[Dict[str, Any]]) -> ProviderResponse:
        return await self.provider.complete(
            transcript.to_messages(),
            tools=tools or None,
            **self.completion_kwargs,
        )

    async def close(self, provider_only: bool = False) -> None:
        """Release the chat client and, unless ``provider_only``, every session."""
        try:
            await self.provider.aclose()
        finally:
            if not provider_only:
                await self.pool.cleanup()
