"""
Legal RAG Agent with tool calling

Bounded ReAct loop over the Bouwbesluit corpus. The model gets two tools:

- ``search_bouwbesluit(query, reasoning)`` runs multi-hop retrieval and
  returns a short preview of the best chunks
- ``provide_answer(answer, confidence, reasoning)`` ends the run

The loop stops as soon as ``provide_answer`` has been called, or once
``max_steps - 1`` searches have run. Search calls beyond that budget are
refused. If the loop ends without an answer but sources were found, one
extra completion synthesizes an answer from the top sources.
"""

import os
import time
import logging
from typing import Any, Optional
from dataclasses import dataclass, field

from .vector_store import RetrievedChunk
from .multi_hop import MultiHopRetriever
from .llm import ChatModel, ModelStep, ToolSpec
from .table_formatter import format_rag_context_for_prompt
from .language_patterns import (
    AGENT_SYSTEM_PROMPT,
    SEARCH_TOOL_DESCRIPTION,
    SEARCH_TOOL_PARAMETERS,
    ANSWER_TOOL_DESCRIPTION,
    ANSWER_TOOL_PARAMETERS,
    NO_RESULTS_OBSERVATION,
    SEARCH_BUDGET_EXHAUSTED_OBSERVATION,
    NO_ANSWER_FALLBACK,
    SYNTHESIS_SYSTEM_PROMPT,
    SYNTHESIS_USER_TEMPLATE,
)

logger = logging.getLogger(__name__)

SEARCH_TOOL = "search_bouwbesluit"
ANSWER_TOOL = "provide_answer"
CONFIDENCE_LEVELS = ("high", "medium", "low")


class AgentError(RuntimeError):
    """The chat model call failed; the run produced no result."""


@dataclass
class AgentConfig:
    """Configuration for the agent."""
    model: str = "gpt-4o"
    max_steps: int = 5

    # Retrieval behind the search tool
    search_max_hops: int = 2
    search_top_k: int = 5
    search_threshold: float = 0.3

    # Observation preview shown to the model
    preview_chunks: int = 3
    preview_chars: int = 300

    # Synthesis fallback context
    synthesis_sources: int = 5
    synthesis_chars: int = 1500


@dataclass
class AgentStep:
    step_number: int
    thought: str
    action: str
    action_input: dict
    observation: str
    is_complete: bool = False

    def to_dict(self) -> dict:
        return {
            "step_number": self.step_number,
            "thought": self.thought,
            "action": self.action,
            "action_input": self.action_input,
            "observation": self.observation,
            "is_complete": self.is_complete,
        }


@dataclass
class AgentResult:
    answer: str
    steps: list[AgentStep]
    reasoning: list[str]
    sources: list[RetrievedChunk]
    confidence: str
    execution_time_ms: int


@dataclass
class _RunState:
    """Per-query accumulators; never shared between runs."""
    sources: list[RetrievedChunk] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    searches: int = 0
    answer: Optional[dict[str, Any]] = None


def dedupe_sources(sources: list[RetrievedChunk]) -> list[RetrievedChunk]:
    """Keep the first occurrence of each chunk id."""
    seen = set()
    unique = []
    for source in sources:
        if source.id in seen:
            continue
        seen.add(source.id)
        unique.append(source)
    return unique


class LegalRAGAgent:
    """Tool-calling agent answering regulation questions with cited sources."""

    def __init__(
        self,
        multi_hop_retriever: MultiHopRetriever,
        chat_model: ChatModel,
        config: Optional[AgentConfig] = None,
    ):
        self.retriever = multi_hop_retriever
        self.chat_model = chat_model
        self.config = config or AgentConfig()

    # -------------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------------

    def _format_preview(self, chunks: list[RetrievedChunk]) -> str:
        if not chunks:
            return NO_RESULTS_OBSERVATION
        lines = []
        for i, chunk in enumerate(chunks[:self.config.preview_chunks], 1):
            lines.append(
                f"[{i}] {chunk.source_file} (score: {chunk.similarity * 100:.1f}%)\n"
                f"{chunk.text[:self.config.preview_chars]}..."
            )
        return "\n\n".join(lines)

    def _build_tools(self, project_id: str, state: _RunState, max_searches: int) -> list[ToolSpec]:
        def search(args: dict) -> str:
            query = str(args.get("query") or "").strip()
            reasoning = str(args.get("reasoning") or "").strip()

            if state.searches >= max_searches:
                logger.info(f"[Legal Agent] Search budget exhausted, refusing '{query}'")
                return SEARCH_BUDGET_EXHAUSTED_OBSERVATION
            state.searches += 1

            logger.info(f"[Legal Agent] Search: '{query}' ({reasoning})")
            state.reasoning.append(f"Zoeken: \"{query}\" - {reasoning}")

            if not query:
                return NO_RESULTS_OBSERVATION

            try:
                chunks = self.retriever.multi_hop_retrieve(
                    project_id,
                    query,
                    max_hops=self.config.search_max_hops,
                    min_similarity=self.config.search_threshold,
                    top_k_per_hop=self.config.search_top_k,
                )
            except Exception as e:
                logger.warning(f"[Legal Agent] Retrieval failed for '{query}': {type(e).__name__}: {e}")
                return NO_RESULTS_OBSERVATION

            state.sources.extend(chunks)
            return self._format_preview(chunks)

        def provide_answer(args: dict) -> str:
            confidence = str(args.get("confidence") or "low").lower()
            if confidence not in CONFIDENCE_LEVELS:
                confidence = "low"
            answer = str(args.get("answer") or "")
            reasoning = str(args.get("reasoning") or "")

            logger.info(f"[Legal Agent] Final answer ({confidence} confidence): {answer[:100]}...")
            state.reasoning.append(f"Antwoord ({confidence}): {reasoning}")
            state.answer = {"answer": answer, "confidence": confidence, "reasoning": reasoning}
            return "Antwoord ontvangen."

        return [
            ToolSpec(SEARCH_TOOL, SEARCH_TOOL_DESCRIPTION, SEARCH_TOOL_PARAMETERS, search),
            ToolSpec(ANSWER_TOOL, ANSWER_TOOL_DESCRIPTION, ANSWER_TOOL_PARAMETERS, provide_answer),
        ]

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def query(
        self,
        project_id: str,
        query: str,
        max_steps: Optional[int] = None,
        model: Optional[str] = None,
    ) -> AgentResult:
        """
        Answer a question with bounded tool use.

        Args:
            project_id: Tenant scope for every search
            query: User question
            max_steps: Model-step budget (defaults to config); searches are capped at max_steps - 1
            model: Chat model override

        Returns:
            AgentResult with answer, confidence, deduplicated sources and trace

        Raises:
            AgentError: the chat model call failed
        """
        start_time = time.time()
        max_steps = max_steps or self.config.max_steps
        max_searches = max(0, max_steps - 1)
        model = model or self.config.model
        state = _RunState()

        logger.info(f"[Legal Agent] Starting query: '{query[:100]}' (max_steps={max_steps})")

        def stop_when(steps: list[ModelStep]) -> bool:
            if any(tc.name == ANSWER_TOOL for step in steps for tc in step.tool_calls):
                return True
            return state.searches >= max_searches

        tools = self._build_tools(project_id, state, max_searches)

        try:
            loop = self.chat_model.complete_with_tools(
                AGENT_SYSTEM_PROMPT.format(max_searches=max_searches),
                query,
                tools,
                stop_when=stop_when,
                max_steps=max_steps,
                model=model,
            )
        except Exception as e:
            logger.error(f"[Legal Agent] Error: {e}")
            raise AgentError(f"Agent failed: {e}") from e

        steps = self._to_agent_steps(loop.steps)
        sources = dedupe_sources(state.sources)

        if state.answer is not None:
            answer = state.answer["answer"] or loop.text or NO_ANSWER_FALLBACK
            confidence = state.answer["confidence"]
        elif sources:
            answer = self._synthesize(query, sources, model)
            confidence = "medium"
            state.reasoning.append(
                f"Geen expliciet antwoord binnen {max_steps} stappen; "
                f"antwoord gesynthetiseerd uit {min(len(sources), self.config.synthesis_sources)} bronnen."
            )
        else:
            answer = loop.text.strip() or NO_ANSWER_FALLBACK
            confidence = "low"

        execution_time_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"[Legal Agent] Completed in {execution_time_ms}ms: {state.searches} searches, "
            f"{len(sources)} sources, confidence={confidence}"
        )

        return AgentResult(
            answer=answer,
            steps=steps,
            reasoning=state.reasoning,
            sources=sources,
            confidence=confidence,
            execution_time_ms=execution_time_ms,
        )

    def _synthesize(self, query: str, sources: list[RetrievedChunk], model: str) -> str:
        top = sorted(sources, key=lambda s: s.similarity, reverse=True)[:self.config.synthesis_sources]
        context = format_rag_context_for_prompt(
            {"text": s.text[:self.config.synthesis_chars], "file": s.source_file} for s in top
        )
        logger.info(f"[Legal Agent] No answer from tool loop, synthesizing from {len(top)} sources")

        try:
            text = self.chat_model.complete(
                SYNTHESIS_SYSTEM_PROMPT,
                SYNTHESIS_USER_TEMPLATE.format(query=query, context=context),
                model=model,
            )
        except Exception as e:
            logger.error(f"[Legal Agent] Synthesis failed: {e}")
            raise AgentError(f"Agent synthesis failed: {e}") from e
        return text or NO_ANSWER_FALLBACK

    @staticmethod
    def _to_agent_steps(model_steps: list[ModelStep]) -> list[AgentStep]:
        steps = []
        for model_step in model_steps:
            for call, result in zip(model_step.tool_calls, model_step.tool_results):
                steps.append(AgentStep(
                    step_number=len(steps) + 1,
                    thought=model_step.text or str(call.arguments.get("reasoning") or ""),
                    action=call.name,
                    action_input=call.arguments,
                    observation=result.output,
                    is_complete=call.name == ANSWER_TOOL,
                ))
            if not model_step.tool_calls and model_step.text:
                steps.append(AgentStep(
                    step_number=len(steps) + 1,
                    thought=model_step.text,
                    action="",
                    action_input={},
                    observation="",
                ))
        return steps


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    from .vector_store import ChunkStore
    from .embeddings import EmbeddingService
    from .retriever import HybridRetriever
    from .llm import ChatModelConfig

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    store = ChunkStore()
    store.connect()

    agent = LegalRAGAgent(
        MultiHopRetriever(HybridRetriever(store, EmbeddingService())),
        ChatModel(ChatModelConfig(model=os.getenv("AGENT_MODEL", "gpt-4o"))),
    )

    question = sys.argv[1] if len(sys.argv) > 1 else "Wat is de minimale vrije verdiepingshoogte voor een woning?"
    result = agent.query(os.getenv("PROJECT_ID", ""), question)

    print(f"\nAnswer ({result.confidence}):\n{result.answer}\n")
    for line in result.reasoning:
        print(f"  - {line}")
    print(f"\nSources: {len(result.sources)} ({result.execution_time_ms}ms)")

    store.close()
