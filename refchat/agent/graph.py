"""
LangGraph turn pipeline: plan sub-queries → retrieve numbered passages → END.

Orchestration only. Each node returns a state update; generation is streamed
separately by the chat service once the passages for the turn are in place.
"""

import logging
from typing import Any, TypedDict

from langgraph.graph import END, StateGraph

from refchat.agent.llm import LLMClient
from refchat.agent.planner import plan_queries
from refchat.core.models import ExtractedPassage, QueryPlan, TurnContext
from refchat.services.retrieval_service import RetrievalOrchestrator, RetrievalStats

logger = logging.getLogger(__name__)


class TurnState(TypedDict, total=False):
    turn: TurnContext
    plan: QueryPlan
    passages: tuple[ExtractedPassage, ...]
    stats: RetrievalStats


def build_graph(llm: LLMClient, retrieval: RetrievalOrchestrator) -> Any:
    """
    Build and compile the turn graph.
    plan_queries → retrieve_passages → END.
    """

    async def _plan_node(state: TurnState) -> dict:
        turn = state["turn"]
        logger.info("[graph:plan_queries] IN  session_id=%s question=%r", turn.session_id, turn.question)
        plan = await plan_queries(llm, turn.question, turn.history)
        logger.info("[graph:plan_queries] OUT specific=%d generic=%d", len(plan.specific), len(plan.generic))
        return {"plan": plan}

    async def _retrieve_node(state: TurnState) -> dict:
        turn = state["turn"]
        plan = state.get("plan") or QueryPlan(generic=(turn.question,))
        logger.info("[graph:retrieve_passages] IN  session_id=%s queries=%d", turn.session_id, len(plan.all_queries))
        result = await retrieval.retrieve(turn, plan)
        logger.info("[graph:retrieve_passages] OUT passages=%d", len(result.passages))
        return {"passages": result.passages, "stats": result.stats}

    graph = StateGraph(TurnState)
    graph.add_node("plan_queries", _plan_node)
    graph.add_node("retrieve_passages", _retrieve_node)
    graph.set_entry_point("plan_queries")
    graph.add_edge("plan_queries", "retrieve_passages")
    graph.add_edge("retrieve_passages", END)
    return graph.compile()


async def run_turn_pipeline(graph: Any, turn: TurnContext) -> TurnState:
    """Run plan + retrieval for one persisted user message."""
    logger.info("[run_turn_pipeline] START session_id=%s message_id=%s", turn.session_id, turn.user_message_id)
    final = await graph.ainvoke({"turn": turn})
    passages = final.get("passages") or ()
    logger.info("[run_turn_pipeline] END passages=%d refs=%s",
                len(passages), [p.reference_number for p in passages])
    return final
