"""Core agent components: prompt assembly, ledger, reasoner, executor, loop."""

from tactus_agent.core.context import ContextLedger, LedgerError, MessageBuilder
from tactus_agent.core.executor import Executor
from tactus_agent.core.orchestrator import Exchange, Orchestrator
from tactus_agent.core.reasoner import ActionType, Reasoner, ReasonerDecision

__all__ = [
    "ContextLedger",
    "LedgerError",
    "MessageBuilder",
    "Executor",
    "Exchange",
    "Orchestrator",
    "ActionType",
    "Reasoner",
    "ReasonerDecision",
]
