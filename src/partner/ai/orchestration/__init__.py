"""Agent orchestration engine: run loop, context ledger, tools and approvals."""

# Core types
from .types import (
    Attachment,
    ConversationSnapshot,
    Message,
    ModelClient,
    ModelReply,
    RunOutcome,
    RunStatus,
    StopReason,
    TodoItem,
    ToolCall,
    ToolCallEvent,
    ToolCallStatus,
    ToolSelection,
)
from .errors import (
    ConfigurationError,
    LedgerIntegrityError,
    ModelCallError,
    OrchestrationError,
)

# Context
from .ledger import (
    CompactionResult,
    CompactionStrategy,
    ContextLedger,
    estimate_tokens,
)

# Selection, approvals and delegation
from .selector import ToolSelector, selection_cap
from .approval import (
    ApprovalDecision,
    ApprovalGate,
    CallbackDecisionChannel,
    DecisionChannel,
    PendingApproval,
    PollingDecisionChannel,
    is_dangerous_command,
    requires_approval,
)
from .subagent import SubAgentResult, SubAgentSpawner

# Controller
from .controller import ControllerCallbacks, ControllerConfig, RunController

__all__ = [
    # types.py
    "Attachment",
    "ConversationSnapshot",
    "Message",
    "ModelClient",
    "ModelReply",
    "RunOutcome",
    "RunStatus",
    "StopReason",
    "TodoItem",
    "ToolCall",
    "ToolCallEvent",
    "ToolCallStatus",
    "ToolSelection",
    # errors.py
    "ConfigurationError",
    "LedgerIntegrityError",
    "ModelCallError",
    "OrchestrationError",
    # ledger.py
    "CompactionResult",
    "CompactionStrategy",
    "ContextLedger",
    "estimate_tokens",
    # selector.py
    "ToolSelector",
    "selection_cap",
    # approval.py
    "ApprovalDecision",
    "ApprovalGate",
    "CallbackDecisionChannel",
    "DecisionChannel",
    "PendingApproval",
    "PollingDecisionChannel",
    "is_dangerous_command",
    "requires_approval",
    # subagent.py
    "SubAgentResult",
    "SubAgentSpawner",
    # controller.py
    "ControllerCallbacks",
    "ControllerConfig",
    "RunController",
]
