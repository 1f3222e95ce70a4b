"""External collaborator integrations"""

# Event Bus
from .event_bus import (
    EventBus, Event,
    WORKFLOW_CREATED, EXECUTION_EVENTS, STEP_EVENTS, TASK_EVENTS
)

# Collaborators
from .llm import LLMProvider, LLMResponse, EchoLLMProvider
from .tool_registry import ToolRegistry, ToolDefinition, ToolResult, LocalToolRegistry
from .notifications import NotificationService, Notification, InMemoryNotificationService
from .memory import MemoryManager, MemoryItem, InMemoryMemoryManager

__all__ = [
    # Event Bus
    "EventBus",
    "Event",
    "WORKFLOW_CREATED",
    "EXECUTION_EVENTS",
    "STEP_EVENTS",
    "TASK_EVENTS",

    # LLM
    "LLMProvider",
    "LLMResponse",
    "EchoLLMProvider",

    # Tool Registry
    "ToolRegistry",
    "ToolDefinition",
    "ToolResult",
    "LocalToolRegistry",

    # Notifications
    "NotificationService",
    "Notification",
    "InMemoryNotificationService",

    # Memory
    "MemoryManager",
    "MemoryItem",
    "InMemoryMemoryManager"
]
