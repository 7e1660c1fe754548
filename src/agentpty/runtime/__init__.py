"""Runtime layer — output classification, completion waits, the façade."""

from agentpty.runtime.communicator import Communicator, format_message
from agentpty.runtime.parsers import (
    HeuristicOutputParser,
    OutputKind,
    OutputParser,
    ParsedOutput,
    StructuredOutputParser,
    create_parser,
)
from agentpty.runtime.runtime import AvailabilityResult, Runtime

__all__ = [
    "AvailabilityResult",
    "Communicator",
    "HeuristicOutputParser",
    "OutputKind",
    "OutputParser",
    "ParsedOutput",
    "Runtime",
    "StructuredOutputParser",
    "create_parser",
    "format_message",
]
