"""Output classification — turn raw terminal chunks into typed events.

Two strategies ship with agentpty:

* ``HeuristicOutputParser`` for the CLI's interactive text mode. It
  accumulates chunks and looks for completion, error, and prompt markers.
* ``StructuredOutputParser`` for ``--output-format json``/``stream-json``,
  which reads newline-delimited JSON records.

Neither raises on odd input: anything unrecognized is classified ``raw``
so a parsing quirk can never stop the read loop.
"""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Protocol, runtime_checkable

from agentpty.config import ParserKind
from agentpty.text import clean_terminal_text


class OutputKind(enum.StrEnum):
    STATUS = "status"
    RESULT = "result"
    ERROR = "error"
    PROMPT = "prompt"
    RAW = "raw"


@dataclass(frozen=True)
class ParsedOutput:
    """One classified view of session output."""

    kind: OutputKind
    content: str
    data: dict[str, Any] | None = None
    is_complete: bool = False  # Only a terminal RESULT sets this
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether this output ends a completion wait."""
        return self.is_complete or self.kind == OutputKind.ERROR


@runtime_checkable
class OutputParser(Protocol):
    """Anything that can classify a chunk of session output."""

    def parse(self, output: str) -> ParsedOutput: ...

    def reset(self) -> None: ...


ParserFactory = Callable[[], OutputParser]


class HeuristicOutputParser:
    """Classifies interactive text output by substring and pattern match.

    Chunks are ANSI-stripped and accumulated so markers split across reads
    are still found. The accumulation buffer is cleared after every
    non-raw classification, and trimmed to ``max_buffer`` characters.
    """

    COMPLETION_MARKERS: tuple[str, ...] = ("Task completed", "Done")
    ERROR_MARKERS: tuple[str, ...] = ("Error:", "Failed")
    PROMPT_PHRASES: tuple[str, ...] = ("Please provide",)

    _ERROR_RE = re.compile(r"Error:\s*(.+?)(?:\r?\n|$)")

    def __init__(self, max_buffer: int = 64 * 1024) -> None:
        self._buffer = ""
        self._max_buffer = max_buffer

    def parse(self, output: str) -> ParsedOutput:
        self._buffer += clean_terminal_text(output)
        if len(self._buffer) > self._max_buffer:
            self._buffer = self._buffer[-self._max_buffer :]
        text = self._buffer

        if any(marker in text for marker in self.COMPLETION_MARKERS):
            self.reset()
            return ParsedOutput(kind=OutputKind.RESULT, content=text, is_complete=True)

        if any(marker in text for marker in self.ERROR_MARKERS):
            self.reset()
            return ParsedOutput(
                kind=OutputKind.ERROR, content=text, error=self.extract_error(text)
            )

        if text.rstrip().endswith("?") or any(p in text for p in self.PROMPT_PHRASES):
            self.reset()
            return ParsedOutput(kind=OutputKind.PROMPT, content=text)

        return ParsedOutput(kind=OutputKind.RAW, content=output)

    def extract_error(self, text: str) -> str:
        match = self._ERROR_RE.search(text)
        return match.group(1).strip() if match else text.strip()

    def reset(self) -> None:
        self._buffer = ""

    @property
    def buffered(self) -> str:
        return self._buffer


class StructuredOutputParser:
    """Classifies JSON records tagged by ``type``, one record per line.

    ``completion`` records (and stream-json ``result`` records) end a task;
    ``error`` records, or ``result`` records flagged ``is_error``, report
    failure; any other object is a status update.

    PTY reads do not respect record boundaries, so chunks are split on
    newlines and an unterminated tail that opens a JSON object is held
    until the rest arrives. A tail that already decodes as JSON is taken
    as is. When one chunk holds several records, the first terminal one
    wins, otherwise the last status.
    """

    COMPLETION_TYPES: tuple[str, ...] = ("completion", "result")
    ERROR_TYPES: tuple[str, ...] = ("error",)

    _LINE_SPLIT = re.compile(r"\r?\n")

    def __init__(self, max_buffer: int = 64 * 1024) -> None:
        self._pending = ""
        self._max_buffer = max_buffer

    def parse(self, output: str) -> ParsedOutput:
        *lines, self._pending = self._LINE_SPLIT.split(self._pending + output)

        tail = clean_terminal_text(self._pending).strip()
        if tail and _decode(tail) is not None:
            lines.append(tail)
            self._pending = ""
        elif not tail.startswith("{") or len(self._pending) > self._max_buffer:
            # Only the start of a JSON object is worth holding on to
            self._pending = ""

        status: ParsedOutput | None = None
        for line in lines:
            parsed = self._classify(clean_terminal_text(line).strip())
            if parsed is None:
                continue
            if parsed.is_terminal:
                return parsed
            status = parsed

        return status or ParsedOutput(kind=OutputKind.RAW, content=output)

    def _classify(self, line: str) -> ParsedOutput | None:
        data = _decode(line) if line else None
        if not isinstance(data, dict):
            return None

        record_type = data.get("type")

        if record_type in self.ERROR_TYPES or (
            record_type in self.COMPLETION_TYPES and data.get("is_error")
        ):
            message = _as_text(data.get("message") or data.get("error") or data.get("result"))
            return ParsedOutput(
                kind=OutputKind.ERROR,
                content=message,
                data=data,
                error=message or "Task failed",
            )

        if record_type in self.COMPLETION_TYPES:
            return ParsedOutput(
                kind=OutputKind.RESULT,
                content=_as_text(data.get("result")),
                data=data,
                is_complete=True,
            )

        return ParsedOutput(
            kind=OutputKind.STATUS,
            content=json.dumps(data, indent=2, ensure_ascii=False),
            data=data,
        )

    def reset(self) -> None:
        self._pending = ""


def _decode(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


_PARSERS: dict[ParserKind, ParserFactory] = {
    ParserKind.HEURISTIC: HeuristicOutputParser,
    ParserKind.STRUCTURED: StructuredOutputParser,
}


def create_parser(kind: ParserKind | str = ParserKind.HEURISTIC) -> OutputParser:
    """Instantiate the parser strategy for ``kind``."""
    return _PARSERS[ParserKind(kind)]()


def parser_factory(kind: ParserKind | str) -> ParserFactory:
    """A zero-argument factory producing fresh parsers of ``kind``."""
    return _PARSERS[ParserKind(kind)]
