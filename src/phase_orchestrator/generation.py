"""Generation-engine contract consumed by the orchestrator, plus the default LangChain-backed engine."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from .llm import get_chat_model
from .models import ExecutionState, Phase, ResearchMode
from .phases import build_session_system_prompt
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextEvent:
    text: str


@dataclass(frozen=True)
class ProgressEvent:
    percentage: float


@dataclass(frozen=True)
class ErrorEvent:
    message: str


@dataclass(frozen=True)
class CancelledEvent:
    pass


GenerationEvent = TextEvent | ProgressEvent | ErrorEvent | CancelledEvent
OnGenerationEvent = Callable[[GenerationEvent], None]


@dataclass
class GenerationSession:
    """Provider-side conversational state for one execution.

    Owned by the orchestrator for the lifetime of a single start or checkpoint
    resume, then discarded.
    """

    project_id: str
    mode: ResearchMode
    system_prompt: str
    resumed: bool = False
    session_id: str = field(default_factory=lambda: f"session-{uuid.uuid4().hex[:12]}")
    history: list[BaseMessage] = field(default_factory=list)


def open_session(state: ExecutionState, *, resumed: bool = False) -> GenerationSession:
    return GenerationSession(
        project_id=state.project_id,
        mode=state.mode,
        system_prompt=build_session_system_prompt(state.project_name, resuming=resumed),
        resumed=resumed,
    )


class GenerationEngine(Protocol):
    """Turns a prompt into streamed text.

    Implementations call ``on_event`` for every chunk and return the full
    accumulated text. ``on_event`` may raise to abandon the attempt; the
    exception must propagate out of ``run_streaming`` unchanged.
    """

    async def run_streaming(
        self,
        prompt: str,
        on_event: OnGenerationEvent,
        session: GenerationSession,
        *,
        phase: Phase,
    ) -> str:
        ...


def _chunk_text(chunk: Any) -> str:
    content = getattr(chunk, "content", chunk)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
        return "".join(parts)
    return ""


class ChatModelGenerationEngine:
    """Streams phase content from a LangChain chat model chosen by research mode."""

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        model_factory: Callable[[str], BaseChatModel] | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.model_selection = self.settings.model_selection
        self._model_factory = model_factory if model_factory is not None else self._build_model
        self._models: dict[str, BaseChatModel] = {}

    def _build_model(self, model_name: str) -> BaseChatModel:
        return get_chat_model(
            model_name=model_name,
            temperature=self.settings.temperature,
            timeout=self.settings.request_timeout,
            max_retries=self.settings.max_retries,
        )

    def model_for(self, mode: ResearchMode) -> BaseChatModel:
        model_name = self.model_selection.resolve(mode)
        if model_name not in self._models:
            self._models[model_name] = self._model_factory(model_name)
        return self._models[model_name]

    async def run_streaming(
        self,
        prompt: str,
        on_event: OnGenerationEvent,
        session: GenerationSession,
        *,
        phase: Phase,
    ) -> str:
        model = self.model_for(session.mode)
        messages: list[BaseMessage] = [
            SystemMessage(content=session.system_prompt),
            *session.history,
            HumanMessage(content=prompt),
        ]
        logger.debug("Streaming %s for session %s (%d prior messages)", phase.value, session.session_id, len(session.history))

        parts: list[str] = []
        async for chunk in model.astream(messages):
            text = _chunk_text(chunk)
            if not text:
                continue
            parts.append(text)
            on_event(TextEvent(text=text))

        output = "".join(parts)
        session.history.extend([HumanMessage(content=prompt), AIMessage(content=output)])
        return output
