from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from songproxy.exceptions import InvalidTransitionError

DEFAULT_TAGS = ["pop", "emotional", "modern"]
DEFAULT_INSTRUMENTAL_PROMPT = "A calm instrumental composition with warm piano and ambient sounds."


class GenerationMode(str, Enum):
    """What the client supplies: full lyrics, a descriptive prompt, or nothing vocal."""

    CUSTOM = "custom"
    PROMPT = "prompt"
    INSTRUMENTAL = "instrumental"


class ProviderName(str, Enum):
    SONAUTO = "sonauto"
    ACESTEP = "acestep"


class TaskState(str, Enum):
    """Task lifecycle states."""

    SUBMITTED = "SUBMITTED"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    TIMEOUT = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({TaskState.SUCCESS, TaskState.FAILURE, TaskState.TIMEOUT})

_ALLOWED_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.SUBMITTED: frozenset({TaskState.PROCESSING, TaskState.FAILURE}),
    TaskState.PROCESSING: frozenset(TERMINAL_STATES),
}


# =============================================================================
# Request / response models
# =============================================================================


class GenerationRequest(BaseModel):
    """Inbound song generation request."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    mode: GenerationMode | None = Field(None, description="custom, prompt or instrumental")
    provider: ProviderName = Field(
        ProviderName.SONAUTO,
        validation_alias=AliasChoices("provider", "engine"),
        description="Backend provider (sonauto polls, acestep answers inline)",
    )
    prompt: str | None = Field(None, description="Free-text description of the song")
    lyrics: str | None = Field(None, description="Lyrics for custom mode")
    tags: list[str] | None = Field(None, description="Style tags")
    instrumental: bool = Field(False, description="Force an instrumental render")

    num_songs: int = Field(2, ge=1, description="Number of outputs to request")
    prompt_strength: float | None = Field(None, gt=0, description="Defaults depend on mode")
    balance_strength: float = Field(0.7, ge=0, le=1)
    duration: int = Field(60, ge=1, description="Duration in seconds (ACE-Step)")

    @model_validator(mode="after")
    def check_mode_requirements(self) -> GenerationRequest:
        if self.mode is None:
            raise ValueError("Mode missing (custom/prompt/instrumental)")
        if self.mode is GenerationMode.CUSTOM and not self.lyrics:
            raise ValueError("Lyrics missing for custom mode")
        if self.mode is GenerationMode.PROMPT and not self.prompt:
            raise ValueError("Prompt missing for prompt mode")
        return self

    @property
    def is_instrumental(self) -> bool:
        return self.mode is GenerationMode.INSTRUMENTAL or self.instrumental


class SubmitResponse(BaseModel):
    status: str = "SUBMITTED"
    task_id: str = Field(..., serialization_alias="taskId")


class StatusResponse(BaseModel):
    """Normalized status returned to clients for either provider."""

    status: str = Field(..., description="PROCESSING, SUCCESS or FAILURE")
    song_paths: list[str] | None = Field(None, description="Where the outputs can be fetched")
    error_message: str | None = None
    task_state: TaskState | None = Field(None, description="Local tracker state, when known")
    downloads: list[str] | None = Field(None, description="Locally stored copies")


class ErrorResponse(BaseModel):
    status: str = "ERROR"
    message: str


class TaskInfo(BaseModel):
    """Read-only snapshot of a tracked task."""

    model_config = ConfigDict(frozen=True)

    id: str
    mode: GenerationMode
    provider: ProviderName
    state: TaskState
    attempts: int
    created_at: datetime
    finished_at: datetime | None = None
    result_urls: tuple[str, ...] = ()
    artifacts: tuple[str, ...] = ()
    error: str | None = None


# =============================================================================
# Tracker-owned task record
# =============================================================================


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Task:
    """One generation request's lifecycle record; mutated only by the tracker."""

    id: str
    mode: GenerationMode
    provider: ProviderName
    created_at: datetime = field(default_factory=_utcnow)
    state: TaskState = TaskState.SUBMITTED
    attempts: int = 0
    result_urls: list[str] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)
    attempted_outputs: set[int] = field(default_factory=set)
    error: str | None = None
    finished_at: datetime | None = None
    history: list[TaskState] = field(default_factory=lambda: [TaskState.SUBMITTED])

    def advance(self, state: TaskState, error: str | None = None) -> None:
        if state is self.state and not state.is_terminal:
            return
        allowed = _ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if state not in allowed:
            raise InvalidTransitionError(
                f"Task {self.id} cannot move from {self.state.value} to {state.value}"
            )
        self.state = state
        self.history.append(state)
        if error is not None:
            self.error = error
        if state.is_terminal:
            self.finished_at = _utcnow()

    def snapshot(self) -> TaskInfo:
        return TaskInfo(
            id=self.id,
            mode=self.mode,
            provider=self.provider,
            state=self.state,
            attempts=self.attempts,
            created_at=self.created_at,
            finished_at=self.finished_at,
            result_urls=tuple(self.result_urls),
            artifacts=tuple(self.artifacts),
            error=self.error,
        )
