import base64
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

COMMAND_KINDS = (
    "speak",
    "createText",
    "drawRectangle",
    "drawCircle",
    "drawArrow",
    "createTable",
    "fillTable",
    "clearCanvas",
    "session_end",
)

# Kinds that append a new object to the canvas model
DRAWABLE_KINDS = ("createText", "drawRectangle", "drawCircle", "drawArrow", "createTable")


class _Payload(BaseModel):
    # Wire format is camelCase (fontSize, colWidths, tableId ...)
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SpeakPayload(_Payload):
    text: str
    audio: Optional[bytes] = None

    @field_validator("audio", mode="before")
    @classmethod
    def _decode_audio(cls, value: Any) -> Any:
        if isinstance(value, str):
            return base64.b64decode(value)
        return value

    @field_serializer("audio", when_used="json-unless-none")
    def _encode_audio(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")


class CreateTextPayload(_Payload):
    x: float
    y: float
    text: str
    font_size: Optional[float] = None
    color: Optional[str] = None


class DrawRectanglePayload(_Payload):
    x: float
    y: float
    width: float
    height: float
    color: str
    label: Optional[str] = None


class DrawCirclePayload(_Payload):
    x: float
    y: float
    radius: float
    color: str
    label: Optional[str] = None


class DrawArrowPayload(_Payload):
    points: List[float]
    color: str

    @field_validator("points")
    @classmethod
    def _check_points(cls, points: List[float]) -> List[float]:
        if len(points) < 4 or len(points) % 2 != 0:
            raise ValueError("points must be flattened (x, y) pairs with at least two points")
        return points


class CreateTablePayload(_Payload):
    id: str
    x: float
    y: float
    rows: int = Field(..., ge=1)
    cols: int = Field(..., ge=1)
    col_widths: List[float]
    row_height: float
    headers: List[str]

    @model_validator(mode="after")
    def _check_columns(self) -> "CreateTablePayload":
        if len(self.col_widths) != self.cols:
            raise ValueError(f"colWidths has {len(self.col_widths)} entries, expected {self.cols}")
        if len(self.headers) != self.cols:
            raise ValueError(f"headers has {len(self.headers)} entries, expected {self.cols}")
        return self


class FillTablePayload(_Payload):
    table_id: str
    row: int = Field(..., ge=0)
    col: int = Field(..., ge=0)
    text: str


class EmptyPayload(_Payload):
    pass


class SpeakCommand(BaseModel):
    command: Literal["speak"] = "speak"
    payload: SpeakPayload
    # Narration is paced by its audio, any delay sent along is ignored
    delay: Optional[int] = None


class CreateTextCommand(BaseModel):
    command: Literal["createText"] = "createText"
    payload: CreateTextPayload
    delay: int = Field(..., ge=0)


class DrawRectangleCommand(BaseModel):
    command: Literal["drawRectangle"] = "drawRectangle"
    payload: DrawRectanglePayload
    delay: int = Field(..., ge=0)


class DrawCircleCommand(BaseModel):
    command: Literal["drawCircle"] = "drawCircle"
    payload: DrawCirclePayload
    delay: int = Field(..., ge=0)


class DrawArrowCommand(BaseModel):
    command: Literal["drawArrow"] = "drawArrow"
    payload: DrawArrowPayload
    delay: int = Field(..., ge=0)


class CreateTableCommand(BaseModel):
    command: Literal["createTable"] = "createTable"
    payload: CreateTablePayload
    delay: int = Field(..., ge=0)


class FillTableCommand(BaseModel):
    command: Literal["fillTable"] = "fillTable"
    payload: FillTablePayload
    delay: int = Field(..., ge=0)


class ClearCanvasCommand(BaseModel):
    command: Literal["clearCanvas"] = "clearCanvas"
    payload: EmptyPayload = Field(default_factory=EmptyPayload)
    delay: int = Field(..., ge=0)


class SessionEndCommand(BaseModel):
    command: Literal["session_end"] = "session_end"
    payload: EmptyPayload = Field(default_factory=EmptyPayload)
    delay: int = Field(0, ge=0)


Command = Annotated[
    Union[
        SpeakCommand,
        CreateTextCommand,
        DrawRectangleCommand,
        DrawCircleCommand,
        DrawArrowCommand,
        CreateTableCommand,
        FillTableCommand,
        ClearCanvasCommand,
        SessionEndCommand,
    ],
    Field(discriminator="command"),
]

CommandScript = List[Command]

COMMAND_ADAPTER = TypeAdapter(Command)
SCRIPT_ADAPTER = TypeAdapter(CommandScript)


def parse_command(data: Dict[str, Any]) -> Command:
    return COMMAND_ADAPTER.validate_python(data)


def parse_script(data: List[Dict[str, Any]]) -> CommandScript:
    return SCRIPT_ADAPTER.validate_python(data)


def dump_command(command: Command) -> Dict[str, Any]:
    """Transport form of a command: camelCase keys, base64 audio, unset fields omitted."""
    return command.model_dump(mode="json", by_alias=True, exclude_none=True)


def dump_script(commands: CommandScript) -> List[Dict[str, Any]]:
    return [dump_command(c) for c in commands]


def narration_texts(commands: CommandScript) -> List[str]:
    return [c.payload.text for c in commands if isinstance(c, SpeakCommand)]


class ModulePlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    steps: Tuple[str, ...]

    def __len__(self) -> int:
        return len(self.steps)


class AccumulatedModuleState(BaseModel):
    """What earlier module steps have drawn and said; read-only to the next step."""

    model_config = ConfigDict(frozen=True)

    commands: Tuple[Command, ...] = ()
    narration_texts: Tuple[str, ...] = ()

    def extended(self, step_commands: CommandScript) -> "AccumulatedModuleState":
        return AccumulatedModuleState(
            commands=self.commands + tuple(step_commands),
            narration_texts=self.narration_texts + tuple(narration_texts(step_commands)),
        )


class HistoryMessage(BaseModel):
    sender: Literal["user", "ai"]
    text: str


class DocumentSummary(BaseModel):
    filename: str
    summary: Optional[str] = None


class SessionTurnRequest(BaseModel):
    prompt: str
    history: List[HistoryMessage] = Field(default_factory=list)
    summary: Optional[str] = None
    document_ids: List[str] = Field(default_factory=list)
    document_summaries: List[DocumentSummary] = Field(default_factory=list)
    language_code: Optional[str] = None


class ConversationSummaryRequest(BaseModel):
    history: List[HistoryMessage] = Field(default_factory=list)


class ModuleLength(str, Enum):
    SHORT = "Short"
    MEDIUM = "Medium"
    LONG = "Long"


STEP_COUNTS = {ModuleLength.SHORT: 1, ModuleLength.MEDIUM: 3, ModuleLength.LONG: 5}


class ModuleRequest(BaseModel):
    prompt: str
    module_length: ModuleLength = ModuleLength.MEDIUM
    step_count: Optional[int] = Field(None, ge=1)
    document_ids: List[str] = Field(default_factory=list)
    document_context: Optional[str] = None
    language_code: Optional[str] = None

    def resolved_step_count(self) -> int:
        return self.step_count or STEP_COUNTS[self.module_length]


class ModuleStatus(str, Enum):
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class ModuleEvent(BaseModel):
    status: ModuleStatus
    module_id: str
    message: str = ""
    script: Optional[CommandScript] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != ModuleStatus.GENERATING


class ModuleRecord(BaseModel):
    module_id: str
    title: str
    prompt: str
    step_count: int
    language: str
    status: ModuleStatus = ModuleStatus.GENERATING
    message: str = ""
    script: List[Dict[str, Any]] = Field(default_factory=list)
    transcript: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
