"""
Client-side script player.

The Player consumes a finished script one command at a time, applying each
command to its Canvas Model and pacing progression by the command's delay or
by narration playback. Canvas and narration are only touched from the
command-application step.

States: IDLE -> PLAYING <-> PAUSED, PLAYING -> DONE, DONE -> PLAYING (replay
after an implicit reset). `reset()` returns to IDLE from anywhere.
"""
import asyncio
import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Union

from pydantic import BaseModel, ValidationError

from .models import (
    DRAWABLE_KINDS,
    ClearCanvasCommand,
    Command,
    CreateTableCommand,
    FillTableCommand,
    SessionEndCommand,
    SpeakCommand,
    parse_command,
)

logger = logging.getLogger(__name__)


class PlaybackStatus(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    DONE = "done"


class NarrationOutput(Protocol):
    async def play(self, audio: bytes) -> None:
        """Return once the clip has finished playing."""

    def stop(self) -> None:
        """Abort the clip in flight, if any."""


@dataclass
class UnknownCommand:
    """A script entry this player does not understand; skipped during playback."""
    command: str
    raw: Dict[str, Any]


PlayableCommand = Union[Command, UnknownCommand]


@dataclass
class CanvasObject:
    id: str
    command: str
    payload: Dict[str, Any]
    cells: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id, "command": self.command, "payload": copy.deepcopy(self.payload)}
        if self.command == "createTable":
            data["cells"] = copy.deepcopy(self.cells)
        return data


class CanvasModel:
    """Ordered drawable objects; tables collect their filled cells."""

    def __init__(self):
        self._objects: List[CanvasObject] = []

    def __len__(self) -> int:
        return len(self._objects)

    def __iter__(self):
        return iter(self._objects)

    def add(self, obj: CanvasObject) -> None:
        self._objects.append(obj)

    def find_table(self, table_id: str) -> Optional[CanvasObject]:
        for obj in self._objects:
            if obj.command == "createTable" and obj.id == table_id:
                return obj
        return None

    def fill(self, table_id: str, row: int, col: int, text: str) -> bool:
        table = self.find_table(table_id)
        if table is None:
            return False
        table.cells.append({"row": row, "col": col, "text": text})
        return True

    def clear(self) -> None:
        self._objects = []

    def snapshot(self) -> List[Dict[str, Any]]:
        return [obj.to_dict() for obj in self._objects]


@dataclass
class PlaybackState:
    status: PlaybackStatus = PlaybackStatus.IDLE
    cursor: int = 0
    queue: List[PlayableCommand] = field(default_factory=list)


def load_commands(script: Iterable[Union[Command, Dict[str, Any]]]) -> List[PlayableCommand]:
    """Accept parsed commands or transport dicts; entries that do not parse become UnknownCommand."""
    commands: List[PlayableCommand] = []
    for index, item in enumerate(script):
        if isinstance(item, BaseModel):
            commands.append(item)
            continue
        try:
            commands.append(parse_command(item))
        except ValidationError as e:
            kind = item.get("command", "<missing>") if isinstance(item, dict) else type(item).__name__
            logger.warning(f"Command {index} ({kind}) cannot be played and will be skipped: {e.error_count()} error(s)")
            commands.append(UnknownCommand(command=str(kind), raw=item if isinstance(item, dict) else {}))
    return commands


def _payload_dict(command: Command) -> Dict[str, Any]:
    return command.payload.model_dump(mode="json", by_alias=True, exclude_none=True)


class Player:
    def __init__(
        self,
        narration: Optional[NarrationOutput] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_session_end: Optional[Callable[[List[Dict[str, Any]]], Any]] = None,
        on_update: Optional[Callable[["Player"], Any]] = None,
    ):
        if narration is None:
            from .media import FfplayNarration
            narration = FfplayNarration()
        self.narration = narration
        self.sleep = sleep
        self.on_session_end = on_session_end
        self.on_update = on_update
        self.canvas = CanvasModel()
        self.state = PlaybackState()
        self.current_narration_text: Optional[str] = None
        self._resume = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def status(self) -> PlaybackStatus:
        return self.state.status

    @property
    def current_command_index(self) -> int:
        return self.state.cursor

    @property
    def total_commands(self) -> int:
        return len(self.state.queue)

    @property
    def canvas_snapshot(self) -> List[Dict[str, Any]]:
        return self.canvas.snapshot()

    def load(self, script: Iterable[Union[Command, Dict[str, Any]]]) -> None:
        self.reset()
        self.state.queue = load_commands(script)
        logger.info(f"Loaded script with {self.total_commands} commands")
        self._notify()

    def play(self) -> None:
        """Start, resume, or replay. Must be called with a running event loop."""
        if self.state.status == PlaybackStatus.PLAYING:
            return
        if self.state.status == PlaybackStatus.DONE:
            queue = self.state.queue
            self.reset()
            self.state.queue = queue
        if not self.state.queue:
            logger.info("Nothing to play")
            return
        self.state.status = PlaybackStatus.PLAYING
        self._resume.set()
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
        self._notify()

    def pause(self) -> None:
        if self.state.status != PlaybackStatus.PLAYING:
            return
        self.state.status = PlaybackStatus.PAUSED
        self._resume.clear()
        self._notify()

    def reset(self) -> None:
        """Interrupt: cancel narration, clear the canvas, rewind, go idle."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self.narration.stop()
        self._resume.clear()
        self.canvas.clear()
        self.current_narration_text = None
        self.state.cursor = 0
        self.state.status = PlaybackStatus.IDLE
        self._notify()

    async def wait(self) -> None:
        """Wait until the current run finishes or is interrupted."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})

    async def _run(self) -> None:
        state = self.state
        while state.cursor < len(state.queue):
            command = state.queue[state.cursor]
            if await self._execute(command, state.cursor):
                state.status = PlaybackStatus.DONE
                self._notify()
                return
            # A pause holds the cursor on the finished command until resume
            await self._resume.wait()
            state.cursor += 1
            self._notify()
        state.status = PlaybackStatus.DONE
        logger.info("Playback finished, queue exhausted")
        self._notify()

    async def _execute(self, command: PlayableCommand, index: int) -> bool:
        """Apply one command and wait out its pacing. Returns True when playback must stop."""
        if isinstance(command, UnknownCommand):
            logger.warning(f"Unknown command: {command.command}")
            return False

        if isinstance(command, SpeakCommand):
            await self._speak(command)
            return False

        if isinstance(command, SessionEndCommand):
            logger.info(f"session_end reached at command {index}")
            if self.on_session_end is not None:
                self.on_session_end(self.canvas.snapshot())
            return True

        if isinstance(command, FillTableCommand):
            cell = command.payload
            if not self.canvas.fill(cell.table_id, cell.row, cell.col, cell.text):
                logger.warning(f"fillTable at command {index} references missing table '{cell.table_id}', skipping")
        elif isinstance(command, ClearCanvasCommand):
            self.canvas.clear()
        elif command.command in DRAWABLE_KINDS:
            object_id = command.payload.id if isinstance(command, CreateTableCommand) else f"{command.command}-{index}"
            self.canvas.add(CanvasObject(id=object_id, command=command.command, payload=_payload_dict(command)))
        self._notify()
        await self.sleep(command.delay / 1000)
        return False

    async def _speak(self, command: SpeakCommand) -> None:
        self.current_narration_text = command.payload.text
        self._notify()
        audio = command.payload.audio
        if audio:
            try:
                await self.narration.play(audio)
            except Exception as e:
                logger.warning(f"Narration playback failed, continuing: {e}")
        else:
            logger.warning("Narration has no audio, treating it as zero-length")
        self.current_narration_text = None
        self._notify()

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self)
